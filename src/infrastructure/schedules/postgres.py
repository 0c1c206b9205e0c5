import json
from contextlib import closing
from datetime import datetime, timezone
from importlib.util import find_spec
from typing import Optional

from src.core.common.errors import ConsistencyError
from src.core.policies.models import InvestmentPolicyRecord
from src.core.schedules.models import (
    ExecutionAttemptRecord,
    MutationIdempotencyRecord,
    ScheduleAlertRecord,
    ScheduleAuditRecord,
    ScheduleRecord,
)
from src.core.schedules.repository import ScheduleStore
from src.infrastructure.postgres_migrations import AUTO_INVEST_NAMESPACE, apply_postgres_migrations


class PostgresScheduleStore(ScheduleStore):
    def __init__(self, *, dsn: str) -> None:
        if not dsn:
            raise RuntimeError("AUTO_INVEST_POSTGRES_DSN_REQUIRED")
        if find_spec("psycopg") is None:
            raise RuntimeError("AUTO_INVEST_POSTGRES_DRIVER_MISSING")
        self._dsn = dsn
        self._init_db()

    def create_schedule(self, *, schedule: ScheduleRecord, audit: ScheduleAuditRecord) -> None:
        query = """
            INSERT INTO auto_invest_schedules (
                schedule_id,
                account_id,
                portfolio_id,
                status,
                next_execution_date,
                next_retry_at,
                created_at,
                version,
                record_json
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (schedule_id) DO NOTHING
            RETURNING schedule_id
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, _schedule_args(schedule)).fetchone()
            if row is None:
                connection.rollback()
                raise ConsistencyError("SCHEDULE_ALREADY_EXISTS")
            self._insert_audit(connection=connection, audit=audit)
            connection.commit()

    def get_schedule(self, *, account_id: str, schedule_id: str) -> Optional[ScheduleRecord]:
        query = """
            SELECT record_json
            FROM auto_invest_schedules
            WHERE schedule_id = %s AND account_id = %s
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (schedule_id, account_id)).fetchone()
        return _to_schedule(row)

    def list_schedules(
        self,
        *,
        account_id: str,
        status: Optional[str],
        portfolio_id: Optional[str],
    ) -> list[ScheduleRecord]:
        where_clauses = ["account_id = %s"]
        args: list[str] = [account_id]
        if status is not None:
            where_clauses.append("status = %s")
            args.append(status)
        if portfolio_id is not None:
            where_clauses.append("portfolio_id = %s")
            args.append(portfolio_id)
        query = f"""
            SELECT record_json
            FROM auto_invest_schedules
            WHERE {' AND '.join(where_clauses)}
            ORDER BY created_at ASC, schedule_id ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, tuple(args)).fetchall()
        return [_require_schedule(row) for row in rows]

    def delete_schedule(self, *, account_id: str, schedule_id: str) -> bool:
        query = """
            DELETE FROM auto_invest_schedules
            WHERE schedule_id = %s AND account_id = %s
            RETURNING schedule_id
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (schedule_id, account_id)).fetchone()
            connection.commit()
        return row is not None

    def transition_schedule(
        self,
        *,
        schedule: ScheduleRecord,
        audit: ScheduleAuditRecord,
        expected_version: int,
        attempt: Optional[ExecutionAttemptRecord] = None,
        alert: Optional[ScheduleAlertRecord] = None,
    ) -> ScheduleRecord:
        query = """
            UPDATE auto_invest_schedules
            SET
                status = %s,
                portfolio_id = %s,
                next_execution_date = %s,
                next_retry_at = %s,
                version = %s,
                record_json = %s
            WHERE schedule_id = %s AND version = %s
            RETURNING schedule_id
        """
        with closing(self._connect()) as connection:
            row = connection.execute(
                query,
                (
                    schedule.status,
                    schedule.portfolio_id,
                    _utc_iso(schedule.next_execution_date),
                    _optional_utc_iso(schedule.next_retry_at),
                    schedule.version,
                    schedule.model_dump_json(),
                    schedule.schedule_id,
                    expected_version,
                ),
            ).fetchone()
            if row is None:
                connection.rollback()
                raise ConsistencyError("SCHEDULE_VERSION_CONFLICT")
            self._insert_audit(connection=connection, audit=audit)
            if attempt is not None:
                self._insert_attempt(connection=connection, attempt=attempt)
            if alert is not None:
                self._insert_alert(connection=connection, alert=alert)
            connection.commit()
        return schedule

    def list_due_schedules(self, *, now: datetime, limit: int) -> list[ScheduleRecord]:
        query = """
            SELECT record_json
            FROM auto_invest_schedules
            WHERE status = 'active'
                AND next_execution_date <= %s
                AND (next_retry_at IS NULL OR next_retry_at <= %s)
            ORDER BY next_execution_date ASC, schedule_id ASC
            LIMIT %s
        """
        now_iso = _utc_iso(now)
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (now_iso, now_iso, limit)).fetchall()
        return [_require_schedule(row) for row in rows]

    def claim_schedule(
        self,
        *,
        schedule_id: str,
        claim_token: str,
        now: datetime,
        lease_expires_at: datetime,
    ) -> Optional[ScheduleRecord]:
        query = """
            UPDATE auto_invest_schedules
            SET claim_token = %s, claim_expires_at = %s
            WHERE schedule_id = %s
                AND status = 'active'
                AND (claim_token IS NULL OR claim_expires_at <= %s)
            RETURNING record_json
        """
        with closing(self._connect()) as connection:
            row = connection.execute(
                query,
                (claim_token, _utc_iso(lease_expires_at), schedule_id, _utc_iso(now)),
            ).fetchone()
            connection.commit()
        return _to_schedule(row)

    def release_claim(self, *, schedule_id: str, claim_token: str) -> None:
        query = """
            UPDATE auto_invest_schedules
            SET claim_token = NULL, claim_expires_at = NULL
            WHERE schedule_id = %s AND claim_token = %s
        """
        with closing(self._connect()) as connection:
            connection.execute(query, (schedule_id, claim_token))
            connection.commit()

    def list_audit(self, *, schedule_id: str) -> list[ScheduleAuditRecord]:
        query = """
            SELECT record_json
            FROM auto_invest_schedule_audit
            WHERE schedule_id = %s
            ORDER BY audit_seq ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (schedule_id,)).fetchall()
        return [ScheduleAuditRecord.model_validate_json(row["record_json"]) for row in rows]

    def append_execution_attempt(self, attempt: ExecutionAttemptRecord) -> None:
        with closing(self._connect()) as connection:
            self._insert_attempt(connection=connection, attempt=attempt)
            connection.commit()

    def list_execution_attempts(self, *, schedule_id: str) -> list[ExecutionAttemptRecord]:
        query = """
            SELECT record_json
            FROM auto_invest_execution_attempts
            WHERE schedule_id = %s
            ORDER BY attempt_seq ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (schedule_id,)).fetchall()
        return [ExecutionAttemptRecord.model_validate_json(row["record_json"]) for row in rows]

    def get_successful_execution(
        self, *, idempotency_token: str
    ) -> Optional[ExecutionAttemptRecord]:
        query = """
            SELECT record_json
            FROM auto_invest_execution_attempts
            WHERE idempotency_token = %s AND outcome = 'SUCCEEDED'
            ORDER BY attempt_seq ASC
            LIMIT 1
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (idempotency_token,)).fetchone()
        if row is None:
            return None
        return ExecutionAttemptRecord.model_validate_json(row["record_json"])

    def list_alerts(self, *, account_id: str) -> list[ScheduleAlertRecord]:
        query = """
            SELECT record_json
            FROM auto_invest_alerts
            WHERE account_id = %s
            ORDER BY alert_seq ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (account_id,)).fetchall()
        return [ScheduleAlertRecord.model_validate_json(row["record_json"]) for row in rows]

    def get_idempotency(
        self, *, scope: str, idempotency_key: str
    ) -> Optional[MutationIdempotencyRecord]:
        query = """
            SELECT
                idempotency_key,
                scope,
                operation,
                request_hash,
                created_at,
                response_json
            FROM auto_invest_idempotency
            WHERE scope = %s AND idempotency_key = %s
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (scope, idempotency_key)).fetchone()
        if row is None:
            return None
        return MutationIdempotencyRecord(
            idempotency_key=row["idempotency_key"],
            scope=row["scope"],
            operation=row["operation"],
            request_hash=row["request_hash"],
            created_at=datetime.fromisoformat(row["created_at"]),
            response_json=json.loads(row["response_json"]),
        )

    def save_idempotency(self, record: MutationIdempotencyRecord) -> None:
        query = """
            INSERT INTO auto_invest_idempotency (
                scope,
                idempotency_key,
                operation,
                request_hash,
                created_at,
                response_json
            ) VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (scope, idempotency_key) DO UPDATE SET
                operation=excluded.operation,
                request_hash=excluded.request_hash,
                created_at=excluded.created_at,
                response_json=excluded.response_json
        """
        with closing(self._connect()) as connection:
            connection.execute(
                query,
                (
                    record.scope,
                    record.idempotency_key,
                    record.operation,
                    record.request_hash,
                    _utc_iso(record.created_at),
                    _json_dump(record.response_json),
                ),
            )
            connection.commit()

    def append_policy_version(self, record: InvestmentPolicyRecord) -> None:
        query = """
            INSERT INTO investment_policy_versions (
                policy_id,
                account_id,
                version_no,
                created_at,
                record_json
            ) VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (account_id, version_no) DO NOTHING
            RETURNING policy_id
        """
        with closing(self._connect()) as connection:
            row = connection.execute(
                query,
                (
                    record.policy_id,
                    record.account_id,
                    record.version_no,
                    _utc_iso(record.created_at),
                    record.model_dump_json(),
                ),
            ).fetchone()
            if row is None:
                connection.rollback()
                raise ConsistencyError("POLICY_VERSION_CONFLICT")
            connection.commit()

    def get_current_policy(self, *, account_id: str) -> Optional[InvestmentPolicyRecord]:
        query = """
            SELECT record_json
            FROM investment_policy_versions
            WHERE account_id = %s
            ORDER BY version_no DESC
            LIMIT 1
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (account_id,)).fetchone()
        return _to_policy(row)

    def get_policy_version(
        self, *, account_id: str, version_no: int
    ) -> Optional[InvestmentPolicyRecord]:
        query = """
            SELECT record_json
            FROM investment_policy_versions
            WHERE account_id = %s AND version_no = %s
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (account_id, version_no)).fetchone()
        return _to_policy(row)

    def list_policy_versions(self, *, account_id: str) -> list[InvestmentPolicyRecord]:
        query = """
            SELECT record_json
            FROM investment_policy_versions
            WHERE account_id = %s
            ORDER BY version_no ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (account_id,)).fetchall()
        return [InvestmentPolicyRecord.model_validate_json(row["record_json"]) for row in rows]

    def _connect(self):
        psycopg, dict_row = _import_psycopg()
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def _init_db(self) -> None:
        with closing(self._connect()) as connection:
            apply_postgres_migrations(connection=connection, namespace=AUTO_INVEST_NAMESPACE)

    def _insert_audit(self, *, connection, audit: ScheduleAuditRecord) -> None:
        connection.execute(
            """
            INSERT INTO auto_invest_schedule_audit (
                audit_id,
                schedule_id,
                account_id,
                event_type,
                at,
                record_json
            ) VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                audit.audit_id,
                audit.schedule_id,
                audit.account_id,
                audit.event_type,
                _utc_iso(audit.at),
                audit.model_dump_json(),
            ),
        )

    def _insert_attempt(self, *, connection, attempt: ExecutionAttemptRecord) -> None:
        connection.execute(
            """
            INSERT INTO auto_invest_execution_attempts (
                attempt_id,
                schedule_id,
                account_id,
                idempotency_token,
                outcome,
                attempted_at,
                record_json
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                attempt.attempt_id,
                attempt.schedule_id,
                attempt.account_id,
                attempt.idempotency_token,
                attempt.outcome,
                _utc_iso(attempt.attempted_at),
                attempt.model_dump_json(),
            ),
        )

    def _insert_alert(self, *, connection, alert: ScheduleAlertRecord) -> None:
        connection.execute(
            """
            INSERT INTO auto_invest_alerts (
                alert_id,
                schedule_id,
                account_id,
                raised_at,
                record_json
            ) VALUES (%s, %s, %s, %s, %s)
            """,
            (
                alert.alert_id,
                alert.schedule_id,
                alert.account_id,
                _utc_iso(alert.raised_at),
                alert.model_dump_json(),
            ),
        )


def _import_psycopg():
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row


def _utc_iso(value: datetime) -> str:
    # fixed-width UTC text keeps lexical and chronological order identical
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _optional_utc_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return _utc_iso(value)


def _json_dump(value: dict) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def _schedule_args(schedule: ScheduleRecord) -> tuple:
    return (
        schedule.schedule_id,
        schedule.account_id,
        schedule.portfolio_id,
        schedule.status,
        _utc_iso(schedule.next_execution_date),
        _optional_utc_iso(schedule.next_retry_at),
        _utc_iso(schedule.created_at),
        schedule.version,
        schedule.model_dump_json(),
    )


def _to_schedule(row) -> Optional[ScheduleRecord]:
    if row is None:
        return None
    return ScheduleRecord.model_validate_json(row["record_json"])


def _require_schedule(row) -> ScheduleRecord:
    return ScheduleRecord.model_validate_json(row["record_json"])


def _to_policy(row) -> Optional[InvestmentPolicyRecord]:
    if row is None:
        return None
    return InvestmentPolicyRecord.model_validate_json(row["record_json"])
