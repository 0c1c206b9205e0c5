from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from src.core.common.canonical import hash_canonical_payload
from src.core.common.errors import IdempotencyConflictError
from src.core.schedules.models import MutationIdempotencyRecord
from src.core.schedules.repository import ScheduleStore

DEFAULT_RETENTION_SECONDS = 86400


def idempotency_scope(*, account_id: str, operation: str) -> str:
    return f"{account_id}:{operation}"


class IdempotencyGuard:
    """Replays the stored response for a repeated mutation key within the retention window."""

    def __init__(
        self,
        *,
        store: ScheduleStore,
        clock: Optional[Callable[[], datetime]] = None,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._retention = timedelta(seconds=retention_seconds)

    def replay(
        self,
        *,
        account_id: str,
        operation: str,
        idempotency_key: Optional[str],
        request_payload: dict[str, Any],
    ) -> Optional[dict[str, Any]]:
        if not idempotency_key:
            return None
        existing = self._store.get_idempotency(
            scope=idempotency_scope(account_id=account_id, operation=operation),
            idempotency_key=idempotency_key,
        )
        if existing is None:
            return None
        if self._clock() - existing.created_at > self._retention:
            return None
        if existing.request_hash != hash_canonical_payload(request_payload):
            raise IdempotencyConflictError("IDEMPOTENCY_KEY_CONFLICT: request hash mismatch")
        return existing.response_json

    def remember(
        self,
        *,
        account_id: str,
        operation: str,
        idempotency_key: Optional[str],
        request_payload: dict[str, Any],
        response_payload: dict[str, Any],
    ) -> None:
        if not idempotency_key:
            return
        self._store.save_idempotency(
            MutationIdempotencyRecord(
                idempotency_key=idempotency_key,
                scope=idempotency_scope(account_id=account_id, operation=operation),
                operation=operation,
                request_hash=hash_canonical_payload(request_payload),
                response_json=response_payload,
                created_at=self._clock(),
            )
        )
