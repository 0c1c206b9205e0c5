from datetime import date, datetime, timedelta, timezone

from fastapi.testclient import TestClient

from src.api.dependencies import get_dispatcher, get_schedule_store
from src.api.main import app
from src.core.schedules.dispatcher import ExecutionDispatcher
from src.infrastructure.execution import InMemoryInvestmentExecutor
from tests.factories import schedule_api_payload


def _create(client, **overrides):
    response = client.post("/wealth/auto-invest", json=schedule_api_payload(**overrides))
    assert response.status_code == 201
    return response.json()


def test_create_and_get_schedule():
    with TestClient(app) as client:
        created = _create(client)

        fetched = client.get(
            f"/wealth/auto-invest/{created['schedule_id']}", params={"account_id": "acct_001"}
        )

    assert created["schedule_id"].startswith("ais_")
    assert created["status"] == "active"
    assert created["amount"] == "250.00"
    assert created["last_execution_date"] is None
    assert datetime.fromisoformat(created["next_execution_date"]).tzinfo is not None
    assert fetched.status_code == 200
    assert fetched.json() == created


def test_create_validation_error_names_the_field():
    with TestClient(app) as client:
        response = client.post("/wealth/auto-invest", json=schedule_api_payload(amount="0"))

    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["code"] == "VALIDATION_ERROR"
    assert detail["field"] == "amount"


def test_create_rejects_past_start_date_and_unknown_timezone():
    with TestClient(app) as client:
        past = client.post(
            "/wealth/auto-invest",
            json=schedule_api_payload(start_date=date.today() - timedelta(days=3)),
        )
        bad_zone = client.post(
            "/wealth/auto-invest", json=schedule_api_payload(timezone="Mars/Base")
        )

    assert past.status_code == 422
    assert past.json()["detail"]["field"] == "start_date"
    assert bad_zone.status_code == 422
    assert bad_zone.json()["detail"]["field"] == "timezone"


def test_create_with_idempotency_key_replays_and_conflicts():
    headers = {"Idempotency-Key": "idem-api-create"}
    with TestClient(app) as client:
        first = client.post("/wealth/auto-invest", json=schedule_api_payload(), headers=headers)
        second = client.post("/wealth/auto-invest", json=schedule_api_payload(), headers=headers)
        conflict = client.post(
            "/wealth/auto-invest", json=schedule_api_payload(amount="99.00"), headers=headers
        )
        listed = client.get("/wealth/auto-invest", params={"account_id": "acct_001"})

    assert first.json()["schedule_id"] == second.json()["schedule_id"]
    assert conflict.status_code == 409
    assert conflict.json()["detail"].startswith("IDEMPOTENCY_KEY_CONFLICT")
    assert listed.json()["total_count"] == 1


def test_schedule_is_not_visible_to_other_accounts():
    with TestClient(app) as client:
        created = _create(client)
        response = client.get(
            f"/wealth/auto-invest/{created['schedule_id']}", params={"account_id": "acct_002"}
        )

    assert response.status_code == 404
    assert response.json()["detail"] == "SCHEDULE_NOT_FOUND"


def test_list_filters_by_status_and_portfolio():
    with TestClient(app) as client:
        first = _create(client)
        second = _create(client, portfolio_id="pf_growth_02")
        client.post(
            f"/wealth/auto-invest/{second['schedule_id']}/pause",
            json={"account_id": "acct_001"},
        )

        paused = client.get(
            "/wealth/auto-invest", params={"account_id": "acct_001", "status": "paused"}
        )
        core = client.get(
            "/wealth/auto-invest", params={"account_id": "acct_001", "portfolio_id": "pf_core_01"}
        )
        invalid = client.get(
            "/wealth/auto-invest", params={"account_id": "acct_001", "status": "sleeping"}
        )

    assert [row["schedule_id"] for row in paused.json()["schedules"]] == [second["schedule_id"]]
    assert [row["schedule_id"] for row in core.json()["schedules"]] == [first["schedule_id"]]
    assert invalid.status_code == 422


def test_lifecycle_pause_resume_cancel_and_audit():
    with TestClient(app) as client:
        schedule_id = _create(client)["schedule_id"]
        body = {"account_id": "acct_001"}

        paused = client.post(f"/wealth/auto-invest/{schedule_id}/pause", json=body)
        paused_again = client.post(f"/wealth/auto-invest/{schedule_id}/pause", json=body)
        resumed = client.post(f"/wealth/auto-invest/{schedule_id}/resume", json=body)
        cancelled = client.delete(
            f"/wealth/auto-invest/{schedule_id}", params={"account_id": "acct_001"}
        )
        resumed_after_cancel = client.post(f"/wealth/auto-invest/{schedule_id}/resume", json=body)
        audit = client.get(
            f"/wealth/auto-invest/{schedule_id}/audit", params={"account_id": "acct_001"}
        )
        kept = client.get(f"/wealth/auto-invest/{schedule_id}", params={"account_id": "acct_001"})

    assert paused.json()["status"] == "paused"
    assert paused_again.status_code == 409
    assert paused_again.json()["detail"].startswith("INVALID_TRANSITION")
    assert resumed.json()["status"] == "active"
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert resumed_after_cancel.status_code == 409
    assert [entry["event_type"] for entry in audit.json()["entries"]] == [
        "CREATED",
        "PAUSED",
        "RESUMED",
        "CANCELLED",
    ]
    assert kept.json()["status"] == "cancelled"


def test_patch_updates_amount_and_rejects_invalid_values():
    with TestClient(app) as client:
        created = _create(client)
        path = f"/wealth/auto-invest/{created['schedule_id']}"

        updated = client.patch(path, json={"account_id": "acct_001", "amount": "400.00"})
        invalid = client.patch(path, json={"account_id": "acct_001", "currency": "dollars"})

    assert updated.status_code == 200
    assert updated.json()["amount"] == "400.00"
    assert updated.json()["next_execution_date"] == created["next_execution_date"]
    assert invalid.status_code == 422
    assert invalid.json()["detail"]["field"] == "currency"


def test_lifecycle_apis_can_be_disabled(monkeypatch):
    monkeypatch.setenv("AUTO_INVEST_LIFECYCLE_ENABLED", "false")
    with TestClient(app) as client:
        response = client.post("/wealth/auto-invest", json=schedule_api_payload())

    assert response.status_code == 404
    assert response.json()["detail"] == "AUTO_INVEST_LIFECYCLE_DISABLED"


def test_support_apis_can_be_disabled(monkeypatch):
    with TestClient(app) as client:
        schedule_id = _create(client)["schedule_id"]
        monkeypatch.setenv("AUTO_INVEST_SUPPORT_APIS_ENABLED", "false")
        response = client.get(
            f"/wealth/auto-invest/{schedule_id}/executions", params={"account_id": "acct_001"}
        )

    assert response.status_code == 404
    assert response.json()["detail"] == "AUTO_INVEST_SUPPORT_APIS_DISABLED"


def test_manual_dispatch_is_disabled_by_default():
    with TestClient(app) as client:
        response = client.post("/wealth/auto-invest/dispatch")

    assert response.status_code == 404
    assert response.json()["detail"] == "AUTO_INVEST_MANUAL_DISPATCH_DISABLED"


def test_manual_dispatch_with_nothing_due(monkeypatch):
    monkeypatch.setenv("AUTO_INVEST_MANUAL_DISPATCH_ENABLED", "true")
    with TestClient(app) as client:
        _create(client)
        response = client.post("/wealth/auto-invest/dispatch")

    assert response.status_code == 200
    assert response.json()["due_count"] == 0
    assert response.json()["executed"] == []


def test_manual_dispatch_executes_due_schedule_and_records_attempt(monkeypatch):
    monkeypatch.setenv("AUTO_INVEST_MANUAL_DISPATCH_ENABLED", "true")
    executor = InMemoryInvestmentExecutor()
    future = datetime.now(timezone.utc) + timedelta(days=75)
    app.dependency_overrides[get_dispatcher] = lambda: ExecutionDispatcher(
        store=get_schedule_store(), executor=executor, clock=lambda: future
    )
    try:
        with TestClient(app) as client:
            schedule_id = _create(client)["schedule_id"]
            tick = client.post("/wealth/auto-invest/dispatch")
            executions = client.get(
                f"/wealth/auto-invest/{schedule_id}/executions",
                params={"account_id": "acct_001"},
            )
            schedule = client.get(
                f"/wealth/auto-invest/{schedule_id}", params={"account_id": "acct_001"}
            )
    finally:
        app.dependency_overrides.clear()

    assert tick.json()["executed"] == [schedule_id]
    attempts = executions.json()["attempts"]
    assert [attempt["outcome"] for attempt in attempts] == ["SUCCEEDED"]
    assert attempts[0]["idempotency_token"].startswith("ait_")
    assert schedule.json()["last_execution_date"] == attempts[0]["scheduled_for"]
    assert executor.execution_count == 1


def test_store_misconfiguration_returns_503(monkeypatch):
    monkeypatch.setenv("AUTO_INVEST_POSTGRES_DSN", "")
    with TestClient(app) as client:
        response = client.get("/wealth/auto-invest", params={"account_id": "acct_001"})

    assert response.status_code == 503
    assert response.json()["detail"] == "AUTO_INVEST_POSTGRES_DSN_REQUIRED"
