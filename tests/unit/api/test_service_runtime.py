import json
import logging

import pytest
from fastapi.testclient import TestClient

import src.api.main as main_module
from src.api.dependencies import get_schedule_service
from src.api.main import app
from src.api.observability import JsonFormatter, correlation_id_var
from src.api.persistence_profile import (
    app_persistence_profile_name,
    validate_persistence_profile_guardrails,
)
from src.api.routers.auto_invest_config import (
    build_executor,
    build_store,
    dispatch_interval_seconds,
    executor_backend_name,
    store_backend_name,
)
from src.infrastructure.execution import HttpInvestmentExecutor, InMemoryInvestmentExecutor


def test_health_endpoints():
    with TestClient(app) as client:
        assert client.get("/health").json() == {"status": "ok"}
        assert client.get("/health/live").json() == {"status": "live"}
        ready = client.get("/health/ready")

    assert ready.status_code == 200
    assert ready.json() == {"status": "ready"}


def test_readiness_reports_store_failure(monkeypatch):
    monkeypatch.setenv("AUTO_INVEST_POSTGRES_DSN", "")
    with TestClient(app) as client:
        response = client.get("/health/ready")

    assert response.status_code == 503
    assert response.json() == {
        "status": "not_ready",
        "detail": "AUTO_INVEST_POSTGRES_DSN_REQUIRED",
    }


def test_metrics_endpoint_is_exposed():
    with TestClient(app) as client:
        client.get("/health")
        response = client.get("/metrics")

    assert response.status_code == 200
    assert "http_requests_total" in response.text


def test_correlation_headers_are_echoed_or_generated():
    traceparent = "00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01"
    with TestClient(app) as client:
        echoed = client.get(
            "/health",
            headers={
                "X-Correlation-Id": "corr-abc",
                "X-Request-Id": "req-abc",
                "traceparent": traceparent,
            },
        )
        generated = client.get("/health")

    assert echoed.headers["X-Correlation-Id"] == "corr-abc"
    assert echoed.headers["X-Request-Id"] == "req-abc"
    assert echoed.headers["X-Trace-Id"] == "0af7651916cd43dd8448eb211c80319c"
    assert generated.headers["X-Correlation-Id"].startswith("corr_")
    assert generated.headers["X-Request-Id"].startswith("req_")
    assert generated.headers["traceparent"].startswith("00-")


def test_json_formatter_includes_context_and_extra_fields():
    record = logging.LogRecord("auto_invest", logging.INFO, __file__, 1, "event.name", None, None)
    record.extra_fields = {"schedule_id": "ais_1"}
    token = correlation_id_var.set("corr_1")
    try:
        payload = json.loads(JsonFormatter().format(record))
    finally:
        correlation_id_var.reset(token)

    assert payload["message"] == "event.name"
    assert payload["correlation_id"] == "corr_1"
    assert payload["schedule_id"] == "ais_1"
    assert "request_id" not in payload


def test_unhandled_errors_return_problem_details():
    def _boom():
        raise ValueError("unexpected")

    app.dependency_overrides[get_schedule_service] = _boom
    try:
        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/wealth/auto-invest", params={"account_id": "acct_001"})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500
    assert response.headers["content-type"].startswith("application/problem+json")
    assert response.json()["instance"] == "/wealth/auto-invest"


def test_backend_names_default_and_normalize(monkeypatch):
    monkeypatch.delenv("AUTO_INVEST_STORE_BACKEND", raising=False)
    assert store_backend_name() == "IN_MEMORY"
    monkeypatch.setenv("AUTO_INVEST_STORE_BACKEND", " postgres ")
    assert store_backend_name() == "POSTGRES"
    monkeypatch.setenv("AUTO_INVEST_EXECUTOR_BACKEND", "http")
    assert executor_backend_name() == "HTTP"
    monkeypatch.setenv("AUTO_INVEST_DISPATCH_INTERVAL_SECONDS", "0")
    assert dispatch_interval_seconds() == 60
    monkeypatch.setenv("AUTO_INVEST_DISPATCH_INTERVAL_SECONDS", "15")
    assert dispatch_interval_seconds() == 15


def test_build_store_maps_connection_errors(monkeypatch):
    class _ExplodingStore:
        def __init__(self, *, dsn):  # noqa: ARG002
            raise OSError("connection refused")

    monkeypatch.setattr(
        "src.api.routers.auto_invest_config.PostgresScheduleStore", _ExplodingStore
    )

    with pytest.raises(RuntimeError) as exc:
        build_store()
    assert str(exc.value) == "AUTO_INVEST_POSTGRES_CONNECTION_FAILED"


def test_build_executor_selects_backend(monkeypatch):
    assert isinstance(build_executor(), InMemoryInvestmentExecutor)

    monkeypatch.setenv("AUTO_INVEST_EXECUTOR_BACKEND", "HTTP")
    monkeypatch.delenv("AUTO_INVEST_EXECUTOR_BASE_URL", raising=False)
    with pytest.raises(RuntimeError) as exc:
        build_executor()
    assert str(exc.value) == "AUTO_INVEST_EXECUTOR_BASE_URL_REQUIRED"

    monkeypatch.setenv("AUTO_INVEST_EXECUTOR_BASE_URL", "http://executor.local")
    executor = build_executor()
    assert isinstance(executor, HttpInvestmentExecutor)
    executor.close()


def test_local_profile_skips_guardrails(monkeypatch):
    monkeypatch.setenv("AUTO_INVEST_STORE_BACKEND", "IN_MEMORY")

    assert app_persistence_profile_name() == "LOCAL"
    validate_persistence_profile_guardrails()


@pytest.mark.parametrize(
    ("env", "expected"),
    [
        (
            {"AUTO_INVEST_STORE_BACKEND": "IN_MEMORY"},
            "PERSISTENCE_PROFILE_REQUIRES_AUTO_INVEST_POSTGRES",
        ),
        (
            {"AUTO_INVEST_POSTGRES_DSN": ""},
            "PERSISTENCE_PROFILE_REQUIRES_AUTO_INVEST_POSTGRES_DSN",
        ),
        (
            {"AUTO_INVEST_DISPATCHER_ENABLED": "true"},
            "PERSISTENCE_PROFILE_REQUIRES_HTTP_EXECUTOR",
        ),
        (
            {"AUTO_INVEST_DISPATCHER_ENABLED": "true", "AUTO_INVEST_EXECUTOR_BACKEND": "HTTP"},
            "PERSISTENCE_PROFILE_REQUIRES_EXECUTOR_BASE_URL",
        ),
    ],
)
def test_production_profile_guardrails(monkeypatch, env, expected):
    monkeypatch.setenv("APP_PERSISTENCE_PROFILE", "production")
    monkeypatch.delenv("AUTO_INVEST_EXECUTOR_BASE_URL", raising=False)
    for name, value in env.items():
        monkeypatch.setenv(name, value)

    with pytest.raises(RuntimeError) as exc:
        validate_persistence_profile_guardrails()
    assert str(exc.value) == expected


def test_production_profile_accepts_complete_configuration(monkeypatch):
    monkeypatch.setenv("APP_PERSISTENCE_PROFILE", "PRODUCTION")
    monkeypatch.setenv("AUTO_INVEST_DISPATCHER_ENABLED", "true")
    monkeypatch.setenv("AUTO_INVEST_EXECUTOR_BACKEND", "HTTP")
    monkeypatch.setenv("AUTO_INVEST_EXECUTOR_BASE_URL", "http://executor.local")

    validate_persistence_profile_guardrails()


def test_startup_fails_fast_on_guardrail_violation(monkeypatch):
    monkeypatch.setenv("APP_PERSISTENCE_PROFILE", "PRODUCTION")
    monkeypatch.setenv("AUTO_INVEST_STORE_BACKEND", "IN_MEMORY")

    with pytest.raises(RuntimeError, match="PERSISTENCE_PROFILE_REQUIRES_AUTO_INVEST_POSTGRES"):
        with TestClient(app):
            pass


def test_lifespan_runs_background_dispatcher_when_enabled(monkeypatch):
    monkeypatch.setenv("AUTO_INVEST_DISPATCHER_ENABLED", "true")
    monkeypatch.setenv("AUTO_INVEST_DISPATCH_INTERVAL_SECONDS", "3600")

    with TestClient(app):
        scheduler = main_module._DISPATCH_SCHEDULER
        assert scheduler is not None
        assert scheduler.running is True

    assert main_module._DISPATCH_SCHEDULER is None
    assert scheduler.running is False


def test_lifespan_leaves_dispatcher_off_by_default():
    with TestClient(app):
        assert main_module._DISPATCH_SCHEDULER is None
