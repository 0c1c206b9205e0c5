import os
from typing import cast

from src.api.routers.runtime_utils import env_int
from src.core.common.idempotency import DEFAULT_RETENTION_SECONDS
from src.core.schedules.dispatcher import (
    DEFAULT_CLAIM_LEASE_SECONDS,
    DEFAULT_MAX_RETRY_WINDOW_SECONDS,
    InvestmentExecutor,
)
from src.core.schedules.repository import ScheduleStore
from src.infrastructure.execution import HttpInvestmentExecutor, InMemoryInvestmentExecutor
from src.infrastructure.schedules import InMemoryScheduleStore, PostgresScheduleStore

DEFAULT_DISPATCH_INTERVAL_SECONDS = 60
DEFAULT_EXECUTOR_TIMEOUT_SECONDS = 10


def store_backend_name() -> str:
    backend = os.getenv("AUTO_INVEST_STORE_BACKEND", "IN_MEMORY").strip().upper()
    return "POSTGRES" if backend == "POSTGRES" else "IN_MEMORY"


def postgres_dsn() -> str:
    return os.getenv("AUTO_INVEST_POSTGRES_DSN", "").strip()


def executor_backend_name() -> str:
    backend = os.getenv("AUTO_INVEST_EXECUTOR_BACKEND", "IN_MEMORY").strip().upper()
    return "HTTP" if backend == "HTTP" else "IN_MEMORY"


def executor_base_url() -> str:
    return os.getenv("AUTO_INVEST_EXECUTOR_BASE_URL", "").strip()


def default_timezone() -> str:
    return os.getenv("AUTO_INVEST_DEFAULT_TIMEZONE", "UTC").strip() or "UTC"


def idempotency_retention_seconds() -> int:
    return env_int("AUTO_INVEST_IDEMPOTENCY_RETENTION_SECONDS", DEFAULT_RETENTION_SECONDS)


def dispatch_interval_seconds() -> int:
    return env_int(
        "AUTO_INVEST_DISPATCH_INTERVAL_SECONDS", DEFAULT_DISPATCH_INTERVAL_SECONDS, minimum=1
    )


def claim_lease_seconds() -> int:
    return env_int("AUTO_INVEST_CLAIM_LEASE_SECONDS", DEFAULT_CLAIM_LEASE_SECONDS, minimum=1)


def max_retry_window_seconds() -> int:
    return env_int("AUTO_INVEST_MAX_RETRY_WINDOW_SECONDS", DEFAULT_MAX_RETRY_WINDOW_SECONDS)


def executor_timeout_seconds() -> int:
    return env_int(
        "AUTO_INVEST_EXECUTOR_TIMEOUT_SECONDS", DEFAULT_EXECUTOR_TIMEOUT_SECONDS, minimum=1
    )


def _postgres_connection_exception_types() -> tuple[type[BaseException], ...]:
    types: list[type[BaseException]] = [
        ConnectionError,
        OSError,
        TimeoutError,
        TypeError,
        ValueError,
    ]
    try:
        import psycopg
    except ImportError:
        pass
    else:
        types.append(psycopg.Error)
    return tuple(types)


def build_store() -> ScheduleStore:
    if store_backend_name() == "POSTGRES":
        dsn = postgres_dsn()
        if not dsn:
            raise RuntimeError("AUTO_INVEST_POSTGRES_DSN_REQUIRED")
        try:
            return cast(ScheduleStore, PostgresScheduleStore(dsn=dsn))
        except RuntimeError:
            raise
        except _postgres_connection_exception_types() as exc:
            raise RuntimeError("AUTO_INVEST_POSTGRES_CONNECTION_FAILED") from exc
    return cast(ScheduleStore, InMemoryScheduleStore())


def build_executor() -> InvestmentExecutor:
    if executor_backend_name() == "HTTP":
        base_url = executor_base_url()
        if not base_url:
            raise RuntimeError("AUTO_INVEST_EXECUTOR_BASE_URL_REQUIRED")
        return HttpInvestmentExecutor(
            base_url=base_url, timeout_seconds=float(executor_timeout_seconds())
        )
    return InMemoryInvestmentExecutor()
