from __future__ import annotations

import os

from src.api.routers.auto_invest_config import (
    executor_backend_name,
    executor_base_url,
    postgres_dsn,
    store_backend_name,
)
from src.api.routers.runtime_utils import env_flag

_PRODUCTION_PROFILE = "PRODUCTION"
_LOCAL_PROFILE = "LOCAL"


def app_persistence_profile_name() -> str:
    profile = os.getenv("APP_PERSISTENCE_PROFILE", _LOCAL_PROFILE).strip().upper()
    return _PRODUCTION_PROFILE if profile == _PRODUCTION_PROFILE else _LOCAL_PROFILE


def dispatcher_enabled() -> bool:
    return env_flag("AUTO_INVEST_DISPATCHER_ENABLED", False)


def validate_persistence_profile_guardrails() -> None:
    if app_persistence_profile_name() != _PRODUCTION_PROFILE:
        return
    if store_backend_name() != "POSTGRES":
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_AUTO_INVEST_POSTGRES")
    if not postgres_dsn():
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_AUTO_INVEST_POSTGRES_DSN")
    if dispatcher_enabled() and executor_backend_name() != "HTTP":
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_HTTP_EXECUTOR")
    if dispatcher_enabled() and not executor_base_url():
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_EXECUTOR_BASE_URL")
