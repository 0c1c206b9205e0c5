import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from src.api.dependencies import build_dispatcher, get_schedule_store
from src.api.dispatch_scheduler import DispatchScheduler
from src.api.observability import setup_observability
from src.api.persistence_profile import (
    dispatcher_enabled,
    validate_persistence_profile_guardrails,
)
from src.api.routers.auto_invest import router as auto_invest_router
from src.api.routers.auto_invest_config import dispatch_interval_seconds
from src.api.routers.insights import router as insights_router
from src.api.routers.investment_policy import router as investment_policy_router

logger = logging.getLogger(__name__)

_DISPATCH_SCHEDULER: Optional[DispatchScheduler] = None


@asynccontextmanager
async def _app_lifespan(_app: FastAPI):
    global _DISPATCH_SCHEDULER
    validate_persistence_profile_guardrails()
    if dispatcher_enabled():
        _DISPATCH_SCHEDULER = DispatchScheduler(
            dispatcher_factory=build_dispatcher,
            interval_seconds=dispatch_interval_seconds(),
        )
        _DISPATCH_SCHEDULER.start()
    try:
        yield
    finally:
        if _DISPATCH_SCHEDULER is not None:
            _DISPATCH_SCHEDULER.stop()
            _DISPATCH_SCHEDULER = None


app = FastAPI(
    title="Auto-Invest & Allocation Compliance API",
    version="0.1.0",
    description=(
        "Recurring contribution schedules with exactly-once execution, versioned investment "
        "policy statements, allocation compliance and portfolio insights."
    ),
    openapi_tags=[
        {
            "name": "Auto-Invest Schedules",
            "description": "Schedule lifecycle, audit, execution history and dispatch.",
        },
        {
            "name": "Investment Policy",
            "description": "Versioned investment policy statements and compliance validation.",
        },
        {
            "name": "Insights",
            "description": "Prioritized portfolio insights.",
        },
        {
            "name": "Health",
            "description": "Liveness and readiness probes.",
        },
    ],
    lifespan=_app_lifespan,
)

setup_observability(app)

app.include_router(auto_invest_router)
app.include_router(investment_policy_router)
app.include_router(insights_router)


@app.exception_handler(Exception)
async def unhandled_exception_to_problem_details(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception while serving request", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        media_type="application/problem+json",
        content={
            "type": "about:blank",
            "title": "Internal Server Error",
            "status": 500,
            "detail": "An unexpected error occurred.",
            "instance": str(request.url.path),
        },
    )


@app.get("/health", tags=["Health"], summary="Service Health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/health/live", tags=["Health"], summary="Liveness Probe")
def health_live() -> dict[str, str]:
    return {"status": "live"}


@app.get("/health/ready", tags=["Health"], summary="Readiness Probe")
def health_ready() -> JSONResponse:
    try:
        get_schedule_store()
    except HTTPException as exc:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", "detail": exc.detail},
        )
    return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "ready"})
