from typing import NoReturn

from fastapi import HTTPException, status

from src.core.common.errors import (
    ConsistencyError,
    DomainValidationError,
    DownstreamUnavailableError,
    IdempotencyConflictError,
    InvalidTransitionError,
    NotFoundError,
)

# renamed in newer Starlette releases
HTTP_422_UNPROCESSABLE = getattr(
    status, "HTTP_422_UNPROCESSABLE_CONTENT", status.HTTP_422_UNPROCESSABLE_ENTITY
)


def raise_auto_invest_http_exception(exc: Exception) -> NoReturn:
    if isinstance(exc, DomainValidationError):
        raise HTTPException(
            status_code=HTTP_422_UNPROCESSABLE,
            detail={"code": "VALIDATION_ERROR", "field": exc.field, "message": exc.detail},
        ) from exc
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, (IdempotencyConflictError, InvalidTransitionError)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, ConsistencyError):
        if str(exc).endswith("VERSION_CONFLICT"):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        raise HTTPException(status_code=HTTP_422_UNPROCESSABLE, detail=str(exc)) from exc
    if isinstance(exc, DownstreamUnavailableError):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc
    raise exc
