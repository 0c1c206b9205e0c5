import logging
from datetime import datetime

import httpx

from src.core.common.errors import DownstreamUnavailableError
from src.core.schedules.models import ExecutionReceipt, ExecutionRequest

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = {408, 425, 429}


class HttpInvestmentExecutor:
    """Sends "invest now" instructions to the trading/funding collaborator."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not base_url:
            raise RuntimeError("AUTO_INVEST_EXECUTOR_BASE_URL_REQUIRED")
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    def execute(self, request: ExecutionRequest) -> ExecutionReceipt:
        try:
            response = self._client.post(
                "/executions",
                json=request.model_dump(mode="json"),
                headers={"Idempotency-Key": request.idempotency_token},
            )
        except httpx.TransportError as exc:
            raise DownstreamUnavailableError(
                f"EXECUTOR_UNREACHABLE: {exc.__class__.__name__}"
            ) from exc

        if response.status_code >= 500 or response.status_code in _RETRYABLE_STATUS_CODES:
            raise DownstreamUnavailableError(f"EXECUTOR_HTTP_{response.status_code}")
        if response.status_code >= 400:
            logger.error(
                "auto_invest.executor.rejected",
                extra={
                    "extra_fields": {
                        "idempotency_token": request.idempotency_token,
                        "status_code": response.status_code,
                    }
                },
            )
            raise DownstreamUnavailableError(
                f"EXECUTOR_REJECTED_{response.status_code}", retryable=False
            )

        try:
            body = response.json()
            return ExecutionReceipt(
                execution_id=str(body["execution_id"]),
                idempotency_token=request.idempotency_token,
                accepted_at=(
                    datetime.fromisoformat(body["accepted_at"])
                    if body.get("accepted_at")
                    else request.scheduled_for
                ),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise DownstreamUnavailableError(
                f"EXECUTOR_INVALID_RESPONSE: {exc.__class__.__name__}"
            ) from exc

    def close(self) -> None:
        self._client.close()
