import uuid
from copy import deepcopy
from datetime import datetime, timezone
from threading import Lock

from src.core.common.errors import DownstreamUnavailableError
from src.core.schedules.models import ExecutionReceipt, ExecutionRequest


class InMemoryInvestmentExecutor:
    """Local collaborator that honours idempotency tokens the way the real one must."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._receipts: dict[str, ExecutionReceipt] = {}
        self._requests: list[ExecutionRequest] = []
        self._pending_failures: list[DownstreamUnavailableError] = []

    def execute(self, request: ExecutionRequest) -> ExecutionReceipt:
        with self._lock:
            if self._pending_failures:
                raise self._pending_failures.pop(0)
            existing = self._receipts.get(request.idempotency_token)
            if existing is not None:
                return deepcopy(existing)
            receipt = ExecutionReceipt(
                execution_id=f"exe_{uuid.uuid4().hex[:12]}",
                idempotency_token=request.idempotency_token,
                accepted_at=datetime.now(timezone.utc),
            )
            self._receipts[request.idempotency_token] = receipt
            self._requests.append(deepcopy(request))
            return deepcopy(receipt)

    def fail_next(self, count: int = 1, *, retryable: bool = True) -> None:
        with self._lock:
            for _ in range(count):
                self._pending_failures.append(
                    DownstreamUnavailableError("EXECUTOR_UNAVAILABLE", retryable=retryable)
                )

    @property
    def execution_count(self) -> int:
        with self._lock:
            return len(self._requests)

    def executed_requests(self) -> list[ExecutionRequest]:
        with self._lock:
            return [deepcopy(request) for request in self._requests]
