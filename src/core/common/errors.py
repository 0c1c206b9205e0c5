class AutoInvestError(Exception):
    pass


class DomainValidationError(AutoInvestError):
    """Malformed schedule or policy input. Never retried automatically."""

    def __init__(self, field: str, detail: str) -> None:
        super().__init__(f"VALIDATION_ERROR: {field}: {detail}")
        self.field = field
        self.detail = detail


class InvalidTransitionError(AutoInvestError):
    pass


class NotFoundError(AutoInvestError):
    pass


class DownstreamUnavailableError(AutoInvestError):
    """Transient failure talking to the trading/funding collaborator."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class ConsistencyError(AutoInvestError):
    pass


class IdempotencyConflictError(AutoInvestError):
    pass
