class ServiceError(Exception):
    """Base class for service-layer errors."""

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.code = code or "service_error"


class NotFoundError(ServiceError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="not_found")


class ValidationError(ServiceError):
    def __init__(self, message: str = "Validation error"):
        super().__init__(message, code="validation_error")


class InvalidAmountError(ServiceError):
    def __init__(self, message: str = "Invalid credit amount"):
        super().__init__(message, code="invalid_amount")


class InvalidStateError(ServiceError):
    def __init__(self, message: str = "Invalid state transition"):
        super().__init__(message, code="invalid_state")


class InsufficientBalanceError(ServiceError):
    """A debit would drive the available balance below zero."""

    def __init__(self, message: str = "Insufficient balance", *, available: int = 0, required: int = 0):
        super().__init__(message, code="insufficient_balance")
        self.available = available
        self.required = required


class InsufficientCreditsError(ServiceError):
    """Session-level form of InsufficientBalanceError, surfaced so callers can prompt for purchase."""

    def __init__(self, message: str = "Insufficient credits", *, available: int = 0, required: int = 1):
        super().__init__(message, code="insufficient_credits")
        self.available = available
        self.required = required


class RuleLimitReachedError(ServiceError):
    def __init__(self, message: str = "Rule usage limit reached"):
        super().__init__(message, code="rule_limit_reached")


class StoreUnavailableError(ServiceError):
    """Transient storage fault; safe to retry with the same idempotency key."""

    def __init__(self, message: str = "Credit store unavailable"):
        super().__init__(message, code="store_unavailable")


class AuthError(ServiceError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="unauthorized")


class ForbiddenError(ServiceError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="forbidden")
