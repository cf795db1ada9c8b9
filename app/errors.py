from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    # Routing / acquisition
    NO_STOCK_AVAILABLE = "NO_STOCK_AVAILABLE"
    ALL_PROVIDERS_FAILED = "ALL_PROVIDERS_FAILED"

    # Provider-level, normalized by the adapters
    NO_NUMBERS = "NO_NUMBERS"
    SERVICE_NOT_MAPPED = "SERVICE_NOT_MAPPED"
    WRONG_SERVICE = "WRONG_SERVICE"
    BAD_KEY = "BAD_KEY"
    BANNED = "BANNED"
    NO_BALANCE = "NO_BALANCE"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    PRICE_TOO_HIGH = "PRICE_TOO_HIGH"
    TIMEOUT = "TIMEOUT"
    PROVIDER_ERROR = "PROVIDER_ERROR"

    # Transaction
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    PRICING_VALIDATION_FAILED = "PRICING_VALIDATION_FAILED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    PERSISTENCE_FAILED = "PERSISTENCE_FAILED"
    IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    ORDER_NOT_ACTIVE = "ORDER_NOT_ACTIVE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Retrying the same provider cannot fix these.
PERMANENT_CODES = frozenset({
    ErrorCode.SERVICE_NOT_MAPPED,
    ErrorCode.WRONG_SERVICE,
    ErrorCode.BAD_KEY,
    ErrorCode.BANNED,
    ErrorCode.NO_BALANCE,
})


class ProviderError(Exception):
    """Raised by a provider adapter when a call fails.

    Adapters translate their provider-specific error strings into an
    ``ErrorCode`` before raising, so the core only ever sees the fixed
    vocabulary above.
    """

    def __init__(
        self,
        provider_id: str,
        code: ErrorCode = ErrorCode.PROVIDER_UNAVAILABLE,
        reason: Optional[str] = None,
    ):
        self.provider_id = provider_id
        self.code = code
        self.reason = reason or code.value
        super().__init__(f"{provider_id}: {self.reason}")

    @property
    def retryable(self) -> bool:
        return self.code not in PERMANENT_CODES


class InsufficientBalanceError(Exception):
    def __init__(self, user_id: str, balance: float, amount: float):
        self.user_id = user_id
        self.balance = balance
        self.amount = amount
        super().__init__(f"user {user_id} has {balance}, needs {amount}")


class PersistenceError(Exception):
    """Raised by a repository when a write cannot be completed."""


class PricingValidationError(Exception):
    """Raised when the price about to be charged no longer matches the catalog."""


class RequestSupersededError(Exception):
    """Raised when another request took over the idempotency key mid-flight."""


class RentalNotFoundError(Exception):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"rental {order_id} not found")


HTTP_STATUS = {
    ErrorCode.NO_STOCK_AVAILABLE: 503,
    ErrorCode.ALL_PROVIDERS_FAILED: 503,
    ErrorCode.SERVICE_UNAVAILABLE: 404,
    ErrorCode.PRICING_VALIDATION_FAILED: 400,
    ErrorCode.INSUFFICIENT_BALANCE: 400,
    ErrorCode.PERSISTENCE_FAILED: 500,
    ErrorCode.IDEMPOTENCY_CONFLICT: 409,
    ErrorCode.ORDER_NOT_FOUND: 404,
    ErrorCode.ORDER_NOT_ACTIVE: 409,
    ErrorCode.INTERNAL_ERROR: 500,
}


def http_status(code: Optional[ErrorCode]) -> int:
    if code is None:
        return 200
    return HTTP_STATUS.get(code, 502)
