import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.errors import ErrorCode


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


class RequestType(str, Enum):
    PURCHASE = "purchase"
    CHECK_STATUS = "check_status"
    CANCEL = "cancel"
    FINISH = "finish"


RentalType = Literal["standard", "multi-service", "long-term"]


# --- Health ---


class ProviderRequestLog(BaseModel):
    provider: str
    request_type: RequestType
    success: bool
    response_time_ms: int
    error_message: Optional[str] = None
    country_code: Optional[str] = None
    service_code: Optional[str] = None
    order_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ProviderHealthRecord(BaseModel):
    provider: str
    status: ProviderStatus
    success_rate: float = Field(..., ge=0, le=100)
    avg_response_time_ms: int
    total_requests: int
    successful_requests: int
    failed_requests: int
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    last_checked_at: datetime = Field(default_factory=utcnow)


class ProviderPreferences(BaseModel):
    preferred_provider: str = "auto"
    fallback_enabled: bool = True
    min_success_rate: float = Field(default=90, ge=0, le=100)
    max_response_time_ms: int = Field(default=5000, ge=0)
    retry_attempts: int = Field(default=2, ge=1)
    retry_delay_ms: int = Field(default=1000, ge=0)


# --- Provider adapter payloads ---


class Purchase(BaseModel):
    external_id: str
    phone_number: str
    cost: float


class ActivationStatus(BaseModel):
    status: Literal["waiting", "completed", "cancelled", "unknown"]
    code: Optional[str] = None


class MarketPriceOption(BaseModel):
    price: float
    count: int


class MarketPriceList(BaseModel):
    regular_price: float
    options: list[MarketPriceOption] = Field(default_factory=list)


class StockSnapshot(BaseModel):
    country_code: str
    service_code: str
    by_provider: dict[str, int] = Field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.by_provider.values())

    def for_provider(self, provider_id: str) -> int:
        return self.by_provider.get(provider_id, 0)


# --- Acquisition ---


class AcquisitionRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    country_code: str
    service_code: str
    max_price: Optional[float] = Field(default=None, gt=0)
    use_dynamic_price: bool = False
    prioritize_price: bool = True
    expected_price: Optional[float] = Field(default=None, ge=0)
    rental_type: RentalType = "standard"
    extra_services_count: int = Field(default=0, ge=0)
    duration_hours: int = Field(default=0, ge=0)
    idempotency_key: Optional[str] = None

    def fingerprint(self) -> dict[str, Any]:
        """Request parameters that identify one logical rental."""
        return self.model_dump(exclude={"idempotency_key", "user_id"})


class AcquisitionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    provider: Optional[str] = None
    external_id: Optional[str] = None
    phone_number: Optional[str] = None
    cost: float = 0
    used_dynamic_price: bool = False
    regular_price: Optional[float] = None
    savings_amount: Optional[float] = None
    response_time_ms: int = 0
    retried_count: int = 0
    error_code: Optional[ErrorCode] = None
    error_message: Optional[str] = None
    last_provider_error: Optional[ErrorCode] = None
    attempted_providers: list[str] = Field(default_factory=list)


# --- Orders, balances, catalog ---


class OrderStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    COMPLETED = "completed"


class Order(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    country_code: str
    service_code: str
    provider: str
    external_id: str
    phone_number: str
    price: float
    status: OrderStatus = OrderStatus.ACTIVE
    acquisition: AcquisitionResult
    sms_code: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None


class LedgerEntry(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    order_id: Optional[str] = None
    kind: Literal["rental_purchase", "refund", "deposit"]
    amount: float
    balance_before: float
    balance_after: float
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class CatalogEntry(BaseModel):
    country_code: str
    service_code: str
    service_name: Optional[str] = None
    base_price: float = Field(..., gt=0)
    cost_price: float = Field(..., ge=0)
    is_available: bool = True


# --- Idempotency ---


class IdempotencyStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class IdempotencyRecord(BaseModel):
    key: str
    actor: str
    owner: str = Field(default_factory=lambda: uuid.uuid4().hex)
    request_body: dict[str, Any] = Field(default_factory=dict)
    status: IdempotencyStatus = IdempotencyStatus.PROCESSING
    response_body: Optional[dict[str, Any]] = None
    response_status: Optional[int] = None
    ref_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    lease_until: Optional[datetime] = None
    expires_at: datetime


class IdempotencyCheck(BaseModel):
    is_new: bool
    owner: Optional[str] = None
    status: Optional[IdempotencyStatus] = None
    cached_data: Optional[dict[str, Any]] = None
    cached_status: Optional[int] = None


# --- Coordinator output ---


class RentalOutcome(BaseModel):
    success: bool
    order: Optional[Order] = None
    acquisition: Optional[AcquisitionResult] = None
    charged_price: Optional[float] = None
    balance_after: Optional[float] = None
    low_balance: bool = False
    error_code: Optional[ErrorCode] = None
    error_message: Optional[str] = None
    replayed: bool = False


# --- HTTP payloads ---


class RentalRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    country_code: str = Field(..., min_length=1, description="Internal country code")
    service_code: str = Field(..., min_length=1, description="Internal service code")
    max_price: Optional[float] = Field(default=None, gt=0)
    use_dynamic_price: bool = False
    prioritize_price: bool = True
    expected_price: Optional[float] = Field(
        default=None,
        ge=0,
        description="Price the client displayed. Re-validated against the catalog.",
    )
    rental_type: RentalType = "standard"
    extra_services_count: int = Field(default=0, ge=0)
    duration_hours: int = Field(default=0, ge=0)


class CancelRequest(BaseModel):
    user_id: str


class DepositRequest(BaseModel):
    amount: float = Field(..., gt=0)


class PreferencesUpdate(BaseModel):
    preferred_provider: Optional[str] = None
    fallback_enabled: Optional[bool] = None
    min_success_rate: Optional[float] = Field(default=None, ge=0, le=100)
    max_response_time_ms: Optional[int] = Field(default=None, ge=0)
    retry_attempts: Optional[int] = Field(default=None, ge=1)
    retry_delay_ms: Optional[int] = Field(default=None, ge=0)


class ProviderHealthResponse(BaseModel):
    provider: str
    provider_name: str
    status: ProviderStatus
    success_rate: Optional[float]
    avg_response_time_ms: Optional[int]
    total_requests: int
    successful_requests: int
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    is_routing_enabled: bool


class HealthResponse(BaseModel):
    providers: list[ProviderHealthResponse]
    min_success_rate: float
    max_response_time_ms: int
