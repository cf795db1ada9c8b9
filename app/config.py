from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RENTAL_")

    log_level: str = "INFO"

    # Health tracking
    health_window_size: int = 100
    request_log_retention: int = 10_000

    # Acquisition
    attempt_timeout_seconds: float = 30.0
    dynamic_price_min_stock: int = 5

    # Idempotency
    idempotency_processing_timeout_seconds: int = 30
    idempotency_ttl_hours: int = 24

    # Pricing
    price_tolerance: float = 1
    min_profit_margin: float = 0.05
    provider_cost_rate: float = 1.0

    # Rentals
    rental_ttl_minutes: int = 20
    low_balance_threshold: float = 10_000

    # Provider preference defaults, used when nothing has been persisted
    default_preferred_provider: str = "auto"
    default_fallback_enabled: bool = True
    default_min_success_rate: float = 90
    default_max_response_time_ms: int = 5000
    default_retry_attempts: int = 2
    default_retry_delay_ms: int = 1000


settings = Settings()
