import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Optional

from app.config import settings
from app.dynamic_price import DynamicPriceProber
from app.errors import ErrorCode, ProviderError
from app.health import HealthStore
from app.models import (
    AcquisitionRequest,
    AcquisitionResult,
    ProviderPreferences,
    Purchase,
    RequestType,
)
from app.preferences import PreferencesStore
from app.providers import ProviderRegistry
from app.router import ProviderSelector
from app.stock import StockProber

logger = logging.getLogger(__name__)


class AcquisitionState(str, Enum):
    IDLE = "idle"
    PROBING_STOCK = "probing_stock"
    NO_STOCK = "no_stock"
    ROUTING = "routing"
    ATTEMPTING = "attempting"
    RETRY_BACKOFF = "retry_backoff"
    NEXT_PROVIDER = "next_provider"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"


def backoff_delay_ms(retry_delay_ms: int, attempt_index: int) -> int:
    """Delay after failed attempt ``attempt_index`` (1-based) on the same provider."""
    return retry_delay_ms * 2 ** (attempt_index - 1)


class AcquisitionOrchestrator:
    """Drives stock probing, routing and the retry/failover loop for one rental.

    Every purchase attempt is timed and reported to the health store whether
    it succeeds or not. Provider exceptions never escape: each is normalized
    to a ``ProviderError`` and the loop moves on.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        health: HealthStore,
        preferences: PreferencesStore,
        stock_prober: Optional[StockProber] = None,
        selector: Optional[ProviderSelector] = None,
        dynamic_prober: Optional[DynamicPriceProber] = None,
        attempt_timeout: float = settings.attempt_timeout_seconds,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._registry = registry
        self._health = health
        self._preferences = preferences
        self._stock = stock_prober or StockProber(registry, attempt_timeout)
        self._selector = selector or ProviderSelector(registry, health)
        self._dynamic = dynamic_prober or DynamicPriceProber(registry, health, attempt_timeout)
        self._timeout = attempt_timeout
        self._sleep = sleep

    async def get_preferences(self) -> ProviderPreferences:
        return await self._preferences.get_preferences()

    def max_duration_seconds(self, prefs: ProviderPreferences, use_dynamic_price: bool = False) -> float:
        """Upper bound on how long ``acquire`` can run with ``prefs``.

        Every provider uses its full retry budget with each attempt hitting
        the timeout, after one stock probe round and, for dynamic pricing,
        one market lookup per provider plus a single purchase.
        """
        providers = len(self._registry)
        backoff_ms = sum(backoff_delay_ms(prefs.retry_delay_ms, i) for i in range(1, prefs.retry_attempts))
        per_provider = prefs.retry_attempts * self._timeout + backoff_ms / 1000
        total = self._timeout + providers * per_provider
        if use_dynamic_price:
            total += (providers + 1) * self._timeout
        return total

    def _transition(self, trace: Optional[list], state: AcquisitionState, provider: Optional[str] = None):
        logger.debug("Acquisition -> %s%s", state.value, f" ({provider})" if provider else "")
        if trace is not None:
            trace.append((state, provider))

    async def _attempt(
        self, provider_id: str, request: AcquisitionRequest
    ) -> tuple[Optional[Purchase], Optional[ProviderError], int]:
        adapter = self._registry.get(provider_id)
        started = time.monotonic()
        purchase: Optional[Purchase] = None
        error: Optional[ProviderError] = None
        try:
            purchase = await asyncio.wait_for(
                adapter.purchase(request.country_code, request.service_code, request.max_price),
                timeout=self._timeout,
            )
        except ProviderError as exc:
            error = exc
        except asyncio.TimeoutError:
            error = ProviderError(provider_id, ErrorCode.TIMEOUT, f"no response within {self._timeout}s")
        except Exception as exc:
            logger.exception("Unexpected error from %s during purchase", provider_id)
            error = ProviderError(provider_id, ErrorCode.PROVIDER_ERROR, str(exc))
        if purchase is None and error is None:
            error = ProviderError(provider_id, ErrorCode.PROVIDER_ERROR, "empty purchase result")
        elapsed_ms = int((time.monotonic() - started) * 1000)

        await self._health.record_request(
            provider_id,
            RequestType.PURCHASE,
            success=purchase is not None,
            latency_ms=elapsed_ms,
            error_message=None if error is None else f"{error.code.value}: {error.reason}",
            metadata={"country_code": request.country_code, "service_code": request.service_code},
        )
        return purchase, error, elapsed_ms

    async def acquire(
        self,
        request: AcquisitionRequest,
        preferences: Optional[ProviderPreferences] = None,
        trace: Optional[list] = None,
    ) -> AcquisitionResult:
        prefs = preferences or await self._preferences.get_preferences()
        started = time.monotonic()
        self._transition(trace, AcquisitionState.IDLE)

        if request.use_dynamic_price:
            dynamic = await self._dynamic.try_acquire(request)
            if dynamic is not None:
                self._transition(trace, AcquisitionState.SUCCESS, dynamic.provider)
                logger.info(
                    "Acquired %s from %s at market price (saved %s)",
                    dynamic.phone_number, dynamic.provider, dynamic.savings_amount,
                )
                return dynamic

        self._transition(trace, AcquisitionState.PROBING_STOCK)
        stock = await self._stock.probe(request.country_code, request.service_code)
        order = await self._selector.try_order(stock, prefs) if stock.total > 0 else []

        if not order:
            self._transition(trace, AcquisitionState.NO_STOCK)
            logger.warning(
                "No usable provider has stock for %s/%s", request.country_code, request.service_code
            )
            return AcquisitionResult(
                success=False,
                error_code=ErrorCode.NO_STOCK_AVAILABLE,
                error_message="No usable provider has stock for this service",
                response_time_ms=int((time.monotonic() - started) * 1000),
            )

        self._transition(trace, AcquisitionState.ROUTING)
        logger.info("Try-order for %s/%s: %s", request.country_code, request.service_code, order)

        failed = 0
        attempted: list[str] = []
        last_error: Optional[ProviderError] = None

        for position, provider_id in enumerate(order):
            if position:
                self._transition(trace, AcquisitionState.NEXT_PROVIDER, provider_id)
                logger.info("Failing over to %s", provider_id)
            attempted.append(provider_id)

            for attempt in range(1, prefs.retry_attempts + 1):
                self._transition(trace, AcquisitionState.ATTEMPTING, provider_id)
                purchase, error, elapsed_ms = await self._attempt(provider_id, request)

                if purchase is not None:
                    self._transition(trace, AcquisitionState.SUCCESS, provider_id)
                    logger.info(
                        "Acquired %s from %s on attempt %d (%dms)",
                        purchase.phone_number, provider_id, attempt, elapsed_ms,
                    )
                    return AcquisitionResult(
                        success=True,
                        provider=provider_id,
                        external_id=purchase.external_id,
                        phone_number=purchase.phone_number,
                        cost=purchase.cost,
                        response_time_ms=int((time.monotonic() - started) * 1000),
                        retried_count=failed,
                        attempted_providers=attempted,
                    )

                failed += 1
                last_error = error
                logger.warning(
                    "Attempt %d/%d on %s failed: %s",
                    attempt, prefs.retry_attempts, provider_id, error,
                )

                if not error.retryable:
                    logger.warning("%s cannot serve this request (%s), skipping", provider_id, error.code.value)
                    break

                if attempt < prefs.retry_attempts:
                    delay = backoff_delay_ms(prefs.retry_delay_ms, attempt)
                    self._transition(trace, AcquisitionState.RETRY_BACKOFF, provider_id)
                    await self._sleep(delay / 1000)

        self._transition(trace, AcquisitionState.EXHAUSTED)
        logger.error(
            "All providers failed for %s/%s after %d attempts, last error: %s",
            request.country_code, request.service_code, failed, last_error,
        )
        return AcquisitionResult(
            success=False,
            provider=last_error.provider_id if last_error else None,
            error_code=ErrorCode.ALL_PROVIDERS_FAILED,
            error_message=str(last_error) if last_error else "All providers failed",
            last_provider_error=last_error.code if last_error else None,
            response_time_ms=int((time.monotonic() - started) * 1000),
            retried_count=failed,
            attempted_providers=attempted,
        )
