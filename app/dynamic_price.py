import asyncio
import logging
import time
from typing import Optional

from app.config import settings
from app.errors import ErrorCode, ProviderError
from app.health import HealthStore
from app.models import (
    AcquisitionRequest,
    AcquisitionResult,
    MarketPriceList,
    MarketPriceOption,
    RequestType,
)
from app.providers import ProviderRegistry

logger = logging.getLogger(__name__)


def choose_market_option(
    price_list: MarketPriceList,
    prioritize_price: bool = True,
    max_price: Optional[float] = None,
    min_stock: int = settings.dynamic_price_min_stock,
) -> Optional[MarketPriceOption]:
    """Pick a sub-market price: cheapest, or the one with most numbers left."""
    options = [o for o in price_list.options if o.count >= min_stock]
    if max_price is not None:
        options = [o for o in options if o.price <= max_price]
    if not options:
        return None
    if prioritize_price:
        return min(options, key=lambda o: (o.price, -o.count))
    return max(options, key=lambda o: (o.count, -o.price))


class DynamicPriceProber:
    """Single-shot acquisition at a below-list market price.

    Tries the first provider (in registry order) that publishes a usable
    market option. Exactly one purchase is attempted; any failure returns
    ``None`` so the caller can fall through to the standard failover path.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        health: HealthStore,
        timeout: float = settings.attempt_timeout_seconds,
        min_stock: int = settings.dynamic_price_min_stock,
    ):
        self._registry = registry
        self._health = health
        self._timeout = timeout
        self._min_stock = min_stock

    async def _find_option(self, request: AcquisitionRequest):
        for provider_id, adapter in self._registry.items():
            try:
                price_list = await asyncio.wait_for(
                    adapter.get_market_prices(request.country_code, request.service_code),
                    timeout=self._timeout,
                )
            except Exception as exc:
                logger.warning("Market price lookup failed on %s: %s", provider_id, exc)
                continue
            if price_list is None:
                continue
            option = choose_market_option(
                price_list, request.prioritize_price, request.max_price, self._min_stock
            )
            if option is not None:
                return provider_id, price_list, option
        return None

    async def try_acquire(self, request: AcquisitionRequest) -> Optional[AcquisitionResult]:
        found = await self._find_option(request)
        if found is None:
            logger.info(
                "No market price available for %s/%s", request.country_code, request.service_code
            )
            return None

        provider_id, price_list, option = found
        adapter = self._registry.get(provider_id)
        logger.info(
            "Trying market price %.2f on %s (regular %.2f, %d left)",
            option.price, provider_id, price_list.regular_price, option.count,
        )

        started = time.monotonic()
        error: Optional[str] = None
        purchase = None
        try:
            purchase = await asyncio.wait_for(
                adapter.purchase(request.country_code, request.service_code, option.price),
                timeout=self._timeout,
            )
        except ProviderError as exc:
            error = f"{exc.code.value}: {exc.reason}"
        except asyncio.TimeoutError:
            error = ErrorCode.TIMEOUT.value
        except Exception as exc:
            logger.exception("Unexpected error on market-price purchase from %s", provider_id)
            error = f"{ErrorCode.PROVIDER_ERROR.value}: {exc}"
        if purchase is None and error is None:
            error = f"{ErrorCode.PROVIDER_ERROR.value}: empty purchase result"
        elapsed_ms = int((time.monotonic() - started) * 1000)

        await self._health.record_request(
            provider_id,
            RequestType.PURCHASE,
            success=purchase is not None,
            latency_ms=elapsed_ms,
            error_message=error,
            metadata={"country_code": request.country_code, "service_code": request.service_code},
        )

        if purchase is None:
            logger.warning("Market-price purchase failed on %s: %s", provider_id, error)
            return None

        return AcquisitionResult(
            success=True,
            provider=provider_id,
            external_id=purchase.external_id,
            phone_number=purchase.phone_number,
            cost=purchase.cost,
            used_dynamic_price=True,
            regular_price=price_list.regular_price,
            savings_amount=round(price_list.regular_price - purchase.cost, 4),
            response_time_ms=elapsed_ms,
            retried_count=0,
            attempted_providers=[provider_id],
        )
