from datetime import datetime, timedelta
from typing import Optional

from app.health import HealthStore, is_usable
from app.models import (
    ProviderHealthRecord,
    ProviderPreferences,
    ProviderStatus,
    StockSnapshot,
    utcnow,
)
from app.providers import ProviderRegistry

FAST_RESPONSE_MS = 2000
SLOW_RESPONSE_MS = 5000
DEEP_STOCK = 100
SHALLOW_STOCK = 10
RECENT_SUCCESS = timedelta(hours=1)
STALE_SUCCESS = timedelta(hours=24)


def score(
    health: Optional[ProviderHealthRecord], stock: int, now: Optional[datetime] = None
) -> float:
    """Rank a provider in [0, 100] from its health record and current stock."""
    if stock <= 0:
        return 0.0
    if health is None:
        return 50.0

    value = health.success_rate

    if health.avg_response_time_ms < FAST_RESPONSE_MS:
        value += 10
    elif health.avg_response_time_ms > SLOW_RESPONSE_MS:
        value -= 10

    if stock > DEEP_STOCK:
        value += 10
    elif stock < SHALLOW_STOCK:
        value -= 10

    if health.last_success_at is not None:
        since = (now or utcnow()) - health.last_success_at
        if since < RECENT_SUCCESS:
            value += 5
        elif since > STALE_SUCCESS:
            value -= 10

    return max(0.0, min(100.0, value))


def select_optimal_provider(
    provider_ids: list[str],
    health: dict[str, Optional[ProviderHealthRecord]],
    stock: StockSnapshot,
    preferences: ProviderPreferences,
    now: Optional[datetime] = None,
) -> Optional[str]:
    in_stock = [p for p in provider_ids if stock.for_provider(p) > 0]
    if not in_stock:
        return None

    preferred = preferences.preferred_provider
    if preferred != "auto" and preferred in in_stock:
        return preferred

    def unavailable(pid: str) -> bool:
        record = health.get(pid)
        return record is not None and record.status == ProviderStatus.UNAVAILABLE

    candidates = in_stock
    if any(unavailable(p) for p in provider_ids):
        reachable = [p for p in in_stock if not unavailable(p)]
        if reachable:
            candidates = reachable

    # max() keeps the first of equal scores, so ties go to declaration order
    return max(candidates, key=lambda p: score(health.get(p), stock.for_provider(p), now))


def build_try_order(
    provider_ids: list[str],
    health: dict[str, Optional[ProviderHealthRecord]],
    stock: StockSnapshot,
    preferences: ProviderPreferences,
    optimal: Optional[str],
) -> list[str]:
    eligible = [
        p for p in provider_ids
        if stock.for_provider(p) > 0 and is_usable(health.get(p), preferences)
    ]

    if optimal is None or optimal not in eligible:
        return eligible

    order = [optimal]
    if preferences.fallback_enabled:
        order.extend(p for p in eligible if p != optimal)
    return order


class ProviderSelector:
    """
    Orders providers for one acquisition from health, stock and preferences.

    Routing logic:
    1. An explicitly preferred provider with stock is chosen outright.
    2. Providers marked UNAVAILABLE are passed over when any other provider
       has stock.
    3. Remaining providers with stock are scored; the highest score wins and
       ties go to the provider declared first in the registry.
    4. The winner is tried first when it passes the usability gate; with
       fallback enabled every other usable provider with stock follows in
       registry order. If the winner fails the gate, the try-order is all
       usable providers with stock in registry order.
    """

    def __init__(self, registry: ProviderRegistry, health: HealthStore):
        self._registry = registry
        self._health = health

    async def try_order(
        self,
        stock: StockSnapshot,
        preferences: ProviderPreferences,
        now: Optional[datetime] = None,
    ) -> list[str]:
        provider_ids = self._registry.ids()
        health = await self._health.snapshot(provider_ids)
        optimal = select_optimal_provider(provider_ids, health, stock, preferences, now)
        return build_try_order(provider_ids, health, stock, preferences, optimal)
