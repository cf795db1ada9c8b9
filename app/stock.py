import asyncio
import logging

from app.config import settings
from app.errors import ProviderError
from app.models import StockSnapshot
from app.providers import ProviderRegistry

logger = logging.getLogger(__name__)


class StockProber:
    """Sums current inventory for a (country, service) pair across providers.

    A provider that errors, times out or has no mapping for the service
    contributes zero; it never aborts the probe.
    """

    def __init__(self, registry: ProviderRegistry, timeout: float = settings.attempt_timeout_seconds):
        self._registry = registry
        self._timeout = timeout

    async def _probe_one(self, provider_id: str, country_code: str, service_code: str) -> int:
        adapter = self._registry.get(provider_id)
        try:
            count = await asyncio.wait_for(
                adapter.get_stock(country_code, service_code), timeout=self._timeout
            )
        except ProviderError as exc:
            logger.warning("Stock check failed for %s: %s", provider_id, exc.reason)
            return 0
        except asyncio.TimeoutError:
            logger.warning("Stock check timed out for %s", provider_id)
            return 0
        except Exception:
            logger.exception("Unexpected error checking stock on %s", provider_id)
            return 0
        return max(0, int(count or 0))

    async def probe(self, country_code: str, service_code: str) -> StockSnapshot:
        provider_ids = self._registry.ids()
        counts = await asyncio.gather(
            *(self._probe_one(pid, country_code, service_code) for pid in provider_ids)
        )
        snapshot = StockSnapshot(
            country_code=country_code,
            service_code=service_code,
            by_provider=dict(zip(provider_ids, counts)),
        )
        logger.info(
            "Stock for %s/%s: %s (total=%d)",
            country_code, service_code, snapshot.by_provider, snapshot.total,
        )
        return snapshot
