import logging
import threading
from collections import defaultdict, deque
from datetime import datetime
from itertools import islice
from typing import Any, Optional

from app.config import settings
from app.models import (
    ProviderHealthRecord,
    ProviderPreferences,
    ProviderRequestLog,
    ProviderStatus,
    RequestType,
    utcnow,
)

logger = logging.getLogger(__name__)

UNAVAILABLE_BELOW = 50
DEGRADED_BELOW = 90
SLOW_RESPONSE_MS = 5000


def classify_status(success_rate: float, avg_response_time_ms: float) -> ProviderStatus:
    if success_rate < UNAVAILABLE_BELOW:
        return ProviderStatus.UNAVAILABLE
    if success_rate < DEGRADED_BELOW or avg_response_time_ms > SLOW_RESPONSE_MS:
        return ProviderStatus.DEGRADED
    return ProviderStatus.HEALTHY


def is_usable(health: Optional[ProviderHealthRecord], preferences: ProviderPreferences) -> bool:
    """Routing gate: stricter than status, tuned by operator preferences.

    A provider without history is usable.
    """
    if health is None:
        return True
    if health.status == ProviderStatus.UNAVAILABLE:
        return False
    if health.success_rate < preferences.min_success_rate:
        return False
    if health.avg_response_time_ms > preferences.max_response_time_ms:
        return False
    return True


def compute_health(
    provider: str, rows: list[ProviderRequestLog], now: Optional[datetime] = None
) -> Optional[ProviderHealthRecord]:
    """Build a health record from log rows ordered newest first."""
    if not rows:
        return None

    total = len(rows)
    successful = sum(1 for r in rows if r.success)
    success_rate = successful * 100 / total
    avg_response_time = sum(r.response_time_ms for r in rows) / total

    last_success = next((r.created_at for r in rows if r.success), None)
    last_failure = next((r.created_at for r in rows if not r.success), None)

    return ProviderHealthRecord(
        provider=provider,
        status=classify_status(success_rate, avg_response_time),
        success_rate=success_rate,
        avg_response_time_ms=round(avg_response_time),
        total_requests=total,
        successful_requests=successful,
        failed_requests=total - successful,
        last_success_at=last_success,
        last_failure_at=last_failure,
        last_checked_at=now or utcnow(),
    )


class HealthStore:
    """Request log plus one rolling health record per provider.

    Every recorded request is appended to the log and the provider's record
    is recomputed from scratch over its latest ``window_size`` rows.
    Records are created on the first request and never deleted.

    Thread-safe: the log and the records share one lock so a reader never
    sees a record that disagrees with the log it was computed from.
    """

    def __init__(
        self,
        window_size: int = settings.health_window_size,
        retention: int = settings.request_log_retention,
    ):
        self.window_size = window_size
        self._retention = retention
        self._log: dict[str, deque[ProviderRequestLog]] = defaultdict(
            lambda: deque(maxlen=self._retention)
        )
        self._health: dict[str, ProviderHealthRecord] = {}
        self._lock = threading.Lock()

    async def record_request(
        self,
        provider: str,
        request_type: RequestType,
        success: bool,
        latency_ms: int,
        error_message: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ProviderHealthRecord:
        metadata = metadata or {}
        entry = ProviderRequestLog(
            provider=provider,
            request_type=request_type,
            success=success,
            response_time_ms=max(0, int(latency_ms)),
            error_message=error_message,
            country_code=metadata.get("country_code"),
            service_code=metadata.get("service_code"),
            order_id=metadata.get("order_id"),
        )

        with self._lock:
            log = self._log[provider]
            log.append(entry)
            window = list(islice(reversed(log), self.window_size))
            record = compute_health(provider, window)
            previous = self._health.get(provider)
            self._health[provider] = record

        if previous is not None and previous.status != record.status:
            logger.warning(
                "Provider %s status changed %s -> %s (success_rate=%.1f, avg=%dms)",
                provider, previous.status.value, record.status.value,
                record.success_rate, record.avg_response_time_ms,
            )
        return record

    async def get_health(self, provider: str) -> Optional[ProviderHealthRecord]:
        with self._lock:
            return self._health.get(provider)

    async def get_all_health(self) -> list[ProviderHealthRecord]:
        with self._lock:
            return [self._health[p] for p in sorted(self._health)]

    async def snapshot(self, providers: list[str]) -> dict[str, Optional[ProviderHealthRecord]]:
        with self._lock:
            return {p: self._health.get(p) for p in providers}

    def recent_requests(self, provider: Optional[str] = None, limit: int = 50) -> list[ProviderRequestLog]:
        with self._lock:
            if provider is not None:
                rows = list(self._log.get(provider, ()))
            else:
                rows = [r for log in self._log.values() for r in log]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows[:limit]

    def reset(self):
        with self._lock:
            self._log.clear()
            self._health.clear()
