import logging
import threading
from typing import Optional

from app.config import settings
from app.models import ProviderPreferences

logger = logging.getLogger(__name__)


def default_preferences() -> ProviderPreferences:
    return ProviderPreferences(
        preferred_provider=settings.default_preferred_provider,
        fallback_enabled=settings.default_fallback_enabled,
        min_success_rate=settings.default_min_success_rate,
        max_response_time_ms=settings.default_max_response_time_ms,
        retry_attempts=settings.default_retry_attempts,
        retry_delay_ms=settings.default_retry_delay_ms,
    )


class PreferencesStore:
    """Operator routing preferences. Falls back to defaults until something is saved."""

    def __init__(self, initial: Optional[ProviderPreferences] = None):
        self._saved = initial
        self._lock = threading.Lock()

    async def get_preferences(self) -> ProviderPreferences:
        with self._lock:
            saved = self._saved
        return saved if saved is not None else default_preferences()

    async def update_preferences(self, **changes) -> ProviderPreferences:
        changes = {k: v for k, v in changes.items() if v is not None}
        with self._lock:
            current = self._saved if self._saved is not None else default_preferences()
            updated = ProviderPreferences.model_validate({**current.model_dump(), **changes})
            self._saved = updated
        logger.info("Provider preferences updated: %s", changes)
        return updated

    def reset(self):
        with self._lock:
            self._saved = None
