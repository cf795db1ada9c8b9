import hashlib
import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Optional

from app.config import settings
from app.models import IdempotencyCheck, IdempotencyRecord, IdempotencyStatus, utcnow

logger = logging.getLogger(__name__)


def generate_idempotency_key(user_id: str, params: dict[str, Any]) -> str:
    content = f"{user_id}:{json.dumps(params, sort_keys=True, default=str)}"
    return hashlib.sha256(content.encode()).hexdigest()


class IdempotencyGuard:
    """Exactly-once gate for side-effecting requests.

    ``check`` is the mutex: looking up a key and registering it as
    processing happen under one lock, so of two racing requests with the
    same key only one sees ``is_new=True``.

    Each registration gets an ``owner`` token and a lease. A processing
    record whose lease ran out may be taken over by a new request; the
    previous holder's ``complete``/``fail`` calls are then ignored and
    ``owns`` returns False for it.

    In production this would be a table with a unique constraint on the key
    (or Redis SET NX) with the same state transitions.
    """

    def __init__(
        self,
        processing_timeout: timedelta = timedelta(seconds=settings.idempotency_processing_timeout_seconds),
        ttl: timedelta = timedelta(hours=settings.idempotency_ttl_hours),
    ):
        self._processing_timeout = processing_timeout
        self._ttl = ttl
        self._records: dict[str, IdempotencyRecord] = {}
        self._lock = threading.Lock()

    async def check(
        self,
        key: str,
        actor: str,
        params: dict[str, Any],
        now: Optional[datetime] = None,
        lease: Optional[timedelta] = None,
    ) -> IdempotencyCheck:
        """Register ``key`` or report what is already known about it.

        ``lease`` is how long the caller expects to hold the key; the
        configured processing timeout is the lower bound.
        """
        now = now or utcnow()
        with self._lock:
            existing = self._records.get(key)
            if existing is not None and existing.expires_at <= now:
                existing = None

            if existing is not None:
                if existing.actor != actor:
                    logger.warning("Key %s belongs to another user, rejecting", key[:12])
                    return IdempotencyCheck(is_new=False, status=existing.status)
                if existing.status == IdempotencyStatus.COMPLETED:
                    logger.info("Request %s already processed, replaying", key[:12])
                    return IdempotencyCheck(
                        is_new=False,
                        status=IdempotencyStatus.COMPLETED,
                        cached_data=existing.response_body,
                        cached_status=existing.response_status,
                    )
                if existing.status == IdempotencyStatus.PROCESSING:
                    if now <= existing.lease_until:
                        logger.warning("Request %s is already in progress", key[:12])
                        return IdempotencyCheck(is_new=False, status=IdempotencyStatus.PROCESSING)
                    logger.warning("Lease on request %s ran out, taking over", key[:12])
                else:
                    logger.info("Previous attempt of %s failed, allowing retry", key[:12])

            hold = max(self._processing_timeout, lease) if lease else self._processing_timeout
            record = IdempotencyRecord(
                key=key,
                actor=actor,
                request_body=params,
                created_at=now,
                lease_until=now + hold,
                expires_at=now + self._ttl,
            )
            self._records[key] = record
        return IdempotencyCheck(is_new=True, owner=record.owner)

    def _held_by(self, key: str, owner: Optional[str]) -> Optional[IdempotencyRecord]:
        record = self._records.get(key)
        if record is None:
            logger.warning("Unknown idempotency key %s", key[:12])
            return None
        if owner is not None and record.owner != owner:
            logger.warning("Request %s was taken over, ignoring stale result", key[:12])
            return None
        return record

    async def owns(self, key: str, owner: str) -> bool:
        with self._lock:
            record = self._records.get(key)
            return (
                record is not None
                and record.owner == owner
                and record.status == IdempotencyStatus.PROCESSING
            )

    async def complete(
        self,
        key: str,
        data: dict[str, Any],
        status: int = 200,
        ref_id: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> bool:
        with self._lock:
            record = self._held_by(key, owner)
            if record is None:
                return False
            self._records[key] = record.model_copy(update={
                "status": IdempotencyStatus.COMPLETED,
                "response_body": data,
                "response_status": status,
                "ref_id": ref_id,
                "completed_at": utcnow(),
            })
        return True

    async def fail(self, key: str, error: str, status: int = 500, owner: Optional[str] = None) -> bool:
        with self._lock:
            record = self._held_by(key, owner)
            if record is None:
                return False
            self._records[key] = record.model_copy(update={
                "status": IdempotencyStatus.FAILED,
                "response_body": {"error": error},
                "response_status": status,
                "completed_at": utcnow(),
            })
        return True

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        with self._lock:
            return self._records.get(key)

    def clear(self):
        with self._lock:
            self._records.clear()
