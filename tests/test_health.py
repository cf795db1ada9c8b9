import asyncio
from datetime import timedelta

from app.health import HealthStore, classify_status, compute_health, is_usable
from app.models import (
    ProviderPreferences,
    ProviderRequestLog,
    ProviderStatus,
    RequestType,
    utcnow,
)


def record_many(store: HealthStore, provider: str, successes: int, failures: int, latency_ms: int = 500):
    async def _run():
        for _ in range(failures):
            await store.record_request(provider, RequestType.PURCHASE, False, latency_ms, "NO_NUMBERS")
        for _ in range(successes):
            await store.record_request(provider, RequestType.PURCHASE, True, latency_ms)
    asyncio.run(_run())


def get_health(store: HealthStore, provider: str):
    return asyncio.run(store.get_health(provider))


class TestStatusClassification:

    def test_below_fifty_is_unavailable_for_any_latency(self):
        for latency in (0, 100, 1999, 5000, 5001, 60_000):
            assert classify_status(49.99, latency) == ProviderStatus.UNAVAILABLE
            assert classify_status(0, latency) == ProviderStatus.UNAVAILABLE

    def test_exactly_fifty_is_degraded(self):
        assert classify_status(50, 100) == ProviderStatus.DEGRADED

    def test_below_ninety_is_degraded(self):
        assert classify_status(89.9, 100) == ProviderStatus.DEGRADED

    def test_slow_responses_degrade_a_reliable_provider(self):
        assert classify_status(100, 5001) == ProviderStatus.DEGRADED
        assert classify_status(100, 5000) == ProviderStatus.HEALTHY

    def test_exactly_ninety_and_fast_is_healthy(self):
        assert classify_status(90, 1200) == ProviderStatus.HEALTHY


class TestUsability:

    def test_no_history_is_usable(self):
        assert is_usable(None, ProviderPreferences())

    def test_degraded_below_operator_threshold_is_not_usable(self):
        health = compute_health("p1", [
            ProviderRequestLog(provider="p1", request_type=RequestType.PURCHASE, success=i < 8, response_time_ms=100)
            for i in range(10)
        ])
        assert health.status == ProviderStatus.DEGRADED
        assert not is_usable(health, ProviderPreferences(min_success_rate=90))
        assert is_usable(health, ProviderPreferences(min_success_rate=75))

    def test_slow_provider_is_not_usable(self):
        health = compute_health("p1", [
            ProviderRequestLog(provider="p1", request_type=RequestType.PURCHASE, success=True, response_time_ms=3000)
        ])
        assert health.status == ProviderStatus.HEALTHY
        assert not is_usable(health, ProviderPreferences(max_response_time_ms=2500))

    def test_unavailable_is_never_usable(self):
        health = compute_health("p1", [
            ProviderRequestLog(provider="p1", request_type=RequestType.PURCHASE, success=False, response_time_ms=100)
        ])
        assert not is_usable(health, ProviderPreferences(min_success_rate=0))


class TestComputeHealth:

    def test_empty_rows_give_no_record(self):
        assert compute_health("p1", []) is None

    def test_metrics_and_timestamps(self):
        now = utcnow()
        rows = [
            ProviderRequestLog(provider="p1", request_type=RequestType.PURCHASE, success=False,
                               response_time_ms=300, created_at=now),
            ProviderRequestLog(provider="p1", request_type=RequestType.PURCHASE, success=True,
                               response_time_ms=100, created_at=now - timedelta(minutes=5)),
            ProviderRequestLog(provider="p1", request_type=RequestType.PURCHASE, success=True,
                               response_time_ms=201, created_at=now - timedelta(minutes=10)),
        ]
        health = compute_health("p1", rows)

        assert health.total_requests == 3
        assert health.successful_requests == 2
        assert health.failed_requests == 1
        assert round(health.success_rate, 2) == 66.67
        assert health.avg_response_time_ms == 200
        assert health.last_failure_at == now
        assert health.last_success_at == now - timedelta(minutes=5)

    def test_never_failed_has_no_failure_timestamp(self):
        rows = [ProviderRequestLog(provider="p1", request_type=RequestType.PURCHASE, success=True, response_time_ms=10)]
        health = compute_health("p1", rows)
        assert health.last_failure_at is None
        assert health.last_success_at is not None


class TestHealthStore:

    def test_record_created_lazily(self):
        store = HealthStore()
        assert get_health(store, "p1") is None
        record_many(store, "p1", successes=1, failures=0)
        assert get_health(store, "p1").status == ProviderStatus.HEALTHY

    def test_all_failures_is_unavailable(self):
        store = HealthStore()
        record_many(store, "p1", successes=0, failures=10)
        health = get_health(store, "p1")
        assert health.success_rate == 0
        assert health.status == ProviderStatus.UNAVAILABLE

    def test_recompute_uses_latest_window_only(self):
        store = HealthStore(window_size=100)
        record_many(store, "p1", successes=0, failures=100)
        assert get_health(store, "p1").status == ProviderStatus.UNAVAILABLE

        record_many(store, "p1", successes=100, failures=0)
        health = get_health(store, "p1")
        assert health.success_rate == 100
        assert health.total_requests == 100
        assert health.status == ProviderStatus.HEALTHY

    def test_partial_recovery_is_degraded(self):
        store = HealthStore(window_size=10)
        record_many(store, "p1", successes=0, failures=10)
        record_many(store, "p1", successes=7, failures=0)
        # Window: 3 failures + 7 successes = 70%
        health = get_health(store, "p1")
        assert health.success_rate == 70
        assert health.status == ProviderStatus.DEGRADED

    def test_providers_tracked_independently(self):
        store = HealthStore()
        record_many(store, "p1", successes=5, failures=0)
        record_many(store, "p2", successes=0, failures=5)

        assert get_health(store, "p1").success_rate == 100
        assert get_health(store, "p2").success_rate == 0
        assert [h.provider for h in asyncio.run(store.get_all_health())] == ["p1", "p2"]

    def test_recent_requests_newest_first(self):
        store = HealthStore()
        record_many(store, "p1", successes=2, failures=1)
        rows = store.recent_requests("p1")
        assert len(rows) == 3
        assert rows[0].created_at >= rows[-1].created_at
        assert store.recent_requests("missing") == []

    def test_reset_clears_everything(self):
        store = HealthStore()
        record_many(store, "p1", successes=1, failures=1)
        store.reset()
        assert get_health(store, "p1") is None
        assert store.recent_requests() == []
