import asyncio
from datetime import timedelta

from app.errors import ErrorCode, PersistenceError, ProviderError
from app.health import HealthStore
from app.idempotency import IdempotencyGuard, generate_idempotency_key
from app.models import (
    AcquisitionRequest,
    ActivationStatus,
    CatalogEntry,
    IdempotencyStatus,
    OrderStatus,
    Purchase,
    RequestType,
    utcnow,
)
from app.orchestrator import AcquisitionOrchestrator
from app.preferences import PreferencesStore
from app.providers import MockProvider, ProviderRegistry
from app.repositories import BalanceRepository, CatalogRepository, OrderRepository
from app.transactions import TransactionCoordinator

TELEGRAM = CatalogEntry(country_code="vn", service_code="telegram", base_price=8000, cost_price=5000)


async def no_sleep(seconds: float):
    return None


class FailingOrders(OrderRepository):
    async def create(self, **fields):
        raise PersistenceError("database unavailable")


class UncancellableProvider(MockProvider):
    async def cancel(self, external_id: str) -> None:
        raise ProviderError(self.id, ErrorCode.PROVIDER_UNAVAILABLE, "cancel rejected")


class RepricingCatalog(CatalogRepository):
    """Returns the list price, then a higher one on every later lookup."""

    def __init__(self):
        super().__init__([TELEGRAM])
        self.lookups = 0

    async def get_price(self, country_code, service_code):
        self.lookups += 1
        entry = await super().get_price(country_code, service_code)
        if self.lookups > 1:
            return entry.model_copy(update={"base_price": 9000})
        return entry


class TakeoverProvider(MockProvider):
    """Lets a retry of the same request take over its key mid-purchase."""

    guard = None
    key = None

    async def purchase(self, country_code, service_code, max_price=None):
        await self.guard.check(self.key, "u1", {}, now=utcnow() + timedelta(hours=1))
        return await super().purchase(country_code, service_code, max_price)


class Harness:
    def __init__(
        self, *providers, balance=100_000, orders=None, catalog=None, idempotency=None,
        rental_ttl=timedelta(minutes=20), **coordinator_options,
    ):
        self.registry = ProviderRegistry(list(providers))
        self.health = HealthStore()
        self.idempotency = idempotency or IdempotencyGuard()
        self.balances = BalanceRepository({"u1": balance})
        self.orders = orders or OrderRepository()
        self.catalog = catalog or CatalogRepository([TELEGRAM])
        orchestrator = AcquisitionOrchestrator(
            self.registry, self.health, PreferencesStore(), sleep=no_sleep
        )
        self.coordinator = TransactionCoordinator(
            self.registry, orchestrator, self.health, self.idempotency,
            self.balances, self.orders, self.catalog, rental_ttl=rental_ttl, **coordinator_options,
        )

    def rent(self, **overrides):
        return asyncio.run(self.coordinator.create_rental(make_request(**overrides)))

    def balance(self, user_id="u1"):
        return asyncio.run(self.balances.get_balance(user_id))

    def cancel_rows(self):
        return [r for r in self.health.recent_requests() if r.request_type == RequestType.CANCEL]


def make_request(**overrides) -> AcquisitionRequest:
    fields = {"user_id": "u1", "country_code": "vn", "service_code": "telegram"}
    fields.update(overrides)
    return AcquisitionRequest(**fields)


def purchase(external_id: str, cost: float = 0.5) -> Purchase:
    return Purchase(external_id=external_id, phone_number="+84900000001", cost=cost)


class TestCreateRental:

    def test_successful_rental_charges_and_persists(self):
        provider = MockProvider(id="a", name="A").queue(purchase("x1"))
        h = Harness(provider)

        outcome = h.rent(expected_price=8000)

        assert outcome.success
        assert outcome.charged_price == 8000
        assert outcome.balance_after == 92_000
        assert outcome.order.external_id == "x1"
        assert outcome.order.status == OrderStatus.ACTIVE
        assert outcome.order.acquisition.provider == "a"
        assert outcome.order.expires_at > outcome.order.created_at
        assert h.balance() == 92_000
        assert h.orders.count() == 1
        [entry] = h.balances.ledger("u1")
        assert entry.amount == -8000
        assert entry.order_id == outcome.order.id

        key = generate_idempotency_key("u1", make_request(expected_price=8000).fingerprint())
        assert h.idempotency.get(key).status == IdempotencyStatus.COMPLETED

    def test_configured_margin_applies_to_client_price_check(self):
        provider = MockProvider(id="a", name="A").queue(purchase("x1"))
        h = Harness(provider, min_profit_margin=0.7)

        outcome = h.rent(expected_price=8500)

        assert outcome.success
        assert outcome.charged_price == 8500
        assert h.balance() == 91_500

    def test_unknown_service_is_rejected_before_contacting_providers(self):
        provider = MockProvider(id="a", name="A")
        h = Harness(provider)

        outcome = h.rent(service_code="unknown")

        assert outcome.error_code == ErrorCode.SERVICE_UNAVAILABLE
        assert provider.purchase_calls == []

    def test_stale_client_price_rejected_before_acquisition(self):
        provider = MockProvider(id="a", name="A")
        h = Harness(provider)

        outcome = h.rent(expected_price=7000)

        assert outcome.error_code == ErrorCode.PRICING_VALIDATION_FAILED
        assert provider.purchase_calls == []

    def test_insufficient_balance_rejected_before_acquisition(self):
        provider = MockProvider(id="a", name="A")
        h = Harness(provider, balance=1000)

        outcome = h.rent()

        assert outcome.error_code == ErrorCode.INSUFFICIENT_BALANCE
        assert provider.purchase_calls == []
        assert h.balance() == 1000

    def test_acquisition_failure_is_returned_and_may_be_retried(self):
        provider = MockProvider(id="a", name="A", stock=0)
        h = Harness(provider)

        first = h.rent()
        assert first.error_code == ErrorCode.NO_STOCK_AVAILABLE
        assert first.acquisition.error_code == ErrorCode.NO_STOCK_AVAILABLE

        provider.stock = 10
        provider.queue(purchase("x1"))
        second = h.rent()

        assert second.success
        assert not second.replayed
        assert h.balance() == 92_000


class TestIdempotentRentals:

    def test_concurrent_duplicates_charge_once(self):
        provider = MockProvider(id="a", name="A").queue(purchase("x1"), purchase("x2"))
        h = Harness(provider)

        async def scenario():
            return await asyncio.gather(
                h.coordinator.create_rental(make_request()),
                h.coordinator.create_rental(make_request()),
            )

        results = asyncio.run(scenario())

        assert sorted(r.success for r in results) == [False, True]
        conflict = next(r for r in results if not r.success)
        assert conflict.error_code == ErrorCode.IDEMPOTENCY_CONFLICT
        assert h.orders.count() == 1
        assert len(h.balances.ledger("u1")) == 1
        assert len(provider.purchase_calls) == 1

    def test_completed_request_is_replayed(self):
        provider = MockProvider(id="a", name="A").queue(purchase("x1"), purchase("x2"))
        h = Harness(provider)

        first = h.rent(idempotency_key="client-key")
        second = h.rent(idempotency_key="client-key")

        assert second.success
        assert second.replayed
        assert second.order.id == first.order.id
        assert h.balance() == 92_000
        assert len(provider.purchase_calls) == 1

    def test_late_duplicate_waits_for_the_slow_original(self):
        provider = MockProvider(id="a", name="A", latency=0.3).queue(purchase("x1"), purchase("x2"))
        h = Harness(provider, idempotency=IdempotencyGuard(processing_timeout=timedelta(milliseconds=100)))

        async def scenario():
            async def duplicate():
                await asyncio.sleep(0.15)
                return await h.coordinator.create_rental(make_request())

            return await asyncio.gather(h.coordinator.create_rental(make_request()), duplicate())

        original, duplicate = asyncio.run(scenario())

        assert original.success
        assert duplicate.error_code == ErrorCode.IDEMPOTENCY_CONFLICT
        assert h.orders.count() == 1
        assert len(provider.purchase_calls) == 1
        assert h.balance() == 92_000

    def test_taken_over_request_never_charges(self):
        provider = TakeoverProvider(id="a", name="A").queue(purchase("x1"))
        h = Harness(provider)
        key = generate_idempotency_key("u1", make_request().fingerprint())
        provider.guard, provider.key = h.idempotency, key

        outcome = h.rent()

        assert outcome.error_code == ErrorCode.IDEMPOTENCY_CONFLICT
        assert provider.cancelled == ["x1"]
        assert h.balance() == 100_000
        assert h.orders.count() == 0
        assert h.idempotency.get(key).status == IdempotencyStatus.PROCESSING

    def test_client_key_is_scoped_to_the_user(self):
        provider = MockProvider(id="a", name="A").queue(purchase("x1"), purchase("x2"))
        h = Harness(provider)
        asyncio.run(h.balances.credit("u2", 100_000, kind="deposit"))

        first = h.rent(idempotency_key="k")
        second = h.rent(user_id="u2", idempotency_key="k")

        assert second.success
        assert not second.replayed
        assert second.order.user_id == "u2"
        assert second.order.id != first.order.id
        assert second.order.external_id == "x2"
        assert h.balance("u2") == 92_000

    def test_racing_debits_never_overdraw(self):
        provider = MockProvider(id="a", name="A").queue(purchase("x1"), purchase("x2"))
        h = Harness(provider, balance=8000)

        async def scenario():
            return await asyncio.gather(
                h.coordinator.create_rental(make_request(idempotency_key="k1")),
                h.coordinator.create_rental(make_request(idempotency_key="k2")),
            )

        results = asyncio.run(scenario())

        assert sorted(r.success for r in results) == [False, True]
        loser = next(r for r in results if not r.success)
        assert loser.error_code == ErrorCode.INSUFFICIENT_BALANCE
        assert provider.cancelled == [loser.acquisition.external_id]
        assert h.balance() == 0
        assert h.orders.count() == 1


class TestCompensation:

    def test_provider_cost_above_price_cancels_number(self):
        provider = MockProvider(id="a", name="A").queue(purchase("x1", cost=10_000))
        h = Harness(provider)

        outcome = h.rent()

        assert outcome.error_code == ErrorCode.PRICING_VALIDATION_FAILED
        assert outcome.acquisition.success
        assert provider.cancelled == ["x1"]
        assert h.balance() == 100_000
        assert h.orders.count() == 0
        assert len(h.cancel_rows()) == 1

    def test_catalog_repriced_during_acquisition_cancels_number(self):
        provider = MockProvider(id="a", name="A").queue(purchase("x1"))
        h = Harness(provider, catalog=RepricingCatalog())

        outcome = h.rent(expected_price=8000)

        assert outcome.error_code == ErrorCode.PRICING_VALIDATION_FAILED
        assert provider.cancelled == ["x1"]
        assert h.balance() == 100_000

    def test_order_write_failure_cancels_and_refunds(self):
        provider = MockProvider(id="a", name="A").queue(purchase("x1"))
        h = Harness(provider, orders=FailingOrders())

        outcome = h.rent()

        assert outcome.error_code == ErrorCode.PERSISTENCE_FAILED
        assert provider.cancelled == ["x1"]
        assert h.balance() == 100_000
        assert [e.kind for e in h.balances.ledger("u1")] == ["rental_purchase", "refund"]

        key = generate_idempotency_key("u1", make_request().fingerprint())
        assert h.idempotency.get(key).status == IdempotencyStatus.FAILED

    def test_failed_compensation_is_logged_not_raised(self):
        provider = UncancellableProvider(id="a", name="A").queue(purchase("x1"))
        h = Harness(provider, orders=FailingOrders())

        outcome = h.rent()

        assert outcome.error_code == ErrorCode.PERSISTENCE_FAILED
        [row] = h.cancel_rows()
        assert not row.success
        assert h.balance() == 100_000


class TestRentalLifecycle:

    def rent_one(self, **harness_kwargs):
        provider = MockProvider(id="a", name="A").queue(purchase("x1"))
        h = Harness(provider, **harness_kwargs)
        outcome = h.rent()
        assert outcome.success
        return h, provider, outcome.order

    def test_cancel_refunds_and_marks_cancelled(self):
        h, provider, order = self.rent_one()

        outcome = asyncio.run(h.coordinator.cancel_rental(order.id, "u1"))

        assert outcome.success
        assert outcome.order.status == OrderStatus.CANCELLED
        assert provider.cancelled == ["x1"]
        assert h.balance() == 100_000

    def test_cancel_twice_is_rejected(self):
        h, _, order = self.rent_one()
        asyncio.run(h.coordinator.cancel_rental(order.id, "u1"))

        outcome = asyncio.run(h.coordinator.cancel_rental(order.id, "u1"))

        assert outcome.error_code == ErrorCode.ORDER_NOT_ACTIVE
        assert h.balance() == 100_000

    def test_cancel_by_other_user_is_not_found(self):
        h, provider, order = self.rent_one()

        outcome = asyncio.run(h.coordinator.cancel_rental(order.id, "someone-else"))

        assert outcome.error_code == ErrorCode.ORDER_NOT_FOUND
        assert provider.cancelled == []

    def test_status_waiting(self):
        h, _, order = self.rent_one()
        updated, status = asyncio.run(h.coordinator.check_status(order.id))
        assert status.status == "waiting"
        assert updated.status == OrderStatus.ACTIVE

    def test_code_received_completes_and_finishes(self):
        h, provider, order = self.rent_one()
        provider.statuses["x1"] = ActivationStatus(status="waiting", code="123456")

        updated, status = asyncio.run(h.coordinator.check_status(order.id))

        assert status.code == "123456"
        assert updated.status == OrderStatus.COMPLETED
        assert updated.sms_code == "123456"
        assert provider.finished == ["x1"]
        assert h.balance() == 92_000

    def test_expired_rental_is_cancelled_and_refunded(self):
        h, provider, order = self.rent_one(rental_ttl=timedelta(0))

        updated, _ = asyncio.run(h.coordinator.check_status(order.id))

        assert updated.status == OrderStatus.EXPIRED
        assert provider.cancelled == ["x1"]
        assert h.balance() == 100_000

    def test_concurrent_cancels_refund_once(self):
        h, provider, order = self.rent_one()

        async def scenario():
            return await asyncio.gather(
                h.coordinator.cancel_rental(order.id, "u1"),
                h.coordinator.cancel_rental(order.id, "u1"),
            )

        results = asyncio.run(scenario())

        assert sorted(r.success for r in results) == [False, True]
        loser = next(r for r in results if not r.success)
        assert loser.error_code == ErrorCode.ORDER_NOT_ACTIVE
        assert h.balance() == 100_000
        assert [e.kind for e in h.balances.ledger("u1")] == ["rental_purchase", "refund"]

    def test_cancel_racing_status_poll_refunds_once(self):
        h, provider, order = self.rent_one()

        async def scenario():
            return await asyncio.gather(
                h.coordinator.cancel_rental(order.id, "u1"),
                h.coordinator.check_status(order.id),
            )

        asyncio.run(scenario())

        assert asyncio.run(h.orders.get(order.id)).status == OrderStatus.CANCELLED
        assert h.balance() == 100_000
        assert [e.kind for e in h.balances.ledger("u1")] == ["rental_purchase", "refund"]

    def test_provider_side_cancel_refunds(self):
        h, provider, order = self.rent_one()
        provider.statuses["x1"] = ActivationStatus(status="cancelled")

        updated, _ = asyncio.run(h.coordinator.check_status(order.id))

        assert updated.status == OrderStatus.CANCELLED
        assert h.balance() == 100_000
        _, status = asyncio.run(h.coordinator.check_status(order.id))
        assert status.status == "cancelled"
        assert h.balance() == 100_000
