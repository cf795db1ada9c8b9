import asyncio
import logging
import time
import uuid
from datetime import timedelta
from typing import Optional

from app.config import settings
from app.errors import (
    ErrorCode,
    InsufficientBalanceError,
    PricingValidationError,
    ProviderError,
    RequestSupersededError,
    RentalNotFoundError,
    http_status,
)
from app.health import HealthStore
from app.idempotency import IdempotencyGuard, generate_idempotency_key
from app.models import (
    AcquisitionRequest,
    AcquisitionResult,
    ActivationStatus,
    IdempotencyStatus,
    LedgerEntry,
    Order,
    OrderStatus,
    ProviderPreferences,
    RentalOutcome,
    RequestType,
    utcnow,
)
from app.orchestrator import AcquisitionOrchestrator
from app.pricing import calculate_rental_pricing, validate_pricing_request
from app.providers import ProviderRegistry
from app.repositories import BalanceRepository, CatalogRepository, OrderRepository

logger = logging.getLogger(__name__)


class TransactionCoordinator:
    """Turns an acquired number into a charged, persisted rental.

    Sequence for ``create_rental``:
    1. Register the idempotency key (duplicates replay or conflict).
    2. Look up the catalog price and pre-check the client price and balance.
    3. Acquire a number through the orchestrator.
    4. Re-validate the price against the catalog and the provider cost.
    5. Debit the balance atomically.
    6. Persist the order.
    7. Mark the idempotency key completed with the outcome.

    When 4, 5 or 6 fails the acquired number is cancelled at the provider,
    any debit is refunded and the key is marked failed so the client may
    retry.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        orchestrator: AcquisitionOrchestrator,
        health: HealthStore,
        idempotency: IdempotencyGuard,
        balances: BalanceRepository,
        orders: OrderRepository,
        catalog: CatalogRepository,
        rental_ttl: timedelta = timedelta(minutes=settings.rental_ttl_minutes),
        call_timeout: float = settings.attempt_timeout_seconds,
        min_profit_margin: float = settings.min_profit_margin,
        price_tolerance: float = settings.price_tolerance,
        provider_cost_rate: float = settings.provider_cost_rate,
        low_balance_threshold: float = settings.low_balance_threshold,
    ):
        self._registry = registry
        self._orchestrator = orchestrator
        self._health = health
        self._idempotency = idempotency
        self._balances = balances
        self._orders = orders
        self._catalog = catalog
        self._rental_ttl = rental_ttl
        self._timeout = call_timeout
        self._min_profit_margin = min_profit_margin
        self._price_tolerance = price_tolerance
        self._provider_cost_rate = provider_cost_rate
        self._low_balance_threshold = low_balance_threshold

    # --- Rental creation ---

    def _idempotency_key(self, request: AcquisitionRequest, params: dict) -> str:
        if request.idempotency_key:
            return generate_idempotency_key(request.user_id, {"client_key": request.idempotency_key})
        return generate_idempotency_key(request.user_id, params)

    async def create_rental(self, request: AcquisitionRequest) -> RentalOutcome:
        params = request.fingerprint()
        key = self._idempotency_key(request, params)

        prefs = await self._orchestrator.get_preferences()
        # compensating cancel plus settlement on top of the acquisition
        lease = self._orchestrator.max_duration_seconds(prefs, request.use_dynamic_price) + 2 * self._timeout

        check = await self._idempotency.check(
            key, request.user_id, params, lease=timedelta(seconds=lease)
        )
        if not check.is_new:
            if check.status == IdempotencyStatus.COMPLETED and check.cached_data:
                cached = RentalOutcome.model_validate(check.cached_data)
                return cached.model_copy(update={"replayed": True})
            return RentalOutcome(
                success=False,
                error_code=ErrorCode.IDEMPOTENCY_CONFLICT,
                error_message="An identical request is already being processed",
            )

        try:
            outcome = await self._execute(request, prefs, key, check.owner)
        except Exception as exc:
            logger.exception("Rental for user %s failed unexpectedly", request.user_id)
            await self._idempotency.fail(key, str(exc), owner=check.owner)
            return RentalOutcome(
                success=False,
                error_code=ErrorCode.INTERNAL_ERROR,
                error_message="Failed to create rental",
            )

        if outcome.success:
            await self._idempotency.complete(
                key, outcome.model_dump(mode="json"), 200, outcome.order.id, owner=check.owner
            )
        else:
            await self._idempotency.fail(
                key,
                outcome.error_message or outcome.error_code.value,
                http_status(outcome.error_code),
                owner=check.owner,
            )
        return outcome

    def _quote(self, entry, request: AcquisitionRequest):
        return calculate_rental_pricing(
            entry.base_price,
            entry.cost_price,
            request.rental_type,
            request.extra_services_count,
            request.duration_hours,
            self._min_profit_margin,
        )

    def _validate_expected(self, entry, request: AcquisitionRequest) -> Optional[str]:
        if request.expected_price is None:
            return None
        validation = validate_pricing_request(
            request.expected_price,
            entry.base_price,
            entry.cost_price,
            request.rental_type,
            request.extra_services_count,
            request.duration_hours,
            self._price_tolerance,
            self._min_profit_margin,
        )
        return None if validation.valid else validation.error

    async def _execute(
        self, request: AcquisitionRequest, prefs: ProviderPreferences, key: str, owner: str
    ) -> RentalOutcome:
        entry = await self._catalog.get_price(request.country_code, request.service_code)
        if entry is None:
            return RentalOutcome(
                success=False,
                error_code=ErrorCode.SERVICE_UNAVAILABLE,
                error_message="Service not available for this country",
            )

        error = self._validate_expected(entry, request)
        if error:
            logger.warning("Rejected rental for user %s: %s", request.user_id, error)
            return RentalOutcome(
                success=False, error_code=ErrorCode.PRICING_VALIDATION_FAILED, error_message=error
            )

        quote = self._quote(entry, request)
        balance = await self._balances.get_balance(request.user_id)
        if balance < quote.final_price:
            return RentalOutcome(
                success=False,
                error_code=ErrorCode.INSUFFICIENT_BALANCE,
                error_message="Insufficient balance",
            )

        acquisition = await self._orchestrator.acquire(request, prefs)
        if not acquisition.success:
            return RentalOutcome(
                success=False,
                acquisition=acquisition,
                error_code=acquisition.error_code,
                error_message=acquisition.error_message,
            )

        return await self._settle(request, acquisition, key, owner)

    async def _final_price(self, request: AcquisitionRequest, acquisition: AcquisitionResult) -> float:
        entry = await self._catalog.get_price(request.country_code, request.service_code)
        if entry is None:
            raise PricingValidationError("Service was withdrawn from the catalog")

        error = self._validate_expected(entry, request)
        if error:
            raise PricingValidationError(error)

        quote = self._quote(entry, request)
        floor = acquisition.cost * self._provider_cost_rate * (1 + self._min_profit_margin)
        if quote.final_price < floor:
            raise PricingValidationError(
                f"Price {quote.final_price} does not cover provider cost {acquisition.cost} from {acquisition.provider}"
            )
        return quote.final_price

    async def _settle(
        self, request: AcquisitionRequest, acquisition: AcquisitionResult, key: str, owner: str
    ) -> RentalOutcome:
        order_id = str(uuid.uuid4())
        debit: Optional[LedgerEntry] = None
        try:
            price = await self._final_price(request, acquisition)
            # neither call suspends, so the ownership check and the debit are atomic
            if not await self._idempotency.owns(key, owner):
                raise RequestSupersededError(key)
            debit = await self._balances.debit(
                request.user_id,
                price,
                order_id=order_id,
                description=f"Rental {request.service_code}/{request.country_code} ({acquisition.provider})",
            )
            order = await self._orders.create(
                id=order_id,
                user_id=request.user_id,
                country_code=request.country_code,
                service_code=request.service_code,
                provider=acquisition.provider,
                external_id=acquisition.external_id,
                phone_number=acquisition.phone_number,
                price=price,
                acquisition=acquisition,
                expires_at=utcnow() + self._rental_ttl,
            )
        except PricingValidationError as exc:
            code, message = ErrorCode.PRICING_VALIDATION_FAILED, str(exc)
        except InsufficientBalanceError as exc:
            code, message = ErrorCode.INSUFFICIENT_BALANCE, str(exc)
        except RequestSupersededError:
            code, message = ErrorCode.IDEMPOTENCY_CONFLICT, "Request was taken over by a retry"
        except Exception as exc:
            logger.exception("Failed to persist rental %s, rolling back", order_id)
            code, message = ErrorCode.PERSISTENCE_FAILED, str(exc)
        else:
            low_balance = debit.balance_after < self._low_balance_threshold
            if low_balance:
                logger.info("User %s balance low: %s", request.user_id, debit.balance_after)
            logger.info(
                "Rental %s created for user %s: %s via %s, charged %s",
                order.id, request.user_id, order.phone_number, order.provider, price,
            )
            return RentalOutcome(
                success=True,
                order=order,
                acquisition=acquisition,
                charged_price=price,
                balance_after=debit.balance_after,
                low_balance=low_balance,
            )

        logger.warning("Rental %s aborted after acquisition: %s %s", order_id, code.value, message)
        await self._compensate(acquisition, order_id)
        if debit is not None:
            await self._refund(request.user_id, -debit.amount, order_id, "Rollback of failed rental")
        return RentalOutcome(
            success=False, acquisition=acquisition, error_code=code, error_message=message
        )

    # --- Provider side effects ---

    async def _provider_call(self, provider_id: str, request_type: RequestType, call, order_id: Optional[str]):
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(call, timeout=self._timeout)
        except Exception as exc:
            await self._health.record_request(
                provider_id,
                request_type,
                success=False,
                latency_ms=int((time.monotonic() - started) * 1000),
                error_message=str(exc),
                metadata={"order_id": order_id},
            )
            raise
        await self._health.record_request(
            provider_id,
            request_type,
            success=True,
            latency_ms=int((time.monotonic() - started) * 1000),
            metadata={"order_id": order_id},
        )
        return result

    async def _compensate(self, acquisition: AcquisitionResult, order_id: str) -> bool:
        adapter = self._registry.get(acquisition.provider)
        try:
            await self._provider_call(
                acquisition.provider, RequestType.CANCEL, adapter.cancel(acquisition.external_id), order_id
            )
        except Exception:
            logger.exception(
                "Compensating cancel of %s on %s failed", acquisition.external_id, acquisition.provider
            )
            return False
        logger.info("Cancelled %s on %s", acquisition.external_id, acquisition.provider)
        return True

    async def _refund(self, user_id: str, amount: float, order_id: str, description: str) -> Optional[LedgerEntry]:
        try:
            return await self._balances.credit(
                user_id, amount, kind="refund", order_id=order_id, description=description
            )
        except Exception:
            logger.exception("Refund of %s to user %s for %s failed", amount, user_id, order_id)
            return None

    # --- Rental lifecycle ---

    async def _get_order(self, order_id: str, user_id: Optional[str] = None) -> Order:
        order = await self._orders.get(order_id)
        if order is None or (user_id is not None and order.user_id != user_id):
            raise RentalNotFoundError(order_id)
        return order

    @staticmethod
    def _settled_status(order: Order) -> tuple[Order, ActivationStatus]:
        return order, ActivationStatus(
            status="completed" if order.status == OrderStatus.COMPLETED else "cancelled",
            code=order.sms_code,
        )

    async def check_status(self, order_id: str) -> tuple[Order, ActivationStatus]:
        order = await self._get_order(order_id)
        if order.status != OrderStatus.ACTIVE:
            return self._settled_status(order)

        adapter = self._registry.get(order.provider)
        try:
            status = await self._provider_call(
                order.provider, RequestType.CHECK_STATUS, adapter.check_status(order.external_id), order.id
            )
        except Exception as exc:
            logger.warning("Status check for rental %s failed: %s", order.id, exc)
            return order, ActivationStatus(status="unknown")

        if status.status == "completed" or status.code:
            updated = await self._orders.transition(
                order.id, OrderStatus.ACTIVE, OrderStatus.COMPLETED, sms_code=status.code
            )
            if updated is None:
                return self._settled_status(await self._orders.get(order.id))
            try:
                await self._provider_call(
                    updated.provider, RequestType.FINISH, adapter.finish(updated.external_id), updated.id
                )
            except Exception:
                logger.exception("Failed to finish activation %s on %s", updated.external_id, updated.provider)
            return updated, ActivationStatus(status="completed", code=status.code)

        if status.status == "cancelled":
            updated = await self._orders.transition(order.id, OrderStatus.ACTIVE, OrderStatus.CANCELLED)
            if updated is None:
                return self._settled_status(await self._orders.get(order.id))
            await self._refund(updated.user_id, updated.price, updated.id, "Cancelled by provider")
            return updated, status

        if order.expires_at is not None and utcnow() >= order.expires_at:
            updated = await self._orders.transition(order.id, OrderStatus.ACTIVE, OrderStatus.EXPIRED)
            if updated is None:
                return self._settled_status(await self._orders.get(order.id))
            await self._compensate(updated.acquisition, updated.id)
            await self._refund(updated.user_id, updated.price, updated.id, "Rental expired without SMS")
            return updated, ActivationStatus(status="cancelled")

        return order, status

    async def cancel_rental(self, order_id: str, user_id: str) -> RentalOutcome:
        try:
            order = await self._get_order(order_id, user_id)
        except RentalNotFoundError as exc:
            return RentalOutcome(success=False, error_code=ErrorCode.ORDER_NOT_FOUND, error_message=str(exc))

        if order.status != OrderStatus.ACTIVE:
            return self._not_active(order)

        adapter = self._registry.get(order.provider)
        try:
            await self._provider_call(
                order.provider, RequestType.CANCEL, adapter.cancel(order.external_id), order.id
            )
        except ProviderError as exc:
            return RentalOutcome(
                success=False, order=order, error_code=exc.code, error_message=exc.reason
            )
        except Exception as exc:
            logger.exception("Cancel of rental %s failed", order.id)
            return RentalOutcome(
                success=False, order=order, error_code=ErrorCode.PROVIDER_ERROR, error_message=str(exc)
            )

        updated = await self._orders.transition(order.id, OrderStatus.ACTIVE, OrderStatus.CANCELLED)
        if updated is None:
            return self._not_active(await self._orders.get(order.id))
        refund = await self._refund(updated.user_id, updated.price, updated.id, "Rental cancelled by user")
        logger.info("Rental %s cancelled by user %s", updated.id, user_id)
        return RentalOutcome(
            success=True,
            order=updated,
            charged_price=0,
            balance_after=refund.balance_after if refund else None,
        )

    @staticmethod
    def _not_active(order: Order) -> RentalOutcome:
        return RentalOutcome(
            success=False,
            order=order,
            error_code=ErrorCode.ORDER_NOT_ACTIVE,
            error_message=f"Rental is {order.status.value}",
        )
