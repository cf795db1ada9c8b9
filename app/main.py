import logging
import sys
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse

from app.config import settings
from app.errors import RentalNotFoundError, http_status
from app.health import HealthStore, is_usable
from app.idempotency import IdempotencyGuard
from app.models import (
    AcquisitionRequest,
    CancelRequest,
    CatalogEntry,
    DepositRequest,
    HealthResponse,
    PreferencesUpdate,
    ProviderHealthResponse,
    ProviderPreferences,
    ProviderRequestLog,
    ProviderStatus,
    RentalRequest,
    StockSnapshot,
)
from app.orchestrator import AcquisitionOrchestrator
from app.preferences import PreferencesStore
from app.providers import ProviderRegistry, default_providers
from app.repositories import BalanceRepository, CatalogRepository, OrderRepository
from app.stock import StockProber
from app.transactions import TransactionCoordinator


def setup_logging():
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s"))
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(handler)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


setup_logging()
logger = logging.getLogger(__name__)

DEFAULT_CATALOG = [
    CatalogEntry(country_code="vn", service_code="telegram", service_name="Telegram", base_price=8000, cost_price=5000),
    CatalogEntry(country_code="vn", service_code="zalo", service_name="Zalo", base_price=6000, cost_price=3500),
    CatalogEntry(country_code="us", service_code="google", service_name="Google", base_price=15000, cost_price=9000),
    CatalogEntry(country_code="us", service_code="whatsapp", service_name="WhatsApp", base_price=12000, cost_price=7000),
]

app = FastAPI(
    title="Number Rental Service",
    description="Disposable phone number rentals with health-based provider failover",
    version="1.0.0",
)

PROVIDERS = {p.id: p for p in default_providers()}
registry = ProviderRegistry(list(PROVIDERS.values()))
health_store = HealthStore()
preferences_store = PreferencesStore()
idempotency_guard = IdempotencyGuard()
balances = BalanceRepository()
orders = OrderRepository()
catalog = CatalogRepository(DEFAULT_CATALOG)
stock_prober = StockProber(registry)
orchestrator = AcquisitionOrchestrator(registry, health_store, preferences_store, stock_prober=stock_prober)
coordinator = TransactionCoordinator(
    registry, orchestrator, health_store, idempotency_guard, balances, orders, catalog
)


# --- Rentals ---


@app.post("/rentals")
async def create_rental(
    request: RentalRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
):
    acquisition_request = AcquisitionRequest(**request.model_dump(), idempotency_key=idempotency_key)
    outcome = await coordinator.create_rental(acquisition_request)
    status_code = 200 if outcome.success else http_status(outcome.error_code)
    return JSONResponse(status_code=status_code, content=outcome.model_dump(mode="json"))


@app.get("/rentals/{order_id}/status")
async def rental_status(order_id: str):
    try:
        order, status = await coordinator.check_status(order_id)
    except RentalNotFoundError:
        raise HTTPException(status_code=404, detail=f"Rental '{order_id}' not found")
    return {
        "order_id": order.id,
        "order_status": order.status.value,
        "phone_number": order.phone_number,
        "provider": order.provider,
        "status": status.status,
        "code": status.code,
    }


@app.post("/rentals/{order_id}/cancel")
async def cancel_rental(order_id: str, request: CancelRequest):
    outcome = await coordinator.cancel_rental(order_id, request.user_id)
    status_code = 200 if outcome.success else http_status(outcome.error_code)
    return JSONResponse(status_code=status_code, content=outcome.model_dump(mode="json"))


@app.get("/stock", response_model=StockSnapshot)
async def get_stock(country_code: str = Query(...), service_code: str = Query(...)):
    return await stock_prober.probe(country_code, service_code)


# --- Balances ---


@app.get("/balance/{user_id}")
async def get_balance(user_id: str):
    return {"user_id": user_id, "balance": await balances.get_balance(user_id)}


@app.post("/balance/{user_id}/deposit")
async def deposit(user_id: str, request: DepositRequest):
    entry = await balances.credit(user_id, request.amount, kind="deposit", description="Manual deposit")
    return {"user_id": user_id, "balance": entry.balance_after}


# --- Provider health & preferences ---


@app.get("/health", response_model=HealthResponse)
async def get_health():
    prefs = await preferences_store.get_preferences()
    records = await health_store.snapshot(registry.ids())
    providers = []

    for pid, adapter in registry.items():
        record = records[pid]
        providers.append(
            ProviderHealthResponse(
                provider=pid,
                provider_name=adapter.name,
                status=record.status if record else ProviderStatus.HEALTHY,
                success_rate=round(record.success_rate, 2) if record else None,
                avg_response_time_ms=record.avg_response_time_ms if record else None,
                total_requests=record.total_requests if record else 0,
                successful_requests=record.successful_requests if record else 0,
                last_success_at=record.last_success_at if record else None,
                last_failure_at=record.last_failure_at if record else None,
                is_routing_enabled=is_usable(record, prefs),
            )
        )

    return HealthResponse(
        providers=providers,
        min_success_rate=prefs.min_success_rate,
        max_response_time_ms=prefs.max_response_time_ms,
    )


@app.get("/health/requests", response_model=list[ProviderRequestLog])
def get_health_requests(provider: Optional[str] = None, limit: int = Query(default=50, ge=1, le=500)):
    return health_store.recent_requests(provider, limit)


@app.get("/preferences", response_model=ProviderPreferences)
async def get_preferences():
    return await preferences_store.get_preferences()


@app.put("/preferences", response_model=ProviderPreferences)
async def update_preferences(update: PreferencesUpdate):
    if (
        update.preferred_provider is not None
        and update.preferred_provider != "auto"
        and update.preferred_provider not in registry
    ):
        raise HTTPException(status_code=400, detail=f"Unknown provider '{update.preferred_provider}'")
    return await preferences_store.update_preferences(**update.model_dump())


# --- Simulation endpoints ---


def _mock(provider_id: str):
    if provider_id not in PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Provider '{provider_id}' not found")
    return PROVIDERS[provider_id]


@app.post("/simulate/outage/{provider_id}")
def simulate_outage(provider_id: str):
    provider = _mock(provider_id)
    provider.success_rate = 0.10
    return {
        "message": f"Outage simulated for {provider.name}",
        "provider": provider_id,
        "success_rate": provider.success_rate,
    }


@app.post("/simulate/recover/{provider_id}")
def simulate_recover(provider_id: str):
    provider = _mock(provider_id)
    provider.success_rate = provider.base_success_rate
    return {
        "message": f"Provider {provider.name} recovered",
        "provider": provider_id,
        "success_rate": provider.success_rate,
    }


@app.post("/simulate/stock/{provider_id}")
def simulate_stock(provider_id: str, count: int = Query(..., ge=0)):
    provider = _mock(provider_id)
    provider.stock = count
    return {"provider": provider_id, "stock": provider.stock}


@app.post("/simulate/reset")
def simulate_reset():
    for provider, fresh in zip(PROVIDERS.values(), default_providers()):
        provider.reset()
        provider.stock = fresh.stock
    health_store.reset()
    preferences_store.reset()
    idempotency_guard.clear()
    balances.clear()
    orders.clear()
    return {"message": "All providers, health data, balances and rentals reset"}
