import asyncio
import random
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Optional, Protocol, Union

from app.errors import ErrorCode, ProviderError
from app.models import ActivationStatus, MarketPriceList, MarketPriceOption, Purchase


class ProviderAdapter(Protocol):
    """Capability every SMS provider client exposes to the core.

    Implementations normalize provider-specific failures into
    ``ProviderError`` with an ``ErrorCode`` before raising.
    """

    id: str
    name: str

    async def purchase(
        self, country_code: str, service_code: str, max_price: Optional[float] = None
    ) -> Purchase: ...

    async def check_status(self, external_id: str) -> ActivationStatus: ...

    async def cancel(self, external_id: str) -> None: ...

    async def finish(self, external_id: str) -> None: ...

    async def get_stock(self, country_code: str, service_code: str) -> int: ...

    async def get_market_prices(
        self, country_code: str, service_code: str
    ) -> Optional[MarketPriceList]: ...


Outcome = Union[Purchase, Exception]


@dataclass
class MockProvider:
    """In-process provider used for local runs, simulation endpoints and tests.

    Purchases are served from ``script`` first (each entry is either a
    ``Purchase`` to return or an exception to raise); once the script is
    drained, outcomes are drawn at random using ``success_rate``.
    """

    id: str
    name: str
    base_success_rate: float = 0.95
    stock: int = 100
    cost: float = 0.5
    latency: float = 0.0
    unmapped_services: set[str] = field(default_factory=set)
    market_prices: Optional[MarketPriceList] = None
    script: deque = field(default_factory=deque)
    _current_success_rate: float = field(init=False)

    def __post_init__(self):
        self._current_success_rate = self.base_success_rate
        self.purchase_calls: list[tuple[str, str, Optional[float]]] = []
        self.cancelled: list[str] = []
        self.finished: list[str] = []
        self.statuses: dict[str, ActivationStatus] = {}

    @property
    def success_rate(self) -> float:
        return self._current_success_rate

    @success_rate.setter
    def success_rate(self, value: float):
        self._current_success_rate = max(0.0, min(1.0, value))

    def queue(self, *outcomes: Outcome) -> "MockProvider":
        self.script.extend(outcomes)
        return self

    def reset(self):
        self._current_success_rate = self.base_success_rate
        self.script.clear()
        self.purchase_calls.clear()
        self.cancelled.clear()
        self.finished.clear()
        self.statuses.clear()

    def _check_mapping(self, service_code: str):
        if service_code in self.unmapped_services:
            raise ProviderError(
                self.id, ErrorCode.SERVICE_NOT_MAPPED, f"no mapping for service {service_code}"
            )

    async def purchase(
        self, country_code: str, service_code: str, max_price: Optional[float] = None
    ) -> Purchase:
        self.purchase_calls.append((country_code, service_code, max_price))
        if self.latency:
            await asyncio.sleep(self.latency)
        self._check_mapping(service_code)

        if self.script:
            outcome = self.script.popleft()
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        if self.stock <= 0:
            raise ProviderError(self.id, ErrorCode.NO_NUMBERS)
        if random.random() >= self._current_success_rate:
            raise ProviderError(self.id, ErrorCode.PROVIDER_UNAVAILABLE, "connection timeout")

        cost = self.cost if max_price is None else min(self.cost, max_price)
        self.stock -= 1
        return Purchase(
            external_id=uuid.uuid4().hex[:12],
            phone_number=f"+84{random.randint(300000000, 999999999)}",
            cost=cost,
        )

    async def check_status(self, external_id: str) -> ActivationStatus:
        return self.statuses.get(external_id, ActivationStatus(status="waiting"))

    async def cancel(self, external_id: str) -> None:
        self.cancelled.append(external_id)
        self.statuses[external_id] = ActivationStatus(status="cancelled")

    async def finish(self, external_id: str) -> None:
        self.finished.append(external_id)

    async def get_stock(self, country_code: str, service_code: str) -> int:
        self._check_mapping(service_code)
        return self.stock

    async def get_market_prices(
        self, country_code: str, service_code: str
    ) -> Optional[MarketPriceList]:
        return self.market_prices


class ProviderRegistry:
    """Ordered ``{id -> adapter}`` map. Declaration order is routing priority."""

    def __init__(self, adapters: list[ProviderAdapter]):
        self._adapters: dict[str, ProviderAdapter] = {}
        for adapter in adapters:
            if adapter.id in self._adapters:
                raise ValueError(f"duplicate provider id {adapter.id!r}")
            self._adapters[adapter.id] = adapter

    def ids(self) -> list[str]:
        return list(self._adapters)

    def get(self, provider_id: str) -> ProviderAdapter:
        return self._adapters[provider_id]

    def items(self):
        return self._adapters.items()

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)


def default_providers() -> list[MockProvider]:
    return [
        MockProvider(
            id="sms-activate",
            name="SMS-Activate",
            base_success_rate=0.95,
            stock=250,
            cost=0.45,
            market_prices=MarketPriceList(
                regular_price=0.45,
                options=[MarketPriceOption(price=0.38, count=40), MarketPriceOption(price=0.41, count=120)],
            ),
        ),
        MockProvider(id="5sim", name="5sim", base_success_rate=0.92, stock=80, cost=0.5),
    ]
