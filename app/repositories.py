import threading
from typing import Optional

from app.errors import InsufficientBalanceError, PersistenceError
from app.models import CatalogEntry, LedgerEntry, Order, OrderStatus


class BalanceRepository:
    """User balances with an append-only ledger.

    ``debit`` and ``credit`` are single conditional updates: the balance
    check and the write happen under the same lock, equivalent to
    ``UPDATE ... SET balance = balance - :amount WHERE balance >= :amount``.
    """

    def __init__(self, balances: Optional[dict[str, float]] = None):
        self._balances: dict[str, float] = dict(balances or {})
        self._ledger: list[LedgerEntry] = []
        self._lock = threading.Lock()

    async def get_balance(self, user_id: str) -> float:
        with self._lock:
            return self._balances.get(user_id, 0.0)

    async def debit(
        self,
        user_id: str,
        amount: float,
        order_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> LedgerEntry:
        if amount <= 0:
            raise ValueError("debit amount must be positive")
        with self._lock:
            before = self._balances.get(user_id, 0.0)
            if before < amount:
                raise InsufficientBalanceError(user_id, before, amount)
            after = before - amount
            self._balances[user_id] = after
            entry = LedgerEntry(
                user_id=user_id,
                order_id=order_id,
                kind="rental_purchase",
                amount=-amount,
                balance_before=before,
                balance_after=after,
                description=description,
            )
            self._ledger.append(entry)
        return entry

    async def credit(
        self,
        user_id: str,
        amount: float,
        kind: str = "refund",
        order_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> LedgerEntry:
        if amount <= 0:
            raise ValueError("credit amount must be positive")
        with self._lock:
            before = self._balances.get(user_id, 0.0)
            after = before + amount
            self._balances[user_id] = after
            entry = LedgerEntry(
                user_id=user_id,
                order_id=order_id,
                kind=kind,
                amount=amount,
                balance_before=before,
                balance_after=after,
                description=description,
            )
            self._ledger.append(entry)
        return entry

    def ledger(self, user_id: Optional[str] = None) -> list[LedgerEntry]:
        with self._lock:
            return [e for e in self._ledger if user_id is None or e.user_id == user_id]

    def clear(self):
        with self._lock:
            self._balances.clear()
            self._ledger.clear()


class OrderRepository:
    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._lock = threading.Lock()

    async def create(self, **fields) -> Order:
        order = Order(**fields)
        with self._lock:
            if order.id in self._orders:
                raise PersistenceError(f"order {order.id} already exists")
            self._orders[order.id] = order
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        with self._lock:
            return self._orders.get(order_id)

    async def transition(
        self,
        order_id: str,
        expected: OrderStatus,
        status: OrderStatus,
        sms_code: Optional[str] = None,
    ) -> Optional[Order]:
        """Move an order from ``expected`` to ``status``.

        Returns None, leaving the order untouched, when it is no longer in
        ``expected``; only the caller that gets the order back may act on
        the transition (refund, finish).
        """
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise PersistenceError(f"order {order_id} not found")
            if order.status != expected:
                return None
            changes = {"status": status}
            if sms_code is not None:
                changes["sms_code"] = sms_code
            order = order.model_copy(update=changes)
            self._orders[order_id] = order
        return order

    async def list_for_user(self, user_id: str) -> list[Order]:
        with self._lock:
            return [o for o in self._orders.values() if o.user_id == user_id]

    def count(self) -> int:
        with self._lock:
            return len(self._orders)

    def clear(self):
        with self._lock:
            self._orders.clear()


class CatalogRepository:
    """Current list prices keyed by (country_code, service_code)."""

    def __init__(self, entries: Optional[list[CatalogEntry]] = None):
        self._entries: dict[tuple[str, str], CatalogEntry] = {}
        self._lock = threading.Lock()
        for entry in entries or []:
            self._entries[(entry.country_code, entry.service_code)] = entry

    async def get_price(self, country_code: str, service_code: str) -> Optional[CatalogEntry]:
        with self._lock:
            entry = self._entries.get((country_code, service_code))
        if entry is None or not entry.is_available:
            return None
        return entry

    async def upsert(self, entry: CatalogEntry) -> CatalogEntry:
        with self._lock:
            self._entries[(entry.country_code, entry.service_code)] = entry
        return entry
