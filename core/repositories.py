"""
Storage interfaces for the fulfillment pipeline.

Each component receives the repositories it needs at construction. The
in-memory implementations below are thread-safe (one Lock per store) and
are what the app factory wires by default; a database-backed store only
has to honour the same contracts, in particular the two atomic
operations:

    OrderRepository.transition()      - compare-and-set on Order.status
    InventoryRepository.try_decrement() - never drives stock below zero
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from models.cart import CatalogProduct
from models.order import Order, OrderStatus, ShortageEvent, StockDecrementRecord
from models.payment import PaymentIntent


# =============================================================================
# INTERFACES
# =============================================================================

class OrderRepository(ABC):

    @abstractmethod
    def get(self, order_id: str) -> Optional[Order]:
        """Return a copy of the order, or None."""

    @abstractmethod
    def save(self, order: Order) -> None:
        """Insert or replace an order."""

    @abstractmethod
    def transition(
        self,
        order_id: str,
        new_status: OrderStatus,
        from_statuses: Iterable[OrderStatus] = (OrderStatus.PENDING,)
    ) -> bool:
        """
        Atomically move an order to ``new_status``.

        Returns:
            True if the order was in one of ``from_statuses`` and was moved
        """

    @abstractmethod
    def attach_payment(self, order_id: str, payment_id: str) -> None:
        """Set payment_id on an order without touching its status."""

    @abstractmethod
    def flag_for_review(self, order_id: str) -> None:
        """Set needs_review on an order."""


class PaymentIntentRepository(ABC):

    @abstractmethod
    def get(self, intent_id: str) -> Optional[PaymentIntent]:
        """Lookup by internal id."""

    @abstractmethod
    def get_by_external_id(self, external_id: str) -> Optional[PaymentIntent]:
        """Lookup by provider payment id."""

    @abstractmethod
    def get_by_idempotency_key(self, idempotency_key: str) -> Optional[PaymentIntent]:
        """Most recent intent created for a key."""

    @abstractmethod
    def save(self, intent: PaymentIntent) -> None:
        """Insert or replace an intent."""

    @abstractmethod
    def list_open(self) -> List[PaymentIntent]:
        """Intents that have not reached a terminal status."""


class InventoryRepository(ABC):

    @abstractmethod
    def available(self, product_id: str) -> int:
        """Units in stock (0 for unknown products)."""

    @abstractmethod
    def set_stock(self, product_id: str, quantity: int) -> None:
        """Overwrite stock for a product."""

    @abstractmethod
    def try_decrement(self, product_id: str, quantity: int) -> Tuple[bool, int]:
        """
        Remove ``quantity`` units if at least that many are available.

        Returns:
            (decremented, available_before)
        """


class StockRecordRepository(ABC):
    """Decrement guards and shortage events."""

    @abstractmethod
    def get_record(self, order_id: str) -> StockDecrementRecord:
        """Guard for an order (an unapplied record if none exists)."""

    @abstractmethod
    def mark_applied(self, order_id: str) -> None:
        """Set applied=True for an order."""

    @abstractmethod
    def add_shortage(self, event: ShortageEvent) -> None:
        """Record a shortage event."""

    @abstractmethod
    def shortages_for(self, order_id: str) -> List[ShortageEvent]:
        """Shortage events recorded for an order."""


class CatalogRepository(ABC):

    @abstractmethod
    def get(self, product_id: str) -> Optional[CatalogProduct]:
        """Product by id, or None."""


class TokenAuthenticator(ABC):

    @abstractmethod
    def user_for(self, token: str) -> Optional[str]:
        """User id for a bearer token, or None."""


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryOrderRepository(OrderRepository):
    """Orders in a dict. Returned orders are copies."""

    def __init__(self) -> None:
        self._orders: Dict[str, Order] = {}
        self._lock = threading.Lock()

    def get(self, order_id: str) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
            return replace(order) if order else None

    def save(self, order: Order) -> None:
        with self._lock:
            self._orders[order.id] = replace(order)

    def transition(
        self,
        order_id: str,
        new_status: OrderStatus,
        from_statuses: Iterable[OrderStatus] = (OrderStatus.PENDING,)
    ) -> bool:
        allowed = set(from_statuses)
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status not in allowed:
                return False
            order.status = new_status
            order.updated_at = datetime.now(timezone.utc)
            return True

    def attach_payment(self, order_id: str, payment_id: str) -> None:
        with self._lock:
            order = self._orders.get(order_id)
            if order is not None:
                order.payment_id = payment_id
                order.updated_at = datetime.now(timezone.utc)

    def flag_for_review(self, order_id: str) -> None:
        with self._lock:
            order = self._orders.get(order_id)
            if order is not None:
                order.needs_review = True
                order.updated_at = datetime.now(timezone.utc)


class InMemoryPaymentIntentRepository(PaymentIntentRepository):
    """Intents indexed by id, provider id and idempotency key."""

    def __init__(self) -> None:
        self._intents: Dict[str, PaymentIntent] = {}
        self._by_external: Dict[str, str] = {}
        self._by_key: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, intent_id: str) -> Optional[PaymentIntent]:
        with self._lock:
            intent = self._intents.get(intent_id)
            return replace(intent, metadata=dict(intent.metadata)) if intent else None

    def get_by_external_id(self, external_id: str) -> Optional[PaymentIntent]:
        with self._lock:
            intent_id = self._by_external.get(str(external_id))
        return self.get(intent_id) if intent_id else None

    def get_by_idempotency_key(self, idempotency_key: str) -> Optional[PaymentIntent]:
        with self._lock:
            intent_id = self._by_key.get(idempotency_key)
        return self.get(intent_id) if intent_id else None

    def save(self, intent: PaymentIntent) -> None:
        with self._lock:
            self._intents[intent.id] = replace(intent, metadata=dict(intent.metadata))
            self._by_external[intent.external_id] = intent.id
            self._by_key[intent.idempotency_key] = intent.id

    def list_open(self) -> List[PaymentIntent]:
        with self._lock:
            return [
                replace(intent, metadata=dict(intent.metadata))
                for intent in self._intents.values()
                if not intent.status.is_terminal
            ]


class InMemoryInventoryRepository(InventoryRepository):

    def __init__(self, stock: Optional[Dict[str, int]] = None) -> None:
        self._stock: Dict[str, int] = dict(stock or {})
        self._lock = threading.Lock()

    def available(self, product_id: str) -> int:
        with self._lock:
            return self._stock.get(product_id, 0)

    def set_stock(self, product_id: str, quantity: int) -> None:
        with self._lock:
            self._stock[product_id] = quantity

    def try_decrement(self, product_id: str, quantity: int) -> Tuple[bool, int]:
        with self._lock:
            current = self._stock.get(product_id, 0)
            if current < quantity:
                return False, current
            self._stock[product_id] = current - quantity
            return True, current


class InMemoryStockRecordRepository(StockRecordRepository):

    def __init__(self) -> None:
        self._records: Dict[str, StockDecrementRecord] = {}
        self._shortages: List[ShortageEvent] = []
        self._lock = threading.Lock()

    def get_record(self, order_id: str) -> StockDecrementRecord:
        with self._lock:
            record = self._records.get(order_id)
            return replace(record) if record else StockDecrementRecord(order_id=order_id)

    def mark_applied(self, order_id: str) -> None:
        with self._lock:
            self._records[order_id] = StockDecrementRecord(
                order_id=order_id,
                applied=True,
                applied_at=datetime.now(timezone.utc),
            )

    def add_shortage(self, event: ShortageEvent) -> None:
        with self._lock:
            self._shortages.append(event)

    def shortages_for(self, order_id: str) -> List[ShortageEvent]:
        with self._lock:
            return [event for event in self._shortages if event.order_id == order_id]


class InMemoryCatalogRepository(CatalogRepository):

    def __init__(self, products: Optional[Iterable[CatalogProduct]] = None) -> None:
        self._products: Dict[str, CatalogProduct] = {p.product_id: p for p in products or []}

    def get(self, product_id: str) -> Optional[CatalogProduct]:
        return self._products.get(product_id)

    def add(self, product: CatalogProduct) -> None:
        self._products[product.product_id] = product


class StaticTokenAuthenticator(TokenAuthenticator):
    """Bearer tokens from configuration (``API_TOKENS``)."""

    def __init__(self, tokens: Optional[Dict[str, str]] = None) -> None:
        self._tokens = dict(tokens or {})

    def user_for(self, token: str) -> Optional[str]:
        return self._tokens.get(token)
