"""
Order and stock data models.

An Order is saved by CheckoutService just before its payment intent and
moves pending -> paid | cancelled | failed. Stock bookkeeping (the
decrement guard and shortage events) lives next to it because the
StockLedger writes both in the same critical section.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .shipping import ShippingQuote


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(Enum):
    """
    Status of an order.

    Lifecycle:
        PENDING -> (PAID | CANCELLED | FAILED)
    """

    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_final(self) -> bool:
        return self is not OrderStatus.PENDING


@dataclass(frozen=True)
class OrderItem:
    """One purchased product line, priced at checkout time."""

    product_id: str
    quantity: int
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "productId": self.product_id,
            "quantity": self.quantity,
            "unitPrice": float(self.unit_price),
        }


@dataclass
class Order:
    """
    A customer order.

    Status changes go through OrderRepository.transition() so concurrent
    reconciliation paths cannot overwrite a final status.
    """

    id: str
    user_id: str
    items: Tuple[OrderItem, ...]
    total: Decimal
    """Items plus shipping, equal to the payment amount."""

    shipping_quote: Optional[ShippingQuote] = None
    status: OrderStatus = OrderStatus.PENDING
    payment_id: Optional[str] = None
    needs_review: bool = False
    """Set when stock ran short after the payment was captured."""

    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def stock_lines(self) -> List[Tuple[str, int]]:
        return [(item.product_id, item.quantity) for item in self.items]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "items": [item.to_dict() for item in self.items],
            "total": float(self.total),
            "shipping": self.shipping_quote.to_dict() if self.shipping_quote else None,
            "status": self.status.value,
            "paymentId": self.payment_id,
            "needsReview": self.needs_review,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass
class StockDecrementRecord:
    """Decrement guard: at most one applied decrement per order."""

    order_id: str
    applied: bool = False
    applied_at: Optional[datetime] = None


@dataclass(frozen=True)
class ShortageEvent:
    """Recorded when an approved order needs more stock than is available."""

    order_id: str
    product_id: str
    requested: int
    available: int
    recorded_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class DecrementOutcome:
    """What StockLedger did for one call."""

    order_id: str
    applied: bool
    """True only for the call that performed the decrement."""

    skipped_lines: Tuple[str, ...] = ()
    """Product ids skipped for lack of stock."""

    shortages: Tuple[ShortageEvent, ...] = ()

    @classmethod
    def already_applied(cls, order_id: str) -> "DecrementOutcome":
        return cls(order_id=order_id, applied=False)
