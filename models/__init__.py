"""
Data models for the storefront fulfillment pipeline.

This module contains the dataclasses for:
- Cart: CartLineItem, CartSnapshot, PackageDimensions
- Shipping: ShippingQuote, ShippingQuoteResult
- Payment: PaymentIntent, PaymentStatus and the gateway inputs
- Order: Order, OrderItem and the stock bookkeeping records

Thread safety:
- Everything handed to a worker thread (cart snapshots, quotes, gateway
  inputs) is frozen
- PaymentIntent and Order are mutable, with a single writer each
"""

from .cart import CartLineItem, CartSnapshot, PackageDimensions, CatalogProduct
from .shipping import ShippingQuote, ShippingQuoteResult
from .payment import (
    PaymentStatus,
    PaymentMethod,
    PayerInfo,
    CardDetails,
    OrderSnapshot,
    PaymentIntent,
    ProviderPayment,
    TERMINAL_STATUSES,
)
from .order import (
    Order,
    OrderItem,
    OrderStatus,
    StockDecrementRecord,
    ShortageEvent,
    DecrementOutcome,
)

__all__ = [
    # Cart models
    "CartLineItem",
    "CartSnapshot",
    "PackageDimensions",
    "CatalogProduct",
    # Shipping models
    "ShippingQuote",
    "ShippingQuoteResult",
    # Payment models
    "PaymentStatus",
    "PaymentMethod",
    "PayerInfo",
    "CardDetails",
    "OrderSnapshot",
    "PaymentIntent",
    "ProviderPayment",
    "TERMINAL_STATUSES",
    # Order models
    "Order",
    "OrderItem",
    "OrderStatus",
    "StockDecrementRecord",
    "ShortageEvent",
    "DecrementOutcome",
]
