"""
Services layer for the storefront fulfillment pipeline.

This module contains the business logic services:
- ShippingRateClient: Concurrent carrier lookups with estimate fallback
- ShippingQuoteCache: TTL read-through cache of shipping quotes
- PaymentGateway: Payment intent creation, once per idempotency key
- PaymentReconciler: Poll/webhook state machine for payment status
- StockLedger: Inventory decrement, once per approved order
- CheckoutService: Orchestrates a checkout attempt

Thread Model:
    Main Thread (Flask request threads)
    ├── Carrier pool (one call per shipping service, own deadline each)
    └── Poll-<id> threads (one per open payment intent)
"""

from .shipping_service import ShippingRateClient, normalize_zip
from .quote_cache import ShippingQuoteCache
from .payment_gateway import PaymentGateway
from .stock_ledger import StockLedger
from .reconciler import PaymentReconciler
from .checkout_service import CheckoutService, CheckoutRequest, CheckoutResult

__all__ = [
    "ShippingRateClient",
    "normalize_zip",
    "ShippingQuoteCache",
    "PaymentGateway",
    "StockLedger",
    "PaymentReconciler",
    "CheckoutService",
    "CheckoutRequest",
    "CheckoutResult",
]
