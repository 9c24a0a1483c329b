"""
Core module for the storefront fulfillment pipeline.

Contains fundamental infrastructure components:
- exceptions: Custom exception hierarchy
- tasks: Bounded, cancellable calls on a shared worker pool
- repositories: Storage interfaces and thread-safe in-memory stores
"""

from .exceptions import (
    StorefrontError,
    InvalidAddress,
    CarrierError,
    CarrierTimeout,
    OperationTimeout,
    ValidationError,
    GatewayError,
    ReconciliationConflict,
    StockShortage,
    NotFoundError,
    PaymentNotFound,
    OrderNotFound,
    AuthenticationError,
    RateLimitExceeded,
)
from .tasks import KeyedLocks, TimedCall, TimeoutRunner

__all__ = [
    "StorefrontError",
    "InvalidAddress",
    "CarrierError",
    "CarrierTimeout",
    "OperationTimeout",
    "ValidationError",
    "GatewayError",
    "ReconciliationConflict",
    "StockShortage",
    "NotFoundError",
    "PaymentNotFound",
    "OrderNotFound",
    "AuthenticationError",
    "RateLimitExceeded",
    "KeyedLocks",
    "TimedCall",
    "TimeoutRunner",
]
