"""
Custom exceptions for the storefront fulfillment pipeline.

Exception Hierarchy:
    StorefrontError (base)
    ├── InvalidAddress          - Zip code malformed (fatal for the quote)
    ├── CarrierError            - Carrier answered with an error (recovered as estimate)
    │   └── CarrierTimeout      - Carrier did not answer in time (recovered as estimate)
    ├── OperationTimeout        - Generic bounded call expired
    ├── ValidationError         - Payer/amount/card data rejected before the provider
    ├── GatewayError            - Payment provider rejected or failed the request
    ├── ReconciliationConflict  - Terminal status already set (logged, never surfaced)
    ├── StockShortage           - Not enough stock at decrement time
    ├── NotFoundError
    │   ├── PaymentNotFound
    │   └── OrderNotFound
    ├── AuthenticationError     - Missing or unknown bearer token
    └── RateLimitExceeded       - Too many payment attempts

Usage:
    Carrier errors never leave ShippingRateClient: they become estimate-tagged
    quotes. Gateway and validation errors abort the checkout with a message the
    user can read. Reconciliation conflicts are absorbed by the reconciler.
"""

from typing import Optional, Dict, Any


class StorefrontError(Exception):
    """
    Base exception for all pipeline errors.

    Carries a human-readable message plus a details dict that the HTTP layer
    returns next to the message.
    """

    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# SHIPPING
# =============================================================================

class InvalidAddress(StorefrontError):
    """
    A zip code (CEP) is not 8 digits.

    This is FATAL for the quote: no carrier call is made.
    """

    http_status = 400

    def __init__(self, zip_code: str, field: str = "zip"):
        message = f"Invalid zip code for {field}: {zip_code!r} (expected 12345-678 or 12345678)"
        super().__init__(message, {"field": field, "zip_code": zip_code})
        self.zip_code = zip_code
        self.field = field


class CarrierError(StorefrontError):
    """
    The carrier answered, but not with a usable quote.

    Covers HTTP errors, transport failures, carrier business errors (the
    ``<Erro>`` element) and non-positive price or delivery time.
    """

    http_status = 502

    def __init__(
        self,
        service_code: str,
        reason: str,
        carrier_code: Optional[str] = None
    ):
        message = f"Carrier error for service {service_code}: {reason}"
        details = {"service_code": service_code, "reason": reason}
        if carrier_code:
            details["carrier_code"] = carrier_code
        super().__init__(message, details)
        self.service_code = service_code
        self.reason = reason
        self.carrier_code = carrier_code


class CarrierTimeout(CarrierError):
    """The carrier did not answer within the per-service timeout."""

    def __init__(self, service_code: str, timeout_seconds: float):
        super().__init__(service_code, f"timed out after {timeout_seconds:.1f}s")
        self.timeout_seconds = timeout_seconds


class OperationTimeout(StorefrontError):
    """A call run through TimeoutRunner did not finish before its deadline."""

    http_status = 504

    def __init__(self, operation: str, timeout_seconds: float):
        message = f"{operation} timed out after {timeout_seconds:.1f}s"
        super().__init__(message, {"operation": operation, "timeout_seconds": timeout_seconds})
        self.operation = operation
        self.timeout_seconds = timeout_seconds


# =============================================================================
# PAYMENTS
# =============================================================================

class ValidationError(StorefrontError):
    """
    Payment or checkout input was rejected locally.

    Nothing is sent to the payment provider when this is raised.
    """

    http_status = 400

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(message, details)
        self.field = field


class GatewayError(StorefrontError):
    """
    The payment provider rejected the request or could not be reached.

    ``code`` is the provider's error code (or a local one such as
    ``network_error``). No PaymentIntent exists after this is raised.
    """

    http_status = 402
    UNAVAILABLE_CODES = frozenset({"timeout", "network_error", "bad_response"})

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None
    ):
        details: Dict[str, Any] = {}
        if code:
            details["code"] = code
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details)
        self.code = code
        self.status_code = status_code
        if code in self.UNAVAILABLE_CODES or (status_code or 0) >= 500:
            self.http_status = 502


class ReconciliationConflict(StorefrontError):
    """
    A terminal status arrived for an intent that already has a different one.

    First terminal write wins; this is logged and never surfaced.
    """

    http_status = 409

    def __init__(self, intent_id: str, current: str, observed: str):
        message = f"Payment {intent_id} already {current}, ignoring {observed}"
        super().__init__(message, {"intent_id": intent_id, "current": current, "observed": observed})
        self.intent_id = intent_id
        self.current = current
        self.observed = observed


class StockShortage(StorefrontError):
    """
    Available stock is lower than the approved order needs.

    The payment is already captured: the line is skipped and the order is
    flagged for manual review instead of driving stock negative.
    """

    http_status = 409

    def __init__(self, order_id: str, product_id: str, requested: int, available: int):
        message = (
            f"Insufficient stock for {product_id} on order {order_id}: "
            f"need {requested}, only {available} available"
        )
        details = {
            "order_id": order_id,
            "product_id": product_id,
            "requested": requested,
            "available": available,
            "resolution": "Order flagged for manual review"
        }
        super().__init__(message, details)
        self.order_id = order_id
        self.product_id = product_id
        self.requested = requested
        self.available = available


# =============================================================================
# LOOKUPS / ACCESS
# =============================================================================

class NotFoundError(StorefrontError):
    """A requested record does not exist (or belongs to another user)."""

    http_status = 404


class PaymentNotFound(NotFoundError):
    def __init__(self, payment_id: str):
        super().__init__(f"Payment {payment_id} not found", {"payment_id": payment_id})
        self.payment_id = payment_id


class OrderNotFound(NotFoundError):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found", {"order_id": order_id})
        self.order_id = order_id


class AuthenticationError(StorefrontError):
    http_status = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class RateLimitExceeded(StorefrontError):
    """Too many payment attempts for one user inside the window."""

    http_status = 429

    def __init__(self, identifier: str, retry_after_seconds: float):
        message = f"Too many payment attempts, retry in {retry_after_seconds:.0f}s"
        super().__init__(message, {"retry_after": round(retry_after_seconds, 1)})
        self.identifier = identifier
        self.retry_after_seconds = retry_after_seconds
