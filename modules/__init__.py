"""Helper modules for the storefront fulfillment API."""

__all__ = [
    "carriers",
    "cart_aggregator",
    "estimator",
    "mercado_pago",
    "rate_limiter",
    "webhook_signature",
]
