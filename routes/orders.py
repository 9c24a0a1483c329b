"""
Order routes.

Handles:
- /api/orders/<order_id> - Order status for its owner
- /health - Health check endpoint
"""

from flask import Blueprint, current_app

from logging_config import get_logger
from .auth import current_user_id


# Module logger
logger = get_logger(__name__)

orders_bp = Blueprint("orders", __name__)


@orders_bp.route("/api/orders/<order_id>", methods=["GET"])
def get_order(order_id: str):
    """Order plus the payment status the UI should show."""
    user_id = current_user_id()
    order = current_app.config["CHECKOUT_SERVICE"].get_order(order_id, user_id=user_id)

    payment = None
    if order.payment_id:
        reconciler = current_app.config["RECONCILER"]
        intent = reconciler.find_intent(order.payment_id, user_id=user_id)
        payment = intent.to_dict()

    return {"success": True, "order": order.to_dict(), "payment": payment}, 200


@orders_bp.route("/health", methods=["GET"])
def health():
    """Health check endpoint with service status."""
    cache = current_app.config.get("QUOTE_CACHE")
    return {
        "status": "ok",
        "environment": current_app.config.get("ENVIRONMENT"),
        "quote_cache": {
            "entries": len(cache) if cache is not None else 0,
            "hits": cache.hits if cache is not None else 0,
            "misses": cache.misses if cache is not None else 0,
        },
    }, 200
