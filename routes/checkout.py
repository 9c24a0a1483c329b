"""
Checkout routes.

Handles:
- /api/checkout - Create the order and its payment for one checkout attempt
"""

from flask import Blueprint, current_app, request

from logging_config import get_logger, log_context
from services.checkout_service import CheckoutRequest
from .auth import current_user_id


# Module logger
logger = get_logger(__name__)

checkout_bp = Blueprint("checkout", __name__)


@checkout_bp.route("/api/checkout", methods=["POST"])
def checkout():
    """
    Run a checkout attempt.

    Requires a bearer token and the X-Idempotency-Key header; retrying with
    the same key returns the first attempt's order and payment.
    """
    user_id = current_user_id()
    idempotency_key = request.headers.get("X-Idempotency-Key", "").strip()
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}

    checkout_request = CheckoutRequest.from_dict(
        data,
        user_id=user_id,
        idempotency_key=idempotency_key,
        default_origin=current_app.config["SHIPPING_SETTINGS"].origin_zip,
    )
    with log_context(user=user_id, key=idempotency_key[:12]):
        result = current_app.config["CHECKOUT_SERVICE"].checkout(checkout_request)

    return result.to_dict(), 200 if result.reused else 201
