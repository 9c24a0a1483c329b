"""
Payment routes.

Handles:
- /api/payments/status - Reconcile a payment with the provider on demand
"""

from flask import Blueprint, current_app, request

from core.exceptions import GatewayError, ValidationError
from logging_config import get_logger, log_context
from .auth import current_user_id


# Module logger
logger = get_logger(__name__)

payments_bp = Blueprint("payments", __name__)


@payments_bp.route("/api/payments/status", methods=["POST"])
def payment_status():
    """
    Fetch a payment's status from the provider and apply it.

    Body: {paymentId} (internal id or provider id)

    Returns 401 without a valid token, 404 for an unknown or foreign
    payment, 502 when the provider fails.
    """
    user_id = current_user_id()
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    payment_id = str(data.get("paymentId") or "").strip()
    if not payment_id:
        raise ValidationError("paymentId is required", field="paymentId")

    reconciler = current_app.config["RECONCILER"]
    try:
        with log_context(user=user_id, payment=payment_id):
            intent = reconciler.refresh(payment_id, user_id=user_id)
    except GatewayError as e:
        logger.error(f"Status check for {payment_id} failed: {e}")
        return {"success": False, "error": e.message, "details": e.details}, 502

    return {
        "success": True,
        "status": intent.display_status.value,
        "details": intent.to_dict(),
    }, 200
