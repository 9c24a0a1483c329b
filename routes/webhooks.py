"""
Provider webhook routes.

Handles:
- /api/webhooks/mercadopago - Payment notifications

Ignored and duplicate notifications answer 200 so the provider stops
retrying. A provider failure while fetching the status answers 502 and the
provider retries later.
"""

from flask import Blueprint, current_app, request

from core.exceptions import GatewayError
from logging_config import get_logger, log_context


# Module logger
logger = get_logger(__name__)

webhooks_bp = Blueprint("webhooks", __name__)


@webhooks_bp.route("/api/webhooks/mercadopago", methods=["POST"])
def mercadopago():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = {}
    data = payload.get("data")
    data_id = request.args.get("data.id") or (data.get("id") if isinstance(data, dict) else None)

    current_app.config["WEBHOOK_VERIFIER"].verify(
        request.headers.get("x-signature"),
        request.headers.get("x-request-id"),
        str(data_id) if data_id else None,
    )

    try:
        with log_context(payment=data_id):
            intent = current_app.config["RECONCILER"].handle_notification(payload)
    except GatewayError as e:
        logger.error(f"Webhook for {data_id} could not be processed: {e}")
        return {"success": False, "error": e.message, "details": e.details}, 502
    if intent is None:
        return {"success": True, "ignored": True}, 200

    return {"success": True, "status": intent.status.value}, 200
