"""
Shipping routes.

Handles:
- /api/shipping/quote - Price shipping for a package or a cart

The endpoint always answers 200: an invalid zip or an internal failure
gives ``success: false`` with the fallback options, so the checkout page
can still show a price.
"""

from flask import Blueprint, current_app, request

from logging_config import get_logger
from models.cart import CartLineItem, CartSnapshot
from .auth import current_user_id


# Module logger
logger = get_logger(__name__)

shipping_bp = Blueprint("shipping", __name__)

ANONYMOUS_USER = "anonymous"


def _float(data, key):
    try:
        return float(data.get(key) or 0)
    except (TypeError, ValueError):
        return 0.0


@shipping_bp.route("/api/shipping/quote", methods=["POST"])
def quote():
    """
    Price shipping.

    Body (package form):
        {originCep, destinyCep, weight, length, height, width, services[]}

    Body (cart form, served from the quote cache):
        {originCep, destinyCep, products: [{id, weight, length, height,
         width, quantity}], services[]}
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    client = current_app.config["SHIPPING_CLIENT"]

    origin = str(data.get("originCep") or current_app.config["SHIPPING_SETTINGS"].origin_zip)
    destiny = str(data.get("destinyCep") or "")
    services = data.get("services") or None
    if services is not None and not isinstance(services, list):
        services = [str(services)]

    products = data.get("products")
    if products:
        try:
            cart = CartSnapshot.of(CartLineItem.from_dict(p) for p in products)
        except (TypeError, ValueError, AttributeError):
            logger.warning("Shipping quote with malformed products list")
            cart = CartSnapshot()
        user_id = current_user_id(required=False) or ANONYMOUS_USER
        result = current_app.config["QUOTE_CACHE"].get_or_quote(
            user_id, origin, destiny, cart, services
        )
    else:
        package_item = CartLineItem(
            product_id="package",
            quantity=1,
            unit_weight_g=_float(data, "weight"),
            length_cm=_float(data, "length"),
            width_cm=_float(data, "width"),
            height_cm=_float(data, "height"),
        )
        result = client.quote_cart(origin, destiny, CartSnapshot.of([package_item]), services)

    return result.to_dict(), 200
