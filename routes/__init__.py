"""
Flask route blueprints for the storefront fulfillment API.

This module contains all route handlers organized by functionality:
- shipping: Shipping quotes (package or cart form)
- checkout: Order and payment creation per idempotency key
- payments: On-demand payment status reconciliation
- webhooks: Payment provider notifications
- orders: Order status and health check

Each blueprint is registered with the Flask app in create_app().
"""

from .shipping import shipping_bp
from .checkout import checkout_bp
from .payments import payments_bp
from .webhooks import webhooks_bp
from .orders import orders_bp

__all__ = [
    "shipping_bp",
    "checkout_bp",
    "payments_bp",
    "webhooks_bp",
    "orders_bp",
]


def register_blueprints(app):
    """
    Register all blueprints with the Flask app.

    Args:
        app: Flask application instance
    """
    app.register_blueprint(shipping_bp)
    app.register_blueprint(checkout_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(orders_bp)
