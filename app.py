"""
Storefront fulfillment API - Flask Application Entry Point.

This is a slim app factory that:
1. Builds the component settings from the Flask config
2. Wires repositories, carrier strategy and payment provider
3. Creates the services (shipping, cache, gateway, reconciler, ledger)
4. Registers route blueprints and JSON error handlers
5. Registers cleanup (polling threads, worker pools, HTTP sessions)

ARCHITECTURE:
    Main Thread
    ├── Flask request handling
    └── Cleanup on shutdown

    Carrier pool (shared)
    └── One bounded call per shipping service

    Poll threads (one per open payment)
    └── Backoff loop, stopped by terminal status or shutdown

    AbandonSweep thread
    └── Expires payments left open past the abandonment window

Collaborators (catalog, inventory, stores, provider, carrier) can be passed
in; the defaults are the in-memory stores and the real HTTP clients.
"""

from __future__ import annotations

import atexit
import logging
import os
from typing import Optional, Union

from flask import Flask
from werkzeug.exceptions import HTTPException

from config import (
    PaymentSettings,
    RateLimitSettings,
    ReconcilerSettings,
    ShippingSettings,
    parse_api_tokens,
)
from core.exceptions import StorefrontError
from core.repositories import (
    CatalogRepository,
    InMemoryCatalogRepository,
    InMemoryInventoryRepository,
    InMemoryOrderRepository,
    InMemoryPaymentIntentRepository,
    InMemoryStockRecordRepository,
    InventoryRepository,
    StaticTokenAuthenticator,
    TokenAuthenticator,
)
from logging_config import setup_logging, get_logger
from modules.carriers import CarrierStrategy, CorreiosCarrier
from modules.mercado_pago import MercadoPagoClient, PaymentProvider
from modules.rate_limiter import RateLimiter
from modules.webhook_signature import WebhookVerifier
from routes import register_blueprints
from services import (
    CheckoutService,
    PaymentGateway,
    PaymentReconciler,
    ShippingQuoteCache,
    ShippingRateClient,
    StockLedger,
)


# Module logger (configured after setup_logging)
logger = get_logger(__name__)


def create_app(
    config_object: Union[str, object] = "config.Config",
    carrier: Optional[CarrierStrategy] = None,
    payment_provider: Optional[PaymentProvider] = None,
    catalog: Optional[CatalogRepository] = None,
    inventory: Optional[InventoryRepository] = None,
    authenticator: Optional[TokenAuthenticator] = None,
    register_cleanup: bool = True
) -> Flask:
    """
    Application factory - creates and configures Flask app.

    Args:
        config_object: Flask config class or its import path
        carrier: Carrier strategy (defaults to CorreiosCarrier)
        payment_provider: Payment provider (defaults to MercadoPagoClient)
        catalog: Product catalog (defaults to an empty in-memory catalog)
        inventory: Stock store (defaults to an empty in-memory store)
        authenticator: Bearer token check (defaults to API_TOKENS)
        register_cleanup: Register shutdown with atexit

    Returns:
        Configured Flask application

    Raises:
        ValueError: If no payment provider is given and no access token is
            configured
    """
    app = Flask(__name__)
    app.config.from_object(config_object)

    # Configure logging
    log_level = logging.DEBUG if app.config.get("DEBUG") else logging.INFO
    enable_file_logging = app.config.get("ENVIRONMENT") == "production"

    root_logger = setup_logging(
        log_level=log_level,
        enable_file_logging=enable_file_logging
    )

    # Set Flask's logger to use our configured logger
    app.logger.handlers = root_logger.handlers
    app.logger.setLevel(log_level)

    logger.info(f"Starting storefront API in {app.config.get('ENVIRONMENT')} mode")

    # =========================================================================
    # SETTINGS
    # =========================================================================

    shipping_settings = ShippingSettings.from_config(app.config)
    payment_settings = PaymentSettings.from_config(app.config)
    reconciler_settings = ReconcilerSettings.from_config(app.config)
    rate_limit_settings = RateLimitSettings.from_config(app.config)
    app.config["SHIPPING_SETTINGS"] = shipping_settings

    # =========================================================================
    # COLLABORATORS
    # =========================================================================

    carrier = carrier or CorreiosCarrier(
        shipping_settings.carrier_url,
        quote_ttl_seconds=shipping_settings.quote_ttl_seconds
    )
    payment_provider = payment_provider or MercadoPagoClient(
        access_token=payment_settings.access_token,
        api_url=payment_settings.api_url,
        timeout_seconds=payment_settings.timeout_seconds
    )
    catalog = catalog or InMemoryCatalogRepository()
    inventory = inventory or InMemoryInventoryRepository()
    authenticator = authenticator or StaticTokenAuthenticator(
        parse_api_tokens(app.config.get("API_TOKENS", ""))
    )

    orders = InMemoryOrderRepository()
    intents = InMemoryPaymentIntentRepository()
    stock_records = InMemoryStockRecordRepository()

    # =========================================================================
    # SERVICES INITIALIZATION
    # =========================================================================

    shipping_client = ShippingRateClient(shipping_settings, carrier)
    quote_cache = ShippingQuoteCache(shipping_client)
    gateway = PaymentGateway(payment_provider, intents, payment_settings)
    ledger = StockLedger(inventory, stock_records, orders)
    reconciler = PaymentReconciler(gateway, intents, orders, ledger, reconciler_settings)
    reconciler.start_sweeper()
    checkout_service = CheckoutService(
        catalog,
        orders,
        quote_cache,
        gateway,
        reconciler,
        rate_limiter=RateLimiter(rate_limit_settings)
    )

    # Store in app config for access by routes
    app.config["SHIPPING_CLIENT"] = shipping_client
    app.config["QUOTE_CACHE"] = quote_cache
    app.config["PAYMENT_GATEWAY"] = gateway
    app.config["STOCK_LEDGER"] = ledger
    app.config["RECONCILER"] = reconciler
    app.config["CHECKOUT_SERVICE"] = checkout_service
    app.config["AUTHENTICATOR"] = authenticator
    app.config["WEBHOOK_VERIFIER"] = WebhookVerifier(payment_settings.webhook_secret)
    app.config["ORDER_REPOSITORY"] = orders
    app.config["INVENTORY_REPOSITORY"] = inventory
    app.config["STOCK_RECORD_REPOSITORY"] = stock_records

    # =========================================================================
    # CLEANUP REGISTRATION
    # =========================================================================

    def cleanup():
        """Cleanup on application shutdown."""
        logger.info("Shutting down...")

        # Stop polling threads first, they use the provider
        reconciler.shutdown()
        shipping_client.shutdown()
        payment_provider.close()

        logger.info("Shutdown complete")

    app.config["CLEANUP"] = cleanup
    if register_cleanup:
        atexit.register(cleanup)

    # =========================================================================
    # REGISTER BLUEPRINTS
    # =========================================================================

    register_blueprints(app)

    # =========================================================================
    # ERROR HANDLERS
    # =========================================================================

    @app.errorhandler(StorefrontError)
    def handle_storefront_error(e: StorefrontError):
        if e.http_status >= 500:
            logger.error(f"{e.http_status} {type(e).__name__}: {e}")
        else:
            logger.info(f"{e.http_status} {type(e).__name__}: {e.message}")
        return {"success": False, "error": e.message, "details": e.details}, e.http_status

    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        return {"success": False, "error": e.name, "details": {}}, e.code

    @app.errorhandler(Exception)
    def handle_server_error(e: Exception):
        logger.error(f"500 error: {e}", exc_info=True)
        return {"success": False, "error": "Internal server error", "details": {}}, 500

    logger.info("Application initialized successfully")
    return app


if __name__ == "__main__":
    app = create_app()
    debug_mode = os.environ.get("FLASK_DEBUG", "1") == "1"
    app.run(debug=debug_mode)
