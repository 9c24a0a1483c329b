"""
Configuration for the storefront fulfillment pipeline.

Flask config classes read their values from the environment (a ``.env``
file is loaded first). Components never read the environment themselves:
the app factory turns the Flask config into the frozen settings objects
below and passes one to each component at construction.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple

from dotenv import load_dotenv

# Load .env file early so environment variables are available for Config class
load_dotenv(override=True)

BASE_DIR = Path(__file__).resolve().parent


def _env_float(name: str, default: str) -> float:
    return float(os.environ.get(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.environ.get(name, default))


class Config:
    """Default configuration for the Flask application."""

    SECRET_KEY = os.environ.get("FLASK_SECRET_KEY", "dev-secret-key")
    ENVIRONMENT = os.environ.get("FLASK_ENV", "development")
    DEBUG = os.environ.get("FLASK_DEBUG", "1") == "1"
    TESTING = False

    # ==========================================================================
    # Shipping
    # ==========================================================================
    # STORE_ORIGIN_CEP: the warehouse zip used when a request omits originCep.
    # CARRIER_TIMEOUT_SECONDS is clamped to [5, 8] by ShippingSettings.
    # ==========================================================================
    STORE_ORIGIN_CEP = os.environ.get("STORE_ORIGIN_CEP", "01310-100")
    CORREIOS_URL = os.environ.get(
        "CORREIOS_URL", "http://ws.correios.com.br/calculador/CalcPrecoPrazo.aspx"
    )
    CARRIER_TIMEOUT_SECONDS = _env_float("CARRIER_TIMEOUT_SECONDS", "8")
    CARRIER_MAX_WORKERS = _env_int("CARRIER_MAX_WORKERS", "8")
    SHIPPING_SERVICES = os.environ.get("SHIPPING_SERVICES", "04014,04510")

    QUOTE_TTL_SECONDS = _env_float("QUOTE_TTL_SECONDS", "300")
    ESTIMATE_TTL_SECONDS = _env_float("ESTIMATE_TTL_SECONDS", "60")

    # ==========================================================================
    # Payments (Mercado Pago)
    # ==========================================================================
    MERCADO_PAGO_API_URL = os.environ.get("MERCADO_PAGO_API_URL", "https://api.mercadopago.com")
    MERCADO_PAGO_ACCESS_TOKEN = os.environ.get("MERCADO_PAGO_ACCESS_TOKEN", "")
    MERCADO_PAGO_WEBHOOK_SECRET = os.environ.get("MERCADO_PAGO_WEBHOOK_SECRET", "")
    PAYMENT_TIMEOUT_SECONDS = _env_float("PAYMENT_TIMEOUT_SECONDS", "15")
    IDEMPOTENCY_WINDOW_SECONDS = _env_float("IDEMPOTENCY_WINDOW_SECONDS", "86400")

    # Reconciliation polling: 2s, 4s, 8s ... capped at 30s, 12 attempts, 10 min
    POLL_INITIAL_INTERVAL = _env_float("POLL_INITIAL_INTERVAL", "2")
    POLL_BACKOFF_FACTOR = _env_float("POLL_BACKOFF_FACTOR", "2")
    POLL_MAX_INTERVAL = _env_float("POLL_MAX_INTERVAL", "30")
    POLL_MAX_ATTEMPTS = _env_int("POLL_MAX_ATTEMPTS", "12")
    POLL_MAX_WAIT_SECONDS = _env_float("POLL_MAX_WAIT_SECONDS", "600")
    PAYMENT_ABANDON_SECONDS = _env_float("PAYMENT_ABANDON_SECONDS", "86400")
    ABANDON_SWEEP_INTERVAL_SECONDS = _env_float("ABANDON_SWEEP_INTERVAL_SECONDS", "900")

    # At most 3 payment attempts per user in 5 minutes
    PAYMENT_RATE_LIMIT = _env_int("PAYMENT_RATE_LIMIT", "3")
    PAYMENT_RATE_WINDOW_SECONDS = _env_float("PAYMENT_RATE_WINDOW_SECONDS", "300")

    # Bearer tokens accepted by the API, "token:user_id,token2:user_id2"
    API_TOKENS = os.environ.get("API_TOKENS", "")


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False
    TESTING = False
    ENVIRONMENT = "production"


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    TESTING = False


class TestingConfig(Config):
    """Testing configuration."""
    DEBUG = False
    TESTING = True
    ENVIRONMENT = "testing"
    MERCADO_PAGO_ACCESS_TOKEN = "TEST-token"
    MERCADO_PAGO_WEBHOOK_SECRET = ""
    POLL_INITIAL_INTERVAL = 0.01
    POLL_MAX_INTERVAL = 0.05
    POLL_MAX_ATTEMPTS = 5
    POLL_MAX_WAIT_SECONDS = 2.0
    PAYMENT_RATE_LIMIT = 100
    API_TOKENS = "token-alice:alice,token-bob:bob"


# =============================================================================
# COMPONENT SETTINGS
# =============================================================================

CARRIER_TIMEOUT_BOUNDS = (5.0, 8.0)


@dataclass(frozen=True)
class ShippingSettings:
    """Settings for ShippingRateClient and its carrier strategy."""

    origin_zip: str = "01310-100"
    carrier_url: str = "http://ws.correios.com.br/calculador/CalcPrecoPrazo.aspx"
    timeout_seconds: float = 8.0
    max_workers: int = 8
    default_services: Tuple[str, ...] = ("04014", "04510")
    quote_ttl_seconds: float = 300.0
    estimate_ttl_seconds: float = 60.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ShippingSettings":
        low, high = CARRIER_TIMEOUT_BOUNDS
        timeout = float(config.get("CARRIER_TIMEOUT_SECONDS", cls.timeout_seconds))
        services = tuple(
            code.strip() for code in str(config.get("SHIPPING_SERVICES", "04014,04510")).split(",")
            if code.strip()
        )
        return cls(
            origin_zip=config.get("STORE_ORIGIN_CEP", cls.origin_zip),
            carrier_url=config.get("CORREIOS_URL", cls.carrier_url),
            timeout_seconds=min(max(timeout, low), high),
            max_workers=int(config.get("CARRIER_MAX_WORKERS", cls.max_workers)),
            default_services=services or cls.default_services,
            quote_ttl_seconds=float(config.get("QUOTE_TTL_SECONDS", cls.quote_ttl_seconds)),
            estimate_ttl_seconds=float(config.get("ESTIMATE_TTL_SECONDS", cls.estimate_ttl_seconds)),
        )


@dataclass(frozen=True)
class PaymentSettings:
    """Settings for the payment provider client and PaymentGateway."""

    api_url: str = "https://api.mercadopago.com"
    access_token: str = ""
    webhook_secret: str = ""
    timeout_seconds: float = 15.0
    idempotency_window_seconds: float = 86400.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "PaymentSettings":
        return cls(
            api_url=config.get("MERCADO_PAGO_API_URL", cls.api_url),
            access_token=config.get("MERCADO_PAGO_ACCESS_TOKEN", cls.access_token),
            webhook_secret=config.get("MERCADO_PAGO_WEBHOOK_SECRET", cls.webhook_secret),
            timeout_seconds=float(config.get("PAYMENT_TIMEOUT_SECONDS", cls.timeout_seconds)),
            idempotency_window_seconds=float(
                config.get("IDEMPOTENCY_WINDOW_SECONDS", cls.idempotency_window_seconds)
            ),
        )


@dataclass(frozen=True)
class ReconcilerSettings:
    """Polling schedule and abandonment window for PaymentReconciler."""

    initial_interval: float = 2.0
    backoff_factor: float = 2.0
    max_interval: float = 30.0
    max_attempts: int = 12
    max_wait_seconds: float = 600.0
    poll_timeout_seconds: float = 15.0
    abandon_after_seconds: float = 86400.0
    sweep_interval_seconds: float = 900.0
    """Time between abandonment sweeps."""

    def interval_for(self, attempt: int) -> float:
        """Sleep before poll number ``attempt`` (0-based), exponential and capped."""
        return min(self.initial_interval * (self.backoff_factor ** attempt), self.max_interval)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ReconcilerSettings":
        return cls(
            initial_interval=float(config.get("POLL_INITIAL_INTERVAL", cls.initial_interval)),
            backoff_factor=float(config.get("POLL_BACKOFF_FACTOR", cls.backoff_factor)),
            max_interval=float(config.get("POLL_MAX_INTERVAL", cls.max_interval)),
            max_attempts=int(config.get("POLL_MAX_ATTEMPTS", cls.max_attempts)),
            max_wait_seconds=float(config.get("POLL_MAX_WAIT_SECONDS", cls.max_wait_seconds)),
            poll_timeout_seconds=float(config.get("PAYMENT_TIMEOUT_SECONDS", cls.poll_timeout_seconds)),
            abandon_after_seconds=float(config.get("PAYMENT_ABANDON_SECONDS", cls.abandon_after_seconds)),
            sweep_interval_seconds=float(
                config.get("ABANDON_SWEEP_INTERVAL_SECONDS", cls.sweep_interval_seconds)
            ),
        )


@dataclass(frozen=True)
class RateLimitSettings:
    """Sliding window for payment attempts per user."""

    max_requests: int = 3
    window_seconds: float = 300.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "RateLimitSettings":
        return cls(
            max_requests=int(config.get("PAYMENT_RATE_LIMIT", cls.max_requests)),
            window_seconds=float(config.get("PAYMENT_RATE_WINDOW_SECONDS", cls.window_seconds)),
        )


def parse_api_tokens(raw: str) -> Dict[str, str]:
    """Parse ``"token:user,token2:user2"`` into a token -> user id map."""
    tokens: Dict[str, str] = {}
    for pair in (raw or "").split(","):
        if ":" not in pair:
            continue
        token, user_id = pair.split(":", 1)
        if token.strip() and user_id.strip():
            tokens[token.strip()] = user_id.strip()
    return tokens


