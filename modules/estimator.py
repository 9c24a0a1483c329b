"""Heuristic estimator for shipping price and delivery time."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple

from logging_config import get_logger
from models.shipping import ShippingQuote

CENTS = Decimal("0.01")

SERVICE_NAMES = {
    "04014": "SEDEX",
    "04510": "PAC",
    "04782": "SEDEX 12",
    "04790": "SEDEX 10",
    "04804": "SEDEX Hoje",
}

TIMEOUT_REASON = "Timeout - estimated value"
UNAVAILABLE_REASON = "Estimated value (carrier temporarily unavailable)"
FALLBACK_REASON = "Default value (shipping system temporarily unavailable)"


def service_name(service_code: str) -> str:
    return SERVICE_NAMES.get(service_code, f"Correios {service_code}")


def is_express(service_code: str) -> bool:
    """SEDEX family services are priced and timed as express."""
    return service_name(service_code).startswith("SEDEX")


class ShippingEstimator:
    """Produces estimate-tagged quotes when the carrier cannot answer."""

    # Reference coordinates per first zip digit (state capitals)
    REGION_COORDINATES: Dict[str, Tuple[float, float]] = {
        "0": (-23.5505, -46.6333),  # Sao Paulo
        "1": (-23.5505, -46.6333),  # Sao Paulo
        "2": (-22.9068, -43.1729),  # Rio de Janeiro
        "3": (-19.9167, -43.9345),  # Belo Horizonte
        "4": (-12.9714, -38.5014),  # Salvador
        "5": (-8.0476, -34.8770),   # Recife
        "6": (-3.7275, -38.5275),   # Fortaleza
        "7": (-15.7801, -47.9292),  # Brasilia
        "8": (-30.0346, -51.2177),  # Porto Alegre
        "9": (-25.4284, -49.2733),  # Curitiba
    }

    KM_PER_DEGREE = 111.0
    MIN_DISTANCE_KM = 50.0

    EXPRESS_BASE_PRICE = Decimal("20")
    STANDARD_BASE_PRICE = Decimal("12")
    PRICE_PER_KG = Decimal("3")
    PRICE_PER_1000_KM = Decimal("0.02")

    # Fixed pair used when nothing else can be produced
    FALLBACK_OPTIONS = (
        ("04014", Decimal("28.90"), 3),
        ("04510", Decimal("18.90"), 8),
    )

    def __init__(self, estimate_ttl_seconds: float = 60.0) -> None:
        self.estimate_ttl_seconds = estimate_ttl_seconds
        self.logger = get_logger(__name__)

    def distance_km(self, origin_zip: str, dest_zip: str) -> float:
        """Rough distance between the regions of two normalised zips."""
        origin = self.REGION_COORDINATES[origin_zip[0]]
        dest = self.REGION_COORDINATES[dest_zip[0]]
        degrees = math.sqrt((origin[0] - dest[0]) ** 2 + (origin[1] - dest[1]) ** 2)
        return max(self.MIN_DISTANCE_KM, degrees * self.KM_PER_DEGREE)

    def estimate(
        self,
        origin_zip: str,
        dest_zip: str,
        weight_g: float,
        service_code: str,
        reason: str = UNAVAILABLE_REASON,
        now: Optional[datetime] = None
    ) -> ShippingQuote:
        """
        Estimate one service between two normalised (8 digit) zips.

        Raises:
            KeyError: If a zip does not start with a digit
        """
        now = now or datetime.now(timezone.utc)
        distance = self.distance_km(origin_zip, dest_zip)
        express = is_express(service_code)

        base = self.EXPRESS_BASE_PRICE if express else self.STANDARD_BASE_PRICE
        weight_kg = Decimal(str(weight_g)) / Decimal("1000")
        price = (
            base
            + weight_kg * self.PRICE_PER_KG
            + Decimal(str(distance)) / Decimal("1000") * self.PRICE_PER_1000_KM
        ).quantize(CENTS, rounding=ROUND_HALF_UP)

        if express:
            eta_days = max(1, math.floor(distance / 800))
        else:
            eta_days = max(3, math.floor(distance / 400))

        self.logger.debug(
            f"Estimated {service_code}: {distance:.0f} km, {weight_g:.0f} g -> "
            f"R$ {price} / {eta_days} days"
        )

        return ShippingQuote(
            service_code=service_code,
            service_name=service_name(service_code),
            price=price,
            eta_days=eta_days,
            is_estimate=True,
            expires_at=now + timedelta(seconds=self.estimate_ttl_seconds),
            reason=reason,
        )

    def fallback(self, now: Optional[datetime] = None) -> List[ShippingQuote]:
        """The fixed SEDEX/PAC pair, estimate-tagged."""
        now = now or datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=self.estimate_ttl_seconds)
        return [
            ShippingQuote(
                service_code=code,
                service_name=service_name(code),
                price=price,
                eta_days=eta_days,
                is_estimate=True,
                expires_at=expires_at,
                reason=FALLBACK_REASON,
            )
            for code, price, eta_days in self.FALLBACK_OPTIONS
        ]
