"""
Shipping quote data models.

ShippingQuote is one priced service (SEDEX, PAC, ...). ShippingQuoteResult
is the complete answer for a request, serialised to the wire format the
checkout UI already consumes (camelCase keys, ``error`` carrying the reason
of an estimate).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from .cart import PackageDimensions


@dataclass(frozen=True)
class ShippingQuote:
    """
    A priced shipping option.

    Estimate-tagged quotes always expire sooner than carrier-sourced ones.
    """

    service_code: str
    """Carrier service code (e.g., '04014')."""

    service_name: str
    """Human-readable service name (e.g., 'SEDEX')."""

    price: Decimal
    """Price in BRL, two decimal places."""

    eta_days: int
    """Delivery time in business days."""

    is_estimate: bool
    """True when computed locally instead of by the carrier."""

    expires_at: datetime
    """When this price stops being trustworthy."""

    reason: Optional[str] = None
    """Why this is an estimate (shown to the user)."""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the shipping endpoint's option format."""
        data = {
            "service": self.service_code,
            "serviceName": self.service_name,
            "price": float(self.price),
            "deliveryTime": self.eta_days,
            "isEstimate": self.is_estimate,
            "expiresAt": self.expires_at.isoformat(),
        }
        if self.reason:
            data["error"] = self.reason
        return data


@dataclass(frozen=True)
class ShippingQuoteResult:
    """Everything the shipping endpoint returns for one request."""

    success: bool
    options: Tuple[ShippingQuote, ...]
    dimensions: PackageDimensions = field(default_factory=PackageDimensions.empty)
    origin: str = ""
    destiny: str = ""
    error: Optional[str] = None

    @property
    def has_estimates(self) -> bool:
        return any(option.is_estimate for option in self.options)

    @property
    def expires_at(self) -> Optional[datetime]:
        """Earliest option expiry, which bounds how long the result can be cached."""
        if not self.options:
            return None
        return min(option.expires_at for option in self.options)

    def option_for(self, service_code: str) -> Optional[ShippingQuote]:
        for option in self.options:
            if option.service_code == service_code:
                return option
        return None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "options": [option.to_dict() for option in self.options],
            "totalWeight": self.dimensions.total_weight_g,
            "totalDimensions": self.dimensions.to_dict(),
            "origin": self.origin,
            "destiny": self.destiny,
        }
        if self.error:
            data["error"] = self.error
        return data
