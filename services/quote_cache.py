"""
Read-through TTL cache in front of ShippingRateClient.

Entries are keyed by the cart's identity (user, sorted product quantities)
plus the destination and requested services. An entry lives until the
earliest expiry among its options: 5 minutes for carrier prices, 1 minute
as soon as any option is an estimate.

Thread Safety:
    - The entry dict is guarded by a Lock
    - The carrier call happens OUTSIDE the lock; two concurrent misses for
      the same key may both call the carrier (last write wins)
"""

from __future__ import annotations

import hashlib
import json
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Sequence

from logging_config import get_logger
from models.cart import CartSnapshot
from models.shipping import ShippingQuoteResult
from .shipping_service import ShippingRateClient, normalize_zip
from core.exceptions import InvalidAddress


# Module logger
logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ShippingQuoteCache:
    """
    TTL cache of ShippingQuoteResult by cart contents.

    Attributes:
        hits: Reads served from the cache
        misses: Reads that went to the carrier
    """

    def __init__(
        self,
        client: ShippingRateClient,
        clock: Callable[[], datetime] = _utcnow
    ):
        self._client = client
        self._clock = clock
        self._entries: Dict[str, ShippingQuoteResult] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(
        user_id: str,
        cart: CartSnapshot,
        dest_zip: str = "",
        service_codes: Optional[Sequence[str]] = None
    ) -> str:
        """SHA-256 of the cart identity, destination and services."""
        try:
            dest = normalize_zip(dest_zip)
        except InvalidAddress:
            dest = dest_zip or ""
        identity = {
            "user": user_id or "",
            "items": cart.product_quantities(),
            "dest": dest,
            "services": list(service_codes or []),
        }
        raw = json.dumps(identity, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def get(self, key: str) -> Optional[ShippingQuoteResult]:
        """Cached result for a key, dropping it if it has expired."""
        now = self._clock()
        with self._lock:
            result = self._entries.get(key)
            if result is None:
                return None
            if result.expires_at is None or now >= result.expires_at:
                del self._entries[key]
                logger.debug(f"Quote cache entry {key[:8]} expired")
                return None
            return result

    def put(self, key: str, result: ShippingQuoteResult) -> bool:
        """Store a result. Failed or empty results are not stored."""
        if not result.success or not result.options:
            return False
        with self._lock:
            self._entries[key] = result
        return True

    def get_or_quote(
        self,
        user_id: str,
        origin_zip: str,
        dest_zip: str,
        cart: CartSnapshot,
        service_codes: Optional[Sequence[str]] = None
    ) -> ShippingQuoteResult:
        """
        Cached quote for a cart, calling the carrier on a miss.

        Never raises (see ShippingRateClient.quote_cart).
        """
        key = self.make_key(user_id, cart, dest_zip, service_codes)

        cached = self.get(key)
        if cached is not None:
            with self._lock:
                self.hits += 1
            logger.debug(f"Quote cache hit {key[:8]}")
            return cached

        with self._lock:
            self.misses += 1

        result = self._client.quote_cart(origin_zip, dest_zip, cart, service_codes)
        if self.put(key, result):
            logger.debug(f"Quote cache stored {key[:8]} until {result.expires_at.isoformat()}")
        return result

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        """
        Remove all entries.

        Returns:
            Number of entries removed
        """
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info(f"Cleared {count} cached shipping quotes")
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
