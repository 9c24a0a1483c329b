"""
Shipping rate service with per-service timeouts and estimate fallback.

ShippingRateClient asks the carrier for every requested service at once on
a shared worker pool. Each service has its OWN deadline, so one slow
service never delays or fails another.

Failure policy:
    - Malformed zip                  -> InvalidAddress (nothing is called)
    - Service timed out              -> estimate, "Timeout - estimated value"
    - Carrier error for a service    -> estimate, "Estimated value (carrier ...)"
    - Every service failed           -> fixed SEDEX/PAC fallback pair
    - No service requested, or the
      estimator itself failed        -> fixed SEDEX/PAC fallback pair

Usage:
    client = ShippingRateClient(ShippingSettings(), CorreiosCarrier(url))

    result = client.quote_cart("01310-100", "20040-020", cart)
    for option in result.options:
        print(option.service_name, option.price, option.is_estimate)

    client.shutdown()
"""

from __future__ import annotations

import re
from typing import List, Optional, Sequence, Tuple

from config import ShippingSettings
from core.exceptions import CarrierError, CarrierTimeout, InvalidAddress, OperationTimeout
from core.tasks import TimeoutRunner
from logging_config import get_logger
from models.cart import CartSnapshot, PackageDimensions
from models.shipping import ShippingQuote, ShippingQuoteResult
from modules.cart_aggregator import CartAggregator
from modules.carriers import CarrierStrategy
from modules.estimator import TIMEOUT_REASON, UNAVAILABLE_REASON, ShippingEstimator


# Module logger
logger = get_logger(__name__)

ZIP_PATTERN = re.compile(r"^\d{5}-?\d{3}$")


def normalize_zip(zip_code: str, field: str = "zip") -> str:
    """
    Validate a CEP and strip the dash.

    Raises:
        InvalidAddress: If it is not NNNNN-NNN or NNNNNNNN
    """
    value = (zip_code or "").strip()
    if not ZIP_PATTERN.match(value):
        raise InvalidAddress(zip_code, field)
    return value.replace("-", "")


class ShippingRateClient:
    """
    Prices shipping services through a pluggable carrier strategy.

    Thread Safety:
        - quote() may be called from any Flask request thread
        - Carrier calls run on the shared TimeoutRunner pool
        - No mutable state besides the pool
    """

    def __init__(
        self,
        settings: ShippingSettings,
        carrier: CarrierStrategy,
        estimator: Optional[ShippingEstimator] = None,
        aggregator: Optional[CartAggregator] = None,
        runner: Optional[TimeoutRunner] = None
    ):
        self.settings = settings
        self.carrier = carrier
        self.estimator = estimator or ShippingEstimator(settings.estimate_ttl_seconds)
        self.aggregator = aggregator or CartAggregator()
        self._runner = runner or TimeoutRunner(
            max_workers=settings.max_workers,
            thread_name_prefix="Carrier"
        )

        logger.info(
            f"ShippingRateClient initialized: carrier={carrier.name}, "
            f"timeout={settings.timeout_seconds}s, services={','.join(settings.default_services)}"
        )

    def quote(
        self,
        origin_zip: str,
        dest_zip: str,
        package: PackageDimensions,
        service_codes: Optional[Sequence[str]] = None
    ) -> List[ShippingQuote]:
        """
        Price every requested service for one package.

        Args:
            origin_zip: Sender CEP
            dest_zip: Recipient CEP
            package: Aggregated package (weight in grams)
            service_codes: Carrier service codes (defaults to SEDEX and PAC)

        Returns:
            One quote per service in request order, or the fallback pair
            when every service failed or none was requested

        Raises:
            InvalidAddress: If either zip is malformed
        """
        origin = normalize_zip(origin_zip, "origin")
        dest = normalize_zip(dest_zip, "destination")

        if service_codes is None:
            service_codes = self.settings.default_services
        codes = list(dict.fromkeys(code.strip() for code in service_codes if code and code.strip()))

        if not codes:
            logger.warning("No shipping services requested, using fallback options")
            return self.estimator.fallback()

        timeout = self.settings.timeout_seconds
        calls = [
            (
                code,
                self._runner.submit(
                    self.carrier.quote_service,
                    origin, dest, package, code, timeout,
                    timeout=timeout,
                    operation=f"{self.carrier.name} quote {code}",
                ),
            )
            for code in codes
        ]

        quotes: List[ShippingQuote] = []
        failures = 0
        try:
            for code, call in calls:
                quote, failed = self._collect(code, call, origin, dest, package)
                quotes.append(quote)
                failures += failed
        except (KeyError, ArithmeticError) as e:
            # Estimation itself failed: nothing trustworthy to show
            logger.error(f"Shipping estimation failed: {e}")
            for _, call in calls:
                call.cancel()
            return self.estimator.fallback()

        if failures == len(codes):
            logger.warning(f"All {failures} shipping services failed, using fallback options")
            return self.estimator.fallback()

        return quotes

    def _collect(self, code, call, origin, dest, package) -> Tuple[ShippingQuote, bool]:
        """The carrier's quote, or an estimate flagged as failed."""
        try:
            return call.result(), False
        except OperationTimeout:
            logger.warning(f"Carrier timeout for service {code} after {call.timeout_seconds:.1f}s")
            reason = TIMEOUT_REASON
        except CarrierError as e:
            logger.warning(f"Carrier failure for service {code}: {e.reason}")
            reason = TIMEOUT_REASON if isinstance(e, CarrierTimeout) else UNAVAILABLE_REASON
        except Exception as e:
            logger.warning(f"Unexpected carrier failure for service {code}: {e}")
            reason = UNAVAILABLE_REASON

        return self.estimator.estimate(origin, dest, package.total_weight_g, code, reason=reason), True

    def quote_cart(
        self,
        origin_zip: str,
        dest_zip: str,
        cart: CartSnapshot,
        service_codes: Optional[Sequence[str]] = None
    ) -> ShippingQuoteResult:
        """
        Aggregate a cart and price it.

        Never raises: an empty cart or an invalid zip gives success=False
        with the fallback options.
        """
        package = self.aggregator.aggregate(cart)
        return self.quote_package(origin_zip, dest_zip, package, service_codes)

    def quote_package(
        self,
        origin_zip: str,
        dest_zip: str,
        package: PackageDimensions,
        service_codes: Optional[Sequence[str]] = None
    ) -> ShippingQuoteResult:
        """Like quote(), wrapped in a ShippingQuoteResult. Never raises."""
        if package.is_empty:
            return self._failed("Cart is empty", package, origin_zip, dest_zip)

        try:
            options = self.quote(origin_zip, dest_zip, package, service_codes)
        except InvalidAddress as e:
            logger.warning(f"Shipping quote rejected: {e.message}")
            return self._failed(e.message, package, origin_zip, dest_zip)
        except Exception as e:
            logger.error(f"Shipping quote failed: {e}")
            return self._failed("Internal error while calculating shipping", package, origin_zip, dest_zip)

        return ShippingQuoteResult(
            success=True,
            options=tuple(options),
            dimensions=package,
            origin=origin_zip,
            destiny=dest_zip,
        )

    def _failed(self, error, package, origin_zip, dest_zip) -> ShippingQuoteResult:
        return ShippingQuoteResult(
            success=False,
            options=tuple(self.estimator.fallback()),
            dimensions=package,
            origin=origin_zip or "",
            destiny=dest_zip or "",
            error=error,
        )

    def shutdown(self) -> None:
        """Stop the worker pool and release carrier connections."""
        self._runner.shutdown(wait=False)
        self.carrier.close()
        logger.info("ShippingRateClient shutdown complete")
