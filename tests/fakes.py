"""In-memory fakes for the external collaborators.

The carrier and the payment provider are the only parts of the pipeline
that talk to the network. These fakes implement the same abstract
interfaces, keep everything in memory and count their calls so tests can
assert how often the outside world was contacted.
"""

from __future__ import annotations

import itertools
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from core.exceptions import CarrierError, PaymentNotFound
from models.cart import CatalogProduct, PackageDimensions
from models.payment import (
    CardDetails,
    OrderSnapshot,
    PayerInfo,
    PaymentMethod,
    ProviderPayment,
)
from models.shipping import ShippingQuote
from modules.carriers import CarrierStrategy
from modules.estimator import service_name
from modules.mercado_pago import PaymentProvider


class FakeCarrier(CarrierStrategy):
    """
    Scripted carrier.

    Each service code is answered with a (price, eta) pair, raises a
    CarrierError, or hangs until ``release()`` is called.
    """

    name = "fake"

    def __init__(self) -> None:
        self._prices: Dict[str, tuple] = {}
        self._errors: Dict[str, str] = {}
        self._hanging = set()
        self._release = threading.Event()
        self._lock = threading.Lock()
        self.calls: List[str] = []

    def set_price(self, service_code: str, price: str, eta_days: int) -> None:
        self._prices[service_code] = (Decimal(price), eta_days)

    def fail(self, service_code: str, reason: str = "Servico indisponivel") -> None:
        self._errors[service_code] = reason

    def hang(self, service_code: str) -> None:
        self._hanging.add(service_code)

    def release(self) -> None:
        self._release.set()

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def quote_service(
        self,
        origin_zip: str,
        dest_zip: str,
        package: PackageDimensions,
        service_code: str,
        timeout_seconds: float
    ) -> ShippingQuote:
        with self._lock:
            self.calls.append(service_code)

        if service_code in self._hanging:
            self._release.wait(timeout=10)
            raise CarrierError(service_code, "released")
        if service_code in self._errors:
            raise CarrierError(service_code, self._errors[service_code], carrier_code="-1")
        if service_code not in self._prices:
            raise CarrierError(service_code, "unknown service", carrier_code="-888")

        price, eta_days = self._prices[service_code]
        return ShippingQuote(
            service_code=service_code,
            service_name=service_name(service_code),
            price=price,
            eta_days=eta_days,
            is_estimate=False,
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=5),
        )


class FakePaymentProvider(PaymentProvider):
    """
    Payment provider keeping payments in a dict.

    New payments get ``initial_status``; tests move them along with
    ``set_status()``.
    """

    def __init__(self, initial_status: str = "pending", create_delay: float = 0.0) -> None:
        self.initial_status = initial_status
        self.create_delay = create_delay
        self._statuses: Dict[str, str] = {}
        self._ids = itertools.count(1001)
        self._lock = threading.Lock()
        self.create_calls: List[str] = []
        self.get_calls: List[str] = []
        self.create_error: Optional[Exception] = None
        self.get_error: Optional[Exception] = None

    def create_payment(self, snapshot: OrderSnapshot, idempotency_key: str) -> ProviderPayment:
        with self._lock:
            self.create_calls.append(idempotency_key)
        if self.create_delay:
            threading.Event().wait(self.create_delay)
        if self.create_error is not None:
            raise self.create_error

        with self._lock:
            external_id = str(next(self._ids))
            self._statuses[external_id] = self.initial_status

        qr = snapshot.method is PaymentMethod.PIX
        return ProviderPayment(
            external_id=external_id,
            status=self.initial_status,
            qr_code="00020126580014br.gov.bcb.pix" if qr else None,
            qr_code_base64="iVBORw0KGgo=" if qr else None,
        )

    def get_payment(self, external_id: str) -> ProviderPayment:
        with self._lock:
            self.get_calls.append(external_id)
            status = self._statuses.get(external_id)
        if self.get_error is not None:
            raise self.get_error
        if status is None:
            raise PaymentNotFound(external_id)
        return ProviderPayment(external_id=external_id, status=status)

    def set_status(self, external_id: str, status: str) -> None:
        with self._lock:
            self._statuses[external_id] = status


# =============================================================================
# BUILDERS
# =============================================================================

def make_catalog_products() -> List[CatalogProduct]:
    return [
        CatalogProduct("mug", "Caneca", Decimal("39.90"), 200, 12, 10, 10),
        CatalogProduct("poster", "Poster A3", Decimal("25.00"), 600, 45, 8, 8),
    ]


def make_snapshot(
    order_id: str = "order-1",
    amount: str = "100.00",
    method: PaymentMethod = PaymentMethod.PIX,
    user_id: str = "alice",
    card: Optional[CardDetails] = None,
    **payer
) -> OrderSnapshot:
    return OrderSnapshot(
        order_id=order_id,
        user_id=user_id,
        amount=Decimal(amount),
        method=method,
        payer=PayerInfo(
            full_name=payer.get("full_name", "Maria Silva"),
            email=payer.get("email", "maria@example.com"),
            cpf=payer.get("cpf", "123.456.789-09"),
        ),
        card=card,
    )
