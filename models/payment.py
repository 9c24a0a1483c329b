"""
Payment data models.

These models represent a payment as it flows through the pipeline:
checkout -> PaymentGateway.create -> PaymentReconciler -> terminal status.

Thread Safety:
    - PayerInfo, CardDetails and OrderSnapshot are frozen inputs
    - PaymentIntent is mutable, but only PaymentReconciler writes its status
      (under the reconciler's per-intent lock); ``amount`` never changes
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from logging_config import get_logger

logger = get_logger(__name__)


class PaymentStatus(Enum):
    """
    Status of a payment intent.

    Lifecycle:
        CREATED -> PENDING (-> IN_PROCESS) -> (APPROVED | REJECTED | CANCELLED | EXPIRED)
    """

    CREATED = "created"
    """Intent persisted, provider status not applied yet."""

    PENDING = "pending"
    """Waiting for the customer (PIX not paid yet)."""

    IN_PROCESS = "in_process"
    """Provider is reviewing the payment (sub-state of PENDING)."""

    APPROVED = "approved"
    """Money captured."""

    REJECTED = "rejected"
    """Provider refused the payment."""

    CANCELLED = "cancelled"
    """Cancelled, refunded or charged back."""

    EXPIRED = "expired"
    """Abandoned past the validity window."""

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        """Position in the forward-only lifecycle (terminal statuses share the top rank)."""
        return _RANKS[self]

    @classmethod
    def from_provider(cls, provider_status: Optional[str]) -> "PaymentStatus":
        """
        Map a provider status string to a PaymentStatus.

        Unknown values map to PENDING so they keep the intent open.
        """
        status = _PROVIDER_STATUS_MAP.get((provider_status or "").lower())
        if status is None:
            logger.warning(f"Unknown provider status {provider_status!r}, treating as pending")
            return cls.PENDING
        return status


TERMINAL_STATUSES = frozenset({
    PaymentStatus.APPROVED,
    PaymentStatus.REJECTED,
    PaymentStatus.CANCELLED,
    PaymentStatus.EXPIRED,
})

_RANKS = {
    PaymentStatus.CREATED: 0,
    PaymentStatus.PENDING: 1,
    PaymentStatus.IN_PROCESS: 2,
    PaymentStatus.APPROVED: 3,
    PaymentStatus.REJECTED: 3,
    PaymentStatus.CANCELLED: 3,
    PaymentStatus.EXPIRED: 3,
}

_PROVIDER_STATUS_MAP = {
    "pending": PaymentStatus.PENDING,
    "in_process": PaymentStatus.IN_PROCESS,
    "in_mediation": PaymentStatus.IN_PROCESS,
    "authorized": PaymentStatus.IN_PROCESS,
    "approved": PaymentStatus.APPROVED,
    "rejected": PaymentStatus.REJECTED,
    "cancelled": PaymentStatus.CANCELLED,
    "refunded": PaymentStatus.CANCELLED,
    "charged_back": PaymentStatus.CANCELLED,
}


class PaymentMethod(Enum):
    PIX = "pix"
    CREDIT = "credit"

    @classmethod
    def parse(cls, value: Any) -> Optional["PaymentMethod"]:
        for method in cls:
            if method.value == str(value or "").lower():
                return method
        return None


@dataclass(frozen=True)
class PayerInfo:
    """Who pays. Validated by PaymentGateway before anything is sent."""

    full_name: str
    email: str
    cpf: str
    """Brazilian taxpayer id, 11 digits (punctuation allowed on input)."""

    @property
    def first_name(self) -> str:
        return self.full_name.split(" ", 1)[0]

    @property
    def last_name(self) -> str:
        parts = self.full_name.split(" ", 1)
        return parts[1] if len(parts) > 1 else ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PayerInfo":
        return cls(
            full_name=str(data.get("fullName", data.get("full_name", ""))),
            email=str(data.get("email", "")),
            cpf=str(data.get("cpf", "")),
        )


@dataclass(frozen=True)
class CardDetails:
    """Tokenised card data for credit payments."""

    token: str
    payment_method_id: str
    """Card brand as the provider names it (e.g., 'visa', 'master')."""

    installments: int = 1
    issuer_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CardDetails":
        installments = data.get("installments", 1)
        try:
            installments = int(installments)
        except (TypeError, ValueError):
            installments = 0
        issuer = data.get("issuerId", data.get("issuer_id"))
        return cls(
            token=str(data.get("token", "")),
            payment_method_id=str(data.get("paymentMethodId", data.get("payment_method_id", ""))),
            installments=installments,
            issuer_id=str(issuer) if issuer else None,
        )


@dataclass(frozen=True)
class OrderSnapshot:
    """
    Immutable view of an order handed to PaymentGateway.

    ``amount`` is the final total (items + shipping) and becomes the intent's
    immutable amount.
    """

    order_id: str
    user_id: str
    amount: Decimal
    method: PaymentMethod
    payer: PayerInfo
    description: str = ""
    card: Optional[CardDetails] = None


@dataclass
class PaymentIntent:
    """
    A payment created at the provider for one checkout attempt.

    Created once per idempotency key. ``status`` and ``paid_at`` are written
    only by PaymentReconciler.
    """

    id: str
    """Internal intent id (UUID)."""

    external_id: str
    """Provider payment id."""

    idempotency_key: str
    """Client-supplied key this intent was created for."""

    order_id: str
    user_id: str

    amount: Decimal
    """Fixed at creation."""

    method: PaymentMethod

    status: PaymentStatus = PaymentStatus.CREATED
    provider_status: str = ""
    """Last raw status string seen at the provider."""

    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    paid_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    """End of the idempotency window for this intent."""

    polling_exhausted: bool = False
    """Polling gave up without a terminal status (display EXPIRED)."""

    metadata: Dict[str, Any] = field(default_factory=dict)
    """Provider extras (PIX QR code, QR expiration)."""

    def __post_init__(self):
        if self.expires_at is None:
            self.expires_at = self.created_at + timedelta(hours=24)

    def is_reusable(self, now: datetime) -> bool:
        """True while the idempotency window is open."""
        return now < self.expires_at

    @property
    def display_status(self) -> PaymentStatus:
        if self.polling_exhausted and not self.status.is_terminal:
            return PaymentStatus.EXPIRED
        return self.status

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the API's payment format."""
        data = {
            "id": self.id,
            "externalId": self.external_id,
            "orderId": self.order_id,
            "amount": float(self.amount),
            "method": self.method.value,
            "status": self.status.value,
            "displayStatus": self.display_status.value,
            "providerStatus": self.provider_status,
            "createdAt": self.created_at.isoformat(),
            "paidAt": self.paid_at.isoformat() if self.paid_at else None,
        }
        if self.metadata.get("qr_code"):
            data["qrCode"] = self.metadata["qr_code"]
            data["qrCodeBase64"] = self.metadata.get("qr_code_base64")
        return data


@dataclass(frozen=True)
class ProviderPayment:
    """
    What the provider said about one payment.

    Returned by PaymentProvider.create_payment() and get_payment().
    """

    external_id: str
    status: str
    status_detail: str = ""
    qr_code: Optional[str] = None
    qr_code_base64: Optional[str] = None
    qr_expires_at: Optional[str] = None

    @property
    def payment_status(self) -> PaymentStatus:
        return PaymentStatus.from_provider(self.status)
