"""
Payment intent creation, exactly once per idempotency key.

PaymentGateway validates the order snapshot locally, then asks the
provider to create the payment with the same idempotency key in the
``X-Idempotency-Key`` header. The intent is persisted only after the
provider returned an id; a failure leaves nothing behind.

Flow:
    1. Validate snapshot (ValidationError, provider not called)
    2. Take the per-key lock
    3. Return the stored intent if the key was used inside the window
    4. provider.create_payment(snapshot, key)  (GatewayError on failure)
    5. Persist PaymentIntent(status=CREATED, provider_status=<initial>)

The provider's initial status is NOT applied here: the caller hands it to
PaymentReconciler, the only writer of intent status.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

import bleach

from config import PaymentSettings
from core.exceptions import ValidationError
from core.repositories import PaymentIntentRepository
from core.tasks import KeyedLocks
from logging_config import get_logger
from models.payment import (
    OrderSnapshot,
    PaymentIntent,
    PaymentMethod,
    ProviderPayment,
)
from modules.mercado_pago import PaymentProvider


# Module logger
logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_INSTALLMENTS = 24


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sanitize_name(text: str) -> str:
    """Strip HTML tags and collapse whitespace in a payer name."""
    if not text:
        return ""
    text = bleach.clean(text.strip(), tags=[], strip=True)
    return " ".join(text.split())


class PaymentGateway:
    """
    Creates payment intents at the provider.

    Thread Safety:
        - Concurrent create() calls with the same key serialise on a
          per-key lock; different keys run in parallel
    """

    def __init__(
        self,
        provider: PaymentProvider,
        intents: PaymentIntentRepository,
        settings: Optional[PaymentSettings] = None,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.provider = provider
        self.intents = intents
        self.settings = settings or PaymentSettings()
        self._clock = clock
        self._key_locks = KeyedLocks()

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate(self, snapshot: OrderSnapshot, idempotency_key: str) -> OrderSnapshot:
        """
        Check everything the provider would reject, before calling it.

        Returns:
            The snapshot with the payer name sanitised

        Raises:
            ValidationError: On the first invalid field
        """
        if not idempotency_key or not idempotency_key.strip():
            raise ValidationError("Idempotency key is required", field="idempotency_key")

        amount = snapshot.amount
        if not isinstance(amount, Decimal):
            raise ValidationError("Amount must be a decimal value", field="amount")
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero", field="amount")
        if amount.as_tuple().exponent < -2:
            raise ValidationError("Amount must have at most 2 decimal places", field="amount")

        if not isinstance(snapshot.method, PaymentMethod):
            raise ValidationError("Payment method must be pix or credit", field="method")

        payer = snapshot.payer
        name = sanitize_name(payer.full_name)
        if len(name) < 2 or len(name) > 100:
            raise ValidationError("Payer name must be 2 to 100 characters", field="payer.fullName")
        if not EMAIL_PATTERN.match(payer.email or ""):
            raise ValidationError("Payer email is invalid", field="payer.email")
        cpf_digits = re.sub(r"\D", "", payer.cpf or "")
        if len(cpf_digits) != 11:
            raise ValidationError("CPF must have 11 digits", field="payer.cpf")

        if snapshot.method is PaymentMethod.CREDIT:
            card = snapshot.card
            if card is None or not card.token:
                raise ValidationError("Card token is required for credit payments", field="card.token")
            if not card.payment_method_id:
                raise ValidationError("Card brand is required for credit payments", field="card.paymentMethodId")
            if not 1 <= card.installments <= MAX_INSTALLMENTS:
                raise ValidationError(
                    f"Installments must be between 1 and {MAX_INSTALLMENTS}",
                    field="card.installments"
                )

        clean_payer = replace(payer, full_name=name, email=payer.email.strip(), cpf=cpf_digits)
        return replace(snapshot, payer=clean_payer)

    # =========================================================================
    # CREATION
    # =========================================================================

    def find_reusable(self, idempotency_key: str) -> Optional[PaymentIntent]:
        """Intent already created for this key inside the validity window."""
        intent = self.intents.get_by_idempotency_key(idempotency_key)
        if intent is not None and intent.is_reusable(self._clock()):
            return intent
        return None

    def create(self, snapshot: OrderSnapshot, idempotency_key: str) -> PaymentIntent:
        """
        Create (or return) the payment intent for an idempotency key.

        Args:
            snapshot: Order data to charge
            idempotency_key: Client-supplied checkout attempt key

        Returns:
            PaymentIntent in CREATED status (or the existing intent)

        Raises:
            ValidationError: Malformed payer, amount or card data
            GatewayError: Provider rejected the payment or was unreachable
        """
        snapshot = self.validate(snapshot, idempotency_key)

        with self._key_locks.hold(idempotency_key):
            existing = self.find_reusable(idempotency_key)
            if existing is not None:
                logger.info(
                    f"Reusing payment {existing.id[:8]} for idempotency key {idempotency_key[:12]}"
                )
                return existing

            payment = self.provider.create_payment(snapshot, idempotency_key)
            intent = self._build_intent(snapshot, idempotency_key, payment)
            self.intents.save(intent)

        logger.info(
            f"Payment {intent.id[:8]} created: external={intent.external_id}, "
            f"amount={intent.amount}, method={intent.method.value}, provider_status={payment.status}"
        )
        return intent

    def _build_intent(
        self,
        snapshot: OrderSnapshot,
        idempotency_key: str,
        payment: ProviderPayment
    ) -> PaymentIntent:
        now = self._clock()
        metadata = {}
        if payment.qr_code:
            metadata = {
                "qr_code": payment.qr_code,
                "qr_code_base64": payment.qr_code_base64,
                "qr_expires_at": payment.qr_expires_at,
            }
        return PaymentIntent(
            id=str(uuid.uuid4()),
            external_id=payment.external_id,
            idempotency_key=idempotency_key,
            order_id=snapshot.order_id,
            user_id=snapshot.user_id,
            amount=snapshot.amount,
            method=snapshot.method,
            provider_status=payment.status,
            created_at=now,
            expires_at=now + timedelta(seconds=self.settings.idempotency_window_seconds),
            metadata=metadata,
        )

    # =========================================================================
    # STATUS
    # =========================================================================

    def fetch_status(self, intent: PaymentIntent) -> ProviderPayment:
        """
        Current provider view of an intent.

        Raises:
            PaymentNotFound: Provider does not know the payment
            GatewayError: Provider failure
        """
        return self.provider.get_payment(intent.external_id)
