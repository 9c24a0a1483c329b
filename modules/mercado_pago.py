"""
Payment provider clients.

PaymentProvider is the boundary PaymentGateway and PaymentReconciler talk
to. MercadoPagoClient implements it against the Mercado Pago REST API:

    POST /v1/payments          (X-Idempotency-Key header)
    GET  /v1/payments/{id}

Every failure is raised as GatewayError with the provider's error code
when there is one, or a local code (network_error, timeout, bad_response).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests

from core.exceptions import GatewayError, PaymentNotFound
from logging_config import get_logger
from models.payment import OrderSnapshot, PaymentMethod, ProviderPayment

logger = get_logger(__name__)


class PaymentProvider(ABC):
    """External payment provider."""

    @abstractmethod
    def create_payment(self, snapshot: OrderSnapshot, idempotency_key: str) -> ProviderPayment:
        """
        Create a payment.

        Raises:
            GatewayError: Provider rejected the request or was unreachable
        """

    @abstractmethod
    def get_payment(self, external_id: str) -> ProviderPayment:
        """
        Fetch the current state of a payment.

        Raises:
            PaymentNotFound: Provider does not know the id
            GatewayError: Any other failure
        """

    def close(self) -> None:
        """Release connections (optional)."""


class MercadoPagoClient(PaymentProvider):
    """
    Mercado Pago /v1/payments client.

    Thread Safety:
        - requests.Session is shared; its connection pool is thread-safe
          for the plain request/response calls made here
    """

    def __init__(
        self,
        access_token: str,
        api_url: str = "https://api.mercadopago.com",
        timeout_seconds: float = 15.0,
        session: Optional[requests.Session] = None
    ):
        if not access_token:
            raise ValueError("Mercado Pago access token is required")

        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()
        self._session.headers.update({
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        })

    # =========================================================================
    # PAYLOADS
    # =========================================================================

    @staticmethod
    def build_payload(snapshot: OrderSnapshot) -> Dict[str, Any]:
        """Request body for POST /v1/payments."""
        payer = snapshot.payer
        payload: Dict[str, Any] = {
            "transaction_amount": float(snapshot.amount),
            "description": snapshot.description or f"Order {snapshot.order_id}",
            "external_reference": snapshot.order_id,
            "payer": {
                "email": payer.email,
                "first_name": payer.first_name,
                "last_name": payer.last_name,
                "identification": {
                    "type": "CPF",
                    "number": "".join(ch for ch in payer.cpf if ch.isdigit()),
                },
            },
        }

        if snapshot.method is PaymentMethod.PIX:
            payload["payment_method_id"] = "pix"
        else:
            card = snapshot.card
            payload["payment_method_id"] = card.payment_method_id
            payload["token"] = card.token
            payload["installments"] = card.installments
            if card.issuer_id:
                payload["issuer_id"] = card.issuer_id

        return payload

    @staticmethod
    def parse_payment(data: Dict[str, Any]) -> ProviderPayment:
        """Provider JSON -> ProviderPayment (PIX QR code included when present)."""
        if "id" not in data or "status" not in data:
            raise GatewayError("Payment provider returned an incomplete payment", code="bad_response")

        transaction = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
        return ProviderPayment(
            external_id=str(data["id"]),
            status=str(data["status"]),
            status_detail=str(data.get("status_detail") or ""),
            qr_code=transaction.get("qr_code"),
            qr_code_base64=transaction.get("qr_code_base64"),
            qr_expires_at=data.get("date_of_expiration"),
        )

    # =========================================================================
    # HTTP
    # =========================================================================

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.api_url}{path}"
        try:
            return self._session.request(method, url, timeout=self.timeout_seconds, **kwargs)
        except requests.exceptions.Timeout:
            logger.error(f"{method} {path} timed out after {self.timeout_seconds}s")
            raise GatewayError("Payment provider timed out", code="timeout") from None
        except requests.exceptions.RequestException as e:
            logger.error(f"{method} {path} failed: {e}")
            raise GatewayError("Payment provider unreachable", code="network_error") from e

    @staticmethod
    def _error_from(response: requests.Response) -> GatewayError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        code = None
        causes = body.get("cause") or []
        if isinstance(causes, list) and causes and isinstance(causes[0], dict):
            code = str(causes[0].get("code") or "") or None
        code = code or body.get("error") or f"http_{response.status_code}"
        message = body.get("message") or f"Payment provider returned HTTP {response.status_code}"
        return GatewayError(message, code=str(code), status_code=response.status_code)

    def create_payment(self, snapshot: OrderSnapshot, idempotency_key: str) -> ProviderPayment:
        payload = self.build_payload(snapshot)
        response = self._request(
            "POST",
            "/v1/payments",
            json=payload,
            headers={"X-Idempotency-Key": idempotency_key},
        )

        if response.status_code not in (200, 201):
            error = self._error_from(response)
            logger.error(f"Payment creation rejected for order {snapshot.order_id}: {error}")
            raise error

        try:
            data = response.json()
        except ValueError:
            raise GatewayError("Payment provider returned invalid JSON", code="bad_response") from None

        payment = self.parse_payment(data)
        logger.info(
            f"Created {snapshot.method.value} payment {payment.external_id} "
            f"for order {snapshot.order_id}: {payment.status}"
        )
        return payment

    def get_payment(self, external_id: str) -> ProviderPayment:
        response = self._request("GET", f"/v1/payments/{external_id}")

        if response.status_code == 404:
            raise PaymentNotFound(external_id)
        if response.status_code != 200:
            raise self._error_from(response)

        try:
            data = response.json()
        except ValueError:
            raise GatewayError("Payment provider returned invalid JSON", code="bad_response") from None

        return self.parse_payment(data)

    def close(self) -> None:
        self._session.close()
