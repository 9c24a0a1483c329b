"""
Carrier strategies for shipping rate lookups.

A CarrierStrategy prices ONE service for one package and either returns a
ShippingQuote or raises CarrierError. It never estimates and never retries:
ShippingRateClient owns timeouts and fallback.

CorreiosCarrier speaks the Correios CalcPrecoPrazo web service:

    GET {url}?nCdEmpresa=&sDsSenha=&nCdServico=04510&sCepOrigem=01310100
        &sCepDestino=20040020&nVlPeso=1.0&nCdFormato=1&nVlComprimento=20
        &nVlAltura=10&nVlLargura=15&nVlDiametro=0&sCdMaoPropria=N
        &nVlValorDeclarado=0&sCdAvisoRecebimento=N&StrRetorno=xml

    <Servicos><cServico>
        <Codigo>04510</Codigo><Valor>15,50</Valor><PrazoEntrega>8</PrazoEntrega>
        <Erro>0</Erro><MsgErro></MsgErro>
    </cServico></Servicos>
"""

from __future__ import annotations

import threading
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

import requests

from core.exceptions import CarrierError, CarrierTimeout
from logging_config import get_logger
from models.cart import PackageDimensions
from models.shipping import ShippingQuote
from .estimator import service_name

logger = get_logger(__name__)

# Carrier business codes that still come with a valid price
# (010: "delivery time extended", 011: "restricted area, partial delivery")
_WARNING_CODES = {"0", "010", "011"}


class CarrierStrategy(ABC):
    """Prices a single service for a single package."""

    name = "carrier"

    @abstractmethod
    def quote_service(
        self,
        origin_zip: str,
        dest_zip: str,
        package: PackageDimensions,
        service_code: str,
        timeout_seconds: float
    ) -> ShippingQuote:
        """
        Ask the carrier for one service.

        Zips are already normalised to 8 digits.

        Raises:
            CarrierTimeout: If the carrier did not answer in time
            CarrierError: For any other failure
        """

    def close(self) -> None:
        """Release connections (optional)."""


class CorreiosCarrier(CarrierStrategy):
    """
    Correios CalcPrecoPrazo client.

    Thread Safety:
        - One requests.Session per worker thread (thread-local)
        - No other shared state
    """

    name = "correios"

    def __init__(self, url: str, quote_ttl_seconds: float = 300.0):
        self.url = url
        self.quote_ttl_seconds = quote_ttl_seconds
        self._local = threading.local()
        self._sessions = []
        self._sessions_lock = threading.Lock()

    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update({"Accept": "application/xml"})
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    @staticmethod
    def build_params(
        origin_zip: str,
        dest_zip: str,
        package: PackageDimensions,
        service_code: str
    ) -> dict:
        """Query string for one service (weight in kg, box format)."""
        return {
            "nCdEmpresa": "",
            "sDsSenha": "",
            "nCdServico": service_code,
            "sCepOrigem": origin_zip,
            "sCepDestino": dest_zip,
            "nVlPeso": f"{package.total_weight_g / 1000:.3f}",
            "nCdFormato": "1",
            "nVlComprimento": f"{package.length_cm:g}",
            "nVlAltura": f"{package.height_cm:g}",
            "nVlLargura": f"{package.width_cm:g}",
            "nVlDiametro": "0",
            "sCdMaoPropria": "N",
            "nVlValorDeclarado": "0",
            "sCdAvisoRecebimento": "N",
            "StrRetorno": "xml",
        }

    def quote_service(
        self,
        origin_zip: str,
        dest_zip: str,
        package: PackageDimensions,
        service_code: str,
        timeout_seconds: float
    ) -> ShippingQuote:
        params = self.build_params(origin_zip, dest_zip, package, service_code)

        try:
            response = self._session().get(self.url, params=params, timeout=timeout_seconds)
        except requests.exceptions.Timeout:
            raise CarrierTimeout(service_code, timeout_seconds) from None
        except requests.exceptions.RequestException as e:
            raise CarrierError(service_code, f"transport error: {e}") from e

        logger.debug(f"Correios {service_code} {origin_zip}->{dest_zip}: HTTP {response.status_code}")
        if response.status_code != 200:
            raise CarrierError(service_code, f"HTTP {response.status_code}")

        return self.parse_response(service_code, response.text)

    def parse_response(
        self,
        service_code: str,
        body: str,
        now: Optional[datetime] = None
    ) -> ShippingQuote:
        """
        Parse a CalcPrecoPrazo XML body.

        Raises:
            CarrierError: On unparsable XML, a carrier error code, or a
                non-positive price or delivery time
        """
        try:
            root = ET.fromstring(body)
        except ET.ParseError as e:
            raise CarrierError(service_code, f"unparsable response: {e}") from e

        node = root if root.tag == "cServico" else root.find(".//cServico")
        if node is None:
            raise CarrierError(service_code, "response has no cServico element")

        error_code = (node.findtext("Erro") or "0").strip()
        if error_code not in _WARNING_CODES:
            message = (node.findtext("MsgErro") or "").strip() or "carrier returned an error"
            raise CarrierError(service_code, message, carrier_code=error_code)

        raw_price = (node.findtext("Valor") or "").strip()
        raw_eta = (node.findtext("PrazoEntrega") or "").strip()
        try:
            # "1.234,56" -> "1234.56"
            price = Decimal(raw_price.replace(".", "").replace(",", "."))
            eta_days = int(raw_eta)
        except (InvalidOperation, ValueError):
            raise CarrierError(
                service_code, f"bad price/eta {raw_price!r}/{raw_eta!r}"
            ) from None

        if price <= 0 or eta_days <= 0:
            raise CarrierError(service_code, f"non-positive price/eta {price}/{eta_days}")

        now = now or datetime.now(timezone.utc)
        return ShippingQuote(
            service_code=service_code,
            service_name=service_name(service_code),
            price=price.quantize(Decimal("0.01")),
            eta_days=eta_days,
            is_estimate=False,
            expires_at=now + timedelta(seconds=self.quote_ttl_seconds),
        )

    def close(self) -> None:
        with self._sessions_lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()
