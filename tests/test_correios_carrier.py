"""
Unit tests for the Correios CalcPrecoPrazo carrier.

No network: the HTTP session is replaced with a MagicMock.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from core.exceptions import CarrierError, CarrierTimeout
from models.cart import PackageDimensions
from modules.carriers import CorreiosCarrier


NOW = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)
PACKAGE = PackageDimensions(total_weight_g=1000, length_cm=45, width_cm=11, height_cm=28)


def _xml(code="04510", valor="15,50", prazo="8", erro="0", msg=""):
    return (
        '<?xml version="1.0" encoding="ISO-8859-1" ?>'
        "<Servicos><cServico>"
        f"<Codigo>{code}</Codigo><Valor>{valor}</Valor>"
        f"<PrazoEntrega>{prazo}</PrazoEntrega>"
        f"<Erro>{erro}</Erro><MsgErro>{msg}</MsgErro>"
        "</cServico></Servicos>"
    )


# Fixtures

@pytest.fixture
def carrier():
    carrier = CorreiosCarrier("http://correios.test/calculador", quote_ttl_seconds=300)
    yield carrier
    carrier.close()


@pytest.fixture
def session(carrier):
    session = MagicMock()
    carrier._session = lambda: session
    return session


class TestBuildParams:

    def test_weight_in_kilograms(self):
        params = CorreiosCarrier.build_params("01310100", "20040020", PACKAGE, "04510")

        assert params["nVlPeso"] == "1.000"
        assert params["nCdServico"] == "04510"
        assert params["sCepOrigem"] == "01310100"
        assert params["sCepDestino"] == "20040020"

    def test_dimensions_and_box_format(self):
        params = CorreiosCarrier.build_params("01310100", "20040020", PACKAGE, "04014")

        assert params["nCdFormato"] == "1"
        assert params["nVlComprimento"] == "45"
        assert params["nVlLargura"] == "11"
        assert params["nVlAltura"] == "28"
        assert params["StrRetorno"] == "xml"


class TestParseResponse:

    def test_valid_quote(self, carrier):
        quote = carrier.parse_response("04510", _xml(), now=NOW)

        assert quote.price == Decimal("15.50")
        assert quote.eta_days == 8
        assert quote.service_name == "PAC"
        assert quote.is_estimate is False
        assert quote.reason is None
        assert quote.expires_at == NOW + timedelta(minutes=5)

    def test_thousands_separator(self, carrier):
        quote = carrier.parse_response("04014", _xml(code="04014", valor="1.234,56", prazo="2"), now=NOW)

        assert quote.price == Decimal("1234.56")

    @pytest.mark.parametrize("code", ["010", "011"])
    def test_warning_codes_still_priced(self, carrier, code):
        quote = carrier.parse_response("04510", _xml(erro=code, msg="Prazo estendido"), now=NOW)

        assert quote.price == Decimal("15.50")

    def test_carrier_error_code(self, carrier):
        body = _xml(valor="0,00", prazo="0", erro="-3", msg="CEP de destino invalido")

        with pytest.raises(CarrierError) as exc_info:
            carrier.parse_response("04510", body)

        assert exc_info.value.carrier_code == "-3"
        assert "CEP de destino invalido" in exc_info.value.reason

    @pytest.mark.parametrize("valor,prazo", [("0,00", "8"), ("15,50", "0"), ("-1,00", "3")])
    def test_non_positive_values_rejected(self, carrier, valor, prazo):
        with pytest.raises(CarrierError):
            carrier.parse_response("04510", _xml(valor=valor, prazo=prazo))

    def test_garbage_values_rejected(self, carrier):
        with pytest.raises(CarrierError):
            carrier.parse_response("04510", _xml(valor="abc", prazo="x"))

    def test_unparsable_xml(self, carrier):
        with pytest.raises(CarrierError):
            carrier.parse_response("04510", "<html>Service Unavailable")

    def test_missing_service_element(self, carrier):
        with pytest.raises(CarrierError):
            carrier.parse_response("04510", "<Servicos></Servicos>")


class TestQuoteService:

    def test_success(self, carrier, session):
        session.get.return_value = MagicMock(status_code=200, text=_xml())

        quote = carrier.quote_service("01310100", "20040020", PACKAGE, "04510", 8)

        assert quote.price == Decimal("15.50")
        _, kwargs = session.get.call_args
        assert kwargs["timeout"] == 8
        assert kwargs["params"]["nCdServico"] == "04510"

    def test_timeout_becomes_carrier_timeout(self, carrier, session):
        session.get.side_effect = requests.exceptions.ReadTimeout("slow")

        with pytest.raises(CarrierTimeout):
            carrier.quote_service("01310100", "20040020", PACKAGE, "04014", 5)

    def test_connection_error(self, carrier, session):
        session.get.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(CarrierError) as exc_info:
            carrier.quote_service("01310100", "20040020", PACKAGE, "04014", 5)

        assert not isinstance(exc_info.value, CarrierTimeout)

    def test_http_error(self, carrier, session):
        session.get.return_value = MagicMock(status_code=503, text="")

        with pytest.raises(CarrierError, match="HTTP 503"):
            carrier.quote_service("01310100", "20040020", PACKAGE, "04014", 5)
