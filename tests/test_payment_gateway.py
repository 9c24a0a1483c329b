"""
Unit tests for PaymentGateway.

Covers local validation, idempotent creation per key (sequential and
concurrent) and failure atomicity.
"""

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from config import PaymentSettings
from core.exceptions import GatewayError, ValidationError
from core.repositories import InMemoryPaymentIntentRepository
from models.payment import CardDetails, PaymentMethod, PaymentStatus
from services.payment_gateway import PaymentGateway, sanitize_name
from tests.fakes import FakePaymentProvider, make_snapshot


# Fixtures

@pytest.fixture
def provider():
    return FakePaymentProvider(initial_status="pending")


@pytest.fixture
def intents():
    return InMemoryPaymentIntentRepository()


@pytest.fixture
def gateway(provider, intents):
    return PaymentGateway(provider, intents)


class TestSanitizeName:

    def test_strips_tags(self):
        assert sanitize_name("<b>Maria</b> <i>Silva</i>") == "Maria Silva"

    def test_collapses_whitespace(self):
        assert sanitize_name("  Maria   da  Silva ") == "Maria da Silva"

    def test_empty(self):
        assert sanitize_name("") == ""


class TestValidation:
    """Invalid snapshots never reach the provider."""

    @pytest.mark.parametrize("amount", ["0", "-10.00", "10.001"])
    def test_bad_amount(self, gateway, provider, amount):
        with pytest.raises(ValidationError) as exc_info:
            gateway.create(make_snapshot(amount=amount), "key-1")

        assert exc_info.value.field == "amount"
        assert provider.create_calls == []

    def test_missing_key(self, gateway, provider):
        with pytest.raises(ValidationError):
            gateway.create(make_snapshot(), "  ")

        assert provider.create_calls == []

    @pytest.mark.parametrize("payer,field", [
        ({"full_name": "M"}, "payer.fullName"),
        ({"email": "not-an-email"}, "payer.email"),
        ({"cpf": "123.456"}, "payer.cpf"),
    ])
    def test_bad_payer(self, gateway, provider, payer, field):
        with pytest.raises(ValidationError) as exc_info:
            gateway.create(make_snapshot(**payer), "key-1")

        assert exc_info.value.field == field
        assert provider.create_calls == []

    def test_credit_requires_card(self, gateway, provider):
        with pytest.raises(ValidationError) as exc_info:
            gateway.create(make_snapshot(method=PaymentMethod.CREDIT), "key-1")

        assert exc_info.value.field == "card.token"

    def test_installments_bounds(self, gateway):
        card = CardDetails(token="tok", payment_method_id="visa", installments=30)

        with pytest.raises(ValidationError) as exc_info:
            gateway.create(make_snapshot(method=PaymentMethod.CREDIT, card=card), "key-1")

        assert exc_info.value.field == "card.installments"

    def test_validate_normalises_payer(self, gateway):
        snapshot = gateway.validate(
            make_snapshot(full_name="<i>Maria</i>  Silva", cpf="123.456.789-09"), "key-1"
        )

        assert snapshot.payer.full_name == "Maria Silva"
        assert snapshot.payer.cpf == "12345678909"


class TestCreate:

    def test_new_intent(self, gateway, provider, intents):
        intent = gateway.create(make_snapshot(amount="64.90"), "key-1")

        assert intent.status is PaymentStatus.CREATED
        assert intent.provider_status == "pending"
        assert intent.amount == Decimal("64.90")
        assert intent.external_id == "1001"
        assert intent.metadata["qr_code"].startswith("000201")
        assert intents.get(intent.id) is not None
        assert provider.create_calls == ["key-1"]

    def test_same_key_returns_same_intent(self, gateway, provider):
        first = gateway.create(make_snapshot(), "key-1")
        second = gateway.create(make_snapshot(), "key-1")

        assert second.id == first.id
        assert len(provider.create_calls) == 1

    def test_different_keys_create_different_intents(self, gateway, provider):
        first = gateway.create(make_snapshot(order_id="o-1"), "key-1")
        second = gateway.create(make_snapshot(order_id="o-2"), "key-2")

        assert first.id != second.id
        assert len(provider.create_calls) == 2

    def test_key_reusable_only_inside_window(self, provider, intents):
        clock_now = [datetime.now(timezone.utc)]
        gateway = PaymentGateway(
            provider, intents,
            PaymentSettings(idempotency_window_seconds=60),
            clock=lambda: clock_now[0],
        )
        first = gateway.create(make_snapshot(), "key-1")

        clock_now[0] += timedelta(seconds=61)
        second = gateway.create(make_snapshot(), "key-1")

        assert second.id != first.id
        assert len(provider.create_calls) == 2

    def test_concurrent_same_key_creates_once(self, intents):
        provider = FakePaymentProvider(create_delay=0.05)
        gateway = PaymentGateway(provider, intents)
        results = []
        results_lock = threading.Lock()

        def worker():
            intent = gateway.create(make_snapshot(), "abc123")
            with results_lock:
                results.append(intent.id)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert len(results) == 8
        assert len(set(results)) == 1
        assert provider.create_calls == ["abc123"]


class TestFailure:

    def test_gateway_error_leaves_no_intent(self, gateway, provider, intents):
        provider.create_error = GatewayError("Card declined", code="cc_rejected_bad_filled_card_number")

        with pytest.raises(GatewayError):
            gateway.create(make_snapshot(), "key-1")

        assert intents.get_by_idempotency_key("key-1") is None

    def test_retry_after_failure_creates(self, gateway, provider):
        provider.create_error = GatewayError("Provider unreachable", code="network_error")
        with pytest.raises(GatewayError):
            gateway.create(make_snapshot(), "key-1")

        provider.create_error = None
        intent = gateway.create(make_snapshot(), "key-1")

        assert intent.external_id == "1001"
        assert len(provider.create_calls) == 2

    def test_unavailable_codes_map_to_bad_gateway(self):
        assert GatewayError("x", code="timeout").http_status == 502
        assert GatewayError("x", code="http_500", status_code=500).http_status == 502
        assert GatewayError("x", code="cc_rejected_other_reason", status_code=400).http_status == 402


class TestFetchStatus:

    def test_reads_provider(self, gateway, provider):
        intent = gateway.create(make_snapshot(), "key-1")
        provider.set_status(intent.external_id, "approved")

        payment = gateway.fetch_status(intent)

        assert payment.payment_status is PaymentStatus.APPROVED

    def test_amount_is_fixed(self, gateway, intents):
        intent = gateway.create(make_snapshot(amount="10.00"), "key-1")

        again = gateway.create(make_snapshot(amount="99.00"), "key-1")

        assert again.amount == Decimal("10.00")
        assert intents.get(intent.id).amount == Decimal("10.00")
