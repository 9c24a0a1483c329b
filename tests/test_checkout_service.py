"""
Integration tests for CheckoutService.

Wires the real services together with a FakeCarrier and a
FakePaymentProvider; polling is slowed down so only the signals a test
sends move payments along.
"""

import threading
from decimal import Decimal

import pytest

from config import RateLimitSettings, ReconcilerSettings, ShippingSettings
from core.exceptions import GatewayError, OrderNotFound, RateLimitExceeded, ValidationError
from core.repositories import (
    InMemoryCatalogRepository,
    InMemoryInventoryRepository,
    InMemoryOrderRepository,
    InMemoryPaymentIntentRepository,
    InMemoryStockRecordRepository,
)
from models.order import OrderStatus
from models.payment import PayerInfo, PaymentMethod, PaymentStatus
from modules.rate_limiter import RateLimiter
from services.checkout_service import CheckoutRequest, CheckoutService
from services.payment_gateway import PaymentGateway
from services.quote_cache import ShippingQuoteCache
from services.reconciler import PaymentReconciler
from services.shipping_service import ShippingRateClient
from services.stock_ledger import StockLedger
from tests.fakes import FakeCarrier, FakePaymentProvider, make_catalog_products


PAYER = PayerInfo(full_name="Maria Silva", email="maria@example.com", cpf="123.456.789-09")


def _request(key="abc123", user_id="alice", items=(("mug", 2), ("poster", 1)), **overrides):
    fields = dict(
        user_id=user_id,
        idempotency_key=key,
        items=tuple(items),
        service_code="04510",
        origin_zip="01310-100",
        dest_zip="20040-020",
        payer=PAYER,
        method=PaymentMethod.PIX,
    )
    fields.update(overrides)
    return CheckoutRequest(**fields)


class ApprovingIntentRepository(InMemoryPaymentIntentRepository):
    """
    Delivers an approval webhook right after the first intent is stored,
    while checkout is still holding the idempotency key.
    """

    def __init__(self):
        super().__init__()
        self.pipeline = None
        self._fired = False

    def save(self, intent):
        super().save(intent)
        if self._fired:
            return
        self._fired = True

        pipeline = self.pipeline
        pipeline.provider.set_status(intent.external_id, "approved")
        webhook = threading.Thread(
            target=pipeline.reconciler.handle_notification,
            args=({"type": "payment", "action": "payment.updated", "data": {"id": intent.external_id}},),
        )
        webhook.start()
        webhook.join(timeout=5)


class RecordingOrderRepository(InMemoryOrderRepository):

    def __init__(self):
        super().__init__()
        self.saved_ids = []

    def save(self, order):
        super().save(order)
        self.saved_ids.append(order.id)


class Pipeline:
    """Every collaborator of CheckoutService, in memory."""

    def __init__(self, rate_limit=100, intents=None):
        self.carrier = FakeCarrier()
        self.carrier.set_price("04014", "30.00", 2)
        self.carrier.set_price("04510", "15.50", 8)
        self.provider = FakePaymentProvider(initial_status="pending", create_delay=0.02)

        self.orders = RecordingOrderRepository()
        self.intents = intents or InMemoryPaymentIntentRepository()
        self.inventory = InMemoryInventoryRepository({"mug": 10, "poster": 5})

        self.client = ShippingRateClient(ShippingSettings(timeout_seconds=0.5, max_workers=4), self.carrier)
        self.cache = ShippingQuoteCache(self.client)
        self.gateway = PaymentGateway(self.provider, self.intents)
        self.ledger = StockLedger(self.inventory, InMemoryStockRecordRepository(), self.orders)
        self.reconciler = PaymentReconciler(
            self.gateway, self.intents, self.orders, self.ledger,
            settings=ReconcilerSettings(initial_interval=5, max_interval=5, max_attempts=1),
        )
        self.service = CheckoutService(
            InMemoryCatalogRepository(make_catalog_products()),
            self.orders,
            self.cache,
            self.gateway,
            self.reconciler,
            RateLimiter(RateLimitSettings(max_requests=rate_limit, window_seconds=300)),
        )

    def close(self):
        self.reconciler.shutdown(timeout_per_thread=2.0)
        self.carrier.release()
        self.client.shutdown()


# Fixtures

@pytest.fixture
def pipeline():
    pipeline = Pipeline()
    yield pipeline
    pipeline.close()


class TestCheckout:

    def test_creates_order_and_payment(self, pipeline):
        result = pipeline.service.checkout(_request())

        assert result.reused is False
        # 2 x 39.90 + 25.00 + 15.50 shipping
        assert result.order.total == Decimal("120.30")
        assert result.intent.amount == Decimal("120.30")
        assert result.order.status is OrderStatus.PENDING
        assert result.order.payment_id == result.intent.id
        assert result.order.shipping_quote.service_code == "04510"
        assert result.intent.status is PaymentStatus.PENDING
        assert pipeline.reconciler.is_polling(result.intent.id)

        data = result.to_dict()
        assert data["status"] == "pending"
        assert data["qrCode"].startswith("000201")

    def test_retry_returns_first_attempt(self, pipeline):
        first = pipeline.service.checkout(_request())
        second = pipeline.service.checkout(_request())

        assert second.reused is True
        assert second.order.id == first.order.id
        assert second.intent.id == first.intent.id
        assert len(pipeline.provider.create_calls) == 1

    def test_key_of_another_user_rejected(self, pipeline):
        pipeline.service.checkout(_request())

        with pytest.raises(ValidationError):
            pipeline.service.checkout(_request(user_id="bob"))

    def test_concurrent_same_key_one_intent_one_decrement(self, pipeline):
        results = []
        results_lock = threading.Lock()
        barrier = threading.Barrier(6)

        def worker():
            barrier.wait()
            result = pipeline.service.checkout(_request(key="abc123"))
            with results_lock:
                results.append(result)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert len(results) == 6
        assert len({r.intent.id for r in results}) == 1
        assert len({r.order.id for r in results}) == 1
        assert pipeline.provider.create_calls == ["abc123"]

        external_id = results[0].intent.external_id
        pipeline.provider.set_status(external_id, "approved")
        for _ in range(3):
            pipeline.reconciler.handle_notification(
                {"type": "payment", "action": "payment.updated", "data": {"id": external_id}}
            )

        assert pipeline.inventory.available("mug") == 8
        assert pipeline.inventory.available("poster") == 4
        assert pipeline.service.get_order(results[0].order.id).status is OrderStatus.PAID


    def test_webhook_during_checkout_settles_order_and_stock(self):
        intents = ApprovingIntentRepository()
        pipeline = Pipeline(intents=intents)
        intents.pipeline = pipeline
        try:
            result = pipeline.service.checkout(_request())

            assert result.intent.status is PaymentStatus.APPROVED
            assert result.order.status is OrderStatus.PAID
            assert result.order.payment_id == result.intent.id
            assert pipeline.inventory.available("mug") == 8
            assert pipeline.inventory.available("poster") == 4
            assert not pipeline.reconciler.is_polling(result.intent.id)
        finally:
            pipeline.close()


class TestCheckoutValidation:

    @pytest.mark.parametrize("items", [(), (("ghost", 1),), (("mug", 0),)])
    def test_bad_items(self, pipeline, items):
        with pytest.raises(ValidationError):
            pipeline.service.checkout(_request(items=items))

        assert pipeline.provider.create_calls == []

    def test_missing_method(self, pipeline):
        with pytest.raises(ValidationError):
            pipeline.service.checkout(_request(method=None))

    def test_missing_key(self, pipeline):
        with pytest.raises(ValidationError):
            pipeline.service.checkout(_request(key=""))

    def test_invalid_destination(self, pipeline):
        with pytest.raises(ValidationError):
            pipeline.service.checkout(_request(dest_zip="123"))

        assert pipeline.provider.create_calls == []

    def test_gateway_error_fails_the_order(self, pipeline):
        pipeline.provider.create_error = GatewayError("Card declined", code="cc_rejected_other_reason")

        with pytest.raises(GatewayError):
            pipeline.service.checkout(_request())

        assert pipeline.intents.get_by_idempotency_key("abc123") is None
        (order_id,) = pipeline.orders.saved_ids
        assert pipeline.orders.get(order_id).status is OrderStatus.FAILED
        assert pipeline.inventory.available("mug") == 10

    def test_invalid_payer_saves_no_order(self, pipeline):
        payer = PayerInfo(full_name="M", email="maria@example.com", cpf="12345678909")

        with pytest.raises(ValidationError):
            pipeline.service.checkout(_request(payer=payer))

        assert pipeline.orders.saved_ids == []
        assert pipeline.provider.create_calls == []

    def test_rate_limit(self):
        pipeline = Pipeline(rate_limit=2)
        try:
            pipeline.service.checkout(_request(key="k1"))
            pipeline.service.checkout(_request(key="k2"))
            # Retrying a used key does not count as a new attempt
            pipeline.service.checkout(_request(key="k1"))

            with pytest.raises(RateLimitExceeded):
                pipeline.service.checkout(_request(key="k3"))
        finally:
            pipeline.close()


class TestOrders:

    def test_get_order_of_owner(self, pipeline):
        result = pipeline.service.checkout(_request())

        assert pipeline.service.get_order(result.order.id, "alice").id == result.order.id

    def test_get_order_of_other_user(self, pipeline):
        result = pipeline.service.checkout(_request())

        with pytest.raises(OrderNotFound):
            pipeline.service.get_order(result.order.id, "bob")


class TestCheckoutRequest:

    def test_from_dict(self):
        request = CheckoutRequest.from_dict(
            {
                "items": [{"productId": "mug", "quantity": "2"}],
                "shipping": {"service": "04014", "destinyCep": "20040-020"},
                "payer": {"fullName": "Maria Silva", "email": "maria@example.com", "cpf": "12345678909"},
                "paymentMethod": "credit",
                "card": {"token": "tok", "paymentMethodId": "visa", "installments": 2},
            },
            user_id="alice",
            idempotency_key="abc123",
            default_origin="01310-100",
        )

        assert request.items == (("mug", 2),)
        assert request.origin_zip == "01310-100"
        assert request.method is PaymentMethod.CREDIT
        assert request.card.installments == 2
        assert request.payer.full_name == "Maria Silva"

    def test_bad_item(self):
        with pytest.raises(ValidationError):
            CheckoutRequest.from_dict({"items": [{"productId": "mug"}]}, "alice", "abc123")
