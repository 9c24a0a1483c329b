"""
Checkout orchestration: cart -> order -> payment intent -> reconciliation.

One checkout attempt is identified by the client's idempotency key.
Retrying the same attempt (double click, network retry, two tabs) returns
the order and payment of the first attempt; the provider is called once.

Flow:
    1. Rate limit the user
    2. Price the cart from the catalog, quote the chosen shipping service
    3. Under the per-key lock: reuse the intent for the key, or save the
       pending order and create its intent through PaymentGateway (the
       order is marked failed if the provider refuses)
    4. Hand the provider's initial status to PaymentReconciler, then start
       polling while the payment is still open, or re-settle the order if a
       webhook already closed the payment
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from core.exceptions import OrderNotFound, StorefrontError, ValidationError
from core.repositories import CatalogRepository, OrderRepository
from core.tasks import KeyedLocks
from logging_config import get_logger
from models.cart import CartSnapshot
from models.order import Order, OrderItem, OrderStatus
from models.payment import (
    CardDetails,
    OrderSnapshot,
    PayerInfo,
    PaymentIntent,
    PaymentMethod,
    PaymentStatus,
)
from models.shipping import ShippingQuote
from modules.rate_limiter import RateLimiter
from .payment_gateway import PaymentGateway
from .quote_cache import ShippingQuoteCache
from .reconciler import PaymentReconciler


# Module logger
logger = get_logger(__name__)


@dataclass(frozen=True)
class CheckoutRequest:
    """Everything the customer submitted for one checkout attempt."""

    user_id: str
    idempotency_key: str
    items: Tuple[Tuple[str, int], ...]
    """(product_id, quantity) pairs."""

    service_code: str
    origin_zip: str
    dest_zip: str
    payer: PayerInfo
    method: Optional[PaymentMethod]
    card: Optional[CardDetails] = None

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        user_id: str,
        idempotency_key: str,
        default_origin: str = ""
    ) -> "CheckoutRequest":
        """Build from the checkout endpoint's JSON body."""
        raw_items = data.get("items") or []
        if not isinstance(raw_items, list):
            raise ValidationError("items must be a list", field="items")

        items = []
        for raw in raw_items:
            try:
                items.append((str(raw["productId"]), int(raw["quantity"])))
            except (KeyError, TypeError, ValueError):
                raise ValidationError("Each item needs productId and quantity", field="items") from None

        shipping = data.get("shipping")
        if not isinstance(shipping, dict):
            shipping = {}
        payer = data.get("payer")
        card = data.get("card")
        return cls(
            user_id=user_id,
            idempotency_key=idempotency_key,
            items=tuple(items),
            service_code=str(shipping.get("service", "")),
            origin_zip=str(shipping.get("originCep") or default_origin),
            dest_zip=str(shipping.get("destinyCep", "")),
            payer=PayerInfo.from_dict(payer if isinstance(payer, dict) else {}),
            method=PaymentMethod.parse(data.get("paymentMethod")),
            card=CardDetails.from_dict(card) if isinstance(card, dict) else None,
        )


@dataclass(frozen=True)
class CheckoutResult:
    order: Order
    intent: PaymentIntent
    reused: bool = False
    """True when the idempotency key had already been used."""

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": True,
            "orderId": self.order.id,
            "paymentId": self.intent.id,
            "externalId": self.intent.external_id,
            "status": self.intent.display_status.value,
            "total": float(self.order.total),
        }
        if self.intent.metadata.get("qr_code"):
            data["qrCode"] = self.intent.metadata["qr_code"]
            data["qrCodeBase64"] = self.intent.metadata.get("qr_code_base64")
        return data


class CheckoutService:
    """
    Creates an order and its payment exactly once per idempotency key.

    Thread Safety:
        - Concurrent checkouts with the same key serialise on a per-key lock
    """

    def __init__(
        self,
        catalog: CatalogRepository,
        orders: OrderRepository,
        quote_cache: ShippingQuoteCache,
        gateway: PaymentGateway,
        reconciler: PaymentReconciler,
        rate_limiter: Optional[RateLimiter] = None
    ):
        self.catalog = catalog
        self.orders = orders
        self.quote_cache = quote_cache
        self.gateway = gateway
        self.reconciler = reconciler
        self.rate_limiter = rate_limiter
        self._key_locks = KeyedLocks()

    def _price_items(self, items: Sequence[Tuple[str, int]]) -> Tuple[List[OrderItem], CartSnapshot]:
        if not items:
            raise ValidationError("Cart is empty", field="items")

        order_items: List[OrderItem] = []
        line_items = []
        for product_id, quantity in items:
            if quantity <= 0:
                raise ValidationError(f"Quantity for {product_id} must be positive", field="items")
            product = self.catalog.get(product_id)
            if product is None:
                raise ValidationError(f"Unknown product {product_id}", field="items")
            order_items.append(OrderItem(product_id, quantity, product.price))
            line_items.append(product.to_line_item(quantity))

        return order_items, CartSnapshot.of(line_items)

    def _shipping_quote(self, request: CheckoutRequest, cart: CartSnapshot) -> ShippingQuote:
        if not request.service_code:
            raise ValidationError("Shipping service is required", field="shipping.service")

        result = self.quote_cache.get_or_quote(
            request.user_id,
            request.origin_zip,
            request.dest_zip,
            cart,
            [request.service_code],
        )
        if not result.success:
            raise ValidationError(result.error or "Shipping could not be calculated", field="shipping")

        quote = result.option_for(request.service_code)
        if quote is None:
            raise ValidationError(f"Shipping service {request.service_code} unavailable", field="shipping.service")
        return quote

    def checkout(self, request: CheckoutRequest) -> CheckoutResult:
        """
        Run one checkout attempt.

        Raises:
            RateLimitExceeded: Too many attempts for this user
            ValidationError: Bad cart, shipping or payer data
            GatewayError: Provider rejected the payment
        """
        if not request.idempotency_key:
            raise ValidationError("X-Idempotency-Key header is required", field="idempotency_key")

        with self._key_locks.hold(request.idempotency_key):
            existing = self.gateway.find_reusable(request.idempotency_key)
            if existing is not None:
                return self._reuse(existing, request)

            if self.rate_limiter is not None:
                self.rate_limiter.check(request.user_id)

            if request.method is None:
                raise ValidationError("Payment method must be pix or credit", field="paymentMethod")

            order_items, cart = self._price_items(request.items)
            quote = self._shipping_quote(request, cart)
            total = sum((item.subtotal for item in order_items), Decimal("0")) + quote.price
            total = total.quantize(Decimal("0.01"))

            order_id = str(uuid.uuid4())
            snapshot = self.gateway.validate(
                OrderSnapshot(
                    order_id=order_id,
                    user_id=request.user_id,
                    amount=total,
                    method=request.method,
                    payer=request.payer,
                    description=f"Order {order_id[:8]}",
                    card=request.card,
                ),
                request.idempotency_key,
            )

            # The order exists before the intent, so a webhook racing this
            # checkout always finds an order to settle
            self.orders.save(Order(
                id=order_id,
                user_id=request.user_id,
                items=tuple(order_items),
                total=total,
                shipping_quote=quote,
            ))
            try:
                intent = self.gateway.create(snapshot, request.idempotency_key)
            except StorefrontError:
                self.orders.transition(order_id, OrderStatus.FAILED)
                logger.warning(f"Order {order_id} failed: payment was not created")
                raise

            self.orders.attach_payment(order_id, intent.id)
            logger.info(f"Order {order_id} created for {request.user_id}: total={total}")

        initial = PaymentStatus.from_provider(intent.provider_status)
        intent = self.reconciler.apply(intent.id, initial, intent.provider_status)
        if intent.status.is_terminal:
            # A signal may have settled the intent while the order was incomplete
            self.reconciler.settle(intent.id)
        else:
            self.reconciler.start_polling(intent.id)

        return CheckoutResult(order=self.orders.get(order_id), intent=intent)

    def _reuse(self, intent: PaymentIntent, request: CheckoutRequest) -> CheckoutResult:
        if intent.user_id != request.user_id:
            raise ValidationError("Idempotency key already used", field="idempotency_key")

        order = self.orders.get(intent.order_id)
        if order is None:
            raise OrderNotFound(intent.order_id)

        logger.info(f"Checkout retry for key {request.idempotency_key[:12]}: order {order.id}")
        return CheckoutResult(order=order, intent=intent, reused=True)

    def get_order(self, order_id: str, user_id: Optional[str] = None) -> Order:
        """
        Raises:
            OrderNotFound: Unknown order, or owned by another user
        """
        order = self.orders.get(order_id)
        if order is None or (user_id is not None and order.user_id != user_id):
            raise OrderNotFound(order_id)
        return order
