"""
Payment reconciliation: the only writer of PaymentIntent status.

Two signals report the provider's view of a payment and they may both
fire, in any order, any number of times:

    - Polling: one thread per open intent, backing off 2s, 4s, 8s ... 30s
    - Webhook: the provider calls us on every status change

Both end up in apply(intent_id, observed_status).

State machine:
    CREATED -> PENDING (-> IN_PROCESS) -> APPROVED | REJECTED | CANCELLED | EXPIRED

    - Statuses only move forward; the four outcomes are terminal
    - First terminal write wins; a different terminal status afterwards is a
      ReconciliationConflict (logged at WARNING, never raised)
    - APPROVED: order -> paid, StockLedger decrements (guarded per order)
    - REJECTED: order -> failed
    - CANCELLED / EXPIRED: order -> cancelled

Thread model:
    Main Thread (Flask)
    ├── Poll-<id> threads (one per open intent, stop Event each)
    ├── AbandonSweep thread (expire_abandoned() every sweep interval)
    └── Request threads (webhook / status endpoint) calling apply()

Usage:
    reconciler.apply(intent.id, PaymentStatus.from_provider("pending"))
    reconciler.start_polling(intent.id)

    # Webhook route
    reconciler.handle_notification(request.get_json())

    # At app shutdown
    reconciler.shutdown()
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from config import ReconcilerSettings
from core.exceptions import (
    GatewayError,
    OperationTimeout,
    PaymentNotFound,
    ReconciliationConflict,
    ValidationError,
)
from core.repositories import OrderRepository, PaymentIntentRepository
from core.tasks import KeyedLocks, TimeoutRunner
from logging_config import get_logger, get_payment_logger, log_context, set_thread_name
from models.order import OrderStatus
from models.payment import PaymentIntent, PaymentStatus
from .payment_gateway import PaymentGateway
from .stock_ledger import StockLedger


# Module logger
logger = get_logger(__name__)

WEBHOOK_ACTIONS = frozenset({"payment.updated", "payment.created"})

ORDER_STATUS_FOR = {
    PaymentStatus.APPROVED: OrderStatus.PAID,
    PaymentStatus.REJECTED: OrderStatus.FAILED,
    PaymentStatus.CANCELLED: OrderStatus.CANCELLED,
    PaymentStatus.EXPIRED: OrderStatus.CANCELLED,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentReconciler:
    """
    Drives payment intents to a terminal status.

    Thread Safety:
        - apply() serialises per intent (KeyedLocks)
        - Polling threads are tracked under _pollers_lock
        - Each polling thread owns a stop Event; a terminal apply() sets it
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        intents: PaymentIntentRepository,
        orders: OrderRepository,
        ledger: StockLedger,
        settings: Optional[ReconcilerSettings] = None,
        runner: Optional[TimeoutRunner] = None,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.gateway = gateway
        self.intents = intents
        self.orders = orders
        self.ledger = ledger
        self.settings = settings or ReconcilerSettings()
        self._runner = runner or TimeoutRunner(max_workers=4, thread_name_prefix="PollCall")
        self._clock = clock
        self._intent_locks = KeyedLocks()

        # Track active polling threads for cleanup
        self._pollers: Dict[str, Tuple[threading.Thread, threading.Event]] = {}
        self._pollers_lock = threading.Lock()

        self._sweeper: Optional[threading.Thread] = None
        self._sweep_stop = threading.Event()

        logger.info("PaymentReconciler initialized")

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    def _get_intent(self, intent_id: str) -> PaymentIntent:
        intent = self.intents.get(intent_id)
        if intent is None:
            raise PaymentNotFound(intent_id)
        return intent

    def _is_abandoned(self, intent: PaymentIntent) -> bool:
        age = self._clock() - intent.created_at
        return age >= timedelta(seconds=self.settings.abandon_after_seconds)

    def apply(
        self,
        intent_id: str,
        observed: PaymentStatus,
        provider_status: Optional[str] = None
    ) -> PaymentIntent:
        """
        Apply an observed status to an intent.

        Idempotent: re-applying the current status changes nothing, and a
        terminal status is never replaced.

        Args:
            intent_id: Internal intent id
            observed: Status seen at the provider (or EXPIRED)
            provider_status: Raw provider string, kept for display

        Returns:
            The intent after the update

        Raises:
            PaymentNotFound: Unknown intent id
        """
        with self._intent_locks.hold(intent_id):
            intent = self._get_intent(intent_id)
            current = intent.status

            if current.is_terminal:
                if observed is current:
                    logger.debug(f"Payment {intent_id[:8]} already {current.value}")
                    if current is PaymentStatus.APPROVED:
                        # Guarded: only completes a decrement that never ran
                        self._take_stock(intent)
                elif observed.is_terminal:
                    conflict = ReconciliationConflict(intent_id, current.value, observed.value)
                    logger.warning(str(conflict))
                return intent

            if not observed.is_terminal and self._is_abandoned(intent):
                logger.info(f"Payment {intent_id[:8]} abandoned since {intent.created_at.isoformat()}")
                observed = PaymentStatus.EXPIRED

            if provider_status:
                intent.provider_status = provider_status

            if observed.rank < current.rank or observed is current:
                self.intents.save(intent)
                return intent

            intent.status = observed
            if observed is PaymentStatus.APPROVED:
                intent.paid_at = self._clock()
            self.intents.save(intent)
            logger.info(f"Payment {intent_id[:8]}: {current.value} -> {observed.value}")

            if observed.is_terminal:
                self._settle_order(intent)

        if observed.is_terminal:
            self._stop_poller(intent_id)
        return intent

    def _take_stock(self, intent: PaymentIntent) -> None:
        order = self.orders.get(intent.order_id)
        if order is None:
            # Guard stays unset so a later settle() decrements the real lines
            logger.warning(f"Order {intent.order_id} not found, stock left for a later settle")
            return
        self.ledger.decrement_order(order.id, order.stock_lines())

    def _settle_order(self, intent: PaymentIntent) -> None:
        """Move the order to its final status and, on approval, take the stock."""
        order_status = ORDER_STATUS_FOR[intent.status]
        moved = self.orders.transition(intent.order_id, order_status)
        if moved:
            logger.info(f"Order {intent.order_id} -> {order_status.value}")
        else:
            logger.warning(f"Order {intent.order_id} not pending, left as is ({order_status.value} ignored)")

        if intent.status is PaymentStatus.APPROVED:
            self._take_stock(intent)

    def settle(self, intent_id: str) -> PaymentIntent:
        """
        Re-run settlement for a terminal intent.

        Safe to repeat: the order transition is compare-and-set and the
        stock decrement is guarded per order.

        Raises:
            PaymentNotFound: Unknown intent id
        """
        with self._intent_locks.hold(intent_id):
            intent = self._get_intent(intent_id)
            if not intent.status.is_terminal:
                return intent

            order = self.orders.get(intent.order_id)
            if order is not None and not order.status.is_final:
                self._settle_order(intent)
            elif intent.status is PaymentStatus.APPROVED:
                self._take_stock(intent)
        return intent

    def display_status(self, intent_id: str) -> PaymentStatus:
        """Status for the UI: EXPIRED once polling gave up on a pending intent."""
        return self._get_intent(intent_id).display_status

    def expire_abandoned(self) -> int:
        """
        Settle every open intent older than the abandonment window as EXPIRED.

        Returns:
            Number of intents expired
        """
        expired = 0
        for intent in self.intents.list_open():
            if self._is_abandoned(intent):
                if self.apply(intent.id, PaymentStatus.EXPIRED).status is PaymentStatus.EXPIRED:
                    expired += 1
        if expired:
            logger.info(f"Expired {expired} abandoned payment(s)")
        return expired

    # =========================================================================
    # ABANDONMENT SWEEP
    # =========================================================================

    @property
    def is_sweeping(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def start_sweeper(self) -> None:
        """
        Start the background thread that runs expire_abandoned().

        Without it an intent whose polling ran out and that never gets
        another webhook would stay open forever. Safe to call twice.
        """
        if self.is_sweeping:
            logger.warning("Abandonment sweeper already running")
            return

        self._sweep_stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            name="AbandonSweep",
            daemon=True
        )
        self._sweeper.start()
        logger.info(f"Abandonment sweeper started (every {self.settings.sweep_interval_seconds:.0f}s)")

    def stop_sweeper(self, timeout: float = 5.0) -> None:
        if self._sweeper is None:
            return

        self._sweep_stop.set()
        if self._sweeper.is_alive() and self._sweeper is not threading.current_thread():
            self._sweeper.join(timeout=timeout)
            if self._sweeper.is_alive():
                logger.warning("Abandonment sweeper did not stop cleanly")
        self._sweeper = None

    def _sweep_loop(self) -> None:
        set_thread_name("AbandonSweep")

        while not self._sweep_stop.wait(timeout=self.settings.sweep_interval_seconds):
            try:
                self.expire_abandoned()
            except Exception as e:
                logger.error(f"Abandonment sweep failed: {e}")

        logger.info("Abandonment sweeper exiting")

    # =========================================================================
    # PROVIDER LOOKUPS
    # =========================================================================

    def find_intent(self, payment_id: str, user_id: Optional[str] = None) -> PaymentIntent:
        """
        Intent by internal or provider id, optionally restricted to its owner.

        Raises:
            PaymentNotFound: Unknown id, or owned by another user
        """
        intent = self.intents.get(payment_id) or self.intents.get_by_external_id(payment_id)
        if intent is None or (user_id is not None and intent.user_id != user_id):
            raise PaymentNotFound(payment_id)
        return intent

    def refresh(self, payment_id: str, user_id: Optional[str] = None) -> PaymentIntent:
        """
        Ask the provider for the current status and apply it.

        Raises:
            PaymentNotFound: Unknown or foreign payment
            GatewayError: Provider failure
        """
        intent = self.find_intent(payment_id, user_id)
        payment = self.gateway.fetch_status(intent)
        return self.apply(intent.id, payment.payment_status, payment.status)

    def handle_notification(self, payload: Any) -> Optional[PaymentIntent]:
        """
        Process a provider webhook.

        Only ``type == "payment"`` notifications with a payment action are
        used; their payload is never trusted, the status is fetched from the
        provider.

        Returns:
            The updated intent, or None if the notification was ignored

        Raises:
            ValidationError: Payment notification without a payment id
            GatewayError: Provider failure (the provider will retry)
        """
        if not isinstance(payload, dict):
            logger.debug(f"Ignoring notification body of type {type(payload).__name__}")
            return None

        if payload.get("type") != "payment" or payload.get("action") not in WEBHOOK_ACTIONS:
            logger.debug(
                f"Ignoring notification type={payload.get('type')} action={payload.get('action')}"
            )
            return None

        data = payload.get("data")
        data_id = data.get("id") if isinstance(data, dict) else None
        if not data_id:
            raise ValidationError("Notification has no payment id", field="data.id")

        intent = self.intents.get_by_external_id(str(data_id))
        if intent is None:
            logger.warning(f"Notification for unknown payment {data_id}, ignoring")
            return None

        payment = self.gateway.fetch_status(intent)
        logger.info(f"Webhook for payment {intent.id[:8]}: provider says {payment.status}")
        return self.apply(intent.id, payment.payment_status, payment.status)

    # =========================================================================
    # POLLING
    # =========================================================================

    def poll_once(self, intent_id: str, poll_logger=None) -> PaymentStatus:
        """
        One poll iteration, bounded by the poll timeout.

        Provider errors are logged and reported as "no news" (the current
        status), so the caller simply tries again later.
        """
        poll_logger = poll_logger or logger
        intent = self._get_intent(intent_id)
        if intent.status.is_terminal:
            return intent.status

        try:
            payment = self._runner.run(
                self.gateway.fetch_status,
                intent,
                timeout=self.settings.poll_timeout_seconds,
                operation=f"poll {intent.external_id}",
            )
        except (OperationTimeout, GatewayError, PaymentNotFound) as e:
            poll_logger.warning(f"Poll failed, will retry: {e}")
            return intent.status

        poll_logger.debug(f"Provider status: {payment.status}")
        return self.apply(intent_id, payment.payment_status, payment.status).status

    def poll_until_terminal(
        self,
        intent_id: str,
        stop_event: Optional[threading.Event] = None,
        poll_logger=None
    ) -> PaymentStatus:
        """
        Poll with exponential backoff until terminal, exhausted or stopped.

        Exhaustion marks the intent so display_status() reports EXPIRED, but
        the stored status stays open for a later webhook.
        """
        stop_event = stop_event or threading.Event()
        poll_logger = poll_logger or logger
        settings = self.settings
        started = time.monotonic()

        for attempt in range(settings.max_attempts):
            remaining = settings.max_wait_seconds - (time.monotonic() - started)
            if remaining <= 0:
                break

            interval = min(settings.interval_for(attempt), remaining)
            if stop_event.wait(interval):
                poll_logger.debug("Polling stopped")
                return self._get_intent(intent_id).status

            poll_logger.debug(f"Poll attempt {attempt + 1}/{settings.max_attempts}")
            status = self.poll_once(intent_id, poll_logger)
            if status.is_terminal:
                return status

        return self._mark_exhausted(intent_id, poll_logger)

    def _mark_exhausted(self, intent_id: str, poll_logger) -> PaymentStatus:
        with self._intent_locks.hold(intent_id):
            intent = self._get_intent(intent_id)
            if intent.status.is_terminal:
                return intent.status
            intent.polling_exhausted = True
            self.intents.save(intent)

        poll_logger.warning(f"Polling exhausted, payment still {intent.status.value}")
        return intent.status

    def start_polling(self, intent_id: str) -> bool:
        """
        Start the polling thread for an intent.

        Returns:
            False if the intent is already being polled
        """
        with self._pollers_lock:
            existing = self._pollers.get(intent_id)
            if existing is not None and existing[0].is_alive():
                return False

            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._poll_thread_main,
                args=(intent_id, stop_event),
                name=f"Poll-{intent_id[:8]}",
                daemon=True
            )
            self._pollers[intent_id] = (thread, stop_event)

        thread.start()
        return True

    def is_polling(self, intent_id: str) -> bool:
        with self._pollers_lock:
            entry = self._pollers.get(intent_id)
            return entry is not None and entry[0].is_alive()

    def _poll_thread_main(self, intent_id: str, stop_event: threading.Event) -> None:
        set_thread_name(f"Poll-{intent_id[:8]}")
        poll_logger = get_payment_logger(intent_id)
        poll_logger.info("Polling thread starting")

        try:
            with log_context(intent=intent_id[:8]):
                status = self.poll_until_terminal(intent_id, stop_event, poll_logger)
                poll_logger.info(f"Polling finished: {status.value}")
        except Exception as e:
            poll_logger.error(f"Polling thread failed: {e}")
        finally:
            with self._pollers_lock:
                entry = self._pollers.get(intent_id)
                if entry is not None and entry[1] is stop_event:
                    del self._pollers[intent_id]

    def _stop_poller(self, intent_id: str) -> None:
        with self._pollers_lock:
            entry = self._pollers.get(intent_id)
        if entry is not None:
            entry[1].set()

    def shutdown(self, timeout_per_thread: float = 5.0) -> None:
        """
        Stop the sweeper and every polling thread, and wait for them.

        Args:
            timeout_per_thread: Max seconds to wait per thread
        """
        self.stop_sweeper()

        with self._pollers_lock:
            active = list(self._pollers.items())

        for _, (_, stop_event) in active:
            stop_event.set()

        for intent_id, (thread, _) in active:
            if thread.is_alive() and thread is not threading.current_thread():
                thread.join(timeout=timeout_per_thread)
                if thread.is_alive():
                    logger.warning(f"Polling thread {intent_id[:8]} did not stop in time")

        self._runner.shutdown(wait=False)
        logger.info("PaymentReconciler shutdown complete")
