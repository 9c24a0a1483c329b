"""
Inventory decrement, applied at most once per approved order.

The decrement guard (StockDecrementRecord) is checked, the stock lines are
decremented and the guard is set, all under one per-order lock. Webhook
and polling threads can both report APPROVED for the same order; only the
first one to take the lock decrements.

Stock never goes below zero. A line that does not fit is skipped, a
ShortageEvent is recorded and the order is flagged for manual review: the
payment is already captured, so refusing the order is not an option.
"""

from __future__ import annotations

from typing import Iterable, List, Tuple

from core.exceptions import StockShortage
from core.repositories import InventoryRepository, OrderRepository, StockRecordRepository
from core.tasks import KeyedLocks
from logging_config import get_logger
from models.order import DecrementOutcome, ShortageEvent


# Module logger
logger = get_logger(__name__)


class StockLedger:
    """
    Idempotent inventory decrements keyed by order.

    Thread Safety:
        - One lock per order id (KeyedLocks)
        - Individual stock decrements are atomic in the InventoryRepository
    """

    def __init__(
        self,
        inventory: InventoryRepository,
        records: StockRecordRepository,
        orders: OrderRepository
    ):
        self.inventory = inventory
        self.records = records
        self.orders = orders
        self._order_locks = KeyedLocks()

    def decrement(self, order_id: str, product_id: str, quantity: int) -> DecrementOutcome:
        """Decrement a single product for an order (guarded like decrement_order)."""
        return self.decrement_order(order_id, [(product_id, quantity)])

    def decrement_order(
        self,
        order_id: str,
        lines: Iterable[Tuple[str, int]]
    ) -> DecrementOutcome:
        """
        Decrement every line of an order, once.

        Args:
            order_id: Order the stock is consumed by
            lines: (product_id, quantity) pairs

        Returns:
            DecrementOutcome; ``applied`` is False when the guard was
            already set (nothing was touched)
        """
        lines = [(product_id, int(quantity)) for product_id, quantity in lines]

        with self._order_locks.hold(order_id):
            if self.records.get_record(order_id).applied:
                logger.debug(f"Stock for order {order_id} already decremented, skipping")
                return DecrementOutcome.already_applied(order_id)

            skipped: List[str] = []
            shortages: List[ShortageEvent] = []

            for product_id, quantity in lines:
                if quantity <= 0:
                    continue
                decremented, available = self.inventory.try_decrement(product_id, quantity)
                if decremented:
                    logger.debug(f"Order {order_id}: -{quantity} {product_id} (had {available})")
                    continue

                shortage = StockShortage(order_id, product_id, quantity, available)
                logger.error(str(shortage))
                event = ShortageEvent(
                    order_id=order_id,
                    product_id=product_id,
                    requested=quantity,
                    available=available,
                )
                self.records.add_shortage(event)
                skipped.append(product_id)
                shortages.append(event)

            self.records.mark_applied(order_id)

        if shortages:
            self.orders.flag_for_review(order_id)

        logger.info(
            f"Stock decremented for order {order_id}: {len(lines) - len(skipped)} line(s) applied, "
            f"{len(skipped)} skipped"
        )
        return DecrementOutcome(
            order_id=order_id,
            applied=True,
            skipped_lines=tuple(skipped),
            shortages=tuple(shortages),
        )
