"""
Order state machine.

Owns the order status transition table and the exactly-once claim of a
pending order for processing. The compare-and-swap in
`claim_for_processing` is the only serialization point of the whole
reconciliation flow: whichever caller wins the swap owns the order until it
is finalized, every other caller takes the idempotent short-circuit path.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Dict, FrozenSet, Optional, Tuple

from harvest_checkout.exceptions import InvalidTransition, OrderNotFound
from harvest_checkout.models import (
    CLAIMED_STATUSES,
    ClaimResult,
    Order,
    OrderStatus,
    utcnow,
)
from harvest_checkout.stores import OrderStore, call_with_timeout

logger = logging.getLogger(__name__)


_NON_TERMINAL_EXITS = frozenset({OrderStatus.CANCELLED, OrderStatus.FAILED})

ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.DRAFT: frozenset({OrderStatus.INITIATED, OrderStatus.PROCESSING}) | _NON_TERMINAL_EXITS,
    OrderStatus.INITIATED: frozenset({OrderStatus.PROCESSING}) | _NON_TERMINAL_EXITS,
    OrderStatus.PROCESSING: frozenset({OrderStatus.CONFIRMED}) | _NON_TERMINAL_EXITS,
    OrderStatus.CONFIRMED: frozenset({OrderStatus.DELIVERED}) | _NON_TERMINAL_EXITS,
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}

CLAIMABLE_STATUSES = frozenset({OrderStatus.DRAFT, OrderStatus.INITIATED})
FINALIZE_TARGETS = frozenset({OrderStatus.CONFIRMED, OrderStatus.FAILED})
# Orders the buyer can still abandon through the cancel URL.
CANCELLABLE_STATUSES = frozenset({OrderStatus.DRAFT, OrderStatus.INITIATED})


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class OrderStateMachine:
    """
    Enforces order status transitions against an OrderStore.

    Usage:
        machine = OrderStateMachine(order_store)

        result = await machine.claim_for_processing(order_id, buyer_id)
        if result == ClaimResult.CLAIMED:
            ...  # record payment, then
            order, _ = await machine.finalize(order_id, OrderStatus.CONFIRMED)
    """

    def __init__(
        self,
        store: OrderStore,
        timeout_seconds: float = 5.0,
        claim_stale_after_seconds: int = 120,
    ):
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.claim_stale_after = timedelta(seconds=claim_stale_after_seconds)

    async def get_order(self, order_id: str, buyer_id: Optional[str] = None) -> Order:
        """Load an order, optionally checking ownership."""
        order = await call_with_timeout(
            self.store.get(order_id), self.timeout_seconds, "orders.get"
        )
        if order is None:
            raise OrderNotFound(order_id)
        if buyer_id is not None and order.buyer_id != buyer_id:
            # Reported as not-found so other buyers' orders are not disclosed
            logger.warning(f"Buyer {buyer_id} attempted to access order {order_id}")
            raise OrderNotFound(order_id)
        return order

    async def _swap(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        order: Optional[Order] = None,
    ) -> bool:
        return await call_with_timeout(
            self.store.compare_and_swap_status(
                order_id,
                expected,
                new,
                expected_updated_at=order.updated_at if order is not None else None,
            ),
            self.timeout_seconds,
            "orders.compare_and_swap_status",
        )

    async def claim_for_processing(self, order_id: str, buyer_id: str) -> ClaimResult:
        """
        Claim an order for processing.

        Returns CLAIMED if this caller moved the order into `processing`, and
        ALREADY_CLAIMED if the order is already `processing` or further along,
        or if a concurrent caller won the swap.

        Raises:
            OrderNotFound: If the order does not exist or belongs to someone else
            InvalidTransition: If the order is cancelled or failed
        """
        order = await self.get_order(order_id, buyer_id)
        current = order.status

        if current in CLAIMED_STATUSES:
            logger.info(f"Order {order_id} already {current.value}, skipping claim")
            return ClaimResult.ALREADY_CLAIMED

        if current not in CLAIMABLE_STATUSES:
            raise InvalidTransition(order_id, current.value, OrderStatus.PROCESSING.value)

        if await self._swap(order_id, current, OrderStatus.PROCESSING):
            logger.info(f"Claimed order {order_id} for processing (was {current.value})")
            return ClaimResult.CLAIMED

        logger.info(f"Lost claim race for order {order_id}")
        return ClaimResult.ALREADY_CLAIMED

    def is_stale_claim(self, order: Order) -> bool:
        return (
            order.status == OrderStatus.PROCESSING
            and utcnow() - order.updated_at >= self.claim_stale_after
        )

    async def resume_stale_claim(self, order_id: str, buyer_id: str) -> bool:
        """
        Take over an order left in `processing` by an abandoned reconciliation.

        The swap is conditioned on the stored `updated_at`, so of several
        concurrent retries exactly one resumes the order.
        """
        order = await self.get_order(order_id, buyer_id)
        if not self.is_stale_claim(order):
            return False

        if await self._swap(order_id, OrderStatus.PROCESSING, OrderStatus.PROCESSING, order):
            logger.warning(
                f"Resuming stale processing claim on order {order_id} "
                f"(last updated {order.updated_at.isoformat()})"
            )
            return True
        return False

    async def finalize(self, order_id: str, target: OrderStatus) -> Tuple[Order, bool]:
        """
        Move a claimed order to `confirmed` or `failed`.

        Returns the stored order and whether this call made the transition.
        Finalizing to the status the order already holds is a no-op so a
        retried callback can re-drive finalization safely.

        Raises:
            InvalidTransition: For any transition other than processing -> target
        """
        order = await self.get_order(order_id)

        if order.status == target and target in FINALIZE_TARGETS:
            return order, False

        if target not in FINALIZE_TARGETS or order.status != OrderStatus.PROCESSING:
            raise InvalidTransition(order_id, order.status.value, target.value)

        if not await self._swap(order_id, OrderStatus.PROCESSING, target):
            order = await self.get_order(order_id)
            if order.status == target:
                return order, False
            raise InvalidTransition(order_id, order.status.value, target.value)

        logger.info(f"Order {order_id} finalized as {target.value}")
        return await self.get_order(order_id), True

    async def cancel(self, order_id: str, buyer_id: str, reason: str = "buyer_cancelled") -> bool:
        """
        Cancel an order the buyer abandoned at the gateway.

        Only orders that were never claimed are cancelled; once an order is
        `processing` the gateway may already have taken the money.
        """
        order = await self.get_order(order_id, buyer_id)
        if order.status == OrderStatus.CANCELLED:
            return True
        if order.status not in CANCELLABLE_STATUSES:
            logger.info(
                f"Ignoring cancellation of order {order_id} in status "
                f"{order.status.value} ({reason})"
            )
            return False

        swapped = await self._swap(order_id, order.status, OrderStatus.CANCELLED)
        if swapped:
            logger.info(f"Order {order_id} cancelled ({reason})")
        return swapped

    async def mark_failed(self, order_id: str, target: OrderStatus) -> bool:
        """
        Apply a gateway-reported failure or cancellation to an order.

        Confirmed orders are left alone; a late failure notification after a
        confirmed payment needs manual review, not an automatic reversal.
        """
        if target not in _NON_TERMINAL_EXITS:
            raise InvalidTransition(order_id, "unknown", target.value)

        order = await self.get_order(order_id)
        if order.status == target:
            return True
        if order.status.is_terminal or order.status == OrderStatus.CONFIRMED:
            logger.warning(
                f"Gateway reported {target.value} for order {order_id} "
                f"already {order.status.value}; leaving unchanged"
            )
            return False

        swapped = await self._swap(order_id, order.status, target)
        if swapped:
            logger.info(f"Order {order_id} marked {target.value} by gateway notification")
        return swapped
