"""
Checkout reconciliation orchestration.

This module runs the complete flow when the payment gateway reports back:
- Callback resolution and signature checks
- Session fast path
- Atomic order claim
- Payment ledger write
- Order finalization
- Vendor-filtered cart clearing
- Summary projection
- Post-confirmation effects

The claim in OrderStateMachine is the only serialization point. Callers
that lose it take the short-circuit path: they re-derive the summary for
display and never write payment records.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, List, Mapping, Optional, Tuple

from harvest_checkout.config import CheckoutSettings, get_settings
from harvest_checkout.effects import PostConfirmationEffects
from harvest_checkout.exceptions import (
    MissingOrderReference,
    PaymentValidationError,
    VendorResolutionFailed,
)
from harvest_checkout.idempotency import IdempotencyGuard
from harvest_checkout.logging_config import reconciliation_context
from harvest_checkout.models import (
    CallbackSource,
    CartClearResult,
    ClaimResult,
    Order,
    OrderStatus,
    PaymentRecordStatus,
    PaymentStatusReport,
    ReconciliationResult,
    ReconciliationStatus,
    ResolvedCallback,
    VendorGroup,
)
from harvest_checkout.partitioner import (
    UNKNOWN_VENDOR_ID,
    UNKNOWN_VENDOR_NAME,
    CartPartitioner,
)
from harvest_checkout.projector import OrderSummaryProjector
from harvest_checkout.reconciler import PaymentReconciler
from harvest_checkout.state_machine import OrderStateMachine
from harvest_checkout.stores import (
    CartStore,
    CatalogStore,
    OrderStore,
    PaymentStore,
    call_with_timeout,
)

logger = logging.getLogger(__name__)


CONFIRMED_MESSAGE = "Payment confirmed! Your order has been placed."
TENTATIVE_MESSAGE = (
    "Your order has been placed. Payment confirmation is processing."
)
ALREADY_PROCESSED_MESSAGE = "This order has already been processed."
PENDING_VERIFICATION_MESSAGE = (
    "We are verifying your payment. Your order will be confirmed shortly."
)
MISSING_ORDER_MESSAGE = "We could not identify your order. Please contact support."
FAILED_MESSAGE = "Your payment could not be completed. Please try again."
CANCELLED_MESSAGE = "Your payment was cancelled. Your cart has been kept."
NOT_CANCELLABLE_MESSAGE = (
    "This order is already being processed and can no longer be cancelled."
)

_FAILURE_TARGETS = {
    PaymentRecordStatus.FAILED: OrderStatus.FAILED,
    PaymentRecordStatus.CANCELLED: OrderStatus.CANCELLED,
}


class ReconciliationOrchestrator:
    """
    Entry points for gateway callbacks and buyer navigation.

    Usage:
        orchestrator = ReconciliationOrchestrator(order_store, payment_store, catalog)

        # Return URL
        result = await orchestrator.handle_return(
            request.query_params, buyer_id, cart=cart_store, session_id=session_id,
        )

        # Instant transaction notification
        result = await orchestrator.handle_notification(form_data)
    """

    def __init__(
        self,
        order_store: OrderStore,
        payment_store: PaymentStore,
        catalog: Optional[CatalogStore] = None,
        settings: Optional[CheckoutSettings] = None,
        guard: Optional[IdempotencyGuard] = None,
        effects: Optional[PostConfirmationEffects] = None,
    ):
        self.settings = settings or get_settings()
        self.order_store = order_store
        self.payment_store = payment_store

        self.state_machine = OrderStateMachine(
            order_store,
            timeout_seconds=self.settings.store_timeout_seconds,
            claim_stale_after_seconds=self.settings.claim_stale_after_seconds,
        )
        self.reconciler = PaymentReconciler(payment_store, settings=self.settings)
        self.partitioner = CartPartitioner(catalog, settings=self.settings)
        self.projector = OrderSummaryProjector(self.settings)
        self.guard = guard or IdempotencyGuard(ttl_hours=self.settings.idempotency_ttl_hours)
        self.effects = effects or PostConfirmationEffects(catalog=catalog, settings=self.settings)

    # =========================================================================
    # Entry points
    # =========================================================================

    async def handle_return(
        self,
        params: Mapping[str, Any],
        buyer_id: str,
        cart: Optional[CartStore] = None,
        session_id: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Reconcile the buyer's redirect back from the gateway.

        Raises:
            OrderNotFound: If the order does not exist or is not the buyer's
            InvalidTransition: If the order is already cancelled or failed
            StoreTimeout: If the claim or finalize outcome is unknown
        """
        callback = self.reconciler.parse(params, CallbackSource.RETURN_URL)
        try:
            resolved = self.reconciler.resolve(callback)
        except MissingOrderReference as e:
            return self._missing_order(e)

        with reconciliation_context(
            order_id=resolved.order_id,
            buyer_id=buyer_id,
            transaction_id=resolved.transaction_id,
        ):
            logger.info(f"Reconciling return for order {resolved.order_id}")
            return await self._reconcile(resolved, buyer_id, cart, session_id)

    async def handle_notification(self, params: Mapping[str, Any]) -> ReconciliationResult:
        """
        Reconcile a server-to-server notification.

        The signature is checked before any store is read. The buyer is
        taken from the callback's buyer reference, falling back to the
        order's owner. The cart is never touched from this path.

        Raises:
            CallbackSignatureInvalid: If the signature does not verify
            OrderNotFound: If the order does not exist or the buyer mismatches
            InvalidTransition: If the order is already cancelled or failed
            StoreTimeout: If the claim or finalize outcome is unknown
        """
        callback = self.reconciler.parse(params, CallbackSource.NOTIFICATION)
        self.reconciler.verify_signature(callback)
        try:
            resolved = self.reconciler.resolve(callback)
        except MissingOrderReference as e:
            return self._missing_order(e)

        with reconciliation_context(
            order_id=resolved.order_id,
            buyer_id=resolved.buyer_reference,
            transaction_id=resolved.transaction_id,
        ):
            logger.info(
                f"Reconciling notification for order {resolved.order_id} "
                f"({resolved.payment_status.value})"
            )
            buyer_id = resolved.buyer_reference
            if buyer_id is None:
                order = await self.state_machine.get_order(resolved.order_id)
                buyer_id = order.buyer_id
            return await self._reconcile(resolved, buyer_id, cart=None, session_id=None)

    async def handle_cancellation(
        self,
        order_id: str,
        buyer_id: str,
        reason: str = "buyer_cancelled",
    ) -> ReconciliationResult:
        """Handle the buyer returning through the gateway's cancel URL."""
        with reconciliation_context(order_id=order_id, buyer_id=buyer_id):
            if await self.state_machine.cancel(order_id, buyer_id, reason):
                return ReconciliationResult(
                    status=ReconciliationStatus.CANCELLED,
                    order_id=order_id,
                    message=CANCELLED_MESSAGE,
                )

            order = await self.state_machine.get_order(order_id, buyer_id)
            if order.status == OrderStatus.CANCELLED:
                return ReconciliationResult(
                    status=ReconciliationStatus.CANCELLED,
                    order_id=order_id,
                    message=CANCELLED_MESSAGE,
                )
            if order.status == OrderStatus.FAILED:
                return ReconciliationResult(
                    status=ReconciliationStatus.FAILED,
                    order_id=order_id,
                    message=FAILED_MESSAGE,
                )
            return ReconciliationResult(
                status=ReconciliationStatus.ALREADY_PROCESSED,
                order_id=order_id,
                message=NOT_CANCELLABLE_MESSAGE,
                warnings=["cancellation_ignored"],
            )

    async def get_payment_status(self, order_id: str, buyer_id: str) -> PaymentStatusReport:
        """Current order status and payment ledger entries for the buyer."""
        order = await self.state_machine.get_order(order_id, buyer_id)
        payments = await call_with_timeout(
            self.payment_store.list_for_order(order_id),
            self.settings.store_timeout_seconds,
            "payments.list_for_order",
        )
        return PaymentStatusReport(order_id=order.id, status=order.status, payments=payments)

    # =========================================================================
    # Flow
    # =========================================================================

    async def _reconcile(
        self,
        resolved: ResolvedCallback,
        buyer_id: str,
        cart: Optional[CartStore],
        session_id: Optional[str],
    ) -> ReconciliationResult:
        order_id = resolved.order_id

        if resolved.payment_status in _FAILURE_TARGETS:
            return await self._apply_gateway_failure(resolved, buyer_id)

        if resolved.payment_status == PaymentRecordStatus.PENDING:
            logger.info(f"Gateway reports order {order_id} still pending; nothing to do")
            return ReconciliationResult(
                status=ReconciliationStatus.PENDING_VERIFICATION,
                order_id=order_id,
                message=PENDING_VERIFICATION_MESSAGE,
                warnings=list(resolved.warnings),
            )

        if await self.guard.already_processed(session_id, order_id):
            logger.debug(f"Session marker hit for order {order_id}")
            return await self._short_circuit(resolved, buyer_id, cart, guard_hit=True)

        claim = await self.state_machine.claim_for_processing(order_id, buyer_id)
        if claim == ClaimResult.ALREADY_CLAIMED and not await self._take_over(resolved, buyer_id):
            return await self._short_circuit(resolved, buyer_id, cart, guard_hit=False)

        return await self._complete(resolved, cart, session_id)

    async def _take_over(self, resolved: ResolvedCallback, buyer_id: str) -> bool:
        """Decide whether this caller may finish an order left in `processing`."""
        order = await self.state_machine.get_order(resolved.order_id, buyer_id)
        if order.status != OrderStatus.PROCESSING:
            return False
        if resolved.source == CallbackSource.NOTIFICATION and resolved.transaction_confirmed:
            # Payment insert and finalize are both idempotent
            logger.info(f"Notification finalizing order {order.id} held in processing")
            return True
        return await self.state_machine.resume_stale_claim(order.id, buyer_id)

    async def _complete(
        self,
        resolved: ResolvedCallback,
        cart: Optional[CartStore],
        session_id: Optional[str],
    ) -> ReconciliationResult:
        order_id = resolved.order_id
        warnings = list(resolved.warnings)

        order = await self.state_machine.get_order(order_id)
        groups, vendor_ids = await self._build_groups(order, warnings)
        delivery_fee = self.partitioner.compute_delivery_fee(order.delivery_distance_km)

        if self.settings.require_transaction_id and not resolved.transaction_confirmed:
            logger.warning(
                f"Holding order {order_id} in processing until the gateway "
                f"confirms a transaction id"
            )
            return ReconciliationResult(
                status=ReconciliationStatus.PENDING_VERIFICATION,
                order_id=order_id,
                summary=self.projector.project(order, groups, delivery_fee, resolved.amount_gross),
                message=PENDING_VERIFICATION_MESSAGE,
                warnings=warnings,
            )

        ledger_total = self.projector.ledger_total(order.total, delivery_fee)
        try:
            payment = await self.reconciler.record_payment(
                order,
                ledger_total,
                self.settings.currency,
                resolved.transaction_id,
                metadata=resolved.metadata,
                status=resolved.payment_status,
            )
        except PaymentValidationError as e:
            logger.error(f"Rejecting payment for order {order_id}: {e.message}")
            await self.state_machine.finalize(order_id, OrderStatus.FAILED)
            return ReconciliationResult(
                status=ReconciliationStatus.FAILED,
                order_id=order_id,
                message=FAILED_MESSAGE,
                warnings=warnings,
                error=e.to_dict(),
            )

        error = None
        if payment.failure is not None:
            warnings.append("payment_record_failed")
            error = payment.failure.to_dict()

        order, transitioned = await self.state_machine.finalize(order_id, OrderStatus.CONFIRMED)

        cart_result = None
        if cart is not None:
            cart_result = await self._clear_cart(cart, vendor_ids, warnings)

        summary = self.projector.project(
            order,
            groups,
            delivery_fee,
            gateway_amount=resolved.amount_gross,
            transaction_id=resolved.transaction_id,
        )
        await self.guard.mark_processed(session_id, order_id, order.status.value)

        if transitioned:
            self.effects.schedule(summary, order.items)

        if resolved.transaction_confirmed:
            status, message = ReconciliationStatus.CONFIRMED, CONFIRMED_MESSAGE
        else:
            status, message = ReconciliationStatus.TENTATIVE, TENTATIVE_MESSAGE

        logger.info(f"Order {order_id} reconciled: {status.value}")
        return ReconciliationResult(
            status=status,
            order_id=order_id,
            summary=summary,
            message=message,
            warnings=warnings,
            payment=payment,
            cart=cart_result,
            error=error,
        )

    async def _short_circuit(
        self,
        resolved: ResolvedCallback,
        buyer_id: str,
        cart: Optional[CartStore],
        guard_hit: bool,
    ) -> ReconciliationResult:
        """Re-derive the summary for an order someone else reconciled."""
        order_id = resolved.order_id
        warnings = list(resolved.warnings)

        order = await self.state_machine.get_order(order_id, buyer_id)
        groups, vendor_ids = await self._build_groups(order, warnings)
        delivery_fee = self.partitioner.compute_delivery_fee(order.delivery_distance_km)

        cart_result = None
        confirmed = order.status in (OrderStatus.CONFIRMED, OrderStatus.DELIVERED)
        if confirmed and cart is not None and not guard_hit:
            cart_result = await self._clear_cart(cart, vendor_ids, warnings)

        summary = self.projector.project(
            order,
            groups,
            delivery_fee,
            gateway_amount=resolved.amount_gross,
            transaction_id=resolved.transaction_id,
        )
        message = ALREADY_PROCESSED_MESSAGE if confirmed else PENDING_VERIFICATION_MESSAGE
        return ReconciliationResult(
            status=ReconciliationStatus.ALREADY_PROCESSED,
            order_id=order_id,
            summary=summary,
            message=message,
            warnings=warnings,
            cart=cart_result,
        )

    async def _apply_gateway_failure(
        self,
        resolved: ResolvedCallback,
        buyer_id: str,
    ) -> ReconciliationResult:
        """Mark an order failed or cancelled and record the failed payment."""
        order_id = resolved.order_id
        warnings = list(resolved.warnings)
        target = _FAILURE_TARGETS[resolved.payment_status]

        order = await self.state_machine.get_order(order_id, buyer_id)
        await self.state_machine.mark_failed(order_id, target)

        payment = await self.reconciler.record_payment(
            order,
            self.ledger_total_for(order),
            self.settings.currency,
            resolved.transaction_id,
            metadata=resolved.metadata,
            status=resolved.payment_status,
        )
        error = None
        if payment.failure is not None:
            warnings.append("payment_record_failed")
            error = payment.failure.to_dict()

        order = await self.state_machine.get_order(order_id)
        if order.status == OrderStatus.FAILED:
            status, message = ReconciliationStatus.FAILED, FAILED_MESSAGE
        elif order.status == OrderStatus.CANCELLED:
            status, message = ReconciliationStatus.CANCELLED, CANCELLED_MESSAGE
        else:
            warnings.append("late_gateway_failure_ignored")
            status, message = ReconciliationStatus.ALREADY_PROCESSED, ALREADY_PROCESSED_MESSAGE

        return ReconciliationResult(
            status=status,
            order_id=order_id,
            message=message,
            warnings=warnings,
            payment=payment,
            error=error,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _build_groups(
        self,
        order: Order,
        warnings: List[str],
    ) -> Tuple[List[VendorGroup], Optional[List[str]]]:
        """
        Vendor groups for display plus the vendor ids safe to clear.

        When any item's vendor cannot be resolved, unresolved items are shown
        under an unknown vendor and no vendor ids are returned, which makes
        cart clearing fall back to a full clear.
        """
        try:
            items = await self.partitioner.resolve_vendors(order.items)
        except VendorResolutionFailed as e:
            logger.warning(
                f"Degraded: {e.message} (order {order.id}); cart will be fully cleared"
            )
            warnings.append("vendor_resolution_failed")
            items = [
                item if item.vendor_id is not None
                else item.model_copy(update={
                    "vendor_id": UNKNOWN_VENDOR_ID,
                    "vendor_name": UNKNOWN_VENDOR_NAME,
                })
                for item in e.items
            ]
            return self.partitioner.group_by_vendor(items), None

        groups = self.partitioner.group_by_vendor(items)
        return groups, [group.vendor_id for group in groups]

    async def _clear_cart(
        self,
        cart: CartStore,
        vendor_ids: Optional[List[str]],
        warnings: List[str],
    ) -> Optional[CartClearResult]:
        try:
            result = await self.partitioner.clear_paid_vendors(cart, vendor_ids)
        except Exception as e:
            logger.error(f"Cart clearing failed after confirmation: {e}", exc_info=True)
            warnings.append("cart_clear_failed")
            return None
        if result.full_clear:
            warnings.append("cart_fully_cleared")
        return result

    def _missing_order(self, error: MissingOrderReference) -> ReconciliationResult:
        return ReconciliationResult(
            status=ReconciliationStatus.MISSING_ORDER,
            message=MISSING_ORDER_MESSAGE,
            error=error.to_dict(),
        )

    def ledger_total_for(self, order: Order) -> Decimal:
        """Bookkeeping total for an order: its total plus delivery (and tax if exclusive)."""
        fee = self.partitioner.compute_delivery_fee(order.delivery_distance_km)
        return self.projector.ledger_total(order.total, fee)
