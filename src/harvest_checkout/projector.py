"""Order summary read model for the confirmation page."""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from harvest_checkout.config import CheckoutSettings, get_settings
from harvest_checkout.models import Order, OrderSummary, VendorGroup

logger = logging.getLogger(__name__)

UNCONFIRMED_PAYMENT_METHOD = "unconfirmed"
MISSING_TRANSACTION_ID = "N/A"


def round_money(amount: Decimal) -> Decimal:
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class OrderSummaryProjector:
    """
    Builds an OrderSummary from an order and its vendor groups.

    Pure projection: nothing is persisted. When the gateway reports a gross
    amount that differs from the locally computed total, the summary displays
    the gateway's figure (what was actually charged) while `ledger_total`
    keeps the local figure used for bookkeeping.
    """

    def __init__(self, settings: Optional[CheckoutSettings] = None):
        self.settings = settings or get_settings()

    def ledger_total(self, subtotal: Decimal, delivery_fee: Decimal) -> Decimal:
        total = subtotal + delivery_fee
        if not self.settings.tax_inclusive:
            total += self.tax(subtotal)
        return round_money(total)

    def tax(self, subtotal: Decimal) -> Decimal:
        return round_money(subtotal * self.settings.tax_rate)

    def project(
        self,
        order: Order,
        groups: List[VendorGroup],
        delivery_fee: Decimal,
        gateway_amount: Optional[Decimal] = None,
        transaction_id: Optional[str] = None,
    ) -> OrderSummary:
        subtotal = order.total
        ledger_total = self.ledger_total(subtotal, delivery_fee)

        displayed_total = ledger_total
        mismatch = False
        if gateway_amount is not None:
            displayed_total = round_money(gateway_amount)
            mismatch = displayed_total != ledger_total
            if mismatch:
                logger.warning(
                    f"Gateway gross {displayed_total} differs from ledger total "
                    f"{ledger_total} for order {order.id}; displaying gateway amount"
                )

        groups = [
            replace(group, preparation_window=group.preparation_window or self.settings.preparation_window)
            for group in groups
        ]

        transaction_confirmed = transaction_id is not None
        return OrderSummary(
            order_id=order.id,
            order_number=order.order_number,
            status=order.status,
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            tax=self.tax(subtotal),
            ledger_total=ledger_total,
            displayed_total=displayed_total,
            currency=self.settings.currency,
            vendor_groups=groups,
            estimated_delivery=order.created_at + timedelta(days=self.settings.estimated_delivery_days),
            payment_method=(
                order.payment_method or self.settings.gateway_name
                if transaction_confirmed
                else UNCONFIRMED_PAYMENT_METHOD
            ),
            transaction_id=transaction_id or MISSING_TRANSACTION_ID,
            transaction_confirmed=transaction_confirmed,
            gateway_amount=gateway_amount,
            amount_mismatch=mismatch,
        )
