"""
Payment callback reconciliation.

Matches an inbound gateway callback (return URL redirect or server-to-server
notification) to an order, normalizes the callback fields, and idempotently
records the payment in the ledger.

A callback that names an order but carries no transaction id is a degraded
but valid return-URL callback: the order may still be confirmed, but there
is nothing unique to key a payment record on, so none is written.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from harvest_checkout.config import CheckoutSettings, get_settings
from harvest_checkout.exceptions import (
    CallbackSignatureInvalid,
    MissingOrderReference,
    PaymentRecordPersistenceFailed,
    PaymentValidationError,
)
from harvest_checkout.models import (
    CallbackSource,
    GatewayCallback,
    InsertResult,
    Order,
    PaymentRecord,
    PaymentRecordStatus,
    PaymentWriteResult,
    ResolvedCallback,
    utcnow,
)
from harvest_checkout.signatures import GatewaySigner
from harvest_checkout.stores import PaymentStore, call_with_timeout

logger = logging.getLogger(__name__)


GATEWAY_STATUS_MAP: Dict[str, PaymentRecordStatus] = {
    "COMPLETE": PaymentRecordStatus.COMPLETED,
    "FAILED": PaymentRecordStatus.FAILED,
    "CANCELLED": PaymentRecordStatus.CANCELLED,
}


class PaymentReconciler:
    """
    Resolves gateway callbacks and writes payment records.

    Usage:
        reconciler = PaymentReconciler(payment_store)

        callback = reconciler.parse(request.query_params)
        resolved = reconciler.resolve(callback)
        result = await reconciler.record_payment(
            order, amount, "ZAR", resolved.transaction_id, resolved.metadata,
        )
    """

    def __init__(
        self,
        store: PaymentStore,
        settings: Optional[CheckoutSettings] = None,
        signer: Optional[GatewaySigner] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.signer = signer or GatewaySigner(self.settings.gateway_passphrase)

    def parse(
        self,
        params: Mapping[str, Any],
        source: CallbackSource = CallbackSource.RETURN_URL,
    ) -> GatewayCallback:
        """Build a typed callback from raw query or form parameters."""
        return GatewayCallback.from_params(
            params,
            order_aliases=self.settings.order_reference_aliases,
            transaction_aliases=self.settings.transaction_id_aliases,
            amount_aliases=self.settings.gross_amount_aliases,
            source=source,
        )

    def verify_signature(self, callback: GatewayCallback) -> None:
        """
        Check the signature of a server-to-server notification.

        Return-URL redirects are unsigned. Verification is skipped when no
        passphrase is configured (sandbox).

        Raises:
            CallbackSignatureInvalid: If the signature does not match
        """
        if callback.source != CallbackSource.NOTIFICATION:
            return
        if not self.signer.passphrase:
            logger.debug("No gateway passphrase configured; skipping ITN signature check")
            return
        if not self.signer.verify(callback.raw, callback.signature):
            logger.error(
                f"Invalid gateway signature on notification for order "
                f"{callback.order_reference}"
            )
            raise CallbackSignatureInvalid(
                "Gateway notification signature is invalid",
                details={"order_reference": callback.order_reference},
            )

    def map_gateway_status(self, callback: GatewayCallback) -> PaymentRecordStatus:
        raw = (callback.payment_status or "").upper()
        if raw in GATEWAY_STATUS_MAP:
            return GATEWAY_STATUS_MAP[raw]
        if callback.source == CallbackSource.RETURN_URL:
            # The gateway only redirects to the return URL after payment
            return PaymentRecordStatus.COMPLETED
        if raw:
            logger.warning(f"Unrecognized gateway payment status {raw!r}")
        return PaymentRecordStatus.PENDING

    def resolve(self, callback: GatewayCallback) -> ResolvedCallback:
        """
        Match a callback to an order reference.

        Raises:
            MissingOrderReference: If no order alias carries a value
        """
        if not callback.order_reference:
            logger.warning(
                f"Callback without order reference; fields present: "
                f"{sorted(callback.raw.keys())}"
            )
            raise MissingOrderReference(self.settings.order_reference_aliases)

        warnings = []
        if callback.transaction_id is None:
            logger.warning(
                f"Callback for order {callback.order_reference} has no gateway "
                f"transaction id; proceeding as tentative success"
            )
            warnings.append("transaction_unconfirmed")

        amount_gross = callback.amount_gross
        if callback.amount_gross_raw is not None and amount_gross is None:
            logger.warning(
                f"Ignoring unparsable gross amount {callback.amount_gross_raw!r} "
                f"for order {callback.order_reference}"
            )
            warnings.append("gross_amount_unparsable")

        return ResolvedCallback(
            order_id=callback.order_reference,
            transaction_id=callback.transaction_id,
            amount_gross=amount_gross,
            payment_status=self.map_gateway_status(callback),
            source=callback.source,
            buyer_reference=callback.buyer_reference,
            metadata=self.build_metadata(callback),
            warnings=warnings,
        )

    def build_metadata(self, callback: GatewayCallback) -> Dict[str, Any]:
        """Audit metadata: unrecognized gateway fields verbatim plus receipt info."""
        metadata: Dict[str, Any] = {
            "gateway": self.settings.gateway_name,
            "source": callback.source.value,
            "received_at": utcnow().isoformat(),
            "gateway_fields": dict(callback.extra),
        }
        if callback.transaction_id:
            metadata["gateway_payment_id"] = callback.transaction_id
        if callback.amount_gross_raw is not None:
            metadata["gateway_amount_gross"] = callback.amount_gross_raw
        if callback.payment_status:
            metadata["gateway_payment_status"] = callback.payment_status
        return metadata

    async def record_payment(
        self,
        order: Order,
        amount: Decimal,
        currency: str,
        transaction_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
        status: PaymentRecordStatus = PaymentRecordStatus.COMPLETED,
    ) -> PaymentWriteResult:
        """
        Append a payment record for a claimed order.

        A duplicate (order, transaction id) is success: it means a retried
        callback for a payment that is already recorded. Any other store
        failure is returned as PaymentRecordPersistenceFailed and logged for
        out-of-band remediation; it never propagates to the caller.

        Raises:
            PaymentValidationError: If amount is negative
        """
        if amount < 0:
            raise PaymentValidationError(
                f"Payment amount must be non-negative, got {amount}",
                field="amount",
            )

        if transaction_id is None:
            logger.info(
                f"Skipping payment record for order {order.id}: no gateway transaction id"
            )
            return PaymentWriteResult(skipped=True)

        record = PaymentRecord(
            order_id=order.id,
            buyer_id=order.buyer_id,
            amount=amount,
            currency=currency,
            status=status,
            payment_method=self.settings.gateway_name,
            transaction_id=transaction_id,
            metadata=dict(metadata or {}),
        )

        try:
            result = await call_with_timeout(
                self.store.insert_if_absent(record),
                self.settings.store_timeout_seconds,
                "payments.insert_if_absent",
            )
        except Exception as e:
            failure = PaymentRecordPersistenceFailed(order.id, transaction_id, e)
            logger.error(
                f"Payment ledger write failed; needs out-of-band reconciliation: "
                f"{failure.message}",
                extra={"error_code": failure.error_code},
            )
            return PaymentWriteResult(record=record, failure=failure)

        if result == InsertResult.ALREADY_EXISTS:
            logger.info(
                f"Payment {transaction_id} for order {order.id} already recorded"
            )
        else:
            logger.info(
                f"Recorded {status.value} payment {transaction_id} for order "
                f"{order.id}: {amount} {currency}"
            )
        return PaymentWriteResult(record=record, insert_result=result)
