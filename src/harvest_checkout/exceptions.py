"""Exception hierarchy for checkout reconciliation.

All reconciliation errors inherit from CheckoutError, enabling:
- Consistent error handling between the orchestrator and its callers
- HTTP status code mapping at the transport layer
- Structured error responses with machine-readable error codes

Only MissingOrderReference, InvalidTransition, OrderNotFound and
CallbackSignatureInvalid abort the buyer-visible flow. The remaining errors
are degraded outcomes: they are logged and returned alongside a confirmed
order, never raised out of the reconciliation path.

All exceptions have:
- error_code: Machine-readable error code (e.g., "MISSING_ORDER_REFERENCE")
- http_status: Appropriate HTTP status code for API responses
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to API response format
"""
from __future__ import annotations

from typing import Any, Iterable, Optional


class CheckoutError(Exception):
    """Base exception for all checkout reconciliation errors."""

    error_code: str = "CHECKOUT_ERROR"
    http_status: int = 500
    fatal: bool = True

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Fatal errors (abort the buyer-visible flow)
# =============================================================================

class MissingOrderReference(CheckoutError):
    """No order reference could be resolved from any callback alias."""

    error_code = "MISSING_ORDER_REFERENCE"
    http_status = 400

    def __init__(self, aliases: Iterable[str]) -> None:
        aliases = list(aliases)
        super().__init__(
            f"Callback carries no order reference (checked: {', '.join(aliases)})",
            details={"aliases": aliases},
        )


class OrderNotFound(CheckoutError):
    """Order does not exist or is not owned by the buyer."""

    error_code = "ORDER_NOT_FOUND"
    http_status = 404

    def __init__(self, order_id: str) -> None:
        super().__init__(
            f"Order '{order_id}' not found",
            details={"order_id": order_id},
        )


class InvalidTransition(CheckoutError):
    """Requested order status transition is not in the transition table."""

    error_code = "INVALID_TRANSITION"
    http_status = 409

    def __init__(self, order_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Order '{order_id}' cannot move from {current} to {target}",
            details={"order_id": order_id, "current": current, "target": target},
        )
        self.current = current
        self.target = target


class CallbackSignatureInvalid(CheckoutError):
    """Gateway notification signature did not verify."""

    error_code = "CALLBACK_SIGNATURE_INVALID"
    http_status = 400


class PaymentValidationError(CheckoutError):
    """Payment record input failed validation."""

    error_code = "PAYMENT_VALIDATION_ERROR"
    http_status = 400

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        details = {"field": field} if field else {}
        super().__init__(message, details=details)


class StoreTimeout(CheckoutError):
    """A store call exceeded its timeout; the outcome is unknown.

    The whole reconciliation is idempotent, so the caller should retry it
    rather than assume the write failed.
    """

    error_code = "STORE_TIMEOUT"
    http_status = 503

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(
            f"{operation} did not complete within {timeout}s; outcome unknown",
            details={"operation": operation, "timeout_seconds": timeout},
        )
        self.operation = operation


# =============================================================================
# Degraded outcomes (surfaced, never propagated)
# =============================================================================

class PaymentRecordPersistenceFailed(CheckoutError):
    """Payment ledger write failed after the order was claimed.

    Must be surfaced for out-of-band remediation; never rolls back the claim.
    """

    error_code = "PAYMENT_RECORD_PERSISTENCE_FAILED"
    http_status = 202
    fatal = False

    def __init__(
        self,
        order_id: str,
        transaction_id: Optional[str],
        cause: Optional[BaseException] = None,
    ) -> None:
        reason = f"{type(cause).__name__}: {cause}" if cause else "unknown"
        super().__init__(
            f"Could not persist payment for order '{order_id}' "
            f"(transaction {transaction_id}): {reason}",
            details={
                "order_id": order_id,
                "transaction_id": transaction_id,
                "cause": reason,
            },
        )
        self.order_id = order_id
        self.transaction_id = transaction_id


class VendorResolutionFailed(CheckoutError):
    """Vendor identity could not be resolved for one or more order items."""

    error_code = "VENDOR_RESOLUTION_FAILED"
    http_status = 202
    fatal = False

    def __init__(
        self,
        product_ids: Iterable[str],
        items: Optional[list] = None,
    ) -> None:
        product_ids = list(product_ids)
        super().__init__(
            f"Could not resolve vendor for products: {', '.join(product_ids)}",
            details={"product_ids": product_ids},
        )
        self.product_ids = product_ids
        # Every item, unresolved ones included, for degraded display
        self.items = items or []


class DownstreamEffectFailed(CheckoutError):
    """A post-confirmation effect failed. Logged and swallowed."""

    error_code = "DOWNSTREAM_EFFECT_FAILED"
    http_status = 200
    fatal = False

    def __init__(self, effect: str, cause: BaseException) -> None:
        super().__init__(
            f"Post-confirmation effect '{effect}' failed: {cause}",
            details={"effect": effect, "cause": type(cause).__name__},
        )
        self.effect = effect
        self.cause = cause
