"""
Harvest Checkout - payment callback reconciliation for a farm marketplace.

This package turns a payment gateway's return-URL redirect or instant
transaction notification into an exactly-once order confirmation across a
multi-vendor (multi-farm) order.

Features:
- Atomic compare-and-swap claim of pending orders
- Idempotent payment ledger writes keyed on the gateway transaction id
- Tentative success for callbacks without a transaction id
- Vendor-filtered cart clearing with a full-clear fallback
- Order summary projection with gateway-authoritative totals
- Background post-confirmation effects
- Gateway notification signature verification
- PostgREST-backed stores
"""

from harvest_checkout.orchestrator import ReconciliationOrchestrator
from harvest_checkout.models import (
    # Entities
    Order,
    OrderItem,
    OrderStatus,
    PaymentRecord,
    PaymentRecordStatus,
    # Callback
    CallbackSource,
    GatewayCallback,
    ResolvedCallback,
    # Cart
    Cart,
    CartLine,
    CartClearResult,
    # Projections
    VendorGroup,
    OrderSummary,
    RecurringOrderSuggestion,
    ProductSuggestion,
    HandlingTip,
    # Outcomes
    ClaimResult,
    InsertResult,
    PaymentWriteResult,
    PaymentStatusReport,
    ReconciliationResult,
    ReconciliationStatus,
)

# Errors
from harvest_checkout.exceptions import (
    CheckoutError,
    MissingOrderReference,
    OrderNotFound,
    InvalidTransition,
    CallbackSignatureInvalid,
    PaymentValidationError,
    StoreTimeout,
    PaymentRecordPersistenceFailed,
    VendorResolutionFailed,
    DownstreamEffectFailed,
)

# Components
from harvest_checkout.state_machine import OrderStateMachine, can_transition
from harvest_checkout.reconciler import PaymentReconciler
from harvest_checkout.partitioner import CartPartitioner, compute_delivery_fee
from harvest_checkout.projector import OrderSummaryProjector
from harvest_checkout.effects import (
    ConfirmationExtras,
    EffectEvent,
    PostConfirmationEffects,
    recurring_order_projection,
)
from harvest_checkout.idempotency import (
    IdempotencyGuard,
    IdempotencyStore,
    InMemoryIdempotencyStore,
)
from harvest_checkout.signatures import GatewaySigner

# Stores
from harvest_checkout.stores import (
    OrderStore,
    PaymentStore,
    CartStore,
    CatalogStore,
    InMemoryOrderStore,
    InMemoryPaymentStore,
    InMemoryCartStore,
    InMemoryCatalogStore,
)
from harvest_checkout.postgrest import (
    PostgrestClient,
    PostgrestOrderStore,
    PostgrestPaymentStore,
    PostgrestCatalogStore,
)

# Configuration and logging
from harvest_checkout.config import CheckoutSettings, get_settings
from harvest_checkout.logging_config import setup_logging, reconciliation_context

__all__ = [
    # Orchestrator
    "ReconciliationOrchestrator",
    # Entities
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentRecord",
    "PaymentRecordStatus",
    # Callback
    "CallbackSource",
    "GatewayCallback",
    "ResolvedCallback",
    # Cart
    "Cart",
    "CartLine",
    "CartClearResult",
    # Projections
    "VendorGroup",
    "OrderSummary",
    "RecurringOrderSuggestion",
    "ProductSuggestion",
    "HandlingTip",
    # Outcomes
    "ClaimResult",
    "InsertResult",
    "PaymentWriteResult",
    "PaymentStatusReport",
    "ReconciliationResult",
    "ReconciliationStatus",
    # Errors
    "CheckoutError",
    "MissingOrderReference",
    "OrderNotFound",
    "InvalidTransition",
    "CallbackSignatureInvalid",
    "PaymentValidationError",
    "StoreTimeout",
    "PaymentRecordPersistenceFailed",
    "VendorResolutionFailed",
    "DownstreamEffectFailed",
    # Components
    "OrderStateMachine",
    "can_transition",
    "PaymentReconciler",
    "CartPartitioner",
    "compute_delivery_fee",
    "OrderSummaryProjector",
    "ConfirmationExtras",
    "EffectEvent",
    "PostConfirmationEffects",
    "recurring_order_projection",
    "IdempotencyGuard",
    "IdempotencyStore",
    "InMemoryIdempotencyStore",
    "GatewaySigner",
    # Stores
    "OrderStore",
    "PaymentStore",
    "CartStore",
    "CatalogStore",
    "InMemoryOrderStore",
    "InMemoryPaymentStore",
    "InMemoryCartStore",
    "InMemoryCatalogStore",
    "PostgrestClient",
    "PostgrestOrderStore",
    "PostgrestPaymentStore",
    "PostgrestCatalogStore",
    # Configuration and logging
    "CheckoutSettings",
    "get_settings",
    "setup_logging",
    "reconciliation_context",
]

__version__ = "0.3.0"
