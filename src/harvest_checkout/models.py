"""Checkout reconciliation data models."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence
import uuid

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    """Order lifecycle status."""
    DRAFT = "draft"
    INITIATED = "initiated"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.FAILED,
})

# Statuses at or beyond `processing` on the happy path.
CLAIMED_STATUSES = frozenset({
    OrderStatus.PROCESSING,
    OrderStatus.CONFIRMED,
    OrderStatus.DELIVERED,
})


class PaymentRecordStatus(str, Enum):
    """Payment ledger record status."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ClaimResult(str, Enum):
    """Outcome of an attempt to claim an order for processing."""
    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"


class InsertResult(str, Enum):
    """Outcome of an insert-if-absent against the payment store."""
    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"


class CallbackSource(str, Enum):
    """How the gateway reached us."""
    RETURN_URL = "return_url"
    NOTIFICATION = "notification"


class ReconciliationStatus(str, Enum):
    """Buyer-facing outcome of a reconciliation attempt."""
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    ALREADY_PROCESSED = "already_processed"
    PENDING_VERIFICATION = "pending_verification"
    FAILED = "failed"
    CANCELLED = "cancelled"
    MISSING_ORDER = "missing_order"


# =============================================================================
# Persisted entities
# =============================================================================

class OrderItem(BaseModel):
    id: str = Field(default_factory=lambda: f"item_{uuid.uuid4().hex[:12]}")
    product_id: str
    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None
    product_name: str = "Unknown Product"
    category: str = "other"
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=Decimal("0"))

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class Order(BaseModel):
    id: str
    buyer_id: str
    total: Decimal = Field(ge=Decimal("0"))
    shipping_address: str = ""
    payment_method: Optional[str] = None
    status: OrderStatus = OrderStatus.DRAFT
    delivery_distance_km: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    items: List[OrderItem] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def order_number(self) -> str:
        return self.id[:8].upper()

    def items_subtotal(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0"))


class PaymentRecord(BaseModel):
    id: str = Field(default_factory=lambda: f"pay_{uuid.uuid4().hex[:16]}")
    order_id: str
    buyer_id: str
    amount: Decimal = Field(ge=Decimal("0"))
    currency: str = "ZAR"
    status: PaymentRecordStatus = PaymentRecordStatus.COMPLETED
    payment_method: str = "payfast"
    transaction_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Inbound gateway callback
# =============================================================================

def _first_present(params: Mapping[str, Any], aliases: Sequence[str]) -> Optional[str]:
    for alias in aliases:
        value = params.get(alias)
        if value is None:
            continue
        value = str(value).strip()
        if value:
            return value
    return None


def parse_amount(raw: Optional[str]) -> Optional[Decimal]:
    """Parse a gateway numeric string. Returns None for junk or negatives."""
    if raw is None:
        return None
    try:
        amount = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return amount


class GatewayCallback(BaseModel):
    """Typed view of an opaque gateway key-value callback.

    Named fields cover what reconciliation reads; every other field lands in
    `extra` verbatim so it can be persisted for audit.
    """
    order_reference: Optional[str] = None
    transaction_id: Optional[str] = None
    amount_gross_raw: Optional[str] = None
    payment_status: Optional[str] = None
    buyer_reference: Optional[str] = None
    signature: Optional[str] = None
    source: CallbackSource = CallbackSource.RETURN_URL
    extra: Dict[str, str] = Field(default_factory=dict)
    raw: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_params(
        cls,
        params: Mapping[str, Any],
        *,
        order_aliases: Sequence[str],
        transaction_aliases: Sequence[str],
        amount_aliases: Sequence[str],
        source: CallbackSource = CallbackSource.RETURN_URL,
    ) -> "GatewayCallback":
        raw = {str(k): "" if v is None else str(v) for k, v in params.items()}
        named = {
            *order_aliases,
            *transaction_aliases,
            *amount_aliases,
            "payment_status",
            "custom_str2",
            "signature",
        }
        return cls(
            order_reference=_first_present(raw, order_aliases),
            transaction_id=_first_present(raw, transaction_aliases),
            amount_gross_raw=_first_present(raw, amount_aliases),
            payment_status=_first_present(raw, ["payment_status"]),
            buyer_reference=_first_present(raw, ["custom_str2"]),
            signature=_first_present(raw, ["signature"]),
            source=source,
            extra={k: v for k, v in raw.items() if k not in named},
            raw=raw,
        )

    @property
    def amount_gross(self) -> Optional[Decimal]:
        return parse_amount(self.amount_gross_raw)


@dataclass
class ResolvedCallback:
    """A callback matched to an order reference."""
    order_id: str
    transaction_id: Optional[str]
    amount_gross: Optional[Decimal]
    payment_status: PaymentRecordStatus
    source: CallbackSource
    buyer_reference: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def transaction_confirmed(self) -> bool:
        return self.transaction_id is not None


@dataclass
class PaymentWriteResult:
    """Result of a payment ledger write. Never carries a raised error."""
    record: Optional[PaymentRecord] = None
    insert_result: Optional[InsertResult] = None
    skipped: bool = False
    failure: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


# =============================================================================
# Cart aggregate
# =============================================================================

@dataclass
class CartLine:
    product_id: str
    vendor_id: str
    quantity: int = 1
    unit_price: Decimal = Decimal("0")
    product_name: str = ""
    vendor_name: str = ""


@dataclass
class Cart:
    """A buyer's multi-vendor cart, keyed by vendor id."""
    buyer_id: str
    entries: Dict[str, List[CartLine]] = field(default_factory=dict)

    def add(self, line: CartLine) -> None:
        self.entries.setdefault(line.vendor_id, []).append(line)

    def vendor_ids(self) -> List[str]:
        return [vendor_id for vendor_id, lines in self.entries.items() if lines]

    def lines_for(self, vendor_id: str) -> List[CartLine]:
        return list(self.entries.get(vendor_id, []))

    def remove_vendor(self, vendor_id: str) -> int:
        return len(self.entries.pop(vendor_id, []))

    def clear(self) -> int:
        count = sum(len(lines) for lines in self.entries.values())
        self.entries.clear()
        return count

    @property
    def is_empty(self) -> bool:
        return not any(self.entries.values())


@dataclass
class CartClearResult:
    cleared_vendor_ids: List[str] = field(default_factory=list)
    full_clear: bool = False
    reason: Optional[str] = None


# =============================================================================
# Projections
# =============================================================================

@dataclass
class VendorGroup:
    """Order items for a single vendor (farm). Derived, never persisted."""
    vendor_id: str
    vendor_name: str
    items: List[OrderItem] = field(default_factory=list)
    preparation_window: Optional[str] = None

    @property
    def subtotal(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0"))

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vendor_id": self.vendor_id,
            "vendor_name": self.vendor_name,
            "subtotal": str(self.subtotal),
            "item_count": self.item_count,
            "preparation_window": self.preparation_window,
            "items": [
                {
                    "product_id": item.product_id,
                    "product_name": item.product_name,
                    "quantity": item.quantity,
                    "unit_price": str(item.unit_price),
                    "total": str(item.line_total),
                }
                for item in self.items
            ],
        }


@dataclass
class OrderSummary:
    """Read model shown on the confirmation page."""
    order_id: str
    order_number: str
    status: OrderStatus
    subtotal: Decimal
    delivery_fee: Decimal
    tax: Decimal
    ledger_total: Decimal
    displayed_total: Decimal
    currency: str
    vendor_groups: List[VendorGroup]
    estimated_delivery: datetime
    payment_method: str
    transaction_id: str
    transaction_confirmed: bool
    gateway_amount: Optional[Decimal] = None
    amount_mismatch: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "order_number": self.order_number,
            "status": self.status.value,
            "subtotal": str(self.subtotal),
            "delivery_fee": str(self.delivery_fee),
            "tax": str(self.tax),
            "ledger_total": str(self.ledger_total),
            "displayed_total": str(self.displayed_total),
            "gateway_amount": str(self.gateway_amount) if self.gateway_amount is not None else None,
            "amount_mismatch": self.amount_mismatch,
            "currency": self.currency,
            "estimated_delivery": self.estimated_delivery.isoformat(),
            "payment_method": self.payment_method,
            "transaction_id": self.transaction_id,
            "transaction_confirmed": self.transaction_confirmed,
            "vendor_groups": [group.to_dict() for group in self.vendor_groups],
        }


@dataclass
class RecurringOrderSuggestion:
    frequency: str
    discount_rate: Decimal
    next_delivery: datetime
    annual_savings: Decimal


@dataclass
class ProductSuggestion:
    product_id: str
    name: str
    price: Decimal
    vendor_id: Optional[str] = None
    category: str = "other"


@dataclass
class HandlingTip:
    title: str
    description: str
    category: str


@dataclass
class ReconciliationResult:
    """What the caller needs to render the return page or answer a webhook."""
    status: ReconciliationStatus
    order_id: Optional[str] = None
    summary: Optional[OrderSummary] = None
    message: str = ""
    warnings: List[str] = field(default_factory=list)
    payment: Optional[PaymentWriteResult] = None
    cart: Optional[CartClearResult] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.status in (
            ReconciliationStatus.CONFIRMED,
            ReconciliationStatus.TENTATIVE,
            ReconciliationStatus.ALREADY_PROCESSED,
            ReconciliationStatus.PENDING_VERIFICATION,
        )


@dataclass
class PaymentStatusReport:
    """Order status plus its payment ledger entries."""
    order_id: str
    status: OrderStatus
    payments: List[PaymentRecord] = field(default_factory=list)

    @property
    def paid(self) -> bool:
        return any(p.status == PaymentRecordStatus.COMPLETED for p in self.payments)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "status": self.status.value,
            "paid": self.paid,
            "payments": [p.model_dump(mode="json") for p in self.payments],
        }
