"""
Store interfaces for the reconciliation core.

The reconciliation core talks to four external collaborators:
- OrderStore: durable orders with atomic compare-and-swap status updates
- PaymentStore: append-only payment ledger, unique on (order, transaction id)
- CartStore: a handle on one buyer's multi-vendor cart
- CatalogStore: read-only product -> vendor lookup

In-memory implementations are provided for development and testing.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Awaitable, Dict, Iterable, List, Optional, Tuple, TypeVar

from harvest_checkout.exceptions import StoreTimeout
from harvest_checkout.models import (
    Cart,
    InsertResult,
    Order,
    OrderStatus,
    PaymentRecord,
    ProductSuggestion,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OrderStore(ABC):
    """Abstract interface for order storage."""

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        """Get an order by id."""
        pass

    @abstractmethod
    async def compare_and_swap_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        expected_updated_at: Optional[datetime] = None,
    ) -> bool:
        """
        Atomically move an order from `expected` to `new`.

        When `expected_updated_at` is given the swap is additionally
        conditioned on the stored `updated_at`. Returns True if this call
        performed the swap, False if the stored state did not match.
        """
        pass


class PaymentStore(ABC):
    """Abstract interface for the append-only payment ledger."""

    @abstractmethod
    async def insert_if_absent(self, record: PaymentRecord) -> InsertResult:
        """
        Insert a payment record.

        Returns ALREADY_EXISTS when a record with the same order id and
        transaction id is already stored. Records without a transaction id
        have no uniqueness key.
        """
        pass

    @abstractmethod
    async def list_for_order(self, order_id: str) -> List[PaymentRecord]:
        """List payment records for an order, oldest first."""
        pass


class CartStore(ABC):
    """Handle on a single buyer's cart."""

    @abstractmethod
    async def vendor_ids(self) -> List[str]:
        """Vendors that currently have entries in the cart."""
        pass

    @abstractmethod
    async def remove_vendor_entries(self, vendor_id: str) -> None:
        """Remove every entry belonging to `vendor_id`."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Remove every entry."""
        pass


class CatalogStore(ABC):
    """Read-only product catalog lookup."""

    @abstractmethod
    async def resolve_vendor(self, product_id: str) -> Optional[str]:
        """Return the vendor id selling `product_id`, or None if unknown."""
        pass

    async def vendor_name(self, vendor_id: str) -> Optional[str]:
        """Display name for a vendor. Defaults to unknown."""
        return None

    async def list_products(
        self,
        limit: int,
        exclude_product_ids: Iterable[str] = (),
    ) -> List[ProductSuggestion]:
        """Products for up-sell suggestions. Defaults to none."""
        return []


# =============================================================================
# In-memory implementations
# =============================================================================

class InMemoryOrderStore(OrderStore):
    """
    In-memory order store for development and testing.

    Note: This store is not suitable for production use in distributed
    environments. Use a persistent store such as the PostgREST backend.
    """

    def __init__(self, orders: Iterable[Order] = ()):
        self._orders: Dict[str, Order] = {}
        self._lock = asyncio.Lock()
        for order in orders:
            self._orders[order.id] = order.model_copy(deep=True)

    async def add(self, order: Order) -> Order:
        self._orders[order.id] = order.model_copy(deep=True)
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def compare_and_swap_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        expected_updated_at: Optional[datetime] = None,
    ) -> bool:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status != expected:
                return False
            if expected_updated_at is not None and order.updated_at != expected_updated_at:
                return False
            order.status = new
            order.updated_at = utcnow()
            return True


class InMemoryPaymentStore(PaymentStore):
    """
    In-memory payment ledger for development and testing.

    Enforces the same (order id, transaction id) uniqueness a database
    unique index would.
    """

    def __init__(self):
        self._records: List[PaymentRecord] = []
        self._keys: Dict[Tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    async def insert_if_absent(self, record: PaymentRecord) -> InsertResult:
        async with self._lock:
            if record.transaction_id is not None:
                key = (record.order_id, record.transaction_id)
                if key in self._keys:
                    return InsertResult.ALREADY_EXISTS
                self._keys[key] = record.id
            self._records.append(record.model_copy(deep=True))
            return InsertResult.INSERTED

    async def list_for_order(self, order_id: str) -> List[PaymentRecord]:
        return [r.model_copy(deep=True) for r in self._records if r.order_id == order_id]

    @property
    def records(self) -> List[PaymentRecord]:
        return list(self._records)


class InMemoryCartStore(CartStore):
    """Cart handle backed by an in-process Cart aggregate."""

    def __init__(self, cart: Cart):
        self.cart = cart

    async def vendor_ids(self) -> List[str]:
        return self.cart.vendor_ids()

    async def remove_vendor_entries(self, vendor_id: str) -> None:
        removed = self.cart.remove_vendor(vendor_id)
        logger.debug(f"Removed {removed} cart entries for vendor {vendor_id}")

    async def clear(self) -> None:
        removed = self.cart.clear()
        logger.debug(f"Cleared {removed} cart entries for buyer {self.cart.buyer_id}")


class InMemoryCatalogStore(CatalogStore):
    """Static product catalog for development and testing."""

    def __init__(
        self,
        product_vendors: Optional[Dict[str, str]] = None,
        vendor_names: Optional[Dict[str, str]] = None,
        products: Optional[List[ProductSuggestion]] = None,
    ):
        self._product_vendors = dict(product_vendors or {})
        self._vendor_names = dict(vendor_names or {})
        self._products = list(products or [])

    async def resolve_vendor(self, product_id: str) -> Optional[str]:
        return self._product_vendors.get(product_id)

    async def vendor_name(self, vendor_id: str) -> Optional[str]:
        return self._vendor_names.get(vendor_id)

    async def list_products(
        self,
        limit: int,
        exclude_product_ids: Iterable[str] = (),
    ) -> List[ProductSuggestion]:
        excluded = set(exclude_product_ids)
        return [p for p in self._products if p.product_id not in excluded][:limit]


async def call_with_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    operation: str,
) -> T:
    """Await a store call, converting a timeout into StoreTimeout.

    A timed-out write may or may not have been applied; callers treat it as
    an unknown outcome.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Store call {operation} timed out after {timeout}s")
        raise StoreTimeout(operation, timeout)
