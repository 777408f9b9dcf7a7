"""
Vendor partitioning of orders and carts.

An order spans one or more vendors (farms). This module groups order items
by vendor, prices delivery, and clears from the buyer's shared cart only
the vendors covered by a confirmed payment, so unrelated in-progress
selections from other farms survive checkout.
"""
from __future__ import annotations

import logging
import math
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Union

from harvest_checkout.config import CheckoutSettings, get_settings
from harvest_checkout.exceptions import VendorResolutionFailed
from harvest_checkout.models import CartClearResult, OrderItem, VendorGroup
from harvest_checkout.stores import CartStore, CatalogStore, call_with_timeout

logger = logging.getLogger(__name__)

UNKNOWN_VENDOR_ID = "unknown"
UNKNOWN_VENDOR_NAME = "Unknown Farm"

Distance = Union[int, float, Decimal]


def compute_delivery_fee(
    distance_km: Distance,
    base_fee: Decimal = Decimal("25.00"),
    per_km_surcharge: Decimal = Decimal("5.00"),
    free_radius_km: int = 5,
) -> Decimal:
    """Tiered delivery fee.

    `base_fee` up to `free_radius_km`, then `per_km_surcharge` for every
    started kilometre beyond it.
    """
    distance = Decimal(str(distance_km))
    if not distance.is_finite() or distance < 0:
        raise ValueError(f"distance must be a non-negative number, got {distance_km!r}")
    excess = distance - free_radius_km
    if excess <= 0:
        return base_fee
    return base_fee + per_km_surcharge * math.ceil(excess)


class CartPartitioner:
    """Groups order items by vendor and clears paid vendors from a cart."""

    def __init__(
        self,
        catalog: Optional[CatalogStore] = None,
        settings: Optional[CheckoutSettings] = None,
    ):
        self.catalog = catalog
        self.settings = settings or get_settings()

    def compute_delivery_fee(self, distance_km: Distance) -> Decimal:
        return compute_delivery_fee(
            distance_km,
            base_fee=self.settings.delivery_base_fee,
            per_km_surcharge=self.settings.delivery_per_km_surcharge,
            free_radius_km=self.settings.delivery_free_radius_km,
        )

    async def resolve_vendors(self, items: Iterable[OrderItem]) -> List[OrderItem]:
        """
        Fill in vendor ids and names through the catalog.

        Returns copies of the items. Raises VendorResolutionFailed naming
        every product whose vendor is unknown or whose lookup errored; the
        exception carries all items, resolved where possible.
        """
        resolved: List[OrderItem] = []
        unresolved: List[str] = []
        names: Dict[str, str] = {}
        timeout = self.settings.store_timeout_seconds

        for item in items:
            vendor_id = item.vendor_id
            if vendor_id is None and self.catalog is not None:
                try:
                    vendor_id = await call_with_timeout(
                        self.catalog.resolve_vendor(item.product_id),
                        timeout,
                        "catalog.resolve_vendor",
                    )
                except Exception as e:
                    logger.warning(f"Vendor lookup failed for product {item.product_id}: {e}")
                    vendor_id = None
            if vendor_id is None:
                unresolved.append(item.product_id)
                resolved.append(item.model_copy())
                continue

            vendor_name = item.vendor_name
            if vendor_name is None:
                if vendor_id not in names:
                    names[vendor_id] = await self._vendor_name(vendor_id)
                vendor_name = names[vendor_id]
            resolved.append(item.model_copy(update={"vendor_id": vendor_id, "vendor_name": vendor_name}))

        if unresolved:
            raise VendorResolutionFailed(unresolved, items=resolved)
        return resolved

    async def _vendor_name(self, vendor_id: str) -> str:
        if self.catalog is None:
            return UNKNOWN_VENDOR_NAME
        try:
            name = await call_with_timeout(
                self.catalog.vendor_name(vendor_id),
                self.settings.store_timeout_seconds,
                "catalog.vendor_name",
            )
        except Exception as e:
            logger.debug(f"Vendor name lookup failed for {vendor_id}: {e}")
            return UNKNOWN_VENDOR_NAME
        return name or UNKNOWN_VENDOR_NAME

    def group_by_vendor(self, items: Iterable[OrderItem]) -> List[VendorGroup]:
        """
        Partition items by vendor, preserving item order within each group.

        Groups appear in order of each vendor's first item.
        """
        groups: Dict[str, VendorGroup] = {}
        unresolved: List[str] = []
        for item in items:
            if item.vendor_id is None:
                unresolved.append(item.product_id)
                continue
            group = groups.get(item.vendor_id)
            if group is None:
                group = VendorGroup(
                    vendor_id=item.vendor_id,
                    vendor_name=item.vendor_name or UNKNOWN_VENDOR_NAME,
                )
                groups[item.vendor_id] = group
            group.items.append(item)

        if unresolved:
            raise VendorResolutionFailed(unresolved)
        return list(groups.values())

    async def clear_paid_vendors(
        self,
        cart: CartStore,
        vendor_ids: Optional[Iterable[str]],
        reason: Optional[str] = None,
    ) -> CartClearResult:
        """
        Remove the paid vendors' entries from the buyer's cart.

        `vendor_ids=None` means vendor identity could not be resolved for the
        order; the whole cart is then cleared so paid-for items can never
        reappear at checkout.
        """
        timeout = self.settings.store_timeout_seconds

        if vendor_ids is None:
            return await self._clear_all(cart, reason or "vendor_resolution_failed")

        cleared: List[str] = []
        for vendor_id in dict.fromkeys(vendor_ids):
            try:
                await call_with_timeout(
                    cart.remove_vendor_entries(vendor_id),
                    timeout,
                    "cart.remove_vendor_entries",
                )
            except Exception as e:
                logger.warning(f"Removing cart entries for vendor {vendor_id} failed: {e}")
                return await self._clear_all(cart, "vendor_removal_failed")
            cleared.append(vendor_id)

        logger.info(f"Cleared paid vendors from cart: {cleared}")
        return CartClearResult(cleared_vendor_ids=cleared)

    async def _clear_all(self, cart: CartStore, reason: str) -> CartClearResult:
        logger.warning(
            f"Degraded cart fallback: clearing entire cart ({reason}); "
            f"unrelated selections from other vendors are lost"
        )
        vendor_ids = await call_with_timeout(
            cart.vendor_ids(), self.settings.store_timeout_seconds, "cart.vendor_ids"
        )
        await call_with_timeout(cart.clear(), self.settings.store_timeout_seconds, "cart.clear")
        return CartClearResult(cleared_vendor_ids=vendor_ids, full_clear=True, reason=reason)
