"""
PostgREST-backed stores.

Talks to a Supabase/PostgREST REST API with httpx. The compare-and-swap is a
filtered PATCH: the row is only updated when the filter still matches, and
`Prefer: return=representation` tells us whether it did. Payment uniqueness
relies on a unique index over (order_id, transaction_id). PostgREST answers
HTTP 409 for every unique or foreign-key violation, so only a 23505 naming
that key counts as an existing payment.

Table layout:
    orders(id, user_id, total, shipping_address, payment_method, status,
           delivery_distance_km, created_at, updated_at)
    order_items(id, order_id, product_id, quantity, unit_price)
    products(id, name, category, price, farmer_id)
    farms(farmer_id, name)
    payments(id, order_id, user_id, amount, currency, status, payment_method,
             transaction_id, metadata, created_at, updated_at)
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import httpx

from harvest_checkout.config import CheckoutSettings, get_settings
from harvest_checkout.models import (
    InsertResult,
    Order,
    OrderItem,
    OrderStatus,
    PaymentRecord,
    ProductSuggestion,
    utcnow,
)
from harvest_checkout.stores import CatalogStore, OrderStore, PaymentStore

logger = logging.getLogger(__name__)

ORDER_SELECT = "*,order_items(*,products(id,name,category,farmer_id))"

UNIQUE_VIOLATION = "23505"
PAYMENT_UNIQUE_KEY = "(order_id, transaction_id)"


class PostgrestClient:
    """Thin async client for a PostgREST endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Optional[CheckoutSettings] = None) -> "PostgrestClient":
        settings = settings or get_settings()
        if not settings.postgrest_url:
            raise ValueError("HARVEST_CHECKOUT_POSTGREST_URL is not configured")
        return cls(
            settings.postgrest_url,
            settings.postgrest_api_key,
            timeout=settings.store_timeout_seconds,
        )

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await self._client.request(method, path, **kwargs)

    async def close(self) -> None:
        await self._client.aclose()


def _order_from_row(row: Dict[str, Any]) -> Order:
    items = []
    for item in row.get("order_items") or []:
        product = item.get("products") or {}
        items.append(OrderItem(
            id=str(item["id"]),
            product_id=str(item["product_id"]),
            vendor_id=product.get("farmer_id"),
            product_name=product.get("name") or "Unknown Product",
            category=product.get("category") or "other",
            quantity=item["quantity"],
            unit_price=Decimal(str(item["unit_price"])),
        ))
    return Order(
        id=str(row["id"]),
        buyer_id=str(row["user_id"]),
        total=Decimal(str(row["total"])),
        shipping_address=row.get("shipping_address") or "",
        payment_method=row.get("payment_method"),
        status=OrderStatus(row["status"]),
        delivery_distance_km=Decimal(str(row.get("delivery_distance_km") or 0)),
        items=items,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _payment_from_row(row: Dict[str, Any]) -> PaymentRecord:
    return PaymentRecord(
        id=str(row["id"]),
        order_id=str(row["order_id"]),
        buyer_id=str(row["user_id"]),
        amount=Decimal(str(row["amount"])),
        currency=row.get("currency") or "ZAR",
        status=row["status"],
        payment_method=row.get("payment_method") or "payfast",
        transaction_id=row.get("transaction_id"),
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
        updated_at=row.get("updated_at") or row["created_at"],
    )


def _is_duplicate_payment(response: httpx.Response) -> bool:
    try:
        error = response.json()
    except ValueError:
        return False
    if not isinstance(error, dict) or error.get("code") != UNIQUE_VIOLATION:
        return False
    detail = f"{error.get('details') or ''} {error.get('message') or ''}"
    if PAYMENT_UNIQUE_KEY in detail:
        return True
    logger.error(f"Payment insert hit an unexpected unique constraint: {detail.strip()}")
    return False


class PostgrestOrderStore(OrderStore):
    """Orders table with filtered-PATCH compare-and-swap."""

    def __init__(self, client: PostgrestClient):
        self.client = client

    async def get(self, order_id: str) -> Optional[Order]:
        response = await self.client.request(
            "GET",
            "/orders",
            params={"id": f"eq.{order_id}", "select": ORDER_SELECT},
        )
        response.raise_for_status()
        rows = response.json()
        if not rows:
            return None
        return _order_from_row(rows[0])

    async def compare_and_swap_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        expected_updated_at: Optional[datetime] = None,
    ) -> bool:
        params = {"id": f"eq.{order_id}", "status": f"eq.{expected.value}"}
        if expected_updated_at is not None:
            params["updated_at"] = f"eq.{expected_updated_at.isoformat()}"

        response = await self.client.request(
            "PATCH",
            "/orders",
            params=params,
            json={"status": new.value, "updated_at": utcnow().isoformat()},
            headers={"Prefer": "return=representation"},
        )
        response.raise_for_status()
        swapped = len(response.json()) == 1
        logger.debug(
            f"CAS order {order_id} {expected.value} -> {new.value}: "
            f"{'swapped' if swapped else 'no match'}"
        )
        return swapped


class PostgrestPaymentStore(PaymentStore):
    """Append-only payments table."""

    def __init__(self, client: PostgrestClient):
        self.client = client

    async def insert_if_absent(self, record: PaymentRecord) -> InsertResult:
        payload = record.model_dump(mode="json")
        payload["user_id"] = payload.pop("buyer_id")

        response = await self.client.request(
            "POST",
            "/payments",
            json=payload,
            headers={"Prefer": "return=minimal"},
        )
        if response.status_code == 409 and _is_duplicate_payment(response):
            return InsertResult.ALREADY_EXISTS
        response.raise_for_status()
        return InsertResult.INSERTED

    async def list_for_order(self, order_id: str) -> List[PaymentRecord]:
        response = await self.client.request(
            "GET",
            "/payments",
            params={"order_id": f"eq.{order_id}", "order": "created_at.asc"},
        )
        response.raise_for_status()
        return [_payment_from_row(row) for row in response.json()]


class PostgrestCatalogStore(CatalogStore):
    """Product to farm lookup over the products and farms tables."""

    def __init__(self, client: PostgrestClient):
        self.client = client

    async def resolve_vendor(self, product_id: str) -> Optional[str]:
        response = await self.client.request(
            "GET",
            "/products",
            params={"id": f"eq.{product_id}", "select": "farmer_id"},
        )
        response.raise_for_status()
        rows = response.json()
        if not rows:
            return None
        return rows[0].get("farmer_id")

    async def vendor_name(self, vendor_id: str) -> Optional[str]:
        response = await self.client.request(
            "GET",
            "/farms",
            params={"farmer_id": f"eq.{vendor_id}", "select": "name"},
        )
        response.raise_for_status()
        rows = response.json()
        return rows[0].get("name") if rows else None

    async def list_products(
        self,
        limit: int,
        exclude_product_ids: Iterable[str] = (),
    ) -> List[ProductSuggestion]:
        params = {
            "select": "id,name,price,category,farmer_id",
            "limit": str(limit),
        }
        excluded = [str(p) for p in exclude_product_ids]
        if excluded:
            params["id"] = f"not.in.({','.join(excluded)})"

        response = await self.client.request("GET", "/products", params=params)
        response.raise_for_status()
        return [
            ProductSuggestion(
                product_id=str(row["id"]),
                name=row.get("name") or "Unknown Product",
                price=Decimal(str(row.get("price") or 0)),
                vendor_id=row.get("farmer_id"),
                category=row.get("category") or "other",
            )
            for row in response.json()
        ]
