"""Shared fixtures for harvest_checkout tests."""
from __future__ import annotations

import sys
from decimal import Decimal
from pathlib import Path

import pytest

# Add source to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from harvest_checkout.config import CheckoutSettings
from harvest_checkout.models import (
    Cart,
    CartLine,
    Order,
    OrderItem,
    OrderStatus,
    ProductSuggestion,
)
from harvest_checkout.stores import (
    InMemoryCartStore,
    InMemoryCatalogStore,
    InMemoryOrderStore,
    InMemoryPaymentStore,
)

ORDER_ID = "a1b2c3d4-5e6f-4a0b-9c8d-7e6f5a4b3c2d"
BUYER_ID = "buyer-1"


@pytest.fixture
def settings():
    """Settings with no review prompt delay and no passphrase."""
    return CheckoutSettings(review_prompt_delay_seconds=0)


def make_items():
    return [
        OrderItem(
            id="item-1",
            product_id="p-tomato",
            product_name="Heirloom Tomatoes",
            category="vegetables",
            quantity=2,
            unit_price=Decimal("30.00"),
        ),
        OrderItem(
            id="item-2",
            product_id="p-eggs",
            product_name="Free Range Eggs",
            category="eggs",
            quantity=1,
            unit_price=Decimal("60.00"),
        ),
        OrderItem(
            id="item-3",
            product_id="p-spinach",
            product_name="Baby Spinach",
            category="vegetables",
            quantity=4,
            unit_price=Decimal("25.00"),
        ),
    ]


def make_order(status=OrderStatus.INITIATED, **overrides):
    """Order of R220 across two farms, 12 km away."""
    data = dict(
        id=ORDER_ID,
        buyer_id=BUYER_ID,
        total=Decimal("220.00"),
        shipping_address="12 Orchard Lane, Stellenbosch",
        payment_method="PayFast",
        status=status,
        delivery_distance_km=Decimal("12"),
        items=make_items(),
    )
    data.update(overrides)
    return Order(**data)


@pytest.fixture
def order():
    return make_order()


@pytest.fixture
def order_store(order):
    return InMemoryOrderStore([order])


@pytest.fixture
def payment_store():
    return InMemoryPaymentStore()


@pytest.fixture
def catalog():
    return InMemoryCatalogStore(
        product_vendors={
            "p-tomato": "farm-a",
            "p-spinach": "farm-a",
            "p-eggs": "farm-b",
        },
        vendor_names={
            "farm-a": "Green Valley Farm",
            "farm-b": "Sunrise Poultry",
            "farm-c": "Hilltop Dairy",
        },
        products=[
            ProductSuggestion(product_id="p-tomato", name="Heirloom Tomatoes", price=Decimal("30.00"), vendor_id="farm-a"),
            ProductSuggestion(product_id="p-milk", name="Raw Milk", price=Decimal("22.00"), vendor_id="farm-c", category="dairy"),
            ProductSuggestion(product_id="p-honey", name="Fynbos Honey", price=Decimal("85.00"), vendor_id="farm-b"),
        ],
    )


@pytest.fixture
def cart():
    """Cart holding entries from farms A, B and C."""
    cart = Cart(buyer_id=BUYER_ID)
    cart.add(CartLine(product_id="p-tomato", vendor_id="farm-a", quantity=2, unit_price=Decimal("30.00")))
    cart.add(CartLine(product_id="p-spinach", vendor_id="farm-a", quantity=4, unit_price=Decimal("25.00")))
    cart.add(CartLine(product_id="p-eggs", vendor_id="farm-b", quantity=1, unit_price=Decimal("60.00")))
    cart.add(CartLine(product_id="p-milk", vendor_id="farm-c", quantity=3, unit_price=Decimal("22.00")))
    return cart


@pytest.fixture
def cart_store(cart):
    return InMemoryCartStore(cart)
