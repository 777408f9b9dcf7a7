"""
Tests for harvest_checkout.effects.

Tests cover:
- Every effect runs in the background
- Failure isolation
- Subscriber dispatch
- Recurring order projection
"""
from __future__ import annotations

import asyncio
from dataclasses import replace
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import make_order
from harvest_checkout.effects import (
    CATEGORY_TIPS,
    EffectEvent,
    GENERAL_TIPS,
    PostConfirmationEffects,
    recurring_order_projection,
)
from harvest_checkout.exceptions import DownstreamEffectFailed
from harvest_checkout.models import OrderStatus, VendorGroup
from harvest_checkout.projector import OrderSummaryProjector


@pytest.fixture
def summary(settings):
    order = make_order(status=OrderStatus.CONFIRMED)
    groups = [VendorGroup(vendor_id="farm-a", vendor_name="Green Valley Farm", items=order.items)]
    return OrderSummaryProjector(settings).project(
        order, groups, Decimal("60.00"), transaction_id="1089250"
    )


class TestPostConfirmationEffects:
    """Tests for PostConfirmationEffects.schedule."""

    @pytest.mark.asyncio
    async def test_all_effects_complete(self, catalog, settings, summary):
        """Should fill every extra once background tasks finish."""
        effects = PostConfirmationEffects(catalog=catalog, settings=settings)

        extras = effects.schedule(summary, make_order().items)
        await effects.wait_for_background_tasks(timeout=1)

        assert extras.acknowledgement.startswith("Payment Confirmed!")
        assert "ZAR 280.00" in extras.acknowledgement
        assert list(GENERAL_TIPS) == extras.tips[:3]
        assert CATEGORY_TIPS["vegetables"] in extras.tips
        assert CATEGORY_TIPS["eggs"] in extras.tips
        assert [s.product_id for s in extras.suggestions] == ["p-milk", "p-honey"]
        assert extras.recurring is not None
        assert extras.review_prompt_due is True
        assert extras.failures == []
        assert effects.extras_for(summary.order_id) is extras

    @pytest.mark.asyncio
    async def test_schedule_returns_immediately(self, settings, summary):
        """Should not block on slow effects."""
        settings = settings.model_copy(update={"review_prompt_delay_seconds": 10})
        effects = PostConfirmationEffects(settings=settings)

        extras = effects.schedule(summary, [])

        assert extras.review_prompt_due is False
        with pytest.raises(asyncio.TimeoutError):
            await effects.wait_for_background_tasks(timeout=0.05)

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, settings, summary):
        """Should record a failing effect and still run the others."""
        catalog = AsyncMock()
        catalog.list_products.side_effect = ConnectionError("catalog down")
        effects = PostConfirmationEffects(catalog=catalog, settings=settings)

        extras = effects.schedule(summary, make_order().items)
        await effects.wait_for_background_tasks(timeout=1)

        [failure] = extras.failures
        assert isinstance(failure, DownstreamEffectFailed)
        assert failure.effect == "upsell"
        assert extras.suggestions == []
        assert extras.recurring is not None
        assert extras.review_prompt_due is True

    @pytest.mark.asyncio
    async def test_subscribers_receive_events(self, settings, summary):
        """Should dispatch events to pattern subscribers."""
        effects = PostConfirmationEffects(settings=settings)
        received = []
        effects.subscribe("effects.*", lambda event, data: received.append(event))
        confirmed = AsyncMock()
        effects.subscribe(EffectEvent.ORDER_CONFIRMED.value, confirmed)

        effects.schedule(summary, make_order().items)
        await effects.wait_for_background_tasks(timeout=1)

        assert EffectEvent.REVIEW_PROMPT_DUE in received
        assert EffectEvent.RECURRING_OFFERED in received
        assert EffectEvent.ORDER_CONFIRMED not in received
        confirmed.assert_awaited_once()
        assert confirmed.await_args.args[1]["order_id"] == summary.order_id

    @pytest.mark.asyncio
    async def test_subscriber_error_does_not_fail_effect(self, settings, summary):
        """Should log handler errors without recording effect failures."""
        effects = PostConfirmationEffects(settings=settings)
        effects.subscribe("*", Mock(side_effect=RuntimeError("handler bug")))

        extras = effects.schedule(summary, [])
        await effects.wait_for_background_tasks(timeout=1)

        assert extras.failures == []

    @pytest.mark.asyncio
    async def test_extras_are_bounded(self, settings, summary):
        """Should keep extras only for the most recent orders."""
        settings = settings.model_copy(update={"retained_extras_limit": 3})
        effects = PostConfirmationEffects(settings=settings)
        order_ids = [f"order-{n}" for n in range(50)]

        for order_id in order_ids:
            effects.schedule(replace(summary, order_id=order_id), [])
        await effects.wait_for_background_tasks(timeout=1)

        assert len(effects._extras) == 3
        assert effects.extras_for("order-0") is None
        assert [effects.extras_for(o).order_id for o in order_ids[-3:]] == order_ids[-3:]

    @pytest.mark.asyncio
    async def test_evicted_extras_still_complete(self, settings, summary):
        """Should let running effects finish after their extras are evicted."""
        settings = settings.model_copy(update={"retained_extras_limit": 1})
        effects = PostConfirmationEffects(settings=settings)

        first = effects.schedule(replace(summary, order_id="order-1"), [])
        effects.schedule(replace(summary, order_id="order-2"), [])
        await effects.wait_for_background_tasks(timeout=1)

        assert effects.extras_for("order-1") is None
        assert first.review_prompt_due is True
        assert first.acknowledgement is not None

    def test_unsubscribe(self, settings):
        """Should remove handlers and empty patterns."""
        effects = PostConfirmationEffects(settings=settings)
        handler = Mock()
        effects.subscribe("effects.*", handler)
        effects.unsubscribe("effects.*", handler)
        effects.unsubscribe("effects.*", handler)

        assert effects._subscribers == {}


class TestRecurringOrderProjection:
    """Tests for recurring_order_projection."""

    def test_above_threshold(self):
        """Should offer weekly delivery with 10% savings over a year."""
        offer = recurring_order_projection(Decimal("220.00"))

        assert offer.frequency == "weekly"
        assert offer.discount_rate == Decimal("0.10")
        assert offer.annual_savings == Decimal("1144.00")

    def test_at_threshold(self):
        """Should not offer at exactly the minimum."""
        assert recurring_order_projection(Decimal("100.00")) is None

    def test_below_threshold(self):
        assert recurring_order_projection(Decimal("45.00")) is None
