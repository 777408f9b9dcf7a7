"""Post-confirmation effects.

Best-effort work that runs after an order is confirmed: the celebratory
acknowledgement, storage and handling tips, up-sell suggestions, a
recurring-order offer and a delayed review prompt. Each effect runs as its
own tracked background task; a failure is logged and recorded on the
order's extras but never reaches the reconciliation path, and is never
retried within the same request.

Example:
    effects = PostConfirmationEffects(catalog=catalog)
    effects.subscribe("effects.*", on_effect)

    extras = effects.schedule(summary, order.items)
    await effects.wait_for_background_tasks(timeout=5)
"""
from __future__ import annotations

import asyncio
import fnmatch
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from harvest_checkout.config import CheckoutSettings, get_settings
from harvest_checkout.exceptions import DownstreamEffectFailed
from harvest_checkout.models import (
    HandlingTip,
    OrderItem,
    OrderSummary,
    ProductSuggestion,
    RecurringOrderSuggestion,
    utcnow,
)
from harvest_checkout.projector import round_money
from harvest_checkout.stores import CatalogStore, call_with_timeout

logger = logging.getLogger(__name__)


class EffectEvent(str, Enum):
    ORDER_CONFIRMED = "order.confirmed"
    ACKNOWLEDGED = "effects.acknowledged"
    TIPS_READY = "effects.tips_ready"
    UPSELL_READY = "effects.upsell_ready"
    RECURRING_OFFERED = "effects.recurring_offered"
    REVIEW_PROMPT_DUE = "effects.review_prompt_due"


GENERAL_TIPS = (
    HandlingTip(
        title="Proper Storage",
        description="Store fresh produce in the refrigerator and dry goods in a cool, dry place",
        category="storage",
    ),
    HandlingTip(
        title="Nutritional Benefits",
        description="Fresh farm produce provides maximum nutritional value and flavor",
        category="nutrition",
    ),
    HandlingTip(
        title="Recipe Ideas",
        description="Visit our recipe section for inspiration using your fresh ingredients",
        category="usage",
    ),
)

CATEGORY_TIPS: Dict[str, HandlingTip] = {
    "vegetables": HandlingTip(
        title="Peak Freshness",
        description="Use leafy greens within 3-5 days and root vegetables within 1-2 weeks",
        category="preparation",
    ),
    "fruit": HandlingTip(
        title="Ripening",
        description="Keep stone fruit on the counter until ripe, then refrigerate",
        category="storage",
    ),
    "dairy": HandlingTip(
        title="Keep It Cold",
        description="Refrigerate dairy as soon as it arrives and keep it below 4°C",
        category="storage",
    ),
    "meat": HandlingTip(
        title="Cold Chain",
        description="Freeze meat you will not cook within two days of delivery",
        category="storage",
    ),
    "eggs": HandlingTip(
        title="Farm Eggs",
        description="Store unwashed farm eggs pointy end down; they keep for three weeks",
        category="storage",
    ),
}


@dataclass
class ConfirmationExtras:
    """Results of the post-confirmation effects for one order."""
    order_id: str
    acknowledgement: Optional[str] = None
    tips: List[HandlingTip] = field(default_factory=list)
    suggestions: List[ProductSuggestion] = field(default_factory=list)
    recurring: Optional[RecurringOrderSuggestion] = None
    review_prompt_due: bool = False
    failures: List[DownstreamEffectFailed] = field(default_factory=list)


@dataclass
class PostConfirmationEffects:
    """Fire-and-forget effect queue with pattern-based subscribers."""

    catalog: Optional[CatalogStore] = None
    settings: CheckoutSettings = field(default_factory=get_settings)
    _subscribers: Dict[str, List[Callable]] = field(default_factory=dict)
    _background_tasks: set[asyncio.Task[Any]] = field(default_factory=set)
    _extras: OrderedDict[str, ConfirmationExtras] = field(default_factory=OrderedDict)

    def subscribe(self, event_pattern: str, handler: Callable) -> None:
        """Subscribe a sync or async handler to events matching a pattern."""
        handlers = self._subscribers.setdefault(event_pattern, [])
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, event_pattern: str, handler: Callable) -> None:
        if event_pattern in self._subscribers:
            try:
                self._subscribers[event_pattern].remove(handler)
            except ValueError:
                pass
            if not self._subscribers[event_pattern]:
                del self._subscribers[event_pattern]

    def extras_for(self, order_id: str) -> Optional[ConfirmationExtras]:
        return self._extras.get(order_id)

    def _retain(self, extras: ConfirmationExtras) -> None:
        """Keep extras for the most recent orders only; running tasks hold their own reference."""
        self._extras.pop(extras.order_id, None)
        self._extras[extras.order_id] = extras
        while len(self._extras) > self.settings.retained_extras_limit:
            evicted, _ = self._extras.popitem(last=False)
            logger.debug(f"Evicted post-confirmation extras for {evicted}")

    def schedule(self, summary: OrderSummary, items: Sequence[OrderItem]) -> ConfirmationExtras:
        """
        Queue every effect for a confirmed order and return immediately.

        The returned extras fill in as the background tasks complete.
        """
        extras = ConfirmationExtras(order_id=summary.order_id)
        self._retain(extras)

        effects: List[tuple[str, Callable[[], Awaitable[None]]]] = [
            ("order_confirmed", lambda: self.emit(EffectEvent.ORDER_CONFIRMED, summary.to_dict())),
            ("acknowledgement", lambda: self._acknowledge(summary, extras)),
            ("handling_tips", lambda: self._handling_tips(items, extras)),
            ("upsell", lambda: self._upsell(items, extras)),
            ("recurring_offer", lambda: self._recurring_offer(summary, extras)),
            ("review_prompt", lambda: self._review_prompt(summary, extras)),
        ]
        for name, effect in effects:
            self._schedule_background(self._run_effect(name, effect, extras))

        logger.debug(f"Scheduled {len(effects)} post-confirmation effects for {summary.order_id}")
        return extras

    async def _run_effect(
        self,
        name: str,
        effect: Callable[[], Awaitable[None]],
        extras: ConfirmationExtras,
    ) -> None:
        try:
            await effect()
        except Exception as e:
            failure = DownstreamEffectFailed(name, e)
            extras.failures.append(failure)
            logger.warning(
                f"{failure.message} (order {extras.order_id})",
                exc_info=True,
            )

    async def emit(self, event: EffectEvent, data: Dict[str, Any]) -> None:
        """Deliver an event to matching subscribers; handler errors are logged."""
        for pattern, handlers in list(self._subscribers.items()):
            if not fnmatch.fnmatch(event.value, pattern):
                continue
            for handler in list(handlers):
                try:
                    result = handler(event, data)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as e:
                    logger.error(
                        f"Handler {getattr(handler, '__name__', handler)} failed for "
                        f"{event.value}: {e}",
                        exc_info=True,
                    )

    async def _acknowledge(self, summary: OrderSummary, extras: ConfirmationExtras) -> None:
        if summary.transaction_confirmed:
            message = (
                f"Payment Confirmed! Payment of {summary.currency} "
                f"{summary.displayed_total} has been successfully processed."
            )
        else:
            message = "Your order has been confirmed and is being processed."
        extras.acknowledgement = message
        await self.emit(EffectEvent.ACKNOWLEDGED, {"order_id": summary.order_id, "message": message})

    async def _handling_tips(self, items: Sequence[OrderItem], extras: ConfirmationExtras) -> None:
        tips = list(GENERAL_TIPS)
        for category in dict.fromkeys(item.category.lower() for item in items):
            tip = CATEGORY_TIPS.get(category)
            if tip is not None and tip not in tips:
                tips.append(tip)
        extras.tips = tips
        await self.emit(EffectEvent.TIPS_READY, {"order_id": extras.order_id, "count": len(tips)})

    async def _upsell(self, items: Sequence[OrderItem], extras: ConfirmationExtras) -> None:
        if self.catalog is None:
            return
        suggestions = await call_with_timeout(
            self.catalog.list_products(
                self.settings.upsell_limit,
                exclude_product_ids=[item.product_id for item in items],
            ),
            self.settings.store_timeout_seconds,
            "catalog.list_products",
        )
        extras.suggestions = list(suggestions)
        await self.emit(
            EffectEvent.UPSELL_READY,
            {"order_id": extras.order_id, "product_ids": [s.product_id for s in suggestions]},
        )

    async def _recurring_offer(self, summary: OrderSummary, extras: ConfirmationExtras) -> None:
        offer = recurring_order_projection(
            summary.subtotal,
            minimum_total=self.settings.recurring_min_order_total,
            discount_rate=self.settings.recurring_discount_rate,
        )
        if offer is None:
            return
        extras.recurring = offer
        await self.emit(
            EffectEvent.RECURRING_OFFERED,
            {
                "order_id": summary.order_id,
                "frequency": offer.frequency,
                "annual_savings": str(offer.annual_savings),
            },
        )

    async def _review_prompt(self, summary: OrderSummary, extras: ConfirmationExtras) -> None:
        await asyncio.sleep(self.settings.review_prompt_delay_seconds)
        extras.review_prompt_due = True
        await self.emit(
            EffectEvent.REVIEW_PROMPT_DUE,
            {
                "order_id": summary.order_id,
                "vendor_ids": [group.vendor_id for group in summary.vendor_groups],
            },
        )

    def _schedule_background(self, coro: Any) -> None:
        """Schedule a background coroutine while tracking task lifecycle."""
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def wait_for_background_tasks(self, timeout: Optional[float] = None) -> None:
        """Wait for all currently tracked background tasks to complete."""
        if not self._background_tasks:
            return
        pending = list(self._background_tasks)
        await asyncio.wait_for(asyncio.gather(*pending, return_exceptions=True), timeout=timeout)


def recurring_order_projection(
    order_total: Decimal,
    minimum_total: Decimal = Decimal("100.00"),
    discount_rate: Decimal = Decimal("0.10"),
) -> Optional[RecurringOrderSuggestion]:
    """Weekly subscription offer for orders above `minimum_total`."""
    if order_total <= minimum_total:
        return None
    return RecurringOrderSuggestion(
        frequency="weekly",
        discount_rate=discount_rate,
        next_delivery=utcnow() + timedelta(weeks=1),
        annual_savings=round_money(order_total * discount_rate * 52),
    )
