"""Tests for harvest_checkout.idempotency."""
from __future__ import annotations

from datetime import timedelta

import pytest

from harvest_checkout.idempotency import (
    IdempotencyGuard,
    InMemoryIdempotencyStore,
    ProcessedMarker,
    generate_marker_key,
)
from harvest_checkout.models import utcnow


class TestInMemoryIdempotencyStore:
    """Tests for InMemoryIdempotencyStore."""

    @pytest.fixture
    def store(self):
        return InMemoryIdempotencyStore()

    @pytest.mark.asyncio
    async def test_put_and_get(self, store):
        """Should return a stored marker."""
        marker = ProcessedMarker(key="k1", order_id="o1", session_id="s1", outcome="confirmed")
        await store.put(marker)

        assert await store.get("k1") is marker

    @pytest.mark.asyncio
    async def test_expired_marker_is_gone(self, store):
        """Should drop markers past their expiry."""
        marker = ProcessedMarker(
            key="k1",
            order_id="o1",
            session_id="s1",
            outcome="confirmed",
            expires_at=utcnow() - timedelta(seconds=1),
        )
        await store.put(marker)

        assert await store.get("k1") is None

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, store):
        """Should remove only expired markers."""
        await store.put(ProcessedMarker(key="live", order_id="o1", session_id="s", outcome="x"))
        await store.put(ProcessedMarker(
            key="dead", order_id="o2", session_id="s", outcome="x",
            expires_at=utcnow() - timedelta(hours=1),
        ))

        assert await store.cleanup_expired() == 1
        assert await store.get("live") is not None

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.put(ProcessedMarker(key="k1", order_id="o1", session_id="s", outcome="x"))

        assert await store.delete("k1") is True
        assert await store.delete("k1") is False


class TestGenerateMarkerKey:
    """Tests for generate_marker_key."""

    def test_deterministic(self):
        """Should produce the same key for the same components."""
        assert generate_marker_key("p", "s1", "o1") == generate_marker_key("p", "s1", "o1")

    def test_distinguishes_components(self):
        """Should produce different keys for different sessions."""
        assert generate_marker_key("p", "s1", "o1") != generate_marker_key("p", "s2", "o1")

    def test_length(self):
        assert len(generate_marker_key("p", "s1")) == 32


class TestIdempotencyGuard:
    """Tests for IdempotencyGuard."""

    @pytest.mark.asyncio
    async def test_marks_per_session(self):
        """Should only short-circuit the session that completed reconciliation."""
        guard = IdempotencyGuard()
        await guard.mark_processed("session-1", "order-1", "confirmed")

        assert await guard.already_processed("session-1", "order-1")
        assert not await guard.already_processed("session-2", "order-1")
        assert not await guard.already_processed("session-1", "order-2")

    @pytest.mark.asyncio
    async def test_no_session_is_never_processed(self):
        """Should ignore calls without a session id."""
        guard = IdempotencyGuard()
        await guard.mark_processed(None, "order-1", "confirmed")

        assert not await guard.already_processed(None, "order-1")

    @pytest.mark.asyncio
    async def test_ttl(self):
        """Should expire markers after the configured TTL."""
        store = InMemoryIdempotencyStore()
        guard = IdempotencyGuard(store, ttl_hours=0)
        await guard.mark_processed("session-1", "order-1", "confirmed")

        marker = store._markers[guard.key_for("session-1", "order-1")]
        marker.expires_at = utcnow() - timedelta(seconds=1)

        assert not await guard.already_processed("session-1", "order-1")

    @pytest.mark.asyncio
    async def test_forget(self):
        guard = IdempotencyGuard()
        await guard.mark_processed("session-1", "order-1", "confirmed")

        assert await guard.forget("session-1", "order-1")
        assert not await guard.already_processed("session-1", "order-1")
