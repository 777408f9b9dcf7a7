"""
Advisory per-session reconciliation markers.

Records that reconciliation already ran to completion for an order within a
buyer session, so a re-mounted return page or back-button navigation can
skip the store round trips. This is only a latency optimization: a
different session or device never sees the marker, and correctness rests
on the order state machine's compare-and-swap claim.
"""
from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from harvest_checkout.models import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ProcessedMarker:
    """Marker left after a completed reconciliation."""
    key: str
    order_id: str
    session_id: str
    outcome: str
    created_at: datetime = field(default_factory=utcnow)
    expires_at: datetime = field(default_factory=lambda: utcnow() + timedelta(hours=24))


class IdempotencyStore(ABC):
    """Abstract interface for marker storage."""

    @abstractmethod
    async def get(self, key: str) -> Optional[ProcessedMarker]:
        """Get a live marker by key."""
        pass

    @abstractmethod
    async def put(self, marker: ProcessedMarker) -> None:
        """Create or replace a marker."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a marker."""
        pass

    @abstractmethod
    async def cleanup_expired(self) -> int:
        """Remove expired markers. Returns count of removed markers."""
        pass


class InMemoryIdempotencyStore(IdempotencyStore):
    """
    In-memory marker store for development and testing.

    Note: markers are process-local, which matches their advisory role.
    """

    def __init__(self):
        self._markers: Dict[str, ProcessedMarker] = {}

    async def get(self, key: str) -> Optional[ProcessedMarker]:
        marker = self._markers.get(key)
        if marker and marker.expires_at < utcnow():
            del self._markers[key]
            return None
        return marker

    async def put(self, marker: ProcessedMarker) -> None:
        self._markers[marker.key] = marker

    async def delete(self, key: str) -> bool:
        return self._markers.pop(key, None) is not None

    async def cleanup_expired(self) -> int:
        now = utcnow()
        expired = [key for key, marker in self._markers.items() if marker.expires_at < now]
        for key in expired:
            del self._markers[key]
        return len(expired)


def generate_marker_key(prefix: str, *components: Any) -> str:
    """
    Generate a deterministic marker key from components.

    Usage:
        key = generate_marker_key("payment_processed", session_id, order_id)
    """
    parts = [str(prefix)]
    for comp in components:
        if comp is not None:
            parts.append(str(comp))

    combined = ":".join(parts)
    return hashlib.sha256(combined.encode()).hexdigest()[:32]


class IdempotencyGuard:
    """
    Fast-path short-circuit for repeated reconciliation in one session.

    Usage:
        guard = IdempotencyGuard()

        if await guard.already_processed(session_id, order_id):
            ...  # re-derive the summary only
        ...
        await guard.mark_processed(session_id, order_id, "confirmed")
    """

    def __init__(
        self,
        store: Optional[IdempotencyStore] = None,
        ttl_hours: int = 24,
    ):
        self.store = store or InMemoryIdempotencyStore()
        self.ttl_hours = ttl_hours

    def key_for(self, session_id: str, order_id: str) -> str:
        return generate_marker_key("payment_processed", session_id, order_id)

    async def already_processed(self, session_id: Optional[str], order_id: str) -> bool:
        if not session_id:
            return False
        return await self.store.get(self.key_for(session_id, order_id)) is not None

    async def mark_processed(self, session_id: Optional[str], order_id: str, outcome: str) -> None:
        if not session_id:
            return
        marker = ProcessedMarker(
            key=self.key_for(session_id, order_id),
            order_id=order_id,
            session_id=session_id,
            outcome=outcome,
            expires_at=utcnow() + timedelta(hours=self.ttl_hours),
        )
        await self.store.put(marker)
        logger.debug(f"Marked order {order_id} processed for session {session_id}")

    async def forget(self, session_id: str, order_id: str) -> bool:
        return await self.store.delete(self.key_for(session_id, order_id))
