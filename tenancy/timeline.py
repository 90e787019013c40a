"""
Escrow Timeline - Append-Only Audit Trail for Escrow Accounts

Every escrow transition appends exactly one event. Events are never updated or
deleted and are ordered by their monotonically increasing id.

Hash Chain Properties:
- Each event carries a SHA-256 hash of its content
- Each event references the hash of the previous event for the same escrow
- Hash computation is deterministic (sorted keys, consistent serialization)
- Tampering with any stored event breaks the chain integrity

Rental agreements get a lighter status history (no hash chain).
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Callable, Final, Optional

from tenancy.identity import Identity
from tenancy.schema import (
    EscrowEventType,
    EscrowTimelineEvent,
    RentalStatus,
    RentalStatusChange,
)
from tenancy.storage import ESCROW_EVENTS_TABLE, RENTAL_HISTORY_TABLE, RecordStore

EVENT_KIND: Final[str] = "escrow_event"
RENTAL_HISTORY_KIND: Final[str] = "rental_history"


# =============================================================================
# Hash Chain Utilities
# =============================================================================


def _serialize_for_hash(data: dict[str, Any]) -> str:
    """Serialize data deterministically for hash computation."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def compute_event_hash(
    escrow_id: int,
    event_id: int,
    event_type: str,
    title: str,
    description: str,
    timestamp: int,
    amount: Optional[int],
    transaction_hash: Optional[str],
    metadata: Optional[dict[str, Any]],
    actor: Optional[str],
    previous_hash: Optional[str],
) -> str:
    """
    Compute SHA-256 hash for a timeline event.

    Including previous_hash creates the chain linkage.
    """
    hashable_content = {
        "escrow_id": escrow_id,
        "event_id": event_id,
        "event_type": event_type,
        "title": title,
        "description": description,
        "timestamp": timestamp,
        "amount": amount,
        "transaction_hash": transaction_hash,
        "metadata": metadata,
        "actor": actor,
        "previous_hash": previous_hash,
    }
    serialized = _serialize_for_hash(hashable_content)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _expected_hash(event: EscrowTimelineEvent) -> str:
    return compute_event_hash(
        escrow_id=event.escrow_id,
        event_id=event.id,
        event_type=event.event_type.value,
        title=event.title,
        description=event.description,
        timestamp=event.timestamp,
        amount=event.amount,
        transaction_hash=event.transaction_hash,
        metadata=event.metadata,
        actor=event.actor.principal if event.actor else None,
        previous_hash=event.previous_hash,
    )


def verify_event_chain(events: list[EscrowTimelineEvent]) -> dict[str, Any]:
    """
    Verify the integrity of one escrow's event chain.

    Returns:
        dict with:
            - valid: bool indicating if chain is intact
            - broken_at: event id where chain broke (if any)
            - error: description of the issue (if any)
    """
    if not events:
        return {"valid": True, "broken_at": None, "error": None}

    if events[0].previous_hash is not None:
        return {
            "valid": False,
            "broken_at": events[0].id,
            "error": "First event has a previous_hash (should be None)",
        }

    for i, event in enumerate(events):
        if event.event_hash != _expected_hash(event):
            return {
                "valid": False,
                "broken_at": event.id,
                "error": f"Hash mismatch at event {event.id}",
            }

        if i > 0 and event.previous_hash != events[i - 1].event_hash:
            return {
                "valid": False,
                "broken_at": event.id,
                "error": f"Chain broken at event {event.id}: "
                         f"previous_hash does not match event {events[i - 1].id}",
            }

    return {"valid": True, "broken_at": None, "error": None}


# =============================================================================
# Escrow Timeline
# =============================================================================


class EscrowTimeline:
    """
    Append-only timeline of escrow events.

    Rules:
    - add_event is the only write
    - events_for returns insertion order
    - No update or delete exists
    """

    def __init__(self, store: RecordStore, clock: Callable[[], int]):
        self._store = store
        self._clock = clock

    def add_event(
        self,
        escrow_id: int,
        event_type: EscrowEventType,
        title: str,
        description: str,
        amount: Optional[int] = None,
        transaction_hash: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        actor: Optional[Identity] = None,
        timestamp: Optional[int] = None,
    ) -> int:
        """
        Append an event to an escrow's timeline.

        Args:
            escrow_id: Escrow account id
            event_type: Type of event
            title: Short human-readable title
            description: Human-readable description
            amount: Optional amount in minor units
            transaction_hash: Optional external reference
            metadata: Optional free-form JSON-serialisable data
            actor: Identity that caused the event (None for system-triggered)
            timestamp: Event time (defaults to the clock)

        Returns:
            The new event id
        """
        previous = self.latest_for(escrow_id)
        previous_hash = previous.event_hash if previous else None
        ts = timestamp if timestamp is not None else self._clock()
        actor_principal = actor.principal if actor else None

        def build(event_id: int) -> dict[str, Any]:
            event_hash = compute_event_hash(
                escrow_id=escrow_id,
                event_id=event_id,
                event_type=event_type.value,
                title=title,
                description=description,
                timestamp=ts,
                amount=amount,
                transaction_hash=transaction_hash,
                metadata=metadata,
                actor=actor_principal,
                previous_hash=previous_hash,
            )
            event = EscrowTimelineEvent(
                id=event_id,
                escrow_id=escrow_id,
                event_type=event_type,
                title=title,
                description=description,
                timestamp=ts,
                amount=amount,
                transaction_hash=transaction_hash,
                metadata=metadata,
                actor=actor,
                previous_hash=previous_hash,
                event_hash=event_hash,
            )
            return event.to_dict()

        return self._store.insert_new(ESCROW_EVENTS_TABLE, EVENT_KIND, build)

    def events_for(
        self,
        escrow_id: int,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> list[EscrowTimelineEvent]:
        """Get an escrow's events in insertion order."""
        rows = self._store.scan(
            ESCROW_EVENTS_TABLE,
            lambda r: r["escrow_id"] == escrow_id,
            offset=offset,
            limit=limit,
        )
        return [EscrowTimelineEvent.from_dict(r) for r in rows]

    def latest_for(self, escrow_id: int) -> Optional[EscrowTimelineEvent]:
        events = self.events_for(escrow_id)
        return events[-1] if events else None

    def count_for(self, escrow_id: int) -> int:
        return self._store.count(ESCROW_EVENTS_TABLE, lambda r: r["escrow_id"] == escrow_id)

    def verify_chain(self, escrow_id: int) -> dict[str, Any]:
        """Verify the hash chain of one escrow's timeline."""
        events = self.events_for(escrow_id)
        result = verify_event_chain(events)
        result["event_count"] = len(events)
        return result


# =============================================================================
# Rental History
# =============================================================================


class RentalHistory:
    """Append-only status history for rental agreements."""

    def __init__(self, store: RecordStore):
        self._store = store

    def record(
        self,
        rental_id: int,
        from_status: Optional[RentalStatus],
        to_status: RentalStatus,
        actor: Optional[Identity],
        timestamp: int,
    ) -> int:
        return self._store.insert_new(
            RENTAL_HISTORY_TABLE,
            RENTAL_HISTORY_KIND,
            lambda change_id: RentalStatusChange(
                id=change_id,
                rental_id=rental_id,
                from_status=from_status,
                to_status=to_status,
                actor=actor,
                timestamp=timestamp,
            ).to_dict(),
        )

    def history_for(self, rental_id: int) -> list[RentalStatusChange]:
        rows = self._store.scan(RENTAL_HISTORY_TABLE, lambda r: r["rental_id"] == rental_id)
        return [RentalStatusChange.from_dict(r) for r in rows]
