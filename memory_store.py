"""
In-memory escrow store.

Implements the same interface as ``escrow_database.EscrowDatabase`` for local
development (``STORE_BACKEND=memory``) and tests. Conditional writes are
evaluated under a lock, so the compare-and-swap semantics match the
PostgreSQL store within a single process.
"""

import itertools
import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Optional, Dict, Any, List, Iterable

from escrow_database import MONOTONIC_COLUMNS, MUTABLE_COLUMNS
from escrow_errors import InvalidState, ValidationFailed
from escrow_models import (
    ACTIVE_STATES,
    Escrow,
    EscrowState,
    Listing,
    ListingStatus,
    Message,
    TimelineEvent,
)

logger = logging.getLogger(__name__)


class InMemoryEscrowDatabase:
    """Process-local escrow store backed by dictionaries."""

    def __init__(self):
        self._lock = threading.Lock()
        self._listings: Dict[str, Listing] = {}
        self._escrows: Dict[str, Escrow] = {}
        self._messages: List[Message] = []
        self._timeline: List[TimelineEvent] = []
        self._ids = itertools.count(1)

    async def connect(self) -> None:
        logger.info("Using in-memory escrow store")

    async def disconnect(self) -> None:
        pass

    async def initialize_tables(self) -> None:
        pass

    # ==================== Listings ====================

    async def create_listing(self, listing: Listing) -> Listing:
        if not 0 < listing.min_deposit <= listing.price:
            raise ValueError("listing requires 0 < min_deposit <= price")
        with self._lock:
            self._listings[listing.id] = replace(listing)
            return replace(listing)

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        with self._lock:
            listing = self._listings.get(listing_id)
            return replace(listing) if listing else None

    async def set_listing_status(
        self,
        listing_id: str,
        status: ListingStatus,
        expected_status: Optional[ListingStatus] = None
    ) -> bool:
        with self._lock:
            listing = self._listings.get(listing_id)
            if listing is None:
                return False
            if expected_status is not None and listing.status != expected_status:
                return False
            listing.status = ListingStatus(status)
            return True

    # ==================== Escrows ====================

    async def insert_escrow(self, escrow: Escrow) -> Escrow:
        with self._lock:
            listing = self._listings.get(escrow.listing_id)
            if listing is None or listing.status != ListingStatus.ACTIVE:
                current = listing.status.value if listing else None
                raise InvalidState(
                    f"cannot open deposit: listing is {current or 'missing'}",
                    current_state=current,
                    attempted_action="open_deposit"
                )
            if any(
                e.listing_id == escrow.listing_id and e.status in ACTIVE_STATES
                for e in self._escrows.values()
            ):
                raise InvalidState(
                    "cannot open deposit: listing already has an escrow in progress",
                    current_state=listing.status.value,
                    attempted_action="open_deposit"
                )
            if escrow.id in self._escrows:
                raise InvalidState(f"escrow {escrow.id} already exists")
            if escrow.deposit_receipt and any(
                e.deposit_receipt == escrow.deposit_receipt for e in self._escrows.values()
            ):
                raise ValidationFailed("cannot open deposit: deposit receipt was already used")

            listing.status = ListingStatus.PENDING
            self._escrows[escrow.id] = replace(escrow)
            return replace(escrow)

    async def get_escrow(self, escrow_id: str) -> Optional[Escrow]:
        with self._lock:
            escrow = self._escrows.get(escrow_id)
            return replace(escrow) if escrow else None

    async def get_latest_escrow_for_listing(self, listing_id: str) -> Optional[Escrow]:
        with self._lock:
            candidates = [e for e in self._escrows.values() if e.listing_id == listing_id]
            if not candidates:
                return None
            return replace(max(candidates, key=lambda e: e.created_at))

    async def get_escrow_by_deposit_receipt(self, receipt: str) -> Optional[Escrow]:
        with self._lock:
            for escrow in self._escrows.values():
                if escrow.deposit_receipt == receipt:
                    return replace(escrow)
            return None

    async def list_escrows_for_user(
        self,
        user_id: str,
        status: Optional[EscrowState] = None,
        limit: int = 50
    ) -> List[Escrow]:
        with self._lock:
            rows = [
                e for e in self._escrows.values()
                if user_id in (e.buyer_id, e.seller_id)
                and (status is None or e.status == status)
            ]
            rows.sort(key=lambda e: e.created_at, reverse=True)
            return [replace(e) for e in rows[:limit]]

    async def claim(
        self,
        escrow_id: str,
        expected_status: EscrowState,
        action: str,
        now: datetime,
        changes: Optional[Dict[str, Any]] = None
    ) -> Optional[Escrow]:
        with self._lock:
            escrow = self._escrows.get(escrow_id)
            if escrow is None or escrow.status != expected_status:
                return None
            if escrow.pending_action not in (None, action):
                return None
            self._apply(escrow, changes or {})
            escrow.pending_action = action
            escrow.pending_since = now
            return replace(escrow)

    async def release_claim(self, escrow_id: str, action: str) -> bool:
        with self._lock:
            escrow = self._escrows.get(escrow_id)
            if escrow is None or escrow.pending_action != action:
                return False
            escrow.pending_action = None
            escrow.pending_since = None
            return True

    async def compare_and_set(
        self,
        escrow_id: str,
        expected_status: EscrowState,
        changes: Dict[str, Any],
        expected_pending: Optional[str] = None,
        listing_status: Optional[ListingStatus] = None
    ) -> Optional[Escrow]:
        with self._lock:
            escrow = self._escrows.get(escrow_id)
            if escrow is None or escrow.status != expected_status:
                return None
            if escrow.pending_action != expected_pending:
                return None
            self._apply(escrow, changes)
            escrow.pending_action = None
            escrow.pending_since = None
            if listing_status is not None and escrow.listing_id in self._listings:
                self._listings[escrow.listing_id].status = ListingStatus(listing_status)
            return replace(escrow)

    @staticmethod
    def _apply(escrow: Escrow, changes: Dict[str, Any]) -> None:
        for column, value in changes.items():
            if column not in MUTABLE_COLUMNS:
                raise ValueError(f"column {column!r} cannot be updated")
            if column in MONOTONIC_COLUMNS:
                value = bool(getattr(escrow, column)) or bool(value)
            elif column == "status":
                value = EscrowState(value)
            setattr(escrow, column, value)

    async def get_overdue_deposits(self, now: datetime, limit: int = 100) -> List[Escrow]:
        with self._lock:
            rows = [
                e for e in self._escrows.values()
                if e.status == EscrowState.DEPOSITED
                and e.expires_at is not None and e.expires_at < now
            ]
            rows.sort(key=lambda e: e.expires_at)
            return [replace(e) for e in rows[:limit]]

    async def get_stalled_escrows(self, older_than: datetime, limit: int = 100) -> List[Escrow]:
        with self._lock:
            rows = [
                e for e in self._escrows.values()
                if (e.pending_action is not None and e.pending_since is not None
                    and e.pending_since < older_than)
                or (e.status == EscrowState.BUYER_CONFIRMED and e.seller_confirmed
                    and e.pending_action is None)
            ]
            rows.sort(key=lambda e: e.created_at)
            return [replace(e) for e in rows[:limit]]

    async def count_by_status(self) -> Dict[str, int]:
        with self._lock:
            counts: Dict[str, int] = {}
            for escrow in self._escrows.values():
                counts[escrow.status.value] = counts.get(escrow.status.value, 0) + 1
            return counts

    # ==================== Messages & timeline ====================

    async def add_message(
        self,
        message: Message,
        allowed_states: Iterable[EscrowState]
    ) -> Optional[Message]:
        with self._lock:
            escrow = self._escrows.get(message.escrow_id)
            if escrow is None or escrow.status not in set(allowed_states):
                return None
            stored = replace(message, id=next(self._ids))
            self._messages.append(stored)
            return replace(stored)

    async def list_messages(self, escrow_id: str, limit: int = 200) -> List[Message]:
        with self._lock:
            rows = [m for m in self._messages if m.escrow_id == escrow_id]
            rows.sort(key=lambda m: (m.created_at, m.id))
            return [replace(m) for m in rows[:limit]]

    async def add_timeline_event(self, event: TimelineEvent) -> TimelineEvent:
        with self._lock:
            stored = replace(event, id=next(self._ids))
            self._timeline.append(stored)
            return replace(stored)

    async def get_timeline(self, escrow_id: str) -> List[TimelineEvent]:
        with self._lock:
            rows = [t for t in self._timeline if t.escrow_id == escrow_id]
            rows.sort(key=lambda t: (t.created_at, t.id))
            return [replace(t) for t in rows]
