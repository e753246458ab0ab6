"""
Domain types for the marketplace escrow engine.

Listings, escrows, escrow chat messages and timeline events are plain
dataclasses so they can be built from asyncpg records, from the in-memory
store, or by hand in tests. Amounts are integers in the smallest currency
unit and every timestamp is a timezone-aware UTC datetime.
"""

from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, Mapping


class EscrowState(str, Enum):
    """Enumeration of possible escrow states."""
    DEPOSITED = "deposited"                # Deposit held, waiting for seller
    ACCEPTED = "accepted"                  # Seller accepted, waiting for remaining payment
    BUYER_CONFIRMED = "buyer_confirmed"    # Remaining paid, waiting for seller handoff confirmation
    RELEASED = "released"                  # Total price released to seller
    DISPUTED = "disputed"                  # Frozen pending manual resolution
    CANCELLED = "cancelled"                # Buyer cancelled, deposit refunded
    REJECTED = "rejected"                  # Seller rejected, deposit refunded
    EXPIRED = "expired"                    # Seller never acted, deposit refunded


class ListingStatus(str, Enum):
    """Enumeration of listing statuses."""
    ACTIVE = "active"
    PENDING = "pending"
    SOLD = "sold"
    CANCELLED = "cancelled"


class Role(str, Enum):
    """Role of the party performing an escrow action."""
    BUYER = "buyer"
    SELLER = "seller"
    SYSTEM = "system"


ACTIVE_STATES = frozenset({
    EscrowState.DEPOSITED,
    EscrowState.ACCEPTED,
    EscrowState.BUYER_CONFIRMED,
})

TERMINAL_STATES = frozenset(EscrowState) - ACTIVE_STATES

# Statuses in which buyer and seller may chat
MESSAGING_STATES = frozenset({
    EscrowState.ACCEPTED,
    EscrowState.BUYER_CONFIRMED,
})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


class _Record:
    """Mixin with record conversion helpers shared by the domain dataclasses."""

    @classmethod
    def from_record(cls, record: Mapping[str, Any]):
        """
        Build an instance from a database row or any mapping.

        Unknown keys are ignored so rows from wider SELECTs can be passed in.
        """
        data = dict(record)
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-friendly dict (ISO timestamps, enum values)."""
        return {k: _isoformat(v) for k, v in asdict(self).items()}


@dataclass
class Listing(_Record):
    """An item for sale owned by a seller."""
    id: str
    seller_id: str
    price: int
    min_deposit: int
    status: ListingStatus = ListingStatus.ACTIVE
    title: str = ""
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = ListingStatus(self.status)


@dataclass
class Escrow(_Record):
    """
    The holding contract between one buyer and one seller for one listing.

    ``pending_action`` is set while a fund-moving transition (refund or
    release) has claimed the escrow and its transfer is outstanding.
    """
    id: str
    listing_id: str
    buyer_id: str
    seller_id: str
    deposit_amount: int
    total_price: int
    remaining_amount: int
    status: EscrowState = EscrowState.DEPOSITED
    buyer_confirmed: bool = False
    seller_confirmed: bool = False
    deposit_receipt: Optional[str] = None
    remaining_payment_receipt: Optional[str] = None
    release_receipt: Optional[str] = None
    refund_receipt: Optional[str] = None
    pending_action: Optional[str] = None
    pending_since: Optional[datetime] = None
    dispute_reason: Optional[str] = None
    disputed_by: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    accepted_at: Optional[datetime] = None
    remaining_payment_confirmed_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = EscrowState(self.status)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def role_of(self, identity: str) -> Optional[Role]:
        """Return the role of ``identity`` in this escrow, or None for outsiders."""
        if identity == self.buyer_id:
            return Role.BUYER
        if identity == self.seller_id:
            return Role.SELLER
        return None

    def is_expired(self, now: datetime) -> bool:
        """Check whether the seller's acceptance window has elapsed."""
        return (
            self.status == EscrowState.DEPOSITED
            and self.expires_at is not None
            and now > self.expires_at
        )

    def public_view(self) -> Dict[str, Any]:
        """Limited view shown to non-parties (listing page availability)."""
        return {
            "id": self.id,
            "listing_id": self.listing_id,
            "status": self.status.value,
        }


@dataclass
class Message(_Record):
    """A chat line between buyer and seller scoped to one escrow."""
    escrow_id: str
    sender_id: str
    body: str
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass
class TimelineEvent(_Record):
    """An audit entry recorded for every committed escrow transition."""
    escrow_id: str
    event_type: str
    actor: str
    description: str = ""
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None
