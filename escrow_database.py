"""
PostgreSQL store for the marketplace escrow engine.

Every state change goes through a conditional write so that transitions on
the same escrow are linearizable even with several API processes:

- ``compare_and_set`` only updates a row whose ``status`` (and in-flight
  transfer claim) still match what the caller read;
- ``insert_escrow`` flips the listing ``active -> pending`` conditionally and
  relies on a partial unique index to allow one in-flight escrow per listing.
"""

import asyncpg
import logging
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Iterable, Tuple
import os

from escrow_errors import DatabaseError, InvalidState, ValidationFailed
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


# Escrow columns a transition may write
MUTABLE_COLUMNS = frozenset({
    "status",
    "buyer_confirmed",
    "seller_confirmed",
    "remaining_payment_receipt",
    "release_receipt",
    "refund_receipt",
    "dispute_reason",
    "disputed_by",
    "expires_at",
    "accepted_at",
    "remaining_payment_confirmed_at",
    "confirmed_at",
    "closed_at",
})

# Booleans that may only go from false to true
MONOTONIC_COLUMNS = frozenset({"buyer_confirmed", "seller_confirmed"})

# A deposit receipt backs exactly one escrow
DEPOSIT_RECEIPT_INDEX = "uq_escrows_deposit_receipt"

_ACTIVE_STATUS_VALUES = [s.value for s in ACTIVE_STATES]


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


class EscrowDatabase:
    """Database handler for the escrow engine with PostgreSQL"""

    def __init__(
        self,
        database_url: Optional[str] = None,
        min_size: int = 2,
        max_size: int = 10
    ):
        """
        Initialize database connection settings

        Args:
            database_url: PostgreSQL connection URL (defaults to env var)
            min_size: Minimum pool size
            max_size: Maximum pool size
        """
        self.database_url = database_url or os.getenv('DATABASE_URL')
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """Establish database connection pool"""
        try:
            self.pool = await asyncpg.create_pool(
                self.database_url,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=60
            )
            logger.info("Database connection pool established")
        except (OSError, asyncpg.PostgresError) as e:
            logger.error(f"Failed to connect to database: {e}")
            raise DatabaseError(f"Failed to connect to database: {e}") from e

    async def disconnect(self) -> None:
        """Close database connection pool"""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Database connection pool closed")

    def _require_pool(self) -> asyncpg.Pool:
        if not self.pool:
            raise DatabaseError("Database not connected. Call connect() first.")
        return self.pool

    async def initialize_tables(self) -> None:
        """Create all required database tables with indexes and constraints"""
        pool = self._require_pool()

        async with pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS listings (
                    id TEXT PRIMARY KEY,
                    seller_id TEXT NOT NULL,
                    title TEXT NOT NULL DEFAULT '',
                    price BIGINT NOT NULL CHECK (price > 0),
                    min_deposit BIGINT NOT NULL,
                    status VARCHAR(20) NOT NULL DEFAULT 'active'
                        CHECK (status IN ('active', 'pending', 'sold', 'cancelled')),
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    CONSTRAINT valid_min_deposit CHECK (min_deposit > 0 AND min_deposit <= price)
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS escrows (
                    id TEXT PRIMARY KEY,
                    listing_id TEXT NOT NULL REFERENCES listings(id) ON DELETE RESTRICT,
                    buyer_id TEXT NOT NULL,
                    seller_id TEXT NOT NULL,
                    deposit_amount BIGINT NOT NULL CHECK (deposit_amount > 0),
                    total_price BIGINT NOT NULL CHECK (total_price > 0),
                    remaining_amount BIGINT NOT NULL CHECK (remaining_amount >= 0),
                    status VARCHAR(20) NOT NULL DEFAULT 'deposited'
                        CHECK (status IN ('deposited', 'accepted', 'buyer_confirmed',
                                          'released', 'disputed', 'cancelled',
                                          'rejected', 'expired')),
                    buyer_confirmed BOOLEAN NOT NULL DEFAULT FALSE,
                    seller_confirmed BOOLEAN NOT NULL DEFAULT FALSE,
                    deposit_receipt TEXT NOT NULL,
                    remaining_payment_receipt TEXT,
                    release_receipt TEXT,
                    refund_receipt TEXT,
                    pending_action VARCHAR(30),
                    pending_since TIMESTAMPTZ,
                    dispute_reason TEXT,
                    disputed_by VARCHAR(10),
                    expires_at TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    accepted_at TIMESTAMPTZ,
                    remaining_payment_confirmed_at TIMESTAMPTZ,
                    confirmed_at TIMESTAMPTZ,
                    closed_at TIMESTAMPTZ,
                    CONSTRAINT consistent_remaining
                        CHECK (remaining_amount = total_price - deposit_amount),
                    CONSTRAINT no_self_deal CHECK (buyer_id <> seller_id)
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS escrow_messages (
                    id BIGSERIAL PRIMARY KEY,
                    escrow_id TEXT NOT NULL REFERENCES escrows(id) ON DELETE CASCADE,
                    sender_id TEXT NOT NULL,
                    body TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS escrow_timeline (
                    id BIGSERIAL PRIMARY KEY,
                    escrow_id TEXT NOT NULL REFERENCES escrows(id) ON DELETE CASCADE,
                    event_type VARCHAR(40) NOT NULL,
                    actor VARCHAR(20) NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """)

            # One in-flight escrow per listing
            await conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_escrows_one_active_per_listing
                    ON escrows(listing_id)
                    WHERE status IN ('deposited', 'accepted', 'buyer_confirmed');
                CREATE INDEX IF NOT EXISTS idx_escrows_buyer ON escrows(buyer_id);
                CREATE INDEX IF NOT EXISTS idx_escrows_seller ON escrows(seller_id);
                CREATE INDEX IF NOT EXISTS idx_escrows_status ON escrows(status);
                CREATE INDEX IF NOT EXISTS idx_escrows_expires_at ON escrows(expires_at)
                    WHERE status = 'deposited';
                DROP INDEX IF EXISTS idx_escrows_deposit_receipt;
                CREATE UNIQUE INDEX IF NOT EXISTS uq_escrows_deposit_receipt ON escrows(deposit_receipt);
                CREATE INDEX IF NOT EXISTS idx_messages_escrow ON escrow_messages(escrow_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_timeline_escrow ON escrow_timeline(escrow_id, created_at);
            """)

            logger.info("All database tables and indexes created successfully")

    # ==================== LISTINGS ====================

    async def create_listing(self, listing: Listing) -> Listing:
        """
        Insert a listing

        Args:
            listing: Listing to store

        Returns:
            The stored listing

        Raises:
            ValueError: If price/min_deposit violate the listing constraints
        """
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow("""
                    INSERT INTO listings (id, seller_id, title, price, min_deposit, status)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    RETURNING *
                """, listing.id, listing.seller_id, listing.title, listing.price,
                    listing.min_deposit, _db_value(listing.status))
                logger.info(f"Listing created: {listing.id}")
                return Listing.from_record(row)
        except asyncpg.CheckViolationError as e:
            logger.error(f"Invalid listing data: {e}")
            raise ValueError(f"Invalid listing data: {e}") from e

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM listings WHERE id = $1", listing_id)
            return Listing.from_record(row) if row else None

    async def set_listing_status(
        self,
        listing_id: str,
        status: ListingStatus,
        expected_status: Optional[ListingStatus] = None
    ) -> bool:
        """
        Update a listing's status, optionally only if it currently has ``expected_status``

        Returns:
            True if the row was updated
        """
        pool = self._require_pool()
        async with pool.acquire() as conn:
            if expected_status is None:
                result = await conn.execute("""
                    UPDATE listings SET status = $2, updated_at = NOW()
                    WHERE id = $1
                """, listing_id, _db_value(status))
            else:
                result = await conn.execute("""
                    UPDATE listings SET status = $2, updated_at = NOW()
                    WHERE id = $1 AND status = $3
                """, listing_id, _db_value(status), _db_value(expected_status))
            return result == "UPDATE 1"

    # ==================== ESCROWS ====================

    async def insert_escrow(self, escrow: Escrow) -> Escrow:
        """
        Create an escrow and flip its listing to pending in one transaction

        Args:
            escrow: New escrow in the deposited state

        Returns:
            The stored escrow

        Raises:
            InvalidState: If the listing is not active or already has an
                in-flight escrow
            ValidationFailed: If the deposit receipt backs another escrow
        """
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    result = await conn.execute("""
                        UPDATE listings SET status = 'pending', updated_at = NOW()
                        WHERE id = $1 AND status = 'active'
                    """, escrow.listing_id)
                    if result != "UPDATE 1":
                        current = await conn.fetchval(
                            "SELECT status FROM listings WHERE id = $1", escrow.listing_id
                        )
                        raise InvalidState(
                            f"cannot open deposit: listing is {current or 'missing'}",
                            current_state=current,
                            attempted_action="open_deposit"
                        )

                    row = await conn.fetchrow("""
                        INSERT INTO escrows
                        (id, listing_id, buyer_id, seller_id, deposit_amount, total_price,
                         remaining_amount, status, deposit_receipt, expires_at, created_at)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                        RETURNING *
                    """, escrow.id, escrow.listing_id, escrow.buyer_id, escrow.seller_id,
                        escrow.deposit_amount, escrow.total_price, escrow.remaining_amount,
                        _db_value(escrow.status), escrow.deposit_receipt, escrow.expires_at,
                        escrow.created_at)

            logger.info(f"Escrow created: {escrow.id} for listing {escrow.listing_id}")
            return Escrow.from_record(row)

        except asyncpg.UniqueViolationError as e:
            if e.constraint_name == DEPOSIT_RECEIPT_INDEX:
                logger.warning(f"Deposit receipt reuse rejected for listing {escrow.listing_id}")
                raise ValidationFailed("cannot open deposit: deposit receipt was already used") from e
            logger.warning(f"Listing {escrow.listing_id} already has an escrow in progress")
            raise InvalidState(
                "cannot open deposit: listing already has an escrow in progress",
                current_state=ListingStatus.PENDING.value,
                attempted_action="open_deposit"
            ) from e

    async def get_escrow(self, escrow_id: str) -> Optional[Escrow]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM escrows WHERE id = $1", escrow_id)
            return Escrow.from_record(row) if row else None

    async def get_latest_escrow_for_listing(self, listing_id: str) -> Optional[Escrow]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM escrows WHERE listing_id = $1
                ORDER BY created_at DESC LIMIT 1
            """, listing_id)
            return Escrow.from_record(row) if row else None

    async def get_escrow_by_deposit_receipt(self, receipt: str) -> Optional[Escrow]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM escrows WHERE deposit_receipt = $1
                ORDER BY created_at DESC LIMIT 1
            """, receipt)
            return Escrow.from_record(row) if row else None

    async def list_escrows_for_user(
        self,
        user_id: str,
        status: Optional[EscrowState] = None,
        limit: int = 50
    ) -> List[Escrow]:
        """
        Get escrows where the user is buyer or seller, newest first

        Args:
            user_id: Caller identity
            status: Optional status filter
            limit: Maximum rows returned
        """
        pool = self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM escrows
                WHERE (buyer_id = $1 OR seller_id = $1)
                  AND ($2::text IS NULL OR status = $2::text)
                ORDER BY created_at DESC
                LIMIT $3
            """, user_id, _db_value(status), limit)
            return [Escrow.from_record(r) for r in rows]

    @staticmethod
    def _set_clause(changes: Dict[str, Any], start: int) -> Tuple[List[str], List[Any]]:
        parts: List[str] = []
        args: List[Any] = []
        for index, (column, value) in enumerate(changes.items(), start=start):
            if column not in MUTABLE_COLUMNS:
                raise ValueError(f"column {column!r} cannot be updated")
            if column in MONOTONIC_COLUMNS:
                parts.append(f"{column} = {column} OR ${index}")
            else:
                parts.append(f"{column} = ${index}")
            args.append(_db_value(value))
        return parts, args

    async def claim(
        self,
        escrow_id: str,
        expected_status: EscrowState,
        action: str,
        now: datetime,
        changes: Optional[Dict[str, Any]] = None
    ) -> Optional[Escrow]:
        """
        Mark a fund-moving transition as in flight

        Succeeds only if the escrow is still in ``expected_status`` and no other
        action holds the claim. Re-claiming for the same action is allowed so
        that a timed-out transfer can be retried.

        Returns:
            The claimed escrow, or None if the condition no longer holds
        """
        pool = self._require_pool()
        parts, args = self._set_clause(changes or {}, start=5)
        extra = "".join(f", {p}" for p in parts)
        async with pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                UPDATE escrows
                SET pending_action = $3, pending_since = $4{extra}
                WHERE id = $1 AND status = $2
                  AND (pending_action IS NULL OR pending_action = $3)
                RETURNING *
            """, escrow_id, _db_value(expected_status), action, now, *args)
            return Escrow.from_record(row) if row else None

    async def release_claim(self, escrow_id: str, action: str) -> bool:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE escrows SET pending_action = NULL, pending_since = NULL
                WHERE id = $1 AND pending_action = $2
            """, escrow_id, action)
            return result == "UPDATE 1"

    async def compare_and_set(
        self,
        escrow_id: str,
        expected_status: EscrowState,
        changes: Dict[str, Any],
        expected_pending: Optional[str] = None,
        listing_status: Optional[ListingStatus] = None
    ) -> Optional[Escrow]:
        """
        Commit a transition if the escrow still matches what the caller read

        The escrow update and the optional listing status flip happen in one
        transaction. Any transfer claim is cleared by the commit.

        Args:
            escrow_id: Escrow identifier
            expected_status: Status the transition was decided from
            changes: Column values to write
            expected_pending: Claim the caller must hold (None for no claim)
            listing_status: New status for the escrow's listing

        Returns:
            The updated escrow, or None if another writer got there first
        """
        pool = self._require_pool()
        parts, args = self._set_clause(changes, start=4)
        assignments = ", ".join(parts + ["pending_action = NULL", "pending_since = NULL"])

        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(f"""
                    UPDATE escrows SET {assignments}
                    WHERE id = $1 AND status = $2
                      AND pending_action IS NOT DISTINCT FROM $3::varchar
                    RETURNING *
                """, escrow_id, _db_value(expected_status), expected_pending, *args)
                if row is None:
                    return None

                if listing_status is not None:
                    await conn.execute("""
                        UPDATE listings SET status = $2, updated_at = NOW()
                        WHERE id = $1
                    """, row['listing_id'], _db_value(listing_status))

                return Escrow.from_record(row)

    async def get_overdue_deposits(self, now: datetime, limit: int = 100) -> List[Escrow]:
        """
        Get deposits whose seller acceptance window has elapsed

        Returns:
            List of escrows still in the deposited state past ``expires_at``
        """
        pool = self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM escrows
                WHERE status = 'deposited' AND expires_at < $1
                ORDER BY expires_at ASC
                LIMIT $2
            """, now, limit)
            return [Escrow.from_record(r) for r in rows]

    async def get_stalled_escrows(self, older_than: datetime, limit: int = 100) -> List[Escrow]:
        """
        Get escrows needing transfer reconciliation

        Covers transfer claims older than ``older_than`` (outcome unknown) and
        seller confirmations whose release transfer failed.
        """
        pool = self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM escrows
                WHERE (pending_action IS NOT NULL AND pending_since < $1)
                   OR (status = 'buyer_confirmed' AND seller_confirmed
                       AND pending_action IS NULL)
                ORDER BY created_at ASC
                LIMIT $2
            """, older_than, limit)
            return [Escrow.from_record(r) for r in rows]

    async def count_by_status(self) -> Dict[str, int]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("SELECT status, COUNT(*) AS n FROM escrows GROUP BY status")
            return {r['status']: r['n'] for r in rows}

    # ==================== MESSAGES & TIMELINE ====================

    async def add_message(
        self,
        message: Message,
        allowed_states: Iterable[EscrowState]
    ) -> Optional[Message]:
        """
        Insert a chat message only while the escrow is in ``allowed_states``

        Returns:
            The stored message, or None if the escrow status does not allow chat
        """
        pool = self._require_pool()
        states = [_db_value(s) for s in allowed_states]
        async with pool.acquire() as conn:
            row = await conn.fetchrow("""
                INSERT INTO escrow_messages (escrow_id, sender_id, body, created_at)
                SELECT $1, $2, $3, $4
                WHERE EXISTS (
                    SELECT 1 FROM escrows WHERE id = $1 AND status = ANY($5::text[])
                )
                RETURNING *
            """, message.escrow_id, message.sender_id, message.body,
                message.created_at, states)
            return Message.from_record(row) if row else None

    async def list_messages(self, escrow_id: str, limit: int = 200) -> List[Message]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM escrow_messages
                WHERE escrow_id = $1
                ORDER BY created_at ASC, id ASC
                LIMIT $2
            """, escrow_id, limit)
            return [Message.from_record(r) for r in rows]

    async def add_timeline_event(self, event: TimelineEvent) -> TimelineEvent:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("""
                INSERT INTO escrow_timeline (escrow_id, event_type, actor, description, created_at)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
            """, event.escrow_id, event.event_type, event.actor, event.description,
                event.created_at)
            return TimelineEvent.from_record(row)

    async def get_timeline(self, escrow_id: str) -> List[TimelineEvent]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM escrow_timeline
                WHERE escrow_id = $1
                ORDER BY created_at ASC, id ASC
            """, escrow_id)
            return [TimelineEvent.from_record(r) for r in rows]


# Convenience function for easy initialization
async def create_escrow_db(database_url: Optional[str] = None) -> EscrowDatabase:
    """
    Create and initialize escrow database

    Args:
        database_url: PostgreSQL connection URL

    Returns:
        Connected EscrowDatabase instance
    """
    db = EscrowDatabase(database_url)
    await db.connect()
    await db.initialize_tables()
    return db
