"""
Escrow Service Module

Transition executor for the marketplace escrow engine. It loads an escrow,
resolves the caller's role, applies lazy expiry, asks the state machine for
a decision and commits it through the store's conditional writes while
coordinating the value-transfer and notification collaborators.

Fund-moving transitions (refunds and the release to the seller) follow a
claim protocol:

1. claim: conditionally mark the escrow with ``pending_action`` so no other
   transition can commit while the transfer is in flight;
2. transfer: call the transfer collaborator with a per-escrow idempotency
   key (``<escrow id>:refund`` / ``<escrow id>:release``);
3. commit: conditionally write the new status, which also clears the claim.

A definitive transfer failure releases the claim and leaves the escrow in
its previous state. A timeout keeps the claim: the outcome is unknown, so
only a retry of the same action (or the reconciliation job) may finish it.

Dependencies:
    - escrow_state_machine.py: Transition rules
    - escrow_database.py / memory_store.py: Persistence
    - transfer_service.py: Value transfers
    - notifications.py: Telegram notifications
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any, Callable, Set

from config import get_config, Config
from escrow_errors import (
    EscrowNotFound,
    InvalidState,
    TransferError,
    TransferFailed,
    TransferTimeout,
    Unauthenticated,
    Unauthorized,
    ValidationFailed,
)
from escrow_models import (
    MESSAGING_STATES,
    Escrow,
    EscrowState,
    Message,
    Role,
    TimelineEvent,
    utcnow,
)
from escrow_state_machine import (
    Action,
    Decision,
    Dispute,
    Expire,
    OpenDeposit,
    Payload,
    SideEffect,
    TransitionPayload,
    action_verb,
    build_escrow,
    decide,
    refusal_message,
    resume_pending,
    validate_open_deposit,
)
from transfer_service import TransferReceipt
from utils import format_amount, mask_sensitive_data, sanitize_input

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 2000


@dataclass
class TransitionResult:
    """New escrow state and the transfer receipt of the transition, if any."""
    escrow: Escrow
    receipt: Optional[TransferReceipt] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"escrow": self.escrow.to_dict(), "receipt": None}
        if self.receipt:
            data["receipt"] = {
                "receipt": self.receipt.receipt,
                "status": self.receipt.status.value,
                "amount": self.receipt.amount,
            }
        return data


class EscrowService:
    """
    Core escrow transition executor.

    Attributes:
        db: Escrow store (EscrowDatabase or InMemoryEscrowDatabase)
        transfers: Value-transfer client
        notifier: Escrow event notifier (optional)
        config: Configuration instance
    """

    def __init__(
        self,
        database: Any,
        transfer_client: Any,
        notifier: Optional[Any] = None,
        config: Optional[Config] = None,
        clock: Optional[Callable[[], datetime]] = None,
        address_resolver: Optional[Callable[[str], str]] = None
    ):
        """
        Initialize the escrow service.

        Args:
            database: Escrow store
            transfer_client: Client exposing ``transfer(...)``
            notifier: Object exposing ``notify_escrow_event(escrow, event_type)``
            config: Configuration instance (optional, will load if not provided)
            clock: Returns the current UTC time (defaults to the wall clock)
            address_resolver: Maps a party identity to its payout address
        """
        self.db = database
        self.transfers = transfer_client
        self.notifier = notifier
        self.config = config or get_config()
        self.clock = clock or utcnow
        self.address_resolver = address_resolver or (lambda identity: identity)
        self.deposit_window = timedelta(hours=self.config.deposit_window_hours)
        self._background: Set[asyncio.Task] = set()
        logger.info("EscrowService initialized successfully")

    # ==================== ENTRY POINTS ====================

    async def execute(
        self,
        caller_id: Optional[str],
        payload: Payload,
        escrow_id: Optional[str] = None
    ) -> TransitionResult:
        """
        Single validated entry point for every caller-initiated action.

        Args:
            caller_id: Verified caller identity
            payload: Typed action payload
            escrow_id: Target escrow (not used for OpenDeposit)

        Returns:
            TransitionResult with the new escrow state

        Raises:
            Unauthenticated: If there is no verified caller
            EscrowError: Any refusal from validation or the state machine
        """
        if not caller_id:
            raise Unauthenticated("missing caller identity")

        if isinstance(payload, OpenDeposit):
            return await self.open_deposit(caller_id, payload)

        if not escrow_id:
            raise ValidationFailed(f"escrow id is required for {payload.__class__.__name__}")

        if isinstance(payload, Expire):
            raise Unauthorized("expire is performed automatically")

        return await self.apply_transition(escrow_id, caller_id, payload)

    async def open_deposit(self, buyer_id: str, payload: OpenDeposit) -> TransitionResult:
        """
        Open an escrow for a deposit the buyer already paid into the holding account.

        Args:
            buyer_id: Verified buyer identity
            payload: Deposit details including the deposit receipt

        Returns:
            TransitionResult with the escrow in the deposited state

        Raises:
            EscrowNotFound: If the listing does not exist
            ValidationFailed: Self-deal, amount mismatch, missing or reused receipt
            InvalidState: If the listing is not active or already has an escrow in flight
        """
        listing = await self.db.get_listing(payload.listing_id)
        if listing is None:
            raise EscrowNotFound(f"listing {payload.listing_id} not found")

        validate_open_deposit(listing, buyer_id, payload)

        if await self.db.get_escrow_by_deposit_receipt(payload.deposit_receipt):
            raise ValidationFailed("cannot open deposit: deposit receipt was already used")

        now = self.clock()
        escrow = build_escrow(listing, buyer_id, payload, now, self.deposit_window)
        stored = await self.db.insert_escrow(escrow)

        logger.info(
            f"Escrow {stored.id} opened on listing {listing.id}: "
            f"deposit {self._amount(stored.deposit_amount)} of {self._amount(stored.total_price)}, "
            f"receipt {mask_sensitive_data(stored.deposit_receipt)}"
        )
        await self._record(
            stored, "escrow_opened", Role.BUYER,
            f"Deposit of {self._amount(stored.deposit_amount)} held"
        )
        self._notify(stored, "escrow_opened")
        return TransitionResult(stored)

    async def apply_transition(
        self,
        escrow_id: str,
        caller_id: str,
        payload: TransitionPayload
    ) -> TransitionResult:
        """
        Apply a caller's action to an existing escrow.

        Expiry is evaluated first, so a seller acting on an overdue deposit
        triggers the refund and then gets ``InvalidState``.

        Raises:
            EscrowNotFound: Unknown escrow
            Unauthorized: Caller is not a party or has the wrong role
            InvalidState: Illegal from the current status, or lost a race
            ValidationFailed: Incomplete payload
            TransferFailed: Transfer refused; escrow left in its previous state
            TransferTimeout: Transfer outcome unknown; retry the same action
        """
        escrow = await self._load(escrow_id)
        role = escrow.role_of(caller_id)
        if role is None:
            raise Unauthorized("you are not involved in this escrow")

        escrow = await self._expire_if_due(escrow)
        decision = decide(escrow, role, payload, self.clock())
        return await self._run(escrow, decision)

    # ==================== READS ====================

    async def get_escrow(self, escrow_id: str, caller_id: str) -> Escrow:
        """
        Read an escrow as one of its parties, expiring it first if overdue.

        Raises:
            EscrowNotFound: Unknown escrow
            Unauthorized: Caller is not a party
        """
        escrow = await self._load(escrow_id)
        if escrow.role_of(caller_id) is None:
            raise Unauthorized("you are not involved in this escrow")
        return await self._expire_if_due(escrow)

    async def get_escrow_for_listing(self, listing_id: str, caller_id: str) -> Dict[str, Any]:
        """
        Latest escrow for a listing.

        Parties get the full escrow; anyone else only sees its id and status.
        """
        escrow = await self.db.get_latest_escrow_for_listing(listing_id)
        if escrow is None:
            raise EscrowNotFound(f"no escrow for listing {listing_id}")

        escrow = await self._expire_if_due(escrow)
        if escrow.role_of(caller_id) is None:
            return escrow.public_view()
        return escrow.to_dict()

    async def list_escrows(
        self,
        caller_id: str,
        status: Optional[EscrowState] = None,
        limit: int = 50
    ) -> List[Escrow]:
        """
        List the caller's escrows (as buyer or seller), newest first.

        The status filter applies after lazy expiry, so overdue deposits are
        listed as expired rather than deposited.
        """
        if status is None:
            escrows = await self.db.list_escrows_for_user(caller_id, limit=limit)
            return [await self._expire_if_due(e) for e in escrows]

        sources = [status]
        if status == EscrowState.EXPIRED:
            sources.append(EscrowState.DEPOSITED)

        candidates: List[Escrow] = []
        for source in sources:
            candidates.extend(
                await self.db.list_escrows_for_user(caller_id, status=source, limit=limit)
            )
        candidates.sort(key=lambda e: e.created_at, reverse=True)

        escrows = [await self._expire_if_due(e) for e in candidates]
        return [e for e in escrows if e.status == status][:limit]

    async def get_timeline(self, escrow_id: str, caller_id: str) -> List[TimelineEvent]:
        escrow = await self._load(escrow_id)
        if escrow.role_of(caller_id) is None:
            raise Unauthorized("you are not involved in this escrow")
        await self._expire_if_due(escrow)
        return await self.db.get_timeline(escrow_id)

    async def get_stats(self) -> Dict[str, int]:
        return await self.db.count_by_status()

    # ==================== MESSAGES ====================

    async def post_message(self, escrow_id: str, sender_id: str, body: str) -> Message:
        """
        Post a chat message between buyer and seller.

        Only allowed while the escrow is accepted or buyer_confirmed; the
        status check is repeated by the store's conditional insert.

        Raises:
            Unauthorized: Sender is not a party
            ValidationFailed: Empty message
            InvalidState: Escrow status does not allow chat
        """
        escrow = await self._load(escrow_id)
        if escrow.role_of(sender_id) is None:
            raise Unauthorized("you are not involved in this escrow")

        text = sanitize_input(body, max_length=MAX_MESSAGE_LENGTH, strip_markup=False)
        if not text:
            raise ValidationFailed("message must not be empty")

        stored = None
        if escrow.status in MESSAGING_STATES:
            stored = await self.db.add_message(
                Message(escrow_id=escrow_id, sender_id=sender_id, body=text,
                        created_at=self.clock()),
                MESSAGING_STATES
            )

        if stored is None:
            current = await self._load(escrow_id)
            raise InvalidState(
                f"cannot send message: escrow is {current.status.value}",
                current_state=current.status.value,
                attempted_action="post_message"
            )

        logger.debug(f"Message {stored.id} posted on escrow {escrow_id}")
        return stored

    async def list_messages(self, escrow_id: str, caller_id: str) -> List[Message]:
        escrow = await self._load(escrow_id)
        if escrow.role_of(caller_id) is None:
            raise Unauthorized("you are not involved in this escrow")
        await self._expire_if_due(escrow)
        return await self.db.list_messages(escrow_id)

    # ==================== SYSTEM ACTIONS ====================

    async def flag_failed_deposit(self, deposit_receipt: str, reason: str) -> TransitionResult:
        """
        Dispute the escrow whose deposit transfer the provider reports as failed.

        Already-closed escrows are returned unchanged.

        Raises:
            EscrowNotFound: No escrow uses this deposit receipt
        """
        escrow = await self.db.get_escrow_by_deposit_receipt(deposit_receipt)
        if escrow is None:
            raise EscrowNotFound("no escrow for this deposit receipt")

        if escrow.is_terminal:
            logger.info(f"Deposit failure for closed escrow {escrow.id} ({escrow.status.value}) ignored")
            return TransitionResult(escrow)

        logger.warning(f"Deposit transfer failed for escrow {escrow.id}: {reason}")
        decision = decide(
            escrow, Role.SYSTEM,
            Dispute(reason=reason or "deposit transfer failed"), self.clock()
        )
        return await self._run(escrow, decision)

    async def record_deposit_confirmed(self, deposit_receipt: str) -> Escrow:
        """
        Add a deposit_confirmed timeline event when the provider settles a deposit.

        Repeated confirmations for the same receipt are recorded once.

        Raises:
            EscrowNotFound: No escrow uses this deposit receipt
        """
        escrow = await self.db.get_escrow_by_deposit_receipt(deposit_receipt)
        if escrow is None:
            raise EscrowNotFound("no escrow for this deposit receipt")

        events = await self.db.get_timeline(escrow.id)
        if any(e.event_type == "deposit_confirmed" for e in events):
            return escrow

        logger.info(f"Deposit {mask_sensitive_data(deposit_receipt)} confirmed for escrow {escrow.id}")
        await self._record(
            escrow, "deposit_confirmed", Role.SYSTEM,
            f"Deposit {mask_sensitive_data(deposit_receipt)} confirmed by the transfer provider"
        )
        return escrow

    async def sweep_overdue_deposits(self, limit: int = 100) -> Dict[str, int]:
        """
        Expire every deposit whose seller acceptance window has elapsed.

        Returns:
            Counts of expired, failed and skipped escrows
        """
        stats = {'expired': 0, 'failed': 0, 'skipped': 0}
        overdue = await self.db.get_overdue_deposits(self.clock(), limit=limit)

        for escrow in overdue:
            try:
                decision = decide(escrow, Role.SYSTEM, Expire(), self.clock())
                await self._run(escrow, decision)
                stats['expired'] += 1
            except TransferError as e:
                logger.error(f"Failed to refund expired escrow {escrow.id}: {e}")
                stats['failed'] += 1
            except InvalidState as e:
                logger.info(f"Skipping expiry of {escrow.id}: {e}")
                stats['skipped'] += 1

        if overdue:
            logger.info(f"Expiry sweep finished: {stats}")
        return stats

    async def reconcile_transfers(self, limit: int = 100) -> Dict[str, int]:
        """
        Retry fund-moving transitions that did not complete.

        Picks up claims whose transfer outcome was unknown for longer than
        STALE_CLAIM_MINUTES and seller confirmations whose release failed, and
        retries them with the original idempotency keys.

        Returns:
            Counts of completed, failed and skipped escrows
        """
        stats = {'completed': 0, 'failed': 0, 'skipped': 0}
        older_than = self.clock() - timedelta(minutes=self.config.stale_claim_minutes)
        stalled = await self.db.get_stalled_escrows(older_than, limit=limit)

        for escrow in stalled:
            action = escrow.pending_action or Action.SELLER_CONFIRM.value
            try:
                decision = resume_pending(escrow, self.clock(), Action(action))
                await self._run(escrow, decision)
                stats['completed'] += 1
            except TransferError as e:
                logger.error(f"Reconciliation of {escrow.id} ({action}) failed: {e}")
                stats['failed'] += 1
                self._notify(escrow, "transfer_stuck")
            except InvalidState as e:
                logger.info(f"Skipping reconciliation of {escrow.id}: {e}")
                stats['skipped'] += 1

        if stalled:
            logger.info(f"Transfer reconciliation finished: {stats}")
        return stats

    async def wait_for_notifications(self) -> None:
        """Wait for scheduled notifications to finish (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ==================== EXECUTION ====================

    async def _load(self, escrow_id: str) -> Escrow:
        escrow = await self.db.get_escrow(escrow_id)
        if escrow is None:
            raise EscrowNotFound(f"escrow {escrow_id} not found")
        return escrow

    async def _expire_if_due(self, escrow: Escrow) -> Escrow:
        """
        Run the expire transition if the deposit window has elapsed.

        A refund problem is logged and the unexpired escrow returned; the
        state machine still refuses seller actions on it.
        """
        now = self.clock()
        if not escrow.is_expired(now):
            return escrow
        if escrow.pending_action not in (None, Action.EXPIRE.value):
            return escrow

        try:
            result = await self._run(escrow, decide(escrow, Role.SYSTEM, Expire(), now))
            return result.escrow
        except (TransferError, InvalidState) as e:
            logger.error(f"Lazy expiry of escrow {escrow.id} did not complete: {e}")
            return await self._load(escrow.id)

    async def _run(self, escrow: Escrow, decision: Decision) -> TransitionResult:
        """Commit a decided transition, moving funds first if it requires it."""
        action = decision.action.value

        if escrow.pending_action is not None and escrow.pending_action != action:
            raise InvalidState(
                f"cannot {action_verb(decision.action)}: "
                f"the {action_verb(Action(escrow.pending_action))} transfer is still in progress",
                current_state=escrow.status.value,
                attempted_action=action
            )

        if not decision.requires_transfer:
            updated = await self.db.compare_and_set(
                escrow.id, escrow.status, decision.changes,
                listing_status=decision.rule.listing_status
            )
            if updated is None:
                raise await self._lost_race(escrow.id, decision)
            await self._after_commit(escrow, updated, decision)
            return TransitionResult(updated)

        claimed = await self.db.claim(
            escrow.id, escrow.status, action, self.clock(), decision.claim_changes
        )
        if claimed is None:
            raise await self._lost_race(escrow.id, decision)

        receipt = await self._transfer(claimed, decision)

        changes = dict(decision.changes)
        if receipt is not None:
            field_name = (
                "release_receipt"
                if decision.rule.side_effect == SideEffect.RELEASE_TO_SELLER
                else "refund_receipt"
            )
            changes[field_name] = receipt.receipt

        updated = await self.db.compare_and_set(
            escrow.id, escrow.status, changes,
            expected_pending=action,
            listing_status=decision.rule.listing_status
        )
        if updated is None:
            current = await self._load(escrow.id)
            if current.status == decision.to_state:
                # A concurrent retry of the same action committed first
                return TransitionResult(current, receipt)
            logger.critical(
                f"Escrow {escrow.id} changed while {action} transfer was in flight "
                f"(now {current.status.value})"
            )
            raise InvalidState(
                f"cannot {action_verb(decision.action)}: escrow changed during transfer",
                current_state=current.status.value,
                attempted_action=action
            )

        await self._after_commit(escrow, updated, decision)
        return TransitionResult(updated, receipt)

    async def _transfer(self, claimed: Escrow, decision: Decision) -> Optional[TransferReceipt]:
        """
        Perform the transfer for a claimed transition.

        Returns:
            The receipt, or None when a failed release is committed anyway
            (RELEASE_ON_TRANSFER_FAILURE)
        """
        action = decision.action.value
        party = claimed.buyer_id if decision.recipient == Role.BUYER else claimed.seller_id
        to_address = self.address_resolver(party)

        try:
            return await self.transfers.transfer(
                self.config.holding_account,
                to_address,
                decision.transfer_amount,
                decision.idempotency_key
            )
        except TransferTimeout as e:
            logger.error(
                f"Transfer for {action} on escrow {claimed.id} timed out; "
                f"claim kept for retry: {e}"
            )
            await self._record(claimed, "transfer_timeout", Role.SYSTEM, str(e))
            raise
        except TransferFailed as e:
            if (decision.rule.side_effect == SideEffect.RELEASE_TO_SELLER
                    and self.config.release_on_transfer_failure):
                logger.warning(
                    f"Release transfer for escrow {claimed.id} failed ({e}); "
                    f"marking released because RELEASE_ON_TRANSFER_FAILURE is set"
                )
                await self._record(claimed, "transfer_failed", Role.SYSTEM, str(e))
                self._notify(claimed, "transfer_failed")
                return None

            await self.db.release_claim(claimed.id, action)
            logger.error(f"Transfer for {action} on escrow {claimed.id} failed: {e}")
            await self._record(claimed, "transfer_failed", Role.SYSTEM, str(e))
            self._notify(claimed, "transfer_failed")
            raise

    async def _lost_race(self, escrow_id: str, decision: Decision) -> InvalidState:
        """Build the error for a conditional write that matched no row."""
        current = await self._load(escrow_id)
        verb = action_verb(decision.action)
        if current.status not in decision.rule.from_states:
            message = refusal_message(decision.action, current.status, decision.rule)
        elif current.pending_action:
            message = (
                f"cannot {verb}: the {action_verb(Action(current.pending_action))} "
                f"transfer is still in progress"
            )
        else:
            message = f"cannot {verb}: escrow was modified concurrently, please retry"
        logger.warning(f"Escrow {escrow_id}: {decision.action.value} lost a race ({message})")
        return InvalidState(
            message,
            current_state=current.status.value,
            attempted_action=decision.action.value
        )

    async def _after_commit(self, before: Escrow, updated: Escrow, decision: Decision) -> None:
        logger.info(
            f"Escrow {updated.id}: {decision.action.value} by {decision.role.value} "
            f"({before.status.value} -> {updated.status.value})"
        )
        description = f"{before.status.value} -> {updated.status.value}"
        if decision.note:
            description = f"{description}: {decision.note}"
        await self._record(updated, decision.rule.event, decision.role, description)
        self._notify(updated, decision.rule.event)

    async def _record(self, escrow: Escrow, event_type: str, actor: Role, description: str) -> None:
        """Append a timeline event; failures are logged only."""
        try:
            await self.db.add_timeline_event(TimelineEvent(
                escrow_id=escrow.id,
                event_type=event_type,
                actor=actor.value,
                description=description,
                created_at=self.clock()
            ))
        except Exception as e:
            logger.error(f"Failed to record {event_type} for escrow {escrow.id}: {e}")

    def _notify(self, escrow: Escrow, event_type: str) -> None:
        """Schedule a notification without waiting for it."""
        if not self.notifier or not self.config.enable_notifications:
            return
        task = asyncio.create_task(self.notifier.notify_escrow_event(escrow, event_type))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _amount(self, value: int) -> str:
        return format_amount(value, self.config.currency, self.config.currency_decimals)
