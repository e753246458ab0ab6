"""
Escrow State Machine.

Pure decision logic for the escrow lifecycle. Given an escrow, the role of
the acting party and a typed action payload, ``decide`` either returns a
``Decision`` describing the next state, the field changes to commit and the
value transfer (if any) that must succeed first, or raises one of the
errors from ``escrow_errors``.

Nothing in this module performs I/O; the transition executor in
``escrow_service`` loads, claims, transfers and commits.

Transitions:
    (none)          --open_deposit (buyer)-->     deposited
    deposited       --accept (seller)-->          accepted
    deposited       --reject (seller)-->          rejected         refund deposit
    deposited       --expire (system)-->          expired          refund deposit
    deposited       --cancel (buyer)-->           cancelled        refund deposit
    accepted        --cancel (buyer)-->           cancelled        refund deposit
    accepted        --buyer_confirm (buyer)-->    buyer_confirmed
    buyer_confirmed --seller_confirm (seller)-->  released         release total price
    any active      --dispute (either party)-->   disputed
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import ClassVar, Dict, Any, FrozenSet, Optional, Tuple, Union

from escrow_errors import InvalidState, Unauthorized, ValidationFailed
from escrow_models import (
    ACTIVE_STATES,
    Escrow,
    EscrowState,
    Listing,
    ListingStatus,
    Role,
)


class Action(str, Enum):
    """Enumeration of escrow actions."""
    OPEN_DEPOSIT = "open_deposit"
    ACCEPT = "accept"
    REJECT = "reject"
    CANCEL = "cancel"
    EXPIRE = "expire"
    BUYER_CONFIRM = "buyer_confirm"
    SELLER_CONFIRM = "seller_confirm"
    DISPUTE = "dispute"


class SideEffect(str, Enum):
    """Value transfer a transition requires before it may commit."""
    NONE = "none"
    REFUND_DEPOSIT = "refund_deposit"
    RELEASE_TO_SELLER = "release_to_seller"


# ==================== Payloads ====================

@dataclass(frozen=True)
class OpenDeposit:
    action: ClassVar[Action] = Action.OPEN_DEPOSIT
    listing_id: str
    deposit_amount: int
    total_price: int
    deposit_receipt: str


@dataclass(frozen=True)
class Accept:
    action: ClassVar[Action] = Action.ACCEPT


@dataclass(frozen=True)
class Reject:
    action: ClassVar[Action] = Action.REJECT
    reason: str = ""


@dataclass(frozen=True)
class Cancel:
    action: ClassVar[Action] = Action.CANCEL


@dataclass(frozen=True)
class Expire:
    action: ClassVar[Action] = Action.EXPIRE


@dataclass(frozen=True)
class BuyerConfirm:
    action: ClassVar[Action] = Action.BUYER_CONFIRM
    receipt: Optional[str] = None


@dataclass(frozen=True)
class SellerConfirm:
    action: ClassVar[Action] = Action.SELLER_CONFIRM


@dataclass(frozen=True)
class Dispute:
    action: ClassVar[Action] = Action.DISPUTE
    reason: str = ""


@dataclass(frozen=True)
class Confirm:
    """Role-neutral confirmation; resolved to BuyerConfirm or SellerConfirm."""
    action: ClassVar[Optional[Action]] = None
    receipt: Optional[str] = None


TransitionPayload = Union[
    Accept, Reject, Cancel, Expire, BuyerConfirm, SellerConfirm, Dispute, Confirm
]
Payload = Union[OpenDeposit, TransitionPayload]


# ==================== Transition table ====================

@dataclass(frozen=True)
class TransitionRule:
    """One row of the escrow transition table."""
    action: Action
    from_states: Tuple[EscrowState, ...]
    roles: FrozenSet[Role]
    to_state: EscrowState
    side_effect: SideEffect = SideEffect.NONE
    listing_status: Optional[ListingStatus] = None
    event: str = ""


TRANSITIONS: Dict[Action, TransitionRule] = {
    Action.ACCEPT: TransitionRule(
        Action.ACCEPT,
        (EscrowState.DEPOSITED,),
        frozenset({Role.SELLER}),
        EscrowState.ACCEPTED,
        event="escrow_accepted",
    ),
    Action.REJECT: TransitionRule(
        Action.REJECT,
        (EscrowState.DEPOSITED,),
        frozenset({Role.SELLER}),
        EscrowState.REJECTED,
        SideEffect.REFUND_DEPOSIT,
        ListingStatus.ACTIVE,
        event="escrow_rejected",
    ),
    Action.CANCEL: TransitionRule(
        Action.CANCEL,
        (EscrowState.DEPOSITED, EscrowState.ACCEPTED),
        frozenset({Role.BUYER}),
        EscrowState.CANCELLED,
        SideEffect.REFUND_DEPOSIT,
        ListingStatus.ACTIVE,
        event="escrow_cancelled",
    ),
    Action.EXPIRE: TransitionRule(
        Action.EXPIRE,
        (EscrowState.DEPOSITED,),
        frozenset({Role.SYSTEM}),
        EscrowState.EXPIRED,
        SideEffect.REFUND_DEPOSIT,
        ListingStatus.ACTIVE,
        event="escrow_expired",
    ),
    Action.BUYER_CONFIRM: TransitionRule(
        Action.BUYER_CONFIRM,
        (EscrowState.ACCEPTED,),
        frozenset({Role.BUYER}),
        EscrowState.BUYER_CONFIRMED,
        event="buyer_confirmed",
    ),
    Action.SELLER_CONFIRM: TransitionRule(
        Action.SELLER_CONFIRM,
        (EscrowState.BUYER_CONFIRMED,),
        frozenset({Role.SELLER}),
        EscrowState.RELEASED,
        SideEffect.RELEASE_TO_SELLER,
        ListingStatus.SOLD,
        event="escrow_released",
    ),
    Action.DISPUTE: TransitionRule(
        Action.DISPUTE,
        (EscrowState.DEPOSITED, EscrowState.ACCEPTED, EscrowState.BUYER_CONFIRMED),
        frozenset({Role.BUYER, Role.SELLER, Role.SYSTEM}),
        EscrowState.DISPUTED,
        listing_status=ListingStatus.CANCELLED,
        event="escrow_disputed",
    ),
}

# Progress order of the in-flight states, used to word refusals
_LIFECYCLE = (EscrowState.DEPOSITED, EscrowState.ACCEPTED, EscrowState.BUYER_CONFIRMED)


@dataclass
class Decision:
    """
    Outcome of a legal transition.

    Attributes:
        rule: The transition table row that applies
        role: Role of the acting party
        changes: Escrow fields to write when the transition commits
        claim_changes: Escrow fields to write when the transfer claim is taken
        transfer_amount: Amount to move before committing (0 for none)
        recipient: Party receiving the transfer
        idempotency_key: Key passed to the transfer collaborator
        note: Free text recorded on the timeline (reject/dispute reason)
    """
    rule: TransitionRule
    role: Role
    changes: Dict[str, Any]
    claim_changes: Dict[str, Any] = field(default_factory=dict)
    transfer_amount: int = 0
    recipient: Optional[Role] = None
    idempotency_key: Optional[str] = None
    note: str = ""

    @property
    def action(self) -> Action:
        return self.rule.action

    @property
    def to_state(self) -> EscrowState:
        return self.rule.to_state

    @property
    def requires_transfer(self) -> bool:
        return self.rule.side_effect != SideEffect.NONE


def action_verb(action: Action) -> str:
    return action.value.replace("_", " ")


def resolve_payload(payload: Payload, role: Role) -> Payload:
    """
    Turn a role-neutral ``Confirm`` into the concrete confirmation for ``role``.

    Other payloads are returned unchanged.
    """
    if not isinstance(payload, Confirm):
        return payload
    if role == Role.BUYER:
        return BuyerConfirm(receipt=payload.receipt)
    if role == Role.SELLER:
        return SellerConfirm()
    raise Unauthorized("only the buyer or the seller may confirm this escrow")


def refusal_message(action: Action, status: EscrowState, rule: TransitionRule) -> str:
    """Explain why ``action`` cannot run from ``status``."""
    verb = action_verb(action)
    if status not in ACTIVE_STATES:
        return f"cannot {verb}: escrow is {status.value}"

    allowed = [s for s in rule.from_states if s in _LIFECYCLE]
    if allowed and _LIFECYCLE.index(status) > max(_LIFECYCLE.index(s) for s in allowed):
        return f"cannot {verb}: escrow already {status.value}"

    expected = " or ".join(s.value for s in rule.from_states)
    return f"cannot {verb}: escrow is still {status.value} (requires {expected})"


def decide(
    escrow: Escrow,
    role: Role,
    payload: TransitionPayload,
    now: datetime
) -> Decision:
    """
    Decide whether ``role`` may apply ``payload`` to ``escrow`` at ``now``.

    Args:
        escrow: Current escrow snapshot
        role: Role of the acting party
        payload: Typed transition payload
        now: Current time (UTC)

    Returns:
        Decision describing the transition

    Raises:
        Unauthorized: If ``role`` may not perform the action
        InvalidState: If the action is illegal from the current status
        ValidationFailed: If the payload is incomplete
    """
    payload = resolve_payload(payload, role)
    if isinstance(payload, OpenDeposit):
        raise ValidationFailed("open_deposit creates an escrow; it is not a transition")

    rule = TRANSITIONS[payload.action]
    verb = action_verb(rule.action)

    if role not in rule.roles:
        parties = " or ".join(sorted(r.value for r in rule.roles if r != Role.SYSTEM))
        if not parties:
            raise Unauthorized(f"{verb} is performed automatically")
        raise Unauthorized(f"only the {parties} may {verb} this escrow")

    if escrow.status not in rule.from_states:
        raise InvalidState(
            refusal_message(rule.action, escrow.status, rule),
            current_state=escrow.status.value,
            attempted_action=rule.action.value
        )

    if rule.action in (Action.ACCEPT, Action.REJECT) and escrow.is_expired(now):
        raise InvalidState(
            f"cannot {verb}: deposit window closed at {escrow.expires_at.isoformat()}",
            current_state=escrow.status.value,
            attempted_action=rule.action.value
        )

    if rule.action == Action.EXPIRE and not escrow.is_expired(now):
        raise InvalidState(
            "cannot expire: deposit window is still open",
            current_state=escrow.status.value,
            attempted_action=rule.action.value
        )

    return _build_decision(escrow, rule, role, payload, now)


def resume_pending(escrow: Escrow, now: datetime, action: Optional[Action] = None) -> Decision:
    """
    Rebuild the decision for a fund-moving transition that was already granted.

    Used to retry a claimed transfer whose outcome is unknown, or a release
    whose transfer failed after the seller confirmed. The caller checks were
    passed when the claim was taken, so only the status is re-checked here.

    Args:
        escrow: Escrow holding the claim
        now: Current time (UTC)
        action: Action to resume (defaults to ``escrow.pending_action``)

    Raises:
        InvalidState: If the escrow is not in a state the action can finish from
    """
    action = Action(action or escrow.pending_action)
    rule = TRANSITIONS[action]
    if rule.side_effect == SideEffect.NONE or escrow.status not in rule.from_states:
        raise InvalidState(
            f"cannot resume {action_verb(action)}: escrow is {escrow.status.value}",
            current_state=escrow.status.value,
            attempted_action=action.value
        )
    role = next(r for r in (Role.BUYER, Role.SELLER, Role.SYSTEM) if r in rule.roles)
    payloads = {
        Action.REJECT: Reject(),
        Action.CANCEL: Cancel(),
        Action.EXPIRE: Expire(),
        Action.SELLER_CONFIRM: SellerConfirm(),
    }
    return _build_decision(escrow, rule, role, payloads[action], now)


def _build_decision(
    escrow: Escrow,
    rule: TransitionRule,
    role: Role,
    payload: TransitionPayload,
    now: datetime
) -> Decision:
    changes: Dict[str, Any] = {"status": rule.to_state}
    claim_changes: Dict[str, Any] = {}
    note = ""

    if rule.action == Action.ACCEPT:
        changes.update(accepted_at=now, expires_at=None)

    elif rule.side_effect == SideEffect.REFUND_DEPOSIT:
        changes.update(closed_at=now, expires_at=None)
        note = getattr(payload, "reason", "") or ""

    elif rule.action == Action.BUYER_CONFIRM:
        if escrow.remaining_amount > 0 and not payload.receipt:
            raise ValidationFailed(
                "cannot buyer confirm: a receipt for the remaining payment is required"
            )
        changes.update(
            buyer_confirmed=True,
            remaining_payment_receipt=payload.receipt,
            remaining_payment_confirmed_at=now,
        )

    elif rule.action == Action.SELLER_CONFIRM:
        claim_changes["seller_confirmed"] = True
        changes.update(seller_confirmed=True, confirmed_at=now, closed_at=now)

    elif rule.action == Action.DISPUTE:
        reason = (payload.reason or "").strip()
        if not reason:
            raise ValidationFailed("cannot dispute: a reason is required")
        changes.update(
            dispute_reason=reason,
            disputed_by=role.value,
            expires_at=None,
            closed_at=now,
        )
        note = reason

    decision = Decision(
        rule=rule, role=role, changes=changes, claim_changes=claim_changes, note=note
    )

    if rule.side_effect == SideEffect.REFUND_DEPOSIT:
        decision.transfer_amount = escrow.deposit_amount
        decision.recipient = Role.BUYER
        decision.idempotency_key = f"{escrow.id}:refund"
    elif rule.side_effect == SideEffect.RELEASE_TO_SELLER:
        decision.transfer_amount = escrow.total_price
        decision.recipient = Role.SELLER
        decision.idempotency_key = f"{escrow.id}:release"

    return decision


def validate_open_deposit(listing: Listing, buyer_id: str, payload: OpenDeposit) -> None:
    """
    Check that ``buyer_id`` may open a deposit against ``listing``.

    The "no in-flight escrow for this listing" rule is enforced by the
    store's conditional insert, not here.

    Raises:
        ValidationFailed: Self-deal, amount mismatch or missing receipt
        InvalidState: If the listing is not accepting deposits
    """
    if listing.seller_id == buyer_id:
        raise ValidationFailed("cannot open deposit: you cannot buy your own listing")

    if listing.status != ListingStatus.ACTIVE:
        raise InvalidState(
            f"cannot open deposit: listing is {listing.status.value}",
            current_state=listing.status.value,
            attempted_action=Action.OPEN_DEPOSIT.value
        )

    if payload.total_price != listing.price:
        raise ValidationFailed(
            f"cannot open deposit: total price {payload.total_price} "
            f"does not match listing price {listing.price}"
        )

    if payload.deposit_amount < listing.min_deposit:
        raise ValidationFailed(
            f"cannot open deposit: deposit {payload.deposit_amount} "
            f"is below the minimum of {listing.min_deposit}"
        )

    if payload.deposit_amount > payload.total_price:
        raise ValidationFailed(
            f"cannot open deposit: deposit {payload.deposit_amount} "
            f"exceeds the total price {payload.total_price}"
        )

    if not payload.deposit_receipt:
        raise ValidationFailed("cannot open deposit: a deposit receipt is required")


def build_escrow(
    listing: Listing,
    buyer_id: str,
    payload: OpenDeposit,
    now: datetime,
    deposit_window: timedelta,
    escrow_id: Optional[str] = None
) -> Escrow:
    """Create the escrow for a validated deposit in the ``deposited`` state."""
    return Escrow(
        id=escrow_id or uuid.uuid4().hex,
        listing_id=listing.id,
        buyer_id=buyer_id,
        seller_id=listing.seller_id,
        deposit_amount=payload.deposit_amount,
        total_price=payload.total_price,
        remaining_amount=payload.total_price - payload.deposit_amount,
        status=EscrowState.DEPOSITED,
        deposit_receipt=payload.deposit_receipt,
        expires_at=now + deposit_window,
        created_at=now,
    )
