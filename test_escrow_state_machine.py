"""
Tests for the escrow transition table and decision logic.
"""

from datetime import timedelta

import pytest

from conftest import BUYER, MIN_DEPOSIT, PRICE, SELLER, START, deposit_payload, make_escrow
from escrow_errors import InvalidState, Unauthorized, ValidationFailed
from escrow_models import EscrowState, Listing, ListingStatus, Role
from escrow_state_machine import (
    TRANSITIONS,
    Accept,
    Action,
    BuyerConfirm,
    Cancel,
    Confirm,
    Dispute,
    Expire,
    Reject,
    SellerConfirm,
    SideEffect,
    build_escrow,
    decide,
    resolve_payload,
    resume_pending,
    validate_open_deposit,
)


def listing(**overrides):
    data = dict(id="listing-1", seller_id=SELLER, price=PRICE, min_deposit=MIN_DEPOSIT)
    data.update(overrides)
    return Listing(**data)


class TestTransitionTable:

    def test_refunds_and_release_move_funds(self):
        assert TRANSITIONS[Action.REJECT].side_effect == SideEffect.REFUND_DEPOSIT
        assert TRANSITIONS[Action.CANCEL].side_effect == SideEffect.REFUND_DEPOSIT
        assert TRANSITIONS[Action.EXPIRE].side_effect == SideEffect.REFUND_DEPOSIT
        assert TRANSITIONS[Action.SELLER_CONFIRM].side_effect == SideEffect.RELEASE_TO_SELLER
        assert TRANSITIONS[Action.ACCEPT].side_effect == SideEffect.NONE
        assert TRANSITIONS[Action.DISPUTE].side_effect == SideEffect.NONE

    def test_every_transition_leaves_an_active_state(self):
        for rule in TRANSITIONS.values():
            for state in rule.from_states:
                assert state in (
                    EscrowState.DEPOSITED, EscrowState.ACCEPTED, EscrowState.BUYER_CONFIRMED
                )


class TestDecide:

    def test_accept(self):
        decision = decide(make_escrow(), Role.SELLER, Accept(), START)

        assert decision.to_state == EscrowState.ACCEPTED
        assert decision.changes["accepted_at"] == START
        assert decision.changes["expires_at"] is None
        assert not decision.requires_transfer

    def test_reject_refunds_deposit_to_buyer(self):
        decision = decide(make_escrow(), Role.SELLER, Reject(reason="sold elsewhere"), START)

        assert decision.to_state == EscrowState.REJECTED
        assert decision.transfer_amount == MIN_DEPOSIT
        assert decision.recipient == Role.BUYER
        assert decision.idempotency_key == "esc-1:refund"
        assert decision.rule.listing_status == ListingStatus.ACTIVE
        assert decision.note == "sold elsewhere"

    def test_only_seller_may_accept(self):
        with pytest.raises(Unauthorized, match="only the seller may accept"):
            decide(make_escrow(), Role.BUYER, Accept(), START)

    def test_only_buyer_may_cancel(self):
        with pytest.raises(Unauthorized, match="only the buyer may cancel"):
            decide(make_escrow(), Role.SELLER, Cancel(), START)

    def test_expire_is_system_only(self):
        with pytest.raises(Unauthorized, match="performed automatically"):
            decide(make_escrow(), Role.BUYER, Expire(), START)

    def test_cancel_allowed_while_accepted(self):
        escrow = make_escrow(status=EscrowState.ACCEPTED)
        decision = decide(escrow, Role.BUYER, Cancel(), START)

        assert decision.to_state == EscrowState.CANCELLED
        assert decision.transfer_amount == MIN_DEPOSIT

    def test_cancel_refused_after_buyer_confirmed(self):
        escrow = make_escrow(status=EscrowState.BUYER_CONFIRMED, buyer_confirmed=True)

        with pytest.raises(InvalidState) as exc_info:
            decide(escrow, Role.BUYER, Cancel(), START)

        assert str(exc_info.value) == "cannot cancel: escrow already buyer_confirmed"
        assert exc_info.value.current_state == "buyer_confirmed"
        assert exc_info.value.attempted_action == "cancel"

    def test_second_accept_refused(self):
        escrow = make_escrow(status=EscrowState.ACCEPTED)

        with pytest.raises(InvalidState, match="escrow already accepted"):
            decide(escrow, Role.SELLER, Accept(), START)

    def test_buyer_confirm_before_accept_refused(self):
        with pytest.raises(InvalidState, match="still deposited"):
            decide(make_escrow(), Role.BUYER, BuyerConfirm(receipt="REM-1"), START)

    def test_terminal_states_refuse_everything(self):
        escrow = make_escrow(status=EscrowState.RELEASED)

        with pytest.raises(InvalidState, match="escrow is released"):
            decide(escrow, Role.BUYER, Dispute(reason="broken"), START)

    def test_accept_refused_after_deposit_window(self):
        late = START + timedelta(hours=49)

        with pytest.raises(InvalidState, match="deposit window closed"):
            decide(make_escrow(), Role.SELLER, Accept(), late)

    def test_expire_refused_inside_window(self):
        with pytest.raises(InvalidState, match="still open"):
            decide(make_escrow(), Role.SYSTEM, Expire(), START)

    def test_expire_after_window(self):
        decision = decide(make_escrow(), Role.SYSTEM, Expire(), START + timedelta(hours=49))

        assert decision.to_state == EscrowState.EXPIRED
        assert decision.idempotency_key == "esc-1:refund"

    def test_buyer_confirm_requires_receipt_when_balance_due(self):
        escrow = make_escrow(status=EscrowState.ACCEPTED)

        with pytest.raises(ValidationFailed, match="receipt"):
            decide(escrow, Role.BUYER, BuyerConfirm(), START)

    def test_buyer_confirm_without_balance_needs_no_receipt(self):
        escrow = make_escrow(
            status=EscrowState.ACCEPTED, deposit_amount=PRICE, remaining_amount=0
        )
        decision = decide(escrow, Role.BUYER, BuyerConfirm(), START)

        assert decision.changes["buyer_confirmed"] is True
        assert decision.changes["remaining_payment_receipt"] is None

    def test_seller_confirm_releases_total_price(self):
        escrow = make_escrow(status=EscrowState.BUYER_CONFIRMED, buyer_confirmed=True)
        decision = decide(escrow, Role.SELLER, SellerConfirm(), START)

        assert decision.to_state == EscrowState.RELEASED
        assert decision.transfer_amount == PRICE
        assert decision.recipient == Role.SELLER
        assert decision.idempotency_key == "esc-1:release"
        assert decision.claim_changes == {"seller_confirmed": True}
        assert decision.rule.listing_status == ListingStatus.SOLD

    def test_dispute_requires_reason(self):
        with pytest.raises(ValidationFailed, match="reason"):
            decide(make_escrow(), Role.BUYER, Dispute(reason="   "), START)

    def test_dispute_by_either_party(self):
        for role in (Role.BUYER, Role.SELLER, Role.SYSTEM):
            decision = decide(make_escrow(), role, Dispute(reason="no show"), START)
            assert decision.to_state == EscrowState.DISPUTED
            assert decision.changes["disputed_by"] == role.value
            assert decision.rule.listing_status == ListingStatus.CANCELLED


class TestConfirmResolution:

    def test_confirm_resolves_by_role(self):
        assert resolve_payload(Confirm(receipt="R"), Role.BUYER) == BuyerConfirm(receipt="R")
        assert resolve_payload(Confirm(receipt="R"), Role.SELLER) == SellerConfirm()

    def test_system_cannot_confirm(self):
        with pytest.raises(Unauthorized):
            resolve_payload(Confirm(), Role.SYSTEM)

    def test_seller_confirm_via_neutral_payload(self):
        escrow = make_escrow(status=EscrowState.BUYER_CONFIRMED, buyer_confirmed=True)
        decision = decide(escrow, Role.SELLER, Confirm(), START)

        assert decision.action == Action.SELLER_CONFIRM


class TestResumePending:

    def test_resume_claimed_cancel(self):
        escrow = make_escrow(pending_action="cancel", pending_since=START)
        decision = resume_pending(escrow, START)

        assert decision.action == Action.CANCEL
        assert decision.role == Role.BUYER
        assert decision.idempotency_key == "esc-1:refund"

    def test_resume_failed_release(self):
        escrow = make_escrow(
            status=EscrowState.BUYER_CONFIRMED, buyer_confirmed=True, seller_confirmed=True
        )
        decision = resume_pending(escrow, START, Action.SELLER_CONFIRM)

        assert decision.to_state == EscrowState.RELEASED
        assert decision.idempotency_key == "esc-1:release"

    def test_resume_refused_for_non_transfer_action(self):
        with pytest.raises(InvalidState):
            resume_pending(make_escrow(), START, Action.ACCEPT)

    def test_resume_refused_from_wrong_state(self):
        escrow = make_escrow(status=EscrowState.RELEASED, pending_action="cancel")

        with pytest.raises(InvalidState, match="escrow is released"):
            resume_pending(escrow, START)


class TestOpenDeposit:

    def test_valid_deposit(self):
        validate_open_deposit(listing(), BUYER, deposit_payload())

    def test_seller_cannot_buy_own_listing(self):
        with pytest.raises(ValidationFailed, match="your own listing"):
            validate_open_deposit(listing(), SELLER, deposit_payload())

    def test_listing_must_be_active(self):
        with pytest.raises(InvalidState, match="listing is pending"):
            validate_open_deposit(listing(status=ListingStatus.PENDING), BUYER, deposit_payload())

    def test_total_must_match_price(self):
        with pytest.raises(ValidationFailed, match="does not match"):
            validate_open_deposit(listing(), BUYER, deposit_payload(total_price=PRICE - 1))

    def test_deposit_below_minimum(self):
        with pytest.raises(ValidationFailed, match="below the minimum"):
            validate_open_deposit(listing(), BUYER, deposit_payload(deposit_amount=MIN_DEPOSIT - 1))

    def test_deposit_above_total(self):
        with pytest.raises(ValidationFailed, match="exceeds"):
            validate_open_deposit(listing(), BUYER, deposit_payload(deposit_amount=PRICE + 1))

    def test_receipt_required(self):
        with pytest.raises(ValidationFailed, match="receipt"):
            validate_open_deposit(listing(), BUYER, deposit_payload(deposit_receipt=""))

    def test_build_escrow(self):
        escrow = build_escrow(
            listing(), BUYER, deposit_payload(), START, timedelta(hours=48), escrow_id="abc"
        )

        assert escrow.id == "abc"
        assert escrow.status == EscrowState.DEPOSITED
        assert escrow.remaining_amount == PRICE - MIN_DEPOSIT
        assert escrow.expires_at == START + timedelta(hours=48)
        assert escrow.seller_id == SELLER
