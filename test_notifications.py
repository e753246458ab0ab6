"""
Tests for escrow Telegram notifications.
"""

import pytest
from telegram.constants import ParseMode
from telegram.error import TelegramError

from conftest import ADMIN_CHAT_ID, BUYER, SELLER, make_escrow
from escrow_models import EscrowState
from notifications import EscrowNotifier


def sent_chat_ids(bot):
    return [call.kwargs["chat_id"] for call in bot.send_message.await_args_list]


async def test_opened_notifies_both_parties(notifier, bot):
    await notifier.notify_escrow_event(make_escrow(), "escrow_opened")

    assert sent_chat_ids(bot) == [int(BUYER), int(SELLER)]
    first = bot.send_message.await_args_list[0].kwargs
    assert first["parse_mode"] == ParseMode.HTML
    assert "USD 20.00" in first["text"]
    assert "<code>esc-1</code>" in first["text"]


async def test_buyer_confirmed_notifies_seller_only(notifier, bot):
    escrow = make_escrow(status=EscrowState.BUYER_CONFIRMED, buyer_confirmed=True)

    await notifier.notify_escrow_event(escrow, "buyer_confirmed")

    assert sent_chat_ids(bot) == [int(SELLER)]


async def test_dispute_alerts_admin(notifier, bot):
    escrow = make_escrow(
        status=EscrowState.DISPUTED, dispute_reason="<script>alert(1)</script>", disputed_by="buyer"
    )

    await notifier.notify_escrow_event(escrow, "escrow_disputed")

    assert sent_chat_ids(bot) == [int(BUYER), int(SELLER), int(ADMIN_CHAT_ID)]
    for call in bot.send_message.await_args_list:
        assert "<script>" not in call.kwargs["text"]


async def test_transfer_stuck_goes_to_admin_only(notifier, bot):
    escrow = make_escrow(pending_action="cancel")

    await notifier.notify_escrow_event(escrow, "transfer_stuck")

    assert sent_chat_ids(bot) == [int(ADMIN_CHAT_ID)]
    assert "Pending transfer: cancel" in bot.send_message.await_args.kwargs["text"]


async def test_send_failure_does_not_stop_other_deliveries(notifier, bot):
    bot.send_message.side_effect = [TelegramError("chat not found"), None]

    await notifier.notify_escrow_event(make_escrow(), "escrow_opened")

    assert bot.send_message.await_count == 2


async def test_non_telegram_identity_skipped(bot):
    notifier = EscrowNotifier(bot=bot)

    await notifier.notify_escrow_event(make_escrow(buyer_id="web:alice"), "escrow_opened")

    assert sent_chat_ids(bot) == [int(SELLER)]


async def test_without_bot():
    notifier = EscrowNotifier(bot=None)

    await notifier.notify_escrow_event(make_escrow(), "escrow_opened")


@pytest.mark.parametrize("event", [
    "escrow_opened", "escrow_accepted", "escrow_rejected", "escrow_cancelled",
    "escrow_expired", "buyer_confirmed", "escrow_released", "escrow_disputed",
])
def test_every_lifecycle_event_has_a_message(event):
    buyer_text, seller_text = EscrowNotifier(currency="KES", decimals=0).render(make_escrow(), event)

    assert buyer_text or seller_text


def test_amounts_use_currency_settings():
    buyer_text, _ = EscrowNotifier(currency="KES", decimals=0).render(make_escrow(), "escrow_opened")

    assert "KES 2,000" in buyer_text


def test_unknown_event_renders_nothing():
    assert EscrowNotifier().render(make_escrow(), "something_else") == (None, None)
