"""
Notification collaborator for escrow events.

Sends Telegram messages to the buyer and seller (their verified Telegram
user ids double as private chat ids) and alerts the admin chat about
disputes and transfers that need attention. Delivery is fire-and-forget:
failures are logged and never raised to the caller.
"""

import html
import logging
from typing import Optional, Callable, Dict, Tuple, List

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

from escrow_models import Escrow
from utils import format_amount

logger = logging.getLogger(__name__)


class EscrowNotifier:
    """
    Telegram notifier for escrow lifecycle events.

    Attributes:
        bot: Telegram bot used for sending (None disables delivery)
        admin_chat_id: Chat receiving dispute and transfer alerts
        currency: Currency code used when formatting amounts
        decimals: Minor-unit digits of the currency
    """

    # Events that also alert the admin chat
    ADMIN_EVENTS = frozenset({"escrow_disputed", "transfer_failed", "transfer_stuck"})

    def __init__(
        self,
        bot: Optional[Bot] = None,
        admin_chat_id: Optional[str] = None,
        currency: str = 'USD',
        decimals: int = 2,
        chat_id_for: Optional[Callable[[str], Optional[int]]] = None
    ):
        self.bot = bot
        self.admin_chat_id = admin_chat_id
        self.currency = currency
        self.decimals = decimals
        self.chat_id_for = chat_id_for or _telegram_chat_id

    def _amount(self, value: int) -> str:
        return format_amount(value, self.currency, self.decimals)

    def render(self, escrow: Escrow, event_type: str) -> Tuple[Optional[str], Optional[str]]:
        """
        Build the (buyer, seller) HTML messages for an event.

        Either side may be None when that party is not notified.
        """
        ref = f"<code>{html.escape(escrow.id)}</code>"
        deposit = self._amount(escrow.deposit_amount)
        remaining = self._amount(escrow.remaining_amount)
        total = self._amount(escrow.total_price)
        reason = html.escape(escrow.dispute_reason or '')

        templates: Dict[str, Tuple[Optional[str], Optional[str]]] = {
            "escrow_opened": (
                f"💰 <b>Deposit Held in Escrow</b>\n\n"
                f"Your deposit of {deposit} is held securely.\n"
                f"Escrow: {ref}\n\n"
                f"The seller has been notified. If they don't respond in time "
                f"you'll be refunded automatically.",
                f"🔔 <b>New Deposit Received</b>\n\n"
                f"A buyer deposited {deposit} towards {total}.\n"
                f"Escrow: {ref}\n\n"
                f"Please accept or reject before the deposit window closes.",
            ),
            "escrow_accepted": (
                f"✅ <b>Seller Accepted</b>\n\n"
                f"Escrow: {ref}\n"
                f"Arrange the handoff in chat, then pay the remaining {remaining} "
                f"and confirm.",
                None,
            ),
            "escrow_rejected": (
                f"❌ <b>Seller Declined</b>\n\n"
                f"Escrow: {ref}\n"
                f"Your deposit of {deposit} has been refunded.",
                None,
            ),
            "escrow_cancelled": (
                f"↩️ <b>Escrow Cancelled</b>\n\n"
                f"Escrow: {ref}\n"
                f"Your deposit of {deposit} has been refunded.",
                f"↩️ <b>Buyer Cancelled</b>\n\n"
                f"Escrow: {ref}\n"
                f"Your listing is available again.",
            ),
            "escrow_expired": (
                f"⌛ <b>Deposit Expired</b>\n\n"
                f"The seller did not respond in time.\n"
                f"Escrow: {ref}\n"
                f"Your deposit of {deposit} has been refunded.",
                f"⌛ <b>Deposit Expired</b>\n\n"
                f"Escrow: {ref}\n"
                f"The deposit window closed and the buyer was refunded. "
                f"Your listing is available again.",
            ),
            "buyer_confirmed": (
                None,
                f"📦 <b>Buyer Confirmed Handoff</b>\n\n"
                f"Escrow: {ref}\n"
                f"The remaining {remaining} has been paid. Confirm to receive {total}.",
            ),
            "escrow_released": (
                f"🎉 <b>Purchase Complete</b>\n\n"
                f"Escrow: {ref}\n"
                f"Thank you for trading safely.",
                f"🎉 <b>Payment Released</b>\n\n"
                f"{total} has been released to you.\n"
                f"Escrow: {ref}",
            ),
            "escrow_disputed": (
                f"⚠️ <b>Dispute Opened</b>\n\n"
                f"Escrow: {ref}\n"
                f"Reason: {reason}\n\n"
                f"Funds are frozen until an administrator resolves the case.",
                f"⚠️ <b>Dispute Opened</b>\n\n"
                f"Escrow: {ref}\n"
                f"Reason: {reason}\n\n"
                f"Funds are frozen until an administrator resolves the case.",
            ),
        }
        return templates.get(event_type, (None, None))

    def render_admin(self, escrow: Escrow, event_type: str) -> str:
        return (
            f"🚨 <b>Escrow Needs Attention</b>\n\n"
            f"Event: {html.escape(event_type)}\n"
            f"Escrow: <code>{html.escape(escrow.id)}</code>\n"
            f"Status: {escrow.status.value}\n"
            f"Pending transfer: {escrow.pending_action or 'none'}\n"
            f"Buyer: {html.escape(escrow.buyer_id)} / Seller: {html.escape(escrow.seller_id)}\n"
            f"Reason: {html.escape(escrow.dispute_reason or '-')}"
        )

    async def notify_escrow_event(self, escrow: Escrow, event_type: str) -> None:
        """
        Notify the parties (and admin if relevant) about an escrow event.

        Never raises.

        Args:
            escrow: Escrow after the event
            event_type: Event name, e.g. ``escrow_released``
        """
        if not self.bot:
            logger.warning(f"Telegram bot not configured, skipping {event_type} notification")
            return

        buyer_text, seller_text = self.render(escrow, event_type)
        deliveries: List[Tuple[Optional[int], str]] = []
        if buyer_text:
            deliveries.append((self.chat_id_for(escrow.buyer_id), buyer_text))
        if seller_text:
            deliveries.append((self.chat_id_for(escrow.seller_id), seller_text))
        if event_type in self.ADMIN_EVENTS and self.admin_chat_id:
            deliveries.append((int(self.admin_chat_id), self.render_admin(escrow, event_type)))

        sent = 0
        for chat_id, text in deliveries:
            if chat_id is None:
                continue
            try:
                await self.bot.send_message(
                    chat_id=chat_id,
                    text=text,
                    parse_mode=ParseMode.HTML
                )
                sent += 1
            except TelegramError as e:
                logger.error(f"Failed to send {event_type} notification to {chat_id}: {e}")
            except Exception as e:
                logger.error(
                    f"Unexpected error sending {event_type} notification to {chat_id}: {e}",
                    exc_info=True
                )

        logger.info(f"{event_type} notifications sent for {escrow.id}: {sent}/{len(deliveries)}")


def _telegram_chat_id(identity: str) -> Optional[int]:
    """Map a caller identity to a Telegram chat id, if it is one."""
    try:
        return int(identity)
    except (TypeError, ValueError):
        logger.debug(f"Identity {identity!r} is not a Telegram user id")
        return None
