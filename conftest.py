"""
Shared pytest fixtures for the escrow service tests.

Identities are numeric strings so they double as Telegram chat ids.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Tuple
from unittest.mock import AsyncMock

import pytest

from config import get_config
from escrow_models import Escrow, EscrowState, Listing
from escrow_service import EscrowService
from escrow_state_machine import OpenDeposit
from identity import sign_init_data
from memory_store import InMemoryEscrowDatabase
from notifications import EscrowNotifier
from transfer_service import TransferReceipt, TransferStatus

TEST_BOT_TOKEN = "123456:TEST-TOKEN"
WEBHOOK_SECRET = "whsec-test"
ADMIN_CHAT_ID = "-100500"

BUYER = "1001"
SELLER = "2002"
OUTSIDER = "3003"

LISTING_ID = "listing-1"
PRICE = 10000
MIN_DEPOSIT = 2000

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingTransferClient:
    """
    Transfer client that records every call.

    Exceptions queued in ``failures`` are raised by the next calls, in order.
    Successful transfers are deduplicated by idempotency key like a real
    provider would.
    """

    def __init__(self):
        self.calls: List[Tuple[str, str, int, str]] = []
        self.failures: List[Exception] = []
        self.completed: List[TransferReceipt] = []
        self._by_key = {}

    async def transfer(self, from_account, to_address, amount, idempotency_key):
        self.calls.append((from_account, to_address, amount, idempotency_key))
        # Let concurrent transitions interleave while the transfer is in flight
        await asyncio.sleep(0)

        if self.failures:
            raise self.failures.pop(0)

        if idempotency_key not in self._by_key:
            receipt = TransferReceipt(
                receipt=f"tx-{len(self._by_key) + 1}",
                status=TransferStatus.SUCCESS,
                amount=amount,
                to_address=to_address,
                idempotency_key=idempotency_key
            )
            self._by_key[idempotency_key] = receipt
            self.completed.append(receipt)
        return self._by_key[idempotency_key]


def deposit_payload(**overrides) -> OpenDeposit:
    data = dict(
        listing_id=LISTING_ID,
        deposit_amount=MIN_DEPOSIT,
        total_price=PRICE,
        deposit_receipt="DEP-0001",
    )
    data.update(overrides)
    return OpenDeposit(**data)


def make_escrow(**overrides) -> Escrow:
    data = dict(
        id="esc-1",
        listing_id=LISTING_ID,
        buyer_id=BUYER,
        seller_id=SELLER,
        deposit_amount=MIN_DEPOSIT,
        total_price=PRICE,
        remaining_amount=PRICE - MIN_DEPOSIT,
        status=EscrowState.DEPOSITED,
        deposit_receipt="DEP-0001",
        expires_at=START + timedelta(hours=48),
        created_at=START,
    )
    data.update(overrides)
    return Escrow(**data)


def auth_header(user_id: str, bot_token: str = TEST_BOT_TOKEN) -> dict:
    init_data = sign_init_data(bot_token, {"id": int(user_id), "first_name": "Test"})
    return {"Authorization": f"tma {init_data}"}


@pytest.fixture
def config(monkeypatch):
    env = {
        "TELEGRAM_BOT_TOKEN": TEST_BOT_TOKEN,
        "ADMIN_CHAT_ID": ADMIN_CHAT_ID,
        "STORE_BACKEND": "memory",
        "DEPOSIT_WINDOW_HOURS": "48",
        "STALE_CLAIM_MINUTES": "5",
        "TRANSFER_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "RELEASE_ON_TRANSFER_FAILURE": "false",
        "ENABLE_NOTIFICATIONS": "true",
        "LOG_LEVEL": "DEBUG",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    monkeypatch.delenv("TRANSFER_API_URL", raising=False)
    return get_config(reload=True)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def db():
    return InMemoryEscrowDatabase()


@pytest.fixture
def transfers():
    return RecordingTransferClient()


@pytest.fixture
def bot():
    mock_bot = AsyncMock()
    mock_bot.send_message = AsyncMock()
    return mock_bot


@pytest.fixture
def notifier(bot):
    return EscrowNotifier(bot=bot, admin_chat_id=ADMIN_CHAT_ID)


@pytest.fixture
def service(config, db, transfers, notifier, clock):
    return EscrowService(db, transfers, notifier=notifier, config=config, clock=clock)


@pytest.fixture
async def listing(db):
    return await db.create_listing(Listing(
        id=LISTING_ID,
        seller_id=SELLER,
        price=PRICE,
        min_deposit=MIN_DEPOSIT,
        title="Road bike"
    ))


@pytest.fixture
async def opened(service, listing):
    """An escrow in the deposited state."""
    result = await service.execute(BUYER, deposit_payload())
    return result.escrow
