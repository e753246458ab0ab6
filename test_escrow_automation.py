"""
Tests for the scheduled escrow jobs.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import BUYER, SELLER, deposit_payload
from escrow_automation import EscrowAutomation
from escrow_errors import TransferFailed
from escrow_models import EscrowState
from escrow_state_machine import Accept, BuyerConfirm, SellerConfirm


@pytest.fixture
def automation(service, config):
    return EscrowAutomation(service, config)


async def test_start_schedules_jobs(automation):
    await automation.start()
    try:
        stats = automation.get_stats()
        assert stats['is_running'] is True
        assert set(stats['next_runs']) == {'expire_overdue_deposits', 'reconcile_transfers'}
        assert all(stats['next_runs'].values())
    finally:
        await automation.stop()

    assert automation.get_stats()['is_running'] is False


async def test_start_twice_is_harmless(automation):
    await automation.start()
    await automation.start()
    try:
        assert len(automation.scheduler.get_jobs()) == 2
    finally:
        await automation.stop()


async def test_expire_job(automation, service, db, clock, listing):
    escrow = (await service.execute(BUYER, deposit_payload())).escrow
    clock.advance(hours=49)

    await automation.expire_overdue_deposits()

    assert (await db.get_escrow(escrow.id)).status == EscrowState.EXPIRED
    assert automation.stats['expired'] == 1
    assert automation.stats['last_run']['expire_overdue_deposits']['expired'] == 1


async def test_reconcile_job(automation, service, db, transfers, listing):
    escrow = (await service.execute(BUYER, deposit_payload())).escrow
    await service.execute(SELLER, Accept(), escrow.id)
    await service.execute(BUYER, BuyerConfirm(receipt="REM-0001"), escrow.id)
    transfers.failures.append(TransferFailed("insufficient funds"))
    with pytest.raises(TransferFailed):
        await service.execute(SELLER, SellerConfirm(), escrow.id)

    await automation.reconcile_transfers()

    assert (await db.get_escrow(escrow.id)).status == EscrowState.RELEASED
    assert automation.stats['reconciled'] == 1


async def test_job_errors_are_contained(config):
    service = MagicMock()
    service.sweep_overdue_deposits = AsyncMock(side_effect=RuntimeError("db down"))
    service.reconcile_transfers = AsyncMock(side_effect=RuntimeError("db down"))
    automation = EscrowAutomation(service, config)

    await automation.expire_overdue_deposits()
    await automation.reconcile_transfers()

    assert automation.stats['expired'] == 0
    assert automation.stats['last_run'] == {}
