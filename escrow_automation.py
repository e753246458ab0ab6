"""
Escrow Automation Module

Background jobs for the escrow engine:
- Expire deposits the seller never acted on (refunding the buyer)
- Reconcile transfers whose outcome was unknown or whose release failed

Expiry is also enforced lazily on every read, so the sweep only keeps
listings and buyers from waiting for the next read. The reconciliation job
is the only path that finishes a timed-out transfer nobody retries.

Dependencies:
    - APScheduler: For background job scheduling
    - escrow_service.py: For escrow operations
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_config, Config
from escrow_service import EscrowService

logger = logging.getLogger(__name__)


class EscrowAutomation:
    """
    Automation service for the escrow engine.

    Attributes:
        service: Escrow transition executor
        scheduler: APScheduler scheduler running on the current event loop
        stats: Totals and last-run information for each job
    """

    def __init__(
        self,
        service: EscrowService,
        config: Optional[Config] = None,
        scheduler: Optional[AsyncIOScheduler] = None
    ):
        """
        Initialize escrow automation service.

        Args:
            service: Escrow service used to run the jobs
            config: Configuration instance (optional, will load if not provided)
            scheduler: Scheduler to use (a new AsyncIOScheduler by default)
        """
        self.service = service
        self.config = config or get_config()
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self.is_running = False

        # Statistics
        self.stats: Dict[str, Any] = {
            'expired': 0,
            'expiry_failures': 0,
            'reconciled': 0,
            'reconcile_failures': 0,
            'last_run': {}
        }

    async def start(self) -> None:
        """Start the automation scheduler."""
        if self.is_running:
            logger.warning("Automation scheduler already running")
            return

        self._schedule_tasks()
        self.scheduler.start()
        self.is_running = True

        logger.info("Escrow automation started successfully")
        logger.info(f"Scheduled jobs: {len(self.scheduler.get_jobs())}")

    async def stop(self) -> None:
        """Stop the automation scheduler."""
        if not self.is_running:
            return

        self.scheduler.shutdown(wait=False)
        self.is_running = False
        logger.info("Escrow automation stopped")

    def _schedule_tasks(self) -> None:
        """Schedule all automation tasks."""

        self.scheduler.add_job(
            self.expire_overdue_deposits,
            trigger=IntervalTrigger(minutes=self.config.sweep_interval_minutes),
            id='expire_overdue_deposits',
            name='Expire Overdue Deposits',
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
            replace_existing=True
        )

        self.scheduler.add_job(
            self.reconcile_transfers,
            trigger=IntervalTrigger(minutes=self.config.reconcile_interval_minutes),
            id='reconcile_transfers',
            name='Reconcile Transfers',
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
            replace_existing=True
        )

        logger.info("All automation tasks scheduled")

    async def expire_overdue_deposits(self) -> None:
        """
        Expire deposits past their acceptance window.

        Process:
        1. Find deposited escrows with expires_at in the past
        2. Refund each buyer and mark the escrow expired
        3. Put the listing back on sale
        """
        logger.info("Starting expire overdue deposits task")
        start_time = datetime.now(timezone.utc)

        try:
            result = await self.service.sweep_overdue_deposits()
            self.stats['expired'] += result['expired']
            self.stats['expiry_failures'] += result['failed']
            self.stats['last_run']['expire_overdue_deposits'] = {
                'time': start_time.isoformat(),
                'duration': (datetime.now(timezone.utc) - start_time).total_seconds(),
                **result
            }
        except Exception as e:
            logger.error(f"Error in expire overdue deposits task: {e}", exc_info=True)

    async def reconcile_transfers(self) -> None:
        """
        Retry refunds and releases that did not complete.

        Process:
        1. Find claims whose transfer outcome is unknown for too long
        2. Find seller confirmations whose release transfer failed
        3. Retry each with its original idempotency key and commit
        """
        logger.info("Starting transfer reconciliation task")
        start_time = datetime.now(timezone.utc)

        try:
            result = await self.service.reconcile_transfers()
            self.stats['reconciled'] += result['completed']
            self.stats['reconcile_failures'] += result['failed']
            self.stats['last_run']['reconcile_transfers'] = {
                'time': start_time.isoformat(),
                'duration': (datetime.now(timezone.utc) - start_time).total_seconds(),
                **result
            }
        except Exception as e:
            logger.error(f"Error in transfer reconciliation task: {e}", exc_info=True)

    def get_stats(self) -> Dict[str, Any]:
        """
        Get automation statistics.

        Returns:
            Dictionary with job totals, last runs and next run times
        """
        jobs = {}
        for job in self.scheduler.get_jobs():
            # Jobs added before start() have no next_run_time yet
            next_run = getattr(job, 'next_run_time', None)
            jobs[job.id] = next_run.isoformat() if next_run else None
        return {
            **self.stats,
            'is_running': self.is_running,
            'next_runs': jobs
        }
