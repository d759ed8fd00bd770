"""Background job scheduler for auction and payment enforcement sweeps"""

import logging
from typing import Any, Dict

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore

from config import Config
from jobs.auction_closure_job import run_auction_closure_sweep
from jobs.fraud_auto_suspend_job import run_fraud_auto_suspend_sweep
from jobs.payment_deadline_job import run_payment_deadline_sweep
from jobs.settlement_job import run_settlement_sweep
from jobs.wallet_reconciliation_job import run_wallet_reconciliation
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class EnforcementScheduler:
    """
    Runs the time-driven sweeps. Overlap between runs (or with webhook
    traffic) is safe because every sweep goes through idempotent operations;
    max_instances=1 only keeps a slow run from piling up behind itself.
    """

    def __init__(self):
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register all enforcement sweeps"""

        # Close ended auctions (staggered 5s past the minute)
        self.scheduler.add_job(
            self._run_logged,
            trigger=IntervalTrigger(seconds=Config.AUCTION_CLOSURE_INTERVAL_SECONDS,
                                    start_date=get_naive_utc_now().replace(second=5, microsecond=0),
                                    timezone="UTC"),
            args=["auction_closure", run_auction_closure_sweep],
            id="auction_closure",
            name="Close Ended Auctions",
            replace_existing=True,
        )

        # Reminders, overdue marking and forfeiture
        self.scheduler.add_job(
            self._run_logged,
            trigger=IntervalTrigger(minutes=Config.PAYMENT_DEADLINE_INTERVAL_MINUTES,
                                    start_date=get_naive_utc_now().replace(second=20, microsecond=0),
                                    timezone="UTC"),
            args=["payment_deadline", run_payment_deadline_sweep],
            id="payment_deadline",
            name="Enforce Payment Deadlines",
            replace_existing=True,
        )

        self.scheduler.add_job(
            self._run_logged,
            trigger=IntervalTrigger(minutes=Config.FRAUD_SWEEP_INTERVAL_MINUTES,
                                    start_date=get_naive_utc_now().replace(second=35, microsecond=0),
                                    timezone="UTC"),
            args=["fraud_auto_suspend", run_fraud_auto_suspend_sweep],
            id="fraud_auto_suspend",
            name="Suspend Vendors Over Fraud Threshold",
            replace_existing=True,
        )

        self.scheduler.add_job(
            self._run_logged,
            trigger=IntervalTrigger(minutes=Config.SETTLEMENT_INTERVAL_MINUTES,
                                    start_date=get_naive_utc_now().replace(second=50, microsecond=0),
                                    timezone="UTC"),
            args=["settlement", run_settlement_sweep],
            id="settlement",
            name="Settle Verified Auctions And Pay Out",
            replace_existing=True,
        )

        # Nightly balance invariant safety net
        self.scheduler.add_job(
            self._run_logged,
            trigger=CronTrigger(hour=Config.WALLET_RECONCILIATION_HOUR, minute=0, timezone="UTC"),
            args=["wallet_reconciliation", run_wallet_reconciliation],
            id="wallet_reconciliation",
            name="Reconcile Wallet Balances",
            replace_existing=True,
        )

        logger.info(f"📅 SCHEDULER: {len(self.scheduler.get_jobs())} enforcement jobs registered")

    @staticmethod
    async def _run_logged(name: str, sweep) -> Dict[str, Any]:
        try:
            summary = await sweep()
        except Exception as e:
            logger.error(f"❌ JOB_FAILED: {name}: {e}", exc_info=True)
            return {"sweep": name, "error": str(e)}
        logger.debug(f"✅ JOB_DONE: {name}: {summary}")
        return summary

    def start(self):
        if not self.scheduler.running:
            self.setup_jobs()
            self.scheduler.start()
            logger.info("✅ Enforcement scheduler started")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("🛑 Enforcement scheduler stopped")
