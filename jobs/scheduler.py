"""Background job scheduler for escrow automation sweeps"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.escrow_automation import EscrowAutomation
from models import utcnow

logger = logging.getLogger(__name__)


class EscrowScheduler:
    """Runs each sweep at the edge with the current time; the sweeps themselves are time-agnostic"""

    def __init__(self, automation: EscrowAutomation, scheduler: Optional[AsyncIOScheduler] = None):
        self.automation = automation
        self.scheduler = scheduler or AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 120,
            },
            timezone="UTC",
        )

    def setup_jobs(self):
        """Register all sweeps; safe to call again after a hot reload"""
        staggered = datetime.now().replace(microsecond=0)

        jobs = [
            ("auto_release", "Escrow Auto-Release", self.run_auto_release,
             IntervalTrigger(minutes=Config.AUTO_RELEASE_INTERVAL_MINUTES,
                             start_date=staggered + timedelta(seconds=5))),
            ("approval_reminders", "Approval Reminders", self.run_reminders,
             IntervalTrigger(hours=Config.REMINDER_INTERVAL_HOURS,
                             start_date=staggered + timedelta(seconds=20))),
            ("overdue_contracts", "Overdue Contracts", self.run_overdue,
             IntervalTrigger(hours=1, start_date=staggered + timedelta(seconds=35))),
            ("pairing_expiry", "Pairing Code Expiry", self.run_pairing_expiry,
             IntervalTrigger(minutes=5, start_date=staggered + timedelta(seconds=10))),
            ("scheduled_starts", "Scheduled Contract Starts", self.run_scheduled_starts,
             IntervalTrigger(minutes=15, start_date=staggered + timedelta(seconds=15))),
            ("stale_orders", "Stale Payment Orders", self.run_stale_orders,
             IntervalTrigger(hours=1, start_date=staggered + timedelta(seconds=50))),
            ("audit_retry", "Audit Log Retry", self.run_audit_retry,
             IntervalTrigger(minutes=5, start_date=staggered + timedelta(seconds=25))),
            ("audit_retention", "Audit Log Retention", self.run_audit_retention,
             CronTrigger(hour=3, minute=30)),
        ]

        for job_id, name, func, trigger in jobs:
            if self.scheduler.get_job(job_id):
                self.scheduler.remove_job(job_id)
                logger.info(f"🧹 Hot-reload safety: Removed existing {job_id} job")
            self.scheduler.add_job(
                func,
                trigger=trigger,
                id=job_id,
                name=name,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=60,
            )

        logger.info(f"✅ Escrow scheduler configured with {len(jobs)} jobs")

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info("✅ Escrow scheduler started")

    def shutdown(self, wait: bool = False):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Escrow scheduler stopped")

    # Job entry points: the wall clock is read here and nowhere below

    async def run_auto_release(self):
        try:
            await self.automation.run_auto_release(now=utcnow())
        except Exception as e:
            logger.error(f"❌ Error in auto-release sweep: {e}")

    async def run_reminders(self):
        try:
            await self.automation.run_reminders(now=utcnow())
        except Exception as e:
            logger.error(f"❌ Error in reminder sweep: {e}")

    async def run_overdue(self):
        try:
            await self.automation.run_overdue(now=utcnow())
        except Exception as e:
            logger.error(f"❌ Error in overdue sweep: {e}")

    async def run_pairing_expiry(self):
        try:
            await self.automation.run_pairing_expiry(now=utcnow())
        except Exception as e:
            logger.error(f"❌ Error in pairing expiry sweep: {e}")

    async def run_scheduled_starts(self):
        try:
            await self.automation.run_scheduled_starts(now=utcnow())
        except Exception as e:
            logger.error(f"❌ Error in scheduled start sweep: {e}")

    async def run_stale_orders(self):
        try:
            await self.automation.run_stale_orders(now=utcnow())
        except Exception as e:
            logger.error(f"❌ Error in stale order sweep: {e}")

    async def run_audit_retry(self):
        try:
            await self.automation.run_audit_retry(now=utcnow())
        except Exception as e:
            logger.error(f"❌ Error in audit retry sweep: {e}")

    async def run_audit_retention(self):
        try:
            await self.automation.run_audit_retention(now=utcnow())
        except Exception as e:
            logger.error(f"❌ Error in audit retention sweep: {e}")
