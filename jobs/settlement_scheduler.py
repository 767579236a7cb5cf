"""
Settlement Background Job Scheduler

Four jobs keep held funds moving without a request to trigger them:
1. Pending Balance Release - pending credits whose business-day schedule elapsed
2. Hold Auto-Release - job-guarantee holds past their window, never disputed
3. Notification Queue - delivers queued emails and retries failures
4. Notification Cleanup - drops de-duplication records past every window
"""

import logging
from datetime import datetime

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.hold_auto_release import run_hold_auto_release
from jobs.notification_cleanup import run_notification_cleanup
from jobs.notification_queue_processor import run_notification_queue_processor
from jobs.pending_balance_release import run_pending_balance_release

logger = logging.getLogger(__name__)


class SettlementScheduler:
    """
    Scheduler for the settlement background jobs

    Scheduling Strategy:
    - Pending Balance Release: every PENDING_RELEASE_INTERVAL_MINUTES (default 5)
    - Hold Auto-Release: every HOLD_RELEASE_INTERVAL_MINUTES (default 15)
    - Notification Queue: every NOTIFICATION_QUEUE_INTERVAL_SECONDS (default 60)
    - Notification Cleanup: every NOTIFICATION_CLEANUP_INTERVAL_HOURS (default 24)
    """

    def __init__(self):
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register the settlement jobs, replacing any already registered"""
        for job in self.scheduler.get_jobs():
            self.scheduler.remove_job(job.id)
            logger.info(f"🧹 Removed existing job: {job.id}")

        # Staggered start offsets so jobs do not hit the database together
        self.scheduler.add_job(
            run_pending_balance_release,
            trigger=IntervalTrigger(
                minutes=Config.PENDING_RELEASE_INTERVAL_MINUTES,
                start_date=datetime.now().replace(second=5, microsecond=0),
            ),
            id="pending_balance_release",
            name="💰 Pending Balance Release",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            replace_existing=True
        )
        logger.info(f"✅ Pending Balance Release scheduled every {Config.PENDING_RELEASE_INTERVAL_MINUTES} minutes")

        self.scheduler.add_job(
            run_hold_auto_release,
            trigger=IntervalTrigger(
                minutes=Config.HOLD_RELEASE_INTERVAL_MINUTES,
                start_date=datetime.now().replace(second=25, microsecond=0),
            ),
            id="hold_auto_release",
            name="🔓 Hold Auto-Release",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=120,
            replace_existing=True
        )
        logger.info(f"✅ Hold Auto-Release scheduled every {Config.HOLD_RELEASE_INTERVAL_MINUTES} minutes")

        self.scheduler.add_job(
            run_notification_queue_processor,
            trigger=IntervalTrigger(seconds=Config.NOTIFICATION_QUEUE_INTERVAL_SECONDS),
            id="notification_queue_processor",
            name="📧 Notification Queue Processor",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            replace_existing=True
        )
        logger.info(f"✅ Notification Queue Processor scheduled every {Config.NOTIFICATION_QUEUE_INTERVAL_SECONDS} seconds")

        self.scheduler.add_job(
            run_notification_cleanup,
            trigger=IntervalTrigger(hours=Config.NOTIFICATION_CLEANUP_INTERVAL_HOURS),
            id="notification_cleanup",
            name="🧹 Notification Record Cleanup",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
            replace_existing=True
        )
        logger.info(f"✅ Notification Cleanup scheduled every {Config.NOTIFICATION_CLEANUP_INTERVAL_HOURS} hours")

    def start(self):
        """Start the scheduler with all settlement jobs"""
        self.setup_jobs()
        self.scheduler.start()

        jobs = self.scheduler.get_jobs()
        logger.info(f"📋 Active jobs: {[f'{job.name} ({job.id})' for job in jobs]}")

    def stop(self):
        """Stop the settlement scheduler"""
        self.scheduler.shutdown()
        logger.info("📴 Settlement job scheduler stopped")


_global_scheduler = None


def get_settlement_scheduler_instance():
    """Get the global settlement scheduler instance"""
    global _global_scheduler
    if _global_scheduler is None:
        _global_scheduler = SettlementScheduler()
    return _global_scheduler
