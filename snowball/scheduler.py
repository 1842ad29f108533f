import logging
from datetime import timedelta
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from core.config import settings
from snowball.workers import DistributionWorkerPool

logger = logging.getLogger(__name__)


class SnowballScheduler:
    """
    Periodic jobs:
    - dispatch: feed due distribution jobs to the worker pool
    - maintenance: expire stale candidates, requeue jobs whose worker died
    """

    def __init__(self, engine, worker_pool: DistributionWorkerPool):
        self.scheduler = AsyncIOScheduler()
        self.engine = engine
        self.worker_pool = worker_pool

    async def dispatch_due_jobs(self) -> int:
        """Job to hand due distribution jobs to the workers"""
        submitted = 0
        async with self.engine.session_factory() as session:
            try:
                job_ids = await self.engine.distribution(session).due_job_ids()
            except Exception as e:
                logger.error(f"Scheduler: dispatch failed - {e}")
                return 0

        for job_id in job_ids:
            if await self.worker_pool.submit(job_id):
                submitted += 1
        if submitted:
            logger.info(f"Scheduler: dispatched {submitted} distribution jobs")
        return submitted

    async def run_maintenance(self):
        """Job to expire stale candidates and recover stale jobs"""
        logger.info("Scheduler: Starting maintenance")
        async with self.engine.session_factory() as session:
            try:
                expired = await self.engine.propagation(session).expire_stale()
                recovered = await self.engine.distribution(session).recover_stale_jobs(
                    older_than=timedelta(minutes=settings.DISTRIBUTION_STALE_JOB_MINUTES)
                )
                logger.info(f"Scheduler: maintenance done (expired={expired}, recovered={recovered})")
            except Exception as e:
                logger.error(f"Scheduler: maintenance failed - {e}")

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.dispatch_due_jobs,
            trigger=IntervalTrigger(seconds=settings.DISTRIBUTION_POLL_INTERVAL_SECONDS),
            id="snowball_dispatch",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            self.run_maintenance,
            trigger=IntervalTrigger(minutes=settings.MAINTENANCE_INTERVAL_MINUTES),
            id="snowball_maintenance",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.start()
        logger.info("Snowball Scheduler started")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Snowball Scheduler stopped")
