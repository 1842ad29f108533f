"""
Distribution worker pool.

A fixed number of asyncio tasks consume job ids from an in-process queue.
The queue is fed from the durable job table by the periodic scheduler;
each worker opens its own database session per job.
"""

from typing import Callable, List, Optional, Set
import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.exceptions import SnowballException
from snowball.distribution import DistributionScheduler

logger = logging.getLogger(__name__)


class DistributionWorkerPool:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        scheduler_factory: Callable[[AsyncSession], DistributionScheduler],
        concurrency: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.scheduler_factory = scheduler_factory
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.queue: asyncio.Queue = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self._inflight: Set[str] = set()

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(n), name=f"distribution-worker-{n}")
            for n in range(self.concurrency)
        ]
        logger.info(f"Distribution worker pool started with {self.concurrency} workers")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Distribution worker pool stopped")

    async def submit(self, job_id: str) -> bool:
        """Enqueue a job id unless it is already queued or running"""
        if job_id in self._inflight:
            return False
        self._inflight.add(job_id)
        await self.queue.put(job_id)
        return True

    async def join(self) -> None:
        await self.queue.join()

    async def _worker(self, n: int) -> None:
        while True:
            job_id = await self.queue.get()
            try:
                async with self.session_factory() as session:
                    scheduler = self.scheduler_factory(session)
                    job = await scheduler.run_job(job_id)
                    logger.debug(f"Worker {n} finished job {job_id}: {job.status.value}")
            except SnowballException as e:
                logger.error(
                    f"Worker {n} failed job {job_id}: {e.message}",
                    extra={"error_context": e.to_dict()}
                )
            except Exception as e:
                logger.exception(f"Worker {n} crashed on job {job_id}: {str(e)}")
            finally:
                self._inflight.discard(job_id)
                self.queue.task_done()
