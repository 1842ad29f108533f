"""
Run the distribution worker pool and periodic scheduler without the API
"""

import asyncio
import signal
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.logging import setup_logging
from snowball.engine import SnowballEngine
from snowball.scheduler import SnowballScheduler
from snowball.workers import DistributionWorkerPool

setup_logging()
logger = logging.getLogger(__name__)


async def run_worker():
    """Run workers until SIGINT / SIGTERM"""
    engine = SnowballEngine.from_settings()
    worker_pool = DistributionWorkerPool(engine.session_factory, engine.distribution)
    scheduler = SnowballScheduler(engine, worker_pool)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    worker_pool.start()
    scheduler.start()
    logger.info(f"Distribution worker running ({settings.WORKER_CONCURRENCY} workers)")

    try:
        # Pick up anything already due before the first poll
        await scheduler.dispatch_due_jobs()
        await stop_event.wait()
    finally:
        scheduler.stop()
        await worker_pool.stop()
        if engine.redis is not None:
            await engine.redis.aclose()
        logger.info("Distribution worker stopped")


if __name__ == "__main__":
    asyncio.run(run_worker())
