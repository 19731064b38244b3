"""
Maintenance Scheduler

Runs the periodic housekeeping jobs of the market data client:
- Sweep of elapsed provider quota counters and source budgets
- Sweep of expired cache entries
- Re-probe of unhealthy sources

Jobs run on the application's event loop, independent of request traffic.
"""
from typing import Optional, Callable
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor
from loguru import logger

from marketfeed.data_providers.aggregator import FreeDataAggregator
from marketfeed.data_providers.cache_manager import CacheManager
from marketfeed.data_providers.rate_limiter import RateLimiter


SWEEP_JOB_ID = "sweep_expired"
PROBE_JOB_ID = "probe_unhealthy_sources"


class MaintenanceScheduler:
    """
    Interval job scheduler for housekeeping tasks.

    Usage:
        scheduler = MaintenanceScheduler(timezone="UTC")
        scheduler.register_maintenance_jobs(limiter, cache, aggregator)
        scheduler.start()  # needs a running event loop
        ...
        scheduler.stop()
    """

    def __init__(self, timezone: str = "UTC"):
        self.timezone = timezone
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._is_running = False
        self._registered_jobs: dict[str, dict] = {}

    def initialize(self) -> None:
        """Initialize the scheduler with job stores and executors."""
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Combine multiple missed runs into one
            'max_instances': 1,  # Only one instance of each job at a time
            'misfire_grace_time': 30
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone=self.timezone
        )

        logger.info("Maintenance scheduler initialized")

    def start(self) -> None:
        """Start the scheduler."""
        if not self.scheduler:
            self.initialize()

        if not self._is_running:
            self.scheduler.start()
            self._is_running = True
            logger.info("Maintenance scheduler started")

    def stop(self) -> None:
        """Stop the scheduler. Pending job runs are cancelled."""
        if self.scheduler and self._is_running:
            self.scheduler.shutdown(wait=False)
            self._is_running = False
            logger.info("Maintenance scheduler stopped")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._is_running

    # ==================== Job Registration ====================

    def add_interval_job(
        self,
        job_id: str,
        func: Callable,
        seconds: int,
        **kwargs
    ) -> None:
        """
        Add a job that runs every ``seconds``.

        Args:
            job_id: Unique identifier for the job
            func: Async function to execute
            seconds: Interval in seconds
            **kwargs: Additional arguments for the job
        """
        if not self.scheduler:
            self.initialize()

        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds, timezone=self.timezone),
            id=job_id,
            name=f"Interval: {job_id}",
            replace_existing=True,
            **kwargs
        )

        self._registered_jobs[job_id] = {
            'type': 'interval',
            'schedule': f'Every {seconds}s'
        }
        logger.info(f"Registered interval job: {job_id} every {seconds}s")

    def remove_job(self, job_id: str) -> bool:
        """Remove a scheduled job."""
        if self.scheduler and job_id in self._registered_jobs:
            self.scheduler.remove_job(job_id)
            self._registered_jobs.pop(job_id, None)
            logger.info(f"Removed job: {job_id}")
            return True
        return False

    def register_maintenance_jobs(
        self,
        rate_limiter: RateLimiter,
        cache: CacheManager,
        aggregator: FreeDataAggregator,
        sweep_interval_seconds: int = 60,
        probe_interval_seconds: int = 300,
    ) -> None:
        """Register the counter/cache sweep and the health re-probe jobs."""

        async def sweep_expired() -> None:
            counters = rate_limiter.sweep_expired()
            budgets = aggregator.sweep_expired()
            entries = cache.sweep_expired()
            if counters or budgets or entries:
                logger.debug(
                    f"Maintenance sweep removed {counters} quota counters, "
                    f"{budgets} source budgets, {entries} cache entries"
                )

        async def probe_unhealthy_sources() -> None:
            await aggregator.probe_unhealthy_sources()

        self.add_interval_job(SWEEP_JOB_ID, sweep_expired, seconds=sweep_interval_seconds)
        self.add_interval_job(PROBE_JOB_ID, probe_unhealthy_sources, seconds=probe_interval_seconds)

    def get_jobs_status(self) -> dict:
        """Get status of all registered jobs."""
        status = {
            'is_running': self._is_running,
            'jobs': {}
        }

        if self.scheduler:
            for job in self.scheduler.get_jobs():
                next_run = getattr(job, 'next_run_time', None)
                status['jobs'][job.id] = {
                    'name': job.name,
                    'next_run': next_run.isoformat() if next_run else None,
                    **self._registered_jobs.get(job.id, {})
                }

        return status
