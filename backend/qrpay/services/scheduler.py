"""
APScheduler Configuration for the QR Expiry Sweep

Runs the periodic pass that moves pending intents past expires_at to expired,
so intent state converges even when nobody polls.
"""
import logging
from typing import Awaitable, Callable, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor

logger = logging.getLogger(__name__)

EXPIRY_SWEEP_JOB_ID = "payment_qr_expiry_sweep"


class ExpirySweepScheduler:
    """
    Background scheduler owning the expiry sweep job.

    Uses the in-memory job store: the job is registered again on every
    startup, so nothing needs to survive a restart.
    """

    def __init__(
        self,
        sweep: Callable[[], Awaitable[int]],
        interval_seconds: int
    ):
        """
        Args:
            sweep: Coroutine function performing one sweep, returning the expired count
            interval_seconds: Seconds between sweeps
        """
        self._sweep = sweep
        self._interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None

    def _initialize_scheduler(self) -> AsyncIOScheduler:
        """
        Configure APScheduler.

        Configuration:
        - AsyncIOScheduler on the application's event loop
        - Coalesce: True (skip missed runs)
        - Max instances: 1 (sweeps never overlap)
        """
        executors = {
            'default': AsyncIOExecutor()
        }

        job_defaults = {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': 60
        }

        return AsyncIOScheduler(
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    async def run_sweep(self) -> int:
        """Job body: one sweep, errors logged so the job keeps its schedule."""
        try:
            return await self._sweep()
        except Exception as e:
            logger.error(f"Expiry sweep failed: {e}", exc_info=True)
            return 0

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self):
        """
        Start the scheduler and register the sweep job.

        Must be called from a running event loop (FastAPI lifespan).
        """
        if self.running:
            logger.warning("Scheduler already running")
            return

        self._scheduler = self._initialize_scheduler()
        self._scheduler.add_job(
            self.run_sweep,
            trigger=IntervalTrigger(seconds=self._interval_seconds),
            id=EXPIRY_SWEEP_JOB_ID,
            name="Expire stale payment QRs",
            replace_existing=True,
        )
        self._scheduler.start()

        job = self._scheduler.get_job(EXPIRY_SWEEP_JOB_ID)
        logger.info(
            f"Expiry sweep scheduled every {self._interval_seconds}s, next_run={job.next_run_time}"
        )

    def shutdown(self, wait: bool = True):
        """
        Shutdown the scheduler gracefully.

        Args:
            wait: Wait for a running sweep to complete before shutdown
        """
        if self.running:
            self._scheduler.shutdown(wait=wait)
            logger.info(f"Scheduler shutdown (wait={wait})")
        self._scheduler = None
