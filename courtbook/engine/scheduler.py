"""Polling loop that claims due instances and runs them through the workflow."""

import asyncio
import contextlib
import logging
from dataclasses import dataclass

from courtbook.clients.resilience import EngineError, UnknownPortalError
from courtbook.config import Settings
from courtbook.engine.clock import PortalClock
from courtbook.engine.reconciler import ResultReconciler
from courtbook.engine.submission import SubmissionWorkflow
from courtbook.models.enums import InstanceStatus
from courtbook.models.instance import BookingInstance
from courtbook.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    instance_id: int
    status: InstanceStatus | None
    confirmation_id: str | None = None
    error: str | None = None


class ExecutionScheduler:
    """Cooperative scheduler for booking instances.

    Each tick selects pending instances whose execute time has passed on the
    portal's clock, claims each one with a conditional update and runs the
    winners through a pool of at most ``scheduler_max_workers`` concurrent
    executions. Instances claimed elsewhere are skipped.
    """

    def __init__(
        self,
        db: DatabaseManager,
        workflow: SubmissionWorkflow,
        reconciler: ResultReconciler,
        clock: PortalClock,
        settings: Settings,
    ) -> None:
        self.db = db
        self.workflow = workflow
        self.reconciler = reconciler
        self.clock = clock
        self.interval = settings.scheduler_interval_seconds
        self.clock_sync_interval = settings.clock_sync_interval_seconds
        self._workers = asyncio.Semaphore(settings.scheduler_max_workers)
        self._stopping = asyncio.Event()

    async def tick(self) -> list[TickResult]:
        """Run one scan. Returns the outcome of every instance this tick claimed."""
        if self.clock.is_stale(self.clock_sync_interval):
            await self.clock.sync()

        now = self.clock.now()
        due = await self.db.get_due_instances(now)
        if not due:
            logger.debug("No due instances at %s", now.isoformat())
            return []

        logger.info("Found %d due instance(s)", len(due))
        outcomes = await asyncio.gather(*(self._run(inst) for inst in due))
        return [o for o in outcomes if o is not None]

    async def _run(self, instance: BookingInstance) -> TickResult | None:
        assert instance.id is not None
        async with self._workers:
            if not await self.db.claim_instance(instance.id):
                logger.info("Instance %s already claimed, skipping", instance.id)
                return None
            claimed = instance.model_copy(update={"status": InstanceStatus.PROCESSING})

            try:
                result = await self.workflow.execute(claimed)
            except EngineError as exc:
                status = await self.reconciler.record_failure(claimed, exc, self.clock.now())
                return TickResult(claimed.id, status, error=str(exc))
            except Exception as exc:  # noqa: BLE001
                logger.exception("Unexpected error executing instance %s", claimed.id)
                error = UnknownPortalError(f"Unexpected error: {exc}")
                status = await self.reconciler.record_failure(claimed, error, self.clock.now())
                return TickResult(claimed.id, status, error=str(error))

            status = await self.reconciler.record_success(claimed, result)
            return TickResult(claimed.id, status, confirmation_id=result.confirmation_id)

    async def run_forever(self) -> None:
        """Tick every ``scheduler_interval_seconds`` until ``stop()`` is called."""
        self._stopping.clear()
        logger.info("Scheduler started (every %.0fs)", self.interval)
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception:  # noqa: BLE001
                logger.exception("Scheduler tick failed")
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        self._stopping.set()
