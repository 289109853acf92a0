"""Scheduled workflow sweeper using APScheduler.

While running, an interval job sweeps due PENDING schedules: each one is
claimed with a conditional UPDATE (PENDING -> EXECUTING), executed, then
moved to EXECUTED or FAILED. The claim guarantees that concurrent sweepers,
in this process or another, execute a due schedule at most once.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from core.logging import get_logger, log_execution_time
from constants import SCHEDULE_EXECUTED, SCHEDULE_FAILED, TRIGGER_SCHEDULE
from models.database import ScheduledWorkflow, utcnow
from services.execution.exceptions import WorkflowRunError

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database
    from services.execution.executor import WorkflowExecutor

logger = get_logger(__name__)

STATE_STOPPED = "STOPPED"
STATE_RUNNING = "RUNNING"


class SchedulerLoop:
    """Drives periodic sweeps of scheduled workflows.

    start() and stop() are idempotent. stop() prevents new sweeps but lets
    an in-flight sweep (and the runs it started) finish.
    """

    JOB_ID = "scheduled-workflow-sweep"

    def __init__(self, database: "Database", executor: "WorkflowExecutor", settings: "Settings"):
        self.database = database
        self.executor = executor
        self.interval_seconds = settings.scheduler_interval_seconds
        self.batch_size = settings.scheduler_batch_size
        self.claim_timeout = timedelta(seconds=settings.schedule_claim_timeout_seconds)
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._current_sweep: Optional[asyncio.Task] = None

    @property
    def state(self) -> str:
        return STATE_RUNNING if self._scheduler is not None else STATE_STOPPED

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    async def start(self) -> bool:
        """Start sweeping; the first sweep runs immediately."""
        if self._scheduler is not None:
            logger.info("Scheduler loop already running")
            return False

        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            self._scheduled_sweep,
            trigger="interval",
            seconds=self.interval_seconds,
            id=self.JOB_ID,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Scheduler loop started", interval_seconds=self.interval_seconds,
                    batch_size=self.batch_size)
        return True

    async def stop(self) -> bool:
        """Stop scheduling new sweeps."""
        if self._scheduler is None:
            logger.info("Scheduler loop already stopped")
            return False

        scheduler, self._scheduler = self._scheduler, None
        scheduler.shutdown(wait=False)
        logger.info("Scheduler loop stopped",
                    sweep_in_flight=self._current_sweep is not None and not self._current_sweep.done())
        return True

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for an in-flight sweep to finish."""
        task = self._current_sweep
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Sweep still running after drain timeout", timeout=timeout)

    def status(self) -> Dict[str, Any]:
        next_run = None
        if self._scheduler is not None:
            job = self._scheduler.get_job(self.JOB_ID)
            if job is not None and job.next_run_time is not None:
                next_run = job.next_run_time.isoformat()
        return {
            "state": self.state,
            "intervalSeconds": self.interval_seconds,
            "batchSize": self.batch_size,
            "nextRunAt": next_run,
        }

    async def _scheduled_sweep(self) -> None:
        """Interval job body. Shielded so scheduler shutdown cannot cancel a sweep."""
        self._current_sweep = asyncio.ensure_future(self.sweep())
        try:
            await asyncio.shield(self._current_sweep)
        except Exception as e:
            logger.error("Scheduled sweep failed", error=str(e))

    # =========================================================================
    # Sweep
    # =========================================================================

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Process due schedules once.

        Returns:
            {processed, results: [{scheduleId, workflowId, runId?, status, error?}],
             recovered, timestamp}. processed counts only schedules this sweep claimed.
        """
        now = now or utcnow()
        start_time = time.monotonic()

        recovered = await self.database.recover_stale_schedules(now - self.claim_timeout)
        if recovered:
            logger.warning("Recovered abandoned schedules", count=recovered)

        due = await self.database.get_due_schedules(now, self.batch_size)
        if due:
            logger.info("Processing due schedules", count=len(due))

        results: List[Dict[str, Any]] = []
        for schedule in due:
            try:
                outcome = await self._process(schedule)
            except Exception as e:
                logger.error("Schedule processing failed", schedule_id=schedule.id, error=str(e))
                outcome = {
                    "scheduleId": schedule.id,
                    "workflowId": schedule.workflow_id,
                    "status": SCHEDULE_FAILED,
                    "error": str(e),
                }
            if outcome is not None:
                results.append(outcome)

        log_execution_time(logger, "scheduled_sweep", start_time, time.monotonic(),
                           due=len(due), processed=len(results))
        return {
            "processed": len(results),
            "results": results,
            "recovered": recovered,
            "timestamp": now.isoformat(),
        }

    async def _process(self, schedule: ScheduledWorkflow) -> Optional[Dict[str, Any]]:
        if not await self.database.claim_schedule(schedule.id, utcnow()):
            logger.info("Schedule already claimed, skipping", schedule_id=schedule.id)
            return None

        result: Dict[str, Any] = {"scheduleId": schedule.id, "workflowId": schedule.workflow_id}
        logger.info("Executing scheduled workflow", schedule_id=schedule.id,
                    workflow_id=schedule.workflow_id)

        try:
            prepared = await self.executor.prepare(
                schedule.workflow_id,
                payload=schedule.payload,
                organization_id=schedule.organization_id,
                trigger=TRIGGER_SCHEDULE,
            )
        except Exception as e:
            logger.error("Scheduled workflow could not start", schedule_id=schedule.id, error=str(e))
            moved = await self.database.fail_schedule(schedule.id, str(e))
            return await self._reconcile(schedule.id, moved,
                                         {**result, "status": SCHEDULE_FAILED, "error": str(e)})

        await self.database.attach_schedule_run(schedule.id, prepared.run_id, utcnow())
        result["runId"] = prepared.run_id

        try:
            outcome = await self.executor.run(prepared)
        except WorkflowRunError as e:
            moved = await self.database.fail_schedule(schedule.id, str(e), run_id=e.run_id)
            return await self._reconcile(schedule.id, moved,
                                         {**result, "status": SCHEDULE_FAILED, "error": str(e)})

        if not outcome.success:
            failed = [r.node_id for r in outcome.results if not r.success]
            error = f"Run finished with failed nodes: {', '.join(failed)}"
            moved = await self.database.fail_schedule(schedule.id, error, run_id=outcome.run_id)
            return await self._reconcile(schedule.id, moved,
                                         {**result, "status": SCHEDULE_FAILED, "error": error})

        moved = await self.database.complete_schedule(schedule.id, outcome.run_id, utcnow())
        if moved:
            logger.info("Scheduled workflow executed", schedule_id=schedule.id, run_id=outcome.run_id)
        return await self._reconcile(schedule.id, moved, {**result, "status": SCHEDULE_EXECUTED})

    async def _reconcile(self, schedule_id: str, moved: bool,
                         result: Dict[str, Any]) -> Dict[str, Any]:
        """Report the stored state when the final transition lost to another writer."""
        if moved:
            return result

        stored = await self.database.get_schedule(schedule_id)
        if stored is None:
            logger.warning("Schedule vanished during execution", schedule_id=schedule_id)
            return result

        logger.warning("Schedule changed state during execution", schedule_id=schedule_id,
                       outcome=result["status"], stored=stored.status)
        reconciled = {**result, "status": stored.status}
        if stored.error_message:
            reconciled["error"] = stored.error_message
        else:
            reconciled.pop("error", None)
        if stored.run_id:
            reconciled["runId"] = stored.run_id
        return reconciled
