"""Workflow Service - Facade for workflow management, execution and scheduling.

This is a thin facade that delegates to specialized modules:
- Database: durable storage scoped by organization
- WorkflowExecutor: run orchestration
- StatusBroadcaster: dashboard events

Routers talk only to this service.
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Set, Union, TYPE_CHECKING

from core.database import as_utc
from core.logging import get_logger
from constants import (
    TRIGGER_MANUAL,
    EVENT_WORKFLOW_CREATED,
    EVENT_WORKFLOW_UPDATED,
    EVENT_WORKFLOW_DELETED,
    EVENT_STATS_UPDATE,
)
from models.database import Workflow, WorkflowRun, ScheduledWorkflow, utcnow
from services.execution.exceptions import (
    WorkflowNotFoundError,
    WorkflowValidationError,
    ScheduleValidationError,
    ScheduleNotFoundError,
    WorkflowRunError,
)
from services.execution.graph import validate_graph
from services.execution.models import WorkflowSnapshot

if TYPE_CHECKING:
    from core.database import Database
    from services.execution.executor import WorkflowExecutor
    from services.status_broadcaster import StatusBroadcaster

logger = get_logger(__name__)

SCHEDULE_LIST_LIMIT = 20
RECENT_RUNS_LIMIT = 10


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def _duration_ms(run: WorkflowRun) -> Optional[int]:
    started, finished = as_utc(run.started_at), as_utc(run.finished_at)
    if not started or not finished:
        return None
    return int((finished - started).total_seconds() * 1000)


def workflow_to_dict(workflow: Workflow) -> Dict[str, Any]:
    return {
        "id": workflow.id,
        "name": workflow.name,
        "description": workflow.description,
        "nodes": workflow.nodes,
        "edges": workflow.edges,
        "enabled": workflow.enabled,
        "organizationId": workflow.organization_id,
        "createdAt": _iso(workflow.created_at),
        "updatedAt": _iso(workflow.updated_at),
    }


def run_to_dict(run: WorkflowRun, workflow_name: Optional[str] = None) -> Dict[str, Any]:
    data = {
        "id": run.id,
        "workflowId": run.workflow_id,
        "organizationId": run.organization_id,
        "status": run.status,
        "trigger": run.trigger,
        "payload": run.payload,
        "nodeResults": run.node_results or [],
        "error": run.error,
        "startedAt": _iso(run.started_at),
        "finishedAt": _iso(run.finished_at),
        "duration": _duration_ms(run),
    }
    if workflow_name is not None:
        data["workflowName"] = workflow_name
    return data


def schedule_to_dict(schedule: ScheduledWorkflow) -> Dict[str, Any]:
    return {
        "id": schedule.id,
        "workflowId": schedule.workflow_id,
        "organizationId": schedule.organization_id,
        "scheduledAt": _iso(schedule.scheduled_at),
        "payload": schedule.payload,
        "status": schedule.status,
        "runId": schedule.run_id,
        "errorMessage": schedule.error_message,
        "claimedAt": _iso(schedule.claimed_at),
        "executedAt": _iso(schedule.executed_at),
        "createdAt": _iso(schedule.created_at),
    }


def parse_schedule_time(value: Union[str, datetime, None]) -> datetime:
    """Parse an ISO-8601 time into an aware UTC datetime. Naive means UTC.

    Raises:
        ScheduleValidationError: missing or malformed value
    """
    if value is None or value == "":
        raise ScheduleValidationError("scheduledAt is required")
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise ScheduleValidationError(f"Invalid scheduledAt: {value}") from e
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class WorkflowService:
    """Workflow management, execution and scheduling facade."""

    def __init__(self, database: "Database", executor: "WorkflowExecutor",
                 broadcaster: "StatusBroadcaster"):
        self.database = database
        self.executor = executor
        self.broadcaster = broadcaster
        self._background_runs: Set[asyncio.Task] = set()

    # =========================================================================
    # Workflow CRUD
    # =========================================================================

    async def list_workflows(self, organization_id: str) -> List[Dict[str, Any]]:
        workflows = await self.database.list_workflows(organization_id)
        return [workflow_to_dict(w) for w in workflows]

    async def get_workflow(self, workflow_id: str, organization_id: str) -> Dict[str, Any]:
        workflow = await self.database.get_workflow(workflow_id, organization_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow_to_dict(workflow)

    async def create_workflow(self, organization_id: str, name: str,
                              nodes: List[Dict[str, Any]], edges: List[Dict[str, Any]],
                              description: Optional[str] = None,
                              enabled: bool = True) -> Dict[str, Any]:
        self._validate_definition(nodes, edges)
        workflow = await self.database.create_workflow(
            organization_id, name, nodes, edges, description=description, enabled=enabled
        )
        logger.info("Workflow created", workflow_id=workflow.id, organization_id=organization_id)

        data = workflow_to_dict(workflow)
        self.broadcaster.emit_dashboard_event(organization_id, EVENT_WORKFLOW_CREATED, {
            "id": workflow.id, "name": workflow.name, "enabled": workflow.enabled,
        })
        await self._emit_stats(organization_id)
        return data

    async def update_workflow(self, workflow_id: str, organization_id: str,
                              **fields: Any) -> Dict[str, Any]:
        """Update name, description, nodes, edges or enabled.

        Only the given fields change. description may be cleared with None;
        the other fields reject None.
        """
        for key in ("name", "nodes", "edges", "enabled"):
            if key in fields and fields[key] is None:
                raise WorkflowValidationError(f"Workflow {key} cannot be null")
        if "nodes" in fields or "edges" in fields:
            current = await self.database.get_workflow(workflow_id, organization_id)
            if current is None:
                raise WorkflowNotFoundError(workflow_id)
            self._validate_definition(fields.get("nodes", current.nodes),
                                      fields.get("edges", current.edges))

        workflow = await self.database.update_workflow(workflow_id, organization_id, **fields)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        logger.info("Workflow updated", workflow_id=workflow_id, fields=sorted(fields))

        self.broadcaster.emit_dashboard_event(organization_id, EVENT_WORKFLOW_UPDATED, {
            "id": workflow.id, "name": workflow.name, "enabled": workflow.enabled,
        })
        if "enabled" in fields:
            await self._emit_stats(organization_id)
        return workflow_to_dict(workflow)

    async def delete_workflow(self, workflow_id: str, organization_id: str) -> None:
        if not await self.database.delete_workflow(workflow_id, organization_id):
            raise WorkflowNotFoundError(workflow_id)
        logger.info("Workflow deleted", workflow_id=workflow_id)
        self.broadcaster.emit_dashboard_event(organization_id, EVENT_WORKFLOW_DELETED,
                                              {"id": workflow_id})
        await self._emit_stats(organization_id)

    async def duplicate_workflow(self, workflow_id: str, organization_id: str) -> Dict[str, Any]:
        """Copy a workflow as "<name> (Copy)", disabled."""
        source = await self.database.get_workflow(workflow_id, organization_id)
        if source is None:
            raise WorkflowNotFoundError(workflow_id)
        return await self.create_workflow(
            organization_id,
            f"{source.name} (Copy)",
            list(source.nodes or []),
            list(source.edges or []),
            description=source.description,
            enabled=False,
        )

    @staticmethod
    def _validate_definition(nodes: Any, edges: Any) -> None:
        snapshot = WorkflowSnapshot.from_definition("", "", "", nodes, edges)
        validate_graph(snapshot.nodes, snapshot.edges)

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute_workflow(self, workflow_id: str, organization_id: str,
                               payload: Optional[Dict[str, Any]] = None,
                               start_node_id: Optional[str] = None,
                               wait: bool = True) -> Dict[str, Any]:
        """Trigger a run on demand.

        With wait=False the run row exists when this returns and the walk
        continues in the background.

        Raises:
            WorkflowValidationError: rejected before any write
            WorkflowRunError: run-level failure (wait=True only)
        """
        prepared = await self.executor.prepare(
            workflow_id, payload, organization_id, start_node_id, trigger=TRIGGER_MANUAL
        )
        if not wait:
            task = asyncio.create_task(self._run_in_background(prepared))
            self._background_runs.add(task)
            task.add_done_callback(self._background_runs.discard)
            return {"runId": prepared.run_id}

        outcome = await self.executor.run(prepared)
        return {"runId": outcome.run_id, "status": outcome.status}

    async def _run_in_background(self, prepared) -> None:
        try:
            await self.executor.run(prepared)
        except WorkflowRunError as e:
            logger.error("Background run failed", run_id=e.run_id, error=str(e))

    async def wait_for_background_runs(self) -> None:
        if self._background_runs:
            await asyncio.gather(*list(self._background_runs), return_exceptions=True)

    # =========================================================================
    # Scheduling
    # =========================================================================

    async def schedule_workflow(self, workflow_id: str, organization_id: str,
                                scheduled_at: Union[str, datetime, None],
                                payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Create a PENDING schedule for a future time.

        Raises:
            ScheduleValidationError: malformed or non-future time
            WorkflowNotFoundError: workflow missing in the organization
        """
        when = parse_schedule_time(scheduled_at)
        if when <= utcnow():
            raise ScheduleValidationError("Scheduled time must be in the future")

        workflow = await self.database.get_workflow(workflow_id, organization_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)

        schedule = await self.database.create_schedule(ScheduledWorkflow(
            workflow_id=workflow_id,
            organization_id=organization_id,
            scheduled_at=when,
            payload=payload,
        ))
        logger.info("Workflow scheduled", workflow_id=workflow_id, schedule_id=schedule.id,
                    scheduled_at=when.isoformat())
        data = schedule_to_dict(schedule)
        data["scheduledAt"] = when.isoformat()
        return data

    async def list_schedules(self, workflow_id: str, organization_id: str) -> List[Dict[str, Any]]:
        schedules = await self.database.list_schedules(workflow_id, organization_id,
                                                       limit=SCHEDULE_LIST_LIMIT)
        return [schedule_to_dict(s) for s in schedules]

    async def cancel_schedule(self, workflow_id: str, organization_id: str,
                              schedule_id: str) -> None:
        if not await self.database.cancel_schedule(schedule_id, workflow_id, organization_id):
            raise ScheduleNotFoundError(schedule_id)
        logger.info("Schedule cancelled", schedule_id=schedule_id, workflow_id=workflow_id)

    # =========================================================================
    # Run history & dashboard
    # =========================================================================

    async def list_runs(self, workflow_id: str, organization_id: str,
                        limit: int = 50) -> List[Dict[str, Any]]:
        runs = await self.database.list_runs(workflow_id, organization_id, limit=limit)
        return [run_to_dict(r) for r in runs]

    async def get_run(self, workflow_id: str, run_id: str,
                      organization_id: str) -> Optional[Dict[str, Any]]:
        run = await self.database.get_run(run_id, organization_id)
        if run is None or run.workflow_id != workflow_id:
            return None
        return run_to_dict(run)

    async def recent_runs(self, organization_id: str,
                          limit: int = RECENT_RUNS_LIMIT) -> List[Dict[str, Any]]:
        rows = await self.database.list_recent_runs(organization_id, limit=limit)
        return [run_to_dict(run, workflow_name=name or "Deleted workflow") for run, name in rows]

    async def dashboard_stats(self, organization_id: str) -> Dict[str, Any]:
        return await self.database.get_dashboard_stats(organization_id)

    async def _emit_stats(self, organization_id: str) -> None:
        stats = await self.dashboard_stats(organization_id)
        self.broadcaster.emit_dashboard_event(organization_id, EVENT_STATS_UPDATE, stats)
