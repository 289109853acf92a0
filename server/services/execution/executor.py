"""Workflow executor with breadth-first frontier execution.

Implements:
- Validation before any write (missing/disabled workflow, malformed graph)
- Fork/Join execution of each frontier with asyncio.gather
- Runtime conditional branching through the GraphWalker
- Node result persistence after every frontier
- A hard node execution ceiling that bounds cyclic graphs
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional, TYPE_CHECKING

from core.logging import get_logger
from constants import (
    RUN_RUNNING,
    RUN_SUCCESS,
    RUN_FAILED,
    TRIGGER_MANUAL,
    WORKFLOW_RESULT_NODE_ID,
    NODE_STATUS_RUNNING,
    NODE_STATUS_SUCCESS,
    NODE_STATUS_ERROR,
    EVENT_NEW_RUN,
    EVENT_RUN_COMPLETE,
    EVENT_STATS_UPDATE,
    EVENT_INTEGRATION_MISSING,
)
from models.database import WorkflowRun, utcnow
from .exceptions import (
    WorkflowNotFoundError,
    WorkflowValidationError,
    WorkflowRunError,
    NodeLimitExceededError,
)
from .graph import GraphWalker, validate_graph
from .models import NodeResult, NodeExecutionContext, WorkflowSnapshot

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database
    from services.integration_check import IntegrationChecker
    from services.node_executor import NodeExecutorRegistry
    from services.status_broadcaster import StatusBroadcaster

logger = get_logger(__name__)


@dataclass
class PreparedRun:
    """A validated run whose row already exists in RUNNING state."""
    run_id: str
    snapshot: WorkflowSnapshot
    walker: GraphWalker
    entry_node_ids: List[str]
    payload: Dict[str, Any]
    started_at: datetime
    results: List[NodeResult] = field(default_factory=list)

    @property
    def organization_id(self) -> str:
        return self.snapshot.organization_id


@dataclass
class RunOutcome:
    run_id: str
    status: str
    results: List[NodeResult]

    @property
    def success(self) -> bool:
        return self.status == RUN_SUCCESS


def _duration_ms(started_at: datetime, finished_at: datetime) -> int:
    return int((finished_at - started_at).total_seconds() * 1000)


class WorkflowExecutor:
    """Executes one workflow run at a time per call; calls may overlap.

    Features:
    - Immutable graph snapshot per run
    - Parallel execution of each breadth-first frontier
    - node-status, new-run, run-complete and stats-update events
    - Run-level failures persisted before they are raised
    """

    def __init__(self, database: "Database", registry: "NodeExecutorRegistry",
                 broadcaster: "StatusBroadcaster", integrations: "IntegrationChecker",
                 settings: "Settings"):
        self.database = database
        self.registry = registry
        self.broadcaster = broadcaster
        self.integrations = integrations
        self.max_node_executions = settings.max_node_executions

    async def execute(self, workflow_id: str, payload: Optional[Dict[str, Any]] = None,
                      organization_id: Optional[str] = None,
                      start_node_id: Optional[str] = None,
                      trigger: str = TRIGGER_MANUAL) -> str:
        """Run a workflow to completion and return its run id.

        Raises:
            WorkflowValidationError: nothing was written
            WorkflowRunError: the run is persisted as FAILED
        """
        prepared = await self.prepare(workflow_id, payload, organization_id,
                                      start_node_id, trigger)
        await self.run(prepared)
        return prepared.run_id

    async def prepare(self, workflow_id: str, payload: Optional[Dict[str, Any]] = None,
                      organization_id: Optional[str] = None,
                      start_node_id: Optional[str] = None,
                      trigger: str = TRIGGER_MANUAL) -> PreparedRun:
        """Validate the request, create the RUNNING run row, emit new-run."""
        workflow = await self.database.get_workflow(workflow_id, organization_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        if not workflow.enabled:
            raise WorkflowValidationError(f"Workflow {workflow_id} is disabled")
        if payload is not None and not isinstance(payload, dict):
            raise WorkflowValidationError("Payload must be an object")

        snapshot = WorkflowSnapshot.from_definition(
            workflow.id, workflow.organization_id, workflow.name,
            workflow.nodes, workflow.edges,
        )
        validate_graph(snapshot.nodes, snapshot.edges)
        walker = GraphWalker(snapshot.nodes, snapshot.edges)

        if start_node_id is not None:
            if not walker.has_node(start_node_id):
                raise WorkflowValidationError(f"Start node {start_node_id} not found in workflow")
            entry_node_ids = [start_node_id]
        else:
            entry_node_ids = walker.entry_points()
            if not entry_node_ids and snapshot.nodes:
                # Every node has an incoming edge: start from the first one
                entry_node_ids = [snapshot.nodes[0].id]

        cycle = walker.find_cycle()
        if cycle:
            logger.warning("Workflow graph contains a cycle",
                           workflow_id=workflow_id, cycle=cycle,
                           limit=self.max_node_executions)

        started_at = utcnow()
        run = await self.database.create_run(WorkflowRun(
            workflow_id=workflow.id,
            organization_id=workflow.organization_id,
            status=RUN_RUNNING,
            trigger=trigger,
            payload=payload,
            node_results=[],
            started_at=started_at,
        ))
        prepared = PreparedRun(
            run_id=run.id,
            snapshot=snapshot,
            walker=walker,
            entry_node_ids=entry_node_ids,
            payload=dict(payload or {}),
            started_at=started_at,
        )

        logger.info("Workflow run started", run_id=run.id, workflow_id=workflow.id,
                    trigger=trigger, entry_nodes=entry_node_ids)
        self.broadcaster.emit_dashboard_event(prepared.organization_id, EVENT_NEW_RUN, {
            "id": run.id,
            "workflowId": workflow.id,
            "workflowName": workflow.name,
            "status": RUN_RUNNING,
            "trigger": trigger,
            "startedAt": prepared.started_at.isoformat(),
        })
        return prepared

    async def run(self, prepared: PreparedRun) -> RunOutcome:
        """Walk the graph of a prepared run and finalize it.

        Raises:
            WorkflowRunError: run-level failure (already persisted as FAILED)
        """
        try:
            await self._check_integrations(prepared)
            await self._walk(prepared)
        except Exception as e:
            await self._fail_run(prepared, e)
            if isinstance(e, WorkflowRunError):
                raise
            raise WorkflowRunError(prepared.run_id, str(e) or type(e).__name__) from e

        status = RUN_SUCCESS if all(r.success for r in prepared.results) else RUN_FAILED
        await self._finish_run(prepared, status)
        return RunOutcome(prepared.run_id, status, list(prepared.results))

    # =========================================================================
    # Traversal
    # =========================================================================

    async def _walk(self, prepared: PreparedRun) -> None:
        frontier = list(dict.fromkeys(prepared.entry_node_ids))
        outputs: Dict[str, Any] = {}
        executed = 0

        while frontier:
            if executed + len(frontier) > self.max_node_executions:
                raise NodeLimitExceededError(prepared.run_id, self.max_node_executions, executed)

            # Node ids shadow payload keys; "payload" and "nodes" are never shadowed
            node_input = {**prepared.payload, **outputs,
                          "payload": prepared.payload, "nodes": dict(outputs)}
            previous = tuple(prepared.results)

            frontier_results = await asyncio.gather(*(
                self._execute_node(prepared, node_id, node_input, previous)
                for node_id in frontier
            ))
            executed += len(frontier)

            prepared.results.extend(frontier_results)
            for result in frontier_results:
                outputs[result.node_id] = result.output

            await self.database.update_run(
                prepared.run_id,
                node_results=[r.to_dict() for r in prepared.results],
            )

            next_frontier: List[str] = []
            for result in frontier_results:
                for target in prepared.walker.next_nodes(result.node_id, result):
                    if target not in next_frontier:
                        next_frontier.append(target)
            frontier = next_frontier

    async def _execute_node(self, prepared: PreparedRun, node_id: str,
                            node_input: Dict[str, Any],
                            previous: tuple) -> NodeResult:
        node = prepared.walker.get_node(node_id)
        org = prepared.organization_id
        workflow_id = prepared.snapshot.workflow_id

        self.broadcaster.emit_node_status(org, prepared.run_id, node_id, NODE_STATUS_RUNNING,
                                          workflow_id=workflow_id)

        context = NodeExecutionContext(
            workflow_id=workflow_id,
            run_id=prepared.run_id,
            organization_id=org,
            node_id=node_id,
            node_type=node.type,
            input=node_input,
            payload=prepared.payload,
            previous_results=previous,
            credentials=await self.integrations.get_credentials(org, node.type),
        )
        result = await self.registry.execute(node, context)

        if result.success:
            self.broadcaster.emit_node_status(org, prepared.run_id, node_id, NODE_STATUS_SUCCESS,
                                              workflow_id=workflow_id)
        else:
            self.broadcaster.emit_node_status(org, prepared.run_id, node_id, NODE_STATUS_ERROR,
                                              error=result.error, workflow_id=workflow_id)
        return result

    async def _check_integrations(self, prepared: PreparedRun) -> None:
        """Emit integration-missing for unconfigured integrations (non-blocking)."""
        try:
            status = await self.integrations.check_workflow(prepared.organization_id,
                                                            prepared.snapshot.nodes)
        except Exception as e:
            logger.warning("Integration check failed", run_id=prepared.run_id, error=str(e))
            return
        if status.all_configured:
            return

        logger.warning("Workflow has unconfigured integrations",
                       run_id=prepared.run_id,
                       missing=[m.required_integration for m in status.missing])
        self.broadcaster.emit_dashboard_event(prepared.organization_id, EVENT_INTEGRATION_MISSING, {
            "workflowId": prepared.snapshot.workflow_id,
            "workflowName": prepared.snapshot.name,
            "runId": prepared.run_id,
            "missing": [m.to_dict() for m in status.missing],
            "message": status.summary(),
        })

    # =========================================================================
    # Finalization
    # =========================================================================

    async def _finish_run(self, prepared: PreparedRun, status: str,
                          error: Optional[str] = None) -> None:
        finished_at = utcnow()
        await self.database.update_run(
            prepared.run_id,
            status=status,
            finished_at=finished_at,
            error=error,
            node_results=[r.to_dict() for r in prepared.results],
        )
        logger.info("Workflow run finished", run_id=prepared.run_id, status=status,
                    nodes=len(prepared.results), error=error)
        self._emit_completion(prepared, status, finished_at, error)
        if status == RUN_FAILED:
            failed = [r.node_id for r in prepared.results if not r.success]
            self.broadcaster.emit_notification(
                prepared.organization_id,
                "Workflow run failed",
                error or f"{prepared.snapshot.name}: failed nodes {', '.join(failed)}",
                level="error",
                category="workflow",
            )
        await self._emit_stats(prepared.organization_id)

    async def _fail_run(self, prepared: PreparedRun, error: Exception) -> None:
        message = str(error) or type(error).__name__
        logger.error("Workflow run failed", run_id=prepared.run_id,
                     workflow_id=prepared.snapshot.workflow_id, error=message)
        prepared.results.append(NodeResult(
            node_id=WORKFLOW_RESULT_NODE_ID,
            success=False,
            error=message,
            duration_ms=0,
        ))
        try:
            await self._finish_run(prepared, RUN_FAILED, error=message)
            return
        except Exception as e:
            logger.error("Failed to persist failed run", run_id=prepared.run_id, error=str(e))

        # Status and error must land even when the node results cannot be written
        finished_at = utcnow()
        try:
            await self.database.update_run(prepared.run_id, status=RUN_FAILED,
                                           finished_at=finished_at, error=message)
        except Exception as e:
            logger.error("Failed to mark run as failed", run_id=prepared.run_id, error=str(e))
            return
        self._emit_completion(prepared, RUN_FAILED, finished_at, message)
        await self._emit_stats(prepared.organization_id)

    def _emit_completion(self, prepared: PreparedRun, status: str,
                         finished_at: datetime, error: Optional[str]) -> None:
        data = {
            "id": prepared.run_id,
            "workflowId": prepared.snapshot.workflow_id,
            "workflowName": prepared.snapshot.name,
            "status": status,
            "startedAt": prepared.started_at.isoformat(),
            "finishedAt": finished_at.isoformat(),
            "duration": _duration_ms(prepared.started_at, finished_at),
            "nodeCount": len(prepared.results),
            "failedNodes": [r.node_id for r in prepared.results if not r.success],
        }
        if error is not None:
            data["error"] = error
        self.broadcaster.emit_dashboard_event(prepared.organization_id, EVENT_RUN_COMPLETE, data)

    async def _emit_stats(self, organization_id: str) -> None:
        try:
            stats = await self.database.get_dashboard_stats(organization_id)
        except Exception as e:
            logger.error("Failed to compute dashboard stats", organization_id=organization_id,
                         error=str(e))
            return
        self.broadcaster.emit_dashboard_event(organization_id, EVENT_STATS_UPDATE, stats)
