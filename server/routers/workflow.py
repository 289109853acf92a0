"""Workflow management, execution and scheduling routes."""

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field
from typing import Dict, Any, List, Optional

from core.container import container
from core.logging import get_logger
from services.execution.exceptions import (
    WorkflowEngineError,
    WorkflowValidationError,
    WorkflowNotFoundError,
    ScheduleNotFoundError,
    WorkflowRunError,
)
from services.workflow import WorkflowService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/workflows", tags=["workflows"])


class WorkflowCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    nodes: List[Dict[str, Any]] = []
    edges: List[Dict[str, Any]] = []
    enabled: bool = True


class WorkflowUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    nodes: Optional[List[Dict[str, Any]]] = None
    edges: Optional[List[Dict[str, Any]]] = None
    enabled: Optional[bool] = None


class WorkflowExecuteRequest(BaseModel):
    model_config = {"populate_by_name": True}

    payload: Optional[Dict[str, Any]] = None
    start_node_id: Optional[str] = Field(default=None, alias="startNodeId")
    wait: bool = True


class WorkflowScheduleRequest(BaseModel):
    model_config = {"populate_by_name": True}

    scheduled_at: str = Field(..., alias="scheduledAt")
    payload: Optional[Dict[str, Any]] = None


def error_response(error: WorkflowEngineError) -> ORJSONResponse:
    """Translate an engine exception into an {ok: false, error} response."""
    content: Dict[str, Any] = {"ok": False, "error": str(error)}
    if isinstance(error, (WorkflowNotFoundError, ScheduleNotFoundError)):
        status_code = 404
    elif isinstance(error, WorkflowValidationError):
        status_code = 400
    else:
        status_code = 500
        if isinstance(error, WorkflowRunError):
            content["runId"] = error.run_id
    return ORJSONResponse(status_code=status_code, content=content)


# ============================================================================
# Workflow CRUD
# ============================================================================

@router.get("")
async def list_workflows(
    organization_id: str = Header(..., alias="X-Organization-Id"),
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    workflows = await workflow_service.list_workflows(organization_id)
    return {"ok": True, "data": workflows}


@router.post("", status_code=201)
async def create_workflow(
    request: WorkflowCreateRequest,
    organization_id: str = Header(..., alias="X-Organization-Id"),
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Create a workflow; the graph is validated before it is stored."""
    try:
        workflow = await workflow_service.create_workflow(
            organization_id,
            request.name,
            request.nodes,
            request.edges,
            description=request.description,
            enabled=request.enabled,
        )
        return {"ok": True, "data": workflow}
    except WorkflowEngineError as e:
        logger.warning("Workflow rejected", error=str(e))
        return error_response(e)


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    organization_id: str = Header(..., alias="X-Organization-Id"),
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    try:
        return {"ok": True, "data": await workflow_service.get_workflow(workflow_id, organization_id)}
    except WorkflowEngineError as e:
        return error_response(e)


@router.put("/{workflow_id}")
async def update_workflow(
    workflow_id: str,
    request: WorkflowUpdateRequest,
    organization_id: str = Header(..., alias="X-Organization-Id"),
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    try:
        workflow = await workflow_service.update_workflow(
            workflow_id, organization_id, **request.model_dump(exclude_unset=True)
        )
        return {"ok": True, "data": workflow}
    except WorkflowEngineError as e:
        logger.warning("Workflow update rejected", workflow_id=workflow_id, error=str(e))
        return error_response(e)


@router.delete("/{workflow_id}")
async def delete_workflow(
    workflow_id: str,
    organization_id: str = Header(..., alias="X-Organization-Id"),
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    try:
        await workflow_service.delete_workflow(workflow_id, organization_id)
        return {"ok": True}
    except WorkflowEngineError as e:
        return error_response(e)


@router.post("/{workflow_id}/duplicate", status_code=201)
async def duplicate_workflow(
    workflow_id: str,
    organization_id: str = Header(..., alias="X-Organization-Id"),
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    try:
        workflow = await workflow_service.duplicate_workflow(workflow_id, organization_id)
        return {"ok": True, "data": workflow}
    except WorkflowEngineError as e:
        return error_response(e)


# ============================================================================
# Execution
# ============================================================================

@router.post("/{workflow_id}/execute")
async def execute_workflow(
    workflow_id: str,
    request: Optional[WorkflowExecuteRequest] = None,
    organization_id: str = Header(..., alias="X-Organization-Id"),
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Execute a workflow on demand.

    With wait=false the run row is created before responding and the graph
    walk continues in the background.
    """
    request = request or WorkflowExecuteRequest()
    try:
        result = await workflow_service.execute_workflow(
            workflow_id,
            organization_id,
            payload=request.payload,
            start_node_id=request.start_node_id,
            wait=request.wait,
        )
        return {"ok": True, "data": result}
    except WorkflowEngineError as e:
        logger.error("Workflow execution failed", workflow_id=workflow_id, error=str(e))
        return error_response(e)


# ============================================================================
# Scheduling
# ============================================================================

@router.post("/{workflow_id}/schedule", status_code=201)
async def schedule_workflow(
    workflow_id: str,
    request: WorkflowScheduleRequest,
    organization_id: str = Header(..., alias="X-Organization-Id"),
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    try:
        schedule = await workflow_service.schedule_workflow(
            workflow_id, organization_id, request.scheduled_at, request.payload
        )
        return {"ok": True, "data": schedule}
    except WorkflowEngineError as e:
        return error_response(e)


@router.get("/{workflow_id}/schedule")
async def list_schedules(
    workflow_id: str,
    organization_id: str = Header(..., alias="X-Organization-Id"),
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    schedules = await workflow_service.list_schedules(workflow_id, organization_id)
    return {"ok": True, "data": schedules}


@router.delete("/{workflow_id}/schedule")
async def cancel_schedule(
    workflow_id: str,
    schedule_id: str = Query(..., alias="scheduleId"),
    organization_id: str = Header(..., alias="X-Organization-Id"),
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Cancel a PENDING schedule."""
    try:
        await workflow_service.cancel_schedule(workflow_id, organization_id, schedule_id)
        return {"ok": True}
    except WorkflowEngineError as e:
        return error_response(e)


# ============================================================================
# Run history
# ============================================================================

@router.get("/{workflow_id}/runs")
async def list_runs(
    workflow_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    organization_id: str = Header(..., alias="X-Organization-Id"),
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    runs = await workflow_service.list_runs(workflow_id, organization_id, limit=limit)
    return {"ok": True, "data": runs}


@router.get("/{workflow_id}/runs/{run_id}")
async def get_run(
    workflow_id: str,
    run_id: str,
    organization_id: str = Header(..., alias="X-Organization-Id"),
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    run = await workflow_service.get_run(workflow_id, run_id, organization_id)
    if run is None:
        return ORJSONResponse(status_code=404, content={"ok": False, "error": f"Run {run_id} not found"})
    return {"ok": True, "data": run}
