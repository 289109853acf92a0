"""Workflow engine exception hierarchy."""

from typing import Any, Optional


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors."""


class WorkflowValidationError(WorkflowEngineError):
    """Request rejected before any state was written."""


class WorkflowNotFoundError(WorkflowValidationError):
    """Workflow does not exist in the caller's organization."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow with ID {workflow_id} not found")


class ScheduleValidationError(WorkflowValidationError):
    """Invalid scheduling request (malformed or non-future time)."""


class ScheduleNotFoundError(WorkflowValidationError):
    """Schedule does not exist or is no longer PENDING."""

    def __init__(self, schedule_id: str):
        self.schedule_id = schedule_id
        super().__init__(f"Scheduled workflow {schedule_id} not found or already executed")


class UnknownNodeTypeError(WorkflowEngineError):
    """No handler is registered for a node type."""

    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"Unknown node type: {node_type}")


class NodeExecutionError(WorkflowEngineError):
    """Raised by handlers to fail a single node.

    output, when given, is recorded on the failed NodeResult.
    """

    def __init__(self, message: str, output: Any = None):
        self.output = output
        super().__init__(message)


class WorkflowRunError(WorkflowEngineError):
    """Run-level failure. The run is already persisted as FAILED."""

    def __init__(self, run_id: str, message: str):
        self.run_id = run_id
        super().__init__(message)


class NodeLimitExceededError(WorkflowRunError):
    """The run hit the node execution ceiling (usually a cyclic graph)."""

    def __init__(self, run_id: str, limit: int, executed: Optional[int] = None):
        self.limit = limit
        self.executed = executed
        super().__init__(run_id, f"Node execution limit of {limit} exceeded")
