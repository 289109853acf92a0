"""SQLModel database models and tables."""

import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import func

from constants import RUN_PENDING, SCHEDULE_PENDING, TRIGGER_MANUAL


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Workflow(SQLModel, table=True):
    """Workflow definitions (React Flow nodes + edges)."""

    __tablename__ = "workflows"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=255)
    organization_id: str = Field(index=True, max_length=255)
    name: str = Field(max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    nodes: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    edges: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    enabled: bool = Field(default=True)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class WorkflowRun(SQLModel, table=True):
    """One execution of a workflow.

    workflow_id carries no foreign key: runs are append-only history and may
    outlive the workflow they executed.
    """

    __tablename__ = "workflow_runs"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=255)
    workflow_id: str = Field(index=True, max_length=255)
    organization_id: str = Field(index=True, max_length=255)
    status: str = Field(default=RUN_PENDING, index=True, max_length=50)
    trigger: str = Field(default=TRIGGER_MANUAL, max_length=50)
    payload: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    node_results: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    error: Optional[str] = Field(default=None, max_length=2000)
    started_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True))
    )
    finished_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )


class ScheduledWorkflow(SQLModel, table=True):
    """Deferred, one-shot request to execute a workflow."""

    __tablename__ = "scheduled_workflows"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=255)
    workflow_id: str = Field(index=True, max_length=255)
    organization_id: str = Field(index=True, max_length=255)
    scheduled_at: datetime = Field(sa_column=Column(DateTime(timezone=True), index=True))
    payload: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    status: str = Field(default=SCHEDULE_PENDING, index=True, max_length=50)
    run_id: Optional[str] = Field(default=None, max_length=255)
    error_message: Optional[str] = Field(default=None, max_length=2000)
    claimed_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    executed_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )


class IntegrationConnection(SQLModel, table=True):
    """Third-party integration credentials stored for an organization."""

    __tablename__ = "integration_connections"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=255)
    organization_id: str = Field(index=True, max_length=255)
    type: str = Field(index=True, max_length=50)
    credentials: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
