"""Modern async database service with SQLModel and SQLAlchemy 2.0.

Every query that selects or mutates workflow data is scoped by organization
id. Schedule state transitions are conditional UPDATEs so that concurrent
sweepers can never move the same row twice.
"""

from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Set, Tuple
from contextlib import asynccontextmanager

from sqlmodel import SQLModel, select
from sqlalchemy import func, update, desc
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from core.config import Settings
from core.logging import get_logger
from constants import (
    RUN_SUCCESS,
    SCHEDULE_PENDING,
    SCHEDULE_EXECUTING,
    SCHEDULE_EXECUTED,
    SCHEDULE_FAILED,
    SCHEDULE_CANCELLED,
)
from models.database import (
    Workflow,
    WorkflowRun,
    ScheduledWorkflow,
    IntegrationConnection,
    utcnow,
)

logger = get_logger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            engine_kwargs: Dict[str, Any] = {
                "echo": self.settings.database_echo,
                "future": True,
            }
            # In-memory SQLite runs on a StaticPool which takes no sizing args
            if ":memory:" not in self.settings.database_url:
                engine_kwargs["pool_size"] = self.settings.database_pool_size
                engine_kwargs["max_overflow"] = self.settings.database_max_overflow

            # Create async engine
            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)

            # Create session factory
            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            # Create tables
            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.async_session = None
            logger.info("Database connections closed")

    @property
    def is_ready(self) -> bool:
        return self.async_session is not None

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    # ============================================================================
    # Workflows
    # ============================================================================

    async def create_workflow(self, organization_id: str, name: str,
                              nodes: List[Dict[str, Any]], edges: List[Dict[str, Any]],
                              description: Optional[str] = None,
                              enabled: bool = True) -> Workflow:
        async with self.get_session() as session:
            workflow = Workflow(
                organization_id=organization_id,
                name=name,
                description=description,
                nodes=nodes,
                edges=edges,
                enabled=enabled,
            )
            session.add(workflow)
            await session.commit()
            await session.refresh(workflow)
            return workflow

    async def get_workflow(self, workflow_id: str,
                           organization_id: Optional[str] = None) -> Optional[Workflow]:
        """Get a workflow, optionally restricted to one organization."""
        async with self.get_session() as session:
            stmt = select(Workflow).where(Workflow.id == workflow_id)
            if organization_id is not None:
                stmt = stmt.where(Workflow.organization_id == organization_id)
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_workflows(self, organization_id: str) -> List[Workflow]:
        async with self.get_session() as session:
            stmt = (select(Workflow)
                    .where(Workflow.organization_id == organization_id)
                    .order_by(desc(Workflow.updated_at)))
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update_workflow(self, workflow_id: str, organization_id: str,
                              **fields: Any) -> Optional[Workflow]:
        """Apply field updates; returns None when not found in the organization."""
        async with self.get_session() as session:
            stmt = select(Workflow).where(
                Workflow.id == workflow_id,
                Workflow.organization_id == organization_id,
            )
            workflow = (await session.execute(stmt)).scalar_one_or_none()
            if workflow is None:
                return None

            for key, value in fields.items():
                setattr(workflow, key, value)
            workflow.updated_at = utcnow()

            await session.commit()
            await session.refresh(workflow)
            return workflow

    async def delete_workflow(self, workflow_id: str, organization_id: str) -> bool:
        """Delete a workflow. Its runs are kept as history."""
        async with self.get_session() as session:
            stmt = select(Workflow).where(
                Workflow.id == workflow_id,
                Workflow.organization_id == organization_id,
            )
            workflow = (await session.execute(stmt)).scalar_one_or_none()
            if workflow is None:
                return False
            await session.delete(workflow)
            await session.commit()
            return True

    # ============================================================================
    # Workflow Runs
    # ============================================================================

    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        async with self.get_session() as session:
            session.add(run)
            await session.commit()
            await session.refresh(run)
            return run

    async def update_run(self, run_id: str, **fields: Any) -> bool:
        """Overwrite run columns. node_results must be passed as a full list."""
        async with self.get_session() as session:
            stmt = update(WorkflowRun).where(WorkflowRun.id == run_id).values(**fields)
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    async def get_run(self, run_id: str,
                      organization_id: Optional[str] = None) -> Optional[WorkflowRun]:
        async with self.get_session() as session:
            stmt = select(WorkflowRun).where(WorkflowRun.id == run_id)
            if organization_id is not None:
                stmt = stmt.where(WorkflowRun.organization_id == organization_id)
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_runs(self, workflow_id: str, organization_id: str,
                        limit: int = 50) -> List[WorkflowRun]:
        async with self.get_session() as session:
            stmt = (select(WorkflowRun)
                    .where(WorkflowRun.workflow_id == workflow_id,
                           WorkflowRun.organization_id == organization_id)
                    .order_by(desc(WorkflowRun.started_at))
                    .limit(limit))
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_recent_runs(self, organization_id: str,
                               limit: int = 10) -> List[Tuple[WorkflowRun, Optional[str]]]:
        """Latest runs with their workflow name (None when the workflow is gone)."""
        async with self.get_session() as session:
            stmt = (select(WorkflowRun, Workflow.name)
                    .outerjoin(Workflow, Workflow.id == WorkflowRun.workflow_id)
                    .where(WorkflowRun.organization_id == organization_id)
                    .order_by(desc(WorkflowRun.started_at))
                    .limit(limit))
            result = await session.execute(stmt)
            return [(row[0], row[1]) for row in result.all()]

    # ============================================================================
    # Scheduled Workflows
    # ============================================================================

    async def create_schedule(self, schedule: ScheduledWorkflow) -> ScheduledWorkflow:
        async with self.get_session() as session:
            session.add(schedule)
            await session.commit()
            await session.refresh(schedule)
            return schedule

    async def get_schedule(self, schedule_id: str) -> Optional[ScheduledWorkflow]:
        async with self.get_session() as session:
            stmt = select(ScheduledWorkflow).where(ScheduledWorkflow.id == schedule_id)
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_schedules(self, workflow_id: str, organization_id: str,
                             limit: int = 20) -> List[ScheduledWorkflow]:
        """Latest schedules of a workflow, newest scheduled time first."""
        async with self.get_session() as session:
            stmt = (select(ScheduledWorkflow)
                    .where(ScheduledWorkflow.workflow_id == workflow_id,
                           ScheduledWorkflow.organization_id == organization_id)
                    .order_by(desc(ScheduledWorkflow.scheduled_at))
                    .limit(limit))
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_due_schedules(self, now: datetime, limit: int) -> List[ScheduledWorkflow]:
        """PENDING schedules with scheduled_at <= now, oldest first."""
        async with self.get_session() as session:
            stmt = (select(ScheduledWorkflow)
                    .where(ScheduledWorkflow.status == SCHEDULE_PENDING,
                           ScheduledWorkflow.scheduled_at <= now)
                    .order_by(ScheduledWorkflow.scheduled_at)
                    .limit(limit))
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def claim_schedule(self, schedule_id: str, now: datetime) -> bool:
        """Atomically move PENDING -> EXECUTING. False when another sweep won."""
        async with self.get_session() as session:
            stmt = (update(ScheduledWorkflow)
                    .where(ScheduledWorkflow.id == schedule_id,
                           ScheduledWorkflow.status == SCHEDULE_PENDING)
                    .values(status=SCHEDULE_EXECUTING, claimed_at=now))
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def complete_schedule(self, schedule_id: str, run_id: str, now: datetime) -> bool:
        """EXECUTING -> EXECUTED."""
        async with self.get_session() as session:
            stmt = (update(ScheduledWorkflow)
                    .where(ScheduledWorkflow.id == schedule_id,
                           ScheduledWorkflow.status == SCHEDULE_EXECUTING)
                    .values(status=SCHEDULE_EXECUTED, executed_at=now, run_id=run_id))
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def attach_schedule_run(self, schedule_id: str, run_id: str, now: datetime) -> bool:
        """Record the run of an EXECUTING schedule and refresh its claim."""
        async with self.get_session() as session:
            stmt = (update(ScheduledWorkflow)
                    .where(ScheduledWorkflow.id == schedule_id,
                           ScheduledWorkflow.status == SCHEDULE_EXECUTING)
                    .values(run_id=run_id, claimed_at=now))
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def fail_schedule(self, schedule_id: str, error_message: str,
                            run_id: Optional[str] = None) -> bool:
        """EXECUTING -> FAILED."""
        values: Dict[str, Any] = {"status": SCHEDULE_FAILED, "error_message": error_message[:2000]}
        if run_id is not None:
            values["run_id"] = run_id
        async with self.get_session() as session:
            stmt = (update(ScheduledWorkflow)
                    .where(ScheduledWorkflow.id == schedule_id,
                           ScheduledWorkflow.status == SCHEDULE_EXECUTING)
                    .values(**values))
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def cancel_schedule(self, schedule_id: str, workflow_id: str,
                              organization_id: str) -> bool:
        """PENDING -> CANCELLED. False when missing or no longer PENDING."""
        async with self.get_session() as session:
            stmt = (update(ScheduledWorkflow)
                    .where(ScheduledWorkflow.id == schedule_id,
                           ScheduledWorkflow.workflow_id == workflow_id,
                           ScheduledWorkflow.organization_id == organization_id,
                           ScheduledWorkflow.status == SCHEDULE_PENDING)
                    .values(status=SCHEDULE_CANCELLED))
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def recover_stale_schedules(self, claimed_before: datetime) -> int:
        """Fail EXECUTING rows whose claim is older than claimed_before.

        A run id already attached to the row is kept.
        """
        async with self.get_session() as session:
            stmt = (update(ScheduledWorkflow)
                    .where(ScheduledWorkflow.status == SCHEDULE_EXECUTING,
                           ScheduledWorkflow.claimed_at < claimed_before)
                    .values(status=SCHEDULE_FAILED,
                            error_message="Execution abandoned: claim timed out"))
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount

    # ============================================================================
    # Integration Connections
    # ============================================================================

    async def save_integration(self, organization_id: str, integration_type: str,
                               credentials: Dict[str, Any]) -> IntegrationConnection:
        """Create or replace an organization's connection of a given type."""
        async with self.get_session() as session:
            stmt = select(IntegrationConnection).where(
                IntegrationConnection.organization_id == organization_id,
                IntegrationConnection.type == integration_type,
            )
            connection = (await session.execute(stmt)).scalar_one_or_none()
            if connection is None:
                connection = IntegrationConnection(
                    organization_id=organization_id,
                    type=integration_type,
                    credentials=credentials,
                )
                session.add(connection)
            else:
                connection.credentials = dict(credentials)

            await session.commit()
            await session.refresh(connection)
            return connection

    async def get_integration_credentials(self, organization_id: str,
                                          integration_type: str) -> Optional[Dict[str, Any]]:
        async with self.get_session() as session:
            stmt = select(IntegrationConnection.credentials).where(
                IntegrationConnection.organization_id == organization_id,
                IntegrationConnection.type == integration_type,
            )
            result = await session.execute(stmt)
            return result.scalars().first()

    async def get_integration_types(self, organization_id: str) -> Set[str]:
        async with self.get_session() as session:
            stmt = select(IntegrationConnection.type).where(
                IntegrationConnection.organization_id == organization_id
            )
            result = await session.execute(stmt)
            return set(result.scalars().all())

    # ============================================================================
    # Statistics
    # ============================================================================

    async def get_dashboard_stats(self, organization_id: str) -> Dict[str, Any]:
        """Workflow and run counts plus success rate for one organization."""
        async with self.get_session() as session:
            total_workflows = await session.scalar(
                select(func.count()).select_from(Workflow)
                .where(Workflow.organization_id == organization_id))
            active_workflows = await session.scalar(
                select(func.count()).select_from(Workflow)
                .where(Workflow.organization_id == organization_id, Workflow.enabled.is_(True)))
            total_runs = await session.scalar(
                select(func.count()).select_from(WorkflowRun)
                .where(WorkflowRun.organization_id == organization_id))
            successful_runs = await session.scalar(
                select(func.count()).select_from(WorkflowRun)
                .where(WorkflowRun.organization_id == organization_id,
                       WorkflowRun.status == RUN_SUCCESS))

        return {
            "totalWorkflows": total_workflows or 0,
            "activeWorkflows": active_workflows or 0,
            "totalRuns": total_runs or 0,
            "successfulRuns": successful_runs or 0,
            "successRate": round(successful_runs / total_runs * 100, 1) if total_runs else 0,
        }
