"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from services.execution.executor import WorkflowExecutor
from services.integration_check import IntegrationChecker
from services.node_executor import NodeExecutorRegistry
from services.scheduler import SchedulerLoop
from services.status_broadcaster import StatusBroadcaster
from services.workflow import WorkflowService


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Database
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Event fan-out for the dashboard stream
    broadcaster = providers.Singleton(
        StatusBroadcaster,
    )

    # Node handlers
    node_registry = providers.Singleton(
        NodeExecutorRegistry,
        settings=settings
    )

    integration_checker = providers.Singleton(
        IntegrationChecker,
        database=database,
        settings=settings
    )

    # Execution engine
    workflow_executor = providers.Singleton(
        WorkflowExecutor,
        database=database,
        registry=node_registry,
        broadcaster=broadcaster,
        integrations=integration_checker,
        settings=settings
    )

    workflow_service = providers.Singleton(
        WorkflowService,
        database=database,
        executor=workflow_executor,
        broadcaster=broadcaster
    )

    scheduler = providers.Singleton(
        SchedulerLoop,
        database=database,
        executor=workflow_executor,
        settings=settings
    )


# Global container instance
container = Container()
