"""Shared fixtures: temporary SQLite database, broadcaster, node registry."""

from typing import Any, Dict, List

import httpx
import pytest

from core.config import Settings
from core.database import Database
from services.execution.executor import WorkflowExecutor
from services.integration_check import IntegrationChecker
from services.node_executor import NodeExecutorRegistry
from services.scheduler import SchedulerLoop
from services.status_broadcaster import StatusBroadcaster
from services.workflow import WorkflowService

ORG_ID = "org-test"
OTHER_ORG_ID = "org-other"


def node(node_id: str, node_type: str, config: Dict[str, Any] = None, label: str = None) -> Dict[str, Any]:
    """React Flow node dict with the type under data.nodeType."""
    data: Dict[str, Any] = {"nodeType": node_type, "config": config or {}}
    if label:
        data["label"] = label
    return {"id": node_id, "type": "custom", "position": {"x": 0, "y": 0}, "data": data}


def edge(source: str, target: str, handle: str = None) -> Dict[str, Any]:
    data = {"id": f"{source}-{target}", "source": source, "target": target}
    if handle is not None:
        data["sourceHandle"] = handle
    return data


def mock_api(request: httpx.Request) -> httpx.Response:
    if request.url.host == "hooks.slack.com":
        return httpx.Response(200, text="ok")
    if request.url.host == "discord.com":
        return httpx.Response(204)
    if request.url.host == "api.twilio.com" and b"15550000000" in request.content:
        return httpx.Response(400, json={"message": "Invalid To number", "code": 21211})
    if request.url.host == "api.twilio.com":
        return httpx.Response(201, json={"sid": "SM123", "status": "queued"})
    if request.url.path == "/fail":
        return httpx.Response(500, json={"error": "boom"})
    if request.url.path == "/text":
        return httpx.Response(200, text="plain body")
    return httpx.Response(200, json={"path": request.url.path, "method": request.method})


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'flowpilot-test.db'}",
        scheduler_enabled=False,
        scheduler_interval_seconds=1,
        max_node_executions=50,
        node_timeout_seconds=5.0,
        cron_secret=None,
        twilio_account_sid=None,
        twilio_auth_token=None,
        smtp_host=None,
        slack_webhook_url=None,
        discord_webhook_url=None,
        log_format="console",
    )


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
def broadcaster() -> StatusBroadcaster:
    return StatusBroadcaster()


@pytest.fixture
def http_requests() -> List[httpx.Request]:
    return []


@pytest.fixture
def http_transport(http_requests) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        http_requests.append(request)
        return mock_api(request)

    return httpx.MockTransport(handler)


@pytest.fixture
def registry(settings, http_transport) -> NodeExecutorRegistry:
    return NodeExecutorRegistry(settings, http_transport=http_transport)


@pytest.fixture
def integrations(database, settings) -> IntegrationChecker:
    return IntegrationChecker(database, settings)


@pytest.fixture
def executor(database, registry, broadcaster, integrations, settings) -> WorkflowExecutor:
    return WorkflowExecutor(database, registry, broadcaster, integrations, settings)


@pytest.fixture
def workflow_service(database, executor, broadcaster) -> WorkflowService:
    return WorkflowService(database, executor, broadcaster)


@pytest.fixture
def scheduler(database, executor, settings) -> SchedulerLoop:
    return SchedulerLoop(database, executor, settings)


@pytest.fixture
def events(broadcaster) -> List[Dict[str, Any]]:
    """Dashboard events emitted for ORG_ID, in order."""
    received: List[Dict[str, Any]] = []
    broadcaster.subscribe(f"dashboard:{ORG_ID}", received.append)
    return received
