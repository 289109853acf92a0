import asyncio

import pytest

from constants import RUN_FAILED, RUN_SUCCESS, TRIGGER_MANUAL
from services.execution.exceptions import (
    NodeLimitExceededError,
    WorkflowNotFoundError,
    WorkflowRunError,
    WorkflowValidationError,
)

from conftest import ORG_ID, OTHER_ORG_ID, edge, node


BRANCHING_NODES = [
    node("start", "delay", {"duration": 0}, label="Start"),
    node("check", "condition", {"field": "payload.ok", "operator": "equals", "value": True}),
    node("notify_ok", "twilio-sms", {"to": "+15551230000", "message": "All good"}),
    node("notify_fail", "twilio-sms", {"to": "+15551230000", "message": "Not ok"}),
]
BRANCHING_EDGES = [
    edge("start", "check"),
    edge("check", "notify_ok", "true"),
    edge("check", "notify_fail", "false"),
]


async def create(database, nodes, edges, org=ORG_ID, enabled=True, name="Test workflow"):
    return await database.create_workflow(org, name, nodes, edges, enabled=enabled)


def node_ids(run):
    return [r["nodeId"] for r in run.node_results]


class TestBranching:
    async def test_true_branch(self, database, executor):
        workflow = await create(database, BRANCHING_NODES, BRANCHING_EDGES)

        run_id = await executor.execute(workflow.id, {"ok": True}, ORG_ID)

        run = await database.get_run(run_id)
        assert run.status == RUN_SUCCESS
        assert node_ids(run) == ["start", "check", "notify_ok"]
        assert all(r["success"] for r in run.node_results)
        assert run.finished_at is not None
        assert run.trigger == TRIGGER_MANUAL

    async def test_false_branch(self, database, executor):
        workflow = await create(database, BRANCHING_NODES, BRANCHING_EDGES)

        run_id = await executor.execute(workflow.id, {"ok": False}, ORG_ID)

        run = await database.get_run(run_id)
        assert node_ids(run) == ["start", "check", "notify_fail"]

    async def test_missing_branch_edge_terminates_cleanly(self, database, executor):
        workflow = await create(database, BRANCHING_NODES[:3], BRANCHING_EDGES[:2])

        run_id = await executor.execute(workflow.id, {"ok": False}, ORG_ID)

        run = await database.get_run(run_id)
        assert run.status == RUN_SUCCESS
        assert node_ids(run) == ["start", "check"]

    async def test_deterministic_results(self, database, executor):
        nodes = [
            node("a", "delay", {"duration": 0}),
            node("b", "condition", {"field": "score", "operator": "greater_than", "value": 50}),
            node("c", "assignment-create", {"title": "Extra practice", "dueDate": "2026-11-01"}),
            node("d", "schedule-check", {"date": "2026-11-01"}),
        ]
        edges = [edge("a", "b"), edge("b", "c", "false"), edge("b", "d", "true")]
        workflow = await create(database, nodes, edges)

        first = await database.get_run(await executor.execute(workflow.id, {"score": 80}, ORG_ID))
        second = await database.get_run(await executor.execute(workflow.id, {"score": 80}, ORG_ID))

        def shape(run):
            return [(r["nodeId"], r["success"]) for r in run.node_results]

        assert shape(first) == shape(second) == [("a", True), ("b", True), ("d", True)]

    async def test_start_node_override(self, database, executor):
        workflow = await create(database, BRANCHING_NODES, BRANCHING_EDGES)

        run_id = await executor.execute(workflow.id, {"ok": True}, ORG_ID, start_node_id="check")

        run = await database.get_run(run_id)
        assert node_ids(run) == ["check", "notify_ok"]


class TestFailureHandling:
    async def test_failed_node_does_not_abort_siblings(self, database, executor):
        nodes = [
            node("root", "delay", {"duration": 0}),
            node("broken", "http-request", {"url": "https://api.example.com/fail"}),
            node("fine", "delay", {"duration": 0}),
            node("after_broken", "delay", {"duration": 0}),
            node("after_fine", "delay", {"duration": 0}),
        ]
        edges = [
            edge("root", "broken"), edge("root", "fine"),
            edge("broken", "after_broken"), edge("fine", "after_fine"),
        ]
        workflow = await create(database, nodes, edges)

        run_id = await executor.execute(workflow.id, {}, ORG_ID)

        run = await database.get_run(run_id)
        assert run.status == RUN_FAILED
        assert node_ids(run) == ["root", "broken", "fine", "after_fine"]
        broken = run.node_results[1]
        assert broken["success"] is False
        assert "500" in broken["error"]

    async def test_cycle_hits_execution_ceiling(self, database, executor):
        executor.max_node_executions = 6
        workflow = await create(
            database,
            [node("a", "delay", {"duration": 0}), node("b", "delay", {"duration": 0})],
            [edge("a", "b"), edge("b", "a")],
        )

        with pytest.raises(NodeLimitExceededError) as exc_info:
            await executor.execute(workflow.id, {}, ORG_ID)

        run = await database.get_run(exc_info.value.run_id)
        assert run.status == RUN_FAILED
        assert "Node execution limit of 6 exceeded" in run.error
        assert len(run.node_results) == 7
        assert run.node_results[-1]["nodeId"] == "workflow"
        assert run.node_results[-1]["success"] is False

    async def test_unexpected_error_persists_failed_run(self, database, executor):
        workflow = await create(database, [node("a", "delay", {"duration": 0})], [])

        async def broken_walk(prepared):
            raise RuntimeError("storage went away")

        executor._walk = broken_walk

        with pytest.raises(WorkflowRunError) as exc_info:
            await executor.execute(workflow.id, {}, ORG_ID)

        run = await database.get_run(exc_info.value.run_id)
        assert run.status == RUN_FAILED
        assert run.error == "storage went away"
        assert run.finished_at is not None

    async def test_unencodable_output_is_still_persisted(self, database, executor):
        workflow = await create(database, [node("start", "trigger-manual")], [])

        run_id = await executor.execute(workflow.id, {"n": 2**70, "tags": {1: "one"}}, ORG_ID)

        run = await database.get_run(run_id)
        assert run.status == RUN_SUCCESS
        assert run.finished_at is not None
        output = run.node_results[0]["output"]
        assert output["n"] == str(2**70)
        assert output["tags"] == {"1": "one"}

    async def test_failed_run_persisted_when_results_cannot_be_written(self, database, executor,
                                                                     monkeypatch):
        workflow = await create(database, [node("a", "delay", {"duration": 0})], [])
        update_run = database.update_run

        async def reject_results(run_id, **fields):
            if "node_results" in fields:
                raise ValueError("node results rejected")
            return await update_run(run_id, **fields)

        monkeypatch.setattr(database, "update_run", reject_results)

        with pytest.raises(WorkflowRunError) as exc_info:
            await executor.execute(workflow.id, {}, ORG_ID)

        run = await database.get_run(exc_info.value.run_id)
        assert run.status == RUN_FAILED
        assert run.finished_at is not None
        assert run.error == "node results rejected"


class TestValidationBeforeWrite:
    async def test_missing_workflow(self, database, executor):
        with pytest.raises(WorkflowNotFoundError):
            await executor.execute("does-not-exist", {}, ORG_ID)

    async def test_other_organization(self, database, executor):
        workflow = await create(database, BRANCHING_NODES, BRANCHING_EDGES)

        with pytest.raises(WorkflowNotFoundError):
            await executor.execute(workflow.id, {}, OTHER_ORG_ID)

    async def test_disabled_workflow(self, database, executor):
        workflow = await create(database, BRANCHING_NODES, BRANCHING_EDGES, enabled=False)

        with pytest.raises(WorkflowValidationError, match="disabled"):
            await executor.execute(workflow.id, {}, ORG_ID)
        assert await database.list_runs(workflow.id, ORG_ID) == []

    async def test_malformed_graph_writes_nothing(self, database, executor):
        workflow = await create(database, [node("a", "delay", {"duration": 0})], [edge("a", "ghost")])

        with pytest.raises(WorkflowValidationError):
            await executor.execute(workflow.id, {}, ORG_ID)
        assert await database.list_runs(workflow.id, ORG_ID) == []

    async def test_non_object_payload(self, database, executor):
        workflow = await create(database, BRANCHING_NODES, BRANCHING_EDGES)

        with pytest.raises(WorkflowValidationError):
            await executor.execute(workflow.id, ["not", "a", "dict"], ORG_ID)

    async def test_unknown_start_node(self, database, executor):
        workflow = await create(database, BRANCHING_NODES, BRANCHING_EDGES)

        with pytest.raises(WorkflowValidationError, match="Start node"):
            await executor.execute(workflow.id, {}, ORG_ID, start_node_id="nope")


class TestFrontierExecution:
    async def test_frontier_nodes_run_concurrently(self, database, executor, registry):
        left_started = asyncio.Event()
        right_started = asyncio.Event()

        async def left(node_id, node_type, parameters, context):
            left_started.set()
            await asyncio.wait_for(right_started.wait(), timeout=2)
            return {"side": "left"}

        async def right(node_id, node_type, parameters, context):
            right_started.set()
            await asyncio.wait_for(left_started.wait(), timeout=2)
            return {"side": "right"}

        registry.register("left", left)
        registry.register("right", right)
        workflow = await create(database, [node("l", "left"), node("r", "right")], [])

        run_id = await executor.execute(workflow.id, {}, ORG_ID)

        run = await database.get_run(run_id)
        assert run.status == RUN_SUCCESS
        assert node_ids(run) == ["l", "r"]

    async def test_upstream_outputs_visible_downstream(self, database, executor, registry):
        seen = {}

        async def capture(node_id, node_type, parameters, context):
            seen.update(context.input)
            return None

        registry.register("capture", capture)
        workflow = await create(
            database,
            [node("first", "assignment-create", {"title": "Essay", "dueDate": "2026-11-01"}),
             node("second", "capture")],
            [edge("first", "second")],
        )

        await executor.execute(workflow.id, {"classId": "c1"}, ORG_ID)

        assert seen["classId"] == "c1"
        assert seen["payload"] == {"classId": "c1"}
        assert seen["first"]["title"] == "Essay"
        assert seen["nodes"]["first"]["title"] == "Essay"

    async def test_node_id_shadows_payload_key_but_not_payload(self, database, executor, registry):
        seen = {}

        async def capture(node_id, node_type, parameters, context):
            seen.update(context.input)
            return None

        registry.register("capture", capture)
        workflow = await create(
            database,
            [node("classId", "delay", {"duration": 0}),
             node("payload", "delay", {"duration": 0}),
             node("last", "capture")],
            [edge("classId", "last"), edge("payload", "last")],
        )

        await executor.execute(workflow.id, {"classId": "c1"}, ORG_ID)

        assert seen["payload"] == {"classId": "c1"}
        assert seen["classId"] != "c1"
        assert set(seen["nodes"]) == {"classId", "payload"}

    async def test_shared_target_runs_once_per_frontier(self, database, executor):
        nodes = [
            node("a", "delay", {"duration": 0}),
            node("b", "delay", {"duration": 0}),
            node("join", "delay", {"duration": 0}),
        ]
        workflow = await create(database, nodes, [edge("a", "join"), edge("b", "join")])

        run = await database.get_run(await executor.execute(workflow.id, {}, ORG_ID))

        assert node_ids(run) == ["a", "b", "join"]


class TestEvents:
    async def test_event_sequence(self, database, executor, events):
        workflow = await create(database, BRANCHING_NODES, BRANCHING_EDGES)

        run_id = await executor.execute(workflow.id, {"ok": True}, ORG_ID)

        types = [e["type"] for e in events]
        assert types[0] == "new-run"
        assert "integration-missing" in types
        assert types[-2:] == ["run-complete", "stats-update"]

        statuses = [(e["data"]["nodeId"], e["data"]["status"]) for e in events
                    if e["type"] == "node-status"]
        assert statuses == [
            ("start", "running"), ("start", "success"),
            ("check", "running"), ("check", "success"),
            ("notify_ok", "running"), ("notify_ok", "success"),
        ]

        complete = events[-2]["data"]
        assert complete["id"] == run_id
        assert complete["status"] == RUN_SUCCESS
        assert complete["nodeCount"] == 3
        assert complete["failedNodes"] == []
        assert complete["duration"] >= 0

        stats = events[-1]["data"]
        assert stats["totalRuns"] == 1
        assert stats["successRate"] == 100.0

    async def test_configured_integration_is_not_reported(self, database, executor, events):
        await database.save_integration(ORG_ID, "twilio", {"accountSid": "AC1", "authToken": "t"})
        workflow = await create(database, BRANCHING_NODES, BRANCHING_EDGES)

        await executor.execute(workflow.id, {"ok": True}, ORG_ID)

        assert "integration-missing" not in [e["type"] for e in events]

    async def test_failed_node_reports_error_status(self, database, executor, events):
        workflow = await create(
            database,
            [node("bad", "http-request", {"url": "https://api.example.com/fail"})],
            [],
        )

        await executor.execute(workflow.id, {}, ORG_ID)

        errors = [e["data"] for e in events
                  if e["type"] == "node-status" and e["data"]["status"] == "error"]
        assert errors[0]["nodeId"] == "bad"
        assert "500" in errors[0]["error"]

    async def test_failed_run_sends_notification(self, database, executor, events):
        workflow = await create(
            database,
            [node("bad", "http-request", {"url": "https://api.example.com/fail"})],
            [],
            name="Grades sync",
        )

        await executor.execute(workflow.id, {}, ORG_ID)

        notifications = [e["data"] for e in events if e["type"] == "notification"]
        assert notifications[0]["level"] == "error"
        assert notifications[0]["message"] == "Grades sync: failed nodes bad"
