import asyncio
from datetime import timedelta

import pytest

from constants import (
    RUN_SUCCESS,
    SCHEDULE_CANCELLED,
    SCHEDULE_EXECUTED,
    SCHEDULE_EXECUTING,
    SCHEDULE_FAILED,
    SCHEDULE_PENDING,
    TRIGGER_SCHEDULE,
)
from models.database import utcnow
from services.execution.exceptions import ScheduleNotFoundError, ScheduleValidationError

from conftest import ORG_ID, edge, node


SIMPLE_NODES = [
    node("start", "trigger-schedule"),
    node("wait", "delay", {"duration": 0}),
]
SIMPLE_EDGES = [edge("start", "wait")]


@pytest.fixture
async def workflow(database):
    return await database.create_workflow(ORG_ID, "Nightly", SIMPLE_NODES, SIMPLE_EDGES)


async def schedule_in(workflow_service, workflow, seconds, payload=None):
    when = utcnow() + timedelta(seconds=seconds)
    return await workflow_service.schedule_workflow(workflow.id, ORG_ID, when.isoformat(), payload)


class TestScheduleCreation:
    async def test_past_time_rejected(self, workflow_service, workflow):
        with pytest.raises(ScheduleValidationError, match="must be in the future"):
            await schedule_in(workflow_service, workflow, -1)

    async def test_malformed_time_rejected(self, workflow_service, workflow):
        with pytest.raises(ScheduleValidationError):
            await workflow_service.schedule_workflow(workflow.id, ORG_ID, "next tuesday")

    async def test_future_time_pending(self, workflow_service, workflow):
        schedule = await schedule_in(workflow_service, workflow, 60)
        assert schedule["status"] == SCHEDULE_PENDING
        assert schedule["runId"] is None

    async def test_naive_time_is_utc(self, workflow_service, workflow):
        naive = (utcnow() + timedelta(hours=1)).replace(tzinfo=None, microsecond=0)
        schedule = await workflow_service.schedule_workflow(workflow.id, ORG_ID, naive.isoformat())
        assert schedule["scheduledAt"] == naive.isoformat() + "+00:00"

    async def test_cancel_pending(self, workflow_service, database, workflow):
        schedule = await schedule_in(workflow_service, workflow, 60)

        await workflow_service.cancel_schedule(workflow.id, ORG_ID, schedule["id"])

        stored = await database.get_schedule(schedule["id"])
        assert stored.status == SCHEDULE_CANCELLED
        with pytest.raises(ScheduleNotFoundError):
            await workflow_service.cancel_schedule(workflow.id, ORG_ID, schedule["id"])


class TestSweep:
    async def test_sweep_before_and_after_due(self, workflow_service, scheduler, database, workflow):
        schedule = await schedule_in(workflow_service, workflow, 60, payload={"batch": 1})

        early = await scheduler.sweep()
        assert early["processed"] == 0

        late = await scheduler.sweep(now=utcnow() + timedelta(seconds=61))
        assert late["processed"] == 1
        result = late["results"][0]
        assert result["scheduleId"] == schedule["id"]
        assert result["status"] == SCHEDULE_EXECUTED

        stored = await database.get_schedule(schedule["id"])
        assert stored.status == SCHEDULE_EXECUTED
        assert stored.run_id == result["runId"]
        assert stored.executed_at is not None

        run = await database.get_run(result["runId"])
        assert run.status == RUN_SUCCESS
        assert run.trigger == TRIGGER_SCHEDULE
        assert run.payload == {"batch": 1}

    async def test_concurrent_sweeps_execute_once(self, workflow_service, scheduler, database, workflow):
        await schedule_in(workflow_service, workflow, 60)
        later = utcnow() + timedelta(seconds=61)

        first, second = await asyncio.gather(scheduler.sweep(now=later), scheduler.sweep(now=later))

        assert first["processed"] + second["processed"] == 1
        runs = await database.list_runs(workflow.id, ORG_ID)
        assert len(runs) == 1

    async def test_executed_schedule_not_picked_again(self, workflow_service, scheduler, workflow):
        await schedule_in(workflow_service, workflow, 60)
        later = utcnow() + timedelta(seconds=61)

        assert (await scheduler.sweep(now=later))["processed"] == 1
        assert (await scheduler.sweep(now=later))["processed"] == 0

    async def test_failed_run_marks_schedule_failed(self, workflow_service, scheduler, database):
        workflow = await database.create_workflow(
            ORG_ID, "Broken", [node("call", "http-request", {"url": "https://api.example.com/fail"})], []
        )
        schedule = await schedule_in(workflow_service, workflow, 60)

        summary = await scheduler.sweep(now=utcnow() + timedelta(seconds=61))

        result = summary["results"][0]
        assert result["status"] == SCHEDULE_FAILED
        assert "call" in result["error"]
        stored = await database.get_schedule(schedule["id"])
        assert stored.status == SCHEDULE_FAILED
        assert stored.run_id == result["runId"]

    async def test_unstartable_workflow_marks_schedule_failed(self, workflow_service, scheduler,
                                                              database, workflow):
        schedule = await schedule_in(workflow_service, workflow, 60)
        await database.update_workflow(workflow.id, ORG_ID, enabled=False)

        summary = await scheduler.sweep(now=utcnow() + timedelta(seconds=61))

        result = summary["results"][0]
        assert result["status"] == SCHEDULE_FAILED
        assert "runId" not in result
        stored = await database.get_schedule(schedule["id"])
        assert stored.status == SCHEDULE_FAILED
        assert "disabled" in stored.error_message

    async def test_stale_claim_recovered(self, workflow_service, scheduler, database, workflow):
        schedule = await schedule_in(workflow_service, workflow, 60)
        claimed = await database.claim_schedule(schedule["id"], utcnow() - timedelta(hours=2))
        assert claimed

        summary = await scheduler.sweep(now=utcnow() + timedelta(seconds=61))

        assert summary["recovered"] == 1
        assert summary["processed"] == 0
        stored = await database.get_schedule(schedule["id"])
        assert stored.status == SCHEDULE_FAILED
        assert "abandoned" in stored.error_message

    async def test_run_id_attached_while_executing(self, workflow_service, scheduler, database,
                                                   registry):
        seen = {}

        async def inspect(node_id, node_type, parameters, context):
            seen["row"] = await database.get_schedule(schedule["id"])
            return None

        registry.register("inspect", inspect)
        workflow = await database.create_workflow(ORG_ID, "Inspect", [node("look", "inspect")], [])
        schedule = await schedule_in(workflow_service, workflow, 60)

        summary = await scheduler.sweep(now=utcnow() + timedelta(seconds=61))

        assert seen["row"].status == SCHEDULE_EXECUTING
        assert seen["row"].run_id == summary["results"][0]["runId"]

    async def test_summary_matches_store_when_claim_recovered_mid_run(
            self, workflow_service, scheduler, database, registry):
        async def recover_everything(node_id, node_type, parameters, context):
            await database.recover_stale_schedules(utcnow() + timedelta(days=1))
            return None

        registry.register("recover", recover_everything)
        workflow = await database.create_workflow(ORG_ID, "Slow", [node("slow", "recover")], [])
        schedule = await schedule_in(workflow_service, workflow, 60)

        summary = await scheduler.sweep(now=utcnow() + timedelta(seconds=61))

        result = summary["results"][0]
        stored = await database.get_schedule(schedule["id"])
        assert stored.status == SCHEDULE_FAILED
        assert result["status"] == stored.status
        assert result["error"] == stored.error_message
        assert stored.run_id == result["runId"]
        run = await database.get_run(result["runId"])
        assert run.status == RUN_SUCCESS

    async def test_batch_size_limits_sweep(self, workflow_service, scheduler, workflow):
        scheduler.batch_size = 2
        for _ in range(3):
            await schedule_in(workflow_service, workflow, 60)
        later = utcnow() + timedelta(seconds=61)

        assert (await scheduler.sweep(now=later))["processed"] == 2
        assert (await scheduler.sweep(now=later))["processed"] == 1


class TestSchedulerLifecycle:
    async def test_start_and_stop_are_idempotent(self, scheduler, database):
        assert scheduler.state == "STOPPED"

        assert await scheduler.start() is True
        assert await scheduler.start() is False
        assert scheduler.is_running
        assert scheduler.status()["state"] == "RUNNING"

        assert await scheduler.stop() is True
        assert await scheduler.stop() is False
        await scheduler.drain(timeout=5)
        assert scheduler.state == "STOPPED"

    async def test_running_loop_sweeps_due_schedules(self, scheduler, database, workflow):
        from models.database import ScheduledWorkflow

        due = await database.create_schedule(ScheduledWorkflow(
            workflow_id=workflow.id,
            organization_id=ORG_ID,
            scheduled_at=utcnow() - timedelta(seconds=5),
        ))

        await scheduler.start()
        try:
            for _ in range(50):
                stored = await database.get_schedule(due.id)
                if stored.status == SCHEDULE_EXECUTED:
                    break
                await asyncio.sleep(0.1)
        finally:
            await scheduler.stop()
            await scheduler.drain(timeout=5)

        assert stored.status == SCHEDULE_EXECUTED
