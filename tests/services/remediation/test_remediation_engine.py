"""
Tests for the remediation execution engine.

Script steps are completed by a fake node agent that polls for pending jobs
and reports results through the projector, the same way the dispatch
collaborator would in production.
"""

import asyncio
from contextlib import asynccontextmanager

import httpx
import pytest

from scripttask.core.exceptions import (
    InvalidExecutionStateError,
    InvalidJobTransitionError,
    InvalidWorkflowError,
    WorkflowDisabledError,
    WorkflowNotFoundError,
)
from scripttask.models.remediation import ExecutionStatus
from scripttask.models.scheduling import JobState
from scripttask.services.remediation import ActionHandler, RemediationEngine
from scripttask.services.remediation.engine import INTERRUPTED_REASON


class FakeAgent:
    """Completes pending jobs; script ids in `hang` are never picked up"""

    def __init__(self, projector, repository, results=None, hang=()):
        self.projector = projector
        self.repository = repository
        self.results = results or {}
        self.hang = set(hang)
        self.completed = []

    async def run(self):
        while True:
            for job in self.repository.list_jobs(states=[JobState.PENDING]):
                if job.script_id in self.hang:
                    continue
                exit_code, stdout = self.results.get(job.script_id, (0, "ok"))
                try:
                    self.projector.record_job_started(job.id)
                    self.projector.record_job_result(
                        job.id,
                        exit_code,
                        stdout=stdout,
                        stderr=None if exit_code == 0 else f"{job.script_id} failed",
                    )
                except InvalidJobTransitionError:
                    continue
                self.completed.append(job.script_id)
            await asyncio.sleep(0.01)


@asynccontextmanager
async def running(agent):
    task = asyncio.create_task(agent.run())
    try:
        yield agent
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


@pytest.fixture
def engine(remediation_repository, projector, action_handler):
    return RemediationEngine(
        remediation_repository, projector, actions=action_handler, poll_interval=0.01
    )


@pytest.fixture
def make_agent(projector, scheduling_repository):
    def _make(results=None, hang=()):
        return FakeAgent(projector, scheduling_repository, results=results, hang=hang)

    return _make


def _script(step_id, script_id, **extra):
    return {"id": step_id, "type": "script", "script_id": script_id, **extra}


CLEANUP_WORKFLOW = {
    "name": "disk-cleanup",
    "start_step": "check",
    "steps": [
        _script("check", "check-disk", on_success="cleanup"),
        _script("cleanup", "cleanup-temp"),
    ],
}

BRANCHING_WORKFLOW = {
    "name": "disk-pressure",
    "start_step": "check",
    "steps": [
        _script("check", "disk-usage", on_success="high?"),
        {
            "id": "high?",
            "type": "condition",
            "condition": {"type": "threshold", "field": "usage", "operator": "gt", "value": 90},
            "on_true": "cleanup",
        },
        _script("cleanup", "cleanup-temp"),
    ],
}


class TestWorkflowExecution:
    """Test suite for end-to-end execution"""

    @pytest.mark.asyncio
    async def test_runs_steps_in_order(self, engine, make_agent, scheduling_repository):
        workflow = engine.create_workflow(CLEANUP_WORKFLOW, created_by="ops")

        async with running(make_agent()) as agent:
            execution = await engine.trigger(workflow.id, "node-1", triggered_by="ops")
            finished = await engine.join(execution.id, timeout=5)

        assert finished.status == ExecutionStatus.SUCCESS
        assert finished.completion_reason == "Workflow completed"
        assert finished.finished_at is not None
        assert finished.duration_seconds >= 0
        assert [r["step_id"] for r in finished.step_results] == ["check", "cleanup"]
        assert all(r["status"] == "success" for r in finished.step_results)
        assert finished.current_step is None
        assert agent.completed == ["check-disk", "cleanup-temp"]

        jobs = scheduling_repository.list_jobs(execution_id=execution.id)
        assert [job.remediation_step_id for job in jobs] == ["check", "cleanup"]
        assert engine.active_execution_ids() == []

    @pytest.mark.asyncio
    async def test_condition_true_branch(self, engine, make_agent):
        workflow = engine.create_workflow(BRANCHING_WORKFLOW)

        async with running(make_agent({"disk-usage": (0, '{"usage": 95}')})):
            execution = await engine.trigger(workflow.id, "node-1")
            finished = await engine.join(execution.id, timeout=5)

        assert finished.status == ExecutionStatus.SUCCESS
        assert [r["step_id"] for r in finished.step_results] == ["check", "high?", "cleanup"]
        assert finished.step_results[1]["condition_result"] is True

    @pytest.mark.asyncio
    async def test_condition_false_ends_workflow(self, engine, make_agent):
        workflow = engine.create_workflow(BRANCHING_WORKFLOW)

        async with running(make_agent({"disk-usage": (0, '{"usage": 40}')})) as agent:
            execution = await engine.trigger(workflow.id, "node-1")
            finished = await engine.join(execution.id, timeout=5)

        assert finished.status == ExecutionStatus.SUCCESS
        assert [r["step_id"] for r in finished.step_results] == ["check", "high?"]
        assert finished.step_results[1]["condition_result"] is False
        assert agent.completed == ["disk-usage"]

    @pytest.mark.asyncio
    async def test_failure_branch_recovers(self, engine, make_agent):
        workflow = engine.create_workflow(
            {
                "name": "restart-or-page",
                "start_step": "restart",
                "steps": [
                    _script("restart", "restart-service", on_failure="page"),
                    _script("page", "page-oncall"),
                ],
            }
        )

        async with running(make_agent({"restart-service": (1, "")})):
            execution = await engine.trigger(workflow.id, "node-2")
            finished = await engine.join(execution.id, timeout=5)

        assert finished.status == ExecutionStatus.SUCCESS
        assert [r["status"] for r in finished.step_results] == ["failed", "success"]
        assert finished.step_results[0]["exit_code"] == 1
        assert finished.step_results[0]["error"] == "restart-service failed"

    @pytest.mark.asyncio
    async def test_unhandled_failure_escalates(
        self, engine, make_agent, remediation_repository, notifier
    ):
        workflow = engine.create_workflow(
            {"name": "check-only", "start_step": "check", "steps": [_script("check", "check-disk")]}
        )

        async with running(make_agent({"check-disk": (2, "")})):
            execution = await engine.trigger(workflow.id, "node-1")
            finished = await engine.join(execution.id, timeout=5)

        assert finished.status == ExecutionStatus.FAILED
        assert finished.completion_reason == "Step 'check' failed: check-disk failed"
        alerts = remediation_repository.list_admin_alerts(execution_id=execution.id)
        assert [a.title for a in alerts] == ["Remediation Workflow Failed: check-only"]
        notifier.notify.assert_called_once()

    @pytest.mark.asyncio
    async def test_escalation_can_be_disabled(self, engine, make_agent, remediation_repository):
        workflow = engine.create_workflow(
            {
                "name": "check-only",
                "start_step": "check",
                "escalation_enabled": False,
                "steps": [_script("check", "check-disk")],
            }
        )

        async with running(make_agent({"check-disk": (2, "")})):
            execution = await engine.trigger(workflow.id, "node-1")
            finished = await engine.join(execution.id, timeout=5)

        assert finished.status == ExecutionStatus.FAILED
        assert remediation_repository.list_admin_alerts(execution_id=execution.id) == []

    @pytest.mark.asyncio
    async def test_webhook_and_delay_steps(self, remediation_repository, projector, notifier):
        transport = httpx.MockTransport(lambda request: httpx.Response(200))
        async with httpx.AsyncClient(transport=transport) as client:
            actions = ActionHandler(
                remediation_repository, projector, notifier=notifier, http_client=client
            )
            engine = RemediationEngine(
                remediation_repository, projector, actions=actions, poll_interval=0.01
            )
            workflow = engine.create_workflow(
                {
                    "name": "notify-later",
                    "start_step": "wait",
                    "steps": [
                        {"id": "wait", "type": "delay", "duration": 0.05, "on_success": "notify"},
                        {"id": "notify", "type": "webhook", "url": "https://hooks.example.com/ops"},
                    ],
                }
            )

            execution = await engine.trigger(workflow.id, "node-1")
            finished = await engine.join(execution.id, timeout=5)

        assert finished.status == ExecutionStatus.SUCCESS
        assert finished.step_results[0]["output"] == "Delayed 0.05s"
        assert finished.step_results[1]["output"] == "Webhook delivered (200)"


class TestTriggering:
    """Test suite for trigger preconditions and idempotency"""

    @pytest.mark.asyncio
    async def test_trigger_is_idempotent_per_workflow_and_node(self, engine, make_agent):
        workflow = engine.create_workflow(CLEANUP_WORKFLOW)

        first = await engine.trigger(workflow.id, "node-1")
        second = await engine.trigger(workflow.id, "node-1")
        other_node = await engine.trigger(workflow.id, "node-2")

        assert second.id == first.id
        assert other_node.id != first.id
        assert sorted(engine.active_execution_ids()) == sorted([first.id, other_node.id])

        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_persisted_running_execution_is_reused(self, engine, remediation_repository):
        workflow = engine.create_workflow(CLEANUP_WORKFLOW)
        orphan = remediation_repository.create_execution(
            {"workflow_id": workflow.id, "workflow_name": workflow.name, "node_id": "node-1"}
        )

        execution = await engine.trigger(workflow.id, "node-1")

        assert execution.id == orphan.id

    @pytest.mark.asyncio
    async def test_disabled_workflow(self, engine):
        workflow = engine.create_workflow({**CLEANUP_WORKFLOW, "enabled": False})

        with pytest.raises(WorkflowDisabledError):
            await engine.trigger(workflow.id, "node-1")

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, engine):
        with pytest.raises(WorkflowNotFoundError):
            await engine.trigger("missing", "node-1")

    @pytest.mark.asyncio
    async def test_stored_workflow_that_became_invalid(self, engine, remediation_repository):
        workflow = remediation_repository.create_workflow(
            {
                "name": "broken",
                "start_step": "a",
                "steps": [_script("a", "x", on_success="b"), _script("b", "y", on_success="a")],
            }
        )

        with pytest.raises(InvalidWorkflowError):
            await engine.trigger(workflow.id, "node-1")
        assert remediation_repository.list_executions(workflow_id=workflow.id) == []


class TestCancellation:
    """Test suite for cancel"""

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_job(self, engine, make_agent, scheduling_repository):
        workflow = engine.create_workflow(CLEANUP_WORKFLOW)

        async with running(make_agent(hang={"check-disk"})):
            execution = await engine.trigger(workflow.id, "node-1")
            await asyncio.sleep(0.05)

            cancelled = await engine.cancel(execution.id)
            finished = await engine.join(execution.id, timeout=1)

        assert cancelled.status == ExecutionStatus.CANCELLED
        assert finished.status == ExecutionStatus.CANCELLED
        assert finished.completion_reason == "Cancelled by user"
        assert finished.step_results == []

        jobs = scheduling_repository.list_jobs(execution_id=execution.id)
        assert [job.state for job in jobs] == [JobState.CANCELLED]
        assert jobs[0].cancelled_reason == "Remediation execution cancelled"

    @pytest.mark.asyncio
    async def test_cancel_during_delay(self, engine):
        workflow = engine.create_workflow(
            {
                "name": "wait",
                "start_step": "wait",
                "steps": [{"id": "wait", "type": "delay", "duration": 30}],
            }
        )
        execution = await engine.trigger(workflow.id, "node-1")
        await asyncio.sleep(0.02)

        await engine.cancel(execution.id)
        finished = await engine.join(execution.id, timeout=1)

        assert finished.status == ExecutionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_finished_execution(self, engine, make_agent):
        workflow = engine.create_workflow(CLEANUP_WORKFLOW)
        async with running(make_agent()):
            execution = await engine.trigger(workflow.id, "node-1")
            await engine.join(execution.id, timeout=5)

        with pytest.raises(InvalidExecutionStateError):
            await engine.cancel(execution.id)

    @pytest.mark.asyncio
    async def test_new_execution_after_cancel(self, engine):
        workflow = engine.create_workflow(CLEANUP_WORKFLOW)
        first = await engine.trigger(workflow.id, "node-1")
        await engine.cancel(first.id)

        second = await engine.trigger(workflow.id, "node-1")

        assert second.id != first.id
        await engine.shutdown()


class TestRetries:
    """Test suite for step retry behaviour"""

    @pytest.mark.asyncio
    async def test_timed_out_step_is_retried(self, engine, make_agent, scheduling_repository):
        workflow = engine.create_workflow(
            {
                "name": "slow",
                "start_step": "slow",
                "escalation_enabled": False,
                "steps": [
                    _script(
                        "slow",
                        "slow-script",
                        timeout=0.05,
                        retry_policy={"max_attempts": 2, "delay_seconds": 0},
                    )
                ],
            }
        )

        async with running(make_agent(hang={"slow-script"})):
            execution = await engine.trigger(workflow.id, "node-1")
            finished = await engine.join(execution.id, timeout=5)

        assert finished.status == ExecutionStatus.FAILED
        result = finished.step_results[0]
        assert result["retry_count"] == 2
        assert result["error"] == "Step 'slow' timed out after 0.05s"

        jobs = scheduling_repository.list_jobs(execution_id=execution.id)
        assert len(jobs) == 3
        assert all(job.state == JobState.CANCELLED for job in jobs)
        assert all(job.cancelled_reason == "Step timed out" for job in jobs)

    @pytest.mark.asyncio
    async def test_failed_exit_code_is_not_retried(self, engine, make_agent, scheduling_repository):
        workflow = engine.create_workflow(
            {
                "name": "no-retry",
                "start_step": "check",
                "escalation_enabled": False,
                "steps": [
                    _script("check", "check-disk", retry_policy={"max_attempts": 3, "delay_seconds": 0})
                ],
            }
        )

        async with running(make_agent({"check-disk": (1, "")})):
            execution = await engine.trigger(workflow.id, "node-1")
            finished = await engine.join(execution.id, timeout=5)

        assert finished.step_results[0]["retry_count"] == 0
        assert len(scheduling_repository.list_jobs(execution_id=execution.id)) == 1


class TestRollback:
    """Test suite for automatic and manual rollback"""

    ROLLBACK_WORKFLOW = {
        "name": "rotate-and-restart",
        "start_step": "rotate",
        "escalation_enabled": False,
        "rollback_enabled": True,
        "steps": [
            _script("rotate", "rotate-logs", rollback_script_id="unrotate-logs", on_success="restart"),
            _script("restart", "restart-service"),
        ],
    }

    @pytest.mark.asyncio
    async def test_failed_execution_is_rolled_back(
        self, engine, make_agent, scheduling_repository
    ):
        workflow = engine.create_workflow(self.ROLLBACK_WORKFLOW)

        async with running(make_agent({"restart-service": (1, "")})):
            execution = await engine.trigger(workflow.id, "node-1")
            finished = await engine.join(execution.id, timeout=5)

        assert finished.status == ExecutionStatus.ROLLED_BACK
        assert finished.alerts[-1]["type"] == "rollback"

        jobs = scheduling_repository.list_jobs(execution_id=execution.id)
        assert [job.script_id for job in jobs] == ["rotate-logs", "restart-service", "unrotate-logs"]
        assert "rollback" in jobs[-1].tags

    @pytest.mark.asyncio
    async def test_manual_rollback(self, engine, make_agent, scheduling_repository):
        workflow = engine.create_workflow({**self.ROLLBACK_WORKFLOW, "rollback_enabled": False})

        async with running(make_agent({"restart-service": (1, "")})):
            execution = await engine.trigger(workflow.id, "node-1")
            failed = await engine.join(execution.id, timeout=5)
            assert failed.status == ExecutionStatus.FAILED

            rolled_back = await engine.rollback_execution(execution.id)

        assert rolled_back.status == ExecutionStatus.ROLLED_BACK
        assert scheduling_repository.list_jobs(execution_id=execution.id)[-1].script_id == "unrotate-logs"

    @pytest.mark.asyncio
    async def test_manual_rollback_requires_failed_execution(self, engine, make_agent):
        workflow = engine.create_workflow(CLEANUP_WORKFLOW)

        async with running(make_agent()):
            execution = await engine.trigger(workflow.id, "node-1")
            await engine.join(execution.id, timeout=5)

        with pytest.raises(InvalidExecutionStateError):
            await engine.rollback_execution(execution.id)


class TestRecoveryAndAdministration:
    """Test suite for initialize and workflow administration"""

    @pytest.mark.asyncio
    async def test_initialize_fails_interrupted_executions(self, engine, remediation_repository):
        orphan = remediation_repository.create_execution(
            {"workflow_id": "wf-gone", "workflow_name": "old", "node_id": "node-1"}
        )
        remediation_repository.create_quarantine("node-3", "flapping")

        interrupted = await engine.initialize()

        assert interrupted == 1
        stored = engine.get_execution(orphan.id)
        assert stored.status == ExecutionStatus.FAILED
        assert stored.completion_reason == INTERRUPTED_REASON
        assert engine.is_node_quarantined("node-3")

    def test_create_workflow_rejects_invalid(self, engine):
        with pytest.raises(InvalidWorkflowError) as exc_info:
            engine.create_workflow(
                {"name": "loop", "start_step": "a", "steps": [_script("a", "x", on_success="a")]}
            )

        assert exc_info.value.errors == ["Circular dependency detected: a -> a"]

    def test_update_workflow_validates_merged_definition(self, engine):
        workflow = engine.create_workflow(CLEANUP_WORKFLOW)

        with pytest.raises(InvalidWorkflowError):
            engine.update_workflow(workflow.id, {"start_step": "ghost"})

        updated = engine.update_workflow(workflow.id, {"description": "Free up /tmp"})
        assert updated.description == "Free up /tmp"

    def test_export_and_import(self, engine):
        workflow = engine.create_workflow(CLEANUP_WORKFLOW)

        copy = engine.import_workflow(engine.export_workflow(workflow.id), created_by="ops")

        assert copy.id != workflow.id
        assert copy.steps == workflow.steps
        assert copy.created_by == "ops"

    @pytest.mark.asyncio
    async def test_list_executions(self, engine, make_agent):
        workflow = engine.create_workflow(CLEANUP_WORKFLOW)
        async with running(make_agent()):
            for node_id in ("node-1", "node-2"):
                execution = await engine.trigger(workflow.id, node_id)
                await engine.join(execution.id, timeout=5)

        assert len(engine.list_executions(workflow_id=workflow.id)) == 2
        assert len(engine.list_executions(node_id="node-2")) == 1
        assert engine.list_executions(status=ExecutionStatus.FAILED) == []
        assert len(engine.list_executions(limit=1)) == 1

    def test_quarantine_passthrough(self, engine):
        engine.quarantine_node("node-2", reason="Investigating")

        assert engine.is_node_quarantined("node-2")
        engine.unquarantine_node("node-2")
        assert not engine.is_node_quarantined("node-2")
