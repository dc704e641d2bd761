"""
Remediation execution engine.

Runs compiled workflows step by step against a single node. Each execution
is advanced by one runner task owned by the engine; the engine's registry of
active executions is advisory and is rebuilt from persisted state by
initialize() after a restart.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from scripttask.core.config import settings
from scripttask.core.exceptions import (
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    InvalidWorkflowError,
    StepExecutionError,
    StepTimeoutError,
    WorkflowDisabledError,
)
from scripttask.models.remediation import (
    EscalationPolicy,
    ExecutionStatus,
    RemediationExecution,
    RemediationWorkflow,
    StepStatus,
    StepType,
)
from scripttask.models.scheduling import Job, JobState, SchedulePriority
from scripttask.monitoring.metrics import EXECUTIONS_COMPLETED_TOTAL, STEP_DURATION_SECONDS
from scripttask.services.scheduling.projector import JobQueueProjector
from scripttask.utils.logger import add_execution_context, get_logger
from scripttask.utils.timeutils import isoformat, seconds_between, utcnow

from .actions import ActionHandler, ActionResult
from .conditions import ConditionEvaluator, condition_evaluator
from .escalation import EscalationManager
from .repository import RemediationRepository
from .workflow import CompiledStep, CompiledWorkflow, WorkflowCompiler, workflow_compiler

logger = get_logger(__name__)

INTERRUPTED_REASON = "Engine restart - execution interrupted"


@dataclass
class StepOutcome:
    """What a single step attempt produced"""

    status: StepStatus
    output: Optional[str] = None
    error: Optional[str] = None
    exit_code: Optional[int] = None
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    job_id: Optional[str] = None
    condition_result: Optional[bool] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.SUCCESS

    @classmethod
    def failed(cls, error: str, **kwargs) -> "StepOutcome":
        return cls(status=StepStatus.FAILED, error=error, **kwargs)

    @classmethod
    def from_action(cls, result: ActionResult) -> "StepOutcome":
        return cls(
            status=StepStatus.SUCCESS if result.success else StepStatus.FAILED,
            output=result.message,
            error=result.error,
            details={"status_code": result.status_code, **result.details},
        )


@dataclass
class _ActiveExecution:
    execution_id: str
    workflow_id: str
    node_id: str
    compiled: CompiledWorkflow
    # Set once the execution reaches a terminal status; wakes every sleeper
    closed: asyncio.Event = field(default_factory=asyncio.Event)


class RemediationEngine:
    """Triggers, advances, cancels and completes remediation executions"""

    def __init__(
        self,
        repository: RemediationRepository,
        projector: JobQueueProjector,
        actions: Optional[ActionHandler] = None,
        escalation: Optional[EscalationManager] = None,
        compiler: Optional[WorkflowCompiler] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        poll_interval: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.projector = projector
        self.actions = actions or ActionHandler(repository, projector)
        self.escalation = escalation or EscalationManager(repository, self.actions, projector)
        self.compiler = compiler or workflow_compiler
        self.evaluator = evaluator or condition_evaluator
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.JOB_POLL_INTERVAL_SECONDS
        )
        self._now = clock or utcnow

        self._active: Dict[str, _ActiveExecution] = {}
        self._by_pair: Dict[Tuple[str, str], str] = {}
        self._runners: Dict[str, asyncio.Task] = {}

    # Lifecycle

    async def initialize(self) -> int:
        """
        Load quarantines and fail every execution left running by a previous
        process. Returns the number of interrupted executions.
        """
        self.actions.load_quarantined_nodes()

        interrupted = 0
        for execution in self.repository.list_running_executions():
            if execution.id in self._active:
                continue
            await self.complete_execution(execution.id, ExecutionStatus.FAILED, INTERRUPTED_REASON)
            interrupted += 1

        logger.info("Remediation engine initialized", interrupted_executions=interrupted)
        return interrupted

    async def shutdown(self) -> None:
        """Stop every runner; their executions stay running until the next initialize()"""
        for active in self._active.values():
            active.closed.set()
        runners = list(self._runners.values())
        for task in runners:
            task.cancel()
        await asyncio.gather(*runners, return_exceptions=True)

        self._active.clear()
        self._by_pair.clear()
        self._runners.clear()
        logger.info("Remediation engine stopped", cancelled_runners=len(runners))

    def active_execution_ids(self) -> List[str]:
        return list(self._active)

    # Workflow administration

    def create_workflow(
        self, definition: Dict[str, Any], created_by: Optional[str] = None
    ) -> RemediationWorkflow:
        errors = self.compiler.validate(definition)
        if errors:
            raise InvalidWorkflowError(errors, workflow_name=definition.get("name"))
        return self.repository.create_workflow(
            {
                "name": definition.get("name") or "Unnamed Workflow",
                "description": definition.get("description"),
                "steps": [dict(step) for step in definition["steps"]],
                "start_step": definition["start_step"],
                "escalation_policy_id": definition.get("escalation_policy_id"),
                "escalation_enabled": definition.get("escalation_enabled", True),
                "rollback_enabled": definition.get("rollback_enabled", False),
                "enabled": definition.get("enabled", True),
                "created_by": created_by,
            }
        )

    def update_workflow(self, workflow_id: str, updates: Dict[str, Any]) -> RemediationWorkflow:
        """Validate the merged definition before anything is written"""
        workflow = self.repository.require_workflow(workflow_id)
        merged = {**workflow.to_definition(), **updates}
        errors = self.compiler.validate(merged)
        if errors:
            raise InvalidWorkflowError(errors, workflow_name=merged.get("name"))
        return self.repository.update_workflow(workflow_id, updates)

    def delete_workflow(self, workflow_id: str) -> bool:
        return self.repository.delete_workflow(workflow_id)

    def export_workflow(self, workflow_id: str) -> str:
        return self.compiler.export_workflow(self.repository.require_workflow(workflow_id))

    def import_workflow(self, payload: str, created_by: Optional[str] = None) -> RemediationWorkflow:
        return self.create_workflow(self.compiler.import_workflow(payload), created_by=created_by)

    def create_escalation_policy(
        self,
        name: str,
        tiers: List[Dict[str, Any]],
        description: str = "",
        created_by: str = "system",
    ) -> EscalationPolicy:
        return self.escalation.create_escalation_policy(
            name, tiers, description=description, created_by=created_by
        )

    # Quarantine

    def quarantine_node(self, node_id: str, reason: str = "Manual quarantine") -> ActionResult:
        return self.actions.quarantine_node(node_id, reason=reason)

    def unquarantine_node(self, node_id: str) -> ActionResult:
        return self.actions.unquarantine_node(node_id)

    def is_node_quarantined(self, node_id: str) -> bool:
        return self.actions.is_node_quarantined(node_id)

    # Triggering

    async def trigger(
        self,
        workflow_id: str,
        node_id: str,
        triggered_by: str = "system",
        context: Optional[Dict[str, Any]] = None,
    ) -> RemediationExecution:
        """
        Start a workflow against a node.

        Returns the existing execution when one is already running for the
        same workflow and node. Nothing in here awaits before the execution
        record exists, so concurrent triggers in one process cannot race.

        Raises:
            WorkflowNotFoundError: Unknown workflow
            WorkflowDisabledError: Workflow switched off
            InvalidWorkflowError: Workflow fails validation
        """
        context = dict(context or {})

        active_id = self._by_pair.get((workflow_id, node_id))
        if active_id is not None:
            existing = self.repository.get_execution(active_id)
            if existing is not None and existing.is_running:
                logger.info(
                    "Workflow already running for node",
                    workflow_id=workflow_id,
                    node_id=node_id,
                    execution_id=active_id,
                )
                return existing

        workflow = self.repository.require_workflow(workflow_id)
        if not workflow.enabled:
            raise WorkflowDisabledError(f"Workflow {workflow_id} is disabled")

        existing = self.repository.find_running_execution(workflow_id, node_id)
        if existing is not None:
            logger.info(
                "Workflow already running for node",
                workflow_id=workflow_id,
                node_id=node_id,
                execution_id=existing.id,
            )
            return existing

        compiled = self.compiler.compile(workflow)
        execution = self.repository.create_execution(
            {
                "workflow_id": workflow_id,
                "workflow_name": workflow.name,
                "node_id": node_id,
                "status": ExecutionStatus.RUNNING,
                "current_step": compiled.start_step,
                "triggered_by": triggered_by,
                "trigger_type": context.get("trigger_type", "manual"),
                "context": context,
                "step_results": [],
                "alerts": [],
                "started_at": self._now(),
            }
        )

        active = _ActiveExecution(execution.id, workflow_id, node_id, compiled)
        self._active[execution.id] = active
        self._by_pair[(workflow_id, node_id)] = execution.id

        task = asyncio.create_task(self._run(active), name=f"remediation-{execution.id}")
        self._runners[execution.id] = task
        task.add_done_callback(lambda _t, eid=execution.id: self._runners.pop(eid, None))

        logger.info(
            "Triggered remediation workflow",
            execution_id=execution.id,
            workflow_id=workflow_id,
            node_id=node_id,
            triggered_by=triggered_by,
        )
        return execution

    async def join(
        self, execution_id: str, timeout: Optional[float] = None
    ) -> RemediationExecution:
        """Wait for an execution's runner to finish and return the record"""
        task = self._runners.get(execution_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return self.get_execution(execution_id)

    # Advancement

    async def _run(self, active: _ActiveExecution) -> None:
        execution_id = active.execution_id
        compiled = active.compiled
        log = logger.bind(**add_execution_context(execution_id))
        step_id: Optional[str] = compiled.start_step
        final_failure: Optional[Tuple[CompiledStep, StepOutcome]] = None

        try:
            while step_id:
                execution = self.repository.get_execution(execution_id)
                if execution is None or not execution.is_running or active.closed.is_set():
                    log.info("Execution no longer running, stopping")
                    return

                step = compiled.get_step(step_id)
                if step is None:
                    raise StepExecutionError(f"Step {step_id} not found in workflow", step_id)

                log.info("Executing step", step_id=step.id, step_type=step.type.value)
                started_at = self._now()
                outcome, retries = await self._execute_with_retries(execution, compiled, step)
                finished_at = self._now()

                if active.closed.is_set():
                    log.info("Execution closed during step, stopping", step_id=step.id)
                    return

                duration = seconds_between(started_at, finished_at)
                STEP_DURATION_SECONDS.labels(step_type=step.type.value).observe(duration)

                next_step_id = self.compiler.next_step(
                    compiled, step.id, outcome.succeeded, outcome.condition_result
                )
                execution = self.repository.append_step_result(
                    execution_id,
                    self._result_record(step, outcome, retries, started_at, finished_at, duration),
                    current_step=next_step_id,
                )

                final_failure = None
                if step.type != StepType.CONDITION and not outcome.succeeded and next_step_id is None:
                    final_failure = (step, outcome)
                    if compiled.escalation_enabled:
                        log.info("Escalating unhandled step failure", step_id=step.id)
                        await self.escalation.escalate(
                            execution, compiled.name, compiled.escalation_policy_id
                        )

                step_id = next_step_id

            if final_failure is not None:
                step, outcome = final_failure
                await self.complete_execution(
                    execution_id,
                    ExecutionStatus.FAILED,
                    f"Step '{step.id}' failed: {outcome.error or 'unknown error'}",
                )
            else:
                await self.complete_execution(
                    execution_id, ExecutionStatus.SUCCESS, "Workflow completed"
                )

        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"Error executing workflow: {e}", exc_info=True)
            await self.complete_execution(execution_id, ExecutionStatus.FAILED, str(e))

    async def _execute_with_retries(
        self,
        execution: RemediationExecution,
        compiled: CompiledWorkflow,
        step: CompiledStep,
    ) -> Tuple[StepOutcome, int]:
        """
        Race the step against its timeout, retrying raised errors and
        timeouts per the step's retry policy. Delay steps are never retried.
        """
        log = logger.bind(**add_execution_context(execution.id, step.id))
        retries = 0
        while True:
            try:
                outcome = await asyncio.wait_for(
                    self._execute_step(execution, compiled, step),
                    timeout=step.timeout_seconds,
                )
                return outcome, retries
            except asyncio.TimeoutError:
                error: Exception = StepTimeoutError(step.id, step.timeout_seconds)
                if step.type == StepType.SCRIPT:
                    self.projector.cancel_pending_for_execution(execution.id, "Step timed out")
            except StepExecutionError as e:
                error = e
            except Exception as e:
                log.error(f"Step raised unexpectedly: {e}", exc_info=True)
                error = e

            log.warning("Step attempt failed", error=str(error), retries=retries)
            active = self._active.get(execution.id)
            if step.type == StepType.DELAY or active is None or active.closed.is_set():
                return StepOutcome.failed(str(error)), retries

            decision = self.escalation.decide_retry(execution, step, error, in_flight_retries=retries)
            if not decision.should_retry:
                return StepOutcome.failed(str(error)), retries

            retries += 1
            if not await self._sleep(execution.id, decision.delay_seconds):
                return StepOutcome.failed(str(error)), retries

    async def _execute_step(
        self,
        execution: RemediationExecution,
        compiled: CompiledWorkflow,
        step: CompiledStep,
    ) -> StepOutcome:
        if step.type == StepType.SCRIPT:
            return await self._run_script_step(execution, compiled, step)
        if step.type == StepType.WEBHOOK:
            result = await self.actions.send_webhook(step.config, execution, compiled.name)
            return StepOutcome.from_action(result)
        if step.type == StepType.EMAIL:
            result = await self.actions.send_email(step.config, execution, compiled.name)
            return StepOutcome.from_action(result)
        if step.type == StepType.DELAY:
            duration = step.config.get("duration", 60)
            if not await self._sleep(execution.id, duration):
                raise StepExecutionError("Execution closed during delay", step.id)
            return StepOutcome(StepStatus.SUCCESS, output=f"Delayed {duration}s")
        if step.type == StepType.CONDITION:
            return self._evaluate_condition_step(execution, step)
        raise StepExecutionError(f"Unknown step type: {step.type}", step.id)

    async def _run_script_step(
        self,
        execution: RemediationExecution,
        compiled: CompiledWorkflow,
        step: CompiledStep,
    ) -> StepOutcome:
        job = self.projector.queue_job(
            script_id=step.config["script_id"],
            node_id=execution.node_id,
            priority=SchedulePriority(step.config.get("priority") or SchedulePriority.NORMAL),
            tags=["remediation"],
            metadata={
                "workflow_id": execution.workflow_id,
                "workflow_name": compiled.name,
                "step_name": step.name,
            },
            execution_id=execution.id,
            step_id=step.id,
            variables=step.config.get("variables"),
        )
        logger.info(
            "Created job for script step",
            execution_id=execution.id,
            step_id=step.id,
            job_id=job.id,
        )

        job = await self._wait_for_job(execution.id, job)
        state = JobState(job.state)
        if state == JobState.COMPLETE:
            return StepOutcome(
                StepStatus.SUCCESS,
                output=job.output,
                exit_code=job.exit_code,
                stdout=job.stdout,
                stderr=job.stderr,
                job_id=job.id,
            )
        return StepOutcome.failed(
            job.stderr or job.cancelled_reason or f"Job ended in state {state.value}",
            output=job.output,
            exit_code=job.exit_code,
            stdout=job.stdout,
            stderr=job.stderr,
            job_id=job.id,
        )

    async def _wait_for_job(self, execution_id: str, job: Job) -> Job:
        """Poll until the job is terminal; the caller's timeout bounds this"""
        while True:
            job = self.projector.get_job(job.id)
            if JobState(job.state).is_terminal:
                return job
            if not await self._sleep(execution_id, self.poll_interval):
                raise StepExecutionError("Execution closed while waiting for job")

    def _evaluate_condition_step(
        self, execution: RemediationExecution, step: CompiledStep
    ) -> StepOutcome:
        results = list(execution.step_results or [])
        if not results:
            logger.info(
                "No previous step result for condition evaluation",
                execution_id=execution.id,
                step_id=step.id,
            )
            return StepOutcome(StepStatus.SUCCESS, condition_result=False)

        result = self.evaluator.evaluate(step.config.get("condition"), results[-1])
        logger.info(
            "Condition evaluated",
            execution_id=execution.id,
            step_id=step.id,
            condition_result=result,
        )
        return StepOutcome(StepStatus.SUCCESS, output=str(result).lower(), condition_result=result)

    async def _sleep(self, execution_id: str, seconds: float) -> bool:
        """
        Suspend for `seconds` unless the execution closes first.

        Returns False when woken by completion or cancellation.
        """
        active = self._active.get(execution_id)
        if active is None or active.closed.is_set():
            return False
        try:
            await asyncio.wait_for(active.closed.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return True
        return False

    @staticmethod
    def _result_record(
        step: CompiledStep,
        outcome: StepOutcome,
        retries: int,
        started_at: datetime,
        finished_at: datetime,
        duration: float,
    ) -> Dict[str, Any]:
        record = {
            "step_id": step.id,
            "step_name": step.name,
            "step_type": step.type.value,
            "status": outcome.status.value,
            "started_at": isoformat(started_at),
            "finished_at": isoformat(finished_at),
            "duration_seconds": duration,
            "output": outcome.output,
            "error": outcome.error,
            "retry_count": retries,
            "exit_code": outcome.exit_code,
            "stdout": outcome.stdout,
            "stderr": outcome.stderr,
            "job_id": outcome.job_id,
        }
        if outcome.condition_result is not None:
            record["condition_result"] = outcome.condition_result
        return record

    # Completion

    async def complete_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        reason: Optional[str] = None,
    ) -> RemediationExecution:
        """
        Single writer of terminal status.

        Releases the in-memory entry and wakes pending sleeps. A failed
        execution of a rollback-enabled workflow is rolled back.
        """
        execution = self.repository.require_execution(execution_id)

        active = self._active.pop(execution_id, None)
        if active is not None:
            active.closed.set()
            pair = (active.workflow_id, active.node_id)
            if self._by_pair.get(pair) == execution_id:
                del self._by_pair[pair]

        if not execution.is_running:
            logger.info(
                "Execution already finished",
                execution_id=execution_id,
                status=ExecutionStatus(execution.status).value,
            )
            return execution

        finished_at = self._now()
        duration = seconds_between(execution.started_at, finished_at)
        if not self.repository.finish_execution(
            execution_id, ExecutionStatus(status), reason, finished_at, duration
        ):
            return self.repository.require_execution(execution_id)

        EXECUTIONS_COMPLETED_TOTAL.labels(status=ExecutionStatus(status).value).inc()
        logger.info(
            "Execution completed",
            execution_id=execution_id,
            status=ExecutionStatus(status).value,
            reason=reason,
            duration_seconds=round(duration, 3),
        )

        execution = self.repository.require_execution(execution_id)
        if status == ExecutionStatus.FAILED:
            workflow = self.repository.get_workflow(execution.workflow_id)
            if workflow is not None and workflow.rollback_enabled:
                execution = self._rollback(execution, workflow)
        return execution

    def _rollback(
        self, execution: RemediationExecution, workflow: RemediationWorkflow
    ) -> RemediationExecution:
        steps = {step.get("id"): step for step in workflow.steps or []}
        jobs = self.actions.perform_rollback(execution, steps)
        EXECUTIONS_COMPLETED_TOTAL.labels(status=ExecutionStatus.ROLLED_BACK.value).inc()
        logger.warning(
            "Execution rolled back", execution_id=execution.id, rollback_jobs=len(jobs)
        )
        return self.repository.update_execution(
            execution.id,
            {
                "status": ExecutionStatus.ROLLED_BACK,
                "alerts": list(execution.alerts or [])
                + [
                    {
                        "type": "rollback",
                        "message": f"Queued {len(jobs)} rollback job(s)",
                        "job_ids": [job.id for job in jobs],
                        "timestamp": isoformat(self._now()),
                    }
                ],
            },
        )

    async def rollback_execution(self, execution_id: str) -> RemediationExecution:
        """Roll back a failed execution on operator request"""
        execution = self.repository.require_execution(execution_id)
        if ExecutionStatus(execution.status) != ExecutionStatus.FAILED:
            raise InvalidExecutionStateError(
                f"Execution is {ExecutionStatus(execution.status).value}, only failed executions can be rolled back"
            )
        workflow = self.repository.require_workflow(execution.workflow_id)
        return self._rollback(execution, workflow)

    async def cancel(self, execution_id: str) -> RemediationExecution:
        """
        Cancel a running execution and its pending jobs.

        The runner notices on its next loop iteration; in-flight remote work
        is not interrupted.
        """
        execution = self.repository.require_execution(execution_id)
        if not execution.is_running:
            raise InvalidExecutionStateError(
                f"Execution is {ExecutionStatus(execution.status).value}, cannot cancel"
            )

        execution = await self.complete_execution(
            execution_id, ExecutionStatus.CANCELLED, "Cancelled by user"
        )
        cancelled = self.projector.cancel_pending_for_execution(
            execution_id, "Remediation execution cancelled"
        )
        logger.info("Execution cancelled", execution_id=execution_id, cancelled_jobs=cancelled)
        return execution

    # Queries

    def get_execution(self, execution_id: str) -> RemediationExecution:
        execution = self.repository.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution {execution_id} not found")
        return execution

    def list_executions(
        self,
        workflow_id: Optional[str] = None,
        node_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        triggered_by: Optional[str] = None,
        since: Optional[datetime] = None,
        sort_by: str = "started_at",
        sort_order: str = "desc",
        limit: Optional[int] = None,
        skip: int = 0,
    ) -> List[RemediationExecution]:
        return self.repository.list_executions(
            workflow_id=workflow_id,
            node_id=node_id,
            status=status,
            triggered_by=triggered_by,
            since=since,
            sort_by=sort_by,
            sort_order=sort_order,
            limit=limit if limit is not None else settings.EXECUTION_LIST_DEFAULT_LIMIT,
            skip=skip,
        )
