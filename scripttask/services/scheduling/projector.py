"""
Job queue projection.

Turns admitted firings into job records, one per target node, and owns the
job lifecycle operations the dispatch collaborator and administrators use.
Dispatch to the node itself happens outside this package.
"""

import asyncio
import random
from typing import Any, Dict, Iterable, List, Optional

from scripttask.core.exceptions import InvalidJobTransitionError, JobNotFoundError
from scripttask.models.scheduling import Job, JobState, Schedule, SchedulePriority
from scripttask.monitoring.metrics import CONCURRENCY_REJECTIONS_TOTAL, JOBS_CREATED_TOTAL
from scripttask.utils.logger import add_schedule_context, get_logger
from scripttask.utils.timeutils import utcnow

from .nodes import NodeDirectory, NodeInfo
from .policies.concurrency import ConcurrencyGate
from .repository import SchedulingRepository

logger = get_logger(__name__)

DEFAULT_MAX_RETRIES = 3


class JobQueueProjector:
    """Materializes job records for schedule firings and remediation work"""

    def __init__(
        self,
        repository: SchedulingRepository,
        node_directory: NodeDirectory,
        concurrency_gate: ConcurrencyGate,
        rng: Optional[random.Random] = None,
    ):
        self.repository = repository
        self.node_directory = node_directory
        self.concurrency_gate = concurrency_gate
        self._rng = rng or random.Random()
        # Serializes admission and creation within this process
        self._admission_lock = asyncio.Lock()

    # Target resolution

    def resolve_targets(self, schedule: Schedule) -> List[NodeInfo]:
        """
        Explicit nodes that are online, plus online members of the schedule's
        meshes, minus quarantined nodes. Order follows the schedule's node list.
        """
        online = {node.node_id: node for node in self.node_directory.online_nodes()}
        quarantined = set(self.repository.get_quarantined_node_ids())
        meshes = set(schedule.meshes or [])

        targets: Dict[str, NodeInfo] = {}
        for node_id in schedule.nodes or []:
            if node_id in online:
                targets[node_id] = online[node_id]
        for node in online.values():
            if node.mesh_id is not None and node.mesh_id in meshes:
                targets.setdefault(node.node_id, node)

        skipped = [node_id for node_id in targets if node_id in quarantined]
        if skipped:
            logger.info(
                "Skipping quarantined nodes",
                schedule_id=schedule.id,
                node_ids=skipped,
            )
        return [node for node_id, node in targets.items() if node_id not in quarantined]

    def jitter_delay(self, schedule: Schedule) -> float:
        """Uniform delay in [0, jitter_seconds)"""
        jitter = schedule.jitter_seconds or 0
        if jitter <= 0:
            return 0.0
        return self._rng.random() * jitter

    # Job materialization

    def build_job(self, schedule: Schedule, node: NodeInfo) -> Dict[str, Any]:
        return {
            "script_id": schedule.script_id,
            "node_id": node.node_id,
            "mesh_id": node.mesh_id,
            "priority": SchedulePriority(schedule.priority or SchedulePriority.NORMAL),
            "state": JobState.PENDING,
            "queued_at": utcnow(),
            "schedule_id": schedule.id,
            "retry_count": 0,
            "max_retries": DEFAULT_MAX_RETRIES,
            "tags": ["scheduled"],
            "job_metadata": {
                "schedule_name": schedule.name,
                "cron_expression": schedule.cron_expression,
                "timezone": schedule.timezone,
            },
            "variables": dict(schedule.variables or {}),
        }

    async def project(self, schedule: Schedule, nodes: Iterable[NodeInfo]) -> List[Job]:
        """
        Admit each node through the concurrency gate and create its job.

        Nodes refused by the gate are skipped for this firing only.
        """
        created: List[Job] = []
        async with self._admission_lock:
            for node in nodes:
                log = logger.bind(**add_schedule_context(schedule.id, node.node_id))
                if not self.concurrency_gate.check_concurrency(schedule, node.node_id):
                    CONCURRENCY_REJECTIONS_TOTAL.inc()
                    log.info("Concurrency limit reached, skipping node")
                    continue

                job = self.repository.create_job(self.build_job(schedule, node))
                JOBS_CREATED_TOTAL.labels(source="schedule").inc()
                created.append(job)

        logger.info(
            "Projected schedule firing",
            schedule_id=schedule.id,
            jobs_created=len(created),
        )
        return created

    def queue_job(
        self,
        script_id: str,
        node_id: str,
        priority: SchedulePriority = SchedulePriority.NORMAL,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        execution_id: Optional[str] = None,
        step_id: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
        source: str = "remediation",
    ) -> Job:
        """Create a single job outside of a schedule firing"""
        job = self.repository.create_job(
            {
                "script_id": script_id,
                "node_id": node_id,
                "mesh_id": self.node_directory.mesh_of(node_id),
                "priority": SchedulePriority(priority),
                "state": JobState.PENDING,
                "queued_at": utcnow(),
                "remediation_execution_id": execution_id,
                "remediation_step_id": step_id,
                "retry_count": 0,
                "max_retries": DEFAULT_MAX_RETRIES,
                "tags": list(tags or []),
                "job_metadata": dict(metadata or {}),
                "variables": dict(variables or {}),
            }
        )
        JOBS_CREATED_TOTAL.labels(source=source).inc()
        return job

    # Job lifecycle

    def get_job(self, job_id: str) -> Job:
        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def record_job_started(self, job_id: str) -> Job:
        return self.repository.transition_job(job_id, JobState.RUNNING)

    def record_job_result(
        self,
        job_id: str,
        exit_code: int,
        stdout: Optional[str] = None,
        stderr: Optional[str] = None,
        output: Optional[str] = None,
    ) -> Job:
        """Store a terminal result reported by the dispatch collaborator"""
        state = JobState.COMPLETE if exit_code == 0 else JobState.ERROR
        return self.repository.transition_job(
            job_id,
            state,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            output=output if output is not None else stdout,
        )

    def cancel_job(self, job_id: str, reason: str = "Cancelled by user") -> Job:
        return self.repository.transition_job(
            job_id, JobState.CANCELLED, cancelled_reason=reason
        )

    def retry_job(self, job_id: str) -> Job:
        """
        Queue a fresh pending copy of a failed or cancelled job.

        The original record keeps its terminal state.
        """
        job = self.get_job(job_id)
        state = JobState(job.state)
        if state not in (JobState.ERROR, JobState.CANCELLED):
            raise InvalidJobTransitionError(
                f"Only failed or cancelled jobs can be retried, job {job_id} is {state.value}"
            )
        if job.retry_count >= job.max_retries:
            raise InvalidJobTransitionError(
                f"Job {job_id} has reached its retry limit ({job.max_retries})"
            )

        retry = self.repository.create_job(
            {
                "script_id": job.script_id,
                "node_id": job.node_id,
                "mesh_id": job.mesh_id,
                "priority": job.priority,
                "state": JobState.PENDING,
                "queued_at": utcnow(),
                "schedule_id": job.schedule_id,
                "remediation_execution_id": job.remediation_execution_id,
                "remediation_step_id": job.remediation_step_id,
                "retry_count": job.retry_count + 1,
                "max_retries": job.max_retries,
                "retried_from_id": job.id,
                "tags": list(job.tags or []),
                "job_metadata": dict(job.job_metadata or {}),
                "variables": dict(job.variables or {}),
            }
        )
        JOBS_CREATED_TOTAL.labels(source="retry").inc()
        logger.info(
            "Retried job", job_id=job_id, retry_job_id=retry.id, attempt=retry.retry_count
        )
        return retry

    def cancel_pending_for_node(self, node_id: str, reason: str) -> int:
        return self.repository.cancel_pending_jobs(reason, node_id=node_id)

    def cancel_pending_for_execution(self, execution_id: str, reason: str) -> int:
        return self.repository.cancel_pending_jobs(reason, execution_id=execution_id)

    def job_stats(self) -> Dict[str, int]:
        return self.repository.job_stats()
