"""
Cron scheduler core.

Owns one timer task per enabled schedule. Each firing is gated by
maintenance windows, dependencies and concurrency limits before jobs are
projected onto target nodes. All timer, jitter and catch-up tasks live in
registries owned by the scheduler instance so that stop() can collect them.
"""

import asyncio
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Union

from scripttask.core.config import settings
from scripttask.core.exceptions import ScheduleNotFoundError, ScheduleValidationError
from scripttask.models.scheduling import (
    Job,
    MissedJobPolicy,
    Schedule,
    SchedulePriority,
)
from scripttask.monitoring.metrics import SCHEDULE_FIRINGS_TOTAL
from scripttask.utils.logger import add_schedule_context, get_logger
from scripttask.utils.timeutils import as_utc, utcnow

from .maintenance import MaintenanceWindowEvaluator, WindowDecision
from .nodes import NodeDirectory, NodeInfo
from .policies.concurrency import ConcurrencyGate
from .policies.dependencies import DependencyGate
from .policies.priority import DeferredQueue
from .projector import JobQueueProjector
from .repository import SchedulingRepository
from .timezone import TimezoneService
from .triggers import CronTrigger, TriggerError

logger = get_logger(__name__)


class SchedulerStatus(str, Enum):
    """Scheduler operational status"""

    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


class FireOutcome(str, Enum):
    FIRED = "fired"
    NO_TARGETS = "no_targets"
    BLOCKED_WINDOW = "blocked_window"
    DEFERRED = "deferred"
    CATCH_UP_ARMED = "catch_up_armed"
    BLOCKED_DEPENDENCY = "blocked_dependency"
    DISABLED = "disabled"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass
class ScheduleDefinition:
    """Definition for creating a new schedule"""

    name: str
    script_id: str
    cron_expression: str
    timezone: Optional[str] = None
    description: Optional[str] = None
    nodes: List[str] = field(default_factory=list)
    meshes: List[str] = field(default_factory=list)
    priority: str = SchedulePriority.NORMAL.value
    max_per_node: Optional[int] = 1
    max_per_mesh: Optional[int] = 10
    max_global: Optional[int] = 50
    maintenance_window_ids: List[str] = field(default_factory=list)
    depends_on: List[str] = field(default_factory=list)
    jitter_seconds: int = 0
    missed_job_policy: str = MissedJobPolicy.SKIP.value
    variables: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    created_by: Optional[str] = None


@dataclass
class FireResult:
    """Result of one schedule evaluation"""

    schedule_id: str
    outcome: FireOutcome
    reason: Optional[str] = None
    jobs: List[Job] = field(default_factory=list)
    dispatch_delay: float = 0.0
    fired_at: Optional[datetime] = None


@dataclass
class NextRun:
    at: datetime
    formatted: str


SCHEDULE_FIELDS = {f for f in ScheduleDefinition.__dataclass_fields__}


class CronScheduler:
    """
    Cron-driven schedule runner.

    Timers are (re)armed whenever a definition changes while the scheduler
    is running; when stopped, definitions are persisted with their next run
    time and armed on start().
    """

    def __init__(
        self,
        repository: SchedulingRepository,
        node_directory: NodeDirectory,
        window_evaluator: Optional[MaintenanceWindowEvaluator] = None,
        dependency_gate: Optional[DependencyGate] = None,
        concurrency_gate: Optional[ConcurrencyGate] = None,
        projector: Optional[JobQueueProjector] = None,
        timezone_service: Optional[TimezoneService] = None,
        queue_check_interval: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.node_directory = node_directory
        self.window_evaluator = window_evaluator or MaintenanceWindowEvaluator(repository)
        self.dependency_gate = dependency_gate or DependencyGate(repository)
        self.concurrency_gate = concurrency_gate or ConcurrencyGate(
            repository, node_directory
        )
        self.projector = projector or JobQueueProjector(
            repository, node_directory, self.concurrency_gate
        )
        self.timezone_service = timezone_service or TimezoneService()
        self.queue_check_interval = (
            queue_check_interval
            if queue_check_interval is not None
            else settings.SCHEDULER_QUEUE_CHECK_INTERVAL_SECONDS
        )
        self._now = clock or utcnow

        self.status = SchedulerStatus.STOPPED
        self.scheduler_id = str(uuid.uuid4())
        self.started_at: Optional[datetime] = None
        self.deferred_queue = DeferredQueue()

        # Registries keyed by schedule id
        self._timers: Dict[str, asyncio.Task] = {}
        self._catch_up: Dict[str, asyncio.Task] = {}
        self._dispatch_tasks: Set[asyncio.Task] = set()
        self._queue_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

        self._stats = {
            "firings": 0,
            "jobs_created": 0,
            "blocked": 0,
            "errors": 0,
            "last_queue_check": None,
        }

    # Lifecycle

    async def start(self) -> None:
        """Arm every enabled schedule and start the deferred queue processor"""
        if self.status != SchedulerStatus.STOPPED:
            raise RuntimeError(f"Scheduler already running (status: {self.status})")

        self.status = SchedulerStatus.RUNNING
        self.started_at = self._now()
        self._shutdown_event = asyncio.Event()

        armed = 0
        for schedule in self.repository.list_schedules(enabled=True):
            try:
                if self.arm(schedule) is not None:
                    armed += 1
            except Exception as e:
                logger.error(
                    f"Failed to arm schedule: {e}", schedule_id=schedule.id, exc_info=True
                )

        self._queue_task = asyncio.create_task(self._queue_loop())
        logger.info(
            "Scheduler started",
            scheduler_id=self.scheduler_id,
            armed_schedules=armed,
            queue_check_interval=self.queue_check_interval,
        )

    async def stop(self) -> None:
        """Cancel every timer, catch-up and jitter task and stop the queue processor"""
        # run_now() can leave catch-up or jitter tasks behind on a stopped scheduler
        if self.status == SchedulerStatus.STOPPED and not (
            self._timers or self._catch_up or self._dispatch_tasks
        ):
            return

        logger.info("Stopping scheduler", scheduler_id=self.scheduler_id)
        self.status = SchedulerStatus.STOPPING
        self._shutdown_event.set()

        tasks = list(self._timers.values()) + list(self._catch_up.values())
        tasks += list(self._dispatch_tasks)
        for task in tasks:
            task.cancel()

        if self._queue_task is not None:
            tasks.append(self._queue_task)

        await asyncio.gather(*tasks, return_exceptions=True)

        self._timers.clear()
        self._catch_up.clear()
        self._dispatch_tasks.clear()
        self._queue_task = None
        self.status = SchedulerStatus.STOPPED
        logger.info("Scheduler stopped", scheduler_id=self.scheduler_id)

    @property
    def is_running(self) -> bool:
        return self.status == SchedulerStatus.RUNNING

    # Next run computation

    def trigger_for(self, schedule: Schedule) -> CronTrigger:
        try:
            tz_name = schedule.timezone or settings.SCHEDULER_DEFAULT_TIMEZONE
            return CronTrigger.from_expression(schedule.cron_expression, tz_name)
        except TriggerError as e:
            raise ScheduleValidationError(str(e)) from e

    def compute_next_run(
        self, schedule: Schedule, after: Optional[datetime] = None
    ) -> Optional[datetime]:
        """
        Next fire instant for an enabled schedule, never earlier than now.

        Returns None for disabled or exhausted schedules. Reads no stored
        state beyond the schedule passed in.
        """
        if not schedule.enabled:
            return None
        now = self._now()
        base = now if after is None else max(as_utc(after), now)
        return self.trigger_for(schedule).next_run(base)

    def compute_next(self, schedule_id: str, count: int = 10) -> List[datetime]:
        """Next `count` fire instants of a stored schedule, without side effects"""
        schedule = self.repository.require_schedule(schedule_id)
        return self.trigger_for(schedule).next_runs(count, self._now())

    def get_next_runs(self, schedule_id: str, count: int = 10) -> List[NextRun]:
        schedule = self.repository.require_schedule(schedule_id)
        tz_name = schedule.timezone or settings.SCHEDULER_DEFAULT_TIMEZONE
        return [
            NextRun(at=at, formatted=self.timezone_service.format(at, tz_name))
            for at in self.trigger_for(schedule).next_runs(count, self._now())
        ]

    # Timer registry

    def arm(self, schedule: Schedule) -> Optional[datetime]:
        """
        Create or replace the timer for a schedule.

        Returns the next fire instant, or None when nothing was armed.
        """
        self.disarm(schedule.id)

        next_run = self.compute_next_run(schedule)
        self.repository.set_next_run(schedule.id, next_run)
        if next_run is None:
            if schedule.enabled:
                logger.warning(
                    "Schedule has no future run times", schedule_id=schedule.id
                )
            return None

        self._timers[schedule.id] = asyncio.create_task(
            self._timer_loop(schedule.id), name=f"schedule-timer-{schedule.id}"
        )
        logger.info(
            "Armed schedule",
            schedule_id=schedule.id,
            next_run=next_run.isoformat(),
        )
        return next_run

    def disarm(self, schedule_id: str) -> bool:
        """Stop and discard the schedule's timer"""
        task = self._timers.pop(schedule_id, None)
        if task is None:
            return False
        # Firing from inside the timer re-arms the same task; don't cancel ourselves
        if task is not asyncio.current_task():
            task.cancel()
        logger.debug("Disarmed schedule", schedule_id=schedule_id)
        return True

    def armed_schedule_ids(self) -> List[str]:
        return [sid for sid, task in self._timers.items() if not task.done()]

    async def _timer_loop(self, schedule_id: str) -> None:
        last_target: Optional[datetime] = None
        while True:
            try:
                schedule = self.repository.get_schedule(schedule_id)
                if schedule is None or not schedule.enabled:
                    return

                next_run = self.compute_next_run(schedule, after=last_target)
                if next_run is None:
                    return

                delay = max(0.0, (next_run - self._now()).total_seconds())
                await asyncio.sleep(delay)
                last_target = next_run
                await self.on_fire(schedule_id)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Error in schedule timer: {e}", schedule_id=schedule_id, exc_info=True
                )
                await asyncio.sleep(self.queue_check_interval)

    # Firing

    async def on_fire(
        self,
        schedule: Union[str, Schedule],
        now: Optional[datetime] = None,
        force: bool = False,
    ) -> FireResult:
        """
        Evaluate one firing of a schedule.

        Never raises: evaluation errors are logged, counted against the
        schedule's fail_count, and the next natural tick tries again.
        """
        schedule_id = schedule if isinstance(schedule, str) else schedule.id
        log = logger.bind(**add_schedule_context(schedule_id))
        now = as_utc(now) if now else self._now()

        try:
            current = self.repository.get_schedule(schedule_id)
            if current is None:
                log.warning("Fired schedule no longer exists")
                return FireResult(schedule_id, FireOutcome.NOT_FOUND)
            if not current.enabled and not force:
                return FireResult(schedule_id, FireOutcome.DISABLED)

            self._stats["firings"] += 1

            decision = self.window_evaluator.can_run(current, now)
            if not decision.allowed:
                return self._handle_blocked(current, decision, now)

            if not self.dependency_gate.check_dependencies(current):
                SCHEDULE_FIRINGS_TOTAL.labels(outcome="blocked_dependency").inc()
                return FireResult(
                    schedule_id,
                    FireOutcome.BLOCKED_DEPENDENCY,
                    reason="Dependencies not met",
                )

            targets = self.projector.resolve_targets(current)
            delay = self.projector.jitter_delay(current) if targets else 0.0
            jobs: List[Job] = []
            if targets:
                if delay > 0:
                    self._spawn_dispatch(current, targets, delay)
                else:
                    jobs = await self.projector.project(current, targets)
                    self._stats["jobs_created"] += len(jobs)

            next_run = self.compute_next_run(current, after=now)
            self.repository.record_run(schedule_id, now, next_run)
            self.deferred_queue.remove(schedule_id)

            outcome = FireOutcome.FIRED if targets else FireOutcome.NO_TARGETS
            SCHEDULE_FIRINGS_TOTAL.labels(outcome=outcome.value).inc()
            log.info(
                "Schedule fired",
                targets=len(targets),
                jobs_created=len(jobs),
                dispatch_delay=round(delay, 3),
                next_run=next_run.isoformat() if next_run else None,
            )
            return FireResult(
                schedule_id,
                outcome,
                reason=decision.reason,
                jobs=jobs,
                dispatch_delay=delay,
                fired_at=now,
            )

        except Exception as e:
            self._stats["errors"] += 1
            SCHEDULE_FIRINGS_TOTAL.labels(outcome="error").inc()
            log.error(f"Error handling schedule trigger: {e}", exc_info=True)
            try:
                self.repository.increment_fail_count(schedule_id)
            except Exception as count_error:
                log.error(f"Failed to record schedule failure: {count_error}")
            return FireResult(schedule_id, FireOutcome.ERROR, reason=str(e))

    def _handle_blocked(
        self, schedule: Schedule, decision: WindowDecision, now: datetime
    ) -> FireResult:
        self._stats["blocked"] += 1
        policy = MissedJobPolicy(schedule.missed_job_policy or MissedJobPolicy.SKIP)
        self.repository.set_next_run(
            schedule.id, self.compute_next_run(schedule, after=now)
        )

        if policy == MissedJobPolicy.QUEUE:
            self.deferred_queue.enqueue(
                schedule.id,
                SchedulePriority(schedule.priority or SchedulePriority.NORMAL),
                reason=decision.reason,
            )
            SCHEDULE_FIRINGS_TOTAL.labels(outcome="deferred").inc()
            logger.info(
                "Schedule blocked, queued for re-evaluation",
                schedule_id=schedule.id,
                reason=decision.reason,
            )
            return FireResult(schedule.id, FireOutcome.DEFERRED, reason=decision.reason)

        if policy == MissedJobPolicy.IMMEDIATE and decision.window_end is not None:
            self._arm_catch_up(schedule.id, decision.window_end)
            SCHEDULE_FIRINGS_TOTAL.labels(outcome="deferred").inc()
            return FireResult(
                schedule.id, FireOutcome.CATCH_UP_ARMED, reason=decision.reason
            )

        SCHEDULE_FIRINGS_TOTAL.labels(outcome="blocked_window").inc()
        logger.info(
            "Schedule blocked by maintenance window",
            schedule_id=schedule.id,
            reason=decision.reason,
        )
        return FireResult(schedule.id, FireOutcome.BLOCKED_WINDOW, reason=decision.reason)

    def _spawn_dispatch(
        self, schedule: Schedule, targets: List[NodeInfo], delay: float
    ) -> None:
        task = asyncio.create_task(self._dispatch_after(schedule, targets, delay))
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_tasks.discard)

    async def _dispatch_after(
        self, schedule: Schedule, targets: List[NodeInfo], delay: float
    ) -> None:
        await asyncio.sleep(delay)
        try:
            jobs = await self.projector.project(schedule, targets)
            self._stats["jobs_created"] += len(jobs)
        except Exception as e:
            logger.error(
                f"Delayed dispatch failed: {e}", schedule_id=schedule.id, exc_info=True
            )

    def _arm_catch_up(self, schedule_id: str, window_end: datetime) -> None:
        """Re-fire once the blocking window has closed"""
        existing = self._catch_up.pop(schedule_id, None)
        if existing is not None:
            existing.cancel()

        # Window end is inclusive
        fire_at = as_utc(window_end) + timedelta(seconds=1)
        task = asyncio.create_task(self._catch_up_after(schedule_id, fire_at))
        self._catch_up[schedule_id] = task
        logger.info(
            "Catch-up firing armed",
            schedule_id=schedule_id,
            fire_at=fire_at.isoformat(),
        )

    async def _catch_up_after(self, schedule_id: str, fire_at: datetime) -> None:
        delay = max(0.0, (fire_at - self._now()).total_seconds())
        await asyncio.sleep(delay)
        if self._catch_up.get(schedule_id) is asyncio.current_task():
            del self._catch_up[schedule_id]
        await self.on_fire(schedule_id)

    # Deferred queue

    async def process_deferred_queue(self) -> List[FireResult]:
        """
        Re-evaluate everything currently deferred.

        Entries still blocked re-enter the queue for the next pass.
        """
        results = []
        for entry in self.deferred_queue.drain():
            logger.info(
                "Re-evaluating deferred firing",
                schedule_id=entry.schedule_id,
                attempts=entry.attempts,
            )
            results.append(await self.on_fire(entry.schedule_id))
        self._stats["last_queue_check"] = self._now()
        return results

    async def _queue_loop(self) -> None:
        logger.info("Starting deferred queue processor")
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self.queue_check_interval
                )
                break
            except asyncio.TimeoutError:
                pass

            try:
                if not self.deferred_queue.is_empty():
                    await self.process_deferred_queue()
            except Exception as e:
                logger.error(f"Error processing deferred queue: {e}", exc_info=True)

        logger.info("Deferred queue processor stopped")

    # Schedule administration

    def validate_definition(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate and normalize a complete schedule definition.

        Raises:
            ScheduleValidationError: On the first problem found
        """
        for required in ("name", "script_id", "cron_expression"):
            if not data.get(required):
                raise ScheduleValidationError(f"Missing required field: {required}")

        normalized = {k: v for k, v in data.items() if k in SCHEDULE_FIELDS}
        normalized["timezone"] = data.get("timezone") or settings.SCHEDULER_DEFAULT_TIMEZONE
        if not self.timezone_service.is_valid(normalized["timezone"]):
            raise ScheduleValidationError(f"Invalid timezone: {normalized['timezone']}")

        try:
            CronTrigger.from_expression(data["cron_expression"], normalized["timezone"])
        except TriggerError as e:
            raise ScheduleValidationError(f"Invalid cron expression: {e}") from e

        try:
            normalized["priority"] = SchedulePriority(
                data.get("priority") or SchedulePriority.NORMAL
            )
            normalized["missed_job_policy"] = MissedJobPolicy(
                data.get("missed_job_policy") or MissedJobPolicy.SKIP
            )
        except ValueError as e:
            raise ScheduleValidationError(str(e)) from e

        jitter = data.get("jitter_seconds") or 0
        if not isinstance(jitter, int) or jitter < 0:
            raise ScheduleValidationError("jitter_seconds must be a non-negative integer")
        normalized["jitter_seconds"] = jitter

        for limit in ("max_per_node", "max_per_mesh", "max_global"):
            value = data.get(limit)
            if value is not None and (not isinstance(value, int) or value < 1):
                raise ScheduleValidationError(f"{limit} must be a positive integer")

        for list_field in ("nodes", "meshes", "maintenance_window_ids", "depends_on"):
            value = data.get(list_field) or []
            if not isinstance(value, (list, tuple)):
                raise ScheduleValidationError(f"{list_field} must be a list")
            normalized[list_field] = list(value)

        if data.get("id") and data["id"] in normalized["depends_on"]:
            raise ScheduleValidationError("A schedule cannot depend on itself")

        return normalized

    async def add_or_update(
        self,
        definition: Union[ScheduleDefinition, Dict[str, Any]],
        schedule_id: Optional[str] = None,
    ) -> Schedule:
        """
        Create a schedule, or update an existing one, then re-arm its timer.

        Updates are partial: fields not given keep their stored values.
        """
        data = asdict(definition) if isinstance(definition, ScheduleDefinition) else dict(definition)

        if schedule_id is None:
            defaults = asdict(
                ScheduleDefinition(name="", script_id="", cron_expression="")
            )
            merged = {**defaults, **data}
            normalized = self.validate_definition(merged)
            normalized.update({"run_count": 0, "fail_count": 0})
            schedule = self.repository.create_schedule(normalized)
        else:
            existing = self.repository.require_schedule(schedule_id)
            merged = {**existing.to_dict(), **data, "id": schedule_id}
            normalized = self.validate_definition(merged)
            updates = {k: normalized[k] for k in data if k in normalized}
            schedule = self.repository.update_schedule(schedule_id, updates)

        self._rearm(schedule)
        return self.repository.require_schedule(schedule.id)

    async def delete(self, schedule_id: str) -> bool:
        self.disarm(schedule_id)
        self.deferred_queue.remove(schedule_id)
        catch_up = self._catch_up.pop(schedule_id, None)
        if catch_up is not None:
            catch_up.cancel()
        return self.repository.delete_schedule(schedule_id)

    async def pause(self, schedule_id: str) -> Schedule:
        self.repository.require_schedule(schedule_id)
        self.disarm(schedule_id)
        schedule = self.repository.update_schedule(
            schedule_id, {"enabled": False, "next_run_at": None}
        )
        logger.info("Paused schedule", schedule_id=schedule_id)
        return schedule

    async def resume(self, schedule_id: str) -> Schedule:
        self.repository.require_schedule(schedule_id)
        schedule = self.repository.update_schedule(schedule_id, {"enabled": True})
        self._rearm(schedule)
        logger.info("Resumed schedule", schedule_id=schedule_id)
        return self.repository.require_schedule(schedule_id)

    async def run_now(self, schedule_id: str) -> FireResult:
        """Fire a schedule immediately, regardless of its timer or enabled flag"""
        if self.repository.get_schedule(schedule_id) is None:
            raise ScheduleNotFoundError(f"Schedule {schedule_id} not found")
        return await self.on_fire(schedule_id, force=True)

    def _rearm(self, schedule: Schedule) -> None:
        if self.is_running:
            self.arm(schedule)
        else:
            self.repository.set_next_run(schedule.id, self.compute_next_run(schedule))

    def get_scheduler_status(self) -> Dict[str, Any]:
        """Get scheduler status and statistics"""
        last_check = self._stats["last_queue_check"]
        return {
            "scheduler_id": self.scheduler_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "armed_schedules": len(self.armed_schedule_ids()),
            "pending_catch_ups": len(self._catch_up),
            "pending_dispatches": len(self._dispatch_tasks),
            "deferred_queue": self.deferred_queue.get_statistics(),
            "statistics": {
                **self._stats,
                "last_queue_check": last_check.isoformat() if last_check else None,
            },
        }
