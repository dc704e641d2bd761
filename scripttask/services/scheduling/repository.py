"""
Scheduling system database repository.

Data access for schedules, maintenance windows and jobs. Every method runs in
its own unit of work unless the repository was handed an external session,
in which case the caller owns commit and rollback.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from scripttask.core.exceptions import (
    InvalidJobTransitionError,
    JobNotFoundError,
    MaintenanceWindowNotFoundError,
    ScheduleNotFoundError,
    ScriptTaskError,
)
from scripttask.models.remediation import NodeQuarantine
from scripttask.models.scheduling import (
    ACTIVE_JOB_STATES,
    JOB_TRANSITIONS,
    Job,
    JobState,
    MaintenanceWindow,
    Schedule,
)
from scripttask.utils.logger import get_logger
from scripttask.utils.timeutils import utcnow

logger = get_logger(__name__)


class SchedulingRepositoryError(ScriptTaskError):
    """Base exception for scheduling repository operations"""

    pass


class SchedulingRepository:
    """
    Repository for scheduling data operations.

    Records returned from methods are detached from their session with all
    column attributes loaded.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        db: Optional[Session] = None,
    ):
        if session_factory is None and db is None:
            from scripttask.core.database import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._db = db
        self._auto_commit = db is None

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Context manager for database transactions"""
        db = self._db if self._db is not None else self._session_factory()
        try:
            yield db
            if self._auto_commit:
                db.commit()
            else:
                db.flush()
        except SQLAlchemyError as e:
            if self._auto_commit:
                db.rollback()
            logger.error(f"Transaction failed: {e}", exc_info=True)
            raise SchedulingRepositoryError(f"Database operation failed: {e}") from e
        except Exception:
            if self._auto_commit:
                db.rollback()
            raise
        finally:
            if self._auto_commit:
                db.close()

    # Schedule Management Methods

    def create_schedule(self, schedule_data: Dict[str, Any]) -> Schedule:
        with self.transaction() as db:
            schedule = Schedule(**schedule_data)
            db.add(schedule)
            db.flush()

            logger.info(
                "Created schedule",
                schedule_id=schedule.id,
                name=schedule.name,
                cron_expression=schedule.cron_expression,
            )
            return schedule

    def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        with self.transaction() as db:
            return db.get(Schedule, schedule_id)

    def require_schedule(self, schedule_id: str) -> Schedule:
        schedule = self.get_schedule(schedule_id)
        if schedule is None:
            raise ScheduleNotFoundError(f"Schedule {schedule_id} not found")
        return schedule

    def list_schedules(self, enabled: Optional[bool] = None) -> List[Schedule]:
        with self.transaction() as db:
            query = db.query(Schedule)
            if enabled is not None:
                query = query.filter(Schedule.enabled == enabled)
            return query.order_by(Schedule.name).all()

    def get_schedules(self, schedule_ids: Iterable[str]) -> List[Schedule]:
        ids = list(schedule_ids)
        if not ids:
            return []
        with self.transaction() as db:
            return db.query(Schedule).filter(Schedule.id.in_(ids)).all()

    def update_schedule(self, schedule_id: str, updates: Dict[str, Any]) -> Schedule:
        with self.transaction() as db:
            schedule = db.get(Schedule, schedule_id)
            if schedule is None:
                raise ScheduleNotFoundError(f"Schedule {schedule_id} not found")

            for key, value in updates.items():
                if hasattr(schedule, key):
                    setattr(schedule, key, value)
            schedule.updated_at = utcnow()
            db.flush()

            logger.info(
                "Updated schedule",
                schedule_id=schedule_id,
                updated_fields=list(updates.keys()),
            )
            return schedule

    def delete_schedule(self, schedule_id: str) -> bool:
        with self.transaction() as db:
            schedule = db.get(Schedule, schedule_id)
            if schedule is None:
                return False
            db.delete(schedule)
            logger.info("Deleted schedule", schedule_id=schedule_id)
            return True

    def record_run(
        self, schedule_id: str, last_run_at: datetime, next_run_at: Optional[datetime]
    ) -> None:
        """Update lastRun/nextRun and increment runCount in one statement"""
        with self.transaction() as db:
            db.query(Schedule).filter(Schedule.id == schedule_id).update(
                {
                    Schedule.last_run_at: last_run_at,
                    Schedule.next_run_at: next_run_at,
                    Schedule.run_count: Schedule.run_count + 1,
                },
                synchronize_session=False,
            )

    def set_next_run(self, schedule_id: str, next_run_at: Optional[datetime]) -> None:
        with self.transaction() as db:
            db.query(Schedule).filter(Schedule.id == schedule_id).update(
                {Schedule.next_run_at: next_run_at}, synchronize_session=False
            )

    def increment_fail_count(self, schedule_id: str) -> None:
        with self.transaction() as db:
            db.query(Schedule).filter(Schedule.id == schedule_id).update(
                {Schedule.fail_count: Schedule.fail_count + 1},
                synchronize_session=False,
            )

    # Maintenance Window Methods

    def create_window(self, window_data: Dict[str, Any]) -> MaintenanceWindow:
        with self.transaction() as db:
            window = MaintenanceWindow(**window_data)
            db.add(window)
            db.flush()
            logger.info(
                "Created maintenance window",
                window_id=window.id,
                name=window.name,
                cron_expression=window.cron_expression,
            )
            return window

    def get_window(self, window_id: str) -> Optional[MaintenanceWindow]:
        with self.transaction() as db:
            return db.get(MaintenanceWindow, window_id)

    def get_windows(self, window_ids: Iterable[str]) -> List[MaintenanceWindow]:
        """Windows in the order of `window_ids`; unknown ids are dropped."""
        ids = list(window_ids)
        if not ids:
            return []
        with self.transaction() as db:
            found = {
                w.id: w
                for w in db.query(MaintenanceWindow)
                .filter(MaintenanceWindow.id.in_(ids))
                .all()
            }
        return [found[i] for i in ids if i in found]

    def list_windows(self) -> List[MaintenanceWindow]:
        with self.transaction() as db:
            return db.query(MaintenanceWindow).order_by(MaintenanceWindow.name).all()

    def update_window(self, window_id: str, updates: Dict[str, Any]) -> MaintenanceWindow:
        with self.transaction() as db:
            window = db.get(MaintenanceWindow, window_id)
            if window is None:
                raise MaintenanceWindowNotFoundError(f"Window {window_id} not found")
            for key, value in updates.items():
                if hasattr(window, key):
                    setattr(window, key, value)
            window.updated_at = utcnow()
            db.flush()
            return window

    def delete_window(self, window_id: str) -> bool:
        with self.transaction() as db:
            window = db.get(MaintenanceWindow, window_id)
            if window is None:
                return False
            db.delete(window)
            logger.info("Deleted maintenance window", window_id=window_id)
            return True

    # Job Methods

    def create_job(self, job_data: Dict[str, Any]) -> Job:
        with self.transaction() as db:
            job = Job(**job_data)
            db.add(job)
            db.flush()

            logger.info(
                "Created job",
                job_id=job.id,
                script_id=job.script_id,
                node_id=job.node_id,
                priority=job.priority.value if job.priority else None,
            )
            return job

    def get_job(self, job_id: str) -> Optional[Job]:
        with self.transaction() as db:
            return db.get(Job, job_id)

    def list_jobs(
        self,
        node_id: Optional[str] = None,
        states: Optional[Iterable[JobState]] = None,
        schedule_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Job]:
        with self.transaction() as db:
            query = db.query(Job)
            if node_id is not None:
                query = query.filter(Job.node_id == node_id)
            if states is not None:
                query = query.filter(Job.state.in_(list(states)))
            if schedule_id is not None:
                query = query.filter(Job.schedule_id == schedule_id)
            if execution_id is not None:
                query = query.filter(Job.remediation_execution_id == execution_id)
            return query.order_by(Job.queued_at).limit(limit).all()

    def count_active_jobs(
        self, node_id: Optional[str] = None, mesh_id: Optional[str] = None
    ) -> int:
        """Count jobs in pending or running, optionally scoped to a node or mesh"""
        with self.transaction() as db:
            query = db.query(func.count(Job.id)).filter(
                Job.state.in_(list(ACTIVE_JOB_STATES))
            )
            if node_id is not None:
                query = query.filter(Job.node_id == node_id)
            if mesh_id is not None:
                query = query.filter(Job.mesh_id == mesh_id)
            return int(query.scalar() or 0)

    def transition_job(
        self, job_id: str, new_state: JobState, **fields: Any
    ) -> Job:
        """
        Move a job to a new state, refusing backwards transitions.

        Extra keyword arguments are written onto the job alongside the state.
        """
        with self.transaction() as db:
            job = db.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")

            current = JobState(job.state)
            if new_state not in JOB_TRANSITIONS[current]:
                raise InvalidJobTransitionError(
                    f"Job {job_id} cannot move from {current.value} to {new_state.value}"
                )

            job.state = new_state
            for key, value in fields.items():
                setattr(job, key, value)
            if new_state == JobState.RUNNING and job.started_at is None:
                job.started_at = utcnow()
            if JobState(new_state).is_terminal:
                job.finished_at = utcnow()
            db.flush()

            logger.info(
                "Job state changed",
                job_id=job_id,
                from_state=current.value,
                to_state=new_state.value,
            )
            return job

    def cancel_pending_jobs(
        self,
        reason: str,
        node_id: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> int:
        """Mark matching pending jobs cancelled; returns the number cancelled"""
        if node_id is None and execution_id is None:
            raise ValueError("cancel_pending_jobs needs a node_id or execution_id")

        with self.transaction() as db:
            query = db.query(Job).filter(Job.state == JobState.PENDING)
            if node_id is not None:
                query = query.filter(Job.node_id == node_id)
            if execution_id is not None:
                query = query.filter(Job.remediation_execution_id == execution_id)

            jobs = query.all()
            now = utcnow()
            for job in jobs:
                job.state = JobState.CANCELLED
                job.cancelled_reason = reason
                job.finished_at = now

            if jobs:
                logger.info(
                    "Cancelled pending jobs",
                    count=len(jobs),
                    node_id=node_id,
                    execution_id=execution_id,
                    reason=reason,
                )
            return len(jobs)

    def job_stats(self) -> Dict[str, int]:
        """Job counts per state, every state present"""
        with self.transaction() as db:
            rows = db.query(Job.state, func.count(Job.id)).group_by(Job.state).all()

        stats = {state.value: 0 for state in JobState}
        for state, count in rows:
            stats[JobState(state).value] = int(count)
        stats["total"] = sum(stats[state.value] for state in JobState)
        return stats

    # Quarantine lookups used for dispatch exclusion

    def get_quarantined_node_ids(self) -> List[str]:
        with self.transaction() as db:
            rows = (
                db.query(NodeQuarantine.node_id)
                .filter(NodeQuarantine.active.is_(True))
                .distinct()
                .all()
            )
        return [row[0] for row in rows]
