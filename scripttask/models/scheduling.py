"""
Scheduling system database models.

Schedules are recurring job templates, maintenance windows are recurring
blackout intervals, and jobs are the concrete units of work a schedule firing
(or a remediation step) materializes for a single node.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy import (
    Enum as SQLEnum,
)
from sqlalchemy.orm import validates

from scripttask.db.base_class import Base
from scripttask.utils.timeutils import isoformat


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulePriority(str, Enum):
    """Relative weight of a schedule or job; no strict preemption"""

    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def weight(self) -> int:
        """Lower weight sorts first in priority queues"""
        return PRIORITY_WEIGHTS[self]


PRIORITY_WEIGHTS = {
    SchedulePriority.CRITICAL: 0,
    SchedulePriority.HIGH: 1,
    SchedulePriority.NORMAL: 2,
    SchedulePriority.LOW: 3,
}


class MissedJobPolicy(str, Enum):
    """What to do with a firing blocked by a maintenance window"""

    SKIP = "skip"  # Drop the firing, wait for the next tick
    IMMEDIATE = "immediate"  # Re-fire as soon as the blocking window closes
    QUEUE = "queue"  # Park in the deferred queue, re-evaluate periodically


class JobState(str, Enum):
    """Lifecycle state of a job"""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATES


TERMINAL_JOB_STATES = frozenset({JobState.COMPLETE, JobState.ERROR, JobState.CANCELLED})
ACTIVE_JOB_STATES = frozenset({JobState.PENDING, JobState.RUNNING})

# Allowed forward transitions; terminal states have none.
JOB_TRANSITIONS = {
    JobState.PENDING: {
        JobState.RUNNING,
        JobState.COMPLETE,
        JobState.ERROR,
        JobState.CANCELLED,
    },
    JobState.RUNNING: {JobState.COMPLETE, JobState.ERROR, JobState.CANCELLED},
    JobState.COMPLETE: set(),
    JobState.ERROR: set(),
    JobState.CANCELLED: set(),
}


class Schedule(Base):
    """
    Recurring job template.

    Fires a script against a target set of nodes on a cron expression,
    subject to maintenance windows, dependencies and concurrency limits.
    """

    __tablename__ = "schedules"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False, index=True)
    description = Column(Text, nullable=True)
    script_id = Column(String(255), nullable=False)

    # Trigger
    cron_expression = Column(String(255), nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")

    # Targets: explicit node ids plus members of named meshes
    nodes = Column(JSON, nullable=False, default=list)
    meshes = Column(JSON, nullable=False, default=list)

    priority = Column(
        SQLEnum(SchedulePriority), nullable=False, default=SchedulePriority.NORMAL
    )

    # Concurrency limits, unset means unconstrained
    max_per_node = Column(Integer, nullable=True)
    max_per_mesh = Column(Integer, nullable=True)
    max_global = Column(Integer, nullable=True)

    maintenance_window_ids = Column(JSON, nullable=False, default=list)
    depends_on = Column(JSON, nullable=False, default=list)
    jitter_seconds = Column(Integer, nullable=False, default=0)
    missed_job_policy = Column(
        SQLEnum(MissedJobPolicy), nullable=False, default=MissedJobPolicy.SKIP
    )
    variables = Column(JSON, nullable=False, default=dict)
    enabled = Column(Boolean, nullable=False, default=True, index=True)

    # Bookkeeping
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    last_run_at = Column(DateTime(timezone=True), nullable=True)
    next_run_at = Column(DateTime(timezone=True), nullable=True, index=True)
    run_count = Column(Integer, nullable=False, default=0)
    fail_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("idx_schedules_enabled_next_run", "enabled", "next_run_at"),
        CheckConstraint("jitter_seconds >= 0", name="jitter_non_negative"),
    )

    @validates("nodes", "meshes", "maintenance_window_ids", "depends_on")
    def validate_id_list(self, key, value):
        if value is None:
            return []
        if not isinstance(value, (list, tuple)):
            raise ValueError(f"{key} must be a list")
        return list(value)

    @property
    def has_targets(self) -> bool:
        return bool(self.nodes) or bool(self.meshes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "script_id": self.script_id,
            "cron_expression": self.cron_expression,
            "timezone": self.timezone,
            "nodes": list(self.nodes or []),
            "meshes": list(self.meshes or []),
            "priority": SchedulePriority(self.priority).value,
            "max_per_node": self.max_per_node,
            "max_per_mesh": self.max_per_mesh,
            "max_global": self.max_global,
            "maintenance_window_ids": list(self.maintenance_window_ids or []),
            "depends_on": list(self.depends_on or []),
            "jitter_seconds": self.jitter_seconds,
            "missed_job_policy": MissedJobPolicy(self.missed_job_policy).value,
            "enabled": self.enabled,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
            "last_run_at": isoformat(self.last_run_at),
            "next_run_at": isoformat(self.next_run_at),
            "run_count": self.run_count,
            "fail_count": self.fail_count,
        }


class MaintenanceWindow(Base):
    """
    Recurring blackout interval.

    The cron expression marks window starts; the window stays open for
    duration_seconds. Priorities listed in allowed_priorities are exempt.
    """

    __tablename__ = "maintenance_windows"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False, index=True)
    description = Column(Text, nullable=True)
    cron_expression = Column(String(255), nullable=False)
    duration_seconds = Column(Integer, nullable=False, default=3600)
    timezone = Column(String(64), nullable=False, default="UTC")
    allowed_priorities = Column(JSON, nullable=False, default=lambda: ["critical"])
    enabled = Column(Boolean, nullable=False, default=True)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint("duration_seconds > 0", name="window_duration_positive"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "cron_expression": self.cron_expression,
            "duration_seconds": self.duration_seconds,
            "timezone": self.timezone,
            "allowed_priorities": list(self.allowed_priorities or []),
            "enabled": self.enabled,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class Job(Base):
    """
    One concrete unit of work: a script queued for a single node.

    Created by schedule firings, remediation script steps, rollbacks and
    escalation tiers. The remote dispatch collaborator moves it out of
    pending and reports the terminal result.
    """

    __tablename__ = "jobs"

    id = Column(String, primary_key=True, default=_new_id)
    script_id = Column(String(255), nullable=False)
    node_id = Column(String(255), nullable=False, index=True)
    mesh_id = Column(String(255), nullable=True, index=True)
    priority = Column(
        SQLEnum(SchedulePriority), nullable=False, default=SchedulePriority.NORMAL
    )
    state = Column(SQLEnum(JobState), nullable=False, default=JobState.PENDING)

    queued_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    retried_from_id = Column(String, nullable=True)

    # Origin
    schedule_id = Column(String, nullable=True, index=True)
    remediation_execution_id = Column(String, nullable=True, index=True)
    remediation_step_id = Column(String(255), nullable=True)

    tags = Column(JSON, nullable=False, default=list)
    # "metadata" is reserved on declarative classes
    job_metadata = Column("metadata", JSON, nullable=False, default=dict)
    variables = Column(JSON, nullable=False, default=dict)

    # Result, reported by the dispatch collaborator
    exit_code = Column(Integer, nullable=True)
    output = Column(Text, nullable=True)
    stdout = Column(Text, nullable=True)
    stderr = Column(Text, nullable=True)
    cancelled_reason = Column(String(255), nullable=True)

    __table_args__ = (
        Index("idx_jobs_state_node", "state", "node_id"),
        Index("idx_jobs_state_mesh", "state", "mesh_id"),
        CheckConstraint("retry_count >= 0", name="retry_count_non_negative"),
    )

    @property
    def is_terminal(self) -> bool:
        return JobState(self.state).is_terminal

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "id": self.id,
            "script_id": self.script_id,
            "node_id": self.node_id,
            "mesh_id": self.mesh_id,
            "priority": SchedulePriority(self.priority).value,
            "state": JobState(self.state).value,
            "queued_at": isoformat(self.queued_at),
            "started_at": isoformat(self.started_at),
            "finished_at": isoformat(self.finished_at),
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "schedule_id": self.schedule_id,
            "remediation_execution_id": self.remediation_execution_id,
            "remediation_step_id": self.remediation_step_id,
            "tags": list(self.tags or []),
            "metadata": dict(self.job_metadata or {}),
            "exit_code": self.exit_code,
            "output": self.output,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "cancelled_reason": self.cancelled_reason,
        }
