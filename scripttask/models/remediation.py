"""
Remediation system database models.

Workflows are stored as raw step graphs and compiled before every run;
executions record one run of a workflow against a single node along with
its ordered step results and any alerts raised on its behalf.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Index, String, Text
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


class ExecutionStatus(str, Enum):
    """Status of a remediation execution"""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING


class StepType(str, Enum):
    """Kinds of remediation workflow steps"""

    SCRIPT = "script"
    WEBHOOK = "webhook"
    EMAIL = "email"
    DELAY = "delay"
    CONDITION = "condition"


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class TierType(str, Enum):
    """Escalation tier action types"""

    RUN_SCRIPT = "runScript"
    WEBHOOK = "webhook"
    EMAIL = "email"
    QUARANTINE = "quarantine"
    CUSTOM_ACTION = "customAction"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class RemediationWorkflow(Base):
    """
    Stored remediation workflow definition.

    Steps are kept as the raw list of step dictionaries; the workflow
    compiler validates and indexes them before any execution starts.
    """

    __tablename__ = "remediation_workflows"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False, index=True)
    description = Column(Text, nullable=True)
    steps = Column(JSON, nullable=False, default=list)
    start_step = Column(String(255), nullable=True)
    escalation_policy_id = Column(String, nullable=True)
    escalation_enabled = Column(Boolean, nullable=False, default=True)
    rollback_enabled = Column(Boolean, nullable=False, default=False)
    enabled = Column(Boolean, nullable=False, default=True)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    @validates("steps")
    def validate_steps(self, key, value):
        if not isinstance(value, list):
            raise ValueError("steps must be a list")
        return value

    def to_definition(self) -> Dict[str, Any]:
        """Workflow fields consumed by the validator/compiler"""
        return {
            "name": self.name,
            "description": self.description,
            "steps": [dict(step) for step in (self.steps or [])],
            "start_step": self.start_step,
            "escalation_policy_id": self.escalation_policy_id,
            "escalation_enabled": bool(self.escalation_enabled),
            "rollback_enabled": bool(self.rollback_enabled),
            "enabled": bool(self.enabled),
        }

    def find_step(self, step_id: str) -> Dict[str, Any]:
        for step in self.steps or []:
            if step.get("id") == step_id:
                return step
        return {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        data = self.to_definition()
        data.update(
            {
                "id": self.id,
                "created_by": self.created_by,
                "created_at": isoformat(self.created_at),
                "updated_at": isoformat(self.updated_at),
            }
        )
        return data


class RemediationExecution(Base):
    """One run of a workflow against one node"""

    __tablename__ = "remediation_executions"

    id = Column(String, primary_key=True, default=_new_id)
    workflow_id = Column(String, nullable=False, index=True)
    workflow_name = Column(String(255), nullable=False)
    node_id = Column(String(255), nullable=False, index=True)
    status = Column(
        SQLEnum(ExecutionStatus), nullable=False, default=ExecutionStatus.RUNNING
    )
    current_step = Column(String(255), nullable=True)

    triggered_by = Column(String(255), nullable=True)
    trigger_type = Column(String(64), nullable=False, default="manual")
    context = Column(JSON, nullable=False, default=dict)

    step_results = Column(JSON, nullable=False, default=list)
    alerts = Column(JSON, nullable=False, default=list)

    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Float, nullable=True)
    completion_reason = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_remediation_exec_workflow_node_status", "workflow_id", "node_id", "status"),
    )

    @property
    def is_running(self) -> bool:
        return self.status == ExecutionStatus.RUNNING

    def results_for_step(self, step_id: str) -> List[Dict[str, Any]]:
        return [r for r in (self.step_results or []) if r.get("step_id") == step_id]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow_name,
            "node_id": self.node_id,
            "status": ExecutionStatus(self.status).value,
            "current_step": self.current_step,
            "triggered_by": self.triggered_by,
            "trigger_type": self.trigger_type,
            "context": dict(self.context or {}),
            "step_results": list(self.step_results or []),
            "alerts": list(self.alerts or []),
            "started_at": isoformat(self.started_at),
            "finished_at": isoformat(self.finished_at),
            "duration_seconds": self.duration_seconds,
            "completion_reason": self.completion_reason,
        }


class EscalationPolicy(Base):
    """Ordered list of escalation tiers, tried until one succeeds"""

    __tablename__ = "escalation_policies"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    tiers = Column(JSON, nullable=False, default=list)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "tiers": list(self.tiers or []),
            "created_by": self.created_by,
            "created_at": isoformat(self.created_at),
        }


class NodeQuarantine(Base):
    """Quarantine record; an active record excludes the node from dispatch"""

    __tablename__ = "node_quarantines"

    id = Column(String, primary_key=True, default=_new_id)
    node_id = Column(String(255), nullable=False, index=True)
    reason = Column(Text, nullable=True)
    active = Column(Boolean, nullable=False, default=True, index=True)
    quarantined_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    unquarantined_at = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "node_id": self.node_id,
            "reason": self.reason,
            "active": self.active,
            "quarantined_at": isoformat(self.quarantined_at),
            "unquarantined_at": isoformat(self.unquarantined_at),
        }


class AdminAlert(Base):
    """Administrator-facing alert persisted for after-the-fact discovery"""

    __tablename__ = "admin_alerts"

    id = Column(String, primary_key=True, default=_new_id)
    severity = Column(
        SQLEnum(AlertSeverity), nullable=False, default=AlertSeverity.CRITICAL
    )
    title = Column(String(512), nullable=False)
    message = Column(Text, nullable=False)
    execution_id = Column(String, nullable=True, index=True)
    workflow_id = Column(String, nullable=True)
    node_id = Column(String(255), nullable=True)
    acknowledged = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "severity": AlertSeverity(self.severity).value,
            "title": self.title,
            "message": self.message,
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "node_id": self.node_id,
            "acknowledged": self.acknowledged,
            "created_at": isoformat(self.created_at),
        }
