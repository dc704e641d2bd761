from .remediation import (
    AdminAlert,
    EscalationPolicy,
    ExecutionStatus,
    NodeQuarantine,
    RemediationExecution,
    RemediationWorkflow,
    StepType,
    TierType,
)
from .scheduling import (
    Job,
    JobState,
    MaintenanceWindow,
    MissedJobPolicy,
    Schedule,
    SchedulePriority,
)

__all__ = [
    "Schedule",
    "MaintenanceWindow",
    "Job",
    "JobState",
    "SchedulePriority",
    "MissedJobPolicy",
    "RemediationWorkflow",
    "RemediationExecution",
    "ExecutionStatus",
    "StepType",
    "TierType",
    "EscalationPolicy",
    "NodeQuarantine",
    "AdminAlert",
]
