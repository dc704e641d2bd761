# Import all the models, so that Base has them before create_all runs
from scripttask.db.base_class import Base
from scripttask.models.remediation import (
    AdminAlert,
    EscalationPolicy,
    NodeQuarantine,
    RemediationExecution,
    RemediationWorkflow,
)
from scripttask.models.scheduling import Job, MaintenanceWindow, Schedule

__all__ = [  # noqa: F401
    "Base",
    "Schedule",
    "MaintenanceWindow",
    "Job",
    "RemediationWorkflow",
    "RemediationExecution",
    "EscalationPolicy",
    "NodeQuarantine",
    "AdminAlert",
]
