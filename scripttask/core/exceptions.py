"""
Exception hierarchy for the scheduler and the remediation engine.

Admission denials (maintenance windows, dependency and concurrency gates) are
normal control flow and are not represented here; they surface as boolean or
WindowDecision results.
"""

from typing import List, Optional


class ScriptTaskError(Exception):
    """Base exception for all scheduling and remediation errors"""

    pass


class ValidationError(ScriptTaskError):
    """A definition was rejected before anything was applied"""

    pass


class ScheduleValidationError(ValidationError):
    """Raised when a schedule or maintenance window definition is malformed"""

    pass


class InvalidWorkflowError(ValidationError):
    """Raised when a workflow fails structural validation"""

    def __init__(self, errors: List[str], workflow_name: Optional[str] = None):
        self.errors = list(errors)
        self.workflow_name = workflow_name
        label = f" '{workflow_name}'" if workflow_name else ""
        super().__init__(f"Invalid workflow{label}: {'; '.join(self.errors)}")


class NotFoundError(ScriptTaskError):
    """Base for lookups of records that do not exist"""

    pass


class ScheduleNotFoundError(NotFoundError):
    pass


class MaintenanceWindowNotFoundError(NotFoundError):
    pass


class JobNotFoundError(NotFoundError):
    pass


class WorkflowNotFoundError(NotFoundError):
    pass


class ExecutionNotFoundError(NotFoundError):
    pass


class EscalationPolicyNotFoundError(NotFoundError):
    pass


class WorkflowDisabledError(ScriptTaskError):
    """Raised when triggering a workflow that is switched off"""

    pass


class InvalidJobTransitionError(ScriptTaskError):
    """Raised when a job state change would move backwards"""

    pass


class InvalidExecutionStateError(ScriptTaskError):
    """Raised when an operation is not valid for the execution's current status"""

    pass


class StepExecutionError(ScriptTaskError):
    """A step's own work failed; eligible for retry"""

    def __init__(self, message: str, step_id: Optional[str] = None):
        self.step_id = step_id
        super().__init__(message)


class StepTimeoutError(StepExecutionError):
    """A step did not finish within its timeout"""

    def __init__(self, step_id: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Step '{step_id}' timed out after {timeout_seconds}s", step_id=step_id
        )
