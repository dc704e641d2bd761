"""
Remediation workflows.

Validated step graphs run against a single node with timeouts, retries,
branching, escalation and rollback.
"""

from .actions import ActionHandler, ActionResult, EmailSender, UnconfiguredEmailSender
from .conditions import ConditionEvaluator, condition_evaluator, extract_field
from .engine import RemediationEngine, StepOutcome
from .escalation import EscalationManager, EscalationResult, RetryDecision, backoff_delay
from .repository import RemediationRepository, RemediationRepositoryError
from .workflow import (
    CompiledStep,
    CompiledWorkflow,
    ValidationReport,
    WorkflowCompiler,
    workflow_compiler,
)

__all__ = [
    "ActionHandler",
    "ActionResult",
    "EmailSender",
    "UnconfiguredEmailSender",
    "ConditionEvaluator",
    "condition_evaluator",
    "extract_field",
    "RemediationEngine",
    "StepOutcome",
    "EscalationManager",
    "EscalationResult",
    "RetryDecision",
    "backoff_delay",
    "RemediationRepository",
    "RemediationRepositoryError",
    "CompiledStep",
    "CompiledWorkflow",
    "ValidationReport",
    "WorkflowCompiler",
    "workflow_compiler",
]
