"""
Remediation workflow validation and compilation.

A workflow is stored as a list of step dictionaries plus a start step id.
`validate` collects every structural problem instead of stopping at the
first one; `compile` refuses invalid input and otherwise produces the
indexed state machine the execution engine consumes.
"""

import json
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Set, Union
from urllib.parse import urlparse

from scripttask.core.config import settings
from scripttask.core.exceptions import InvalidWorkflowError
from scripttask.models.remediation import RemediationWorkflow, StepType
from scripttask.utils.logger import get_logger
from scripttask.utils.timeutils import isoformat, utcnow

from .conditions import ConditionEvaluator, condition_evaluator

logger = get_logger(__name__)

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
BACKOFF_TYPES = ("exponential", "linear")
WEBHOOK_TYPES = ("generic", "slack", "teams", "discord")
EXPORT_FORMAT_VERSION = "1.0"

ACTION_TRANSITIONS = ("on_success", "on_failure")
CONDITION_TRANSITIONS = ("on_true", "on_false")
ALL_TRANSITIONS = ACTION_TRANSITIONS + CONDITION_TRANSITIONS
STRUCTURAL_KEYS = {"id", "type", "timeout"} | set(ALL_TRANSITIONS)

WorkflowLike = Union[RemediationWorkflow, Dict[str, Any]]


@dataclass(frozen=True)
class CompiledStep:
    """Executable form of a workflow step"""

    id: str
    type: StepType
    config: Dict[str, Any]
    timeout_seconds: float
    transitions: Dict[str, str]

    @property
    def name(self) -> str:
        return self.config.get("name") or self.id

    @property
    def is_sink(self) -> bool:
        return not self.transitions


@dataclass(frozen=True)
class CompiledWorkflow:
    name: str
    start_step: str
    steps: Dict[str, CompiledStep]
    escalation_enabled: bool = True
    escalation_policy_id: Optional[str] = None
    rollback_enabled: bool = False
    description: str = ""

    def get_step(self, step_id: Optional[str]) -> Optional[CompiledStep]:
        if step_id is None:
            return None
        return self.steps.get(step_id)


@dataclass
class ValidationReport:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def as_definition(workflow: WorkflowLike) -> Dict[str, Any]:
    if isinstance(workflow, RemediationWorkflow):
        return workflow.to_definition()
    return dict(workflow or {})


def _is_positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


class WorkflowCompiler:
    """Validates workflow graphs and compiles them into state machines"""

    def __init__(self, evaluator: Optional[ConditionEvaluator] = None):
        self.evaluator = evaluator or condition_evaluator

    # Validation

    def validate(self, workflow: WorkflowLike) -> List[str]:
        return self.check(workflow).errors

    def check(self, workflow: WorkflowLike) -> ValidationReport:
        definition = as_definition(workflow)
        report = ValidationReport()
        steps = definition.get("steps")

        if not isinstance(steps, list):
            report.errors.append("Workflow must have a steps array")
            return report
        if not steps:
            report.errors.append("Workflow must have at least one step")
            return report
        if not all(isinstance(step, dict) for step in steps):
            report.errors.append("Every step must be an object")
            return report

        step_ids = [step.get("id") for step in steps if step.get("id")]
        duplicates = sorted(sid for sid, seen in Counter(step_ids).items() if seen > 1)
        for step_id in duplicates:
            report.errors.append(f"Duplicate step id: {step_id}")

        known = set(step_ids)
        for step in steps:
            report.errors.extend(self._validate_step(step))
            for key in ALL_TRANSITIONS:
                target = step.get(key)
                if target and target not in known:
                    report.errors.append(
                        f"Step {step.get('id')}: {key} references non-existent step {target}"
                    )

        start_step = definition.get("start_step")
        if not start_step:
            report.errors.append("Workflow must have a start_step defined")
        elif start_step not in known:
            report.errors.append(f"start_step {start_step} does not exist in steps")

        report.errors.extend(self.find_cycles(steps, start_step))

        if not any(not any(step.get(k) for k in ALL_TRANSITIONS) for step in steps):
            report.warnings.append(
                "No explicit end step found (every step has an outgoing transition)"
            )

        return report

    def _validate_step(self, step: Dict[str, Any]) -> List[str]:
        step_id = step.get("id")
        if not step_id:
            return ["Step must have an id"]

        step_type = step.get("type")
        if not step_type:
            return [f"Step {step_id}: must have a type"]
        try:
            step_type = StepType(step_type)
        except ValueError:
            valid = ", ".join(t.value for t in StepType)
            return [f"Step {step_id}: invalid type \"{step_type}\". Must be one of: {valid}"]

        errors = []
        if "timeout" in step and not _is_positive_number(step["timeout"]):
            errors.append(f"Step {step_id}: timeout must be a positive number")

        if step_type == StepType.CONDITION:
            wrong = [k for k in ACTION_TRANSITIONS if step.get(k)]
        else:
            wrong = [k for k in CONDITION_TRANSITIONS if step.get(k)]
        for key in wrong:
            errors.append(f"Step {step_id}: {key} is not valid for {step_type.value} steps")

        if step_type == StepType.SCRIPT:
            if not step.get("script_id"):
                errors.append(f"Step {step_id}: script step must have script_id defined")
        elif step_type == StepType.WEBHOOK:
            errors.extend(self._validate_webhook(step_id, step))
        elif step_type == StepType.EMAIL:
            if not step.get("to"):
                errors.append(f"Step {step_id}: email step must have to field defined")
            if not step.get("subject"):
                errors.append(f"Step {step_id}: email step must have subject defined")
            if not step.get("body") and not step.get("template"):
                errors.append(f"Step {step_id}: email step must have body or template defined")
        elif step_type == StepType.DELAY:
            if "duration" not in step:
                errors.append(f"Step {step_id}: delay step must have duration defined")
            elif not _is_positive_number(step["duration"]):
                errors.append(f"Step {step_id}: delay duration must be a positive number")
        elif step_type == StepType.CONDITION:
            if not step.get("condition"):
                errors.append(f"Step {step_id}: condition step must have condition defined")
            else:
                errors.extend(
                    f"Step {step_id}: {problem}"
                    for problem in self.evaluator.validate_condition(step["condition"])
                )
            if not step.get("on_true") and not step.get("on_false"):
                errors.append(
                    f"Step {step_id}: condition step must have at least on_true or on_false defined"
                )

        if step.get("retry_policy") is not None:
            errors.extend(self._validate_retry_policy(step_id, step["retry_policy"]))

        return errors

    def _validate_webhook(self, step_id: str, step: Dict[str, Any]) -> List[str]:
        errors = []
        url = step.get("url")
        if not url:
            errors.append(f"Step {step_id}: webhook step must have url defined")
        else:
            parsed = urlparse(str(url))
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                errors.append(f"Step {step_id}: invalid webhook URL \"{url}\"")

        method = step.get("method")
        if method is not None and method not in HTTP_METHODS:
            errors.append(f"Step {step_id}: invalid HTTP method \"{method}\"")

        webhook_type = step.get("webhook_type")
        if webhook_type is not None and webhook_type not in WEBHOOK_TYPES:
            errors.append(f"Step {step_id}: invalid webhook type \"{webhook_type}\"")
        return errors

    def _validate_retry_policy(self, step_id: str, policy: Any) -> List[str]:
        if not isinstance(policy, dict):
            return [f"Step {step_id}: retry_policy must be an object"]

        errors = []
        max_attempts = policy.get("max_attempts")
        if max_attempts is not None and (
            not isinstance(max_attempts, int) or isinstance(max_attempts, bool) or max_attempts < 0
        ):
            errors.append(f"Step {step_id}: retry_policy.max_attempts must be a non-negative integer")

        backoff = policy.get("backoff_type")
        if backoff is not None and backoff not in BACKOFF_TYPES:
            errors.append(f"Step {step_id}: retry_policy.backoff_type must be one of {BACKOFF_TYPES}")

        delay = policy.get("delay_seconds")
        if delay is not None and (
            not isinstance(delay, (int, float)) or isinstance(delay, bool) or delay < 0
        ):
            errors.append(f"Step {step_id}: retry_policy.delay_seconds must be non-negative")
        return errors

    @staticmethod
    def find_cycles(steps: List[Dict[str, Any]], start_step: Optional[str] = None) -> List[str]:
        """
        Depth-first search with an explicit stack, first from the start step
        and then from every step not yet visited.

        ``path`` holds the steps currently on the stack and ``position`` maps
        each of them to its index, so a back edge yields the cycle directly.
        """
        graph = {step.get("id"): step for step in steps if step.get("id")}
        visited: Set[str] = set()
        errors: List[str] = []

        def successors(step_id: str) -> Iterator[str]:
            step = graph[step_id]
            return iter([step[key] for key in ALL_TRANSITIONS if step.get(key)])

        def walk(root: Optional[str]) -> None:
            if root is None or root in visited or root not in graph:
                return
            visited.add(root)
            path = [root]
            position = {root: 0}
            pending = [successors(root)]
            while pending:
                target = next(pending[-1], None)
                if target is None:
                    pending.pop()
                    del position[path.pop()]
                elif target in position:
                    cycle = " -> ".join(path[position[target]:] + [target])
                    errors.append(f"Circular dependency detected: {cycle}")
                elif target in graph and target not in visited:
                    visited.add(target)
                    position[target] = len(path)
                    path.append(target)
                    pending.append(successors(target))

        walk(start_step)
        for step_id in graph:
            walk(step_id)
        return errors

    # Compilation

    def compile(self, workflow: WorkflowLike) -> CompiledWorkflow:
        """
        Build the executable state machine.

        Raises:
            InvalidWorkflowError: Carrying every validation error found
        """
        definition = as_definition(workflow)
        report = self.check(definition)
        if not report.valid:
            logger.warning(
                "Workflow validation failed",
                workflow_name=definition.get("name"),
                errors=report.errors,
            )
            raise InvalidWorkflowError(report.errors, workflow_name=definition.get("name"))

        for warning in report.warnings:
            logger.info("Workflow warning", workflow_name=definition.get("name"), warning=warning)

        compiled_steps = {}
        for step in definition["steps"]:
            step_type = StepType(step["type"])
            keys = CONDITION_TRANSITIONS if step_type == StepType.CONDITION else ACTION_TRANSITIONS
            compiled_steps[step["id"]] = CompiledStep(
                id=step["id"],
                type=step_type,
                config={k: v for k, v in step.items() if k not in STRUCTURAL_KEYS},
                timeout_seconds=step.get("timeout") or settings.STEP_DEFAULT_TIMEOUT_SECONDS,
                transitions={k: step[k] for k in keys if step.get(k)},
            )

        return CompiledWorkflow(
            name=definition.get("name") or "Unnamed Workflow",
            description=definition.get("description") or "",
            start_step=definition["start_step"],
            steps=compiled_steps,
            escalation_enabled=definition.get("escalation_enabled", True) is not False,
            escalation_policy_id=definition.get("escalation_policy_id"),
            rollback_enabled=bool(definition.get("rollback_enabled", False)),
        )

    @staticmethod
    def next_step(
        compiled: CompiledWorkflow,
        step_id: str,
        succeeded: bool,
        condition_result: Optional[bool] = None,
    ) -> Optional[str]:
        """Transition target after a step, None when the workflow ends"""
        step = compiled.get_step(step_id)
        if step is None:
            return None
        if step.type == StepType.CONDITION:
            if condition_result is True:
                return step.transitions.get("on_true")
            if condition_result is False:
                return step.transitions.get("on_false")
            return None
        return step.transitions.get("on_success" if succeeded else "on_failure")

    # Authoring helpers

    def summarize(self, workflow: WorkflowLike) -> Dict[str, Any]:
        definition = as_definition(workflow)
        steps = definition.get("steps") or []
        step_types: Dict[str, int] = {}
        for step in steps:
            if isinstance(step, dict):
                step_types[step.get("type")] = step_types.get(step.get("type"), 0) + 1

        report = self.check(definition)
        well_formed = isinstance(steps, list) and all(isinstance(s, dict) for s in steps)
        return {
            "name": definition.get("name") or "Unnamed Workflow",
            "step_count": len(steps) if isinstance(steps, list) else 0,
            "start_step": definition.get("start_step"),
            "step_types": step_types,
            "sink_steps": [
                s.get("id") for s in steps if well_formed and not any(s.get(k) for k in ALL_TRANSITIONS)
            ],
            "has_circular_dependencies": bool(
                well_formed and self.find_cycles(steps, definition.get("start_step"))
            ),
            "is_valid": report.valid,
        }

    def dry_run(self, workflow: WorkflowLike) -> Dict[str, Any]:
        """Validate and compile without executing anything"""
        definition = as_definition(workflow)
        report = self.check(definition)
        result = {
            "valid": report.valid,
            "errors": report.errors,
            "warnings": report.warnings,
            "summary": self.summarize(definition),
            "steps": [],
        }
        if report.valid:
            compiled = self.compile(definition)
            result["steps"] = [
                {
                    "id": step.id,
                    "name": step.name,
                    "type": step.type.value,
                    "timeout_seconds": step.timeout_seconds,
                    "transitions": dict(step.transitions),
                }
                for step in compiled.steps.values()
            ]
        return result

    def export_workflow(self, workflow: WorkflowLike) -> str:
        definition = as_definition(workflow)
        exported = {
            "name": definition.get("name"),
            "description": definition.get("description"),
            "version": EXPORT_FORMAT_VERSION,
            "start_step": definition.get("start_step"),
            "steps": definition.get("steps") or [],
            "escalation_policy_id": definition.get("escalation_policy_id"),
            "escalation_enabled": definition.get("escalation_enabled", True),
            "rollback_enabled": definition.get("rollback_enabled", False),
            "metadata": {"exported_at": isoformat(utcnow())},
        }
        return json.dumps(exported, indent=2)

    def import_workflow(self, payload: str) -> Dict[str, Any]:
        """
        Parse an exported workflow into a definition ready to persist.

        Raises:
            InvalidWorkflowError: For malformed JSON or an invalid workflow
        """
        try:
            imported = json.loads(payload)
        except ValueError as e:
            raise InvalidWorkflowError([f"Invalid workflow JSON: {e}"]) from e

        if not isinstance(imported, dict) or not imported.get("steps") or not imported.get("start_step"):
            raise InvalidWorkflowError(["Invalid workflow JSON: missing steps or start_step"])

        definition = {
            "name": imported.get("name") or "Imported Workflow",
            "description": imported.get("description") or "",
            "steps": imported["steps"],
            "start_step": imported["start_step"],
            "escalation_policy_id": imported.get("escalation_policy_id"),
            "escalation_enabled": imported.get("escalation_enabled", True),
            "rollback_enabled": imported.get("rollback_enabled", False),
        }
        errors = self.validate(definition)
        if errors:
            raise InvalidWorkflowError(errors, workflow_name=definition["name"])

        logger.info("Imported workflow", workflow_name=definition["name"])
        return definition


workflow_compiler = WorkflowCompiler()
