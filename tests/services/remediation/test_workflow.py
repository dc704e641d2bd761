"""
Tests for workflow validation and compilation.
"""

import json

import pytest

from scripttask.core.exceptions import InvalidWorkflowError
from scripttask.models.remediation import StepType
from scripttask.services.remediation.workflow import WorkflowCompiler


@pytest.fixture
def compiler():
    return WorkflowCompiler()


@pytest.fixture
def disk_workflow():
    """Check disk usage, clean up when it is high, notify either way"""
    return {
        "name": "disk-pressure",
        "start_step": "check",
        "steps": [
            {"id": "check", "type": "script", "script_id": "disk-usage", "on_success": "high?"},
            {
                "id": "high?",
                "type": "condition",
                "condition": {"type": "threshold", "field": "usage", "operator": "gt", "value": 90},
                "on_true": "cleanup",
                "on_false": "notify",
            },
            {
                "id": "cleanup",
                "type": "script",
                "script_id": "cleanup-temp",
                "timeout": 120,
                "retry_policy": {"max_attempts": 2, "backoff_type": "linear"},
                "on_success": "notify",
            },
            {
                "id": "notify",
                "type": "webhook",
                "name": "Tell the on-call channel",
                "url": "https://hooks.example.com/ops",
                "webhook_type": "slack",
            },
        ],
    }


def _script(step_id, **transitions):
    return {"id": step_id, "type": "script", "script_id": f"{step_id}-script", **transitions}


class TestStructuralValidation:
    """Test suite for validate"""

    def test_valid_workflow(self, compiler, disk_workflow):
        assert compiler.validate(disk_workflow) == []

    def test_two_step_cycle(self, compiler):
        workflow = {
            "start_step": "a",
            "steps": [_script("a", on_success="b"), _script("b", on_success="a")],
        }

        assert compiler.validate(workflow) == ["Circular dependency detected: a -> b -> a"]

    def test_diamond_is_not_a_cycle(self, compiler):
        workflow = {
            "start_step": "a",
            "steps": [
                _script("a", on_success="b", on_failure="c"),
                _script("b", on_success="d"),
                _script("c", on_success="d"),
                _script("d"),
            ],
        }

        assert compiler.validate(workflow) == []

    def test_cycle_unreachable_from_start(self, compiler):
        workflow = {
            "start_step": "a",
            "steps": [_script("a"), _script("x", on_success="y"), _script("y", on_failure="x")],
        }

        assert compiler.validate(workflow) == ["Circular dependency detected: x -> y -> x"]

    def test_long_linear_chain(self, compiler):
        steps = [
            {"id": f"wait-{i}", "type": "delay", "duration": 1, "on_success": f"wait-{i + 1}"}
            for i in range(1500)
        ]
        steps.append({"id": "wait-1500", "type": "delay", "duration": 1})
        workflow = {"name": "long-chain", "start_step": "wait-0", "steps": steps}

        assert compiler.validate(workflow) == []
        assert len(compiler.compile(workflow).steps) == 1501

    def test_long_cycle_reported_once(self, compiler):
        steps = [_script(f"s{i}", on_success=f"s{(i + 1) % 1200}") for i in range(1200)]

        errors = compiler.validate({"start_step": "s0", "steps": steps})

        assert len(errors) == 1
        assert errors[0].startswith("Circular dependency detected: s0 -> s1 -> s2")
        assert errors[0].endswith("s1199 -> s0")

    def test_missing_reference(self, compiler):
        workflow = {"start_step": "a", "steps": [_script("a", on_success="ghost")]}

        assert compiler.validate(workflow) == [
            "Step a: on_success references non-existent step ghost"
        ]

    def test_condition_step_rejects_action_transitions(self, compiler):
        workflow = {
            "start_step": "check",
            "steps": [
                {
                    "id": "check",
                    "type": "condition",
                    "condition": {"type": "exitCode", "exit_code": 0},
                    "on_true": "fix",
                    "on_success": "fix",
                },
                _script("fix"),
            ],
        }

        assert compiler.validate(workflow) == [
            "Step check: on_success is not valid for condition steps"
        ]

    def test_action_step_rejects_condition_transitions(self, compiler):
        workflow = {"start_step": "a", "steps": [_script("a", on_true="b"), _script("b")]}

        assert compiler.validate(workflow) == ["Step a: on_true is not valid for script steps"]

    @pytest.mark.parametrize(
        "workflow,expected",
        [
            ({"start_step": "a"}, "Workflow must have a steps array"),
            ({"start_step": "a", "steps": []}, "Workflow must have at least one step"),
            ({"steps": [_script("a")]}, "Workflow must have a start_step defined"),
            ({"start_step": "z", "steps": [_script("a")]}, "start_step z does not exist in steps"),
        ],
    )
    def test_workflow_level_errors(self, compiler, workflow, expected):
        assert expected in compiler.validate(workflow)

    @pytest.mark.parametrize(
        "step,expected",
        [
            ({"id": "s"}, "Step s: must have a type"),
            ({"id": "s", "type": "script"}, "Step s: script step must have script_id defined"),
            ({"id": "s", "type": "delay", "duration": 0}, "Step s: delay duration must be a positive number"),
            ({"id": "s", "type": "delay"}, "Step s: delay step must have duration defined"),
            (
                {"id": "s", "type": "webhook", "url": "ftp://example.com"},
                'Step s: invalid webhook URL "ftp://example.com"',
            ),
            (
                {"id": "s", "type": "webhook", "url": "https://example.com", "method": "FETCH"},
                'Step s: invalid HTTP method "FETCH"',
            ),
            ({"id": "s", "type": "email", "to": "ops@example.com", "body": "x"}, "Step s: email step must have subject defined"),
            (
                {"id": "s", "type": "script", "script_id": "x", "timeout": -1},
                "Step s: timeout must be a positive number",
            ),
            (
                {"id": "s", "type": "script", "script_id": "x", "retry_policy": {"backoff_type": "random"}},
                "Step s: retry_policy.backoff_type must be one of ('exponential', 'linear')",
            ),
        ],
    )
    def test_step_errors(self, compiler, step, expected):
        assert expected in compiler.validate({"start_step": "s", "steps": [step]})

    def test_invalid_step_type(self, compiler):
        errors = compiler.validate({"start_step": "s", "steps": [{"id": "s", "type": "ssh"}]})

        assert errors[0].startswith('Step s: invalid type "ssh". Must be one of: script')

    def test_duplicate_ids(self, compiler):
        workflow = {"start_step": "a", "steps": [_script("a"), _script("a")]}

        assert "Duplicate step id: a" in compiler.validate(workflow)

    def test_collects_every_error(self, compiler):
        workflow = {
            "start_step": "a",
            "steps": [{"id": "a", "type": "script", "on_success": "ghost"}, {"id": "b", "type": "delay"}],
        }

        assert len(compiler.validate(workflow)) == 3

    def test_validation_is_deterministic(self, compiler):
        workflow = {
            "start_step": "a",
            "steps": [_script("a", on_success="b"), _script("b", on_success="a"), {"id": "c"}],
        }

        assert compiler.validate(workflow) == compiler.validate(workflow)

    def test_no_sink_is_a_warning(self, compiler):
        workflow = {
            "start_step": "a",
            "steps": [_script("a", on_success="b"), _script("b", on_success="a")],
        }

        report = compiler.check(workflow)

        assert report.warnings == [
            "No explicit end step found (every step has an outgoing transition)"
        ]


class TestCompilation:
    """Test suite for compile and next_step"""

    def test_compile(self, compiler, disk_workflow):
        compiled = compiler.compile(disk_workflow)

        assert compiled.name == "disk-pressure"
        assert compiled.start_step == "check"
        assert compiled.rollback_enabled is False
        assert compiled.escalation_enabled is True

        check = compiled.get_step("check")
        assert check.type == StepType.SCRIPT
        assert check.timeout_seconds == 300
        assert check.config == {"script_id": "disk-usage"}
        assert check.transitions == {"on_success": "high?"}

        cleanup = compiled.get_step("cleanup")
        assert cleanup.timeout_seconds == 120
        assert cleanup.config["retry_policy"]["max_attempts"] == 2

        notify = compiled.get_step("notify")
        assert notify.is_sink
        assert notify.name == "Tell the on-call channel"

    def test_compile_refuses_invalid(self, compiler):
        workflow = {"name": "loop", "start_step": "a", "steps": [_script("a", on_success="a")]}

        with pytest.raises(InvalidWorkflowError) as exc_info:
            compiler.compile(workflow)

        assert exc_info.value.errors == ["Circular dependency detected: a -> a"]
        assert exc_info.value.workflow_name == "loop"

    def test_next_step(self, compiler, disk_workflow):
        compiled = compiler.compile(disk_workflow)

        assert compiler.next_step(compiled, "check", succeeded=True) == "high?"
        assert compiler.next_step(compiled, "check", succeeded=False) is None
        assert compiler.next_step(compiled, "high?", True, condition_result=True) == "cleanup"
        assert compiler.next_step(compiled, "high?", True, condition_result=False) == "notify"
        assert compiler.next_step(compiled, "notify", succeeded=True) is None
        assert compiler.next_step(compiled, "missing", succeeded=True) is None


class TestAuthoringHelpers:
    """Test suite for summarize, dry_run and import/export"""

    def test_summarize(self, compiler, disk_workflow):
        summary = compiler.summarize(disk_workflow)

        assert summary["step_count"] == 4
        assert summary["step_types"] == {"script": 2, "condition": 1, "webhook": 1}
        assert summary["sink_steps"] == ["notify"]
        assert summary["has_circular_dependencies"] is False
        assert summary["is_valid"] is True

    def test_dry_run_lists_compiled_steps(self, compiler, disk_workflow):
        result = compiler.dry_run(disk_workflow)

        assert result["valid"] is True
        assert [s["id"] for s in result["steps"]] == ["check", "high?", "cleanup", "notify"]

    def test_dry_run_invalid(self, compiler):
        result = compiler.dry_run({"start_step": "a", "steps": [_script("a", on_success="a")]})

        assert result["valid"] is False
        assert result["steps"] == []

    def test_export_then_import(self, compiler, disk_workflow):
        payload = compiler.export_workflow(disk_workflow)

        exported = json.loads(payload)
        assert exported["version"] == "1.0"
        assert "exported_at" in exported["metadata"]

        definition = compiler.import_workflow(payload)
        assert definition["name"] == "disk-pressure"
        assert definition["steps"] == disk_workflow["steps"]
        assert definition["rollback_enabled"] is False

    def test_import_invalid_json(self, compiler):
        with pytest.raises(InvalidWorkflowError) as exc_info:
            compiler.import_workflow("{not json")

        assert exc_info.value.errors[0].startswith("Invalid workflow JSON")

    def test_import_missing_steps(self, compiler):
        with pytest.raises(InvalidWorkflowError):
            compiler.import_workflow(json.dumps({"name": "empty"}))

    def test_import_invalid_workflow(self, compiler):
        payload = json.dumps({"start_step": "a", "steps": [_script("a", on_success="ghost")]})

        with pytest.raises(InvalidWorkflowError, match="ghost"):
            compiler.import_workflow(payload)
