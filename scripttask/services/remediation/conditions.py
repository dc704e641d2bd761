"""
Condition evaluation for remediation branching.

Predicates are evaluated against a step result dictionary. Evaluation never
raises: malformed conditions, failed extraction and unknown types all
evaluate to False so that an ambiguous result can never select a success
branch.
"""

import json
import math
import re
from typing import Any, Callable, Dict, List, Optional

from scripttask.utils.logger import get_logger

logger = get_logger(__name__)

CONDITION_TYPES = ("exitCode", "outputPattern", "threshold", "jsonPath", "composite")
MATCH_TYPES = ("contains", "notContains", "regex", "startsWith", "endsWith")
COMPOSITE_LOGIC = ("and", "or", "not")

_INDEXED_SEGMENT = re.compile(r"^(\w+)\[(\d+)\]$")

_MISSING = object()


def _regex_match(actual: Any, pattern: Any) -> bool:
    return re.search(str(pattern), str(actual)) is not None


def _is_in(actual: Any, options: Any) -> bool:
    return isinstance(options, (list, tuple)) and actual in options


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda a, b: a == b,
    "ne": lambda a, b: a != b,
    "gt": lambda a, b: a > b,
    "gte": lambda a, b: a >= b,
    "lt": lambda a, b: a < b,
    "lte": lambda a, b: a <= b,
    "contains": lambda a, b: str(b) in str(a),
    "notContains": lambda a, b: str(b) not in str(a),
    "regex": _regex_match,
    "in": _is_in,
    "notIn": lambda a, b: isinstance(b, (list, tuple)) and a not in b,
}


def extract_field(data: Any, path: Optional[str]) -> Any:
    """
    Walk a dot path such as ``disks[0].usage`` through nested dicts and lists.

    Returns None when any segment is missing.
    """
    if not path:
        return data

    current = data
    for part in path.split("."):
        if current is None:
            return None
        match = _INDEXED_SEGMENT.match(part)
        if match:
            current = _get(current, match.group(1))
            index = int(match.group(2))
            if isinstance(current, list):
                current = current[index] if index < len(current) else None
        else:
            current = _get(current, part)
    return current


def _get(container: Any, key: str) -> Any:
    if isinstance(container, dict):
        return container.get(key)
    if isinstance(container, list) and key.isdigit():
        index = int(key)
        return container[index] if index < len(container) else None
    return None


def _parse_output(result: Dict[str, Any]) -> Any:
    output = result.get("output")
    if isinstance(output, str):
        try:
            return json.loads(output)
        except ValueError:
            return {"output": output}
    return result


class ConditionEvaluator:
    """Pure predicate evaluator over step results"""

    def __init__(self, operators: Optional[Dict[str, Callable[[Any, Any], bool]]] = None):
        self.operators = dict(operators or OPERATORS)

    def evaluate(self, condition: Optional[Dict[str, Any]], result: Optional[Dict[str, Any]]) -> bool:
        if not condition or not isinstance(condition, dict) or result is None:
            return False

        handlers = {
            "exitCode": self._exit_code,
            "outputPattern": self._output_pattern,
            "threshold": self._threshold,
            "jsonPath": self._json_path,
            "composite": self._composite,
        }
        handler = handlers.get(condition.get("type"))
        if handler is None:
            logger.warning("Unknown condition type", condition_type=condition.get("type"))
            return False

        try:
            return bool(handler(condition, result))
        except Exception as e:
            logger.warning(
                "Condition evaluation failed",
                condition_type=condition.get("type"),
                error=str(e),
            )
            return False

    def _compare(self, operator: str, actual: Any, expected: Any) -> bool:
        op = self.operators.get(operator)
        if op is None:
            return False
        return op(actual, expected)

    def _exit_code(self, condition: Dict[str, Any], result: Dict[str, Any]) -> bool:
        exit_code = result.get("exit_code")
        if exit_code is None:
            return False
        return self._compare(condition.get("operator", "eq"), exit_code, condition.get("exit_code"))

    def _output_pattern(self, condition: Dict[str, Any], result: Dict[str, Any]) -> bool:
        output = result.get("output") or result.get("stdout") or ""
        pattern = condition.get("pattern")
        if pattern is None:
            return False
        output, pattern = str(output), str(pattern)
        match_type = condition.get("match_type", "contains")
        case_sensitive = condition.get("case_sensitive", True) is not False

        if match_type == "regex":
            flags = 0 if case_sensitive else re.IGNORECASE
            try:
                return re.search(pattern, output, flags) is not None
            except re.error as e:
                logger.warning("Invalid regex in condition", pattern=pattern, error=str(e))
                return False

        if not case_sensitive:
            output, pattern = output.lower(), pattern.lower()

        if match_type == "contains":
            return pattern in output
        if match_type == "notContains":
            return pattern not in output
        if match_type == "startsWith":
            return output.startswith(pattern)
        if match_type == "endsWith":
            return output.endswith(pattern)
        return False

    def _threshold(self, condition: Dict[str, Any], result: Dict[str, Any]) -> bool:
        field = condition.get("field")
        actual = extract_field(result, field)
        if actual is None and field:
            parsed = _parse_output(result)
            if parsed is not result:
                actual = extract_field(parsed, field)

        if isinstance(actual, bool) or actual is None:
            return False
        if isinstance(actual, str):
            try:
                actual = float(actual)
            except ValueError:
                return False
        if not isinstance(actual, (int, float)) or math.isnan(actual):
            return False

        return self._compare(condition.get("operator", "gt"), actual, condition.get("value"))

    def _json_path(self, condition: Dict[str, Any], result: Dict[str, Any]) -> bool:
        actual = extract_field(_parse_output(result), condition.get("path"))
        return self._compare(condition.get("operator", "eq"), actual, condition.get("value"))

    def _composite(self, condition: Dict[str, Any], result: Dict[str, Any]) -> bool:
        logic = condition.get("logic", "and")
        conditions: List[Dict[str, Any]] = condition.get("conditions") or []

        if logic == "and":
            return all(self.evaluate(c, result) for c in conditions)
        if logic == "or":
            return any(self.evaluate(c, result) for c in conditions)
        if logic == "not":
            if not conditions:
                return False
            return not self.evaluate(conditions[0], result)
        return False

    def validate_condition(self, condition: Optional[Dict[str, Any]]) -> List[str]:
        """Return the problems with a condition definition; empty when valid"""
        if not condition or not isinstance(condition, dict):
            return ["Condition is required"]

        errors = []
        condition_type = condition.get("type")
        if not condition_type:
            errors.append("Condition type is required")
        elif condition_type not in CONDITION_TYPES:
            errors.append(f"Unknown condition type: {condition_type}")

        if condition_type == "exitCode" and "exit_code" not in condition:
            errors.append("Exit code value is required")
        elif condition_type == "outputPattern":
            if not condition.get("pattern"):
                errors.append("Pattern is required")
            if condition.get("match_type", "contains") not in MATCH_TYPES:
                errors.append(f"Unknown match type: {condition.get('match_type')}")
        elif condition_type == "threshold":
            if not condition.get("field"):
                errors.append("Field is required")
            if "value" not in condition:
                errors.append("Threshold value is required")
        elif condition_type == "jsonPath" and not condition.get("path"):
            errors.append("JSON path is required")
        elif condition_type == "composite":
            if condition.get("logic") not in COMPOSITE_LOGIC:
                errors.append("Logic operator is required")
            nested = condition.get("conditions")
            if not isinstance(nested, list) or not nested:
                errors.append("Conditions array is required and must not be empty")
            else:
                for child in nested:
                    errors.extend(self.validate_condition(child))

        operator = condition.get("operator")
        if operator is not None and operator not in self.operators:
            errors.append(f"Unknown operator: {operator}")

        return errors


condition_evaluator = ConditionEvaluator()
