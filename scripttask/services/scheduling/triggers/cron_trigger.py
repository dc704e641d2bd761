"""
Cron expression trigger.

Standard 5-field expressions plus the named shortcuts (@daily, @hourly, ...).
Fire instants are computed in the trigger's own timezone so that wall-clock
schedules follow DST, and are always returned in UTC.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytz
from croniter import CroniterBadDateError, croniter

from scripttask.utils.logger import get_logger

from .base import BaseTrigger, TriggerCalculationError, TriggerValidationError

logger = get_logger(__name__)

NAMED_SHORTCUTS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

# Bound on instants skipped while stepping through a DST fall-back; a
# per-minute expression repeats sixty wall times
MAX_REPEAT_SKIPS = 128

DOW_NAMES = [
    "Sunday",
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
]


class CronTrigger(BaseTrigger):
    """
    Cron expression based trigger.

    Examples:
    - "0 9 * * *" - Daily at 9:00 AM
    - "0 0 * * 1" - Weekly on Mondays at midnight
    - "*/5 * * * *" - Every 5 minutes
    - "@daily" - Every day at midnight
    """

    # Valid cron field ranges
    FIELD_RANGES = {
        "minute": (0, 59),
        "hour": (0, 23),
        "day": (1, 31),
        "month": (1, 12),
        "dow": (0, 7),  # 0 and 7 = Sunday
    }

    FIELD_NAMES = ["minute", "hour", "day", "month", "dow"]

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self._prepare_croniter()

    @classmethod
    def from_expression(cls, expression: str, tz_name: str = "UTC") -> "CronTrigger":
        return cls({"expression": expression, "timezone": tz_name})

    def validate_config(self) -> None:
        """Validate cron trigger configuration"""
        expression = self.get_config_value("expression", required=True)

        if not isinstance(expression, str):
            raise TriggerValidationError("Cron expression must be a string")

        expression = expression.strip()
        if not expression:
            raise TriggerValidationError("Cron expression cannot be empty")

        if expression.startswith("@"):
            if expression.lower() not in NAMED_SHORTCUTS:
                raise TriggerValidationError(f"Unknown cron shortcut: {expression}")
            expression = NAMED_SHORTCUTS[expression.lower()]

        fields = expression.split()
        if len(fields) != 5:
            raise TriggerValidationError(
                f"Invalid cron expression: expected 5 fields, got {len(fields)}"
            )

        for i, (field_value, field_name) in enumerate(zip(fields, self.FIELD_NAMES)):
            try:
                self._validate_cron_field(field_value, field_name)
            except ValueError as e:
                raise TriggerValidationError(
                    f"Invalid cron field {i+1} ({field_name}): {field_value} - {e}"
                ) from e

        self.original_expression = self.config["expression"].strip()
        self.expression = expression
        self.config["expression"] = expression

    def _validate_cron_field(self, field_value: str, field_name: str) -> None:
        """Validate individual cron field"""
        if field_value in ("*", "?"):
            return

        min_val, max_val = self.FIELD_RANGES[field_name]

        for part in field_value.split(","):
            self._validate_cron_field_part(part.strip(), min_val, max_val)

    def _validate_cron_field_part(self, part: str, min_val: int, max_val: int) -> None:
        """Validate a single part of a cron field"""
        if not part:
            raise ValueError("Empty list element")

        # Step values (e.g., */5, 1-10/2)
        if "/" in part:
            range_part, step_part = part.split("/", 1)
            if not step_part.isdigit() or int(step_part) <= 0:
                raise ValueError(f"Invalid step value: {step_part}")
            part = range_part

        if part == "*":
            return

        # Month and weekday names (JAN, MON-FRI, ...) are left to croniter
        if part.replace("-", "").isalpha():
            return

        bounds = part.split("-", 1)
        values = []
        for bound in bounds:
            if not bound.isdigit():
                raise ValueError(f"Invalid numeric value: {part}")
            value = int(bound)
            if value < min_val or value > max_val:
                raise ValueError(
                    f"Value {value} outside valid range [{min_val}, {max_val}]"
                )
            values.append(value)

        if len(values) == 2 and values[0] > values[1]:
            raise ValueError(f"Range start {values[0]} greater than end {values[1]}")

    def _prepare_croniter(self) -> None:
        """Let croniter parse the expression once so bad syntax fails at construction"""
        try:
            croniter(self.expression, self._to_local(self.now()))
        except Exception as e:
            raise TriggerValidationError(
                f"Invalid cron expression: {self.expression}"
            ) from e

    def _to_local(self, dt: datetime) -> datetime:
        return self.normalize_datetime(dt).astimezone(self.timezone)

    def next_run(self, after: Optional[datetime] = None) -> Optional[datetime]:
        """
        Calculate next fire instant strictly after `after`.

        Args:
            after: Reference instant (defaults to now)

        Returns:
            Next run time in UTC, or None if the expression never fires again
        """
        base_time = after if after is not None else self.now()
        base_utc = self.normalize_datetime(base_time)
        try:
            cron = croniter(self.expression, self._to_local(base_time))
            next_run = cron.get_next(datetime).astimezone(timezone.utc)
            # After a DST fall-back croniter can yield an instant at or before the
            # base, and it yields a repeated wall time twice; only the first counts
            for _ in range(MAX_REPEAT_SKIPS):
                if next_run > base_utc and not self.is_repeated_wall_time(next_run):
                    break
                next_run = cron.get_next(datetime).astimezone(timezone.utc)
            else:
                raise TriggerCalculationError(
                    f"No fire instant after {base_utc.isoformat()} for {self.expression}"
                )
        except CroniterBadDateError:
            logger.warning(
                "Cron expression produces no further run times",
                expression=self.expression,
                timezone=self.timezone_name,
            )
            return None
        except TriggerCalculationError:
            raise
        except Exception as e:
            logger.error(
                "Failed to calculate next run time for cron expression",
                expression=self.expression,
                error=str(e),
                exc_info=True,
            )
            raise TriggerCalculationError(f"Cron calculation failed: {e}") from e

        logger.debug(
            "Calculated next cron run time",
            expression=self.expression,
            timezone=self.timezone_name,
            after=base_time.isoformat(),
            next_run=next_run.isoformat(),
        )
        return next_run

    def previous_run(self, at: Optional[datetime] = None) -> Optional[datetime]:
        """
        Most recent fire instant at or before `at`.

        A fire instant equal to `at` counts, which is what window membership needs.
        """
        at = self.normalize_datetime(at if at is not None else self.now())
        try:
            # croniter's get_prev is exclusive of the start instant
            cron = croniter(self.expression, self._to_local(at + timedelta(seconds=1)))
            previous = cron.get_prev(datetime).astimezone(timezone.utc)
            # Sub-second starts can land inside the padding second
            if previous > at:
                previous = cron.get_prev(datetime).astimezone(timezone.utc)
        except CroniterBadDateError:
            return None
        except Exception as e:
            raise TriggerCalculationError(f"Cron calculation failed: {e}") from e

        return previous

    def is_repeated_wall_time(self, instant: datetime) -> bool:
        """True for the second, standard-time occurrence of a wall time that a DST fall-back repeats."""
        local = self._to_local(instant)
        if local.dst():
            return False
        try:
            self.timezone.localize(local.replace(tzinfo=None), is_dst=None)
        except pytz.AmbiguousTimeError:
            return True
        return False

    def get_trigger_info(self, count: int = 5) -> Dict[str, Any]:
        """Get human-readable trigger information"""
        info: Dict[str, Any] = {
            "type": "cron",
            "expression": self.original_expression,
            "timezone": self.timezone_name,
            "description": self.describe(),
        }
        try:
            info["next_runs"] = [run.isoformat() for run in self.next_runs(count)]
        except TriggerCalculationError as e:
            logger.error(f"Failed to get trigger info for cron: {e}", exc_info=True)
            info["error"] = str(e)
        return info

    def describe(self) -> str:
        """Generate human-readable description of the cron expression"""
        minute, hour, day, month, dow = self.expression.split()

        parts: List[str] = []

        if minute == "*" and hour == "*":
            parts.append("every minute")
        elif minute.startswith("*/") and hour == "*":
            parts.append(f"every {minute[2:]} minutes")
        elif hour.startswith("*/") and minute == "0":
            parts.append(f"every {hour[2:]} hours")
        elif hour == "*":
            parts.append(f"at minute {minute} of every hour")
        else:
            parts.append(f"at {hour}:{minute.zfill(2) if minute.isdigit() else minute}")

        if day != "*":
            parts.append(f"on day {day}")

        if month != "*":
            parts.append(f"in month {month}")

        if dow != "*":
            if dow.isdigit():
                parts.append(f"on {DOW_NAMES[int(dow) % 7]}")
            else:
                parts.append(f"on dow {dow}")

        description = " ".join(parts)
        if self.timezone_name != "UTC":
            description += f" ({self.timezone_name})"

        return description[:1].upper() + description[1:]
