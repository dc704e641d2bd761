"""
Maintenance window evaluation.

A window is open from each start instant of its cron expression for
duration_seconds. Window checks fail open: a lookup or calculation error
allows the firing rather than suppressing it.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from scripttask.core.config import settings
from scripttask.core.exceptions import (
    MaintenanceWindowNotFoundError,
    ScheduleValidationError,
)
from scripttask.models.scheduling import MaintenanceWindow, Schedule, SchedulePriority
from scripttask.utils.logger import get_logger
from scripttask.utils.timeutils import as_utc, utcnow

from .repository import SchedulingRepository
from .triggers import CronTrigger, TriggerError

logger = get_logger(__name__)

WINDOW_DEFAULTS = {
    "duration_seconds": 3600,
    "allowed_priorities": [SchedulePriority.CRITICAL.value],
    "enabled": True,
}


@dataclass
class WindowDecision:
    """Outcome of a maintenance window check"""

    allowed: bool
    reason: str
    window_id: Optional[str] = None
    window_end: Optional[datetime] = None


class MaintenanceWindowEvaluator:
    """Decides whether a schedule may fire at a given instant"""

    def __init__(self, repository: SchedulingRepository):
        self.repository = repository

    def window_start_at(
        self, window: MaintenanceWindow, timestamp: datetime
    ) -> Optional[datetime]:
        """
        Start of the window occurrence containing `timestamp`, if any.

        The occurrence is [last start at or before timestamp, start + duration],
        both ends inclusive, evaluated in the window's timezone.
        """
        trigger = CronTrigger.from_expression(window.cron_expression, window.timezone)
        timestamp = as_utc(timestamp)
        start = trigger.previous_run(timestamp)
        if start is None:
            return None
        end = start + timedelta(seconds=window.duration_seconds)
        if start <= timestamp <= end:
            return start
        return None

    def is_in_window(self, window: MaintenanceWindow, timestamp: datetime) -> bool:
        return self.window_start_at(window, timestamp) is not None

    def can_run(
        self, schedule: Schedule, timestamp: Optional[datetime] = None
    ) -> WindowDecision:
        """
        Check a schedule's referenced windows at `timestamp` (default now).

        The first enabled window containing the instant decides: exempt
        priorities are allowed, everything else is blocked.
        """
        window_ids = list(schedule.maintenance_window_ids or [])
        if not window_ids:
            return WindowDecision(True, "No maintenance windows defined")

        timestamp = as_utc(timestamp) if timestamp else utcnow()
        priority = SchedulePriority(schedule.priority or SchedulePriority.NORMAL).value

        try:
            for window in self.repository.get_windows(window_ids):
                if not window.enabled:
                    continue

                start = self.window_start_at(window, timestamp)
                if start is None:
                    continue

                if priority in (window.allowed_priorities or []):
                    return WindowDecision(
                        True,
                        f"Priority '{priority}' is allowed during maintenance window "
                        f"'{window.name}'",
                        window_id=window.id,
                    )

                return WindowDecision(
                    False,
                    f"Blocked by maintenance window '{window.name}'",
                    window_id=window.id,
                    window_end=start + timedelta(seconds=window.duration_seconds),
                )

            return WindowDecision(True, "Not in any maintenance window")

        except Exception as e:
            logger.error(
                f"Error checking maintenance windows: {e}",
                schedule_id=schedule.id,
                exc_info=True,
            )
            return WindowDecision(True, "Error checking maintenance windows")

    # Window administration

    def _validate(self, data: Dict[str, Any]) -> None:
        if not data.get("name"):
            raise ScheduleValidationError("Maintenance window name is required")
        try:
            CronTrigger.from_expression(data["cron_expression"], data["timezone"])
        except KeyError as e:
            raise ScheduleValidationError(f"Missing field: {e.args[0]}") from e
        except TriggerError as e:
            raise ScheduleValidationError(str(e)) from e

        duration = data.get("duration_seconds")
        if not isinstance(duration, int) or duration <= 0:
            raise ScheduleValidationError("duration_seconds must be a positive integer")

        valid = {p.value for p in SchedulePriority}
        unknown = [p for p in data.get("allowed_priorities", []) if p not in valid]
        if unknown:
            raise ScheduleValidationError(f"Unknown priorities: {', '.join(unknown)}")

    def create_window(self, data: Dict[str, Any]) -> MaintenanceWindow:
        window_data = {
            **WINDOW_DEFAULTS,
            "timezone": settings.SCHEDULER_DEFAULT_TIMEZONE,
            **data,
        }
        window_data["allowed_priorities"] = list(window_data["allowed_priorities"])
        self._validate(window_data)
        return self.repository.create_window(window_data)

    def update_window(self, window_id: str, updates: Dict[str, Any]) -> MaintenanceWindow:
        current = self.repository.get_window(window_id)
        if current is None:
            raise MaintenanceWindowNotFoundError(f"Window {window_id} not found")
        merged = {**current.to_dict(), **updates}
        self._validate(merged)
        return self.repository.update_window(window_id, updates)

    def delete_window(self, window_id: str) -> bool:
        return self.repository.delete_window(window_id)

    def list_windows(self) -> List[MaintenanceWindow]:
        return self.repository.list_windows()
