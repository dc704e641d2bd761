"""
Trigger interface shared by schedules and maintenance windows.

A trigger turns its configuration into UTC fire instants. The zone is resolved
once when the trigger is built so that bad zone names fail at validation time
rather than on the first firing.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytz


class TriggerError(Exception):
    """Base exception for trigger failures"""


class TriggerValidationError(TriggerError):
    """The trigger configuration cannot be used"""


class TriggerCalculationError(TriggerError):
    """No fire instant could be computed from a valid configuration"""


class BaseTrigger(ABC):
    timezone: pytz.BaseTzInfo
    timezone_name: str

    def __init__(self, config: Dict[str, Any]):
        # Defaults are written into a private copy; callers keep their dict.
        self.config: Dict[str, Any] = dict(config)
        self._resolve_timezone(self.config.get("timezone") or "UTC")
        self.validate_config()

    def _resolve_timezone(self, name: str) -> None:
        try:
            zone = pytz.timezone(name)
        except (pytz.UnknownTimeZoneError, AttributeError) as exc:
            raise TriggerValidationError(f"Invalid timezone: {name}") from exc
        self.timezone = zone
        self.timezone_name = zone.zone
        self.config["timezone"] = zone.zone

    @abstractmethod
    def validate_config(self) -> None:
        """Raise TriggerValidationError when the configuration is unusable."""

    @abstractmethod
    def next_run(self, after: Optional[datetime] = None) -> Optional[datetime]:
        """
        First fire instant strictly after ``after`` (now when omitted).

        Returns an aware UTC datetime, or None once the trigger has no more
        instants. Raises TriggerCalculationError when the search fails.
        """

    def next_runs(self, count: int, after: Optional[datetime] = None) -> List[datetime]:
        runs: List[datetime] = []
        cursor = after
        while len(runs) < count:
            cursor = self.next_run(cursor)
            if cursor is None:
                break
            runs.append(cursor)
        return runs

    def get_trigger_info(self) -> Dict[str, Any]:
        return {"type": self.config.get("trigger_type", "unknown"), "config": self.config}

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def normalize_datetime(dt: datetime) -> datetime:
        """Naive values are taken to be UTC already."""
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    def get_config_value(self, key: str, default: Any = None, required: bool = False) -> Any:
        if key in self.config:
            return self.config[key]
        if required:
            raise TriggerValidationError(f"Required configuration key '{key}' is missing")
        return default
