"""
Trigger system for schedules and maintenance windows.

Cron expressions drive both schedule firings and maintenance window starts.
"""

from .base import BaseTrigger, TriggerCalculationError, TriggerError, TriggerValidationError
from .cron_trigger import NAMED_SHORTCUTS, CronTrigger

__all__ = [
    "BaseTrigger",
    "CronTrigger",
    "NAMED_SHORTCUTS",
    "TriggerError",
    "TriggerValidationError",
    "TriggerCalculationError",
]
