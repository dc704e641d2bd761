"""
Cron scheduling.

Schedules fire scripts against target nodes on cron expressions, gated by
maintenance windows, dependencies and concurrency limits.
"""

from .engine import (
    CronScheduler,
    FireOutcome,
    FireResult,
    NextRun,
    ScheduleDefinition,
    SchedulerStatus,
)
from .maintenance import MaintenanceWindowEvaluator, WindowDecision
from .nodes import NodeDirectory, NodeInfo, StaticNodeDirectory
from .projector import JobQueueProjector
from .repository import SchedulingRepository, SchedulingRepositoryError
from .timezone import TimezoneService, timezone_service

__all__ = [
    "CronScheduler",
    "FireOutcome",
    "FireResult",
    "NextRun",
    "ScheduleDefinition",
    "SchedulerStatus",
    "MaintenanceWindowEvaluator",
    "WindowDecision",
    "NodeDirectory",
    "NodeInfo",
    "StaticNodeDirectory",
    "JobQueueProjector",
    "SchedulingRepository",
    "SchedulingRepositoryError",
    "TimezoneService",
    "timezone_service",
]
