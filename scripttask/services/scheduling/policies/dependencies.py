"""
Inter-schedule dependency checks.

A schedule with dependencies only fires when every dependency has run at
least as recently as the schedule itself last ran.
"""

from typing import List

from scripttask.models.scheduling import Schedule
from scripttask.utils.logger import get_logger
from scripttask.utils.timeutils import as_utc

from ..repository import SchedulingRepository

logger = get_logger(__name__)


class DependencyGate:
    def __init__(self, repository: SchedulingRepository):
        self.repository = repository

    def unmet_dependencies(self, schedule: Schedule) -> List[str]:
        """Ids of dependencies that have not run since this schedule last ran"""
        depends_on = list(schedule.depends_on or [])
        if not depends_on:
            return []

        found = {dep.id: dep for dep in self.repository.get_schedules(depends_on)}
        own_last_run = as_utc(schedule.last_run_at)

        unmet = []
        for dep_id in depends_on:
            dep = found.get(dep_id)
            dep_last_run = as_utc(dep.last_run_at) if dep else None
            if dep_last_run is None:
                unmet.append(dep_id)
            elif own_last_run is not None and dep_last_run < own_last_run:
                unmet.append(dep_id)
        return unmet

    def check_dependencies(self, schedule: Schedule) -> bool:
        """
        True when every dependency is satisfied.

        Like the other admission gates, a lookup error admits the firing.
        """
        try:
            unmet = self.unmet_dependencies(schedule)
        except Exception as e:
            logger.error(
                f"Error checking dependencies, allowing execution: {e}",
                schedule_id=schedule.id,
                exc_info=True,
            )
            return True

        if unmet:
            logger.info(
                "Schedule dependencies not met",
                schedule_id=schedule.id,
                unmet=unmet,
            )
            return False
        return True
