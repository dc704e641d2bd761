"""
Timezone service.

Validates IANA zone identifiers and converts, formats and inspects instants
across zones using pytz so that DST ambiguity is resolved the same way the
cron triggers resolve it.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import pytz

from scripttask.core.exceptions import ScheduleValidationError
from scripttask.utils.logger import get_logger
from scripttask.utils.timeutils import as_utc, utcnow

logger = get_logger(__name__)

DEFAULT_FORMAT = "%Y-%m-%d %H:%M:%S %Z"

COMMON_TIMEZONES = [
    "UTC",
    "America/New_York",
    "America/Chicago",
    "America/Denver",
    "America/Los_Angeles",
    "America/Sao_Paulo",
    "Europe/London",
    "Europe/Paris",
    "Europe/Berlin",
    "Europe/Moscow",
    "Asia/Dubai",
    "Asia/Kolkata",
    "Asia/Shanghai",
    "Asia/Tokyo",
    "Asia/Singapore",
    "Australia/Sydney",
    "Pacific/Auckland",
]


@dataclass
class ConvertedTime:
    """An instant expressed in a specific timezone"""

    timestamp: datetime
    timezone: str
    formatted: str
    offset_minutes: int

    @property
    def offset_formatted(self) -> str:
        sign = "+" if self.offset_minutes >= 0 else "-"
        hours, minutes = divmod(abs(self.offset_minutes), 60)
        return f"{sign}{hours:02d}:{minutes:02d}"


class TimezoneService:
    """Zone validation, conversion and formatting"""

    def is_valid(self, tz_name: Optional[str]) -> bool:
        return bool(tz_name) and tz_name in pytz.all_timezones_set

    def get_zone(self, tz_name: str) -> pytz.BaseTzInfo:
        """Resolve a zone name, raising ScheduleValidationError when unknown."""
        try:
            return pytz.timezone(tz_name)
        except (pytz.UnknownTimeZoneError, AttributeError) as e:
            logger.warning("Rejected unknown timezone", timezone=tz_name)
            raise ScheduleValidationError(f"Invalid timezone: {tz_name}") from e

    def validate_timezone(self, tz_name: str) -> str:
        return self.get_zone(tz_name).zone

    def now(self, tz_name: str = "UTC") -> datetime:
        return utcnow().astimezone(self.get_zone(tz_name))

    def localize(self, naive: datetime, tz_name: str) -> datetime:
        """Attach a zone to a wall-clock time; ambiguous times resolve to standard time."""
        return self.get_zone(tz_name).localize(naive, is_dst=False)

    def convert(
        self, dt: datetime, to_tz: str, from_tz: Optional[str] = None
    ) -> ConvertedTime:
        """
        Convert an instant to another zone.

        Naive input is interpreted in from_tz when given, otherwise as UTC.
        """
        if dt.tzinfo is None and from_tz:
            dt = self.localize(dt, from_tz)
        local = as_utc(dt).astimezone(self.get_zone(to_tz))
        return ConvertedTime(
            timestamp=local,
            timezone=to_tz,
            formatted=local.strftime(DEFAULT_FORMAT),
            offset_minutes=int(local.utcoffset().total_seconds() // 60),
        )

    def format(
        self, dt: datetime, tz_name: str = "UTC", fmt: str = DEFAULT_FORMAT
    ) -> str:
        return as_utc(dt).astimezone(self.get_zone(tz_name)).strftime(fmt)

    def get_offset_minutes(self, tz_name: str, at: Optional[datetime] = None) -> int:
        local = as_utc(at or utcnow()).astimezone(self.get_zone(tz_name))
        return int(local.utcoffset().total_seconds() // 60)

    def is_dst(self, tz_name: str, at: Optional[datetime] = None) -> bool:
        local = as_utc(at or utcnow()).astimezone(self.get_zone(tz_name))
        return bool(local.dst())

    def is_nonexistent(self, naive: datetime, tz_name: str) -> bool:
        """True when a wall-clock time falls in a spring-forward gap."""
        try:
            self.get_zone(tz_name).localize(naive, is_dst=None)
        except pytz.NonExistentTimeError:
            return True
        except pytz.AmbiguousTimeError:
            return False
        return False

    def available_timezones(self) -> List[str]:
        return list(COMMON_TIMEZONES)


timezone_service = TimezoneService()
