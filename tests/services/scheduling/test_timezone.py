"""
Tests for timezone validation, conversion and formatting.
"""

from datetime import datetime, timezone

import pytest

from scripttask.core.exceptions import ScheduleValidationError
from scripttask.services.scheduling.timezone import TimezoneService


@pytest.fixture
def service():
    return TimezoneService()


class TestTimezoneService:
    """Test suite for TimezoneService"""

    @pytest.mark.parametrize("tz_name", ["UTC", "America/New_York", "Asia/Kolkata"])
    def test_is_valid_known_zones(self, service, tz_name):
        assert service.is_valid(tz_name)

    @pytest.mark.parametrize("tz_name", ["", None, "Not/A_Zone", "EST5EDT/Nowhere"])
    def test_is_valid_rejects_unknown_zones(self, service, tz_name):
        assert not service.is_valid(tz_name)

    def test_get_zone_raises_validation_error(self, service):
        with pytest.raises(ScheduleValidationError, match="Invalid timezone"):
            service.get_zone("Not/A_Zone")

    def test_convert_utc_to_new_york(self, service):
        instant = datetime(2024, 1, 15, 14, 0, tzinfo=timezone.utc)

        converted = service.convert(instant, "America/New_York")

        assert converted.timestamp.hour == 9
        assert converted.offset_minutes == -300
        assert converted.offset_formatted == "-05:00"
        assert converted.formatted.startswith("2024-01-15 09:00:00")

    def test_convert_naive_input_from_source_zone(self, service):
        converted = service.convert(datetime(2024, 7, 1, 9, 0), "UTC", from_tz="Europe/Berlin")

        assert converted.timestamp == datetime(2024, 7, 1, 7, 0, tzinfo=timezone.utc)

    def test_half_hour_offset(self, service):
        at = datetime(2024, 1, 1, tzinfo=timezone.utc)

        assert service.get_offset_minutes("Asia/Kolkata", at) == 330

    def test_format(self, service):
        instant = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

        assert service.format(instant, "Europe/London") == "2024-06-01 13:00:00 BST"

    def test_is_dst(self, service):
        assert service.is_dst("America/New_York", datetime(2024, 7, 1, tzinfo=timezone.utc))
        assert not service.is_dst("America/New_York", datetime(2024, 1, 1, tzinfo=timezone.utc))

    def test_spring_forward_gap_is_nonexistent(self, service):
        assert service.is_nonexistent(datetime(2024, 3, 10, 2, 30), "America/New_York")

    def test_fall_back_overlap_exists(self, service):
        assert not service.is_nonexistent(datetime(2024, 11, 3, 1, 30), "America/New_York")

    def test_ordinary_time_exists(self, service):
        assert not service.is_nonexistent(datetime(2024, 5, 1, 12, 0), "America/New_York")

    def test_available_timezones_are_valid(self, service):
        zones = service.available_timezones()

        assert "UTC" in zones
        assert all(service.is_valid(zone) for zone in zones)
