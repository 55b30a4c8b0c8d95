"""
Unit tests for scheduled delivery time calculation.
"""
from datetime import datetime, time, timedelta

import pytest
from django.utils import timezone

from step_linebot.utils.schedule import calculate_scheduled_delivery_time, normalize_delivery_type


def local(*args):
    return timezone.make_aware(datetime(*args), timezone.get_current_timezone())


class TestNormalizeDeliveryType:

    def test_aliases(self):
        assert normalize_delivery_type("immediate") == "immediately"
        assert normalize_delivery_type("specific") == "specific_time"

    def test_relative_after_first_step_is_relative_to_previous(self):
        assert normalize_delivery_type("relative", 0) == "relative"
        assert normalize_delivery_type("relative", 2) == "relative_to_previous"


class TestCalculateScheduledDeliveryTime:

    base = local(2024, 5, 1, 10, 0)

    def test_immediately(self):
        assert calculate_scheduled_delivery_time(self.base, "immediate") == self.base

    def test_relative(self):
        result = calculate_scheduled_delivery_time(self.base, "relative", offset=timedelta(days=1, minutes=30))
        assert result == local(2024, 5, 2, 10, 30)

    def test_relative_to_previous(self):
        previous = local(2024, 5, 3, 8, 0)
        result = calculate_scheduled_delivery_time(
            self.base, "relative_to_previous", offset=timedelta(hours=2), previous_delivered_at=previous
        )
        assert result == local(2024, 5, 3, 10, 0)

    def test_relative_to_previous_without_previous_uses_base(self):
        result = calculate_scheduled_delivery_time(self.base, "relative_to_previous", offset=timedelta(hours=2))
        assert result == local(2024, 5, 1, 12, 0)

    def test_specific_time(self):
        target = local(2024, 6, 1, 9, 0)
        assert calculate_scheduled_delivery_time(self.base, "specific", specific_time=target) == target

    def test_time_of_day_later_today(self):
        result = calculate_scheduled_delivery_time(self.base, "time_of_day", time_of_day=time(20, 0))
        assert result == local(2024, 5, 1, 20, 0)

    def test_time_of_day_already_passed_moves_to_next_day(self):
        result = calculate_scheduled_delivery_time(self.base, "time_of_day", time_of_day=time(9, 0))
        assert result == local(2024, 5, 2, 9, 0)

    def test_time_of_day_with_day_offset(self):
        result = calculate_scheduled_delivery_time(
            self.base, "time_of_day", offset=timedelta(days=3), time_of_day=time(9, 0)
        )
        assert result == local(2024, 5, 4, 9, 0)

    def test_time_of_day_requires_time(self):
        with pytest.raises(ValueError):
            calculate_scheduled_delivery_time(self.base, "time_of_day")

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            calculate_scheduled_delivery_time(self.base, "weekly")
