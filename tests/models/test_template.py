import datetime as dt

import pytest
from pydantic import ValidationError

from courtbook.models.enums import InstanceStatus, Recurrence
from tests.factories import make_instance, make_template


class TestBookingTemplate:
    def test_defaults(self):
        template = make_template()
        assert template.status == "active"
        assert template.expanded is False
        assert template.start_minutes == 18 * 60

    @pytest.mark.parametrize("value", ["bi-weekly", "BiWeekly", " biweekly "])
    def test_recurrence_spellings(self, value):
        assert make_template(recurrence=value).recurrence == Recurrence.BIWEEKLY

    @pytest.mark.parametrize("value", ["6pm", "24:00", "18:5", "7:30"])
    def test_rejects_bad_time(self, value):
        with pytest.raises(ValidationError, match="time_of_day"):
            make_template(time_of_day=value)

    @pytest.mark.parametrize("minutes", [30, 120, 0])
    def test_rejects_unsupported_duration(self, minutes):
        with pytest.raises(ValidationError, match="duration"):
            make_template(duration_minutes=minutes)

    def test_rejects_end_before_start(self):
        with pytest.raises(ValidationError, match="recurrence_end_date"):
            make_template(recurrence=Recurrence.WEEKLY, recurrence_end_date=dt.date(2025, 11, 1))

    def test_end_on_start_date_allowed(self):
        template = make_template(recurrence_end_date=dt.date(2025, 11, 7))
        assert template.recurrence_end_date == template.date

    def test_rejects_blank_owner(self):
        with pytest.raises(ValidationError, match="owner_id"):
            make_template(owner_id="")

    def test_rejects_non_positive_court(self):
        with pytest.raises(ValidationError):
            make_template(preferred_unit=0)


class TestBookingInstance:
    def test_defaults(self):
        inst = make_instance()
        assert inst.status == InstanceStatus.PENDING
        assert inst.retry_count == 0
        assert inst.confirmation_id is None
        assert inst.start_minutes == 1080

    def test_status_values(self):
        assert [s.value for s in InstanceStatus] == [
            "pending", "processing", "confirmed", "failed", "cancelled"
        ]
