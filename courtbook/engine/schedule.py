"""Compute when each booking instance becomes eligible for execution.

The portal opens a date for booking ``window_days`` before it, at
``open_time`` in the portal's own timezone. All returned datetimes are UTC.
"""

import datetime as dt
import logging
from dataclasses import dataclass
from zoneinfo import ZoneInfo

from courtbook.config import Settings

logger = logging.getLogger(__name__)

PAST_DATE_DETAIL = "Booking date is in the past"


def parse_time_of_day(value: str) -> dt.time:
    hours, minutes = value.split(":")
    return dt.time(int(hours), int(minutes))


@dataclass(frozen=True)
class ScheduleDecision:
    """Outcome of scheduling one instance date.

    A ``past`` decision keeps the window-open time as ``execute_at`` so the
    stored timestamp still precedes the slot, but it is never executed.
    """

    execute_at: dt.datetime
    immediate: bool = False
    past: bool = False


class ScheduleCalculator:
    """Derives ``scheduled_execute_time`` from the portal's advance-booking window.

    Args:
        window_days: Days before a date that the portal opens it (``W``).
        open_time: Portal-local time of day the window opens (``T``).
        timezone: IANA name of the portal's timezone.
    """

    def __init__(self, window_days: int, open_time: dt.time, timezone: str) -> None:
        if window_days < 1:
            raise ValueError("window_days must be at least 1")
        self.window_days = window_days
        self.open_time = open_time
        self.tz = ZoneInfo(timezone)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScheduleCalculator":
        return cls(
            window_days=settings.booking_window_days,
            open_time=parse_time_of_day(settings.booking_window_open_time),
            timezone=settings.portal_timezone,
        )

    def window_open_time(self, booking_date: dt.date) -> dt.datetime:
        """``(date - W days) at T`` in the portal timezone, as UTC."""
        open_date = booking_date - dt.timedelta(days=self.window_days)
        local = dt.datetime.combine(open_date, self.open_time, tzinfo=self.tz)
        return local.astimezone(dt.UTC)

    def slot_start(self, booking_date: dt.date, time_of_day: str) -> dt.datetime:
        local = dt.datetime.combine(booking_date, parse_time_of_day(time_of_day), tzinfo=self.tz)
        return local.astimezone(dt.UTC)

    def today(self, now: dt.datetime) -> dt.date:
        """Current date on the portal's calendar."""
        return now.astimezone(self.tz).date()

    def decide(self, booking_date: dt.date, time_of_day: str, now: dt.datetime) -> ScheduleDecision:
        """Schedule one occurrence.

        - slot already started: no execution, the instance fails immediately;
        - window already open: execute now;
        - otherwise: execute when the window opens.
        """
        opens = self.window_open_time(booking_date)
        if self.slot_start(booking_date, time_of_day) <= now:
            return ScheduleDecision(execute_at=opens, past=True)
        if opens <= now:
            return ScheduleDecision(execute_at=now, immediate=True)
        return ScheduleDecision(execute_at=opens)
