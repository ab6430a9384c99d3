"""Expand booking templates into dated booking instances."""

import datetime as dt
import logging

from courtbook.engine.schedule import PAST_DATE_DETAIL, ScheduleCalculator
from courtbook.models.enums import InstanceStatus, Recurrence
from courtbook.models.instance import BookingInstance
from courtbook.models.template import BookingTemplate

logger = logging.getLogger(__name__)

DEFAULT_MAX_INSTANCES = 52

# Monthly is a fixed 30-day stride, not calendar-month arithmetic.
_STRIDE_DAYS: dict[Recurrence, int] = {
    Recurrence.WEEKLY: 7,
    Recurrence.BIWEEKLY: 14,
    Recurrence.MONTHLY: 30,
}


def stride_for(recurrence: Recurrence, monthly_stride_days: int = 30) -> int | None:
    """Days between consecutive instances, or None for one-shot templates."""
    if recurrence == Recurrence.ONCE:
        return None
    if recurrence == Recurrence.MONTHLY:
        return monthly_stride_days
    return _STRIDE_DAYS[recurrence]


def expand_dates(
    start: dt.date,
    recurrence: Recurrence,
    end_date: dt.date | None = None,
    max_instances: int = DEFAULT_MAX_INSTANCES,
    monthly_stride_days: int = 30,
) -> list[dt.date]:
    """Return the ordered occurrence dates of a template, starting at *start*.

    Generation stops at the first date past *end_date* (the end date itself
    is included) or after *max_instances* dates.
    """
    stride = stride_for(recurrence, monthly_stride_days)
    if stride is None:
        return [start]

    dates: list[dt.date] = []
    current = start
    while len(dates) < max_instances:
        if end_date is not None and current > end_date:
            break
        dates.append(current)
        current = current + dt.timedelta(days=stride)
    return dates


def expand_template(
    template: BookingTemplate,
    calculator: ScheduleCalculator,
    now: dt.datetime,
    max_instances: int = DEFAULT_MAX_INSTANCES,
    monthly_stride_days: int = 30,
) -> list[BookingInstance]:
    """Build unsaved, scheduled instances for every occurrence of *template*.

    Instances inherit every non-date field. An occurrence whose slot has
    already started is created as ``failed`` and never scheduled.
    """
    dates = expand_dates(
        template.date,
        template.recurrence,
        template.recurrence_end_date,
        max_instances=max_instances,
        monthly_stride_days=monthly_stride_days,
    )
    instances = []
    for occurrence in dates:
        decision = calculator.decide(occurrence, template.time_of_day, now)
        instances.append(
            BookingInstance(
                template_id=template.id,
                owner_id=template.owner_id,
                preferred_unit=template.preferred_unit,
                accept_any_unit=template.accept_any_unit,
                date=occurrence,
                time_of_day=template.time_of_day,
                party_type=template.party_type,
                duration_minutes=template.duration_minutes,
                scheduled_execute_time=decision.execute_at,
                status=InstanceStatus.FAILED if decision.past else InstanceStatus.PENDING,
                error_detail=PAST_DATE_DETAIL if decision.past else None,
            )
        )
    logger.info(
        "Expanded template %s (%s) into %d instance(s)",
        template.id, template.recurrence.value, len(instances),
    )
    return instances
