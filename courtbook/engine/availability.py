"""Free-window derivation and court selection from live portal availability."""

import logging

from courtbook.clients.resilience import AvailabilityConflictError
from courtbook.models.portal import Court, FreeWindow, Interval

logger = logging.getLogger(__name__)


def subtract_intervals(window: Interval, booked: list[Interval]) -> list[Interval]:
    """Return the parts of *window* not covered by any *booked* interval."""
    free: list[Interval] = []
    cursor = window.start
    for busy in sorted(booked, key=lambda b: b.start):
        if busy.end <= cursor or busy.start >= window.end:
            continue
        if busy.start > cursor:
            free.append(Interval(start=cursor, end=busy.start))
        cursor = max(cursor, busy.end)
        if cursor >= window.end:
            break
    if cursor < window.end:
        free.append(Interval(start=cursor, end=window.end))
    return free


def derive_free_windows(courts: list[Court]) -> list[FreeWindow]:
    """Operating-hours windows minus existing reservations, for every court."""
    windows: list[FreeWindow] = []
    for court in courts:
        for operating in court.operating:
            for gap in subtract_intervals(operating, court.booked):
                windows.append(
                    FreeWindow(
                        court_number=court.number,
                        portal_id=court.portal_id,
                        start=gap.start,
                        end=gap.end,
                    )
                )
    return windows


def is_free(windows: list[FreeWindow], court_number: int, start: int, end: int) -> bool:
    return any(
        w.court_number == court_number and w.start <= start and end <= w.end
        for w in windows
    )


def select_court(
    courts: list[Court],
    preferred_unit: int,
    accept_any_unit: bool,
    start_minutes: int,
    duration_minutes: int,
) -> Court:
    """Pick the court to book for ``[start, start + duration)``.

    The preferred court wins when free. Otherwise, if substitution is allowed,
    the remaining courts are tried in ascending court-number order.

    Raises:
        AvailabilityConflictError: If no acceptable court is free.
    """
    end_minutes = start_minutes + duration_minutes
    windows = derive_free_windows(courts)
    by_number = {court.number: court for court in courts}

    candidates = [preferred_unit]
    if accept_any_unit:
        candidates += sorted(n for n in by_number if n != preferred_unit)

    for number in candidates:
        if number in by_number and is_free(windows, number, start_minutes, end_minutes):
            if number != preferred_unit:
                logger.info(
                    "Court %d unavailable, substituting court %d", preferred_unit, number
                )
            return by_number[number]

    if accept_any_unit:
        attempted = ", ".join(str(n) for n in candidates)
        raise AvailabilityConflictError(f"No courts available. Attempted: Courts {attempted}")
    raise AvailabilityConflictError(f"Court {preferred_unit} is not available")
