import datetime as dt
from typing import Optional, Set

from fleetguard.variables import DEFAULT_TOLERANCE_MINUTES


def parse_days(days: Optional[str]) -> Set[int]:
    """'1,2,5' -> {1, 2, 5}; ISO weekdays, Monday = 1."""
    out = set()
    for d in (days or "").split(","):
        d = d.strip()
        if d.isdigit():
            out.add(int(d))
    return out


def is_alarm_active_now(alarm, local_now: dt.datetime) -> bool:
    """Weekday and time-of-day window check; the window may wrap midnight."""
    days = parse_days(alarm.days_of_week)
    if days and local_now.isoweekday() not in days:
        return False

    if alarm.start_time and alarm.end_time:
        current = local_now.time().replace(second=0, microsecond=0)
        start = alarm.start_time.replace(second=0, microsecond=0)
        end = alarm.end_time.replace(second=0, microsecond=0)
        if start <= end:
            if current < start or current > end:
                return False
        elif end < current < start:
            return False

    return True


def route_runs_today(route, day: dt.date) -> bool:
    if route.travel_date and route.travel_date != day:
        return False
    days = parse_days(route.days_of_week)
    if days and day.isoweekday() not in days:
        return False
    return True


def deadline_for(tz, day: dt.date, expected: dt.time, tolerance_minutes: Optional[int]) -> dt.datetime:
    """Expected local time on ``day`` plus tolerance, as an aware datetime."""
    if tolerance_minutes is None:
        tolerance_minutes = DEFAULT_TOLERANCE_MINUTES
    expected_at = tz.localize(dt.datetime.combine(day, expected.replace(tzinfo=None)))
    return expected_at + dt.timedelta(minutes=tolerance_minutes)
