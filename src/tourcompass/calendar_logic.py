from datetime import date, datetime, timedelta
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from dateutil import tz
from dateutil.relativedelta import relativedelta

from .errors import InvalidStatusError
from .models import (
    MANUAL_STATUSES, ClosedPeriod, DayRecord, Season, SeasonWindow, Status,
)

WINDOW_MONTHS = 18

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday",
                 "Friday", "Saturday", "Sunday")

# admin toggle: what a click on a day's status button turns it into
_STATUS_CYCLE = {
    Status.AVAILABLE: Status.SOLDOUT,
    Status.SOLDOUT: Status.AVAILABLE,
    Status.NOT_OPERATING: Status.AVAILABLE,
    Status.PARTIALLY_SOLDOUT: Status.SOLDOUT,
}

MonthDayRange = Union[ClosedPeriod, SeasonWindow]


def today_in(timezone: str = "Asia/Tokyo", now: Optional[datetime] = None) -> date:
    """Current calendar date as observed in `timezone` (JST by default)."""
    zone = tz.gettz(timezone)
    if now is None:
        return datetime.now(zone).date()
    if now.tzinfo is None:
        now = now.replace(tzinfo=tz.UTC)
    return now.astimezone(zone).date()


def days_between(start: date, end: date) -> Iterator[date]:
    """Every calendar date from start to end, both inclusive."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def is_weekday_match(day: date, operating_pattern: Optional[Iterable[str]]) -> bool:
    if not operating_pattern:
        return False
    return WEEKDAY_NAMES[day.weekday()] in set(operating_pattern)


def _bounds(rng: MonthDayRange) -> Tuple[Tuple[int, int], Tuple[int, int]]:
    if isinstance(rng, ClosedPeriod):
        return (rng.start_month, rng.start_day), (rng.end_month, rng.end_day)
    return (rng.from_month, rng.from_day), (rng.to_month, rng.to_day)


def is_in_month_day_range(day: date, rng: MonthDayRange) -> bool:
    """
    True if the (month, day) of `day` lies in the inclusive range.
    A start after the end wraps over the year end (12-24 .. 01-06).
    Used for closed periods and season windows alike.
    """
    start, end = _bounds(rng)
    md = (day.month, day.day)
    if start <= end:
        return start <= md <= end
    return md >= start or md <= end


def window_bounds(today: date, months: int = WINDOW_MONTHS) -> Tuple[date, date]:
    """First day of today's month and last day of the `months`-th month (today's month counts as 1)."""
    start = today.replace(day=1)
    end = start + relativedelta(months=months) - timedelta(days=1)
    return start, end


def month_bounds(day: date) -> Tuple[date, date]:
    start = day.replace(day=1)
    return start, start + relativedelta(months=1) - timedelta(days=1)


def _fresh_record(day: date, operating_pattern, season_windows, closed_periods) -> DayRecord:
    closed = any(is_in_month_day_range(day, cp) for cp in closed_periods)
    operating = not closed and is_weekday_match(day, operating_pattern)
    high = any(is_in_month_day_range(day, w) for w in season_windows)
    return DayRecord(
        date=day,
        status=Status.AVAILABLE if operating else Status.NOT_OPERATING,
        booked_participants=0,
        season=Season.HIGH if high else Season.NORMAL,
    )


def generate(
    start: date,
    end: date,
    operating_pattern: Sequence[str],
    season_windows: Sequence[SeasonWindow],
    closed_periods: Sequence[ClosedPeriod],
) -> List[DayRecord]:
    """One fresh record per day of [start, end], bookings zeroed."""
    return [
        _fresh_record(d, operating_pattern, season_windows, closed_periods)
        for d in days_between(start, end)
    ]


def regenerate_full(
    start: date,
    end: date,
    operating_pattern: Sequence[str],
    season_windows: Sequence[SeasonWindow],
    closed_periods: Sequence[ClosedPeriod],
    existing: Sequence[DayRecord],
) -> List[DayRecord]:
    """
    Rebuild [start, end] from scratch and carry forward, per date:
      - a manual soldout / partiallysoldout status (wins over closures too),
      - bookedParticipants,
      - timeSlots, verbatim.
    Season is always recomputed. Existing records outside the span are dropped.
    """
    by_date: Dict[date, DayRecord] = {r.date: r for r in existing}
    out: List[DayRecord] = []
    for d in days_between(start, end):
        rec = _fresh_record(d, operating_pattern, season_windows, closed_periods)
        prior = by_date.get(d)
        if prior is not None:
            if prior.status in MANUAL_STATUSES:
                rec.status = prior.status
            rec.booked_participants = prior.booked_participants or 0
            if prior.time_slots is not None:
                rec.time_slots = prior.time_slots
        out.append(rec)
    return out


def rotate(
    current: date,
    operating_pattern: Sequence[str],
    season_windows: Sequence[SeasonWindow],
    closed_periods: Sequence[ClosedPeriod],
    existing: Sequence[DayRecord],
    months: int = WINDOW_MONTHS,
) -> List[DayRecord]:
    """
    Monthly step of the rolling window: drop the whole month before `current`'s
    month and append the last month of the window. Running it twice for the
    same date changes nothing the second time.
    """
    prev_start, prev_end = month_bounds(current.replace(day=1) - relativedelta(months=1))
    kept = [r for r in existing if not (prev_start <= r.date <= prev_end)]

    future_start, future_end = month_bounds(current.replace(day=1) + relativedelta(months=months - 1))
    present = {r.date for r in kept}
    added = [
        _fresh_record(d, operating_pattern, season_windows, closed_periods)
        for d in days_between(future_start, future_end)
        if d not in present
    ]
    return sorted(kept + added, key=lambda r: r.date)


def next_status(status) -> Status:
    try:
        return _STATUS_CYCLE[Status(status)]
    except (KeyError, ValueError):
        return Status.AVAILABLE


def set_day_status(records: Sequence[DayRecord], day: date, status) -> List[DayRecord]:
    """Return a copy of `records` with `day` set to `status`; unknown days are added."""
    try:
        status = Status(status)
    except ValueError:
        raise InvalidStatusError(f"Unknown status: {status!r}")

    out: List[DayRecord] = []
    found = False
    for r in records:
        if r.date == day:
            r = DayRecord(r.date, status, r.booked_participants, r.season, r.time_slots)
            found = True
        out.append(r)
    if not found:
        out.append(DayRecord(date=day, status=status))
        out.sort(key=lambda r: r.date)
    return out
