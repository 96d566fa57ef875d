"""
Cap Period Calculator

A customer's sending cap rolls over on their anchor day each month. The active
period runs from the anchor day of one month through 23:59:59.999999 of the
day before the next month's anchor day, in the engine's calendar timezone.

Anchor days past the end of a short month are clamped to that month's last
day, so consecutive periods never overlap and never leave a gap.
"""

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Tuple
from zoneinfo import ZoneInfo


@dataclass(frozen=True)
class Period:
    """Inclusive cap period boundaries"""
    start: datetime
    end: datetime

    @property
    def next_start(self) -> datetime:
        """First instant of the following period"""
        return self.end + timedelta(microseconds=1)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


def _shift_month(year: int, month: int, delta: int) -> Tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def anchor_date(year: int, month: int, anchor_day: int) -> date:
    """Anchor day for the given month, clamped to the month's last day"""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(anchor_day, last_day))


def _validate_anchor_day(anchor_day: int) -> None:
    if isinstance(anchor_day, bool) or not isinstance(anchor_day, int):
        raise ValueError(f"Anchor day must be an integer, got {anchor_day!r}")
    if not 1 <= anchor_day <= 31:
        raise ValueError(f"Anchor day must be between 1 and 31, got {anchor_day}")


def current_period(anchor_day: int, now: datetime, tz: str = "Europe/London") -> Period:
    """
    Derive the active cap period for an anchor day.

    Args:
        anchor_day: Day of month the period starts on (1-31)
        now: Moment to resolve; naive datetimes are taken as UTC
        tz: IANA timezone the calendar days are counted in

    Returns:
        Period whose start and end are timezone-aware in `tz`
    """
    _validate_anchor_day(anchor_day)
    zone = ZoneInfo(tz)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local_now = now.astimezone(zone)

    this_anchor = anchor_date(local_now.year, local_now.month, anchor_day)
    if local_now.date() >= this_anchor:
        start_year, start_month = local_now.year, local_now.month
    else:
        start_year, start_month = _shift_month(local_now.year, local_now.month, -1)

    start_day = anchor_date(start_year, start_month, anchor_day)
    next_year, next_month = _shift_month(start_year, start_month, 1)
    last_day = anchor_date(next_year, next_month, anchor_day) - timedelta(days=1)

    return Period(
        start=datetime.combine(start_day, time.min, tzinfo=zone),
        end=datetime.combine(last_day, time.max, tzinfo=zone),
    )


def anchor_day_from_signup(signed_up_at: datetime, tz: str = "Europe/London",
                           max_anchor_day: int = 28) -> int:
    """Anchor day derived from the customer's signup date, clamped to `max_anchor_day`"""
    if signed_up_at.tzinfo is None:
        signed_up_at = signed_up_at.replace(tzinfo=timezone.utc)
    return min(signed_up_at.astimezone(ZoneInfo(tz)).day, max_anchor_day)
