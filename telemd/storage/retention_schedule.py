"""
Cron-style schedule expressions for the retention cleanup job.

Supports the classic five-field form ``minute hour day-of-month month
day-of-week`` with ``*``, lists, ranges and steps. Times are evaluated in UTC.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Set

FIELD_RANGES = [
    ('minute', 0, 59),
    ('hour', 0, 23),
    ('day of month', 1, 31),
    ('month', 1, 12),
    ('day of week', 0, 7),
]


def _parse_field(spec: str, name: str, low: int, high: int) -> Set[int]:
    values: Set[int] = set()
    for part in spec.split(','):
        if not part:
            raise ValueError(f"empty {name} entry in {spec!r}")

        step = 1
        if '/' in part:
            part, step_text = part.split('/', 1)
            if not step_text.isdigit() or int(step_text) == 0:
                raise ValueError(f"invalid {name} step {step_text!r}")
            step = int(step_text)

        if part == '*':
            start, end = low, high
        elif '-' in part:
            start_text, end_text = part.split('-', 1)
            if not (start_text.isdigit() and end_text.isdigit()):
                raise ValueError(f"invalid {name} range {part!r}")
            start, end = int(start_text), int(end_text)
        elif part.isdigit():
            start = end = int(part)
            if step != 1:
                end = high
        else:
            raise ValueError(f"invalid {name} value {part!r}")

        if start < low or end > high or start > end:
            raise ValueError(f"{name} value out of range: {part!r}")
        values.update(range(start, end + 1, step))
    return values


class CronSchedule:
    """A parsed cron expression."""

    def __init__(self, expression: str):
        fields = expression.split()
        if len(fields) != 5:
            raise ValueError(f"expected 5 fields, got {len(fields)} in {expression!r}")

        self.expression = expression
        parsed: List[Set[int]] = [
            _parse_field(spec, name, low, high)
            for spec, (name, low, high) in zip(fields, FIELD_RANGES)
        ]
        self.minutes, self.hours, self.days, self.months, weekdays = parsed
        # cron counts Sunday as both 0 and 7
        self.weekdays = {0 if d == 7 else d for d in weekdays}
        self._day_restricted = fields[2] != '*'
        self._weekday_restricted = fields[4] != '*'

    def __repr__(self) -> str:
        return f"CronSchedule({self.expression!r})"

    def _day_matches(self, moment: datetime) -> bool:
        cron_weekday = (moment.weekday() + 1) % 7
        day_ok = moment.day in self.days
        weekday_ok = cron_weekday in self.weekdays
        if self._day_restricted and self._weekday_restricted:
            return day_ok or weekday_ok
        return day_ok and weekday_ok

    def matches(self, moment: datetime) -> bool:
        """True if ``moment`` (UTC) falls on a scheduled minute."""
        moment = _as_utc(moment)
        return (
            moment.minute in self.minutes
            and moment.hour in self.hours
            and moment.month in self.months
            and self._day_matches(moment)
        )

    def next_after(self, moment: datetime) -> Optional[datetime]:
        """First scheduled minute strictly after ``moment``, or None within 4 years."""
        candidate = _as_utc(moment).replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = candidate + timedelta(days=366 * 4)

        while candidate < limit:
            if candidate.month not in self.months or not self._day_matches(candidate):
                candidate = (candidate + timedelta(days=1)).replace(hour=0, minute=0)
                continue
            if candidate.hour not in self.hours:
                candidate = (candidate + timedelta(hours=1)).replace(minute=0)
                continue
            if candidate.minute not in self.minutes:
                candidate += timedelta(minutes=1)
                continue
            return candidate
        return None


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)
