"""Cron expressions — parsing and next-fire computation.

Five fields (minute hour day-of-month month day-of-week) or six with a
leading seconds field. Each field is a comma list of wildcards, literals,
ranges and steps (``*``, ``5``, ``1-5``, ``*/15``, ``10-40/10``, ``7/5``).
Month and weekday fields also accept three-letter names.

A moment matches only when every field matches.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

# Upper bound for the next-fire search; Feb 29 on a given weekday recurs within 28 years
_SEARCH_YEARS = 30

_MONTH_NAMES = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_DAY_NAMES = {"sun": 0, "mon": 1, "tue": 2, "wed": 3, "thu": 4, "fri": 5, "sat": 6}


class CronError(ValueError):
    """Raised for a malformed or unsatisfiable cron expression."""


@dataclass(frozen=True)
class _Field:
    name: str
    low: int
    high: int
    names: dict[str, int] | None = None


_SECOND = _Field("second", 0, 59)
_MINUTE = _Field("minute", 0, 59)
_HOUR = _Field("hour", 0, 23)
_DAY = _Field("day-of-month", 1, 31)
_MONTH = _Field("month", 1, 12, _MONTH_NAMES)
_WEEKDAY = _Field("day-of-week", 0, 7, _DAY_NAMES)  # 0 and 7 are both Sunday


# ── Parsing ──────────────────────────────────────────────────────────────────


def _parse_value(token: str, field: _Field) -> int:
    if field.names and token.lower() in field.names:
        return field.names[token.lower()]
    if not token.isdigit():
        raise CronError(f"Invalid {field.name} value: {token!r}")
    value = int(token)
    if not field.low <= value <= field.high:
        raise CronError(
            f"{field.name} value {value} out of range {field.low}-{field.high}"
        )
    return value


def _parse_field(text: str, field: _Field) -> frozenset[int]:
    values: set[int] = set()
    for part in text.split(","):
        if not part:
            raise CronError(f"Empty item in {field.name} field: {text!r}")

        base, has_step, step_text = part.partition("/")
        step = 1
        if has_step:
            if not step_text.isdigit() or int(step_text) < 1:
                raise CronError(f"Invalid step in {field.name} field: {part!r}")
            step = int(step_text)

        if base == "*":
            low, high = field.low, field.high
        elif "-" in base:
            first, _, last = base.partition("-")
            low, high = _parse_value(first, field), _parse_value(last, field)
            if low > high:
                raise CronError(f"Descending range in {field.name} field: {part!r}")
        else:
            low = _parse_value(base, field)
            # "7/5" means every 5 starting at 7
            high = field.high if has_step else low

        values.update(range(low, high + 1, step))

    if field is _WEEKDAY and 7 in values:
        values.discard(7)
        values.add(0)
    return frozenset(values)


# ── Schedule ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CronSchedule:
    """A parsed cron expression."""

    expression: str
    seconds: frozenset[int]
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]

    @classmethod
    def parse(cls, expression: str) -> CronSchedule:
        """Parse a 5- or 6-field expression. Raises CronError."""
        if not isinstance(expression, str):
            raise CronError(f"Schedule must be a string, got {type(expression).__name__}")

        parts = expression.split()
        if len(parts) == 5:
            parts = ["0", *parts]
        elif len(parts) != 6:
            raise CronError(
                f"Expected 5 or 6 fields, got {len(parts)}: {expression!r}"
            )

        fields = (_SECOND, _MINUTE, _HOUR, _DAY, _MONTH, _WEEKDAY)
        parsed = [_parse_field(text, field) for text, field in zip(parts, fields)]
        schedule = cls(expression.strip(), *parsed)

        # Reject expressions such as "0 0 30 2 *" that can never fire
        schedule.next_after(datetime(2000, 1, 1))
        return schedule

    def matches(self, moment: datetime) -> bool:
        return (
            moment.second in self.seconds
            and moment.minute in self.minutes
            and moment.hour in self.hours
            and moment.day in self.days
            and moment.month in self.months
            and _cron_weekday(moment) in self.weekdays
        )

    def next_after(self, reference: datetime) -> datetime:
        """Soonest whole-second moment strictly after ``reference``.

        Keeps the tzinfo of ``reference``.
        """
        t = reference.replace(microsecond=0) + timedelta(seconds=1)
        limit = reference.replace(microsecond=0) + timedelta(days=366 * _SEARCH_YEARS)

        while t <= limit:
            if t.month not in self.months:
                if t.month == 12:
                    t = t.replace(year=t.year + 1, month=1, day=1, hour=0, minute=0, second=0)
                else:
                    t = t.replace(month=t.month + 1, day=1, hour=0, minute=0, second=0)
                continue
            if t.day not in self.days or _cron_weekday(t) not in self.weekdays:
                t = t.replace(hour=0, minute=0, second=0) + timedelta(days=1)
                continue
            if t.hour not in self.hours:
                t = t.replace(minute=0, second=0) + timedelta(hours=1)
                continue
            if t.minute not in self.minutes:
                t = t.replace(second=0) + timedelta(minutes=1)
                continue
            if t.second not in self.seconds:
                t += timedelta(seconds=1)
                continue
            return t

        raise CronError(f"Schedule never fires: {self.expression!r}")

    def __str__(self) -> str:
        return self.expression


def _cron_weekday(moment: datetime) -> int:
    # datetime: Monday == 0; cron: Sunday == 0
    return (moment.weekday() + 1) % 7
