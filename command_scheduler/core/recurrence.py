"""
Recurrence calculation for schedules.

All datetimes going in and out of this module are naive UTC, the form the
schedules table stores. Wall-clock rules (daily_at, weekly_at, cron_expr) are
evaluated in the schedule's own timezone so they follow DST changes.
"""

import re
from datetime import datetime, timedelta, date
from typing import Optional, Protocol, Tuple, List, Union

import pytz
from croniter import croniter

from .exceptions import RecurrenceError
from ..db.base import to_naive_utc, utcnow

ONE_OFF = "one_off"
DAILY_AT = "daily_at"
WEEKLY_AT = "weekly_at"
CRON_EXPR = "cron_expr"
INTERVAL = "interval"

RECURRENCE_TYPES = (ONE_OFF, DAILY_AT, WEEKLY_AT, CRON_EXPR, INTERVAL)

DAY_MAP = {
    "MON": 0, "TUE": 1, "WED": 2, "THU": 3,
    "FRI": 4, "SAT": 5, "SUN": 6,
}

DEFAULT_WEEKLY_TIME = (9, 0)

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


class RecurrenceCalculator(Protocol):
    """Anything that can tell the scheduler when a schedule fires next."""

    def next(
        self,
        recurrence_type: str,
        recurrence_value: Optional[str],
        timezone: str,
        after: datetime
    ) -> Optional[datetime]:
        ...


class NextRunCalculator:
    """
    Default recurrence calculator.

    Supported types:
        one_off     no further occurrences
        daily_at    "HH:MM" local time, every day
        weekly_at   "MON,WED,FRI:09:00", or just "MON" for 09:00
        cron_expr   standard 5-field cron expression
        interval    fixed number of seconds after the previous run
    """

    def next(
        self,
        recurrence_type: str,
        recurrence_value: Optional[str],
        timezone: str,
        after: datetime
    ) -> Optional[datetime]:
        """Return the first occurrence strictly after ``after``, or None if there is none."""
        if recurrence_type == ONE_OFF:
            return None

        if recurrence_type == INTERVAL:
            return to_naive_utc(after) + self._parse_interval(recurrence_value)

        tz = self._get_timezone(timezone)
        local_after = self._to_local(after, tz)

        if recurrence_type == DAILY_AT:
            return self._to_utc(self._next_daily(recurrence_value, tz, local_after))
        if recurrence_type == WEEKLY_AT:
            return self._to_utc(self._next_weekly(recurrence_value, tz, local_after))
        if recurrence_type == CRON_EXPR:
            return self._to_utc(self._next_cron(recurrence_value, local_after))

        raise RecurrenceError(
            f"Unknown recurrence type: {recurrence_type}",
            recurrence_type=recurrence_type,
            recurrence_value=recurrence_value
        )

    def first_run(
        self,
        recurrence_type: str,
        recurrence_value: Optional[str],
        timezone: str,
        start: Optional[datetime] = None
    ) -> Optional[datetime]:
        """
        First occurrence at or after ``start`` (default: now).

        Intended for tools that author schedules and need an initial
        next_run_at. Interval schedules fire immediately; one-off schedules
        have no rule to derive a time from, use one_off_at() for those.
        """
        start = to_naive_utc(start) if start else utcnow()
        if recurrence_type == INTERVAL:
            self._parse_interval(recurrence_value)
            return start
        return self.next(recurrence_type, recurrence_value, timezone, start - timedelta(microseconds=1))

    def one_off_at(self, run_at_local: Union[str, datetime], timezone: str) -> datetime:
        """Convert a local wall-clock time in ``timezone`` to naive UTC."""
        tz = self._get_timezone(timezone)
        if isinstance(run_at_local, str):
            try:
                run_at_local = datetime.fromisoformat(run_at_local)
            except ValueError:
                raise RecurrenceError(
                    f"Invalid one-off time: {run_at_local}",
                    recurrence_type=ONE_OFF,
                    recurrence_value=run_at_local
                )
        if run_at_local.tzinfo is None:
            run_at_local = tz.localize(run_at_local)
        return self._to_utc(run_at_local)

    # Calculation per type

    def _next_daily(self, value: Optional[str], tz, local_after: datetime) -> datetime:
        hour, minute = self._parse_time(value, DAILY_AT)
        candidate = self._at(tz, local_after.date(), hour, minute)

        # If the time has already passed today, move to tomorrow
        if candidate <= local_after:
            candidate = self._at(tz, local_after.date() + timedelta(days=1), hour, minute)
        return candidate

    def _next_weekly(self, value: Optional[str], tz, local_after: datetime) -> datetime:
        days, (hour, minute) = self._parse_weekly(value)

        # Today plus a full week covers "same weekday, time already passed"
        for offset in range(8):
            day = local_after.date() + timedelta(days=offset)
            if day.weekday() not in days:
                continue
            candidate = self._at(tz, day, hour, minute)
            if candidate > local_after:
                return candidate

        raise RecurrenceError(
            f"Could not find next weekly occurrence for: {value}",
            recurrence_type=WEEKLY_AT,
            recurrence_value=value
        )

    def _next_cron(self, value: Optional[str], local_after: datetime) -> datetime:
        expression = (value or "").strip()
        if len(expression.split()) != 5 or not croniter.is_valid(expression):
            raise RecurrenceError(
                f"Invalid cron expression: {value}. Expected 5 fields",
                recurrence_type=CRON_EXPR,
                recurrence_value=value
            )
        return croniter(expression, local_after).get_next(datetime)

    # Parsing helpers

    def _parse_time(self, value: Optional[str], recurrence_type: str) -> Tuple[int, int]:
        """Parse a time string like "07:30" or "7:30"."""
        match = _TIME_RE.match((value or "").strip())
        if not match:
            raise RecurrenceError(
                f"Invalid time format: {value}. Expected HH:MM",
                recurrence_type=recurrence_type,
                recurrence_value=value
            )

        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            raise RecurrenceError(
                f"Invalid time values: {value}",
                recurrence_type=recurrence_type,
                recurrence_value=value
            )
        return hour, minute

    def _parse_weekly(self, value: Optional[str]) -> Tuple[List[int], Tuple[int, int]]:
        value = (value or "").strip()
        if ":" in value:
            days_part, time_part = value.split(":", 1)
            at = self._parse_time(time_part, WEEKLY_AT)
        else:
            days_part, at = value, DEFAULT_WEEKLY_TIME

        days = []
        for name in days_part.split(","):
            name = name.strip().upper()
            if name not in DAY_MAP:
                raise RecurrenceError(
                    f"Invalid day of week '{name}' in: {value}",
                    recurrence_type=WEEKLY_AT,
                    recurrence_value=value
                )
            days.append(DAY_MAP[name])
        return sorted(set(days)), at

    def _parse_interval(self, value: Optional[str]) -> timedelta:
        try:
            seconds = int(str(value).strip())
        except (TypeError, ValueError):
            seconds = 0
        if seconds <= 0:
            raise RecurrenceError(
                f"Interval must be a positive number of seconds, got: {value}",
                recurrence_type=INTERVAL,
                recurrence_value=value
            )
        return timedelta(seconds=seconds)

    # Timezone helpers

    def _get_timezone(self, name: str):
        try:
            return pytz.timezone(name or "UTC")
        except pytz.UnknownTimeZoneError:
            raise RecurrenceError(f"Unknown timezone: {name}")

    def _to_local(self, value: datetime, tz) -> datetime:
        return pytz.UTC.localize(to_naive_utc(value)).astimezone(tz)

    def _to_utc(self, value: datetime) -> datetime:
        return value.astimezone(pytz.UTC).replace(tzinfo=None)

    def _at(self, tz, day: date, hour: int, minute: int) -> datetime:
        return tz.localize(datetime(day.year, day.month, day.day, hour, minute))
