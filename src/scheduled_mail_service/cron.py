# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Restricted cron expressions for recurring emails.

Recurrence rules use the classic five fields::

    minute hour day-of-month month day-of-week

Each field is either ``*`` or a single decimal integer in range. Ranges,
lists and steps are not supported. The next occurrence is computed with a
coarse calendar walk rather than full cron matching:

- a literal day-of-week makes the rule weekly (it wins over day-of-month);
- otherwise a literal day-of-month makes the rule monthly;
- otherwise the rule is daily.

The month field is validated but does not restrict expansion.

Example:
    Computing the next Monday 09:00::

        >>> from datetime import datetime
        >>> next_occurrence("0 9 * * 1", datetime(2024, 1, 3, 10, 0))
        datetime.datetime(2024, 1, 8, 9, 0)
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta

from .errors import CronExpressionError

FIELD_NAMES = ("minute", "hour", "day_of_month", "month", "day_of_week")
FIELD_RANGES = {
    "minute": (0, 59),
    "hour": (0, 23),
    "day_of_month": (1, 31),
    "month": (1, 12),
    "day_of_week": (0, 6),
}
WEEKDAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")


def _parse_field(name: str, token: str) -> int | None:
    if token == "*":
        return None
    if not token.isascii() or not token.isdigit():
        raise CronExpressionError(f"Invalid {name} field: {token!r}")
    value = int(token)
    low, high = FIELD_RANGES[name]
    if not low <= value <= high:
        raise CronExpressionError(f"{name} out of range {low}-{high}: {value}")
    return value


@dataclass(frozen=True)
class CronExpression:
    """Parsed cron-subset expression. ``None`` stands for ``*``."""

    minute: int | None
    hour: int | None
    day_of_month: int | None
    month: int | None
    day_of_week: int | None

    @classmethod
    def parse(cls, expression: str) -> CronExpression:
        """Parse an expression, raising :class:`CronExpressionError` when malformed."""
        if not isinstance(expression, str):
            raise CronExpressionError("Cron expression must be a string")
        tokens = expression.split()
        if len(tokens) != 5:
            raise CronExpressionError(f"Cron expression needs 5 fields, got {len(tokens)}")
        values = [_parse_field(name, token) for name, token in zip(FIELD_NAMES, tokens)]
        return cls(*values)

    @property
    def frequency(self) -> str:
        if self.day_of_week is not None:
            return "weekly"
        if self.day_of_month is not None:
            return "monthly"
        return "daily"

    def describe(self) -> str:
        """Return a short human readable description of the rule."""
        if self.hour is not None and self.minute is not None:
            at = f"{self.hour:02d}:{self.minute:02d}"
        elif self.hour is not None:
            at = f"{self.hour:02d}:MM"
        elif self.minute is not None:
            at = f"HH:{self.minute:02d}"
        else:
            at = "the reference time"
        if self.day_of_week is not None:
            return f"weekly on {WEEKDAY_NAMES[self.day_of_week]} at {at}"
        if self.day_of_month is not None:
            return f"monthly on day {self.day_of_month} at {at}"
        return f"daily at {at}"

    def next_after(self, from_: datetime) -> datetime:
        """Return the first matching timestamp strictly after ``from_``.

        The result keeps ``from_``'s tzinfo; seconds and microseconds are
        zeroed.
        """
        candidate = from_.replace(
            hour=self.hour if self.hour is not None else from_.hour,
            minute=self.minute if self.minute is not None else from_.minute,
            second=0,
            microsecond=0,
        )

        if self.day_of_week is not None:
            # Python counts Monday as 0, cron counts Sunday as 0
            current = (candidate.weekday() + 1) % 7
            candidate += timedelta(days=(self.day_of_week - current) % 7)
            if candidate <= from_:
                candidate += timedelta(days=7)
            return candidate

        if self.day_of_month is not None:
            year, month = candidate.year, candidate.month
            # Day 31 exists at least every other month, so a year of lookahead suffices.
            for _ in range(13):
                if self.day_of_month <= calendar.monthrange(year, month)[1]:
                    target = candidate.replace(year=year, month=month, day=self.day_of_month)
                    if target > from_:
                        return target
                month += 1
                if month > 12:
                    month = 1
                    year += 1
            raise CronExpressionError(f"No occurrence found for day {self.day_of_month}")

        if candidate <= from_:
            candidate += timedelta(days=1)
        return candidate


def validate_cron_expression(expression: str) -> bool:
    """Return True when ``expression`` is a valid cron-subset expression."""
    try:
        CronExpression.parse(expression)
    except CronExpressionError:
        return False
    return True


def next_occurrence(expression: str, from_: datetime) -> datetime | None:
    """Compute the next occurrence of ``expression`` strictly after ``from_``.

    Returns:
        The next matching datetime, or None if the expression is invalid.
    """
    try:
        cron = CronExpression.parse(expression)
    except CronExpressionError:
        return None
    return cron.next_after(from_)
