"""
Cron Expression Module

Parses standard five-field cron strings into immutable expressions that
can be matched against a point in time.

Format:
    <minute> <hour> <date> <month> <weekday>

Field syntax:
    *        -> wildcard (matches anything)
    */N      -> every Nth value from 0 up to the field maximum
    A-B      -> inclusive range
    N        -> single value
    X,Y,...  -> union of any of the above (duplicates removed)

Field bounds:
    minute 0-59, hour 0-23, date 1-31,
    month 0-11 (zero-based, 0 = January),
    weekday 0-6 (0 = Sunday)
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Tuple

from ..errors import MalformedCronExpression

_CRON_PATTERN = re.compile(r"^[*0-9/\-,]+(\s+[*0-9/\-,]+)*$")
_STEP_PATTERN = re.compile(r"^\*/(\d+)$")
_RANGE_PATTERN = re.compile(r"^(\d+)-(\d+)$")
_VALUE_PATTERN = re.compile(r"^\d+$")

PRESETS: Dict[str, str] = {
    "@yearly": "0 0 1 0 *",
    "@annually": "0 0 1 0 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}


@dataclass(frozen=True)
class CronField:
    """
    One field of a cron expression.

    Attributes:
        wildcard: True if the field matches any value
        values: String-encoded values matched when not a wildcard
    """
    wildcard: bool
    values: Tuple[str, ...] = ()

    @classmethod
    def any(cls) -> "CronField":
        return cls(wildcard=True)

    def matches(self, value: int) -> bool:
        return self.wildcard or str(value) in self.values


def parse_field(pattern: str, min_value: int, max_value: int) -> CronField:
    """
    Expand a single cron field.

    Args:
        pattern: The field text, e.g. "*/15" or "1-5,30"
        min_value: Lowest legal value of the field
        max_value: Highest legal value of the field

    Returns:
        CronField with deduplicated values in ascending order

    Raises:
        MalformedCronExpression: Naming the offending token
    """
    if pattern == "*":
        return CronField.any()

    values = set()
    for token in pattern.split(","):
        step = _STEP_PATTERN.match(token)
        if step:
            interval = int(step.group(1))
            if interval < 1 or interval > max_value:
                raise MalformedCronExpression(token)
            values.update(range(0, max_value + 1, interval))
            continue

        span = _RANGE_PATTERN.match(token)
        if span:
            start, end = int(span.group(1)), int(span.group(2))
            if start < min_value or end <= start or end > max_value:
                raise MalformedCronExpression(token)
            values.update(range(start, end + 1))
            continue

        if _VALUE_PATTERN.match(token):
            value = int(token)
            if value < min_value or value > max_value:
                raise MalformedCronExpression(token)
            values.add(value)
            continue

        raise MalformedCronExpression(token)

    return CronField(wildcard=False, values=tuple(str(v) for v in sorted(values)))


@dataclass(frozen=True)
class CronExpression:
    """
    A parsed cron expression.

    Usage:
        expression = CronExpression.from_cron_string("*/15 9-17 * * 1-5")
        if expression.matches(datetime.now()):
            ...
    """
    minute: CronField
    hour: CronField
    date: CronField
    month: CronField
    weekday: CronField

    @classmethod
    def always(cls) -> "CronExpression":
        """An expression matching every minute."""
        return cls(
            minute=CronField.any(),
            hour=CronField.any(),
            date=CronField.any(),
            month=CronField.any(),
            weekday=CronField.any(),
        )

    @classmethod
    def from_cron_string(cls, cron: str) -> "CronExpression":
        """
        Parse a five-field cron string or an @preset.

        Raises:
            MalformedCronExpression: On bad characters, field count or values
        """
        cron = cron.strip()
        if cron.startswith("@"):
            if cron not in PRESETS:
                raise MalformedCronExpression(cron, "unknown preset")
            cron = PRESETS[cron]

        if not _CRON_PATTERN.match(cron):
            raise MalformedCronExpression(cron, "invalid cron")

        fields = cron.split()
        if len(fields) != 5:
            raise MalformedCronExpression(cron, f"expected 5 fields, got {len(fields)}")

        return cls(
            minute=parse_field(fields[0], 0, 59),
            hour=parse_field(fields[1], 0, 23),
            date=parse_field(fields[2], 1, 31),
            month=parse_field(fields[3], 0, 11),
            weekday=parse_field(fields[4], 0, 6),
        )

    def matches(self, now: datetime) -> bool:
        """Check whether the minute containing now is selected."""
        weekday = (now.weekday() + 1) % 7  # Python: Monday=0; cron: Sunday=0
        return (
            self.minute.matches(now.minute)
            and self.hour.matches(now.hour)
            and self.date.matches(now.day)
            and self.month.matches(now.month - 1)
            and self.weekday.matches(weekday)
        )
