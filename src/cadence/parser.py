"""Cron expression parsing.

Field expressions are evaluated by croniter; this module owns dialect
selection, field counts, descriptor macros, ``@every <duration>`` and
per-expression time zones.

Standard dialect (minute resolution)::

    minute hour day-of-month month day-of-week

Seconds dialect::

    second minute hour day-of-month month day-of-week

Both dialects accept ``@every 5m30s``, ``@hourly``/``@daily``/``@midnight``/
``@weekly``/``@monthly``/``@yearly``/``@annually``, and an optional
``CRON_TZ=Area/City`` (or ``TZ=Area/City``) prefix.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from cadence.errors import ParseError


class Dialect(str, Enum):
    """Cron grammar variant used for every expression a scheduler parses."""

    STANDARD = "standard"
    SECONDS = "seconds"


FIELD_COUNTS = {
    Dialect.STANDARD: 5,
    Dialect.SECONDS: 6,
}

DESCRIPTORS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

_TZ_PREFIXES = ("CRON_TZ=", "TZ=")

# Go duration units, in microseconds
_UNIT_MICROSECONDS = {
    "ns": 0.001,
    "us": 1.0,
    "µs": 1.0,  # micro sign
    "μs": 1.0,  # greek mu
    "ms": 1_000.0,
    "s": 1_000_000.0,
    "m": 60_000_000.0,
    "h": 3_600_000_000.0,
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Schedule(Protocol):
    """Computes the next trigger time strictly after a given instant."""

    def next(self, after: datetime) -> datetime: ...


@dataclass(frozen=True)
class CronSchedule:
    """Field-based schedule evaluated in a fixed time zone.

    ``expression`` is in croniter's layout: for the Seconds dialect the
    seconds field has already been moved to the end.
    """

    expression: str
    timezone: str = "UTC"
    source: str = ""

    def next(self, after: datetime) -> datetime:
        tz = ZoneInfo(self.timezone)
        after_utc = as_utc(after)
        base = after_utc.astimezone(tz)
        result = as_utc(croniter(self.expression, base).get_next(datetime))
        while result <= after_utc:
            result = as_utc(
                croniter(self.expression, result.astimezone(tz)).get_next(datetime)
            )
        return result

    def __str__(self) -> str:
        return self.source or self.expression


@dataclass(frozen=True)
class EverySchedule:
    """Fixed-interval schedule: ``next(after) == after + interval``."""

    interval: timedelta
    source: str = ""

    def next(self, after: datetime) -> datetime:
        return as_utc(after) + self.interval

    def __str__(self) -> str:
        return self.source or f"@every {self.interval}"


def parse_duration(text: str) -> timedelta:
    """Parse a Go-style duration literal such as ``1s``, ``5m30s`` or ``1.5h``.

    Raises:
        ParseError: If the literal is empty or malformed.
    """
    value = text.strip()
    if not value:
        raise ParseError("empty duration", text)

    sign = 1
    if value[0] in "+-":
        sign = -1 if value[0] == "-" else 1
        value = value[1:]
    if value == "0":
        return timedelta(0)
    if not value:
        raise ParseError(f"invalid duration {text!r}", text)

    total = 0.0
    pos = 0
    while pos < len(value):
        match = _DURATION_PART.match(value, pos)
        if match is None:
            raise ParseError(f"invalid duration {text!r}", text)
        number, unit = match.groups()
        total += float(number) * _UNIT_MICROSECONDS[unit]
        pos = match.end()

    return timedelta(microseconds=sign * total)


def _split_timezone(expression: str, default: str) -> tuple[str, str]:
    for prefix in _TZ_PREFIXES:
        if expression.startswith(prefix):
            zone, _, rest = expression[len(prefix) :].partition(" ")
            return rest.strip(), zone
    return expression, default


def _load_zone(name: str, expression: str) -> None:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ParseError(f"unknown time zone {name!r}", expression) from e


def parse(
    expression: str,
    dialect: Dialect = Dialect.STANDARD,
    timezone: str = "UTC",
) -> Schedule:
    """Parse ``expression`` under ``dialect``.

    Args:
        expression: Cron expression, descriptor, or ``@every <duration>``.
        dialect: Grammar variant; decides whether a seconds field is expected.
        timezone: IANA zone for evaluating field expressions, unless the
            expression carries its own ``CRON_TZ=`` prefix.

    Returns:
        A Schedule whose ``next()`` is pure and strictly increasing.

    Raises:
        ParseError: If the expression is empty or invalid for the dialect.
    """
    source = expression
    text = (expression or "").strip()
    if not text:
        raise ParseError("empty cron expression", source)

    text, zone = _split_timezone(text, timezone)
    if not text:
        raise ParseError("empty cron expression", source)
    _load_zone(zone, source)

    if text.startswith("@every"):
        duration_text = text[len("@every") :].strip()
        if not duration_text or text[len("@every")] not in " \t":
            raise ParseError(f"invalid @every expression {source!r}", source)
        interval = parse_duration(duration_text)
        if interval <= timedelta(0):
            raise ParseError(f"@every interval must be positive: {source!r}", source)
        return EverySchedule(interval=interval, source=source)

    if text.startswith("@"):
        fields_text = DESCRIPTORS.get(text.lower())
        if fields_text is None:
            raise ParseError(f"unrecognized descriptor {text!r}", source)
        fields = fields_text.split()
        if dialect == Dialect.SECONDS:
            fields = ["0", *fields]
    else:
        fields = text.split()

    expected = FIELD_COUNTS[dialect]
    if len(fields) != expected:
        raise ParseError(
            f"expected exactly {expected} fields for {dialect.value} dialect, "
            f"found {len(fields)}: {source!r}",
            source,
        )

    if dialect == Dialect.SECONDS:
        # croniter takes seconds as the trailing sixth field
        fields = [*fields[1:], fields[0]]

    schedule = CronSchedule(expression=" ".join(fields), timezone=zone, source=source)
    try:
        schedule.next(utcnow())
    except (ValueError, KeyError) as e:
        raise ParseError(f"invalid cron expression {source!r}: {e}", source) from e
    return schedule
