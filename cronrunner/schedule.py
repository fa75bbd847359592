"""Schedule expressions: validation and fire-time computation.

Accepted forms:

* 5-field cron (minute hour day-of-month month day-of-week), or 6 fields
  with a leading seconds field when seconds mode is enabled
* descriptors: ``@yearly``, ``@annually``, ``@monthly``, ``@weekly``,
  ``@daily``, ``@midnight``, ``@hourly``
* intervals: ``@every <duration>`` (or ``every <duration>``)
* ``@once``: a single immediate run
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Dict, List, Optional, Tuple

from croniter import CroniterError, croniter

from .durations import format_duration, parse_duration
from .errors import ScheduleError

UTC = timezone.utc

SECOND_FIELD: Tuple[str, int, int] = ("second", 0, 59)
CRON_FIELDS: List[Tuple[str, int, int]] = [
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day_of_month", 1, 31),
    ("month", 1, 12),
    ("day_of_week", 0, 6),
]
MONTH_NAMES = {
    name: idx
    for idx, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"],
        start=1,
    )
}
DAY_NAMES = {name: idx for idx, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])}
NAMED_TOKENS = {"month": MONTH_NAMES, "day_of_week": DAY_NAMES}
WILDCARD_FIELDS = {"day_of_month", "day_of_week"}
DESCRIPTORS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}
# Fixed starting point for the "can this schedule ever fire" check.
REACHABILITY_BASE = datetime(2000, 1, 1, tzinfo=timezone.utc)
EVERY_RE = re.compile(r"^@?every\s+(\S+)$", re.IGNORECASE)
CRON_FIELD_RE = re.compile(r"^[0-9*?,/\-]+$")


@dataclass(frozen=True)
class ParsedSchedule:
    expression: str
    kind: str  # cron | interval | once
    with_seconds: bool
    fields: Dict[str, str] = field(default_factory=dict)
    cron_expr: Optional[str] = None
    interval: Optional[timedelta] = None

    def describe(self) -> str:
        if self.kind == "interval" and self.interval is not None:
            return f"every {format_duration(self.interval)}"
        if self.kind == "once":
            return "once"
        return " ".join(self.fields[name] for name in self.field_names())

    def field_names(self) -> List[str]:
        names = [name for name, _, _ in CRON_FIELDS]
        return ([SECOND_FIELD[0]] + names) if self.with_seconds else names

    def next_fire(self, after: datetime, tz: tzinfo) -> datetime:
        """First fire instant strictly after ``after``, expressed in ``tz``.

        Cron schedules are evaluated on local wall-clock time in ``tz`` on
        every call, so offset changes are picked up as they happen.
        """
        local_after = _ensure_aware(after).astimezone(tz)
        if self.kind == "interval":
            return local_after + self.interval
        if self.kind == "once":
            return local_after
        nxt = self._cron_next(local_after, tz)
        if self.fields.get("hour") == "*":
            return nxt
        # Fixed-hour jobs run once per wall-clock time on fall-back days.
        wall = nxt.replace(tzinfo=None)
        first = wall.replace(tzinfo=tz, fold=0)
        repeated = wall.replace(tzinfo=tz, fold=1)
        if first.utcoffset() == repeated.utcoffset() or nxt.utcoffset() != repeated.utcoffset():
            return nxt
        if first.timestamp() > local_after.timestamp():
            return first
        return self._cron_next(nxt, tz)

    def _cron_next(self, after: datetime, tz: tzinfo) -> datetime:
        try:
            nxt = croniter(self.cron_expr, after).get_next(datetime)
        except CroniterError as exc:
            raise ScheduleError(str(exc)) from exc
        if nxt.tzinfo is None:
            nxt = nxt.replace(tzinfo=tz)
        return nxt.astimezone(tz)

    def next_fires(self, count: int, tz: tzinfo, now: Optional[datetime] = None) -> List[datetime]:
        cursor = _ensure_aware(now or datetime.now(tz=UTC)).astimezone(tz)
        if self.kind == "once":
            return [cursor]
        runs: List[datetime] = []
        while len(runs) < count:
            cursor = self.next_fire(cursor, tz)
            runs.append(cursor)
        return runs


def validate(expression: str, with_seconds: bool = False) -> ParsedSchedule:
    """Parse and validate a schedule expression.

    Raises ``ScheduleError`` describing the first problem found.
    """
    if not isinstance(expression, str) or not expression.strip():
        raise ScheduleError("empty schedule expression")
    raw = expression.strip()
    lowered = raw.lower()

    if lowered == "@once":
        return ParsedSchedule(expression=raw, kind="once", with_seconds=with_seconds)

    every = EVERY_RE.match(raw)
    if every:
        try:
            interval = parse_duration(every.group(1))
        except ValueError as exc:
            raise ScheduleError(f'failed to parse duration "{every.group(1)}": {exc}') from exc
        if interval <= timedelta(0):
            raise ScheduleError(f'interval must be positive, got "{every.group(1)}"')
        return ParsedSchedule(expression=raw, kind="interval", with_seconds=with_seconds, interval=interval)

    if lowered.startswith("@"):
        if lowered not in DESCRIPTORS:
            raise ScheduleError(f'unrecognized descriptor "{raw}"')
        body = DESCRIPTORS[lowered]
        if with_seconds:
            body = "0 " + body
    else:
        body = raw

    specs = ([SECOND_FIELD] if with_seconds else []) + CRON_FIELDS
    tokens = body.split()
    if len(tokens) != len(specs):
        raise ScheduleError(
            f'expected exactly {len(specs)} fields, found {len(tokens)}: "{raw}"'
        )

    fields: Dict[str, str] = {}
    normalized: Dict[str, str] = {}
    for token, (name, minimum, maximum) in zip(tokens, specs):
        fields[name] = validate_cron_token(token, name, minimum, maximum)
        normalized[name] = _normalize_token(fields[name], maximum)

    cron_parts = [normalized[name] for name, _, _ in CRON_FIELDS]
    if with_seconds:
        # croniter takes the seconds field last
        cron_parts.append(normalized["second"])
    cron_expr = " ".join(cron_parts)
    if not croniter.is_valid(cron_expr):
        raise ScheduleError(f'invalid cron expression "{raw}"')
    try:
        croniter(cron_expr, REACHABILITY_BASE).get_next(datetime)
    except CroniterError as exc:
        raise ScheduleError(f'schedule "{raw}" never fires: {exc}') from exc

    return ParsedSchedule(
        expression=raw,
        kind="cron",
        with_seconds=with_seconds,
        fields=fields,
        cron_expr=cron_expr,
    )


def replace_named_tokens(raw: str, mapping: Dict[str, int], field_name: str) -> str:
    def repl(match: re.Match) -> str:
        token = match.group(0).lower()
        if token not in mapping:
            raise ScheduleError(f'invalid name "{match.group(0)}" in {field_name} field')
        return str(mapping[token])

    return re.sub(r"[A-Za-z]+", repl, raw)


def validate_cron_token(raw: str, field_name: str, min_value: int, max_value: int) -> str:
    token = raw.strip()
    if not token:
        raise ScheduleError(f"{field_name} field cannot be empty")
    if field_name in NAMED_TOKENS:
        token = replace_named_tokens(token, NAMED_TOKENS[field_name], field_name)
    if not CRON_FIELD_RE.match(token):
        raise ScheduleError(f'invalid {field_name} field "{raw}"')
    if token == "?":
        if field_name not in WILDCARD_FIELDS:
            raise ScheduleError(f'"?" is only allowed in day fields, found in {field_name}')
        return token

    for part in token.split(","):
        if not part:
            raise ScheduleError(f'invalid {field_name} field "{raw}"')
        if "/" in part:
            base, step_str = part.split("/", 1)
            if not step_str.isdigit() or int(step_str) <= 0:
                raise ScheduleError(f'invalid step "{part}" in {field_name} field')
            if int(step_str) > (max_value - min_value + 1):
                raise ScheduleError(f'step "{step_str}" too large in {field_name} field')
            if base == "*":
                continue
            _validate_range_or_single(base, field_name, min_value, max_value)
            continue
        _validate_range_or_single(part, field_name, min_value, max_value)
    return token


def _validate_range_or_single(token: str, field_name: str, min_value: int, max_value: int) -> None:
    if token == "*":
        return
    if "-" in token:
        left, right = token.split("-", 1)
        if not left.isdigit() or not right.isdigit():
            raise ScheduleError(f'invalid range "{token}" in {field_name} field')
        start = int(left)
        end = int(right)
        if start > end:
            raise ScheduleError(f'invalid range "{token}" in {field_name} field')
        if start < min_value or end > max_value:
            raise ScheduleError(
                f'range "{token}" out of bounds {min_value}-{max_value} in {field_name} field'
            )
        return
    if not token.isdigit():
        raise ScheduleError(f'invalid value "{token}" in {field_name} field')
    value = int(token)
    if value < min_value or value > max_value:
        raise ScheduleError(
            f'value "{value}" out of bounds {min_value}-{max_value} in {field_name} field'
        )


def _normalize_token(token: str, max_value: int) -> str:
    if token == "?":
        return "*"
    parts = []
    for part in token.split(","):
        if "/" in part:
            base, step = part.split("/", 1)
            if base != "*" and "-" not in base:
                # "a/n" runs from a to the top of the field
                part = f"{base}-{max_value}/{step}"
        parts.append(part)
    return ",".join(parts)


def _ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
