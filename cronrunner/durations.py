"""Duration literals in the ``1h30m`` / ``250ms`` / ``1.5s`` style."""

from __future__ import annotations

import re
from datetime import timedelta
from decimal import Decimal, InvalidOperation

UNIT_MICROSECONDS = {
    "ns": Decimal("0.001"),
    "us": Decimal(1),
    "µs": Decimal(1),
    "μs": Decimal(1),
    "ms": Decimal(1000),
    "s": Decimal(1_000_000),
    "m": Decimal(60_000_000),
    "h": Decimal(3_600_000_000),
}
DURATION_RE = re.compile(r"^[+-]?(?:(?:\d+(?:\.\d*)?|\.\d+)(?:ns|us|µs|μs|ms|s|m|h))+$")
DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(text: str) -> timedelta:
    """Parse a duration literal such as ``90s``, ``1h30m`` or ``250ms``.

    Raises ``ValueError`` for anything else. A bare ``0`` is accepted.
    Sub-microsecond remainders are truncated.
    """
    raw = text.strip() if isinstance(text, str) else ""
    if raw in {"0", "+0", "-0"}:
        return timedelta(0)
    if not DURATION_RE.match(raw):
        raise ValueError(f'invalid duration "{text}"')

    sign = -1 if raw.startswith("-") else 1
    total = Decimal(0)
    for number, unit in DURATION_PART_RE.findall(raw):
        try:
            total += Decimal(number) * UNIT_MICROSECONDS[unit]
        except InvalidOperation as exc:
            raise ValueError(f'invalid duration "{text}"') from exc
    return timedelta(microseconds=sign * int(total))


def format_duration(value: timedelta) -> str:
    """Render a timedelta compactly: ``1h0m0s``, ``1m30s``, ``1.5s``, ``250ms``."""
    total_us = (value.days * 86_400 + value.seconds) * 1_000_000 + value.microseconds
    if total_us == 0:
        return "0s"
    sign = "-" if total_us < 0 else ""
    total_us = abs(total_us)

    if total_us < 1_000:
        return f"{sign}{total_us}µs"
    if total_us < 1_000_000:
        return f"{sign}{_with_fraction(total_us, 1_000)}ms"

    hours, rest = divmod(total_us, 3_600_000_000)
    minutes, rest = divmod(rest, 60_000_000)
    out = sign
    if hours:
        out += f"{hours}h"
    if hours or minutes:
        out += f"{minutes}m"
    return out + f"{_with_fraction(rest, 1_000_000)}s"


def _with_fraction(amount: int, scale: int) -> str:
    whole, frac = divmod(amount, scale)
    if not frac:
        return str(whole)
    width = len(str(scale)) - 1
    return f"{whole}.{frac:0{width}d}".rstrip("0")
