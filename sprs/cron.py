"""A small five-field cron expression parser and matcher."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

Field = Optional[frozenset]

_INT_RE = re.compile(r"[+-]?[0-9]+")


class CronError(ValueError):
    """Raised when a cron expression cannot be parsed."""


def _q(s: str) -> str:
    return json.dumps(s, ensure_ascii=False)


def _atoi(s: str) -> int:
    if not _INT_RE.fullmatch(s):
        raise ValueError(s)
    return int(s)


def parse_field(s: str, lo: int, hi: int) -> Field:
    """Parse one cron field; ``None`` stands for the ``*`` wildcard."""
    if s == "*":
        return None
    values: set[int] = set()
    for part in s.split(","):
        if "-" in part:
            first, last = part.split("-", 1)
            try:
                start, end = _atoi(first), _atoi(last)
            except ValueError:
                raise CronError(f"invalid range {_q(part)}") from None
            if start < lo or end > hi or start > end:
                raise CronError(f"invalid range {_q(part)}")
            values.update(range(start, end + 1))
        elif "/" in part:
            base, step_text = part.split("/", 1)
            try:
                step = _atoi(step_text)
            except ValueError:
                raise CronError(f"invalid step {_q(part)}") from None
            if step <= 0:
                raise CronError(f"invalid step {_q(part)}")
            start = lo
            if base != "*":
                try:
                    start = _atoi(base)
                except ValueError:
                    raise CronError(f"invalid step start {_q(part)}") from None
            values.update(range(start, hi + 1, step))
        else:
            try:
                value = _atoi(part)
            except ValueError:
                value = None
            if value is None or value < lo or value > hi:
                raise CronError(f"value {_q(part)} out of range [{lo}-{hi}]")
            values.add(value)
    return frozenset(values)


def _field_matches(f: Field, value: int) -> bool:
    return f is None or value in f


@dataclass(frozen=True)
class CronEntry:
    """A parsed cron expression."""

    minute: Field
    hour: Field
    dom: Field
    month: Field
    dow: Field
    raw: str

    def matches(self, t: datetime) -> bool:
        """Report whether ``t`` falls on this schedule (Sunday is weekday 0)."""
        return (
            _field_matches(self.minute, t.minute)
            and _field_matches(self.hour, t.hour)
            and _field_matches(self.dom, t.day)
            and _field_matches(self.month, t.month)
            and _field_matches(self.dow, t.isoweekday() % 7)
        )


_FIELD_SPECS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day-of-month", 1, 31),
    ("month", 1, 12),
    ("day-of-week", 0, 6),
)


def parse(expr: str) -> CronEntry:
    """Parse a standard five-field cron expression."""
    parts = expr.split()
    if len(parts) != 5:
        raise CronError(f"cron expression must have 5 fields, got {len(parts)}")
    fields = []
    for text, (name, lo, hi) in zip(parts, _FIELD_SPECS):
        try:
            fields.append(parse_field(text, lo, hi))
        except CronError as exc:
            raise CronError(f"{name}: {exc}") from exc
    minute, hour, dom, month, dow = fields
    return CronEntry(minute, hour, dom, month, dow, expr)