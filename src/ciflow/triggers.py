# triggers.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from fnmatch import fnmatchcase
from functools import lru_cache
from typing import Dict, FrozenSet, Iterable, List, Sequence, Union

from .errors import MALFORMED_CRON, config_error
from .model import Event, EventKind, TriggerRule

NO_MATCHING_RULE = "no-matching-rule"


@dataclass(frozen=True)
class Accepted:
    rule: TriggerRule
    reason: str

    accepted = True


@dataclass(frozen=True)
class Rejected:
    reason: str

    accepted = False


Decision = Union[Accepted, Rejected]


# ---------------------------------------------------------------------
# Cron
# ---------------------------------------------------------------------

_MONTHS = {m: i + 1 for i, m in enumerate(
    ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"]
)}
_DAYS = {d: i for i, d in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])}

# (name, low, high, aliases)
_FIELDS = [
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day-of-month", 1, 31, {}),
    ("month", 1, 12, _MONTHS),
    ("day-of-week", 0, 7, _DAYS),
]


def _parse_value(token: str, aliases: Dict[str, int], expr: str) -> int:
    token = token.strip().lower()
    if token in aliases:
        return aliases[token]
    if not token.isdigit():
        raise config_error(MALFORMED_CRON, f"Invalid cron value {token!r}", cron=expr)
    return int(token)


def _parse_field(text: str, name: str, low: int, high: int, aliases: Dict[str, int], expr: str) -> FrozenSet[int]:
    values: set[int] = set()
    for part in text.split(","):
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            if not step_text.isdigit() or int(step_text) == 0:
                raise config_error(MALFORMED_CRON, f"Invalid step in {name} field", cron=expr)
            step = int(step_text)

        if part == "*":
            start, end = low, high
        elif "-" in part:
            a, b = part.split("-", 1)
            start, end = _parse_value(a, aliases, expr), _parse_value(b, aliases, expr)
        else:
            start = _parse_value(part, aliases, expr)
            end = high if step != 1 else start

        if start < low or end > high or start > end:
            raise config_error(
                MALFORMED_CRON,
                f"{name} field out of range ({low}-{high}): {text!r}",
                cron=expr,
            )
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronExpression:
    """
    Standard 5-field cron expression (minute hour dom month dow), UTC.

    When both day-of-month and day-of-week are restricted a day matches if
    either does (classic cron semantics).
    """
    source: str
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]
    dom_any: bool
    dow_any: bool

    @classmethod
    def parse(cls, expr: str) -> "CronExpression":
        fields = expr.split()
        if len(fields) != 5:
            raise config_error(MALFORMED_CRON, "Cron expression must have 5 fields", cron=expr)

        parsed = [
            _parse_field(text, name, low, high, aliases, expr)
            for text, (name, low, high, aliases) in zip(fields, _FIELDS)
        ]
        weekdays = frozenset(0 if d == 7 else d for d in parsed[4])
        return cls(
            source=expr,
            minutes=parsed[0],
            hours=parsed[1],
            days=parsed[2],
            months=parsed[3],
            weekdays=weekdays,
            dom_any=fields[2].startswith("*"),
            dow_any=fields[4].startswith("*"),
        )

    def matches(self, ts: datetime) -> bool:
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        ts = ts.astimezone(timezone.utc)

        if ts.minute not in self.minutes or ts.hour not in self.hours:
            return False
        if ts.month not in self.months:
            return False

        dom_ok = ts.day in self.days
        dow_ok = (ts.isoweekday() % 7) in self.weekdays  # Sunday -> 0
        if self.dom_any or self.dow_any:
            return dom_ok and dow_ok
        return dom_ok or dow_ok


@lru_cache(maxsize=256)
def parse_cron(expr: str) -> CronExpression:
    """Parsed cron expression, cached so a loaded rule set is parsed once."""
    return CronExpression.parse(expr)


# ---------------------------------------------------------------------
# Rule matching
# ---------------------------------------------------------------------

def _matches_any(value: str, patterns: Sequence[str]) -> bool:
    return any(fnmatchcase(value, p) for p in patterns)


def rule_matches(rule: TriggerRule, event: Event) -> bool:
    if rule.kind is not event.kind:
        return False

    if rule.kind is EventKind.SCHEDULE:
        if not rule.cron:
            return False
        return parse_cron(rule.cron).matches(event.timestamp)

    if rule.kind is EventKind.TAG:
        if not event.tag:
            return False
        return not rule.tags or _matches_any(event.tag, rule.tags)

    # push / pull_request
    branch = event.branch
    if not branch:
        return not rule.branches
    if rule.branches and not _matches_any(branch, rule.branches):
        return False
    if rule.branches_ignore and _matches_any(branch, rule.branches_ignore):
        return False
    return True


def evaluate(event: Event, rules: Iterable[TriggerRule]) -> Decision:
    """
    Decide whether `event` starts a run.

    Rules are OR-combined; the first matching rule is reported.
    Rejection is a normal outcome, never an exception.
    """
    for rule in rules:
        if rule_matches(rule, event):
            return Accepted(rule=rule, reason=f"matched {rule.describe()}")
    return Rejected(reason=NO_MATCHING_RULE)


def validate_rules(rules: Iterable[TriggerRule]) -> List[TriggerRule]:
    """Parse every cron expression up front so bad schedules fail at load time."""
    out: List[TriggerRule] = []
    for rule in rules:
        if rule.kind is EventKind.SCHEDULE:
            if not rule.cron:
                raise config_error(MALFORMED_CRON, "schedule trigger needs a cron expression")
            parse_cron(rule.cron)
        out.append(rule)
    return out
