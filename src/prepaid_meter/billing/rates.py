"""Time-of-day tariff lookup.

Rules cover half-open minute ranges ``[start, end)`` of the wall-clock day.
A rule whose end is earlier than its start wraps past midnight, and a rule
whose start equals its end covers the whole day. A configured set of rules
must cover each of the 1440 minutes exactly once.
"""

import bisect
from dataclasses import dataclass
from datetime import datetime, time
from typing import TYPE_CHECKING, Sequence

from prepaid_meter.errors import ValidationError

if TYPE_CHECKING:
    from prepaid_meter.config import RateRule, RatesConfig

MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True)
class _Segment:
    start: int  # minute of day, inclusive
    end: int  # minute of day, exclusive
    rule: "RateRule"


def _minute_of_day(t: time) -> int:
    return t.hour * 60 + t.minute


def _format_minute(minute: int) -> str:
    return f"{minute // 60:02d}:{minute % 60:02d}"


def _segments(rule: "RateRule") -> list[_Segment]:
    start = _minute_of_day(rule.start_time)
    end = _minute_of_day(rule.end_time)
    if start == end:
        return [_Segment(0, MINUTES_PER_DAY, rule)]
    if start < end:
        return [_Segment(start, end, rule)]
    segments = [_Segment(start, MINUTES_PER_DAY, rule)]
    if end > 0:
        segments.append(_Segment(0, end, rule))
    return segments


def check_partition(rules: Sequence["RateRule"]) -> None:
    """Raise ValidationError unless ``rules`` cover every minute exactly once.

    An empty sequence is accepted; the schedule then falls back to its
    default rate for the whole day.
    """
    if not rules:
        return

    owners: list[list[str]] = [[] for _ in range(MINUTES_PER_DAY)]
    for rule in rules:
        for seg in _segments(rule):
            for minute in range(seg.start, seg.end):
                owners[minute].append(rule.name)

    for minute, names in enumerate(owners):
        if not names:
            raise ValidationError(f"rate rules leave {_format_minute(minute)} uncovered")
        if len(names) > 1:
            raise ValidationError(
                f"rate rules overlap at {_format_minute(minute)}: {', '.join(names)}"
            )


class RateSchedule:
    """Resolves the price per kWh in force at a given time of day."""

    def __init__(self, rules: Sequence["RateRule"], default_rate: float) -> None:
        check_partition(rules)
        self._default_rate = default_rate
        self._segments = sorted(
            (seg for rule in rules for seg in _segments(rule)), key=lambda s: s.start
        )
        self._starts = [seg.start for seg in self._segments]

    @classmethod
    def from_config(cls, config: "RatesConfig") -> "RateSchedule":
        return cls(config.rules, config.default_rate)

    @property
    def default_rate(self) -> float:
        return self._default_rate

    @property
    def rules(self) -> list["RateRule"]:
        seen: dict[str, RateRule] = {}
        for seg in self._segments:
            seen.setdefault(seg.rule.name, seg.rule)
        return list(seen.values())

    def rule_for(self, at: datetime | time) -> "RateRule | None":
        """Return the rule in force at ``at``, or None for a flat default schedule."""
        if not self._segments:
            return None
        t = at.time() if isinstance(at, datetime) else at
        minute = _minute_of_day(t)
        index = bisect.bisect_right(self._starts, minute) - 1
        return self._segments[index].rule

    def rate_for(self, at: datetime | time) -> float:
        rule = self.rule_for(at)
        if rule is None:
            return self._default_rate
        return rule.rate
