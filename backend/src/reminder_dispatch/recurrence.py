from __future__ import annotations

import math
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo

from dateutil.relativedelta import relativedelta

MAX_EXPANSION_STEPS = 10_000
WEEKDAYS = "weekdays"
UNITS = frozenset({"days", "weeks", "months", "years"})
NAMED_CADENCES: dict[str, tuple[int, str]] = {
    "daily": (1, "days"),
    "weekly": (1, "weeks"),
    "biweekly": (2, "weeks"),
    "monthly": (1, "months"),
    "yearly": (1, "years"),
}
DEFAULT_WEEKEND = (6, 7)

_UNIT_ALIASES = {
    "day": "days",
    "week": "weeks",
    "month": "months",
    "year": "years",
}
_FIXED_UNIT_SECONDS = {"days": 86400, "weeks": 7 * 86400}


@dataclass(frozen=True)
class RecurrenceRule:
    interval: int
    unit: str

    @property
    def recognized(self) -> bool:
        return self.unit == WEEKDAYS or self.unit in UNITS


def _as_interval(value: object) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


def _normalize_unit(value: object) -> str:
    normalized = str(value or "").strip().lower()
    return _UNIT_ALIASES.get(normalized, normalized)


def parse_rule(raw: object) -> RecurrenceRule | None:
    """Parse a stored recurrence value.

    Returns ``None`` when the source does not recur. An unknown cadence still
    yields a rule (with ``recognized`` false) so callers skip the source instead
    of treating it as a one-off.
    """
    if raw is None or raw is False:
        return None
    if isinstance(raw, str):
        name = raw.strip().lower()
        if name in {"", "none", "never", "once"}:
            return None
        if name == WEEKDAYS:
            return RecurrenceRule(interval=1, unit=WEEKDAYS)
        if name in NAMED_CADENCES:
            interval, unit = NAMED_CADENCES[name]
            return RecurrenceRule(interval=interval, unit=unit)
        return RecurrenceRule(interval=1, unit=name)
    if isinstance(raw, Mapping):
        if "unit" in raw:
            return RecurrenceRule(
                interval=_as_interval(raw.get("interval", 1)),
                unit=_normalize_unit(raw.get("unit")),
            )
        named = raw.get("cadence") or raw.get("type") or raw.get("frequency")
        if isinstance(named, str) and named.strip().lower() != "custom":
            return parse_rule(named)
        return RecurrenceRule(interval=_as_interval(raw.get("interval", 1)), unit="")
    return RecurrenceRule(interval=1, unit="")


def _fixed_step(rule: RecurrenceRule, k: int) -> relativedelta:
    return relativedelta(**{rule.unit: k * rule.interval})


def _skip_weekend(value: datetime, weekend: frozenset[int]) -> datetime | None:
    skipped = 0
    while value.isoweekday() in weekend:
        skipped += 1
        if skipped > 7:
            return None
        value = value + timedelta(days=1)
    return value


def _local_steps(
    local_base: datetime,
    rule: RecurrenceRule,
    *,
    start_index: int,
    weekend: frozenset[int],
) -> Iterator[datetime]:
    if rule.unit == WEEKDAYS:
        current = _skip_weekend(local_base, weekend)
        while current is not None:
            yield current
            current = _skip_weekend(current + timedelta(days=1), weekend)
        return
    k = start_index
    while True:
        yield local_base + _fixed_step(rule, k)
        k += 1


def _jump_index(base: datetime, rule: RecurrenceRule, window_start: datetime) -> int:
    step_seconds = _FIXED_UNIT_SECONDS.get(rule.unit)
    if step_seconds is None or rule.interval <= 0:
        return 0
    elapsed = (window_start - base).total_seconds()
    if elapsed <= 0:
        return 0
    # one step of slack keeps DST shifts from overshooting the window start
    return max(0, math.floor(elapsed / (step_seconds * rule.interval)) - 1)


def expand(
    base: datetime,
    rule: RecurrenceRule,
    from_instant: datetime,
    lookahead_days: int,
    *,
    tz: tzinfo = timezone.utc,
    weekend_days: tuple[int, ...] = DEFAULT_WEEKEND,
) -> Iterator[datetime]:
    """Yield UTC occurrence instants within ``from_instant +/- lookahead_days``.

    Calendar arithmetic happens in ``tz`` so a daily 09:00 reminder stays at
    09:00 local time across DST changes. Both the fast-forward and collection
    phases stop after ``MAX_EXPANSION_STEPS``; the expansion never raises for a
    pathological rule and simply ends early.
    """
    if not rule.recognized:
        return
    window_start = from_instant - timedelta(days=lookahead_days)
    window_end = from_instant + timedelta(days=lookahead_days)
    local_base = base.astimezone(tz)
    steps = _local_steps(
        local_base,
        rule,
        start_index=_jump_index(base, rule, window_start),
        weekend=frozenset(weekend_days),
    )

    current = next(steps, None)
    forwarded = 0
    while current is not None and current.astimezone(timezone.utc) < window_start:
        forwarded += 1
        if forwarded >= MAX_EXPANSION_STEPS:
            return
        current = next(steps, None)

    previous: datetime | None = None
    collected = 0
    while current is not None:
        instant = current.astimezone(timezone.utc)
        if instant > window_end:
            return
        if previous is not None and instant <= previous:
            return
        yield instant
        previous = instant
        collected += 1
        if collected >= MAX_EXPANSION_STEPS:
            return
        current = next(steps, None)
