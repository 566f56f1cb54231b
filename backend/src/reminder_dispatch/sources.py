from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as date_parser

from .claims import epoch_ms, hash_key
from .models import StoredEvent, StoredPlannerBlock, StoredSharedSubject, StoredTask
from .payloads import (
    NotificationPayload,
    build_dedupe_key,
    event_payload,
    format_planner_when,
    planner_payload,
    shared_task_payload,
    task_payload,
)
from .recurrence import DEFAULT_WEEKEND, RecurrenceRule, expand, parse_rule

logger = logging.getLogger(__name__)

KIND_EVENT = "event"
KIND_TASK = "task"
KIND_PLANNER = "planner"
KIND_SHARED_TASK = "shared-task"

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DIGITS = re.compile(r"^\d+$")
_CLOCK = re.compile(r"^\s*(\d{1,2})(?::(\d{1,2}))?")


def resolve_zone(name: str | None, fallback: tzinfo) -> tzinfo:
    if not name:
        return fallback
    try:
        return ZoneInfo(str(name).strip())
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown timezone %r, using %s", name, fallback)
        return fallback


def parse_instant(value: Any, tz: tzinfo) -> datetime | None:
    """Parse a stored instant; naive values are wall-clock time in ``tz``.

    Numbers are epoch milliseconds. Returns None when the value is missing,
    unparseable or outside the range ``datetime`` can represent.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        return _from_epoch_ms(value)
    text = str(value).strip()
    if _DIGITS.match(text):
        return _from_epoch_ms(int(text))
    try:
        parsed = date_parser.isoparse(text)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    try:
        return parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError):
        return None


def _from_epoch_ms(value: int | float) -> datetime | None:
    try:
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None


def parse_wall_clock(day: str | None, start: str | None, tz: tzinfo) -> datetime | None:
    if not day or not start or not _DATE_ONLY.match(day.strip()):
        return None
    clock = _CLOCK.match(start)
    if clock is None:
        return None
    try:
        local_day = date.fromisoformat(day.strip())
        local = datetime(
            local_day.year,
            local_day.month,
            local_day.day,
            int(clock.group(1)),
            int(clock.group(2) or 0),
            tzinfo=tz,
        )
    except ValueError:
        return None
    return local.astimezone(timezone.utc)


@dataclass(frozen=True)
class CompletionSet:
    """Occurrences marked done, keyed by instant (epoch ms) or by local date."""

    instants_ms: frozenset[int] = frozenset()
    local_dates: frozenset[date] = frozenset()

    @classmethod
    def from_keys(cls, keys: Mapping[str, Any], tz: tzinfo) -> CompletionSet:
        instants: set[int] = set()
        dates: set[date] = set()
        for raw_key in keys:
            key = str(raw_key).strip()
            if _DATE_ONLY.match(key):
                try:
                    dates.add(date.fromisoformat(key))
                except ValueError:
                    continue
                continue
            instant = parse_instant(key, tz)
            if instant is not None:
                instants.add(epoch_ms(instant))
        return cls(instants_ms=frozenset(instants), local_dates=frozenset(dates))

    def contains(self, occurrence: datetime, tz: tzinfo) -> bool:
        if epoch_ms(occurrence) in self.instants_ms:
            return True
        return occurrence.astimezone(tz).date() in self.local_dates


@dataclass(frozen=True)
class ScanContext:
    now: datetime
    app_url: str
    default_tz: tzinfo = timezone.utc
    lookahead_days: int = 7
    weekend_days: tuple[int, ...] = DEFAULT_WEEKEND
    user_zones: Mapping[str, str] = field(default_factory=dict)

    def zone_for(self, own: str | None = None, user_id: str | None = None) -> tzinfo:
        if own:
            return resolve_zone(own, self.default_tz)
        if user_id and self.user_zones.get(user_id):
            return resolve_zone(self.user_zones[user_id], self.default_tz)
        return self.default_tz

    def lookahead_for(self, reminder_minutes: int) -> int:
        return max(self.lookahead_days, math.ceil(reminder_minutes / 1440) + 1)


def _occurrences(
    target: datetime | None,
    rule: RecurrenceRule | None,
    completed: CompletionSet,
    reminder_minutes: int,
    tz: tzinfo,
    context: ScanContext,
) -> Iterator[datetime]:
    if target is None:
        return
    if rule is None:
        yield target
        return
    for occurrence in expand(
        target,
        rule,
        context.now,
        context.lookahead_for(reminder_minutes),
        tz=tz,
        weekend_days=context.weekend_days,
    ):
        if completed.contains(occurrence, tz):
            continue
        yield occurrence


@dataclass(frozen=True)
class Candidate:
    """One occurrence of one source, ready for the trigger window check."""

    source: ReminderSource
    occurrence: datetime
    dedupe_key: str
    recipients: tuple[str, ...] | None = None

    @property
    def kind(self) -> str:
        return self.source.kind

    @property
    def reminder_minutes(self) -> int:
        return self.source.reminder_minutes

    def payload_for(self, user_id: str, context: ScanContext) -> NotificationPayload:
        return self.source.payload(self, user_id, context).with_dedupe_key(self.dedupe_key)


@dataclass(frozen=True)
class SharedEvent:
    event_id: str
    record: StoredEvent
    kind: str = KIND_EVENT

    @property
    def reminder_minutes(self) -> int:
        return self.record.reminder

    def candidates(self, context: ScanContext) -> Iterator[Candidate]:
        if self.record.completed or self.reminder_minutes <= 0:
            return
        if self.record.imported and not self.record.reminder_user_set:
            return
        tz = context.default_tz
        target = parse_instant(self.record.date, tz)
        rule = parse_rule(self.record.recurrence)
        completed = CompletionSet.from_keys(self.record.completed_occurrences, tz)
        for occurrence in _occurrences(target, rule, completed, self.reminder_minutes, tz, context):
            yield Candidate(
                source=self,
                occurrence=occurrence,
                # None: every known user
                recipients=None,
                dedupe_key=build_dedupe_key(self.kind, self.event_id, occurrence, self.reminder_minutes),
            )

    def payload(self, candidate: Candidate, user_id: str, context: ScanContext) -> NotificationPayload:
        return event_payload(
            event_id=self.event_id,
            name=self.record.name,
            reminder_minutes=self.reminder_minutes,
            app_url=context.app_url,
        )


@dataclass(frozen=True)
class UserTask:
    user_id: str
    task_id: str
    record: StoredTask
    kind: str = KIND_TASK

    @property
    def reminder_minutes(self) -> int:
        return self.record.reminder

    def candidates(self, context: ScanContext) -> Iterator[Candidate]:
        if self.record.completed or self.reminder_minutes <= 0:
            return
        tz = context.zone_for(user_id=self.user_id)
        target = parse_instant(self.record.due_date, tz)
        rule = parse_rule(self.record.recurrence)
        completed = CompletionSet.from_keys(self.record.completed_occurrences, tz)
        for occurrence in _occurrences(target, rule, completed, self.reminder_minutes, tz, context):
            yield Candidate(
                source=self,
                occurrence=occurrence,
                recipients=(self.user_id,),
                dedupe_key=build_dedupe_key(self.kind, self.task_id, occurrence, self.reminder_minutes),
            )

    def payload(self, candidate: Candidate, user_id: str, context: ScanContext) -> NotificationPayload:
        return task_payload(
            task_id=self.task_id,
            title=self.record.title,
            user_id=user_id,
            reminder_minutes=self.reminder_minutes,
            app_url=context.app_url,
        )


@dataclass(frozen=True)
class PlannerBlock:
    user_id: str
    record: StoredPlannerBlock
    kind: str = KIND_PLANNER

    @property
    def reminder_minutes(self) -> int:
        return self.record.reminder

    @property
    def block_key(self) -> str:
        if self.record.id:
            return self.record.id
        return hash_key(f"{self.record.title}|{self.record.date or ''}|{self.record.start or ''}")

    def _zone(self, context: ScanContext) -> tzinfo:
        return context.zone_for(self.record.time_zone, self.user_id)

    def start_instant(self, context: ScanContext) -> datetime | None:
        tz = self._zone(context)
        if self.record.start_at not in (None, ""):
            parsed = parse_instant(self.record.start_at, tz)
            if parsed is not None:
                return parsed
        return parse_wall_clock(self.record.date, self.record.start, tz)

    def candidates(self, context: ScanContext) -> Iterator[Candidate]:
        if self.record.completed or self.reminder_minutes <= 0:
            return
        tz = self._zone(context)
        rule = parse_rule(self.record.recurrence)
        completed = CompletionSet.from_keys(self.record.completed_occurrences, tz)
        target = self.start_instant(context)
        for occurrence in _occurrences(target, rule, completed, self.reminder_minutes, tz, context):
            yield Candidate(
                source=self,
                occurrence=occurrence,
                recipients=(self.user_id,),
                dedupe_key=build_dedupe_key(self.kind, self.block_key, occurrence, self.reminder_minutes),
            )

    def payload(self, candidate: Candidate, user_id: str, context: ScanContext) -> NotificationPayload:
        return planner_payload(
            block_key=self.block_key,
            title=self.record.title,
            when=format_planner_when(candidate.occurrence, self._zone(context)),
            app_url=context.app_url,
        )


@dataclass(frozen=True)
class SharedSubjectTask:
    subject_id: str
    task_id: str
    record: StoredTask
    recipients: tuple[str, ...]
    kind: str = KIND_SHARED_TASK

    @property
    def reminder_minutes(self) -> int:
        return self.record.reminder

    def candidates(self, context: ScanContext) -> Iterator[Candidate]:
        if self.record.completed or self.reminder_minutes <= 0 or not self.recipients:
            return
        tz = context.zone_for(user_id=self.recipients[0])
        target = parse_instant(self.record.due_date, tz)
        rule = parse_rule(self.record.recurrence)
        completed = CompletionSet.from_keys(self.record.completed_occurrences, tz)
        for occurrence in _occurrences(target, rule, completed, self.reminder_minutes, tz, context):
            yield Candidate(
                source=self,
                occurrence=occurrence,
                recipients=self.recipients,
                dedupe_key=build_dedupe_key(
                    self.kind,
                    self.task_id,
                    occurrence,
                    self.reminder_minutes,
                    scope=self.subject_id,
                ),
            )

    def payload(self, candidate: Candidate, user_id: str, context: ScanContext) -> NotificationPayload:
        return shared_task_payload(
            subject_id=self.subject_id,
            task_id=self.task_id,
            title=self.record.title,
            user_id=user_id,
            reminder_minutes=self.reminder_minutes,
            app_url=context.app_url,
        )


ReminderSource = Union[SharedEvent, UserTask, PlannerBlock, SharedSubjectTask]


def planner_items(raw: Any) -> list[Any]:
    if isinstance(raw, list):
        return [item for item in raw if item is not None]
    if isinstance(raw, dict):
        items = raw.get("items")
        if isinstance(items, list):
            return [item for item in items if item is not None]
        if isinstance(items, dict):
            return list(items.values())
    return []


def subject_tasks(subject_id: str, subject: StoredSharedSubject) -> Iterator[tuple[str, Any]]:
    for task_id, raw_task in subject.tasks.items():
        if isinstance(raw_task, dict):
            yield str(task_id), raw_task
        else:
            logger.warning("skipping malformed task %s in shared subject %s", task_id, subject_id)
