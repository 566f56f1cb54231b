from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Callable
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from .claims import epoch_ms
from .config import Settings
from .models import StoredEvent, StoredPlannerBlock, StoredSharedSubject, StoredTask
from .notifier import MultiChannelNotifier, SendResult, UserDevices, user_devices_from_snapshot
from .payloads import iso_instant, normalize_app_url
from .recurrence import DEFAULT_WEEKEND
from .sources import (
    Candidate,
    PlannerBlock,
    ReminderSource,
    ScanContext,
    SharedEvent,
    SharedSubjectTask,
    UserTask,
    planner_items,
    subject_tasks,
)
from .store import DataStore, DataStoreError, join_path
from .triggers import DEFAULT_LATE_CAP, should_fire

logger = logging.getLogger(__name__)

NO_DEVICE_STATUS = "no_device"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class DispatchSummary:
    started_at: datetime
    finished_at: datetime
    evaluated: int = 0
    triggered: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class _Tally:
    evaluated: int = 0
    triggered: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0

    def add(self, result: SendResult) -> None:
        self.sent += result.sent
        self.skipped += result.skipped
        self.failed += result.failed


def as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


class ReminderDispatcher:
    """One pass over every reminder source.

    Each run re-reads the data store; nothing is carried between runs. Failures
    stay with the smallest unit (a device, an occurrence, a source) and end up
    in the run counters. Only data store errors abort the pass.
    """

    def __init__(
        self,
        *,
        store: DataStore,
        notifier: MultiChannelNotifier,
        app_url: str,
        default_timezone: tzinfo = timezone.utc,
        lookahead_days: int = 7,
        late_cap: timedelta = DEFAULT_LATE_CAP,
        weekend_days: tuple[int, ...] = DEFAULT_WEEKEND,
        target_user: str | None = None,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._app_url = normalize_app_url(app_url)
        self._default_timezone = default_timezone
        self._lookahead_days = lookahead_days
        self._late_cap = late_cap
        self._weekend_days = weekend_days
        self._target_user = target_user or None
        self._clock = clock

    def run(self, now: datetime | None = None, *, target_user: str | None = None) -> DispatchSummary:
        started_at = _coerce_utc(now) if now is not None else self._clock()
        target = target_user or self._target_user
        logger.info("reminder dispatch started at %s", iso_instant(started_at))

        raw_users = as_mapping(self._store.read_snapshot("users"))
        users = {
            str(user_id): user_devices_from_snapshot(str(user_id), data)
            for user_id, data in raw_users.items()
            if not target or str(user_id) == target
        }
        events = as_mapping(self._store.read_snapshot("events"))
        subjects = as_mapping(self._store.read_snapshot("sharedSubjects"))
        logger.info(
            "loaded %d users (%d with devices), %d events, %d shared subjects",
            len(users),
            sum(1 for user in users.values() if user.has_devices),
            len(events),
            len(subjects),
        )

        context = ScanContext(
            now=started_at,
            app_url=self._app_url,
            default_tz=self._default_timezone,
            lookahead_days=self._lookahead_days,
            weekend_days=self._weekend_days,
            user_zones={user_id: user.time_zone for user_id, user in users.items() if user.time_zone},
        )
        tally = _Tally()
        for source in self._iter_sources(events, {uid: raw_users.get(uid) for uid in users}, subjects):
            self._dispatch_source(source, users, context, tally, target)

        finished_at = self._clock() if now is None else started_at
        logger.info(
            "reminder dispatch finished: sent=%d skipped=%d failed=%d (evaluated=%d triggered=%d)",
            tally.sent,
            tally.skipped,
            tally.failed,
            tally.evaluated,
            tally.triggered,
        )
        return DispatchSummary(
            started_at=started_at,
            finished_at=finished_at,
            evaluated=tally.evaluated,
            triggered=tally.triggered,
            sent=tally.sent,
            skipped=tally.skipped,
            failed=tally.failed,
        )

    def _iter_sources(
        self,
        events: Mapping[str, Any],
        user_data: Mapping[str, Any],
        subjects: Mapping[str, Any],
    ) -> Iterator[ReminderSource]:
        for event_id, raw in events.items():
            try:
                yield SharedEvent(event_id=str(event_id), record=StoredEvent.model_validate(raw))
            except ValidationError as exc:
                logger.warning("skipping malformed event %s: %s", event_id, exc.errors()[:1])

        for user_id, data in user_data.items():
            data = as_mapping(data)
            for task_id, raw in as_mapping(data.get("tasks")).items():
                try:
                    yield UserTask(user_id=user_id, task_id=str(task_id), record=StoredTask.model_validate(raw))
                except ValidationError as exc:
                    logger.warning("skipping malformed task %s for user %s: %s", task_id, user_id, exc.errors()[:1])
            for index, raw in enumerate(planner_items(data.get("plannerBlocks"))):
                try:
                    yield PlannerBlock(user_id=user_id, record=StoredPlannerBlock.model_validate(raw))
                except ValidationError as exc:
                    logger.warning("skipping malformed planner block %d for user %s: %s", index, user_id, exc.errors()[:1])

        for subject_id, raw in subjects.items():
            try:
                subject = StoredSharedSubject.model_validate(raw)
            except ValidationError as exc:
                logger.warning("skipping malformed shared subject %s: %s", subject_id, exc.errors()[:1])
                continue
            recipients = tuple(subject.recipients())
            for task_id, raw_task in subject_tasks(str(subject_id), subject):
                try:
                    record = StoredTask.model_validate(raw_task)
                except ValidationError as exc:
                    logger.warning(
                        "skipping malformed task %s in shared subject %s: %s",
                        task_id,
                        subject_id,
                        exc.errors()[:1],
                    )
                    continue
                yield SharedSubjectTask(
                    subject_id=str(subject_id),
                    task_id=task_id,
                    record=record,
                    recipients=recipients,
                )

    def _dispatch_source(
        self,
        source: ReminderSource,
        users: Mapping[str, UserDevices],
        context: ScanContext,
        tally: _Tally,
        target: str | None,
    ) -> None:
        try:
            for candidate in source.candidates(context):
                tally.evaluated += 1
                if not should_fire(context.now, candidate.occurrence, candidate.reminder_minutes, late_cap=self._late_cap):
                    continue
                tally.triggered += 1
                self._deliver(candidate, users, context, tally, target)
        except (ValueError, OverflowError) as exc:
            logger.warning("skipping %s source after data error: %s", source.kind, exc)

    def _deliver(
        self,
        candidate: Candidate,
        users: Mapping[str, UserDevices],
        context: ScanContext,
        tally: _Tally,
        target: str | None,
    ) -> None:
        recipients = tuple(users) if candidate.recipients is None else candidate.recipients
        for user_id in recipients:
            if target and user_id != target:
                continue
            user = users.get(user_id) or UserDevices(user_id=user_id)
            if not user.has_devices:
                if isinstance(candidate.source, SharedSubjectTask):
                    self._record_no_device(candidate.source, user_id, candidate.dedupe_key, context.now)
                continue
            payload = candidate.payload_for(user_id, context)
            result = self._notifier.send(user, payload, candidate.dedupe_key)
            tally.add(result)
            if result.delivered and isinstance(candidate.source, SharedSubjectTask):
                self._clear_no_device(candidate.source, user_id)

    def _status_path(self, source: SharedSubjectTask, user_id: str) -> str:
        return join_path("sharedSubjects", source.subject_id, "reminderStatus", source.task_id, user_id)

    def _record_no_device(self, source: SharedSubjectTask, user_id: str, dedupe_key: str, now: datetime) -> None:
        try:
            self._store.write(
                self._status_path(source, user_id),
                {"status": NO_DEVICE_STATUS, "ts": epoch_ms(now), "dedupeKey": dedupe_key},
            )
        except DataStoreError as exc:
            logger.warning("could not record no-device status for %s: %s", user_id, exc)

    def _clear_no_device(self, source: SharedSubjectTask, user_id: str) -> None:
        try:
            self._store.delete(self._status_path(source, user_id))
        except DataStoreError as exc:
            logger.warning("could not clear no-device status for %s: %s", user_id, exc)


def build_dispatcher(settings: Settings, *, store: DataStore, notifier: MultiChannelNotifier) -> ReminderDispatcher:
    return ReminderDispatcher(
        store=store,
        notifier=notifier,
        app_url=settings.push_app_url,
        default_timezone=ZoneInfo(settings.default_timezone),
        lookahead_days=settings.lookahead_days,
        late_cap=timedelta(seconds=settings.late_cap_seconds),
        weekend_days=settings.weekend_days,
        target_user=settings.push_target_user or None,
    )
