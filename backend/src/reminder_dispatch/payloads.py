from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone, tzinfo
from typing import Any, Mapping
from urllib.parse import urlencode, urljoin, urlsplit, urlunsplit

DEFAULT_APP_URL = "http://localhost/"

MINUTES_PER_HOUR = 60
MINUTES_PER_DAY = 1440
MINUTES_PER_WEEK = 10080


@dataclass(frozen=True)
class NotificationAction:
    action: str
    title: str


VIEW_ACTION = NotificationAction("view", "View")
DONE_ACTION = NotificationAction("complete", "Done")


@dataclass(frozen=True)
class NotificationPayload:
    title: str
    body: str
    tag: str
    url: str
    complete_url: str = ""
    dedupe_key: str = ""
    actions: tuple[NotificationAction, ...] = field(default=(VIEW_ACTION,))
    require_interaction: bool = True
    renotify: bool = True

    def with_dedupe_key(self, dedupe_key: str) -> NotificationPayload:
        return replace(self, dedupe_key=dedupe_key)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "title": self.title,
            "body": self.body,
            "tag": self.tag,
            "url": self.url,
            "requireInteraction": self.require_interaction,
            "renotify": self.renotify,
            "actions": [{"action": item.action, "title": item.title} for item in self.actions],
        }
        if self.complete_url:
            body["completeUrl"] = self.complete_url
        if self.dedupe_key:
            body["dedupeKey"] = self.dedupe_key
        return body

    def to_push_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def data_fields(self) -> dict[str, str]:
        # FCM data values must be strings
        return {
            "url": self.url,
            "completeUrl": self.complete_url,
            "tag": self.tag or "reminder",
            "dedupeKey": self.dedupe_key,
        }


def _round_half_up(value: float) -> int:
    return int(value + 0.5)


def _plural(count: int, unit: str) -> str:
    return f"1 {unit}" if count == 1 else f"{count} {unit}s"


def format_reminder_offset(minutes: int) -> str:
    if minutes >= MINUTES_PER_WEEK:
        return _plural(_round_half_up(minutes / MINUTES_PER_WEEK), "week")
    if minutes >= MINUTES_PER_DAY:
        return _plural(_round_half_up(minutes / MINUTES_PER_DAY), "day")
    if minutes >= MINUTES_PER_HOUR:
        return _plural(_round_half_up(minutes / MINUTES_PER_HOUR), "hour")
    return _plural(minutes, "minute")


def normalize_app_url(raw: str | None) -> str:
    """Drop query and fragment and make sure the path ends with a slash."""
    value = (raw or "").strip() or DEFAULT_APP_URL
    parts = urlsplit(value)
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"app url must be absolute: {value!r}")
    path = parts.path or "/"
    if not path.endswith("/"):
        path = f"{path}/"
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))


def build_url(app_url: str, path: str = "/", params: Mapping[str, Any] | None = None) -> str:
    base = normalize_app_url(app_url)
    relative = str(path or ".")
    relative = "." if relative == "/" else relative.lstrip("/") or "."
    url = urljoin(base, relative)
    query = {
        key: str(value)
        for key, value in (params or {}).items()
        if value is not None and value != ""
    }
    if query:
        url = f"{url}?{urlencode(query)}"
    return url


def iso_instant(value: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a ``Z`` suffix."""
    instant = value.astimezone(timezone.utc)
    return instant.strftime("%Y-%m-%dT%H:%M:%S.") + f"{instant.microsecond // 1000:03d}Z"


def build_dedupe_key(
    kind: str,
    source_id: str,
    occurrence: datetime,
    reminder_minutes: int,
    *,
    scope: str | None = None,
) -> str:
    parts = [kind]
    if scope:
        parts.append(scope)
    parts.extend([source_id, iso_instant(occurrence), str(reminder_minutes)])
    return "|".join(parts)


def format_planner_when(start: datetime, tz: tzinfo) -> str:
    return start.astimezone(tz).strftime("%a %d %b %H:%M")


def event_payload(*, event_id: str, name: str, reminder_minutes: int, app_url: str) -> NotificationPayload:
    return NotificationPayload(
        title="Event Reminder ⏰",
        body=f"{name or 'Event'} starts in {format_reminder_offset(reminder_minutes)}",
        tag=f"event-{event_id}",
        url=build_url(app_url),
        actions=(VIEW_ACTION,),
    )


def task_payload(
    *,
    task_id: str,
    title: str,
    user_id: str,
    reminder_minutes: int,
    app_url: str,
) -> NotificationPayload:
    return NotificationPayload(
        title="Task Reminder 📋",
        body=f"{title or 'Task'} is due in {format_reminder_offset(reminder_minutes)}",
        tag=f"task-{task_id}",
        url=build_url(app_url),
        complete_url=build_url(app_url, "/", {"completeTask": task_id, "user": user_id}),
        actions=(VIEW_ACTION, DONE_ACTION),
    )


def planner_payload(*, block_key: str, title: str, when: str, app_url: str) -> NotificationPayload:
    label = title or "Activity"
    return NotificationPayload(
        title="Planner Reminder 📅",
        body=f"{label} • {when}" if when else f"{label} starting soon",
        tag=f"planner-{block_key}",
        url=build_url(app_url),
        actions=(VIEW_ACTION,),
    )


def shared_task_payload(
    *,
    subject_id: str,
    task_id: str,
    title: str,
    user_id: str,
    reminder_minutes: int,
    app_url: str,
) -> NotificationPayload:
    return NotificationPayload(
        title="Shared Task Reminder 📋",
        body=f"{title or 'Task'} is due in {format_reminder_offset(reminder_minutes)}",
        tag=f"shared-task-{task_id}",
        url=build_url(app_url),
        complete_url=build_url(
            app_url,
            "/",
            {"completeTask": task_id, "user": user_id, "sharedSubject": subject_id},
        ),
        actions=(VIEW_ACTION, DONE_ACTION),
    )


def connectivity_check_payload(*, app_url: str, now: datetime) -> NotificationPayload:
    return NotificationPayload(
        title="Test notification ✅",
        body="If you see this, push delivery is working.",
        tag=f"test-{int(now.timestamp() * 1000)}",
        url=build_url(app_url),
        actions=(VIEW_ACTION,),
    )
