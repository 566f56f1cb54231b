from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from reminder_dispatch.payloads import (
    build_dedupe_key,
    build_url,
    format_reminder_offset,
    iso_instant,
    normalize_app_url,
    shared_task_payload,
    task_payload,
)

APP_URL = "https://example.github.io/countdown"


def test_reminder_offset_uses_largest_unit() -> None:
    assert format_reminder_offset(1) == "1 minute"
    assert format_reminder_offset(30) == "30 minutes"
    assert format_reminder_offset(60) == "1 hour"
    assert format_reminder_offset(90) == "2 hours"
    assert format_reminder_offset(1440) == "1 day"
    assert format_reminder_offset(2880) == "2 days"
    assert format_reminder_offset(10080) == "1 week"
    assert format_reminder_offset(20160) == "2 weeks"


def test_app_url_is_normalised() -> None:
    assert normalize_app_url("https://example.github.io/countdown?x=1#top") == "https://example.github.io/countdown/"
    assert normalize_app_url("") == "http://localhost/"
    with pytest.raises(ValueError):
        normalize_app_url("not a url")


def test_build_url_skips_empty_params() -> None:
    url = build_url(APP_URL, "/", {"completeTask": "t1", "user": "u1", "sharedSubject": "", "x": None})

    assert url == "https://example.github.io/countdown/?completeTask=t1&user=u1"
    assert build_url(APP_URL) == "https://example.github.io/countdown/"
    assert build_url(APP_URL, "/planner") == "https://example.github.io/countdown/planner"


def test_dedupe_key_is_stable_across_timezones() -> None:
    occurrence = datetime(2026, 3, 1, 10, 30, tzinfo=timezone.utc)
    same_instant = occurrence.astimezone(timezone(timedelta(hours=2)))

    key = build_dedupe_key("task", "t1", occurrence, 30)

    assert key == "task|t1|2026-03-01T10:30:00.000Z|30"
    assert build_dedupe_key("task", "t1", same_instant, 30) == key
    assert build_dedupe_key("shared-task", "t9", occurrence, 15, scope="s1") == (
        "shared-task|s1|t9|2026-03-01T10:30:00.000Z|15"
    )


def test_iso_instant_keeps_milliseconds() -> None:
    value = datetime(2026, 3, 1, 10, 30, 5, 123456, tzinfo=timezone.utc)

    assert iso_instant(value) == "2026-03-01T10:30:05.123Z"


def test_task_payload_carries_complete_link_and_dedupe_key() -> None:
    payload = task_payload(
        task_id="t1",
        title="Essay",
        user_id="u1",
        reminder_minutes=30,
        app_url=APP_URL,
    ).with_dedupe_key("task|t1|x|30")

    body = json.loads(payload.to_push_json())

    assert body["title"] == "Task Reminder 📋"
    assert body["body"] == "Essay is due in 30 minutes"
    assert body["tag"] == "task-t1"
    assert body["completeUrl"] == "https://example.github.io/countdown/?completeTask=t1&user=u1"
    assert body["dedupeKey"] == "task|t1|x|30"
    assert [action["action"] for action in body["actions"]] == ["view", "complete"]
    assert payload.data_fields()["dedupeKey"] == "task|t1|x|30"


def test_shared_task_payload_links_subject() -> None:
    payload = shared_task_payload(
        subject_id="s1",
        task_id="t1",
        title="",
        user_id="u2",
        reminder_minutes=60,
        app_url=APP_URL,
    )

    assert payload.body == "Task is due in 1 hour"
    assert payload.tag == "shared-task-t1"
    assert payload.complete_url.endswith("?completeTask=t1&user=u2&sharedSubject=s1")
