from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

import pytest

from reminder_dispatch.claims import CLAIM_SENT, DeliveryClaimStore, token_claim_path
from reminder_dispatch.dispatcher import NO_DEVICE_STATUS, ReminderDispatcher
from reminder_dispatch.notifier import MultiChannelNotifier
from reminder_dispatch.retry import RetryPolicy
from reminder_dispatch.store import DataStoreError, InMemoryDataStore
from reminder_dispatch.transports import StubSubscriptionTransport, StubTokenTransport

NOW = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
TOKEN_A = "token-a-0123456789abcdefghij"
TOKEN_B = "token-b-0123456789abcdefghij"


def _subscription(endpoint: str) -> dict[str, Any]:
    return {"sub": {"endpoint": endpoint, "keys": {"p256dh": "p256dh-key", "auth": "auth-secret"}}}


def _dispatcher(
    store: InMemoryDataStore,
    *,
    tokens: StubTokenTransport | None = None,
    subscriptions: StubSubscriptionTransport | None = None,
    clock_value: datetime = NOW,
    **overrides: Any,
) -> ReminderDispatcher:
    notifier = MultiChannelNotifier(
        store=store,
        claims=DeliveryClaimStore(store, staleness=timedelta(minutes=5), clock=lambda: clock_value),
        token_transport=tokens if tokens is not None else StubTokenTransport(),
        subscription_transport=subscriptions if subscriptions is not None else StubSubscriptionTransport(),
        retry_policy=RetryPolicy(),
        sleep=lambda _: None,
    )
    values: dict[str, Any] = {"store": store, "notifier": notifier, "app_url": "https://example.test/app"}
    values.update(overrides)
    return ReminderDispatcher(**values)


def _task_store(**task_overrides: Any) -> InMemoryDataStore:
    task = {"title": "Essay", "dueDate": "2026-03-01T10:30:00Z", "reminder": 30}
    task.update(task_overrides)
    return InMemoryDataStore({"users": {"u1": {"fcmTokens": {TOKEN_A: True}, "tasks": {"t1": task}}}})


def test_due_task_is_delivered_once() -> None:
    store = _task_store()
    tokens = StubTokenTransport()
    dispatcher = _dispatcher(store, tokens=tokens)

    first = dispatcher.run(NOW)
    second = dispatcher.run(NOW + timedelta(seconds=10))

    assert (first.sent, first.skipped, first.failed) == (1, 0, 0)
    assert (second.sent, second.skipped, second.failed) == (0, 1, 0)
    assert len(tokens.calls) == 1
    key = "task|t1|2026-03-01T10:30:00.000Z|30"
    assert store.read_snapshot(token_claim_path("u1", key))["status"] == CLAIM_SENT
    assert tokens.calls[0][1].dedupe_key == key


def test_task_outside_window_is_evaluated_not_triggered() -> None:
    early = _dispatcher(_task_store()).run(NOW - timedelta(minutes=1))
    late = _dispatcher(_task_store()).run(NOW + timedelta(hours=2))

    assert (early.evaluated, early.triggered, early.sent) == (1, 0, 0)
    assert (late.evaluated, late.triggered, late.sent) == (1, 1, 1)

    capped = _dispatcher(_task_store(), late_cap=timedelta(minutes=30)).run(NOW + timedelta(hours=2))
    assert (capped.triggered, capped.sent) == (0, 0)


def test_completed_task_is_ignored() -> None:
    summary = _dispatcher(_task_store(completed=True)).run(NOW)

    assert (summary.evaluated, summary.sent) == (0, 0)


def test_recurring_task_skips_completed_occurrence() -> None:
    store = _task_store(
        dueDate="2026-02-20T10:30:00Z",
        recurrence="daily",
        completedOccurrences={"2026-03-01T10:30:00.000Z": True},
    )
    tokens = StubTokenTransport()
    dispatcher = _dispatcher(store, tokens=tokens)

    today = dispatcher.run(NOW)
    tomorrow = dispatcher.run(NOW + timedelta(days=1))

    assert today.sent == 0
    assert tomorrow.sent == 1
    assert tokens.calls[0][1].dedupe_key == "task|t1|2026-03-02T10:30:00.000Z|30"


def test_shared_event_reaches_every_user_with_devices() -> None:
    store = InMemoryDataStore(
        {
            "events": {"e1": {"name": "Exam", "date": "2026-03-01T10:30:00Z", "reminder": 30}},
            "users": {
                "u1": {"fcmTokens": {TOKEN_A: True}},
                "u2": {"pushSubscriptions": {"s1": _subscription("https://push.example/u2")}},
                "u3": {"displayName": "no devices"},
            },
        }
    )
    tokens = StubTokenTransport()
    subscriptions = StubSubscriptionTransport()

    summary = _dispatcher(store, tokens=tokens, subscriptions=subscriptions).run(NOW)

    assert (summary.triggered, summary.sent, summary.failed) == (1, 2, 0)
    assert tokens.calls[0][1].title == "Event Reminder ⏰"
    assert len(subscriptions.calls) == 1


def test_shared_subject_records_and_clears_no_device_status() -> None:
    store = InMemoryDataStore(
        {
            "users": {"owner": {"fcmTokens": {TOKEN_A: True}}, "member": {}},
            "sharedSubjects": {
                "s1": {
                    "owner": "owner",
                    "members": {"member": True},
                    "tasks": {"t1": {"title": "Lab report", "dueDate": "2026-03-01T10:30:00Z", "reminder": 30}},
                }
            },
        }
    )
    tokens = StubTokenTransport()
    dispatcher = _dispatcher(store, tokens=tokens)
    status_path = "sharedSubjects/s1/reminderStatus/t1/member"

    first = dispatcher.run(NOW)

    assert first.sent == 1
    status = store.read_snapshot(status_path)
    assert status["status"] == NO_DEVICE_STATUS
    assert status["dedupeKey"] == "shared-task|s1|t1|2026-03-01T10:30:00.000Z|30"

    store.write("users/member/fcmTokens", {TOKEN_B: True})
    second = dispatcher.run(NOW + timedelta(seconds=30))

    assert (second.sent, second.skipped) == (1, 1)
    assert store.read_snapshot(status_path) is None
    assert tokens.calls[-1][0] == [TOKEN_B]


def test_planner_block_uses_the_users_timezone() -> None:
    store = InMemoryDataStore(
        {
            "users": {
                "u1": {
                    "fcmTokens": {TOKEN_A: True},
                    "timeZone": "Asia/Jerusalem",
                    "plannerBlocks": {"items": [{"id": "b1", "title": "Study", "date": "2026-03-01", "start": "12:15", "reminder": 15}]},
                }
            }
        }
    )
    tokens = StubTokenTransport()

    summary = _dispatcher(store, tokens=tokens).run(NOW)

    assert summary.sent == 1
    payload = tokens.calls[0][1]
    assert payload.dedupe_key == "planner|b1|2026-03-01T10:15:00.000Z|15"
    assert payload.body == "Study • Sun 01 Mar 12:15"


def test_target_user_limits_delivery() -> None:
    task = {"title": "Essay", "dueDate": "2026-03-01T10:30:00Z", "reminder": 30}
    store = InMemoryDataStore(
        {
            "users": {
                "u1": {"fcmTokens": {TOKEN_A: True}, "tasks": {"t1": task}},
                "u2": {"fcmTokens": {TOKEN_B: True}, "tasks": {"t2": task}},
            }
        }
    )
    tokens = StubTokenTransport()

    summary = _dispatcher(store, tokens=tokens).run(NOW, target_user="u2")

    assert summary.sent == 1
    assert [call[0] for call in tokens.calls] == [[TOKEN_B]]


def test_malformed_records_are_skipped() -> None:
    store = InMemoryDataStore(
        {
            "events": {"broken": "not-an-event"},
            "users": {
                "u1": {
                    "fcmTokens": {TOKEN_A: True},
                    "tasks": {
                        "t0": 42,
                        "t1": {"title": "Essay", "dueDate": "2026-03-01T10:30:00Z", "reminder": "30"},
                        "t2": {"title": "Bad date", "dueDate": "someday", "reminder": 30},
                    },
                }
            },
        }
    )

    summary = _dispatcher(store).run(NOW)

    assert summary.sent == 1
    assert summary.failed == 0


@pytest.mark.parametrize("bad_due", ["0001-01-01T00:00:00+05:00", 1e22, "99999999999999999999999"])
def test_out_of_range_dates_skip_only_their_record(bad_due: Any) -> None:
    store = InMemoryDataStore(
        {
            "users": {
                "u1": {
                    "fcmTokens": {TOKEN_A: True},
                    "tasks": {
                        "t1": {"title": "Essay", "dueDate": "2026-03-01T10:30:00Z", "reminder": 30},
                        "t2": {"title": "Corrupt", "dueDate": bad_due, "reminder": 30},
                        "t3": {
                            "title": "Stretch",
                            "dueDate": "2026-02-20T10:30:00Z",
                            "reminder": 30,
                            "recurrence": "daily",
                            "completedOccurrences": {"99999999999999999999999": True},
                        },
                    },
                }
            }
        }
    )

    summary = _dispatcher(store).run(NOW)

    assert summary.sent == 2
    assert summary.failed == 0


def test_default_timezone_applies_to_naive_dates() -> None:
    store = _task_store(dueDate="2026-03-01T12:30:00")

    summary = _dispatcher(store, default_timezone=ZoneInfo("Asia/Jerusalem")).run(NOW)

    assert summary.sent == 1


class _UnavailableStore(InMemoryDataStore):
    def read_snapshot(self, path: str) -> Any:
        raise DataStoreError("database unreachable")


def test_data_store_outage_aborts_the_run() -> None:
    with pytest.raises(DataStoreError):
        _dispatcher(_UnavailableStore()).run(NOW)
