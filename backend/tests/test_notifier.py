from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from reminder_dispatch.claims import (
    CLAIM_FAILED,
    CLAIM_SENT,
    CLAIM_TRANSIENT,
    DeliveryClaimStore,
    subscription_claim_path,
    token_claim_path,
)
from reminder_dispatch.notifier import MultiChannelNotifier, UserDevices, user_devices_from_snapshot
from reminder_dispatch.payloads import task_payload
from reminder_dispatch.retry import RetryPolicy
from reminder_dispatch.store import DataStoreError, InMemoryDataStore
from reminder_dispatch.transports import PushDeliveryError, StubSubscriptionTransport, StubTokenTransport

NOW = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
GOOD_TOKEN = "token-good-0123456789abcdef"
DEAD_TOKEN = "token-dead-0123456789abcdef"
DEDUPE = "task|t1|2026-03-01T10:30:00.000Z|30"


def _subscription(endpoint: str) -> dict[str, Any]:
    return {"endpoint": endpoint, "keys": {"p256dh": "p256dh-key", "auth": "auth-secret"}}


def _payload():
    return task_payload(task_id="t1", title="Essay", user_id="u1", reminder_minutes=30, app_url="https://example.test/")


def _notifier(
    store: InMemoryDataStore,
    *,
    tokens: StubTokenTransport | None = None,
    subscriptions: StubSubscriptionTransport | None = None,
    sleeps: list[float] | None = None,
) -> MultiChannelNotifier:
    sleep_log = sleeps if sleeps is not None else []
    return MultiChannelNotifier(
        store=store,
        claims=DeliveryClaimStore(store, staleness=timedelta(minutes=5), clock=lambda: NOW),
        token_transport=tokens or StubTokenTransport(),
        subscription_transport=subscriptions or StubSubscriptionTransport(),
        retry_policy=RetryPolicy(max_retries=3, base_delay_ms=500, cap_delay_ms=5000),
        sleep=sleep_log.append,
    )


class _BrokenMulticast:
    def send_multicast(self, tokens, payload):
        raise PushDeliveryError(503, "service unavailable")


class _DeleteFailsStore(InMemoryDataStore):
    def delete(self, path: str) -> None:
        raise DataStoreError("permission denied")


def test_snapshot_filters_short_tokens_and_bad_subscriptions() -> None:
    devices = user_devices_from_snapshot(
        "u1",
        {
            "fcmTokens": {GOOD_TOKEN: True, "short": True},
            "pushSubscriptions": {
                "s1": {"sub": _subscription("https://push.example/s1")},
                "s2": {"sub": {"endpoint": "https://push.example/s2"}},
            },
            "timeZone": "Asia/Jerusalem",
        },
    )

    assert devices.tokens == (GOOD_TOKEN,)
    assert [device.sub_key for device in devices.subscriptions] == ["s1"]
    assert devices.time_zone == "Asia/Jerusalem"
    assert user_devices_from_snapshot("u2", None).has_devices is False


def test_token_channel_removes_unregistered_tokens() -> None:
    store = InMemoryDataStore({"users": {"u1": {"fcmTokens": {GOOD_TOKEN: True, DEAD_TOKEN: True}}}})
    transport = StubTokenTransport(invalid_tokens=frozenset({DEAD_TOKEN}))
    user = UserDevices(user_id="u1", tokens=(GOOD_TOKEN, DEAD_TOKEN))

    result = _notifier(store, tokens=transport).send(user, _payload(), DEDUPE)

    assert (result.sent, result.failed, result.channel) == (1, 1, "token")
    assert store.read_snapshot("users/u1/fcmTokens") == {GOOD_TOKEN: True}
    claim = store.read_snapshot(token_claim_path("u1", DEDUPE))
    assert claim["status"] == CLAIM_SENT
    assert claim["successCount"] == 1
    [(tokens, payload)] = transport.calls
    assert tokens == [GOOD_TOKEN, DEAD_TOKEN]
    assert payload.dedupe_key == DEDUPE


def test_second_send_is_skipped_by_the_claim() -> None:
    store = InMemoryDataStore()
    transport = StubTokenTransport()
    notifier = _notifier(store, tokens=transport)
    user = UserDevices(user_id="u1", tokens=(GOOD_TOKEN,))

    notifier.send(user, _payload(), DEDUPE)
    again = notifier.send(user, _payload(), DEDUPE)

    assert again.skipped == 1
    assert again.sent == 0
    assert len(transport.calls) == 1


def test_all_tokens_invalid_fails_the_claim() -> None:
    store = InMemoryDataStore({"users": {"u1": {"fcmTokens": {DEAD_TOKEN: True}}}})
    transport = StubTokenTransport(invalid_tokens=frozenset({DEAD_TOKEN}))

    result = _notifier(store, tokens=transport).send(UserDevices(user_id="u1", tokens=(DEAD_TOKEN,)), _payload(), DEDUPE)

    assert result.failed == 1
    claim = store.read_snapshot(token_claim_path("u1", DEDUPE))
    assert claim["status"] == CLAIM_FAILED
    assert claim["statusCode"] == 410
    assert store.read_snapshot("users/u1/fcmTokens") is None


def test_multicast_error_leaves_claim_transient() -> None:
    store = InMemoryDataStore()
    notifier = MultiChannelNotifier(
        store=store,
        claims=DeliveryClaimStore(store, staleness=timedelta(minutes=5), clock=lambda: NOW),
        token_transport=_BrokenMulticast(),
        subscription_transport=StubSubscriptionTransport(),
    )

    result = notifier.send(UserDevices(user_id="u1", tokens=(GOOD_TOKEN, DEAD_TOKEN)), _payload(), DEDUPE)

    assert result.failed == 2
    assert store.read_snapshot(token_claim_path("u1", DEDUPE))["status"] == CLAIM_TRANSIENT


def test_subscriptions_are_the_fallback_channel() -> None:
    store = InMemoryDataStore()
    subscriptions = StubSubscriptionTransport()
    user = UserDevices(
        user_id="u1",
        subscriptions=user_devices_from_snapshot(
            "u1",
            {
                "pushSubscriptions": {
                    "s1": {"sub": _subscription("https://push.example/s1")},
                    "s2": {"sub": _subscription("https://push.example/s2")},
                }
            },
        ).subscriptions,
    )

    result = _notifier(store, subscriptions=subscriptions).send(user, _payload(), DEDUPE)

    assert (result.sent, result.failed, result.channel) == (2, 0, "subscription")
    assert len(subscriptions.calls) == 2
    assert '"dedupeKey": "task|t1|2026-03-01T10:30:00.000Z|30"' in subscriptions.calls[0][1]
    for sub_key in ("s1", "s2"):
        claim = store.read_snapshot(subscription_claim_path("u1", sub_key, DEDUPE))
        assert claim["status"] == CLAIM_SENT
        assert claim["attempts"] == 1


def test_tokens_take_priority_over_subscriptions() -> None:
    store = InMemoryDataStore()
    tokens = StubTokenTransport()
    subscriptions = StubSubscriptionTransport()
    user = user_devices_from_snapshot(
        "u1",
        {
            "fcmTokens": {GOOD_TOKEN: True},
            "pushSubscriptions": {"s1": {"sub": _subscription("https://push.example/s1")}},
        },
    )

    _notifier(store, tokens=tokens, subscriptions=subscriptions).send(user, _payload(), DEDUPE)

    assert len(tokens.calls) == 1
    assert subscriptions.calls == []


def test_gone_subscription_is_removed() -> None:
    endpoint = "https://push.example/gone"
    store = InMemoryDataStore({"users": {"u1": {"pushSubscriptions": {"s1": {"sub": _subscription(endpoint)}}}}})
    subscriptions = StubSubscriptionTransport(failures={endpoint: 410})
    sleeps: list[float] = []
    user = user_devices_from_snapshot("u1", store.read_snapshot("users/u1"))

    result = _notifier(store, subscriptions=subscriptions, sleeps=sleeps).send(user, _payload(), DEDUPE)

    assert result.failed == 1
    assert len(subscriptions.calls) == 1
    assert sleeps == []
    assert store.read_snapshot("users/u1/pushSubscriptions/s1") is None
    claim = store.read_snapshot(subscription_claim_path("u1", "s1", DEDUPE))
    assert claim["status"] == CLAIM_FAILED
    assert claim["statusCode"] == 410


def test_transient_subscription_failure_retries_then_stays_reclaimable() -> None:
    endpoint = "https://push.example/busy"
    store = InMemoryDataStore({"users": {"u1": {"pushSubscriptions": {"s1": {"sub": _subscription(endpoint)}}}}})
    subscriptions = StubSubscriptionTransport(failures={endpoint: 503})
    sleeps: list[float] = []
    user = user_devices_from_snapshot("u1", store.read_snapshot("users/u1"))
    notifier = _notifier(store, subscriptions=subscriptions, sleeps=sleeps)

    result = notifier.send(user, _payload(), DEDUPE)

    assert result.failed == 1
    assert len(subscriptions.calls) == 3
    assert sleeps == [0.5, 1.0]
    assert store.read_snapshot("users/u1/pushSubscriptions/s1") is not None
    claim = store.read_snapshot(subscription_claim_path("u1", "s1", DEDUPE))
    assert claim["status"] == CLAIM_TRANSIENT
    assert claim["attempts"] == 3

    notifier.send(user, _payload(), DEDUPE)
    assert len(subscriptions.calls) == 6


def test_user_without_devices_is_not_claimed() -> None:
    store = InMemoryDataStore()

    result = _notifier(store).send(UserDevices(user_id="u1"), _payload(), DEDUPE)

    assert (result.sent, result.failed, result.skipped) == (0, 0, 0)
    assert store.read_snapshot("users") is None


def test_cleanup_failure_is_logged_not_raised(caplog) -> None:
    store = _DeleteFailsStore()
    transport = StubTokenTransport(invalid_tokens=frozenset({DEAD_TOKEN}))

    with caplog.at_level(logging.WARNING, logger="reminder_dispatch.notifier"):
        result = _notifier(store, tokens=transport).send(
            UserDevices(user_id="u1", tokens=(GOOD_TOKEN, DEAD_TOKEN)), _payload(), DEDUPE
        )

    assert result.sent == 1
    assert "device cleanup failed" in caplog.text
