from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Mapping

from pydantic import ValidationError

from .claims import CLAIM_FAILED, DeliveryClaimStore, subscription_claim_path, token_claim_path
from .models import PushSubscriptionInfo
from .payloads import NotificationPayload
from .retry import RetryPolicy, send_with_retry
from .store import DataStore, DataStoreError, join_path
from .transports import PushDeliveryError, SubscriptionTransport, TokenTransport, short_token

logger = logging.getLogger(__name__)

MIN_TOKEN_LENGTH = 21
# reported to the claim store when every token in a multicast was unregistered
ALL_TOKENS_GONE_STATUS = 410

CHANNEL_TOKEN = "token"
CHANNEL_SUBSCRIPTION = "subscription"


@dataclass(frozen=True)
class SubscriptionDevice:
    sub_key: str
    subscription: dict[str, Any]


@dataclass(frozen=True)
class UserDevices:
    user_id: str
    tokens: tuple[str, ...] = ()
    subscriptions: tuple[SubscriptionDevice, ...] = ()
    time_zone: str | None = None

    @property
    def has_devices(self) -> bool:
        return bool(self.tokens or self.subscriptions)


def user_devices_from_snapshot(user_id: str, data: Any) -> UserDevices:
    if not isinstance(data, Mapping):
        return UserDevices(user_id=user_id)
    raw_tokens = data.get("fcmTokens")
    tokens = tuple(
        str(token)
        for token in (raw_tokens.keys() if isinstance(raw_tokens, Mapping) else ())
        if token and len(str(token)) >= MIN_TOKEN_LENGTH
    )
    subscriptions: list[SubscriptionDevice] = []
    raw_subscriptions = data.get("pushSubscriptions")
    if isinstance(raw_subscriptions, Mapping):
        for sub_key, entry in raw_subscriptions.items():
            raw_sub = entry.get("sub") if isinstance(entry, Mapping) else None
            try:
                info = PushSubscriptionInfo.model_validate(raw_sub)
            except ValidationError:
                continue
            subscriptions.append(SubscriptionDevice(sub_key=str(sub_key), subscription=info.model_dump()))
    time_zone = data.get("timeZone")
    return UserDevices(
        user_id=user_id,
        tokens=tokens,
        subscriptions=tuple(subscriptions),
        time_zone=str(time_zone) if isinstance(time_zone, str) and time_zone.strip() else None,
    )


@dataclass(frozen=True)
class SendResult:
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    channel: str | None = None

    @property
    def delivered(self) -> bool:
        return self.sent > 0


class MultiChannelNotifier:
    """Delivers one payload to one user's devices.

    Token devices win when present: one multicast call under a single per-user
    claim. Otherwise each subscription is claimed and sent on its own, with
    local retry for transient failures.
    """

    def __init__(
        self,
        *,
        store: DataStore,
        claims: DeliveryClaimStore,
        token_transport: TokenTransport,
        subscription_transport: SubscriptionTransport,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._claims = claims
        self._tokens = token_transport
        self._subscriptions = subscription_transport
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    def send(self, user: UserDevices, payload: NotificationPayload, dedupe_key: str) -> SendResult:
        payload = payload.with_dedupe_key(dedupe_key)
        if user.tokens:
            return self._send_to_tokens(user, payload, dedupe_key)
        if user.subscriptions:
            return self._send_to_subscriptions(user, payload, dedupe_key)
        return SendResult()

    def _send_to_tokens(self, user: UserDevices, payload: NotificationPayload, dedupe_key: str) -> SendResult:
        path = token_claim_path(user.user_id, dedupe_key)
        if not self._claims.claim(path).won:
            return SendResult(skipped=1, channel=CHANNEL_TOKEN)

        tokens = list(user.tokens)
        try:
            result = self._tokens.send_multicast(tokens, payload)
        except PushDeliveryError as exc:
            self._claims.mark_failed(path, exc.status_code, dedupeKey=dedupe_key, message=exc.message)
            logger.warning("multicast to user %s failed: %s", user.user_id, exc.message)
            return SendResult(failed=len(tokens), channel=CHANNEL_TOKEN)

        invalid_tokens = result.invalid_tokens
        for token in invalid_tokens:
            logger.info("removing unregistered token %s for user %s", short_token(token), user.user_id)
            self._remove_device(join_path("users", user.user_id, "fcmTokens", token))

        if result.success_count > 0:
            self._claims.mark_sent(path, dedupeKey=dedupe_key, successCount=result.success_count)
        else:
            status_code = ALL_TOKENS_GONE_STATUS if len(invalid_tokens) == len(tokens) else None
            self._claims.mark_failed(
                path,
                status_code,
                dedupeKey=dedupe_key,
                failureCount=result.failure_count,
            )
        return SendResult(sent=result.success_count, failed=result.failure_count, channel=CHANNEL_TOKEN)

    def _send_to_subscriptions(
        self,
        user: UserDevices,
        payload: NotificationPayload,
        dedupe_key: str,
    ) -> SendResult:
        body = payload.to_push_json()
        sent = failed = skipped = 0
        for device in user.subscriptions:
            path = subscription_claim_path(user.user_id, device.sub_key, dedupe_key)
            if not self._claims.claim(path).won:
                skipped += 1
                continue

            outcome = send_with_retry(
                partial(self._subscriptions.send_to_subscription, device.subscription, body),
                self._retry_policy,
                sleep=self._sleep,
            )
            if outcome.ok:
                self._claims.mark_sent(path, dedupeKey=dedupe_key, successCount=1, attempts=outcome.attempts)
                sent += 1
                continue

            failed += 1
            status = self._claims.mark_failed(
                path,
                outcome.status_code,
                dedupeKey=dedupe_key,
                message=outcome.error_message,
                attempts=outcome.attempts,
            )
            if status == CLAIM_FAILED:
                logger.info(
                    "removing gone subscription %s for user %s (status=%s)",
                    device.sub_key,
                    user.user_id,
                    outcome.status_code,
                )
                self._remove_device(join_path("users", user.user_id, "pushSubscriptions", device.sub_key))
            else:
                logger.warning(
                    "subscription %s for user %s left transient after %d attempts (status=%s)",
                    device.sub_key,
                    user.user_id,
                    outcome.attempts,
                    outcome.status_code,
                )
        return SendResult(sent=sent, failed=failed, skipped=skipped, channel=CHANNEL_SUBSCRIPTION)

    def _remove_device(self, path: str) -> None:
        try:
            self._store.delete(path)
        except DataStoreError as exc:
            logger.warning("device cleanup failed for %s: %s", path, exc)
