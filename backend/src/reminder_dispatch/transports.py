from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

import firebase_admin
import requests
from firebase_admin import messaging
from firebase_admin.exceptions import FirebaseError
from pywebpush import WebPushException, webpush

from .config import ConfigurationError, Settings
from .payloads import NotificationPayload, normalize_app_url

logger = logging.getLogger(__name__)


def short_token(token: str) -> str:
    return f"{token[:12]}…" if len(token) > 12 else token


class PushDeliveryError(Exception):
    """A push request failed; ``status_code`` is None for timeouts and network errors."""

    def __init__(self, status_code: int | None, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


@dataclass(frozen=True)
class TokenSendResult:
    token: str
    success: bool
    invalid_token: bool = False
    error_code: str | None = None
    message_id: str | None = None


@dataclass(frozen=True)
class MulticastResult:
    success_count: int
    failure_count: int
    responses: tuple[TokenSendResult, ...] = ()

    @property
    def invalid_tokens(self) -> list[str]:
        return [item.token for item in self.responses if item.invalid_token]


class TokenTransport(Protocol):
    def send_multicast(self, tokens: list[str], payload: NotificationPayload) -> MulticastResult: ...


class SubscriptionTransport(Protocol):
    def send_to_subscription(self, subscription: Mapping[str, Any], serialized_payload: str) -> None: ...


@dataclass
class StubTokenTransport:
    """Reports every token as delivered unless listed in ``invalid_tokens``."""

    invalid_tokens: frozenset[str] = frozenset()
    calls: list[tuple[list[str], NotificationPayload]] = field(default_factory=list)

    def send_multicast(self, tokens: list[str], payload: NotificationPayload) -> MulticastResult:
        self.calls.append((list(tokens), payload))
        responses = tuple(
            TokenSendResult(
                token=token,
                success=token not in self.invalid_tokens,
                invalid_token=token in self.invalid_tokens,
                error_code="registration-token-not-registered" if token in self.invalid_tokens else None,
                message_id=None if token in self.invalid_tokens else f"stub-{len(self.calls)}-{index}",
            )
            for index, token in enumerate(tokens)
        )
        success_count = sum(1 for item in responses if item.success)
        logger.info("stub multicast %r to %d tokens", payload.title, len(tokens))
        return MulticastResult(
            success_count=success_count,
            failure_count=len(responses) - success_count,
            responses=responses,
        )


@dataclass
class StubSubscriptionTransport:
    """Accepts every subscription unless its endpoint maps to a failure status."""

    failures: Mapping[str, int | None] = field(default_factory=dict)
    calls: list[tuple[dict[str, Any], str]] = field(default_factory=list)

    def send_to_subscription(self, subscription: Mapping[str, Any], serialized_payload: str) -> None:
        self.calls.append((dict(subscription), serialized_payload))
        endpoint = str(subscription.get("endpoint") or "")
        if endpoint in self.failures:
            status_code = self.failures[endpoint]
            raise PushDeliveryError(status_code, f"stub push failed with {status_code}")
        logger.info("stub web push to %s", endpoint[:60])


class FcmTokenTransport:
    """Primary channel: one multicast call per send via firebase-admin."""

    def __init__(self, *, app: firebase_admin.App, app_url: str) -> None:
        self._app = app
        self._app_url = app_url

    def send_multicast(self, tokens: list[str], payload: NotificationPayload) -> MulticastResult:
        message = self._build_message(tokens, payload)
        try:
            response = messaging.send_each_for_multicast(message, app=self._app)
        except FirebaseError as exc:
            http_response = getattr(exc, "http_response", None)
            status_code = getattr(http_response, "status_code", None)
            raise PushDeliveryError(status_code, f"multicast failed: {exc}") from exc

        results: list[TokenSendResult] = []
        for token, item in zip(tokens, response.responses):
            if item.success:
                results.append(TokenSendResult(token=token, success=True, message_id=item.message_id))
                continue
            error = item.exception
            results.append(
                TokenSendResult(
                    token=token,
                    success=False,
                    invalid_token=isinstance(error, messaging.UnregisteredError),
                    error_code=getattr(error, "code", None),
                )
            )
        return MulticastResult(
            success_count=response.success_count,
            failure_count=response.failure_count,
            responses=tuple(results),
        )

    def _build_message(self, tokens: list[str], payload: NotificationPayload) -> messaging.MulticastMessage:
        icon = f"{self._app_url}icon-192.png"
        return messaging.MulticastMessage(
            tokens=list(tokens),
            notification=messaging.Notification(title=payload.title, body=payload.body),
            data=payload.data_fields(),
            android=messaging.AndroidConfig(
                priority="high",
                notification=messaging.AndroidNotification(
                    channel_id="reminders",
                    priority="high",
                    default_vibrate_timings=True,
                ),
            ),
            webpush=messaging.WebpushConfig(
                headers={"Urgency": "high"},
                notification=messaging.WebpushNotification(
                    icon=icon,
                    badge=icon,
                    vibrate=[200, 100, 200],
                    require_interaction=True,
                    actions=[
                        messaging.WebpushNotificationAction(action.action, action.title)
                        for action in payload.actions
                    ],
                ),
            ),
        )


class WebPushSubscriptionTransport:
    """Fallback channel: one VAPID-signed request per subscription."""

    def __init__(
        self,
        *,
        vapid_private_key: str,
        vapid_subject: str,
        ttl_seconds: int = 86400,
        timeout_seconds: int = 10,
    ) -> None:
        if not vapid_private_key.strip():
            raise ValueError("vapid_private_key must not be empty")
        if not vapid_subject.strip():
            raise ValueError("vapid_subject must not be empty")
        self._vapid_private_key = vapid_private_key.strip()
        self._vapid_subject = vapid_subject.strip()
        self._ttl_seconds = ttl_seconds
        self._timeout_seconds = timeout_seconds

    def send_to_subscription(self, subscription: Mapping[str, Any], serialized_payload: str) -> None:
        try:
            webpush(
                subscription_info=dict(subscription),
                data=serialized_payload,
                vapid_private_key=self._vapid_private_key,
                # pywebpush fills in aud/exp on the dict it is given
                vapid_claims={"sub": self._vapid_subject},
                ttl=self._ttl_seconds,
                headers={"Urgency": "high"},
                timeout=self._timeout_seconds,
            )
        except WebPushException as exc:
            response = getattr(exc, "response", None)
            status_code = getattr(response, "status_code", None)
            raise PushDeliveryError(status_code, f"web push failed: {exc.message}") from exc
        except requests.RequestException as exc:
            raise PushDeliveryError(None, f"web push request error: {exc}") from exc


def create_transports(
    settings: Settings,
    *,
    firebase_app: firebase_admin.App | None = None,
) -> tuple[TokenTransport, SubscriptionTransport]:
    mode = settings.push_transport.strip().lower()
    if mode == "stub":
        return StubTokenTransport(), StubSubscriptionTransport()
    if mode == "live":
        if firebase_app is None:
            raise ConfigurationError("PUSH_TRANSPORT=live requires an initialised firebase app")
        return (
            FcmTokenTransport(app=firebase_app, app_url=normalize_app_url(settings.push_app_url)),
            WebPushSubscriptionTransport(
                vapid_private_key=settings.vapid_private_key,
                vapid_subject=settings.vapid_subject,
                ttl_seconds=settings.push_ttl_seconds,
                timeout_seconds=settings.push_timeout_seconds,
            ),
        )
    raise ConfigurationError(f"unsupported PUSH_TRANSPORT: {settings.push_transport}")
