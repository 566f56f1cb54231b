from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

from .claims import DeliveryClaimStore
from .config import Settings
from .dispatcher import ReminderDispatcher, build_dispatcher
from .notifier import MultiChannelNotifier
from .retry import RetryPolicy
from .run_history import DispatchRunRepository, DispatchRunService, create_dispatch_run_repository
from .store import DataStore
from .store_backends import create_data_store, initialize_firebase_app
from .transports import SubscriptionTransport, TokenTransport, create_transports


@dataclass(frozen=True)
class DispatchRuntime:
    settings: Settings
    store: DataStore
    token_transport: TokenTransport
    subscription_transport: SubscriptionTransport
    notifier: MultiChannelNotifier
    dispatcher: ReminderDispatcher
    repository: DispatchRunRepository
    service: DispatchRunService


def build_runtime(
    settings: Settings,
    *,
    store: DataStore | None = None,
    token_transport: TokenTransport | None = None,
    subscription_transport: SubscriptionTransport | None = None,
    repository: DispatchRunRepository | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> DispatchRuntime:
    """Wire the dispatcher from settings; any piece can be injected instead."""
    if store is None:
        store = create_data_store(settings)
    if token_transport is None or subscription_transport is None:
        firebase_app = initialize_firebase_app(settings) if settings.push_transport == "live" else None
        default_token, default_subscription = create_transports(settings, firebase_app=firebase_app)
        token_transport = token_transport or default_token
        subscription_transport = subscription_transport or default_subscription
    if repository is None:
        repository = create_dispatch_run_repository(
            backend=settings.run_history_backend,
            database_url=settings.database_url,
        )

    claims = DeliveryClaimStore(store, staleness=timedelta(seconds=settings.claim_stale_seconds))
    notifier = MultiChannelNotifier(
        store=store,
        claims=claims,
        token_transport=token_transport,
        subscription_transport=subscription_transport,
        retry_policy=RetryPolicy(
            max_retries=settings.max_retries,
            base_delay_ms=settings.retry_base_ms,
            cap_delay_ms=settings.retry_cap_ms,
        ),
        sleep=sleep,
    )
    dispatcher = build_dispatcher(settings, store=store, notifier=notifier)
    return DispatchRuntime(
        settings=settings,
        store=store,
        token_transport=token_transport,
        subscription_transport=subscription_transport,
        notifier=notifier,
        dispatcher=dispatcher,
        repository=repository,
        service=DispatchRunService(repository=repository, dispatcher=dispatcher),
    )
