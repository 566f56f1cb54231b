from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from .store import DataStore, join_path

logger = logging.getLogger(__name__)

CLAIM_SENDING = "sending"
CLAIM_SENT = "sent"
CLAIM_FAILED = "failed"
CLAIM_TRANSIENT = "transient"

GONE_STATUS_CODES = frozenset({404, 410})
DEFAULT_STALENESS = timedelta(minutes=5)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def hash_key(value: str) -> str:
    digest = hashlib.sha256(str(value).encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def token_claim_path(user_id: str, dedupe_key: str) -> str:
    return join_path("users", user_id, "fcmSent", hash_key(dedupe_key))


def subscription_claim_path(user_id: str, sub_key: str, dedupe_key: str) -> str:
    return join_path("users", user_id, "pushSent", sub_key, hash_key(dedupe_key))


def is_permanent_failure(status_code: int | None) -> bool:
    return status_code in GONE_STATUS_CODES


@dataclass(frozen=True)
class ClaimResult:
    won: bool
    path: str


class DeliveryClaimStore:
    """At-most-one in-flight delivery per claim path.

    ``sent`` is terminal. A ``sending`` record younger than ``staleness`` belongs
    to a live worker; older ones are treated as abandoned. ``failed`` and
    ``transient`` records can be reclaimed by a later run.
    """

    def __init__(
        self,
        store: DataStore,
        *,
        staleness: timedelta = DEFAULT_STALENESS,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._store = store
        self._staleness_ms = int(staleness.total_seconds() * 1000)
        self._clock = clock

    def claim(self, path: str) -> ClaimResult:
        now_ms = epoch_ms(self._clock())

        def _update(current: Any) -> dict[str, Any] | None:
            if isinstance(current, dict):
                status = current.get("status")
                if status == CLAIM_SENT:
                    return None
                if status == CLAIM_SENDING:
                    try:
                        ts = int(current.get("ts") or 0)
                    except (TypeError, ValueError):
                        ts = 0
                    if ts and (now_ms - ts) < self._staleness_ms:
                        return None
            return {"status": CLAIM_SENDING, "ts": now_ms}

        won = self._store.atomic_update(path, _update)
        return ClaimResult(won=won, path=path)

    def mark_sent(self, path: str, **metadata: Any) -> None:
        record = {"status": CLAIM_SENT, "ts": epoch_ms(self._clock())}
        record.update({key: value for key, value in metadata.items() if value is not None})
        self._store.write(path, record)

    def mark_failed(self, path: str, status_code: int | None, **metadata: Any) -> str:
        status = CLAIM_FAILED if is_permanent_failure(status_code) else CLAIM_TRANSIENT
        record: dict[str, Any] = {"status": status, "ts": epoch_ms(self._clock())}
        if status_code is not None:
            record["statusCode"] = status_code
        record.update({key: value for key, value in metadata.items() if value is not None})
        self._store.write(path, record)
        logger.debug("claim %s marked %s (status_code=%s)", path, status, status_code)
        return status
