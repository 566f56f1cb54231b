from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from .transports import PushDeliveryError

logger = logging.getLogger(__name__)

RATE_LIMITED_STATUS = 429


def is_transient_status(status_code: int | None) -> bool:
    if status_code is None:
        return True
    return status_code == RATE_LIMITED_STATUS or 500 <= status_code <= 599


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_ms: int = 500
    cap_delay_ms: int = 5000

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.base_delay_ms < 0 or self.cap_delay_ms < 0:
            raise ValueError("retry delays must be >= 0")

    def delay_ms(self, attempt: int) -> int:
        return min(self.base_delay_ms * (2 ** (attempt - 1)), self.cap_delay_ms)


@dataclass(frozen=True)
class RetryOutcome:
    ok: bool
    attempts: int
    status_code: int | None = None
    error_message: str | None = None
    delays_ms: tuple[int, ...] = ()

    @property
    def transient(self) -> bool:
        return not self.ok and is_transient_status(self.status_code)


def send_with_retry(
    send: Callable[[], None],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> RetryOutcome:
    """Run ``send`` until it succeeds, fails permanently or runs out of attempts.

    Only :class:`PushDeliveryError` is handled; anything else is a bug and
    propagates to the caller.
    """
    delays: list[int] = []
    attempt = 0
    while True:
        attempt += 1
        try:
            send()
        except PushDeliveryError as exc:
            if not is_transient_status(exc.status_code) or attempt >= policy.max_retries:
                return RetryOutcome(
                    ok=False,
                    attempts=attempt,
                    status_code=exc.status_code,
                    error_message=exc.message,
                    delays_ms=tuple(delays),
                )
            delay = policy.delay_ms(attempt)
            delays.append(delay)
            logger.info(
                "transient push failure (status=%s) on attempt %d/%d, retrying in %dms",
                exc.status_code,
                attempt,
                policy.max_retries,
                delay,
            )
            sleep(delay / 1000)
            continue
        return RetryOutcome(ok=True, attempts=attempt, delays_ms=tuple(delays))
