from __future__ import annotations

import argparse
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Sequence

from .claims import epoch_ms
from .config import ConfigurationError, Settings, get_settings, runtime_config_issues
from .dispatcher import as_mapping
from .notifier import user_devices_from_snapshot
from .payloads import connectivity_check_payload
from .runtime import DispatchRuntime, build_runtime
from .store import DataStoreError

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="reminder-dispatch",
        description="Scan reminder sources and push due notifications.",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO).")
    parser.add_argument(
        "--target-user",
        default=None,
        help="Only consider this user id (overrides PUSH_TARGET_USER).",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    run_parser = subcommands.add_parser("run", help="Run one dispatch pass, or loop for a while.")
    run_parser.add_argument(
        "--loop-seconds",
        type=int,
        default=0,
        help="Keep running passes for this many seconds (default: single pass).",
    )
    run_parser.add_argument(
        "--interval-seconds",
        type=int,
        default=30,
        help="Pause between passes when looping (default: 30).",
    )

    subcommands.add_parser("send-test", help="Push a test notification to every registered device.")
    return parser.parse_args(argv)


def _run_loop(runtime: DispatchRuntime, *, loop_seconds: int, interval_seconds: int, target_user: str | None) -> int:
    if loop_seconds <= 0:
        _, summary = runtime.service.run_once(target_user=target_user)
        print(f"Result: Sent {summary.sent}, Skipped {summary.skipped}, Failed {summary.failed}")
        return 0

    deadline = time.monotonic() + loop_seconds
    logger.info("looping for %d seconds every %d seconds", loop_seconds, interval_seconds)
    while True:
        try:
            _, summary = runtime.service.run_once(target_user=target_user)
            print(f"Result: Sent {summary.sent}, Skipped {summary.skipped}, Failed {summary.failed}")
        except DataStoreError as exc:
            logger.error("dispatch pass failed, continuing: %s", exc)
        if time.monotonic() + interval_seconds >= deadline:
            return 0
        time.sleep(interval_seconds)


def _send_test(runtime: DispatchRuntime, *, target_user: str | None) -> int:
    now = datetime.now(timezone.utc)
    payload = connectivity_check_payload(app_url=runtime.settings.push_app_url, now=now)
    users = as_mapping(runtime.store.read_snapshot("users"))
    sent = failed = 0
    for user_id, data in users.items():
        if target_user and str(user_id) != target_user:
            continue
        devices = user_devices_from_snapshot(str(user_id), data)
        if not devices.has_devices:
            continue
        result = runtime.notifier.send(devices, payload, f"test|{user_id}|{epoch_ms(now)}")
        sent += result.sent
        failed += result.failed
    print(f"Test push: Sent {sent}, Failed {failed}")
    return 0 if failed == 0 else 1


def main(argv: Sequence[str] | None = None, *, runtime: DispatchRuntime | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if runtime is None:
        settings: Settings = get_settings()
        issues = runtime_config_issues(settings)
        if issues:
            for issue in issues:
                logger.error("configuration error: %s", issue)
            return 2
        if args.target_user:
            settings = replace(settings, push_target_user=args.target_user)
        try:
            runtime = build_runtime(settings)
        except ConfigurationError as exc:
            logger.error("configuration error: %s", exc)
            return 2

    target_user = args.target_user or runtime.settings.push_target_user or None
    if args.command == "send-test":
        return _send_test(runtime, target_user=target_user)
    return _run_loop(
        runtime,
        loop_seconds=args.loop_seconds,
        interval_seconds=max(1, args.interval_seconds),
        target_user=target_user,
    )


if __name__ == "__main__":
    raise SystemExit(main())
