from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from .config import get_settings
from .models import CronResponse, DispatchRunResponse
from .runtime import DispatchRuntime, build_runtime

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["reminders"])
runtime: DispatchRuntime | None = None


def _active_runtime() -> DispatchRuntime:
    global runtime
    if runtime is None:
        runtime = build_runtime(_settings)
    return runtime


def reset_runtime_state_for_tests() -> None:
    global _settings, runtime
    _settings = get_settings()
    runtime = None


def _require_cron_key(request: Request, key: str | None) -> None:
    expected = _settings.cron_api_key.strip()
    if not expected:
        return
    provided = key or request.headers.get("x-api-key") or ""
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(401, "Unauthorized")


@router.api_route("/cron", methods=["GET", "POST"], response_model=CronResponse)
def run_cron(request: Request, key: str | None = None):
    _require_cron_key(request, key)
    try:
        _, summary = _active_runtime().service.run_once()
    except Exception:
        logger.exception("cron dispatch failed")
        return JSONResponse(status_code=500, content={"ok": False, "error": "reminder dispatch failed"})
    return CronResponse(
        ok=True,
        timestamp=datetime.now(timezone.utc),
        sent=summary.sent,
        skipped=summary.skipped,
        failed=summary.failed,
    )


@router.get("/cron/runs/latest", response_model=DispatchRunResponse)
def get_latest_run(request: Request, key: str | None = None):
    _require_cron_key(request, key)
    record = _active_runtime().repository.get_latest_run()
    if record is None:
        raise HTTPException(404, "no dispatch runs recorded")
    return DispatchRunResponse(
        run_id=record.run_id,
        started_at=record.started_at,
        finished_at=record.finished_at,
        status=record.status,
        evaluated_count=record.evaluated_count,
        triggered_count=record.triggered_count,
        sent_count=record.sent_count,
        skipped_count=record.skipped_count,
        failed_count=record.failed_count,
        error_message=record.error_message,
    )
