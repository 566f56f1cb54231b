from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, Integer, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .dispatcher import DispatchSummary, ReminderDispatcher

logger = logging.getLogger(__name__)

RUN_STATUS_RUNNING = "running"
RUN_STATUS_COMPLETED = "completed"
RUN_STATUS_FAILED = "failed"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _new_run_id() -> str:
    return f"drun_{secrets.token_hex(8)}"


@dataclass(frozen=True)
class DispatchRunRecord:
    run_id: str
    started_at: datetime
    finished_at: datetime | None
    status: str
    evaluated_count: int = 0
    triggered_count: int = 0
    sent_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    error_message: str | None = None


class DispatchRunRepository(Protocol):
    def reset(self) -> None: ...

    def start_run(self, *, started_at: datetime) -> str: ...

    def finish_run(
        self,
        run_id: str,
        *,
        status: str,
        finished_at: datetime,
        summary: DispatchSummary | None = None,
        error_message: str | None = None,
    ) -> None: ...

    def get_run(self, run_id: str) -> DispatchRunRecord | None: ...

    def get_latest_run(self) -> DispatchRunRecord | None: ...


class InMemoryDispatchRunRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._runs: dict[str, DispatchRunRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._runs.clear()

    def start_run(self, *, started_at: datetime) -> str:
        run_id = _new_run_id()
        with self._lock:
            self._runs[run_id] = DispatchRunRecord(
                run_id=run_id,
                started_at=_coerce_utc(started_at),
                finished_at=None,
                status=RUN_STATUS_RUNNING,
            )
        return run_id

    def finish_run(
        self,
        run_id: str,
        *,
        status: str,
        finished_at: datetime,
        summary: DispatchSummary | None = None,
        error_message: str | None = None,
    ) -> None:
        with self._lock:
            row = self._runs.get(run_id)
            if row is None:
                return
            counts = {}
            if summary is not None:
                counts = {
                    "evaluated_count": summary.evaluated,
                    "triggered_count": summary.triggered,
                    "sent_count": summary.sent,
                    "skipped_count": summary.skipped,
                    "failed_count": summary.failed,
                }
            self._runs[run_id] = replace(
                row,
                status=status,
                finished_at=_coerce_utc(finished_at),
                error_message=error_message,
                **counts,
            )

    def get_run(self, run_id: str) -> DispatchRunRecord | None:
        with self._lock:
            return self._runs.get(run_id)

    def get_latest_run(self) -> DispatchRunRecord | None:
        with self._lock:
            if not self._runs:
                return None
            return max(self._runs.values(), key=lambda value: value.started_at)


class DispatchRunsBase(DeclarativeBase):
    pass


class _DispatchRunRow(DispatchRunsBase):
    __tablename__ = "dispatch_runs"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    evaluated_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    triggered_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


def _record_from_row(row: _DispatchRunRow) -> DispatchRunRecord:
    return DispatchRunRecord(
        run_id=row.run_id,
        started_at=_coerce_utc(row.started_at),
        finished_at=_coerce_utc(row.finished_at) if row.finished_at is not None else None,
        status=row.status,
        evaluated_count=row.evaluated_count,
        triggered_count=row.triggered_count,
        sent_count=row.sent_count,
        skipped_count=row.skipped_count,
        failed_count=row.failed_count,
        error_message=row.error_message,
    )


class SqlAlchemyDispatchRunRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for RUN_HISTORY_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            DispatchRunsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_DispatchRunRow).delete()

    def start_run(self, *, started_at: datetime) -> str:
        run_id = _new_run_id()
        with self._session() as session:
            with session.begin():
                session.add(
                    _DispatchRunRow(
                        run_id=run_id,
                        started_at=_coerce_utc(started_at),
                        finished_at=None,
                        status=RUN_STATUS_RUNNING,
                        evaluated_count=0,
                        triggered_count=0,
                        sent_count=0,
                        skipped_count=0,
                        failed_count=0,
                    )
                )
        return run_id

    def finish_run(
        self,
        run_id: str,
        *,
        status: str,
        finished_at: datetime,
        summary: DispatchSummary | None = None,
        error_message: str | None = None,
    ) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_DispatchRunRow, run_id)
                if row is None:
                    return
                row.status = status
                row.finished_at = _coerce_utc(finished_at)
                row.error_message = error_message
                if summary is not None:
                    row.evaluated_count = summary.evaluated
                    row.triggered_count = summary.triggered
                    row.sent_count = summary.sent
                    row.skipped_count = summary.skipped
                    row.failed_count = summary.failed

    def get_run(self, run_id: str) -> DispatchRunRecord | None:
        with self._session() as session:
            row = session.get(_DispatchRunRow, run_id)
            if row is None:
                return None
            return _record_from_row(row)

    def get_latest_run(self) -> DispatchRunRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_DispatchRunRow).order_by(_DispatchRunRow.started_at.desc()).limit(1)
            ).scalar_one_or_none()
            if row is None:
                return None
            return _record_from_row(row)


def create_dispatch_run_repository(*, backend: str, database_url: str) -> DispatchRunRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyDispatchRunRepository(database_url)
    return InMemoryDispatchRunRepository()


class DispatchRunService:
    """Runs the dispatcher and records every pass in the run history."""

    def __init__(self, *, repository: DispatchRunRepository, dispatcher: ReminderDispatcher) -> None:
        self._repository = repository
        self._dispatcher = dispatcher

    def run_once(
        self,
        *,
        now: datetime | None = None,
        target_user: str | None = None,
    ) -> tuple[str, DispatchSummary]:
        started_at = _coerce_utc(now) if now is not None else _now_utc()
        run_id = self._repository.start_run(started_at=started_at)
        try:
            summary = self._dispatcher.run(now, target_user=target_user)
        except Exception as exc:
            self._repository.finish_run(
                run_id,
                status=RUN_STATUS_FAILED,
                finished_at=_now_utc(),
                error_message=f"{type(exc).__name__}: {exc}"[:1000],
            )
            logger.exception("dispatch run %s failed", run_id)
            raise
        self._repository.finish_run(
            run_id,
            status=RUN_STATUS_COMPLETED,
            finished_at=summary.finished_at,
            summary=summary,
        )
        return run_id, summary
