"""
Session reporter: per-item log, periodic progress snapshots, final summary.
"""
from __future__ import annotations

import json
import secrets
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from shared.models.domain import utcnow
from shared.models.enums import ItemStatus, ResolutionOutcome, RunMode
from shared.utils.logging import bind_session, get_logger, unbind_session
from shared.utils.metrics import SESSION_ITEMS

from reconciler.errors import PersistenceFailure, ReconcilerError

logger = get_logger(__name__)


def new_session_id(now: datetime) -> str:
    return f"reconcile-{now.strftime('%Y%m%dT%H%M%S')}-{secrets.token_hex(3)}"


class SessionItem(BaseModel):
    item_id: int
    status: ItemStatus
    results_added: int = 0
    detail: Optional[str] = None
    recorded_at: datetime


class SessionError(BaseModel):
    item_id: Optional[int] = None
    type: str
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime


class Session(BaseModel):
    session_id: str
    mode: RunMode
    started_at: datetime
    ended_at: Optional[datetime] = None
    total_items: int = 0
    processed: int = 0
    completed: int = 0
    incomplete: int = 0
    skipped: int = 0
    unresolved: int = 0
    failed: int = 0
    results_added: int = 0
    # per-result resolver outcomes, including backfill inside meets mode
    results_filled: int = 0
    results_unresolved: int = 0
    results_failed: int = 0
    aborted: bool = False
    items: list[SessionItem] = Field(default_factory=list)
    errors: list[SessionError] = Field(default_factory=list)


class SessionReporter:
    def __init__(
        self,
        mode: RunMode,
        report_interval: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._clock = clock
        self.report_interval = max(1, report_interval)
        now = clock()
        self.session = Session(session_id=new_session_id(now), mode=mode, started_at=now)

    def start(self, total_items: int) -> None:
        self.session.total_items = total_items
        bind_session(self.session.session_id, self.session.mode.value)
        logger.info(
            "session_started",
            session_id=self.session.session_id,
            mode=self.session.mode.value,
            total_items=total_items,
        )

    def record(
        self,
        item_id: int,
        status: ItemStatus,
        results_added: int = 0,
        detail: Optional[str] = None,
    ) -> None:
        s = self.session
        s.items.append(
            SessionItem(
                item_id=item_id,
                status=status,
                results_added=results_added,
                detail=detail,
                recorded_at=self._clock(),
            )
        )
        s.processed += 1
        s.results_added += results_added
        if status == ItemStatus.COMPLETED:
            s.completed += 1
        elif status == ItemStatus.INCOMPLETE:
            s.incomplete += 1
        elif status == ItemStatus.SKIPPED:
            s.skipped += 1
        elif status == ItemStatus.UNRESOLVED:
            s.unresolved += 1
        else:
            s.failed += 1
        SESSION_ITEMS.labels(mode=s.mode.value, status=status.value).inc()
        if s.processed % self.report_interval == 0:
            self.report_progress()

    def record_resolution(self, outcome: Optional[ResolutionOutcome]) -> None:
        """Count one resolver attempt. None means the attempt raised."""
        s = self.session
        if outcome is None:
            s.results_failed += 1
        elif outcome == ResolutionOutcome.FILLED:
            s.results_filled += 1
        elif outcome in (ResolutionOutcome.UNRESOLVED, ResolutionOutcome.AMBIGUOUS):
            s.results_unresolved += 1

    def record_error(self, item_id: Optional[int], exc: BaseException, **context: Any) -> None:
        ctx = dict(exc.context) if isinstance(exc, ReconcilerError) else {}
        ctx.update(context)
        self.session.errors.append(
            SessionError(
                item_id=item_id,
                type=type(exc).__name__,
                message=str(exc),
                context={k: str(v) for k, v in ctx.items()},
                recorded_at=self._clock(),
            )
        )

    def progress(self) -> dict[str, Any]:
        s = self.session
        elapsed = max((self._clock() - s.started_at).total_seconds(), 0.0)
        rate = (s.processed / elapsed * 60.0) if elapsed > 0 else 0.0
        remaining = max(s.total_items - s.processed, 0)
        return {
            "session_id": s.session_id,
            "processed": s.processed,
            "total": s.total_items,
            "percent": round(100.0 * s.processed / s.total_items, 1) if s.total_items else 0.0,
            "completed": s.completed,
            "skipped": s.skipped,
            "unresolved": s.unresolved,
            "failed": s.failed,
            "items_per_minute": round(rate, 2),
            "eta_s": round(remaining / rate * 60.0) if rate > 0 else None,
        }

    def report_progress(self) -> dict[str, Any]:
        snapshot = self.progress()
        logger.info("session_progress", **snapshot)
        return snapshot

    def finish(self, aborted: bool = False) -> dict[str, Any]:
        s = self.session
        s.ended_at = self._clock()
        s.aborted = aborted
        summary = self.summary()
        logger.info("session_finished", **{k: v for k, v in summary.items() if k != "errors"})
        unbind_session()
        return summary

    def summary(self) -> dict[str, Any]:
        s = self.session
        end = s.ended_at or self._clock()
        duration = max((end - s.started_at).total_seconds(), 0.0)
        attempted = s.processed - s.skipped
        return {
            "session_id": s.session_id,
            "mode": s.mode.value,
            "started_at": s.started_at.isoformat(),
            "ended_at": s.ended_at.isoformat() if s.ended_at else None,
            "duration_s": round(duration, 2),
            "aborted": s.aborted,
            "total_items": s.total_items,
            "processed": s.processed,
            "completed": s.completed,
            "incomplete": s.incomplete,
            "skipped": s.skipped,
            "unresolved": s.unresolved,
            "failed": s.failed,
            "results_added": s.results_added,
            "results_filled": s.results_filled,
            "results_unresolved": s.results_unresolved,
            "results_failed": s.results_failed,
            "success_rate": round(100.0 * s.completed / attempted, 1) if attempted else 0.0,
            "items_per_minute": round(s.processed / duration * 60.0, 2) if duration > 0 else 0.0,
            "avg_results_per_completed": round(s.results_added / s.completed, 2) if s.completed else 0.0,
            "errors": [e.model_dump(mode="json") for e in s.errors],
        }

    def export(self, directory: Path) -> Path:
        """Write the summary plus the per-item log as JSON."""
        directory = Path(directory)
        path = directory / f"{self.session.session_id}.json"
        payload = {**self.summary(), "items": [i.model_dump(mode="json") for i in self.session.items]}
        try:
            directory.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
        except OSError as exc:
            raise PersistenceFailure(f"session export failed: {exc}", path=str(path)) from exc
        logger.info("session_exported", path=str(path))
        return path
