"""
Completion ledger: durable memory of completeness verdicts.

State machine per meet:
  unknown -> complete | incomplete | failed
  complete -> incomplete only after a detected local count change

A meet is promoted to complete only from a matching analyzer verdict.
A missing or unreadable store means an empty ledger: nothing is skipped.
"""
from __future__ import annotations

import asyncio
import json
import os
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from shared.models.domain import CompletenessVerdict, LedgerEntry, utcnow
from shared.models.enums import VerdictStatus
from shared.models.orm import MeetCompletionORM
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger
from shared.utils.metrics import LEDGER_DEMOTIONS

from reconciler.errors import PersistenceFailure
from reconciler.store import ResultStore

logger = get_logger(__name__)


# ── Backends ────────────────────────────────────────────────────────────
class LedgerStore(ABC):
    """Whole-entry upserts under a single writer."""

    @abstractmethod
    async def load_all(self) -> dict[int, LedgerEntry]:
        pass

    @abstractmethod
    async def get(self, meet_id: int) -> Optional[LedgerEntry]:
        pass

    @abstractmethod
    async def upsert(self, entry: LedgerEntry) -> None:
        pass

    @abstractmethod
    async def delete(self, meet_id: Optional[int] = None) -> None:
        """Delete one entry, or all when meet_id is None."""


class JsonLedgerStore(LedgerStore):
    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._entries: Optional[dict[int, LedgerEntry]] = None

    def _read(self) -> dict[int, LedgerEntry]:
        if not self.path.exists():
            logger.info("ledger_file_missing", path=str(self.path))
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            items = raw.get("meets", {}) if isinstance(raw, dict) else {}
            return {int(k): LedgerEntry.model_validate(v) for k, v in items.items()}
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            # pydantic's ValidationError is a ValueError
            logger.warning("ledger_file_corrupt", path=str(self.path), error=str(exc))
            return {}

    def _write(self, entries: dict[int, LedgerEntry]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "updated_at": utcnow().isoformat(),
            "meets": {str(k): e.to_json_dict() for k, e in sorted(entries.items())},
        }
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    async def _ensure_loaded(self) -> dict[int, LedgerEntry]:
        if self._entries is None:
            self._entries = await asyncio.to_thread(self._read)
        return self._entries

    async def _flush(self) -> None:
        try:
            await asyncio.to_thread(self._write, dict(self._entries or {}))
        except OSError as exc:
            raise PersistenceFailure(f"ledger write failed: {exc}", path=str(self.path)) from exc

    async def load_all(self) -> dict[int, LedgerEntry]:
        return dict(await self._ensure_loaded())

    async def get(self, meet_id: int) -> Optional[LedgerEntry]:
        return (await self._ensure_loaded()).get(meet_id)

    async def upsert(self, entry: LedgerEntry) -> None:
        entries = await self._ensure_loaded()
        entries[entry.meet_id] = entry
        await self._flush()

    async def delete(self, meet_id: Optional[int] = None) -> None:
        entries = await self._ensure_loaded()
        if meet_id is None:
            entries.clear()
        else:
            entries.pop(meet_id, None)
        await self._flush()


class SqlLedgerStore(LedgerStore):
    """Backed by the meet_completion_status table."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def load_all(self) -> dict[int, LedgerEntry]:
        try:
            async with self._db.read_session() as session:
                rows = (await session.scalars(select(MeetCompletionORM))).all()
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"ledger load failed: {exc}") from exc
        return {r.meet_id: LedgerEntry.model_validate(r) for r in rows}

    async def get(self, meet_id: int) -> Optional[LedgerEntry]:
        try:
            async with self._db.read_session() as session:
                row = await session.get(MeetCompletionORM, meet_id)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"ledger read failed: {exc}", meet_id=meet_id) from exc
        return LedgerEntry.model_validate(row) if row else None

    async def upsert(self, entry: LedgerEntry) -> None:
        values = entry.model_dump()
        values["status"] = entry.status.value
        try:
            async with self._db.write_session() as session:
                await session.merge(MeetCompletionORM(**values))
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"ledger upsert failed: {exc}", meet_id=entry.meet_id) from exc

    async def delete(self, meet_id: Optional[int] = None) -> None:
        stmt = delete(MeetCompletionORM)
        if meet_id is not None:
            stmt = stmt.where(MeetCompletionORM.meet_id == meet_id)
        try:
            async with self._db.write_session() as session:
                await session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"ledger delete failed: {exc}", meet_id=meet_id) from exc


# ── Ledger ──────────────────────────────────────────────────────────────
class CompletionLedger:
    """
    Answers "skip this meet?" cheaply.

    The skip cache is per instance and therefore per run. A complete entry is
    revalidated by re-reading only the local count; the stored remote count
    is trusted until a full recheck.
    """

    def __init__(
        self,
        store: LedgerStore,
        results: ResultStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._results = results
        self._clock = clock
        self._cache: dict[int, bool] = {}

    async def get(self, meet_id: int) -> LedgerEntry:
        """The stored entry, or an unknown one when absent or unreadable."""
        try:
            entry = await self._store.get(meet_id)
        except PersistenceFailure as exc:
            logger.warning("ledger_read_failed", meet_id=meet_id, error=str(exc))
            entry = None
        return entry or LedgerEntry(meet_id=meet_id)

    async def should_skip(self, meet_id: int, force_recheck: bool = False, verify_counts: bool = True) -> bool:
        if not force_recheck and meet_id in self._cache:
            return self._cache[meet_id]

        entry = await self.get(meet_id)
        if entry.status != VerdictStatus.COMPLETE:
            self._cache[meet_id] = False
            return False

        if verify_counts and entry.local_count is not None:
            try:
                current = await self._results.count_local_results(meet_id)
            except PersistenceFailure as exc:
                logger.warning("ledger_verify_failed", meet_id=meet_id, error=str(exc))
                return False
            if current != entry.local_count:
                await self._demote(entry, current)
                return False

        self._cache[meet_id] = True
        return True

    async def batch_should_skip(
        self, meet_ids: Iterable[int], force_recheck: bool = False, verify_counts: bool = True
    ) -> dict[int, bool]:
        return {
            meet_id: await self.should_skip(meet_id, force_recheck=force_recheck, verify_counts=verify_counts)
            for meet_id in meet_ids
        }

    async def record(self, verdict: CompletenessVerdict) -> LedgerEntry:
        if verdict.status == VerdictStatus.COMPLETE:
            return await self.mark_complete(verdict)
        if verdict.status == VerdictStatus.FAILED:
            return await self.mark_failed(verdict)
        return await self.mark_incomplete(verdict)

    async def mark_complete(self, verdict: CompletenessVerdict) -> LedgerEntry:
        if not verdict.is_complete or verdict.remote_count != verdict.local_count:
            raise ValueError(f"meet {verdict.meet_id}: verdict is not complete, refusing to promote")
        previous = await self.get(verdict.meet_id)
        completed_at = previous.completed_at if previous.status == VerdictStatus.COMPLETE else None
        entry = self._entry_from(verdict, VerdictStatus.COMPLETE, completed_at=completed_at or self._clock())
        return await self._upsert(entry, previous.status, cached=True)

    async def mark_incomplete(self, verdict: CompletenessVerdict, reason: Optional[str] = None) -> LedgerEntry:
        previous = await self.get(verdict.meet_id)
        entry = self._entry_from(verdict, VerdictStatus.INCOMPLETE, reason=reason)
        return await self._upsert(entry, previous.status, cached=False)

    async def mark_failed(self, verdict: CompletenessVerdict) -> LedgerEntry:
        previous = await self.get(verdict.meet_id)
        entry = self._entry_from(verdict, VerdictStatus.FAILED, reason="; ".join(verdict.error_log) or None)
        return await self._upsert(entry, previous.status, cached=False)

    async def stats(self) -> dict[str, int]:
        try:
            entries = await self._store.load_all()
        except PersistenceFailure as exc:
            logger.warning("ledger_read_failed", error=str(exc))
            entries = {}
        counts = Counter(e.status.value for e in entries.values())
        out = {s.value: counts.get(s.value, 0) for s in VerdictStatus}
        out["total"] = len(entries)
        return out

    async def clear(self, meet_id: Optional[int] = None) -> None:
        await self._store.delete(meet_id)
        self.clear_cache(meet_id)
        logger.info("ledger_cleared", meet_id=meet_id)

    def clear_cache(self, meet_id: Optional[int] = None) -> None:
        if meet_id is None:
            self._cache.clear()
        else:
            self._cache.pop(meet_id, None)

    # ── Internals ────────────────────────────────────────────────────────

    def _entry_from(
        self,
        verdict: CompletenessVerdict,
        status: VerdictStatus,
        completed_at: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> LedgerEntry:
        return LedgerEntry(
            meet_id=verdict.meet_id,
            remote_id=verdict.remote_id,
            status=status,
            is_complete=status == VerdictStatus.COMPLETE,
            remote_count=verdict.remote_count,
            local_count=verdict.local_count,
            last_checked_at=verdict.last_checked_at,
            completed_at=completed_at,
            reason=reason,
            error_log=list(verdict.error_log),
        )

    async def _upsert(self, entry: LedgerEntry, previous: VerdictStatus, cached: bool) -> LedgerEntry:
        await self._store.upsert(entry)
        self._cache[entry.meet_id] = cached
        if previous != entry.status:
            logger.info(
                "ledger_transition",
                meet_id=entry.meet_id,
                previous=previous.value,
                current=entry.status.value,
            )
        return entry

    async def _demote(self, entry: LedgerEntry, current_local: int) -> None:
        demoted = entry.model_copy(
            update={
                "status": VerdictStatus.INCOMPLETE,
                "is_complete": False,
                "local_count": current_local,
                "last_checked_at": self._clock(),
                "reason": f"local count changed from {entry.local_count} to {current_local}",
            }
        )
        LEDGER_DEMOTIONS.inc()
        logger.info(
            "ledger_meet_demoted",
            meet_id=entry.meet_id,
            previous=entry.local_count,
            current=current_local,
            remote_count=entry.remote_count,
        )
        try:
            await self._store.upsert(demoted)
        except PersistenceFailure as exc:
            logger.warning("ledger_demote_write_failed", meet_id=entry.meet_id, error=str(exc))
        self.clear_cache(entry.meet_id)
