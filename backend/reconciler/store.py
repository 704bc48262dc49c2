"""
Persistent store of meets, competitors and results.
Read paths return domain models; the only write is a partial result update.
The caller decides which fields may be written.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from shared.models.domain import BACKFILL_FIELDS, CompetitorRecord, MeetRecord, ResultRecord
from shared.models.enums import Gender
from shared.models.orm import CompetitorORM, MeetORM, ResultORM
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger

from reconciler.errors import PersistenceFailure, ValidationError
from reconciler.filters import MeetFilter, ResultFilter

logger = get_logger(__name__)

UPDATABLE_FIELDS = frozenset(BACKFILL_FIELDS) | {"competitor_id", "resolved_tier"}


class ResultStore:
    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def read_meet(self, meet_id: int) -> Optional[MeetRecord]:
        try:
            async with self._db.read_session() as session:
                row = await session.get(MeetORM, meet_id)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"read_meet failed: {exc}", meet_id=meet_id) from exc
        return MeetRecord.model_validate(row) if row else None

    async def count_local_results(self, meet_id: int) -> int:
        try:
            async with self._db.read_session() as session:
                count = await session.scalar(
                    select(func.count()).select_from(ResultORM).where(ResultORM.meet_id == meet_id)
                )
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"count_local_results failed: {exc}", meet_id=meet_id) from exc
        return int(count or 0)

    async def list_candidate_meets(self, flt: MeetFilter) -> list[MeetRecord]:
        """Meets with a remote id, newest first."""
        stmt = select(MeetORM).where(MeetORM.remote_id.is_not(None))
        if flt.meet_ids:
            stmt = stmt.where(MeetORM.meet_id.in_(flt.meet_ids))
        if flt.start_date:
            stmt = stmt.where(MeetORM.date >= flt.start_date)
        if flt.end_date:
            stmt = stmt.where(MeetORM.date <= flt.end_date)
        stmt = stmt.order_by(MeetORM.date.desc(), MeetORM.meet_id.desc())
        if flt.limit:
            stmt = stmt.limit(flt.limit)
        try:
            async with self._db.read_session() as session:
                rows = (await session.scalars(stmt)).all()
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"list_candidate_meets failed: {exc}") from exc
        return [MeetRecord.model_validate(r) for r in rows]

    async def read_results(self, flt: ResultFilter) -> list[ResultRecord]:
        stmt = select(ResultORM)
        if flt.meet_ids:
            stmt = stmt.where(ResultORM.meet_id.in_(flt.meet_ids))
        if flt.result_ids:
            stmt = stmt.where(ResultORM.result_id.in_(flt.result_ids))
        if flt.start_date:
            stmt = stmt.where(ResultORM.date >= flt.start_date)
        if flt.end_date:
            stmt = stmt.where(ResultORM.date <= flt.end_date)
        if flt.gender:
            stmt = stmt.where(ResultORM.gender == flt.gender.value)
        if flt.missing_only:
            stmt = stmt.where(or_(*(getattr(ResultORM, f).is_(None) for f in BACKFILL_FIELDS)))
        if flt.exclude_ids:
            stmt = stmt.where(ResultORM.result_id.not_in(flt.exclude_ids))
        stmt = stmt.order_by(ResultORM.date.desc(), ResultORM.result_id)
        if flt.limit:
            stmt = stmt.limit(flt.limit)
        try:
            async with self._db.read_session() as session:
                rows = (await session.scalars(stmt)).all()
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"read_results failed: {exc}") from exc
        return [ResultRecord.model_validate(r) for r in rows]

    async def find_competitors_by_name(self, name: str) -> list[CompetitorRecord]:
        """Every local identity with this name (case-insensitive)."""
        stmt = (
            select(CompetitorORM)
            .where(func.lower(CompetitorORM.name) == name.strip().lower())
            .order_by(CompetitorORM.competitor_id)
        )
        try:
            async with self._db.read_session() as session:
                rows = (await session.scalars(stmt)).all()
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"find_competitors_by_name failed: {exc}", name=name) from exc
        return [CompetitorRecord.model_validate(r) for r in rows]

    async def read_competitor(self, competitor_id: int) -> Optional[CompetitorRecord]:
        try:
            async with self._db.read_session() as session:
                row = await session.get(CompetitorORM, competitor_id)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"read_competitor failed: {exc}", competitor_id=competitor_id) from exc
        return CompetitorRecord.model_validate(row) if row else None

    async def update_result(self, result_id: int, fields: dict[str, Any]) -> None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"fields not updatable: {sorted(unknown)}", result_id=result_id)
        if not fields:
            return
        values = {k: (v.value if isinstance(v, Gender) else v) for k, v in fields.items()}
        values["updated_at"] = datetime.now(timezone.utc)
        try:
            async with self._db.write_session() as session:
                await session.execute(update(ResultORM).where(ResultORM.result_id == result_id).values(**values))
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"update_result failed: {exc}", result_id=result_id) from exc
        logger.debug("result_updated", result_id=result_id, fields=sorted(fields))
