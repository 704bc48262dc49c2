"""
Integration tests for ResultStore and the SQL ledger backend on SQLite.

Run: pytest backend/tests/test_store.py -v
"""
from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest
import pytest_asyncio

from shared.config import Settings
from shared.models.domain import CompletenessVerdict
from shared.models.enums import Gender, VerdictStatus
from shared.models.orm import CompetitorORM, MeetORM, ResultORM
from shared.utils.database import DatabaseManager

from reconciler.errors import ValidationError
from reconciler.filters import MeetFilter, ResultFilter
from reconciler.ledger import CompletionLedger, SqlLedgerStore
from reconciler.store import ResultStore


@pytest_asyncio.fixture
async def db(tmp_path: Path):
    manager = DatabaseManager(Settings(_env_file=None, database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"))
    await manager.connect()
    await manager.create_schema()
    async with manager.write_session() as session:
        session.add_all(
            [
                MeetORM(meet_id=1, remote_id=7001, name="Spring Open", date=date(2024, 4, 6)),
                MeetORM(meet_id=2, remote_id=7002, name="Summer Open", date=date(2024, 7, 6)),
                MeetORM(meet_id=3, remote_id=None, name="Club Meet", date=date(2024, 8, 1)),
                CompetitorORM(competitor_id=10, name="John Smith", remote_id=501),
                CompetitorORM(competitor_id=11, name="john smith", remote_id=502),
                CompetitorORM(competitor_id=12, name="Jane Doe", remote_id=503),
            ]
        )
        await session.flush()
        session.add_all(
            [
                ResultORM(
                    result_id=100,
                    meet_id=1,
                    competitor_id=12,
                    competitor_name="Jane Doe",
                    date=date(2024, 4, 6),
                    age_category="Open Women's",
                    weight_class="71kg",
                    total=180.0,
                ),
                ResultORM(
                    result_id=101,
                    meet_id=1,
                    competitor_name="Ann Fox",
                    date=date(2024, 4, 6),
                    gender="F",
                    competition_age=30,
                    birth_year=1994,
                    club_name="Gym",
                    region="Ohio",
                ),
                ResultORM(result_id=200, meet_id=2, competitor_name="Sam Lee", date=date(2024, 7, 6)),
            ]
        )
    yield manager
    await manager.disconnect()


@pytest.fixture
def result_store(db) -> ResultStore:
    return ResultStore(db)


# ── Reads ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_read_meet_and_count(result_store) -> None:
    meet = await result_store.read_meet(1)
    assert meet.name == "Spring Open"
    assert meet.remote_id == 7001
    assert await result_store.read_meet(99) is None
    assert await result_store.count_local_results(1) == 2
    assert await result_store.count_local_results(99) == 0


@pytest.mark.asyncio
async def test_candidate_meets_need_remote_id_newest_first(result_store) -> None:
    meets = await result_store.list_candidate_meets(MeetFilter())
    assert [m.meet_id for m in meets] == [2, 1]

    limited = await result_store.list_candidate_meets(MeetFilter(limit=1))
    assert [m.meet_id for m in limited] == [2]

    windowed = await result_store.list_candidate_meets(MeetFilter(end_date=date(2024, 5, 1)))
    assert [m.meet_id for m in windowed] == [1]


@pytest.mark.asyncio
async def test_read_results_missing_only(result_store) -> None:
    rows = await result_store.read_results(ResultFilter(meet_ids=[1]))
    assert [r.result_id for r in rows] == [100]

    every = await result_store.read_results(ResultFilter(meet_ids=[1], missing_only=False))
    assert sorted(r.result_id for r in every) == [100, 101]
    fox = next(r for r in every if r.result_id == 101)
    assert fox.gender == Gender.FEMALE

    excluded = await result_store.read_results(ResultFilter(exclude_ids={100, 200}))
    assert excluded == []


@pytest.mark.asyncio
async def test_competitors_matched_case_insensitively(result_store) -> None:
    found = await result_store.find_competitors_by_name("  JOHN SMITH ")
    assert [c.competitor_id for c in found] == [10, 11]
    assert (await result_store.read_competitor(12)).remote_id == 503
    assert await result_store.read_competitor(99) is None


# ── Writes ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_update_result_writes_only_given_fields(result_store) -> None:
    await result_store.update_result(100, {"club_name": "Iron Barn", "gender": Gender.FEMALE, "resolved_tier": "A"})

    [row] = await result_store.read_results(ResultFilter(result_ids=[100], missing_only=False))
    assert row.club_name == "Iron Barn"
    assert row.gender == Gender.FEMALE
    assert row.resolved_tier == "A"
    assert row.region is None
    assert row.total == 180.0


@pytest.mark.asyncio
async def test_update_result_rejects_non_backfill_fields(result_store) -> None:
    with pytest.raises(ValidationError):
        await result_store.update_result(100, {"total": 999.0})


# ── SQL ledger ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_sql_ledger_round_trip(db, result_store) -> None:
    ledger = CompletionLedger(SqlLedgerStore(db), result_store)

    await ledger.mark_complete(CompletenessVerdict.from_counts(1, 2, 2, remote_id=7001))
    await ledger.mark_failed(CompletenessVerdict.failed(2, "SourceUnavailable: timeout", remote_id=7002))

    reopened = CompletionLedger(SqlLedgerStore(db), result_store)
    assert await reopened.should_skip(1) is True
    failed = await reopened.get(2)
    assert failed.status == VerdictStatus.FAILED
    assert failed.error_log == ["SourceUnavailable: timeout"]
    assert (await reopened.stats())["total"] == 2

    await reopened.clear(2)
    assert (await reopened.get(2)).status == VerdictStatus.UNKNOWN


@pytest.mark.asyncio
async def test_sql_ledger_demotes_when_rows_removed(db, result_store) -> None:
    ledger = CompletionLedger(SqlLedgerStore(db), result_store)
    await ledger.mark_complete(CompletenessVerdict.from_counts(2, 1, 1, remote_id=7002))
    async with db.write_session() as session:
        await session.delete(await session.get(ResultORM, 200))

    assert await ledger.should_skip(2, force_recheck=True) is False
    entry = await ledger.get(2)
    assert entry.status == VerdictStatus.INCOMPLETE
    assert entry.local_count == 0
