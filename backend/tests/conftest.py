"""
Shared fakes for reconciler tests: an in-memory store and a scripted source.
"""
from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from shared.models.domain import CompetitorRecord, MeetRecord, ResultRecord

from reconciler.audit import UnresolvedList, UpdateAuditLog
from reconciler.config import ReconcilerSettings
from reconciler.divisions import DivisionCatalog
from reconciler.errors import PersistenceFailure
from reconciler.filters import MeetFilter, ResultFilter
from reconciler.names import PlainNameNormalizer
from reconciler.resolver import TieredResolver
from reconciler.sources.base import CompetitorCandidate, HistoryEntry, ResultsSource

SearchHandler = Callable[[Optional[str], date, date, Optional[str]], list[CompetitorCandidate]]

DIVISION_CODES = {
    "Open Men's 89kg": "m89",
    "(Inactive) Open Men's 89kg": "m89i",
    "Open Men's 81kg": "m81",
    "Open Men's 96kg": "m96",
    "Open Men's 102kg": "m102",
    "Junior Men's 89kg": "jm89",
    "Masters (35-39) Men's 109kg": "mm109",
    "Open Women's 71kg": "w71",
}


class FakeStore:
    """In-memory stand-in for ResultStore."""

    def __init__(self) -> None:
        self.meets: dict[int, MeetRecord] = {}
        self.results: dict[int, ResultRecord] = {}
        self.competitors: dict[int, CompetitorRecord] = {}
        self.local_counts: dict[int, int] = {}
        self.updates: list[tuple[int, dict[str, Any]]] = []
        self.fail_counts = False

    def add_meet(self, meet_id: int, remote_id: Optional[int], name: str, day: date, local_count: int = 0) -> MeetRecord:
        meet = MeetRecord(meet_id=meet_id, remote_id=remote_id, name=name, date=day)
        self.meets[meet_id] = meet
        self.local_counts[meet_id] = local_count
        return meet

    def add_result(self, **fields: Any) -> ResultRecord:
        result = ResultRecord(**fields)
        self.results[result.result_id] = result
        return result

    def add_competitor(self, competitor_id: int, name: str, remote_id: Optional[int] = None) -> CompetitorRecord:
        comp = CompetitorRecord(competitor_id=competitor_id, name=name, remote_id=remote_id)
        self.competitors[competitor_id] = comp
        return comp

    async def read_meet(self, meet_id: int) -> Optional[MeetRecord]:
        return self.meets.get(meet_id)

    async def count_local_results(self, meet_id: int) -> int:
        if self.fail_counts:
            raise PersistenceFailure("database is down", meet_id=meet_id)
        return self.local_counts.get(meet_id, 0)

    async def list_candidate_meets(self, flt: MeetFilter) -> list[MeetRecord]:
        meets = [m for m in self.meets.values() if m.remote_id is not None]
        if flt.meet_ids:
            meets = [m for m in meets if m.meet_id in flt.meet_ids]
        if flt.start_date:
            meets = [m for m in meets if m.date >= flt.start_date]
        if flt.end_date:
            meets = [m for m in meets if m.date <= flt.end_date]
        meets.sort(key=lambda m: (m.date, m.meet_id), reverse=True)
        return meets[: flt.limit] if flt.limit else meets

    async def read_results(self, flt: ResultFilter) -> list[ResultRecord]:
        rows = list(self.results.values())
        if flt.meet_ids:
            rows = [r for r in rows if r.meet_id in flt.meet_ids]
        if flt.result_ids:
            rows = [r for r in rows if r.result_id in flt.result_ids]
        if flt.missing_only:
            rows = [r for r in rows if r.missing_fields()]
        rows = [r for r in rows if r.result_id not in flt.exclude_ids]
        return rows[: flt.limit] if flt.limit else rows

    async def find_competitors_by_name(self, name: str) -> list[CompetitorRecord]:
        return [c for c in self.competitors.values() if c.name.lower() == name.strip().lower()]

    async def read_competitor(self, competitor_id: int) -> Optional[CompetitorRecord]:
        return self.competitors.get(competitor_id)

    async def update_result(self, result_id: int, fields: dict[str, Any]) -> None:
        self.updates.append((result_id, dict(fields)))
        current = self.results[result_id]
        self.results[result_id] = current.model_copy(update=fields)


class FakeSource(ResultsSource):
    """Scripted source that records every call."""

    def __init__(self) -> None:
        self.counts: dict[int, Any] = {}
        self.histories: dict[int, list[HistoryEntry]] = {}
        self.recorded_dates: dict[tuple[int, str], date] = {}
        self.search_handler: SearchHandler = lambda division, start, end, name: []
        self.search_calls: list[tuple[Optional[str], date, date, Optional[str]]] = []
        self.history_calls: list[int] = []
        self.count_calls: list[int] = []

    @property
    def source_name(self) -> str:
        return "fake"

    async def get_result_count(self, remote_meet_id: int) -> int:
        self.count_calls.append(remote_meet_id)
        value = self.counts[remote_meet_id]
        if isinstance(value, Exception):
            raise value
        return value

    async def search_candidates(self, division_code, start_date, end_date, name_filter=None):
        self.search_calls.append((division_code, start_date, end_date, name_filter))
        return self.search_handler(division_code, start_date, end_date, name_filter)

    async def get_competitor_history(self, remote_competitor_id: int) -> list[HistoryEntry]:
        self.history_calls.append(remote_competitor_id)
        return self.histories.get(remote_competitor_id, [])

    async def get_recorded_date(self, remote_meet_id: int, competitor_name: str) -> Optional[date]:
        return self.recorded_dates.get((remote_meet_id, competitor_name.lower()))


def candidate(name: str, day: date, **fields: Any) -> CompetitorCandidate:
    return CompetitorCandidate(name=name, date=day, **fields)


def make_settings(tmp_path: Path, **overrides: Any) -> ReconcilerSettings:
    values: dict[str, Any] = {
        "batch_delay_s": 0.0,
        "retry_base_delay_s": 0.0,
        "retry_max_delay_s": 0.0,
        "ledger_path": tmp_path / "ledger.json",
        "unresolved_path": tmp_path / "unresolved.json",
        "audit_log_path": tmp_path / "audit.jsonl",
        "session_dir": tmp_path / "sessions",
        "division_codes_path": tmp_path / "divisions.json",
    }
    values.update(overrides)
    return ReconcilerSettings(_env_file=None, **values)


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def settings(tmp_path: Path) -> ReconcilerSettings:
    return make_settings(tmp_path)


@pytest.fixture
def catalog() -> DivisionCatalog:
    return DivisionCatalog(DIVISION_CODES, active_cutoff=date(2025, 6, 1))


@pytest.fixture
def audit(settings: ReconcilerSettings) -> UpdateAuditLog:
    return UpdateAuditLog(settings.audit_log_path)


@pytest.fixture
def unresolved(settings: ReconcilerSettings) -> UnresolvedList:
    return UnresolvedList(settings.unresolved_path)


@pytest.fixture
def build_resolver(source, store, catalog, audit, unresolved):
    def _build(settings: ReconcilerSettings) -> TieredResolver:
        return TieredResolver(source, store, catalog, PlainNameNormalizer(), settings, audit, unresolved)

    return _build


@pytest.fixture
def resolver(build_resolver, settings) -> TieredResolver:
    return build_resolver(settings)

