"""
Canonical candidate schema and base source interface.
Every remote results source normalizes to CompetitorCandidate / HistoryEntry.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import Optional

from shared.models.enums import Gender
from shared.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CompetitorCandidate:
    """One row from a remote search. Transient, never persisted as-is."""
    name: str
    date: date
    division: Optional[str] = None
    total: Optional[float] = None
    competition_age: Optional[int] = None
    birth_year: Optional[int] = None
    club_name: Optional[str] = None
    region: Optional[str] = None
    gender: Optional[Gender] = None
    meet_name: Optional[str] = None
    remote_competitor_id: Optional[int] = None

    def dedupe_key(self, name_key: str) -> tuple:
        return (name_key, self.date, self.total)


@dataclass(frozen=True)
class HistoryEntry:
    """One line of a competitor's remote competition history."""
    meet_name: str
    date: date
    division: Optional[str] = None
    total: Optional[float] = None


class ResultsSource(ABC):
    """
    Remote results system used as ground truth.

    Implementations raise SourceUnavailable (after their own retries) or
    SourceFormatChanged; they never return partial data silently. Calls are
    issued sequentially by one worker stream per instance.
    """

    @property
    @abstractmethod
    def source_name(self) -> str:
        pass

    @abstractmethod
    async def get_result_count(self, remote_meet_id: int) -> int:
        """Number of result rows the source lists for a meet."""

    @abstractmethod
    async def search_candidates(
        self,
        division_code: Optional[str],
        start_date: date,
        end_date: date,
        name_filter: Optional[str] = None,
    ) -> list[CompetitorCandidate]:
        """Paginated, de-duplicated candidates for a division and date range (inclusive)."""

    @abstractmethod
    async def get_competitor_history(self, remote_competitor_id: int) -> list[HistoryEntry]:
        """Full competition history of one remote identity."""

    @abstractmethod
    async def get_recorded_date(self, remote_meet_id: int, competitor_name: str) -> Optional[date]:
        """The date the source records for a competitor at a meet, or None."""

    async def close(self) -> None:
        """Release any session resources."""
