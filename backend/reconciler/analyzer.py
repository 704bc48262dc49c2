"""
Completeness analyzer: compares remote vs local result counts per meet.
Any failure produces a ``failed`` verdict, never a complete one.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable

from shared.models.domain import CompletenessVerdict, utcnow
from shared.utils.logging import get_logger
from shared.utils.metrics import VERDICTS

from reconciler.errors import PersistenceFailure, SourceError
from reconciler.filters import MeetFilter
from reconciler.sources.base import ResultsSource
from reconciler.store import ResultStore

logger = get_logger(__name__)


class CompletenessAnalyzer:
    def __init__(
        self,
        source: ResultsSource,
        store: ResultStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._source = source
        self._store = store
        self._clock = clock

    async def analyze(self, meet_id: int) -> CompletenessVerdict:
        try:
            meet = await self._store.read_meet(meet_id)
        except PersistenceFailure as exc:
            return self._failed(meet_id, f"store: {exc}")
        if meet is None:
            return self._failed(meet_id, "meet not found in store")
        if meet.remote_id is None:
            return self._failed(meet_id, "meet has no remote id", meet_name=meet.name)

        try:
            remote_count = await self._source.get_result_count(meet.remote_id)
            local_count = await self._store.count_local_results(meet_id)
        except (SourceError, PersistenceFailure) as exc:
            return self._failed(
                meet_id, f"{type(exc).__name__}: {exc}", remote_id=meet.remote_id, meet_name=meet.name
            )

        verdict = CompletenessVerdict.from_counts(
            meet_id,
            remote_count,
            local_count,
            remote_id=meet.remote_id,
            meet_name=meet.name,
        ).model_copy(update={"last_checked_at": self._clock()})
        VERDICTS.labels(status=verdict.status.value).inc()
        logger.info(
            "meet_analyzed",
            meet_id=meet_id,
            remote_id=meet.remote_id,
            remote_count=remote_count,
            local_count=local_count,
            discrepancy=verdict.discrepancy,
            is_complete=verdict.is_complete,
        )
        return verdict

    async def get_incomplete_meets(self, flt: MeetFilter) -> list[CompletenessVerdict]:
        """Non-complete verdicts (failed included), in store order."""
        meets = await self._store.list_candidate_meets(flt)
        incomplete = []
        for meet in meets:
            verdict = await self.analyze(meet.meet_id)
            if not verdict.is_complete:
                incomplete.append(verdict)
        logger.info("incomplete_meets_found", candidates=len(meets), incomplete=len(incomplete))
        return incomplete

    async def should_skip(self, meet_id: int) -> bool:
        """Always recomputes. Use the ledger in loops."""
        return (await self.analyze(meet_id)).is_complete

    def _failed(self, meet_id: int, error: str, **kwargs) -> CompletenessVerdict:
        VERDICTS.labels(status="failed").inc()
        logger.warning("meet_analysis_failed", meet_id=meet_id, error=error)
        return CompletenessVerdict.failed(meet_id, error, **kwargs).model_copy(
            update={"last_checked_at": self._clock()}
        )
