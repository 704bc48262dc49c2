"""
Candidate search with adaptive date-range splitting.

The source silently returns nothing when an unfiltered query spans too much
data. An empty answer over a long range is therefore treated as a transient
upstream failure: the range is bisected, the earlier half searched first,
and the later half skipped once the target turns up.
"""
from __future__ import annotations

from datetime import date, timedelta
from typing import Callable, Optional

from shared.utils.logging import get_logger
from shared.utils.metrics import RANGE_SPLITS

from reconciler.errors import SourceUnavailable
from reconciler.names import NameNormalizer
from reconciler.sources.base import CompetitorCandidate, ResultsSource

logger = get_logger(__name__)

CandidatePredicate = Callable[[CompetitorCandidate], bool]


class RangeSearcher:
    def __init__(
        self,
        source: ResultsSource,
        normalizer: NameNormalizer,
        split_threshold_days: int = 365,
        max_depth: int = 3,
    ) -> None:
        self._source = source
        self._normalizer = normalizer
        self.split_threshold_days = split_threshold_days
        self.max_depth = max_depth
        self.queries = 0

    async def search(
        self,
        division_code: Optional[str],
        start: date,
        end: date,
        name_filter: Optional[str] = None,
        target: Optional[CandidatePredicate] = None,
        depth: int = 0,
    ) -> list[CompetitorCandidate]:
        """
        Search [start, end] inclusive.

        ``target`` lets an unfiltered search stop early: once the earlier half
        holds a matching candidate the later half is never queried.
        """
        span = (end - start).days
        can_split = depth < self.max_depth and span > 1

        self.queries += 1
        try:
            found = await self._source.search_candidates(division_code, start, end, name_filter)
        except SourceUnavailable as exc:
            if not can_split:
                raise
            reason = "source_unavailable"
            logger.warning(
                "range_search_failed",
                division=division_code,
                start=start.isoformat(),
                end=end.isoformat(),
                depth=depth,
                error=str(exc),
            )
        else:
            suspicious = not found and name_filter is None and span > self.split_threshold_days
            if not suspicious:
                return found
            if not can_split:
                logger.warning(
                    "range_split_exhausted",
                    division=division_code,
                    start=start.isoformat(),
                    end=end.isoformat(),
                    depth=depth,
                )
                return found
            reason = "empty_long_range"

        mid = start + timedelta(days=span // 2)
        RANGE_SPLITS.labels(reason=reason).inc()
        logger.info(
            "range_split",
            reason=reason,
            division=division_code,
            start=start.isoformat(),
            mid=mid.isoformat(),
            end=end.isoformat(),
            span_days=span,
            depth=depth,
            threshold_days=self.split_threshold_days,
        )

        earlier = await self.search(division_code, start, mid, name_filter, target, depth + 1)
        if earlier and (name_filter is not None or (target is not None and any(target(c) for c in earlier))):
            logger.debug("range_split_short_circuit", division=division_code, depth=depth, found=len(earlier))
            return earlier

        later = await self.search(division_code, mid + timedelta(days=1), end, name_filter, target, depth + 1)
        return self.merge(earlier, later)

    def merge(self, *groups: list[CompetitorCandidate]) -> list[CompetitorCandidate]:
        seen: set[tuple] = set()
        merged: list[CompetitorCandidate] = []
        for group in groups:
            for cand in group:
                key = cand.dedupe_key(self._normalizer.match_key(cand.name))
                if key not in seen:
                    seen.add(key)
                    merged.append(cand)
        return merged
