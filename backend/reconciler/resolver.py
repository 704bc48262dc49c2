"""
Tiered identity resolver.

Given a local result with an ambiguous or incomplete competitor identity,
find the matching remote candidate and backfill empty fields. Tiers are
tried in order and the first success wins:

  A  exact division, window around the stored date
  B  exact division, window around the date the source records
  C  prioritized broadened divisions, name filter, wider window
  D  several local identities share the name: confirm one through its
     remote history, then resume A under that identity
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Optional

from shared.models.domain import BACKFILL_FIELDS, CompetitorRecord, MeetRecord, ResultRecord
from shared.models.enums import ResolutionOutcome, ResolverTier
from shared.utils.logging import get_logger
from shared.utils.metrics import RESOLUTIONS

from reconciler.audit import UnresolvedList, UpdateAuditLog
from reconciler.config import ReconcilerSettings
from reconciler.divisions import Division, DivisionCatalog, gender_of
from reconciler.errors import AmbiguousIdentity
from reconciler.names import NameNormalizer, collapse_whitespace
from reconciler.search import RangeSearcher
from reconciler.sources.base import CompetitorCandidate, HistoryEntry, ResultsSource
from reconciler.store import ResultStore

logger = get_logger(__name__)


@dataclass
class ResolutionReport:
    result_id: int
    outcome: ResolutionOutcome
    tier: Optional[ResolverTier] = None
    tiers_attempted: list[ResolverTier] = field(default_factory=list)
    changes: dict[str, tuple[Any, Any]] = field(default_factory=dict)
    divisions_searched: int = 0
    division: Optional[str] = None
    competitor_id: Optional[int] = None
    reason: Optional[str] = None
    dry_run: bool = False

    @property
    def filled(self) -> bool:
        return self.outcome == ResolutionOutcome.FILLED


@dataclass
class _Match:
    candidate: CompetitorCandidate
    division: Division


@dataclass
class _Attempt:
    """Per-result state shared between tiers."""
    result: ResultRecord
    meet: Optional[MeetRecord]
    identity: Optional[CompetitorRecord] = None
    recorded_date: Optional[date] = None
    divisions_searched: int = 0
    tiers: list[ResolverTier] = field(default_factory=list)


def _meet_key(name: str) -> str:
    return collapse_whitespace(name).casefold()


class TieredResolver:
    def __init__(
        self,
        source: ResultsSource,
        store: ResultStore,
        catalog: DivisionCatalog,
        normalizer: NameNormalizer,
        settings: ReconcilerSettings,
        audit: UpdateAuditLog,
        unresolved: UnresolvedList,
        searcher: Optional[RangeSearcher] = None,
    ) -> None:
        self._source = source
        self._store = store
        self._catalog = catalog
        self._normalizer = normalizer
        self._settings = settings
        self._audit = audit
        self._unresolved = unresolved
        self._searcher = searcher or RangeSearcher(
            source,
            normalizer,
            split_threshold_days=settings.split_threshold_days,
            max_depth=settings.split_max_depth,
        )

    # ── Entry point ──────────────────────────────────────────────────────

    async def resolve(self, result: ResultRecord, meet: Optional[MeetRecord] = None) -> ResolutionReport:
        """
        Resolve one result. SourceError and PersistenceFailure propagate to
        the caller; an identity that cannot be disambiguated does not.
        """
        force = self._settings.force
        if not force and not result.missing_fields():
            RESOLUTIONS.labels(tier="none", outcome=ResolutionOutcome.NOTHING_TO_FILL.value).inc()
            return ResolutionReport(result.result_id, ResolutionOutcome.NOTHING_TO_FILL)

        if meet is None:
            meet = await self._store.read_meet(result.meet_id)
        attempt = _Attempt(result=result, meet=meet)

        identities = await self._store.find_competitors_by_name(result.competitor_name)
        if len({i.competitor_id for i in identities}) > 1:
            return await self._resolve_duplicate_identity(attempt, identities)

        if len(identities) == 1:
            attempt.identity = identities[0]
        for tier, run in (
            (ResolverTier.EXACT_DIVISION, self._tier_a),
            (ResolverTier.SOURCE_DATE, self._tier_b),
            (ResolverTier.BROADENED_DIVISION, self._tier_c),
        ):
            attempt.tiers.append(tier)
            logger.debug("resolver_tier_attempt", result_id=result.result_id, tier=tier.value)
            match = await run(attempt)
            if match is not None:
                return await self._apply(attempt, tier, match)

        return self._give_up(attempt, ResolutionOutcome.UNRESOLVED, "no matching candidate in any tier")

    # ── Tiers ────────────────────────────────────────────────────────────

    async def _tier_a(self, attempt: _Attempt, around: Optional[date] = None) -> Optional[_Match]:
        result = attempt.result
        center = around or result.date
        window = timedelta(days=self._settings.date_window_days)
        start, end = center - window, center + window
        for division in self._catalog.exact(result):
            attempt.divisions_searched += 1
            candidates = await self._searcher.search(
                division.code, start, end, target=lambda c: self._is_target(c, attempt)
            )
            matches = [c for c in candidates if self._is_target(c, attempt)]
            if len(matches) == 1:
                return _Match(matches[0], division)
            if len(matches) > 1:
                logger.info(
                    "resolver_multiple_matches",
                    result_id=result.result_id,
                    division=division.name,
                    matches=len(matches),
                )
        return None

    async def _tier_b(self, attempt: _Attempt) -> Optional[_Match]:
        meet = attempt.meet
        if meet is None or meet.remote_id is None:
            return None
        recorded = await self._source.get_recorded_date(meet.remote_id, attempt.result.competitor_name)
        attempt.recorded_date = recorded
        if recorded is None or recorded == attempt.result.date:
            return None
        logger.info(
            "resolver_date_mismatch",
            result_id=attempt.result.result_id,
            stored=attempt.result.date.isoformat(),
            recorded=recorded.isoformat(),
        )
        return await self._tier_a(attempt, around=recorded)

    async def _tier_c(self, attempt: _Attempt) -> Optional[_Match]:
        result = attempt.result
        dates = [result.date] + ([attempt.recorded_date] if attempt.recorded_date else [])
        padding = timedelta(days=self._settings.broadened_padding_days)
        start, end = min(dates) - padding, max(dates) + padding
        divisions = self._catalog.prioritized(result, self._settings.weight_proximity_kg)
        for division in divisions[: self._settings.max_broadened_divisions]:
            attempt.divisions_searched += 1
            candidates = await self._searcher.search(
                division.code, start, end, name_filter=result.competitor_name
            )
            matches = [c for c in candidates if self._is_target(c, attempt) and start <= c.date <= end]
            if len(matches) == 1:
                return _Match(matches[0], division)
        return None

    async def _resolve_duplicate_identity(
        self, attempt: _Attempt, identities: list[CompetitorRecord]
    ) -> ResolutionReport:
        result = attempt.result
        attempt.tiers.append(ResolverTier.HISTORY)
        try:
            identity = await self._confirm_identity(attempt, identities)
        except AmbiguousIdentity as exc:
            logger.warning("resolver_identity_ambiguous", **exc.context)
            return self._give_up(attempt, ResolutionOutcome.AMBIGUOUS, str(exc))

        if result.competitor_id is not None and result.competitor_id != identity.competitor_id and not self._settings.force:
            logger.warning(
                "resolver_identity_conflict",
                result_id=result.result_id,
                current=result.competitor_id,
                confirmed=identity.competitor_id,
            )
            return self._give_up(
                attempt,
                ResolutionOutcome.UNRESOLVED,
                f"confirmed identity {identity.competitor_id} conflicts with assigned {result.competitor_id}",
            )

        attempt.identity = identity
        changes: dict[str, tuple[Any, Any]] = {}
        if result.competitor_id != identity.competitor_id:
            changes["competitor_id"] = (result.competitor_id, identity.competitor_id)

        attempt.tiers.append(ResolverTier.EXACT_DIVISION)
        match = await self._tier_a(attempt)
        return await self._apply(attempt, ResolverTier.HISTORY, match, changes)

    async def _confirm_identity(self, attempt: _Attempt, identities: list[CompetitorRecord]) -> CompetitorRecord:
        result = attempt.result
        confirmed: list[CompetitorRecord] = []
        for identity in identities:
            if identity.remote_id is None:
                continue
            history = await self._source.get_competitor_history(identity.remote_id)
            if any(self._history_matches(entry, attempt) for entry in history):
                confirmed.append(identity)
        logger.info(
            "resolver_history_checked",
            result_id=result.result_id,
            identities=len(identities),
            confirmed=[i.competitor_id for i in confirmed],
        )
        if len(confirmed) != 1:
            raise AmbiguousIdentity(
                result.competitor_name,
                len(identities),
                result_id=result.result_id,
                confirmed=len(confirmed),
            )
        return confirmed[0]

    # ── Matching ─────────────────────────────────────────────────────────

    def _is_target(self, cand: CompetitorCandidate, attempt: _Attempt) -> bool:
        if not self._normalizer.same_person(cand.name, attempt.result.competitor_name):
            return False
        identity = attempt.identity
        if identity is not None and identity.remote_id is not None and cand.remote_competitor_id is not None:
            return cand.remote_competitor_id == identity.remote_id
        return True

    def _history_matches(self, entry: HistoryEntry, attempt: _Attempt) -> bool:
        result, meet = attempt.result, attempt.meet
        dates = {result.date}
        if meet is not None:
            dates.add(meet.date)
            if _meet_key(entry.meet_name) != _meet_key(meet.name):
                return False
        if entry.date not in dates:
            return False
        if entry.total is not None and result.total is not None:
            return abs(entry.total - result.total) <= self._settings.total_tolerance
        return True

    # ── Writing ──────────────────────────────────────────────────────────

    def _proposed_changes(self, result: ResultRecord, match: _Match) -> dict[str, tuple[Any, Any]]:
        cand = match.candidate
        proposed = {
            "competition_age": cand.competition_age,
            "birth_year": cand.birth_year,
            "club_name": cand.club_name,
            "region": cand.region,
            "gender": cand.gender or gender_of(cand.division or match.division.name),
        }
        changes: dict[str, tuple[Any, Any]] = {}
        for name in BACKFILL_FIELDS:
            new = proposed.get(name)
            if new is None:
                continue
            old = getattr(result, name)
            if old in (None, "") or (self._settings.force and old != new):
                changes[name] = (old, new)
        return changes

    async def _apply(
        self,
        attempt: _Attempt,
        tier: ResolverTier,
        match: Optional[_Match],
        changes: Optional[dict[str, tuple[Any, Any]]] = None,
    ) -> ResolutionReport:
        result = attempt.result
        changes = dict(changes or {})
        if match is not None:
            changes.update(self._proposed_changes(result, match))
        division = match.division.name if match else None

        report = ResolutionReport(
            result_id=result.result_id,
            outcome=ResolutionOutcome.FILLED if changes else ResolutionOutcome.NOTHING_TO_FILL,
            tier=tier,
            tiers_attempted=list(attempt.tiers),
            changes=changes,
            divisions_searched=attempt.divisions_searched,
            division=division,
            competitor_id=attempt.identity.competitor_id if attempt.identity else result.competitor_id,
            dry_run=self._settings.dry_run,
        )
        RESOLUTIONS.labels(tier=tier.label, outcome=report.outcome.value).inc()
        if not changes:
            logger.info("resolver_nothing_to_fill", result_id=result.result_id, tier=tier.value)
            return report

        if not self._settings.dry_run:
            fields = {name: new for name, (_, new) in changes.items()}
            fields["resolved_tier"] = tier.value
            await self._store.update_result(result.result_id, fields)
        self._audit.append(
            result_id=result.result_id,
            competitor_name=result.competitor_name,
            tier=tier.value,
            changes=changes,
            divisions_searched=attempt.divisions_searched,
            division=division,
            dry_run=self._settings.dry_run,
        )
        logger.info(
            "resolver_result_filled",
            result_id=result.result_id,
            tier=tier.value,
            fields=sorted(changes),
            divisions_searched=attempt.divisions_searched,
            dry_run=self._settings.dry_run,
        )
        return report

    def _give_up(self, attempt: _Attempt, outcome: ResolutionOutcome, reason: str) -> ResolutionReport:
        result = attempt.result
        tiers = [t.value for t in attempt.tiers]
        self._unresolved.add(result.result_id, result.competitor_name, reason, tiers)
        RESOLUTIONS.labels(tier="none", outcome=outcome.value).inc()
        logger.info(
            "resolver_unresolved",
            result_id=result.result_id,
            outcome=outcome.value,
            tiers=tiers,
            divisions_searched=attempt.divisions_searched,
            reason=reason,
        )
        return ResolutionReport(
            result_id=result.result_id,
            outcome=outcome,
            tiers_attempted=list(attempt.tiers),
            divisions_searched=attempt.divisions_searched,
            reason=reason,
        )
