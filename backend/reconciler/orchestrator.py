"""
Batch orchestrator.
Drives analyzer, ledger and resolver over a working set in fixed-size
batches, pausing between batches, and isolates per-item failures.
"""
from __future__ import annotations

import asyncio
from typing import Optional, Protocol, TypeVar

from shared.models.domain import CompletenessVerdict, MeetRecord
from shared.models.enums import ItemStatus, ResolutionOutcome, RunMode, VerdictStatus
from shared.utils.logging import get_logger

from reconciler.analyzer import CompletenessAnalyzer
from reconciler.audit import UnresolvedList
from reconciler.config import ReconcilerSettings
from reconciler.filters import MeetFilter, ResultFilter
from reconciler.ledger import CompletionLedger
from reconciler.reporter import SessionReporter
from reconciler.resolver import TieredResolver
from reconciler.store import ResultStore

logger = get_logger(__name__)

T = TypeVar("T")

_OUTCOME_STATUS = {
    ResolutionOutcome.FILLED: ItemStatus.COMPLETED,
    ResolutionOutcome.NOTHING_TO_FILL: ItemStatus.SKIPPED,
    ResolutionOutcome.UNRESOLVED: ItemStatus.UNRESOLVED,
    ResolutionOutcome.AMBIGUOUS: ItemStatus.UNRESOLVED,
}


class MeetImporter(Protocol):
    """Re-imports a meet's missing rows from the source. Page mechanics live elsewhere."""

    async def reimport(self, verdict: CompletenessVerdict) -> int:
        """Returns the number of rows written."""
        ...


def batched(items: list[T], size: int) -> list[list[T]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class BatchOrchestrator:
    def __init__(
        self,
        analyzer: CompletenessAnalyzer,
        ledger: CompletionLedger,
        resolver: TieredResolver,
        store: ResultStore,
        unresolved: UnresolvedList,
        settings: ReconcilerSettings,
        importer: Optional[MeetImporter] = None,
    ) -> None:
        self._analyzer = analyzer
        self._ledger = ledger
        self._resolver = resolver
        self._store = store
        self._unresolved = unresolved
        self._settings = settings
        self._importer = importer
        self._abort = asyncio.Event()

    def request_abort(self) -> None:
        """Stop after the item in flight; nothing is discarded mid-update."""
        if not self._abort.is_set():
            logger.warning("orchestrator_abort_requested")
        self._abort.set()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    # ── Meets ────────────────────────────────────────────────────────────

    async def run_meets(self, flt: MeetFilter, force_recheck: bool = False) -> SessionReporter:
        reporter = SessionReporter(RunMode.MEETS, self._settings.report_interval)
        meets = await self._store.list_candidate_meets(flt)
        skip_ids = self._unresolved.load_ids()
        reporter.start(len(meets))
        try:
            for index, batch in enumerate(batched(meets, self._settings.batch_size)):
                if index and not await self._pause_between_batches():
                    break
                for meet in batch:
                    if self.aborted:
                        break
                    try:
                        await self._process_meet(meet, reporter, force_recheck, skip_ids)
                    except Exception as exc:
                        logger.error("meet_processing_failed", meet_id=meet.meet_id, error=str(exc), exc_info=True)
                        reporter.record_error(meet.meet_id, exc, stage="meet")
                        reporter.record(meet.meet_id, ItemStatus.FAILED, detail=str(exc))
        finally:
            self._finish(reporter)
        return reporter

    async def _process_meet(
        self, meet: MeetRecord, reporter: SessionReporter, force_recheck: bool, skip_ids: set[int]
    ) -> None:
        meet_id = meet.meet_id
        if await self._ledger.should_skip(
            meet_id, force_recheck=force_recheck, verify_counts=self._settings.verify_ledger_counts
        ):
            reporter.record(meet_id, ItemStatus.SKIPPED, detail="ledger: complete")
            return

        before = await self._analyzer.analyze(meet_id)
        if before.status == VerdictStatus.FAILED:
            await self._ledger.mark_failed(before)
            reporter.record(meet_id, ItemStatus.FAILED, detail="; ".join(before.error_log))
            return
        if before.is_complete:
            await self._ledger.mark_complete(before)
            reporter.record(meet_id, ItemStatus.COMPLETED, detail="already complete")
            return

        logger.info(
            "meet_incomplete",
            meet_id=meet_id,
            remote_count=before.remote_count,
            local_count=before.local_count,
            discrepancy=before.discrepancy,
        )
        if self._importer is not None:
            written = await self._importer.reimport(before)
            logger.info("meet_reimported", meet_id=meet_id, rows_written=written)

        await self._backfill_meet(meet, reporter, skip_ids)

        after = await self._analyzer.analyze(meet_id)
        await self._ledger.record(after)
        added = max(after.local_count - before.local_count, 0) if after.status != VerdictStatus.FAILED else 0
        if after.status == VerdictStatus.FAILED:
            status = ItemStatus.FAILED
        elif after.is_complete:
            status = ItemStatus.COMPLETED
        else:
            status = ItemStatus.INCOMPLETE
        reporter.record(meet_id, status, results_added=added, detail=f"discrepancy {after.discrepancy}")

    async def _backfill_meet(self, meet: MeetRecord, reporter: SessionReporter, skip_ids: set[int]) -> None:
        results = await self._store.read_results(
            ResultFilter(meet_ids=[meet.meet_id], missing_only=not self._settings.force, exclude_ids=skip_ids)
        )
        for result in results:
            if self.aborted:
                return
            try:
                report = await self._resolver.resolve(result, meet)
            except Exception as exc:
                logger.warning("result_backfill_failed", result_id=result.result_id, error=str(exc))
                reporter.record_error(result.result_id, exc, stage="backfill", meet_id=meet.meet_id)
                reporter.record_resolution(None)
                continue
            reporter.record_resolution(report.outcome)

    # ── Results ──────────────────────────────────────────────────────────

    async def run_results(self, flt: ResultFilter) -> SessionReporter:
        reporter = SessionReporter(RunMode.RESULTS, self._settings.report_interval)
        skip_ids = self._unresolved.load_ids()
        flt.exclude_ids = set(flt.exclude_ids) | skip_ids
        results = await self._store.read_results(flt)
        reporter.start(len(results))
        meets: dict[int, Optional[MeetRecord]] = {}
        try:
            for index, batch in enumerate(batched(results, self._settings.batch_size)):
                if index and not await self._pause_between_batches():
                    break
                for result in batch:
                    if self.aborted:
                        break
                    try:
                        if result.meet_id not in meets:
                            meets[result.meet_id] = await self._store.read_meet(result.meet_id)
                        report = await self._resolver.resolve(result, meets[result.meet_id])
                    except Exception as exc:
                        logger.error("result_processing_failed", result_id=result.result_id, error=str(exc))
                        reporter.record_error(result.result_id, exc, stage="resolve")
                        reporter.record_resolution(None)
                        reporter.record(result.result_id, ItemStatus.FAILED, detail=str(exc))
                        continue
                    reporter.record_resolution(report.outcome)
                    tier = report.tier.value if report.tier else None
                    reporter.record(
                        result.result_id,
                        _OUTCOME_STATUS[report.outcome],
                        results_added=1 if report.filled else 0,
                        detail=f"tier {tier}" if tier else report.reason,
                    )
        finally:
            self._finish(reporter)
        return reporter

    # ── Internals ────────────────────────────────────────────────────────

    async def _pause_between_batches(self) -> bool:
        """Sleep the inter-batch delay unless aborted. Returns False to stop."""
        if self.aborted:
            return False
        try:
            await asyncio.wait_for(self._abort.wait(), timeout=self._settings.batch_delay_s)
        except asyncio.TimeoutError:
            return True
        return False

    def _finish(self, reporter: SessionReporter) -> None:
        try:
            if self._unresolved.pending:
                self._unresolved.save()
        except Exception as exc:
            logger.error("unresolved_list_save_failed", error=str(exc))
            reporter.record_error(None, exc, stage="unresolved_save")
        reporter.finish(aborted=self.aborted)
        try:
            reporter.export(self._settings.session_dir)
        except Exception as exc:
            logger.error("session_export_failed", error=str(exc))
