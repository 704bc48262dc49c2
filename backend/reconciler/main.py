"""
Reconciler entrypoint.
One run per invocation: meets mode (completeness + backfill) or results mode
(resolve pending results). SIGINT/SIGTERM request a cooperative abort.
"""
from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path

# Ensure backend root is on path when run as python -m reconciler.main
_backend = Path(__file__).resolve().parent.parent
if str(_backend) not in sys.path:
    sys.path.insert(0, str(_backend))

from shared.config import get_settings
from shared.models.enums import LedgerBackend, RunMode
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server

from reconciler.analyzer import CompletenessAnalyzer
from reconciler.audit import UnresolvedList, UpdateAuditLog
from reconciler.config import ReconcilerSettings, get_reconciler_settings
from reconciler.divisions import DivisionCatalog
from reconciler.filters import MeetFilter, ResultFilter
from reconciler.ledger import CompletionLedger, JsonLedgerStore, LedgerStore, SqlLedgerStore
from reconciler.names import get_normalizer
from reconciler.orchestrator import BatchOrchestrator
from reconciler.resolver import TieredResolver
from reconciler.sources.sport80 import Sport80Source
from reconciler.store import ResultStore

logger = get_logger(__name__)


def build_ledger_store(settings: ReconcilerSettings, db: DatabaseManager) -> LedgerStore:
    if settings.ledger_backend == LedgerBackend.SQL:
        return SqlLedgerStore(db)
    return JsonLedgerStore(settings.ledger_path)


async def run(settings: ReconcilerSettings) -> dict:
    """Build components, run the configured mode, return the session summary."""
    # filters and catalog are validated before any connection or remote call
    if settings.run_mode == RunMode.MEETS:
        meet_filter = MeetFilter(
            meet_ids=settings.meet_ids,
            start_date=settings.start_date,
            end_date=settings.end_date,
            limit=settings.limit,
        )
    else:
        result_filter = ResultFilter(
            meet_ids=settings.meet_ids,
            start_date=settings.start_date,
            end_date=settings.end_date,
            missing_only=not settings.force,
            limit=settings.limit,
        )
    catalog = DivisionCatalog.from_file(settings.division_codes_path, settings.active_division_cutoff)

    db = DatabaseManager(get_settings())
    try:
        await db.connect()
        await db.ping()
        await db.create_schema()
    except Exception as e:
        logger.exception("startup_connect_failed", error=str(e))
        raise

    normalizer = get_normalizer(settings.name_format)
    source = Sport80Source(settings, normalizer=normalizer)
    store = ResultStore(db)
    unresolved = UnresolvedList(settings.unresolved_path)
    resolver = TieredResolver(
        source,
        store,
        catalog,
        normalizer,
        settings,
        UpdateAuditLog(settings.audit_log_path),
        unresolved,
    )
    orchestrator = BatchOrchestrator(
        CompletenessAnalyzer(source, store),
        CompletionLedger(build_ledger_store(settings, db), store),
        resolver,
        store,
        unresolved,
        settings,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, orchestrator.request_abort)
        except NotImplementedError:
            pass

    logger.info(
        "reconciler_started",
        mode=settings.run_mode.value,
        dry_run=settings.dry_run,
        force=settings.force,
        ledger_backend=settings.ledger_backend.value,
    )
    try:
        if settings.run_mode == RunMode.MEETS:
            reporter = await orchestrator.run_meets(meet_filter, force_recheck=settings.force_recheck)
        else:
            reporter = await orchestrator.run_results(result_filter)
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                pass
        await source.close()
        await db.disconnect()

    summary = reporter.summary()
    logger.info(
        "reconciler_stopped",
        session_id=summary["session_id"],
        failed=summary["failed"],
        unresolved=summary["unresolved"],
    )
    return summary


async def main() -> None:
    setup_logging("reconciler")
    settings = get_reconciler_settings()
    start_metrics_server()
    await run(settings)


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
