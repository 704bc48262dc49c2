"""
Reconciler service configuration.
Uses MR_RECONCILER_ prefix; database and logging settings come from shared.config.
"""
from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.models.enums import LedgerBackend, NameFormat, RunMode


class ReconcilerSettings(BaseSettings):
    """Reconciler-specific settings; use get_settings() for DB/logging."""

    model_config = SettingsConfigDict(
        env_prefix="MR_RECONCILER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Remote source ────────────────────────────────────────
    source_base_url: str = Field(default="https://usaweightlifting.sport80.com", description="Results source root")
    source_count_path: str = Field(default="/api/meets/{meet_id}/results", description="Paged results of one meet")
    source_search_path: str = Field(default="/api/rankings/results", description="Division/date search endpoint")
    source_history_path: str = Field(default="/api/members/{member_id}/results", description="Member history")
    source_page_size: int = Field(default=100, description="Rows requested per page")
    fetch_timeout_s: float = Field(default=30.0, description="HTTP timeout per request")
    retry_max_attempts: int = Field(default=3, description="Max attempts on transient failure")
    retry_base_delay_s: float = Field(default=1.0, description="Base delay for exponential backoff")
    retry_max_delay_s: float = Field(default=30.0, description="Backoff ceiling")
    source_rpm: int = Field(default=30, description="Max requests per minute (token bucket)")
    source_burst: int = Field(default=5, description="Token bucket burst size")
    circuit_failure_threshold: int = Field(default=5, description="Failures before opening circuit")
    circuit_recovery_s: float = Field(default=120.0, description="Seconds before half-open")

    # ── Resolver ─────────────────────────────────────────────
    date_window_days: int = Field(default=5, description="± days around a meet date in tiers A/B")
    broadened_padding_days: int = Field(default=5, description="Padding around both dates in tier C")
    max_broadened_divisions: int = Field(default=8, description="Divisions searched in tier C")
    weight_proximity_kg: float = Field(default=15.0, description="Same-gender weight class proximity")
    active_division_cutoff: date = Field(default=date(2025, 6, 1), description="Meets on/after use active divisions")
    split_threshold_days: int = Field(default=365, description="Empty unfiltered ranges longer than this are split")
    split_max_depth: int = Field(default=3, description="Bound on range bisection depth")
    total_tolerance: float = Field(default=0.1, description="Tolerance when matching totals in history")
    name_format: NameFormat = Field(default=NameFormat.PLAIN, description="Competitor name normalizer")
    force: bool = Field(default=False, description="Overwrite non-null fields")
    dry_run: bool = Field(default=False, description="Compute and audit fills without writing")

    # ── Orchestrator ─────────────────────────────────────────
    batch_size: int = Field(default=10, description="Items per batch")
    batch_delay_s: float = Field(default=2.0, description="Pause between batches")
    report_interval: int = Field(default=10, description="Progress snapshot every N items")
    verify_ledger_counts: bool = Field(default=True, description="Ledger rechecks local counts before skipping")
    force_recheck: bool = Field(default=False, description="Bypass the ledger skip cache")

    # ── Run selection ────────────────────────────────────────
    run_mode: RunMode = RunMode.MEETS
    meet_ids: list[int] = Field(default_factory=list, description="Explicit meets (JSON list)")
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    limit: Optional[int] = None

    # ── Paths / persistence ──────────────────────────────────
    division_codes_path: Path = Field(default=Path("data/division_codes.json"))
    ledger_backend: LedgerBackend = LedgerBackend.JSON
    ledger_path: Path = Field(default=Path("data/meet_completion_ledger.json"))
    unresolved_path: Path = Field(default=Path("data/unresolved_results.json"))
    audit_log_path: Path = Field(default=Path("logs/result_updates.jsonl"))
    session_dir: Path = Field(default=Path("logs/sessions"))

    @model_validator(mode="after")
    def check_consistency(self) -> "ReconcilerSettings":
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.report_interval < 1:
            raise ValueError("report_interval must be >= 1")
        if self.batch_delay_s < 0 or self.retry_base_delay_s < 0:
            raise ValueError("delays must be non-negative")
        if self.retry_max_delay_s < self.retry_base_delay_s:
            raise ValueError("retry_max_delay_s must be >= retry_base_delay_s")
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be >= 1")
        if self.split_max_depth < 0:
            raise ValueError("split_max_depth must be >= 0")
        if self.split_threshold_days < 1:
            raise ValueError("split_threshold_days must be >= 1")
        if self.date_window_days < 0 or self.broadened_padding_days < 0:
            raise ValueError("date windows must be non-negative")
        if self.max_broadened_divisions < 1:
            raise ValueError("max_broadened_divisions must be >= 1")
        if self.source_page_size < 1:
            raise ValueError("source_page_size must be >= 1")
        return self


def get_reconciler_settings() -> ReconcilerSettings:
    """Load reconciler settings. Invalid values raise before any side effect."""
    return ReconcilerSettings()
