"""
Pydantic v2 domain models shared across the reconciler.
These are the canonical internal representations, not ORM models.
"""
from __future__ import annotations

import datetime as dt
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from shared.models.enums import Gender, VerdictStatus

# Biographic fields the resolver may backfill on a result.
BACKFILL_FIELDS: tuple[str, ...] = ("competition_age", "birth_year", "club_name", "region", "gender")


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


# ── Base ────────────────────────────────────────────────────────────────
class DomainModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


# ── Local records ───────────────────────────────────────────────────────
class MeetRecord(DomainModel):
    meet_id: int
    remote_id: Optional[int] = None
    name: str
    date: dt.date


class CompetitorRecord(DomainModel):
    """One local competitor identity. Several may share a name."""
    competitor_id: int
    name: str
    remote_id: Optional[int] = None
    membership_number: Optional[int] = None
    gender: Optional[Gender] = None


class ResultRecord(DomainModel):
    result_id: int
    meet_id: int
    competitor_id: Optional[int] = None
    competitor_name: str
    date: dt.date
    age_category: Optional[str] = None
    weight_class: Optional[str] = None
    body_weight: Optional[float] = None
    best_snatch: Optional[float] = None
    best_cj: Optional[float] = None
    total: Optional[float] = None

    # biographic fields pending backfill
    gender: Optional[Gender] = None
    competition_age: Optional[int] = None
    birth_year: Optional[int] = None
    club_name: Optional[str] = None
    region: Optional[str] = None

    # which resolver tier last filled this row
    resolved_tier: Optional[str] = None

    @property
    def division_name(self) -> Optional[str]:
        if not self.age_category or not self.weight_class:
            return None
        return f"{self.age_category} {self.weight_class}"

    def missing_fields(self) -> list[str]:
        return [f for f in BACKFILL_FIELDS if getattr(self, f) in (None, "")]


# ── Completeness ────────────────────────────────────────────────────────
class CompletenessVerdict(DomainModel):
    """Result of comparing remote vs local result counts for one meet."""
    meet_id: int
    remote_id: Optional[int] = None
    meet_name: Optional[str] = None
    remote_count: int = 0
    local_count: int = 0
    is_complete: bool = False
    discrepancy: int = 0
    status: VerdictStatus = VerdictStatus.UNKNOWN
    last_checked_at: dt.datetime = Field(default_factory=utcnow)
    completed_at: Optional[dt.datetime] = None
    error_log: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def counts_agree_with_status(self) -> "CompletenessVerdict":
        if self.status in (VerdictStatus.COMPLETE, VerdictStatus.INCOMPLETE):
            if self.is_complete != (self.remote_count == self.local_count):
                raise ValueError("is_complete must equal (remote_count == local_count)")
            if self.is_complete != (self.status == VerdictStatus.COMPLETE):
                raise ValueError("status disagrees with is_complete")
        elif self.is_complete:
            raise ValueError(f"a {self.status.value} verdict cannot be complete")
        return self

    @classmethod
    def from_counts(
        cls,
        meet_id: int,
        remote_count: int,
        local_count: int,
        remote_id: Optional[int] = None,
        meet_name: Optional[str] = None,
    ) -> "CompletenessVerdict":
        is_complete = remote_count == local_count
        return cls(
            meet_id=meet_id,
            remote_id=remote_id,
            meet_name=meet_name,
            remote_count=remote_count,
            local_count=local_count,
            is_complete=is_complete,
            discrepancy=remote_count - local_count,
            status=VerdictStatus.COMPLETE if is_complete else VerdictStatus.INCOMPLETE,
        )

    @classmethod
    def failed(
        cls,
        meet_id: int,
        error: str,
        remote_id: Optional[int] = None,
        meet_name: Optional[str] = None,
    ) -> "CompletenessVerdict":
        return cls(
            meet_id=meet_id,
            remote_id=remote_id,
            meet_name=meet_name,
            status=VerdictStatus.FAILED,
            error_log=[error],
        )


class LedgerEntry(DomainModel):
    """Durable completion record for one meet."""
    meet_id: int
    remote_id: Optional[int] = None
    status: VerdictStatus = VerdictStatus.UNKNOWN
    is_complete: bool = False
    remote_count: Optional[int] = None
    local_count: Optional[int] = None
    last_checked_at: Optional[dt.datetime] = None
    completed_at: Optional[dt.datetime] = None
    reason: Optional[str] = None
    error_log: list[str] = Field(default_factory=list)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
