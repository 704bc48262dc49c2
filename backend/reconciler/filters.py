"""Run filters. Invalid filters raise ValidationError before any remote call."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from shared.models.enums import Gender

from reconciler.errors import ValidationError


def _check_range(start: Optional[date], end: Optional[date], limit: Optional[int]) -> None:
    if start and end and start > end:
        raise ValidationError(f"start_date {start} is after end_date {end}")
    if limit is not None and limit < 1:
        raise ValidationError(f"limit must be positive, got {limit}")


@dataclass
class MeetFilter:
    meet_ids: list[int] = field(default_factory=list)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    limit: Optional[int] = None

    def __post_init__(self) -> None:
        _check_range(self.start_date, self.end_date, self.limit)
        if any(i <= 0 for i in self.meet_ids):
            raise ValidationError("meet ids must be positive")


@dataclass
class ResultFilter:
    meet_ids: list[int] = field(default_factory=list)
    result_ids: list[int] = field(default_factory=list)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    gender: Optional[Gender] = None
    missing_only: bool = True
    exclude_ids: set[int] = field(default_factory=set)
    limit: Optional[int] = None

    def __post_init__(self) -> None:
        _check_range(self.start_date, self.end_date, self.limit)
