"""Domain enumerations for the meet reconciler."""
from __future__ import annotations

from enum import Enum


class Gender(str, Enum):
    MALE = "M"
    FEMALE = "F"

    @property
    def opposite(self) -> "Gender":
        return Gender.FEMALE if self == Gender.MALE else Gender.MALE


class VerdictStatus(str, Enum):
    """Completeness state of one meet. Also the ledger's state machine."""
    UNKNOWN = "unknown"
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"
    FAILED = "failed"


class ResolverTier(str, Enum):
    """Escalation levels of the identity resolver, in attempt order."""
    EXACT_DIVISION = "A"
    SOURCE_DATE = "B"
    BROADENED_DIVISION = "C"
    HISTORY = "D"

    @property
    def label(self) -> str:
        return f"tier_{self.value.lower()}"


class ResolutionOutcome(str, Enum):
    FILLED = "filled"
    NOTHING_TO_FILL = "nothing_to_fill"
    UNRESOLVED = "unresolved"
    AMBIGUOUS = "ambiguous"


class ItemStatus(str, Enum):
    """Per-item status recorded in a session."""
    COMPLETED = "completed"
    INCOMPLETE = "incomplete"
    SKIPPED = "skipped"
    UNRESOLVED = "unresolved"
    FAILED = "failed"


class RunMode(str, Enum):
    MEETS = "meets"
    RESULTS = "results"


class LedgerBackend(str, Enum):
    JSON = "json"
    SQL = "sql"


class NameFormat(str, Enum):
    PLAIN = "plain"
    SURNAME_FIRST = "surname_first"
