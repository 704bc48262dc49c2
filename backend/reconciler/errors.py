"""
Error taxonomy for the reconciler.

SourceUnavailable is retryable with backoff; SourceFormatChanged is not.
AmbiguousIdentity is routed to the unresolved list, never fatal.
PersistenceFailure is logged and degrades (ledger falls back to unknown).
ValidationError fails a run before any remote call.
"""
from __future__ import annotations

from typing import Any, Optional


class ReconcilerError(Exception):
    """Base for every reconciler error."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"type": type(self).__name__, "message": str(self), **self.context}


class SourceError(ReconcilerError):
    """Anything that went wrong talking to the remote source."""


class SourceUnavailable(SourceError):
    """Network error, timeout, 5xx/429 or open circuit. Retryable."""

    def __init__(self, message: str, operation: Optional[str] = None, **context: Any) -> None:
        super().__init__(message, operation=operation, **context)
        self.operation = operation


class SourceFormatChanged(SourceError):
    """The response no longer has the expected structure."""


class AmbiguousIdentity(ReconcilerError):
    """No disambiguating signal for a competitor, even after history lookup."""

    def __init__(self, name: str, candidates: int, **context: Any) -> None:
        super().__init__(
            f"could not disambiguate '{name}' between {candidates} identities",
            name=name,
            candidates=candidates,
            **context,
        )
        self.name = name
        self.candidates = candidates


class PersistenceFailure(ReconcilerError):
    """Ledger or store I/O error."""


class ValidationError(ReconcilerError):
    """Bad run filter or configuration."""
