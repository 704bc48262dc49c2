from reconciler.sources.base import CompetitorCandidate, HistoryEntry, ResultsSource
from reconciler.sources.sport80 import Sport80Source

__all__ = [
    "CompetitorCandidate",
    "HistoryEntry",
    "ResultsSource",
    "Sport80Source",
]
