"""
lifelog-sync: ingest Limitless lifelogs into SQLite and annotate them with LLM insights.

Basic usage:
    from lifelog import Lifelog

    ll = Lifelog()
    stats = ll.sync()
    analyzed = ll.analyze(limit=2)
"""

__version__ = "0.4.0"

from .api import Lifelog
from .errors import (
    AuthConfigurationError,
    LifelogError,
    MalformedResponseError,
    PartialBatchFailure,
    RateLimitError,
    TerminalClientError,
    TransientNetworkError,
)
from .types import AnalysisEvent, AnalysisRecord, ContentSegment, LifelogEntry, SyncStats

__all__ = [
    "Lifelog",
    "LifelogError",
    "AuthConfigurationError",
    "MalformedResponseError",
    "PartialBatchFailure",
    "RateLimitError",
    "TerminalClientError",
    "TransientNetworkError",
    "LifelogEntry",
    "ContentSegment",
    "AnalysisRecord",
    "AnalysisEvent",
    "SyncStats",
]
