"""
Data types for lifelog ingestion and analysis.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> str:
    """Current UTC timestamp in ISO format with a Z suffix.

    All timestamps written by lifelog are UTC. Provider timestamps are
    stored as received.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def format_timestamp(dt: datetime) -> str:
    """Format an aware datetime the same way utc_now() does."""
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def parse_timestamp(ts: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp to an aware datetime.

    Naive values are taken as UTC. Returns None for empty or invalid input.
    """
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(ts.strip().replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_epoch_ms(ts: Optional[str]) -> Optional[int]:
    """Epoch milliseconds for an ISO timestamp, or None if it doesn't parse."""
    dt = parse_timestamp(ts)
    if dt is None:
        return None
    return int(dt.timestamp() * 1000)


@dataclass
class LifelogEntry:
    """
    One recorded activity episode.

    The id is assigned by the provider and is the upsert key: the same id
    always maps to the same row across re-syncs.
    """
    id: str
    title: str = "Untitled entry"
    markdown: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    start_epoch_ms: Optional[int] = None
    end_epoch_ms: Optional[int] = None
    is_starred: bool = False
    updated_at: Optional[str] = None
    ingested_at: Optional[str] = None
    timezone: Optional[str] = None
    summary_hash: Optional[str] = None
    last_analyzed_at: Optional[str] = None


# Columns bound per segment row on insert. The per-statement batch size
# is derived from this count.
SEGMENT_COLUMNS = (
    "entry_id",
    "node_id",
    "path",
    "node_type",
    "content",
    "start_time",
    "end_time",
    "start_offset_ms",
    "end_offset_ms",
    "speaker_name",
    "speaker_identifier",
)


@dataclass
class ContentSegment:
    """
    One flattened node of an entry's content tree.

    node_id is "{entry_id}:{path}" where path is the dotted list of
    sibling indices from the root, e.g. "e1:0.2.1".
    """
    entry_id: str
    node_id: str
    path: str
    node_type: str = "paragraph"
    content: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    start_offset_ms: Optional[int] = None
    end_offset_ms: Optional[int] = None
    speaker_name: Optional[str] = None
    speaker_identifier: Optional[str] = None

    def as_row(self) -> tuple:
        return tuple(getattr(self, col) for col in SEGMENT_COLUMNS)


@dataclass
class AnalysisRecord:
    """A versioned insight record, unique per (entry_id, version)."""
    entry_id: str
    version: str
    model: str
    payload_hash: Optional[str]
    payload: dict[str, Any]
    created_at: str


@dataclass
class AnalysisEvent:
    """Append-only outcome of one analysis attempt."""
    id: int
    entry_id: Optional[str]
    status: str
    details: Optional[str]
    created_at: str


@dataclass
class Candidate:
    """Entry fields needed to build an analysis prompt."""
    id: str
    title: Optional[str]
    markdown: Optional[str]
    start_time: Optional[str]
    end_time: Optional[str]
    summary_hash: Optional[str]


@dataclass
class FetchPage:
    """One page of provider results."""
    items: list[dict[str, Any]]
    next_cursor: Optional[str] = None


@dataclass
class SyncStats:
    """Outcome of one sync pass."""
    processed: int = 0
    last_updated_at: Optional[str] = None
    mode: str = ""
    pages: int = 0
    segment_failures: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "lastUpdatedAt": self.last_updated_at,
            "mode": self.mode,
            "pages": self.pages,
            "segmentFailures": list(self.segment_failures),
            "failed": list(self.failed),
            "skippedReason": self.skipped_reason,
        }
