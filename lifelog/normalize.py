"""
Normalize raw Limitless lifelogs into entry and segment records.

The content tree is flattened in pre-order. Each node gets a path of
sibling indices from the root ("0", "0.1", "0.1.2") and a node id of
"{entry_id}:{path}", so flattening the same tree twice yields the same
ids in the same order.
"""

import logging
from typing import Any, Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .fingerprint import fingerprint
from .types import ContentSegment, LifelogEntry, parse_timestamp, to_epoch_ms, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Untitled entry"
DEFAULT_NODE_TYPE = "paragraph"


def flatten(entry_id: str, nodes: Optional[Iterable[dict[str, Any]]]) -> list[ContentSegment]:
    """
    Flatten a content tree into an ordered list of segments.

    Every node is emitted, including nodes with empty text and nodes
    with children. Children follow their parent immediately.

    Args:
        entry_id: Owning entry id, used as the node id prefix
        nodes: Top-level content nodes (may be None)

    Returns:
        Segments in reading order
    """
    segments: list[ContentSegment] = []
    stack: list[tuple[tuple[int, ...], dict[str, Any]]] = [
        ((i,), node) for i, node in reversed(list(enumerate(nodes or [])))
    ]
    while stack:
        indices, node = stack.pop()
        path = ".".join(str(i) for i in indices)
        segments.append(ContentSegment(
            entry_id=entry_id,
            node_id=f"{entry_id}:{path}",
            path=path,
            node_type=node.get("type") or DEFAULT_NODE_TYPE,
            content=node.get("content"),
            start_time=node.get("startTime"),
            end_time=node.get("endTime"),
            start_offset_ms=node.get("startOffsetMs"),
            end_offset_ms=node.get("endOffsetMs"),
            speaker_name=node.get("speakerName"),
            speaker_identifier=node.get("speakerIdentifier"),
        ))
        children = node.get("children") or []
        for i in range(len(children) - 1, -1, -1):
            stack.append((indices + (i,), children[i]))
    return segments


def timezone_label(start_time: Optional[str], tz_name: Optional[str]) -> Optional[str]:
    """Short zone name ("JST", "UTC") for a start time shown in tz_name."""
    dt = parse_timestamp(start_time)
    if dt is None:
        return None
    if tz_name:
        try:
            dt = dt.astimezone(ZoneInfo(tz_name))
        except ZoneInfoNotFoundError:
            logger.warning("Unknown timezone %s; using the timestamp's own offset", tz_name)
    return dt.tzname()


def lifelog_to_entry(lifelog: dict[str, Any], tz_name: Optional[str] = None) -> LifelogEntry:
    """Map a provider lifelog to an entry record, including its fingerprint."""
    start_time = lifelog.get("startTime")
    end_time = lifelog.get("endTime")
    return LifelogEntry(
        id=lifelog["id"],
        title=lifelog.get("title") or DEFAULT_TITLE,
        markdown=lifelog.get("markdown"),
        start_time=start_time,
        end_time=end_time,
        start_epoch_ms=to_epoch_ms(start_time),
        end_epoch_ms=to_epoch_ms(end_time),
        is_starred=bool(lifelog.get("isStarred", False)),
        updated_at=lifelog.get("updatedAt") or end_time or start_time or utc_now(),
        timezone=timezone_label(start_time, tz_name),
        summary_hash=fingerprint(lifelog),
    )


def lifelog_to_segments(lifelog: dict[str, Any]) -> list[ContentSegment]:
    return flatten(lifelog["id"], lifelog.get("contents"))
