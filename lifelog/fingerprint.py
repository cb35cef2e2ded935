"""
Content fingerprints for change detection.

The fingerprint covers the fields the provider changes when an entry is
edited. It is stored on the entry at sync time and pinned on the analysis
row at analysis time; the two disagreeing means the entry needs analysis
again.
"""

import hashlib
import json
from typing import Any, Optional

# Order matters: the seed is hashed as serialized
FINGERPRINT_FIELDS = ("id", "updatedAt", "title", "startTime", "endTime")


def fingerprint_seed(lifelog: dict[str, Any]) -> str:
    """Deterministic compact JSON over the fingerprinted fields."""
    return json.dumps(
        {key: lifelog.get(key) for key in FINGERPRINT_FIELDS},
        separators=(",", ":"),
        ensure_ascii=False,
    )


def fingerprint(lifelog: dict[str, Any]) -> str:
    """SHA-1 hex digest of fingerprint_seed()."""
    return hashlib.sha1(fingerprint_seed(lifelog).encode("utf-8")).hexdigest()


def needs_analysis(entry_hash: Optional[str], analysis_hash: Optional[str]) -> bool:
    """True when no analysis exists or it was made from different content."""
    if analysis_hash is None:
        return True
    return entry_hash != analysis_hash
