"""
Analysis orchestration: turn stored entries into structured insight records.

Candidates are entries with no analysis for the current schema version,
or whose analysis was made from an older fingerprint. Each candidate goes
through a fallback chain until something parses:

    primary model -> one repair call on the same model -> secondary model

Candidates are processed strictly one at a time with a fixed delay in
between. A rate limit from the primary stops the run; whatever is left
stays stale and is picked up next time.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from .config import AnalysisConfig
from .errors import RateLimitError
from .parsing import ensure_analysis_json, parse_analysis
from .providers.base import InferenceProvider, extract_response_text
from .store import LifelogStore
from .types import Candidate, ContentSegment, utc_now

logger = logging.getLogger(__name__)

ANALYSIS_VERSION = "v1"
LAST_ANALYZED_KEY = "lifelog:lastAnalyzedAt"

SYSTEM_PROMPT = (
    "You are a productivity coach. Read the lifelog below and write a summary "
    "and action suggestions that stay readable on a monochrome display. "
    'Always format the mood field as "emoji text" '
    '(for example: "😊 upbeat", "😓 a little tired", "💪 motivated").'
)

ANALYSIS_JSON_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "summary": {"type": "string"},
        "mood": {"type": "string"},
        "tags": {"type": "array", "items": {"type": "string"}},
        "time_blocks": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "startTime": {"type": "string"},
                    "endTime": {"type": "string"},
                    "label": {"type": "string"},
                    "details": {"type": "string"},
                },
                "required": ["label"],
            },
        },
        "action_items": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "suggested_integration": {"type": "string"},
                    "due": {"type": "string"},
                },
                "required": ["title"],
            },
        },
        "suggestions": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "target": {"type": "string"},
                    "rationale": {"type": "string"},
                },
                "required": ["target", "rationale"],
            },
        },
    },
    "required": ["summary", "mood", "tags", "time_blocks", "action_items", "suggestions"],
}

_SCHEMA_TEXT = json.dumps(ANALYSIS_JSON_SCHEMA, indent=2)


def build_prompt_payload(candidate: Candidate, segments: Sequence[ContentSegment]) -> str:
    """Serialize an entry and its leading segments as the model's input."""
    return json.dumps({
        "meta": {
            "id": candidate.id,
            "title": candidate.title,
            "startTime": candidate.start_time,
            "endTime": candidate.end_time,
        },
        "markdown": candidate.markdown,
        "segments": [
            {
                "content": s.content,
                "startTime": s.start_time,
                "endTime": s.end_time,
                "speakerName": s.speaker_name,
                "nodeType": s.node_type,
            }
            for s in segments
        ],
    }, ensure_ascii=False)


def build_analysis_prompt(payload: str) -> str:
    return (
        f"{SYSTEM_PROMPT}\n"
        "Return ONLY valid JSON that matches the provided schema. "
        "Do not include commentary or code fences.\n\n"
        f"Schema:\n{_SCHEMA_TEXT}\n\n"
        "Analyze the following lifelog JSON and respond strictly with the requested schema:\n"
        f"{payload}"
    )


def build_repair_prompt(schema: dict[str, Any], attempt: str) -> str:
    return (
        "You fix malformed JSON by returning a corrected JSON document matching "
        "the provided schema. Return JSON only without commentary.\n"
        f"Schema:\n{json.dumps(schema)}\n\nAttempt:\n{attempt}"
    )


@dataclass
class AnalysisResult:
    """Outcome of one analysis run."""
    analyzed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    rate_limited: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "analyzed": list(self.analyzed),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
            "rateLimited": self.rate_limited,
        }


class AnalysisOrchestrator:
    """
    Selects stale entries and runs them through the inference fallback chain.

    Args:
        store: Lifelog store
        primary: Main inference provider (None disables analysis)
        secondary: Fallback provider, used only when the primary's output
            can't be parsed even after repair
        config: Analysis tuning (version, default limit, delay)
        disabled: Feature flag; when set, nothing is analyzed
        sleep: Delay function, injectable for tests
    """

    def __init__(
        self,
        store: LifelogStore,
        primary: Optional[InferenceProvider],
        secondary: Optional[InferenceProvider] = None,
        config: Optional[AnalysisConfig] = None,
        *,
        disabled: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._primary = primary
        self._secondary = secondary
        self._config = config or AnalysisConfig()
        self._disabled = disabled
        self._sleep = sleep

    @property
    def version(self) -> str:
        return self._config.version or ANALYSIS_VERSION

    def analyze(
        self,
        limit: Optional[int] = None,
        entry_ids: Optional[Sequence[str]] = None,
        force: bool = False,
    ) -> list[str]:
        """Analyze stale entries; returns the ids that were stored."""
        return self.run(limit=limit, entry_ids=entry_ids, force=force).analyzed

    def run(
        self,
        limit: Optional[int] = None,
        entry_ids: Optional[Sequence[str]] = None,
        force: bool = False,
    ) -> AnalysisResult:
        result = AnalysisResult()
        if self._disabled:
            logger.info("Inference disabled by flag; skipping analysis")
            return result
        if self._primary is None:
            logger.warning("No inference provider configured; skipping analysis")
            return result

        candidates = self._store.select_candidates(
            self.version,
            limit if limit is not None else self._config.limit,
            entry_ids=entry_ids,
            force=force,
        )
        logger.info("Analysis run: %d candidates (version %s)", len(candidates), self.version)

        for i, candidate in enumerate(candidates):
            if i > 0 and self._config.call_delay > 0:
                self._sleep(self._config.call_delay)

            try:
                model = self._analyze_one(candidate)
            except RateLimitError as e:
                result.rate_limited = True
                result.skipped = [c.id for c in candidates[i:]]
                logger.warning(
                    "Rate limit reached at %s, leaving %d entries for the next run: %s",
                    candidate.id, len(result.skipped), e,
                )
                break
            except Exception as e:
                logger.error("Analysis failed for %s: %s", candidate.id, e)
                self._store.log_event(candidate.id, "error", str(e))
                result.failed.append(candidate.id)
                continue

            self._store.log_event(candidate.id, "success", f"Analysis stored ({model})")
            result.analyzed.append(candidate.id)

        if result.analyzed:
            self._store.set_state(LAST_ANALYZED_KEY, utc_now())
        logger.info(
            "Analysis done: %d stored, %d failed, %d skipped",
            len(result.analyzed), len(result.failed), len(result.skipped),
        )
        return result

    def _analyze_one(self, candidate: Candidate) -> str:
        """Run the fallback chain for one candidate and persist the result.

        Returns the name of the model whose output was stored.
        """
        segments = self._store.get_segments(candidate.id, limit=self._config.segment_limit)
        payload = build_prompt_payload(candidate, segments)

        raw = self._primary.generate(build_analysis_prompt(payload), schema=ANALYSIS_JSON_SCHEMA)
        text = extract_response_text(raw)
        parsed = parse_analysis(text)
        model = self._primary.model

        if parsed is None:
            logger.info("Unparsable response for %s; asking %s to repair it", candidate.id, model)
            raw = self._primary.generate(
                build_repair_prompt(ANALYSIS_JSON_SCHEMA, text), schema=ANALYSIS_JSON_SCHEMA
            )
            text = extract_response_text(raw)
            parsed = parse_analysis(text)

        if parsed is None and self._secondary is not None:
            parsed = self._secondary_fallback(candidate.id, payload)
            if parsed is not None:
                model = self._secondary.model

        if parsed is None:
            # Raises MalformedResponseError with a preview of the last attempt
            parsed = ensure_analysis_json(text)

        self._store.upsert_analysis(
            candidate.id, self.version, parsed, candidate.summary_hash, model
        )
        self._store.mark_analyzed(candidate.id)
        return model

    def _secondary_fallback(self, entry_id: str, payload: str) -> Optional[dict[str, Any]]:
        logger.info("Falling back to %s for %s", self._secondary.model, entry_id)
        try:
            raw = self._secondary.generate(
                build_analysis_prompt(payload), schema=ANALYSIS_JSON_SCHEMA
            )
        except Exception as e:
            logger.warning("Secondary model %s failed for %s: %s", self._secondary.model, entry_id, e)
            return None
        return parse_analysis(extract_response_text(raw))
