"""Tests for content tree flattening, entry mapping and fingerprints."""

from lifelog.fingerprint import FINGERPRINT_FIELDS, fingerprint, fingerprint_seed, needs_analysis
from lifelog.normalize import (
    DEFAULT_TITLE,
    flatten,
    lifelog_to_entry,
    lifelog_to_segments,
    timezone_label,
)
from tests.conftest import make_lifelog


class TestFlatten:
    def test_parent_then_child(self):
        segments = flatten("e1", [
            {"type": "heading1", "content": "Standup", "children": [
                {"type": "blockquote", "content": "hello"},
            ]},
        ])

        assert [s.node_id for s in segments] == ["e1:0", "e1:0.0"]
        assert [s.path for s in segments] == ["0", "0.0"]
        assert segments[0].node_type == "heading1"
        assert segments[1].content == "hello"

    def test_pre_order_across_siblings(self):
        segments = flatten("e1", [
            {"content": "a", "children": [
                {"content": "a0"},
                {"content": "a1", "children": [{"content": "a10"}]},
            ]},
            {"content": "b"},
        ])

        assert [s.content for s in segments] == ["a", "a0", "a1", "a10", "b"]
        assert [s.path for s in segments] == ["0", "0.0", "0.1", "0.1.0", "1"]

    def test_deterministic(self):
        tree = make_lifelog("e1")["contents"]
        first = [s.as_row() for s in flatten("e1", tree)]
        second = [s.as_row() for s in flatten("e1", tree)]
        assert first == second

    def test_empty_and_missing_content(self):
        assert flatten("e1", None) == []
        assert flatten("e1", []) == []

    def test_empty_text_nodes_are_kept(self):
        segments = flatten("e1", [{"type": "heading2", "content": ""}])
        assert len(segments) == 1
        assert segments[0].content == ""

    def test_default_node_type(self):
        segments = flatten("e1", [{"content": "x"}])
        assert segments[0].node_type == "paragraph"

    def test_speaker_and_offsets(self):
        segments = flatten("e1", [{
            "type": "blockquote",
            "content": "hi",
            "speakerName": "Sam",
            "speakerIdentifier": "user",
            "startOffsetMs": 100,
            "endOffsetMs": 900,
        }])
        s = segments[0]
        assert (s.speaker_name, s.speaker_identifier) == ("Sam", "user")
        assert (s.start_offset_ms, s.end_offset_ms) == (100, 900)

    def test_deep_tree(self):
        node = {"content": "leaf"}
        for depth in range(2000):
            node = {"content": str(depth), "children": [node]}

        segments = flatten("e1", [node])

        assert len(segments) == 2001
        assert segments[-1].content == "leaf"


class TestLifelogToEntry:
    def test_maps_fields(self):
        raw = make_lifelog("e1", title="Lunch", start_time="2024-05-01T03:00:00Z")

        entry = lifelog_to_entry(raw, "Asia/Tokyo")

        assert entry.id == "e1"
        assert entry.title == "Lunch"
        assert entry.start_epoch_ms == 1714532400000
        assert entry.timezone == "JST"
        assert entry.updated_at == raw["updatedAt"]
        assert entry.summary_hash == fingerprint(raw)

    def test_default_title(self):
        raw = make_lifelog("e1")
        raw["title"] = None
        assert lifelog_to_entry(raw).title == DEFAULT_TITLE

    def test_updated_at_falls_back_to_end_time(self):
        raw = make_lifelog("e1")
        del raw["updatedAt"]
        assert lifelog_to_entry(raw).updated_at == raw["endTime"]

    def test_unparsable_times(self):
        raw = make_lifelog("e1", start_time="not a time")
        entry = lifelog_to_entry(raw)
        assert entry.start_epoch_ms is None
        assert entry.timezone is None

    def test_segments_use_entry_id(self):
        segments = lifelog_to_segments(make_lifelog("abc"))
        assert all(s.entry_id == "abc" for s in segments)
        assert segments[0].node_id == "abc:0"


class TestTimezoneLabel:
    def test_unknown_zone_keeps_offset(self):
        assert timezone_label("2024-05-01T00:00:00Z", "Not/AZone") == "UTC"

    def test_missing_start(self):
        assert timezone_label(None, "UTC") is None


class TestFingerprint:
    def test_seed_field_order(self):
        seed = fingerprint_seed(make_lifelog("e1"))
        assert seed.startswith('{"id":"e1","updatedAt":')
        assert list(FINGERPRINT_FIELDS) == ["id", "updatedAt", "title", "startTime", "endTime"]

    def test_sha1_hex(self):
        h = fingerprint(make_lifelog("e1"))
        assert len(h) == 40
        int(h, 16)

    def test_changes_with_update(self):
        a = fingerprint(make_lifelog("e1", updated_at="2024-05-01T10:30:00Z"))
        b = fingerprint(make_lifelog("e1", updated_at="2024-05-01T11:00:00Z"))
        assert a != b

    def test_ignores_content_changes(self):
        a = make_lifelog("e1")
        b = make_lifelog("e1", contents=[{"content": "different"}])
        assert fingerprint(a) == fingerprint(b)

    def test_needs_analysis(self):
        assert needs_analysis("h1", None)
        assert not needs_analysis("h1", "h1")
        assert needs_analysis("h2", "h1")
