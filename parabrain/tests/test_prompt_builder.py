"""Tests for classifier prompt and response schema."""

from datetime import datetime, timezone

from parabrain.capture.context_loader import GroundingSnapshot
from parabrain.capture.prompt_builder import (
    build_capture_prompt,
    build_response_schema,
    render_schema_instruction,
    resolve_zone,
)
from parabrain.capture.routing_rules import ROUTING_RULES_VERSION
from parabrain.capture.text_utils import MessageHints
from parabrain.common.schemas import (
    CaptureSource,
    DedupMethod,
    DedupVerdict,
    MatchedRecordRef,
    MemoryEntry,
    SessionTurn,
)

NOW = datetime(2026, 3, 1, 2, 0, tzinfo=timezone.utc)


def _prompt(message="buy a tent", snapshot=None, dedup=None, **kwargs):
    return build_capture_prompt(
        message=message,
        source=CaptureSource.TELEGRAM,
        snapshot=snapshot or GroundingSnapshot(),
        dedup=dedup or DedupVerdict(reason="none"),
        confirm_threshold=0.72,
        tz_name="Asia/Bangkok",
        now=NOW,
        **kwargs,
    )


class TestBuildCapturePrompt:
    def test_header_and_rules(self):
        prompt = _prompt()
        assert 'Msg: "buy a tent"' in prompt
        assert "Now: 2026-03-01 09:00 (Asia/Bangkok)" in prompt
        assert "Source: TELEGRAM" in prompt
        assert "Reply language: English" in prompt
        assert "Low confidence (<0.72)" in prompt
        assert ROUTING_RULES_VERSION in prompt
        assert "Areas:\n(none)" in prompt

    def test_url_title_and_hints(self):
        prompt = _prompt(
            "read https://a.test",
            urls=["https://a.test"],
            url_title="A Guide",
            hints=MessageHints(tags=["work"], area_hint="health"),
        )
        assert "URLs: https://a.test" in prompt
        assert 'URL Title: "A Guide"' in prompt
        assert "#work" in prompt
        assert 'User area hint: "health"' in prompt

    def test_dedup_line(self):
        dedup = DedupVerdict(
            is_duplicate=True,
            reason="Found matching URL in resources",
            method=DedupMethod.URL_MATCH,
            matched=MatchedRecordRef(table="resources", id="r9"),
        )
        assert "Dedup: dup=true; reason=Found matching URL in resources; id=r9" in _prompt(dedup=dedup)

    def test_context_sections(self):
        snapshot = GroundingSnapshot(
            areas=({"id": "a1", "title": "Health & Energy"},),
            accounts=({"id": "acc1", "name": "Wallet"},),
            memory=(MemoryEntry(key="city", value="Bangkok", category="profile"),),
            session_turns=(SessionTurn(user_message="start podcast", project_title="Podcast"),),
            custom_instructions=("Reply briefly",),
        )
        prompt = _prompt(snapshot=snapshot)
        assert "id=a1 | title=Health & Energy" in prompt
        assert "Accounts:\nid=acc1 | name=Wallet" in prompt
        assert "[profile] city: Bangkok" in prompt
        assert 'project="Podcast"' in prompt
        assert "1. Reply briefly" in prompt
        assert "Modules:" not in prompt

    def test_meta_and_planning_rules(self):
        assert "Meta-question detected" in _prompt("ทำไมไม่บันทึก")
        assert "Planning mode" in _prompt("give me a roadmap for my podcast")
        assert "Planning mode" not in _prompt("buy milk")

    def test_thai_reply_language(self):
        assert "Reply language: Thai" in _prompt("ซื้อเต็นท์ใหม่")


class TestSchema:
    def test_required_fields(self):
        schema = build_response_schema()
        assert schema["required"] == ["intent", "confidence", "isActionable", "operation", "chatResponse"]
        assert "TRANSACTION" in schema["properties"]["operation"]["enum"]
        assert schema["properties"]["title"]["nullable"] is True

    def test_instruction(self):
        text = render_schema_instruction({"type": "object"})
        assert text.startswith("Respond with one JSON object")

    def test_bad_zone_falls_back(self):
        assert resolve_zone("Mars/Olympus").key == "Asia/Bangkok"
