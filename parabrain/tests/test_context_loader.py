"""Tests for grounding snapshot loading."""

import json

import pytest
from unittest.mock import AsyncMock, patch

from parabrain.capture.context_loader import ContextLoader, session_turn_from_log
from parabrain.capture.store import JsonCaptureStore
from parabrain.common.config import CaptureSettings
from parabrain.common.schemas import CaptureLogRecord, CaptureSource, LogStatus, MemoryEntry


def _success_log(log_id, message, payload, source=CaptureSource.TELEGRAM):
    return CaptureLogRecord(
        id=log_id,
        event_source=source,
        event_id=log_id,
        user_message=message,
        action_type="CREATE_PARA",
        status=LogStatus.SUCCESS,
        ai_response=json.dumps(payload),
    )


class TestSessionTurn:
    def test_turn_from_payload(self):
        log = _success_log("l1", "buy mic", {
            "intent": "TASK_CAPTURE",
            "createdItems": [{"title": "Podcast"}, {"title": "Buy mic"}],
            "meta": {"relatedProjectTitle": "Podcast", "relatedAreaTitle": "Side Projects"},
        })
        turn = session_turn_from_log(log)
        assert turn.created_title == "Podcast"
        assert turn.project_title == "Podcast"
        assert turn.area_title == "Side Projects"
        assert turn.action_type == "CREATE_PARA"


class TestContextLoader:
    @pytest.mark.asyncio
    async def test_loads_all_sections(self, tmp_path):
        store = JsonCaptureStore(tmp_path / "store.json")
        await store.insert_record("projects", {"title": "Podcast"})
        await store.insert_record("tasks", {"title": "open", "is_completed": False})
        await store.insert_record("tasks", {"title": "closed", "is_completed": True})
        await store.upsert_memory(MemoryEntry(key="city", value="Bangkok"))
        await store.insert_log(_success_log("l1", "first", {"meta": {"relatedProjectTitle": "Podcast"}}))
        await store.insert_log(_success_log("l2", "second", {}))
        await store.insert_log(_success_log("l3", "on line", {}, source=CaptureSource.LINE))

        loader = ContextLoader(store, CaptureSettings())
        snapshot = await loader.load(CaptureSource.TELEGRAM, exclude_log_id="l2")

        assert [p["title"] for p in snapshot.projects] == ["Podcast"]
        assert [t["title"] for t in snapshot.tasks] == ["open"]
        assert snapshot.memory[0].value == "Bangkok"
        assert [t.user_message for t in snapshot.session_turns] == ["first"]
        assert snapshot.failed_sections == ()

    @pytest.mark.asyncio
    async def test_failed_read_is_isolated(self, tmp_path, caplog):
        import logging
        store = JsonCaptureStore(tmp_path / "store.json")
        await store.insert_record("areas", {"title": "Health & Energy"})

        loader = ContextLoader(store, CaptureSettings())
        with patch.object(store, "list_memory", AsyncMock(side_effect=RuntimeError("boom"))), \
             caplog.at_level(logging.WARNING, logger="parabrain.capture.context_loader"):
            snapshot = await loader.load()

        assert snapshot.failed_sections == ("memory",)
        assert snapshot.memory == ()
        assert snapshot.areas[0]["title"] == "Health & Energy"
        assert "boom" in caplog.text
