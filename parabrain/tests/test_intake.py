"""Tests for exactly-once event intake."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock, patch

from parabrain.capture.intake import (
    ALREADY_PROCESSED_REPLY,
    STILL_PROCESSING_REPLY,
    CaptureIntake,
    IntakeDisposition,
    new_event_id,
)
from parabrain.capture.store import DuplicateEventError, JsonCaptureStore
from parabrain.common.config import CaptureSettings
from parabrain.common.schemas import ActionType, CaptureLogRecord, CaptureResult, CaptureSource, LogStatus

SRC = CaptureSource.TELEGRAM
OLD = "2026-01-01T00:00:00+00:00"


def _result(reply="จดไว้ให้แล้วครับ"):
    return CaptureResult(source=SRC, action_type=ActionType.CREATE_PARA, chat_response=reply)


def _log(status=LogStatus.PROCESSING, **fields):
    fields.setdefault("id", "log-1")
    return CaptureLogRecord(event_source=SRC, event_id="e1", user_message="hi", status=status, **fields)


class TestHandle:
    @pytest.mark.asyncio
    async def test_new_event_is_processed_and_logged(self, tmp_path):
        store = JsonCaptureStore(tmp_path / "store.json")
        intake = CaptureIntake(store, CaptureSettings())
        run = AsyncMock(return_value=_result())

        outcome = await intake.handle(SRC, "e1", "buy milk", run)

        assert outcome.disposition is IntakeDisposition.PROCESSED
        assert not outcome.is_duplicate_event
        run.assert_awaited_once_with(outcome.log_id)
        log = await store.find_log(SRC, "e1")
        assert log.status is LogStatus.SUCCESS
        assert log.action_type == "CREATE_PARA"
        assert log.user_message == "buy milk"
        payload = json.loads(log.ai_response)
        assert payload["contract"] == "telegram_chat_v1"
        assert payload["chatResponse"] == "จดไว้ให้แล้วครับ"

    @pytest.mark.asyncio
    async def test_finished_event_replays(self, tmp_path):
        store = JsonCaptureStore(tmp_path / "store.json")
        intake = CaptureIntake(store, CaptureSettings())
        await intake.handle(SRC, "e1", "buy milk", AsyncMock(return_value=_result("first reply")))
        run = AsyncMock(return_value=_result("second reply"))

        outcome = await intake.handle(SRC, "e1", "buy milk", run)

        run.assert_not_called()
        assert outcome.disposition is IntakeDisposition.REPLAYED
        assert outcome.is_duplicate_event
        assert outcome.reply_text == "first reply"

    @pytest.mark.asyncio
    async def test_fresh_processing_is_in_progress(self, tmp_path):
        store = JsonCaptureStore(tmp_path / "store.json")
        await store.insert_log(_log())
        run = AsyncMock()

        outcome = await CaptureIntake(store, CaptureSettings()).handle(SRC, "e1", "hi", run)

        run.assert_not_called()
        assert outcome.disposition is IntakeDisposition.IN_PROGRESS
        assert outcome.reply_text == STILL_PROCESSING_REPLY

    @pytest.mark.asyncio
    async def test_stale_processing_is_reclaimed(self, tmp_path, caplog):
        import logging
        store = JsonCaptureStore(tmp_path / "store.json")
        await store.insert_log(_log(created_at=OLD, updated_at=OLD))
        run = AsyncMock(return_value=_result())

        with caplog.at_level(logging.WARNING, logger="parabrain.capture.intake"):
            outcome = await CaptureIntake(store, CaptureSettings()).handle(SRC, "e1", "hi", run)

        run.assert_awaited_once_with("log-1")
        assert outcome.disposition is IntakeDisposition.PROCESSED
        assert outcome.recovered_from_stale is True
        assert "Reclaimed stale" in caplog.text
        assert (await store.find_log(SRC, "e1")).status is LogStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_lost_reclaim_is_in_progress(self, tmp_path):
        store = JsonCaptureStore(tmp_path / "store.json")
        await store.insert_log(_log(created_at=OLD, updated_at=OLD))
        run = AsyncMock()

        with patch.object(store, "claim_log", AsyncMock(return_value=False)):
            outcome = await CaptureIntake(store, CaptureSettings()).handle(SRC, "e1", "hi", run)

        run.assert_not_called()
        assert outcome.disposition is IntakeDisposition.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_run_failure_marks_failed(self, tmp_path):
        store = JsonCaptureStore(tmp_path / "store.json")
        run = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            await CaptureIntake(store, CaptureSettings()).handle(SRC, "e1", "hi", run)

        log = await store.find_log(SRC, "e1")
        assert log.status is LogStatus.FAILED
        assert log.action_type == "ERROR"

    @pytest.mark.asyncio
    async def test_lost_insert_race_replays_winner(self, tmp_path):
        store = JsonCaptureStore(tmp_path / "store.json")
        winner = _log(LogStatus.SUCCESS, id="log-9", ai_response='{"chatResponse": "winner reply"}')
        run = AsyncMock()

        with patch.object(store, "insert_log", AsyncMock(side_effect=DuplicateEventError("TELEGRAM", "e1"))), \
                patch.object(store, "find_log", AsyncMock(side_effect=[None, winner])):
            outcome = await CaptureIntake(store, CaptureSettings()).handle(SRC, "e1", "hi", run)

        run.assert_not_called()
        assert outcome.disposition is IntakeDisposition.REPLAYED
        assert outcome.log_id == "log-9"
        assert outcome.reply_text == "winner reply"

    @pytest.mark.asyncio
    async def test_missing_event_id_gets_generated(self, tmp_path):
        store = JsonCaptureStore(tmp_path / "store.json")
        intake = CaptureIntake(store, CaptureSettings())
        run = AsyncMock(return_value=_result())

        first = await intake.handle(SRC, None, "hi", run)
        second = await intake.handle(SRC, "  ", "hi", run)

        assert first.disposition is second.disposition is IntakeDisposition.PROCESSED
        assert run.await_count == 2


class TestStaleness:
    def test_window(self):
        intake = CaptureIntake(None, CaptureSettings(processing_stale_seconds=90))
        now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        fresh = _log(updated_at=(now - timedelta(seconds=30)).isoformat())
        stale = _log(updated_at=(now - timedelta(seconds=90)).isoformat())
        assert not intake.is_stale(fresh, now)
        assert intake.is_stale(stale, now)


class TestReplyText:
    def test_replay_without_payload(self):
        from parabrain.capture.intake import IntakeOutcome
        outcome = IntakeOutcome(IntakeDisposition.REPLAYED, "log-1", log=_log(LogStatus.SUCCESS))
        assert outcome.reply_text == ALREADY_PROCESSED_REPLY

    def test_event_id_prefix(self):
        assert new_event_id(CaptureSource.LINE).startswith("LINE:")
