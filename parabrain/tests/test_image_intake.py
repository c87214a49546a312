"""Tests for the image capture path."""

import json

import pytest
from unittest.mock import AsyncMock, Mock

from parabrain.capture.image_intake import (
    ImageAnalysis,
    ImageIntake,
    VisionAnalyzer,
    build_proxy_message,
    estimate_base64_bytes,
    format_amount,
    strip_data_url_prefix,
    to_iso_date,
)
from parabrain.capture.store import JsonCaptureStore
from parabrain.common.config import CaptureSettings
from parabrain.common.schemas import ActionType, CaptureResult, CaptureSource, ItemType, LogStatus, Operation

IMAGE = "YWJj"
FALLBACK = "2026-01-01T00:00:00+00:00"


def _analyzer(analysis=None, error=None):
    analyzer = Mock()
    analyzer.analyze = AsyncMock(return_value=analysis, side_effect=error)
    return analyzer


def _pipeline():
    pipeline = Mock()
    pipeline.run = AsyncMock(return_value=CaptureResult(
        action_type=ActionType.CREATE_PARA,
        operation=Operation.CREATE,
        chat_response="จดไว้ให้แล้วครับ",
        meta={"writeExecuted": True},
    ))
    return pipeline


def _intake(store, analyzer, pipeline=None, **settings):
    return ImageIntake(pipeline or _pipeline(), analyzer, store, CaptureSettings(**settings))


class TestHelpers:
    def test_strip_data_url_prefix(self):
        assert strip_data_url_prefix("data:image/png;base64,YWJj") == "YWJj"
        assert strip_data_url_prefix(" YWJj ") == "YWJj"

    def test_estimate_base64_bytes(self):
        assert estimate_base64_bytes("YWJj") == 3
        assert estimate_base64_bytes("YWI=") == 2
        assert estimate_base64_bytes("YQ==") == 1
        assert estimate_base64_bytes("") == 0

    def test_to_iso_date(self):
        assert to_iso_date("2026-02-03T10:00:00Z", FALLBACK) == "2026-02-03T10:00:00+00:00"
        assert to_iso_date("03/02/26", FALLBACK) == "2026-02-03T12:00:00+00:00"
        assert to_iso_date("31/02/2026", FALLBACK) == FALLBACK
        assert to_iso_date("yesterday", FALLBACK) == FALLBACK
        assert to_iso_date("", FALLBACK) == FALLBACK

    def test_format_amount(self):
        assert format_amount(1500.0) == "1,500"
        assert format_amount(12.5) == "12.50"


class TestImageAnalysis:
    def test_from_raw_normalizes(self):
        analysis = ImageAnalysis.from_raw({
            "isFinanceDocument": True,
            "transactionType": "transfer",
            "amount": "1,250.50",
            "currency": "",
            "merchant": "  7-Eleven \n Siam ",
            "confidence": 3,
        })
        assert analysis.transaction_type == "TRANSFER"
        assert analysis.amount == 1250.5
        assert analysis.currency == "THB"
        assert analysis.merchant == "7-Eleven Siam"
        assert analysis.confidence == 1.0

    def test_unknown_type_resolves_to_expense(self):
        assert ImageAnalysis(transaction_type="refund").resolved_type.value == "EXPENSE"

    def test_finance_signal_from_caption(self):
        assert ImageAnalysis().has_finance_signal("สลิปค่าไฟ")
        assert not ImageAnalysis(summary="a cat on a sofa").has_finance_signal("")

    def test_proxy_message(self):
        text = build_proxy_message("โน้ตประชุม", ImageAnalysis(summary="whiteboard", ocr_text="Q3 plan"))
        assert text.splitlines() == [
            "คำบรรยายจากผู้ใช้: โน้ตประชุม",
            "สรุปภาพ: whiteboard",
            "ข้อความในภาพ: Q3 plan",
        ]


class TestVisionAnalyzer:
    @pytest.mark.asyncio
    async def test_analyze_parses_json(self):
        llm = Mock()
        llm.is_available = True
        llm.generate_with_image.return_value = json.dumps({"isFinanceDocument": True, "amount": 80, "confidence": 0.9})
        analyzer = VisionAnalyzer(llm, CaptureSettings(retry_count=0))

        analysis = await analyzer.analyze(b"abc", "image/png", "", "Asia/Bangkok")

        assert analysis.amount == 80.0
        args, kwargs = llm.generate_with_image.call_args
        assert args[1] == b"abc"
        assert args[2] == "image/png"
        assert "User caption: (none)" in args[0]

    @pytest.mark.asyncio
    async def test_unavailable_raises(self):
        with pytest.raises(RuntimeError):
            await VisionAnalyzer(None, CaptureSettings()).analyze(b"abc", "image/png", "", "UTC")


class TestImageIntake:
    @pytest.mark.asyncio
    async def test_missing_image(self, tmp_path):
        intake = _intake(JsonCaptureStore(tmp_path / "store.json"), _analyzer())
        result = await intake.process("data:image/png;base64,")
        assert result.action_type is ActionType.IMAGE_MISSING
        assert result.status is LogStatus.FAILED

    @pytest.mark.asyncio
    async def test_oversize_rejected_before_analysis(self, tmp_path):
        analyzer = _analyzer()
        intake = _intake(JsonCaptureStore(tmp_path / "store.json"), analyzer, image_max_bytes=10)

        result = await intake.process("QUJD" * 10, image_meta={"telegramFileId": "f1"})

        assert result.action_type is ActionType.IMAGE_TOO_LARGE
        assert result.meta["imageBytes"] == 30
        assert result.meta["maxImageBytes"] == 10
        assert result.meta["telegramFileId"] == "f1"
        analyzer.analyze.assert_not_called()

    @pytest.mark.asyncio
    async def test_slip_becomes_transaction(self, tmp_path):
        store = JsonCaptureStore(tmp_path / "store.json")
        await store.insert_record("accounts", {"name": "Savings"})
        await store.insert_record("accounts", {"name": "Checking"})
        checking = (await store.list_records("accounts", filters={"name": "Checking"}))[0]
        analysis = ImageAnalysis(
            is_finance_document=True,
            transaction_type="EXPENSE",
            amount=1500,
            merchant="Big C",
            transaction_date="05/02/2026",
            confidence=0.9,
        )
        pipeline = _pipeline()
        intake = _intake(store, _analyzer(analysis), pipeline)

        result = await intake.process(IMAGE, source=CaptureSource.TELEGRAM)

        assert result.action_type is ActionType.CREATE_TX
        assert result.item_type is ItemType.TRANSACTION
        assert result.created_item["account_id"] == checking["id"]
        assert result.created_item["description"] == "Big C"
        assert result.created_item["transaction_date"] == "2026-02-05T12:00:00+00:00"
        assert "฿1,500 (Big C)" in result.chat_response
        assert result.meta["parseSource"] == "VISION"
        pipeline.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_slip_without_account(self, tmp_path):
        analysis = ImageAnalysis(is_finance_document=True, amount=80, confidence=0.9)
        intake = _intake(JsonCaptureStore(tmp_path / "store.json"), _analyzer(analysis))

        result = await intake.process(IMAGE)

        assert result.success is True
        assert result.action_type is ActionType.FINANCE_ACCOUNT_REQUIRED
        assert result.meta["reason"] == "FINANCE_ACCOUNT_REQUIRED"

    @pytest.mark.asyncio
    async def test_low_confidence_slip_goes_through_pipeline(self, tmp_path):
        store = JsonCaptureStore(tmp_path / "store.json")
        await store.insert_record("accounts", {"name": "Savings"})
        analysis = ImageAnalysis(is_finance_document=True, amount=80, confidence=0.3, summary="blurry receipt")
        pipeline = _pipeline()
        intake = _intake(store, _analyzer(analysis), pipeline)

        result = await intake.process(IMAGE, caption="ค่ากาแฟ", source=CaptureSource.LINE, tz_name="UTC")

        request = pipeline.run.await_args.args[0]
        assert request.source is CaptureSource.LINE
        assert request.timezone == "UTC"
        assert "คำบรรยายจากผู้ใช้: ค่ากาแฟ" in request.message
        assert result.meta["imageCapture"] is True
        assert result.meta["parseSource"] == "VISION"
        assert await store.list_records("transactions") == []

    @pytest.mark.asyncio
    async def test_nothing_readable(self, tmp_path):
        pipeline = _pipeline()
        intake = _intake(JsonCaptureStore(tmp_path / "store.json"), _analyzer(ImageAnalysis(confidence=0.2)), pipeline)

        result = await intake.process(IMAGE)

        assert result.action_type is ActionType.IMAGE_ANALYZED
        assert result.status is LogStatus.SUCCESS
        pipeline.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_analysis_failure_uses_caption(self, tmp_path):
        pipeline = _pipeline()
        intake = _intake(JsonCaptureStore(tmp_path / "store.json"), _analyzer(error=RuntimeError("vision down")), pipeline)

        result = await intake.process(IMAGE, caption="ซื้อนม")

        assert pipeline.run.await_args.args[0].message == "ซื้อนม"
        assert result.meta["parseSource"] == "CAPTION_FALLBACK"
        assert result.meta["imageError"] == "vision down"

    @pytest.mark.asyncio
    async def test_analysis_failure_without_caption(self, tmp_path):
        intake = _intake(JsonCaptureStore(tmp_path / "store.json"), _analyzer(error=RuntimeError("vision down")))

        result = await intake.process(IMAGE)

        assert result.success is False
        assert result.action_type is ActionType.IMAGE_ANALYSIS_ERROR
        assert result.meta["reason"] == "IMAGE_ANALYSIS_ERROR"
