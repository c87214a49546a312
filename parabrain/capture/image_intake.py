"""
Image Intake

Photos and screenshots enter the capture flow here. A vision call reads the
image; a confident receipt or transfer slip becomes a transaction directly,
anything else is turned into a text "proxy message" and handed to the
regular pipeline.
"""

import asyncio
import base64
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, field_validator

from ..common.config import CaptureSettings
from ..common.llm_client import LLMClient
from ..common.llm_utils import clamp_confidence, parse_llm_json, safe_number
from ..common.retry import RetryPolicy, run_with_retry
from ..common.schemas import (
    ActionType,
    CaptureRequest,
    CaptureResult,
    CaptureSource,
    DedupVerdict,
    Intent,
    ItemType,
    LogStatus,
    Operation,
    TransactionType,
)
from .pipeline import CapturePipeline
from .store import CaptureStore

logger = logging.getLogger("parabrain.capture.image_intake")

OCR_MAX_CHARS = 8000
PROXY_OCR_MAX_CHARS = 1600
OCR_PREVIEW_CHARS = 500

_DATA_URL_RE = re.compile(r"^data:[^;]+;base64,", re.IGNORECASE)
_DMY_RE = re.compile(r"(\d{1,2})[/\-](\d{1,2})[/\-](\d{2,4})")
_FINANCE_SIGNAL_RE = re.compile(
    r"(receipt|slip|invoice|promptpay|transfer|transaction|ยอดเงิน|ใบเสร็จ|สลิป|โอนเงิน|จ่ายเงิน|รับเงิน|บาท|฿)",
    re.IGNORECASE,
)

VISION_SYSTEM = "You read images for a personal assistant. Output a single JSON object and nothing else."

VISION_PROMPT = """Analyze the attached image from a personal assistant app.
Focus on finance receipts / transfer slips first.

User caption: {caption}
Timezone: {timezone}

Rules:
- If the image looks like a receipt/slip/invoice/payment proof, set isFinanceDocument=true.
- Extract OCR text in ocrText (best effort, keep key lines).
- If the amount is unclear, set amount=null.
- transactionType must be INCOME/EXPENSE/TRANSFER/UNKNOWN.
- transactionDate should be ISO if clear, else an empty string.
- confidence is 0..1.

Respond with JSON keys: isFinanceDocument, transactionType, amount, currency,
merchant, description, category, transactionDate, summary, ocrText, confidence."""

IMAGE_DEDUP = DedupVerdict(reason="Image capture path")


def _squash(value: Any) -> str:
    return re.sub(r"\s+", " ", str(value or "")).strip()


def strip_data_url_prefix(value: str) -> str:
    return _DATA_URL_RE.sub("", value or "").strip()


def estimate_base64_bytes(encoded: str) -> int:
    """Decoded size of a base64 payload without decoding it"""
    clean = strip_data_url_prefix(encoded)
    if not clean:
        return 0
    padding = 2 if clean.endswith("==") else 1 if clean.endswith("=") else 0
    return max(0, (len(clean) * 3) // 4 - padding)


def to_iso_date(value: str, fallback_iso: str) -> str:
    """ISO timestamps pass through; ``dd/mm/yy(yy)`` becomes noon UTC"""
    raw = _squash(value)
    if not raw:
        return fallback_iso
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.isoformat()
    except ValueError:
        pass
    match = _DMY_RE.search(raw)
    if match:
        day, month, year = (int(g) for g in match.groups())
        if year < 100:
            year += 2000
        try:
            return datetime(year, month, day, 12, 0, 0, tzinfo=timezone.utc).isoformat()
        except ValueError:
            return fallback_iso
    return fallback_iso


def format_amount(value: float) -> str:
    if float(value).is_integer():
        return f"{value:,.0f}"
    return f"{value:,.2f}"


TYPE_LABELS = {
    TransactionType.INCOME: "รายรับ",
    TransactionType.TRANSFER: "โอนเงิน",
    TransactionType.EXPENSE: "รายจ่าย",
}


class ImageAnalysis(BaseModel):
    """Structured reading of one image"""
    is_finance_document: bool = False
    transaction_type: str = "UNKNOWN"
    amount: Optional[float] = None
    currency: str = "THB"
    merchant: str = ""
    description: str = ""
    category: str = "General"
    transaction_date: str = ""
    summary: str = ""
    ocr_text: str = ""
    confidence: float = 0.0

    @field_validator("transaction_type", mode="before")
    @classmethod
    def _transaction_type(cls, v):
        candidate = str(v or "").upper()
        return candidate if candidate in ("INCOME", "EXPENSE", "TRANSFER") else "UNKNOWN"

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, v):
        return safe_number(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v):
        return clamp_confidence(v, default=0.0)

    @field_validator("ocr_text", mode="before")
    @classmethod
    def _ocr_text(cls, v):
        return _squash(v)[:OCR_MAX_CHARS]

    @field_validator("merchant", "description", "summary", "transaction_date", mode="before")
    @classmethod
    def _text(cls, v):
        return _squash(v)

    @field_validator("currency", mode="before")
    @classmethod
    def _currency(cls, v):
        return _squash(v) or "THB"

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, v):
        return _squash(v) or "General"

    @classmethod
    def from_raw(cls, data: Dict[str, Any]) -> "ImageAnalysis":
        return cls(
            is_finance_document=bool(data.get("isFinanceDocument")),
            transaction_type=data.get("transactionType"),
            amount=data.get("amount"),
            currency=data.get("currency"),
            merchant=data.get("merchant"),
            description=data.get("description"),
            category=data.get("category"),
            transaction_date=data.get("transactionDate"),
            summary=data.get("summary"),
            ocr_text=data.get("ocrText"),
            confidence=data.get("confidence", 0),
        )

    @property
    def resolved_type(self) -> TransactionType:
        if self.transaction_type in ("INCOME", "TRANSFER"):
            return TransactionType(self.transaction_type)
        return TransactionType.EXPENSE

    def has_finance_signal(self, caption: str) -> bool:
        if self.is_finance_document:
            return True
        return bool(_FINANCE_SIGNAL_RE.search(f"{self.summary} {self.ocr_text} {caption}"))


def build_proxy_message(caption: str, analysis: ImageAnalysis) -> str:
    parts = []
    if caption:
        parts.append(f"คำบรรยายจากผู้ใช้: {caption}")
    if analysis.summary:
        parts.append(f"สรุปภาพ: {analysis.summary}")
    if analysis.ocr_text:
        parts.append(f"ข้อความในภาพ: {analysis.ocr_text[:PROXY_OCR_MAX_CHARS]}")
    return "\n".join(parts)


class VisionAnalyzer:
    """Runs the vision model over one image."""

    def __init__(self, llm_client: Optional[LLMClient], settings: CaptureSettings):
        self._llm = llm_client
        self._policy = RetryPolicy.from_settings(settings)

    @property
    def is_available(self) -> bool:
        return self._llm is not None and self._llm.is_available

    async def analyze(self, image_bytes: bytes, mime_type: str, caption: str, tz_name: str) -> ImageAnalysis:
        if not self.is_available:
            raise RuntimeError("Vision model is not available")

        prompt = VISION_PROMPT.format(caption=caption or "(none)", timezone=tz_name)

        async def _call() -> str:
            return await asyncio.to_thread(
                self._llm.generate_with_image,
                prompt,
                image_bytes,
                mime_type,
                system=VISION_SYSTEM,
                timeout=self._policy.timeout,
            )

        raw = await run_with_retry(_call, self._policy, label="vision")
        return ImageAnalysis.from_raw(parse_llm_json(raw))


class ImageIntake:
    """Image capture entry point; text paths delegate to CapturePipeline."""

    def __init__(
        self,
        pipeline: CapturePipeline,
        analyzer: VisionAnalyzer,
        store: CaptureStore,
        settings: CaptureSettings,
    ):
        self._pipeline = pipeline
        self._analyzer = analyzer
        self._store = store
        self._settings = settings

    def _failure(self, source, reply, action_type, meta=None) -> CaptureResult:
        return CaptureResult(
            success=False,
            source=source,
            intent=Intent.CHITCHAT,
            confidence=0.0,
            operation=Operation.CHAT,
            chat_response=reply,
            action_type=action_type,
            status=LogStatus.FAILED,
            dedup=IMAGE_DEDUP,
            meta=meta or {},
        )

    async def process(
        self,
        image_base64: str,
        *,
        mime_type: str = "image/jpeg",
        caption: str = "",
        source: CaptureSource = CaptureSource.WEB,
        tz_name: Optional[str] = None,
        exclude_log_id: Optional[str] = None,
        image_meta: Optional[Dict[str, Any]] = None,
    ) -> CaptureResult:
        caption = _squash(caption)
        encoded = strip_data_url_prefix(image_base64 or "")
        image_meta = dict(image_meta or {})
        tz_name = tz_name or self._settings.timezone

        if not encoded:
            return self._failure(source, "ไม่พบไฟล์รูปสำหรับประมวลผลครับ", ActionType.IMAGE_MISSING, image_meta)

        image_bytes = estimate_base64_bytes(encoded)
        max_bytes = self._settings.image_max_bytes
        if image_bytes > max_bytes:
            logger.info("Rejected image of %d bytes (limit %d)", image_bytes, max_bytes)
            return self._failure(
                source,
                f"รูปใหญ่เกินกำหนด ({round(image_bytes / 1024)} KB) ลองส่งรูปที่เล็กลงหรือครอปเฉพาะส่วนสำคัญครับ",
                ActionType.IMAGE_TOO_LARGE,
                {"imageBytes": image_bytes, "maxImageBytes": max_bytes, **image_meta},
            )

        try:
            raw_bytes = base64.b64decode(encoded, validate=False)
            analysis = await self._analyzer.analyze(raw_bytes, mime_type or "image/jpeg", caption, tz_name)
        except Exception as e:
            logger.warning("Image analysis failed: %s", e)
            return await self._caption_fallback(e, caption, source, tz_name, exclude_log_id, image_meta)

        finance_signal = analysis.has_finance_signal(caption)
        has_amount = analysis.amount is not None and analysis.amount > 0
        vision_meta = {
            "imageCapture": True,
            "parseSource": "VISION",
            "analysisConfidence": analysis.confidence,
            "financeSignal": finance_signal,
        }

        if finance_signal and has_amount and analysis.confidence >= self._settings.image_finance_threshold:
            try:
                return await self._record_transaction(analysis, caption, source, vision_meta, image_meta)
            except Exception as e:
                logger.warning("Recording image transaction failed: %s", e)
                return await self._caption_fallback(e, caption, source, tz_name, exclude_log_id, image_meta)

        proxy = build_proxy_message(caption, analysis)
        if proxy:
            result = await self._pipeline.run(CaptureRequest(
                message=proxy,
                source=source,
                timezone=tz_name,
                exclude_log_id=exclude_log_id,
            ))
            result.meta.update(vision_meta)
            result.meta["ocrPreview"] = analysis.ocr_text[:OCR_PREVIEW_CHARS]
            result.meta.update(image_meta)
            return result

        return CaptureResult(
            success=True,
            source=source,
            intent=Intent.CHITCHAT,
            confidence=analysis.confidence,
            is_actionable=False,
            operation=Operation.CHAT,
            chat_response="รับรูปแล้วครับ แต่ยังไม่พบข้อมูลที่ต้องบันทึกชัดเจน",
            action_type=ActionType.IMAGE_ANALYZED,
            status=LogStatus.SUCCESS,
            dedup=IMAGE_DEDUP,
            meta={**vision_meta, **image_meta},
        )

    async def _record_transaction(self, analysis, caption, source, vision_meta, image_meta) -> CaptureResult:
        accounts = await self._store.list_records("accounts", limit=100)
        accounts.sort(key=lambda a: str(a.get("name") or ""))
        account = accounts[0] if accounts else None

        if not account or not account.get("id"):
            return CaptureResult(
                success=True,
                source=source,
                intent=Intent.FINANCE_CAPTURE,
                confidence=analysis.confidence,
                is_actionable=True,
                operation=Operation.CHAT,
                chat_response=(
                    "อ่านสลิปได้แล้วครับ แต่ยังไม่มีบัญชีใน Finance ให้บันทึก "
                    "ลองเพิ่มบัญชี 1 บัญชีก่อน แล้วส่งใหม่อีกครั้ง"
                ),
                action_type=ActionType.FINANCE_ACCOUNT_REQUIRED,
                status=LogStatus.SUCCESS,
                dedup=IMAGE_DEDUP,
                meta={
                    "analysisConfidence": analysis.confidence,
                    "financeSignal": vision_meta["financeSignal"],
                    "amount": analysis.amount,
                    "reason": "FINANCE_ACCOUNT_REQUIRED",
                    **image_meta,
                },
            )

        tx_type = analysis.resolved_type
        payload = {
            "description": analysis.description or analysis.merchant or caption or "Receipt/Slip",
            "amount": float(analysis.amount),
            "type": tx_type.value,
            "category": analysis.category or "General",
            "account_id": str(account["id"]),
            "transaction_date": to_iso_date(analysis.transaction_date, datetime.now(timezone.utc).isoformat()),
        }
        row = await self._store.insert_record("transactions", payload)
        logger.info("Recorded %s of %.2f from image", tx_type.value, payload["amount"])

        return CaptureResult(
            success=True,
            source=source,
            intent=Intent.FINANCE_CAPTURE,
            confidence=analysis.confidence,
            is_actionable=True,
            operation=Operation.TRANSACTION,
            chat_response=(
                f"บันทึกรายการจากรูปแล้วครับ: {TYPE_LABELS[tx_type]} "
                f"฿{format_amount(payload['amount'])} ({payload['description']})"
            ),
            item_type=ItemType.TRANSACTION,
            created_item=row,
            action_type=ActionType.CREATE_TX,
            status=LogStatus.SUCCESS,
            dedup=IMAGE_DEDUP,
            meta={
                **vision_meta,
                "hasAmount": True,
                "writeExecuted": True,
                "ocrPreview": analysis.ocr_text[:OCR_PREVIEW_CHARS],
                **image_meta,
            },
        )

    async def _caption_fallback(self, error, caption, source, tz_name, exclude_log_id, image_meta) -> CaptureResult:
        if caption:
            result = await self._pipeline.run(CaptureRequest(
                message=caption,
                source=source,
                timezone=tz_name,
                exclude_log_id=exclude_log_id,
            ))
            result.meta.update({
                "imageCapture": True,
                "parseSource": "CAPTION_FALLBACK",
                "imageError": str(error) or "unknown",
                **image_meta,
            })
            return result

        return self._failure(
            source,
            "อ่านรูปไม่สำเร็จในรอบนี้ ลองส่งภาพใหม่อีกครั้งได้เลยครับ",
            ActionType.IMAGE_ANALYSIS_ERROR,
            {"imageError": str(error) or "unknown", "reason": "IMAGE_ANALYSIS_ERROR", **image_meta},
        )
