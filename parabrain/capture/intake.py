"""
Capture Intake

Exactly-once processing per inbound event. Each ``(source, event_id)`` owns
one capture log row:

- no row         → insert PROCESSING, run, store the result payload
- finished row   → replay the stored reply, never run again
- fresh PROCESSING → report "still processing"
- stale PROCESSING → reclaim with a compare-and-set, then run

A concurrent insert that loses the unique race replays the winner's row.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from ..common.config import CaptureSettings
from ..common.schemas import (
    ActionType,
    CaptureLogRecord,
    CaptureResult,
    CaptureSource,
    LogStatus,
    parse_iso,
)
from .pipeline import to_capture_log_payload
from .store import CaptureStore, DuplicateEventError

logger = logging.getLogger("parabrain.capture.intake")

ALREADY_PROCESSED_REPLY = "ข้อความนี้ถูกประมวลผลไปแล้วครับ"
STILL_PROCESSING_REPLY = "กำลังประมวลผลข้อความนี้อยู่ครับ ลองรอสักครู่แล้วส่งใหม่ได้เลย"

RunFn = Callable[[str], Awaitable[CaptureResult]]


class IntakeDisposition(str, Enum):
    PROCESSED = "PROCESSED"
    REPLAYED = "REPLAYED"
    IN_PROGRESS = "IN_PROGRESS"


@dataclass
class IntakeOutcome:
    """What happened to one delivery"""
    disposition: IntakeDisposition
    log_id: Optional[str] = None
    result: Optional[CaptureResult] = None
    log: Optional[CaptureLogRecord] = None
    recovered_from_stale: bool = False

    @property
    def is_duplicate_event(self) -> bool:
        return self.disposition is not IntakeDisposition.PROCESSED

    @property
    def reply_text(self) -> str:
        if self.result is not None:
            return self.result.chat_response
        if self.disposition is IntakeDisposition.IN_PROGRESS:
            return STILL_PROCESSING_REPLY
        payload = self.log.payload if self.log else None
        text = str((payload or {}).get("chatResponse") or "").strip()
        return text or ALREADY_PROCESSED_REPLY


def new_event_id(source: CaptureSource) -> str:
    return f"{source.value}:{uuid.uuid4().hex}"


class CaptureIntake:
    """Log-row claim and replay around a pipeline run."""

    def __init__(self, store: CaptureStore, settings: CaptureSettings):
        self._store = store
        self._settings = settings

    def is_stale(self, log: CaptureLogRecord, now: Optional[datetime] = None) -> bool:
        """A PROCESSING row untouched for longer than the staleness window"""
        touched = parse_iso(log.updated_at) or parse_iso(log.created_at)
        if touched is None:
            return True
        now = now or datetime.now(timezone.utc)
        return (now - touched).total_seconds() >= self._settings.processing_stale_seconds

    async def handle(
        self,
        source: CaptureSource,
        event_id: Optional[str],
        user_message: str,
        run: RunFn,
    ) -> IntakeOutcome:
        """Run ``run(log_id)`` at most once for this event"""
        event_id = (event_id or "").strip() or new_event_id(source)
        recovered = False

        existing = await self._store.find_log(source, event_id)
        if existing is not None:
            if existing.status is not LogStatus.PROCESSING:
                logger.info("Replaying finished event %s:%s", source.value, event_id)
                return IntakeOutcome(IntakeDisposition.REPLAYED, existing.id, log=existing)

            if not self.is_stale(existing):
                return IntakeOutcome(IntakeDisposition.IN_PROGRESS, existing.id, log=existing)

            claimed = await self._store.claim_log(
                existing.id,
                LogStatus.PROCESSING,
                expected_updated_at=existing.updated_at,
                action_type="RETRYING",
            )
            if not claimed:
                logger.info("Stale event %s:%s already reclaimed", source.value, event_id)
                return IntakeOutcome(IntakeDisposition.IN_PROGRESS, existing.id, log=existing)

            logger.warning("Reclaimed stale PROCESSING event %s:%s", source.value, event_id)
            log_id = existing.id
            recovered = True
        else:
            record = CaptureLogRecord(
                id=uuid.uuid4().hex,
                event_source=source,
                event_id=event_id,
                user_message=user_message,
            )
            try:
                await self._store.insert_log(record)
            except DuplicateEventError:
                winner = await self._store.find_log(source, event_id)
                logger.info("Lost insert race for %s:%s", source.value, event_id)
                if winner is None or winner.status is LogStatus.PROCESSING:
                    return IntakeOutcome(IntakeDisposition.IN_PROGRESS, winner.id if winner else None, log=winner)
                return IntakeOutcome(IntakeDisposition.REPLAYED, winner.id, log=winner)
            log_id = record.id

        try:
            result = await run(log_id)
        except Exception:
            await self._store.update_log(log_id, action_type=ActionType.ERROR.value, status=LogStatus.FAILED)
            raise

        await self._store.update_log(
            log_id,
            ai_response=json.dumps(to_capture_log_payload(result), ensure_ascii=False),
            action_type=result.action_type.value,
            status=result.status,
        )
        return IntakeOutcome(
            IntakeDisposition.PROCESSED,
            log_id,
            result=result,
            recovered_from_stale=recovered,
        )
