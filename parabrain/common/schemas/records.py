"""
Record Schemas

Rows that outlive a single pipeline run: the capture log (idempotency ledger
and exact-duplicate evidence) and the grounding side-data built from it.
Structured PARA records themselves stay plain dicts owned by the store.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .capture import CaptureSource, LogStatus


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC"""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_log_payload(raw: Any) -> Optional[Dict[str, Any]]:
    """Decode a stored ai_response, tolerating double-encoded JSON"""
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str):
        return None
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if isinstance(decoded, str):
        try:
            decoded = json.loads(decoded)
        except json.JSONDecodeError:
            return None
    return decoded if isinstance(decoded, dict) else None


class CaptureLogRecord(BaseModel):
    """One inbound event; unique per (event_source, event_id)"""
    id: str
    event_source: CaptureSource
    event_id: Optional[str] = None
    user_message: str
    action_type: str = "THINKING"
    status: LogStatus = LogStatus.PROCESSING
    ai_response: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)

    @property
    def payload(self) -> Optional[Dict[str, Any]]:
        return parse_log_payload(self.ai_response)


class SessionTurn(BaseModel):
    """A recent successful exchange on the same channel"""
    user_message: str
    intent: Optional[str] = None
    action_type: Optional[str] = None
    created_title: Optional[str] = None
    project_title: Optional[str] = None
    area_title: Optional[str] = None


class MemoryEntry(BaseModel):
    """Long-term key/value fact about the user"""
    key: str
    value: str
    category: str = "general"
    confidence: float = 0.7
    source: str = "inferred_from_interaction"
    last_seen: str = Field(default_factory=utc_now_iso)


class LearningEntry(BaseModel):
    """Lesson recorded from a past outcome"""
    lesson: str
    category: str = "general"
    outcome: str = "neutral"
    trigger_message: Optional[str] = None
    is_active: bool = True
    created_at: str = Field(default_factory=utc_now_iso)
