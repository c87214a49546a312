"""
Message Parsing Helpers

Pure text helpers used across the capture pipeline:
- confirm / done command parsing
- URL, hashtag and area-hint extraction
- Thai/English question classifiers (planning, capability, meta)
- write-claim detection for chat replies
- amount shorthand ("3k", "1.5 ล้าน")
- planning guidance rendering
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..common.llm_utils import safe_number
from ..common.schemas import ParaType, StarterTask, WRITE_ACTION_TYPES, parse_log_payload


def truncate(text: Any, max_len: int = 180) -> str:
    value = "" if text is None else str(text)
    if len(value) <= max_len:
        return value
    return value[:max_len] + "..."


def normalize_message(text: str) -> str:
    """Collapse runs of whitespace and trim"""
    return re.sub(r"\s+", " ", text or "").strip()


def format_context_rows(rows: Iterable[Dict[str, Any]], fields: Sequence[str]) -> str:
    """Render rows as ``field=value | field=value`` lines"""
    lines = []
    for row in rows:
        parts = []
        for name in fields:
            value = row.get(name)
            if value is None or value == "":
                continue
            parts.append(f"{name}={truncate(value, 180)}")
        if parts:
            lines.append(" | ".join(parts))
    return "\n".join(lines) if lines else "(none)"


# ============================================================================
# Confirm / done commands
# ============================================================================

_COMPLETE_RE = re.compile(r"^(เสร็จแล้ว|ทำเสร็จ|เสร็จ|done)\s*[:\-]\s*(.+)$", re.IGNORECASE | re.DOTALL)
_CONFIRM_RE = re.compile(r"^(ยืนยัน|confirm|yes)\s*[:\-]\s*(.+)$", re.IGNORECASE | re.DOTALL)
_QUICK_CONFIRM_RE = re.compile(r"^(ยืนยัน|confirm|yes|สร้างเลย|ทำเลย)(?![\w\u0E00-\u0E7F])", re.IGNORECASE)


@dataclass(frozen=True)
class ConfirmCommand:
    """Result of parsing a possible confirmation prefix"""
    force: bool
    message: str
    complete_target: Optional[str] = None


def parse_confirm_command(raw: str) -> ConfirmCommand:
    text = (raw or "").strip()

    match = _COMPLETE_RE.match(text)
    if match:
        target = match.group(2).strip()
        if target:
            return ConfirmCommand(force=True, message=f"เสร็จ: {target}", complete_target=target)

    match = _CONFIRM_RE.match(text)
    if match:
        stripped = match.group(2).strip()
        if stripped:
            return ConfirmCommand(force=True, message=stripped)

    if _QUICK_CONFIRM_RE.match(text):
        return ConfirmCommand(force=True, message=text)

    return ConfirmCommand(force=False, message=text)


# ============================================================================
# Extraction
# ============================================================================

_URL_RE = re.compile(r"https?://[^\s)]+", re.IGNORECASE)
_TAG_RE = re.compile(r"#([\w\u0E00-\u0E7F]+)")
_AREA_HINT_RE = re.compile(r"(?:^|\s)[@!]([\w\u0E00-\u0E7F]+)")


def extract_urls(text: str) -> List[str]:
    seen = []
    for url in _URL_RE.findall(text or ""):
        if url not in seen:
            seen.append(url)
    return seen


def strip_urls(text: str) -> str:
    return normalize_message(_URL_RE.sub(" ", text or ""))


@dataclass
class MessageHints:
    tags: List[str] = field(default_factory=list)
    area_hint: Optional[str] = None


def extract_hints(text: str) -> MessageHints:
    tags = []
    for tag in _TAG_RE.findall(text or ""):
        tag = tag.lower()
        if tag not in tags:
            tags.append(tag)
    area = _AREA_HINT_RE.search(text or "")
    return MessageHints(tags=tags, area_hint=area.group(1) if area else None)


# ============================================================================
# Message classifiers
# ============================================================================

def _any_match(patterns: Sequence[re.Pattern], text: str) -> bool:
    return any(p.search(text or "") for p in patterns)


_PLANNING_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"ต้องรู้อะไร", r"ทำยังไง", r"เริ่มยังไง", r"ควรเริ่ม", r"แนวทาง",
    r"framework", r"roadmap", r"strategy", r"guide", r"\bplan\b", r"\bstep\b",
    r"แบ่งงาน", r"แตกงาน",
)]

_AUTO_PLAN_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"จัดให้", r"ทำให้", r"บันทึก", r"สร้างให้", r"แตก\s*task", r"split\s*task", r"ช่วยวาง",
)]

_CAPABILITY_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"สามารถ.{0,40}(ได้มั้ย|ได้ไหม|ได้เลยไหม|ได้หรือเปล่า)",
    r"ทำ.{0,30}(ได้มั้ย|ได้ไหม|ได้เลยไหม)",
    r"บันทึก.{0,30}(ได้มั้ย|ได้ไหม|ได้เลยไหม)",
    r"รับ.{0,20}(ได้มั้ย|ได้ไหม)",
    r"can (you|it).{0,40}\?",
    r"is it possible",
    r"able to",
    r"support.{0,20}\?",
)]

_META_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"ทำไม(ไม่|ถึง|จึง)", r"เพราะ(อะไร|ไร)", r"ทำไม",
    r"why (didn|don|can|won|isn|aren)", r"why not",
    r"ไม่บันทึก.*ทำไม", r"ไม่สร้าง.*ทำไม", r"ไม่ทำ.*ทำไม",
    r"explain", r"อธิบาย", r"หมายความว่า", r"แปลว่าอะไร", r"คืออะไร", r"ช่วยอธิบาย",
)]


def looks_like_planning_request(text: str) -> bool:
    return _any_match(_PLANNING_PATTERNS, text)


def wants_auto_capture_plan(text: str) -> bool:
    return _any_match(_AUTO_PLAN_PATTERNS, text)


def looks_like_capability_question(text: str) -> bool:
    return _any_match(_CAPABILITY_PATTERNS, text)


def looks_like_meta_question(text: str) -> bool:
    return _any_match(_META_PATTERNS, text)


# ============================================================================
# Write claims
# ============================================================================

_NO_WRITE_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"ยังไม่บันทึก", r"ยังไม่ได้บันทึก", r"ไม่ได้บันทึก", r"ยังไม่สร้าง", r"ยังไม่ได้สร้าง",
    r"not saved", r"not created", r"did not save", r"without saving",
)]

_WRITE_CLAIM_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"บันทึก.*เรียบร้อย", r"เก็บ.*เรียบร้อย", r"สร้าง.*เรียบร้อย",
    r"บันทึก.*ให้แล้ว", r"เก็บ.*ให้แล้ว", r"เพิ่ม.*ให้แล้ว",
    r"\bsaved\b", r"\bstored\b", r"\bcreated\b", r"\badded\b.*\bto\b",
)]


def response_has_explicit_no_write(text: str) -> bool:
    return _any_match(_NO_WRITE_PATTERNS, text)


def response_claims_write(text: str) -> bool:
    if not text or response_has_explicit_no_write(text):
        return False
    return _any_match(_WRITE_CLAIM_PATTERNS, text)


def has_committed_write(action_type: Optional[str], ai_response: Any) -> bool:
    """True if a logged run actually wrote a record"""
    if action_type and action_type in WRITE_ACTION_TYPES:
        return True
    payload = parse_log_payload(ai_response)
    if not payload:
        return False
    if payload.get("createdItem"):
        return True
    items = payload.get("createdItems")
    return isinstance(items, list) and len(items) > 0


# ============================================================================
# Amounts and coercion
# ============================================================================

_AMOUNT_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(พัน|หมื่น|แสน|ล้าน|[kKมพ]|[mM])?$")

_AMOUNT_MULTIPLIERS = {
    "k": 1_000, "ม": 1_000, "พ": 1_000, "พัน": 1_000,
    "หมื่น": 10_000, "แสน": 100_000,
    "m": 1_000_000, "ล้าน": 1_000_000,
}


def parse_amount_shorthand(value: Any) -> Optional[float]:
    """``"3k"`` -> 3000.0, ``"1.5 ล้าน"`` -> 1500000.0; numbers pass through"""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return safe_number(value)
    text = str(value).replace(",", "").strip()
    match = _AMOUNT_RE.match(text)
    if not match:
        return None
    number = float(match.group(1))
    unit = match.group(2)
    if not unit:
        return number
    return number * _AMOUNT_MULTIPLIERS[unit.lower() if unit.isascii() else unit]


def to_safe_tags(tags: Iterable[Any], limit: int = 12) -> List[str]:
    out: List[str] = []
    for tag in tags or []:
        text = str(tag).strip().lstrip("#")
        if text and text not in out:
            out.append(text)
        if len(out) >= limit:
            break
    return out


def to_safe_text_list(values: Iterable[Any], limit: int = 6) -> List[str]:
    out = []
    for value in values or []:
        text = str(value).strip() if value is not None else ""
        if text:
            out.append(text)
        if len(out) >= limit:
            break
    return out


def normalize_type(value: Optional[ParaType]) -> ParaType:
    return value or ParaType.TASKS


def find_by_title(rows: Iterable[Dict[str, Any]], title: Optional[str]) -> Optional[Dict[str, Any]]:
    """Exact case-insensitive title/name match first, then substring"""
    needle = (title or "").strip().lower()
    if not needle:
        return None
    rows = list(rows or [])

    def _names(row):
        return [str(row.get(k) or "").strip().lower() for k in ("title", "name")]

    for row in rows:
        if needle in _names(row):
            return row
    for row in rows:
        if any(name and needle in name for name in _names(row)):
            return row
    return None


def to_trip_project_title(seed: Optional[str]) -> str:
    cleaned = re.sub(r"^trip\s*[:\-]?\s*", "", (seed or "").strip(), flags=re.IGNORECASE)
    if not cleaned:
        return "Trip Plan"
    return f"Trip: {truncate(cleaned, 48)}"


# ============================================================================
# Planning guidance
# ============================================================================

def build_guidance_text(
    *,
    goal: Optional[str] = None,
    summary: Optional[str] = None,
    prerequisites: Sequence[str] = (),
    starter_tasks: Sequence[StarterTask] = (),
    next_actions: Sequence[str] = (),
    assumptions: Sequence[str] = (),
    risk_notes: Sequence[str] = (),
    clarifying_questions: Sequence[str] = (),
) -> str:
    """Render planning fields as plain-text sections separated by blank lines"""
    sections = []

    direction = goal or summary
    if direction:
        sections.append(f"Direction\n- เป้าหมาย: {direction}")

    def _bullets(title: str, items: Sequence[str], limit: int):
        items = to_safe_text_list(items, limit)
        if items:
            sections.append(title + "\n" + "\n".join(f"- {item}" for item in items))

    _bullets("Prerequisites", prerequisites, 5)

    if starter_tasks:
        lines = []
        for idx, task in enumerate(list(starter_tasks)[:6], start=1):
            line = f"{idx}. {task.title}"
            if task.description:
                line += f" - {task.description}"
            lines.append(line)
        sections.append("Starter Tasks\n" + "\n".join(lines))

    _bullets("Immediate Next Actions", next_actions, 4)
    _bullets("Assumptions", assumptions, 4)
    _bullets("Risk Notes", risk_notes, 3)
    _bullets("Need From You", clarifying_questions, 3)

    return "\n\n".join(sections)


def build_planning_task_content(summary: Optional[str], guidance: str) -> str:
    body = (summary or "").strip()
    if not guidance:
        return body
    return f"Summary\n{body}\n\nStarter Direction\n{guidance}"
