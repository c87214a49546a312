"""
Capture Prompt Builder

Pure functions that turn a message plus its grounding snapshot into the
classifier prompt and the JSON schema the answer must follow.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..common.config import DEFAULT_TIMEZONE
from ..common.language import detect_language
from ..common.schemas import (
    CaptureSource,
    DedupRecommendation,
    DedupVerdict,
    Intent,
    Operation,
    ParaType,
    TransactionType,
)
from .context_loader import GroundingSnapshot
from .routing_rules import ROUTING_RULES_VERSION
from .text_utils import (
    MessageHints,
    format_context_rows,
    looks_like_meta_question,
    looks_like_planning_request,
    truncate,
)

PROMPT_TASK_COUNT = 20

PERSONA = (
    "# Persona\n"
    "You are a personal capture assistant and thinking partner who knows the user's PARA system.\n"
    "Style: direct, concise, friendly; no corporate tone; always end with a next step.\n"
    "Short messages from the user mean they trust you to infer context from recent turns."
)


def resolve_zone(tz_name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_TIMEZONE)


def _session_section(snapshot: GroundingSnapshot) -> str:
    turns = snapshot.session_turns
    if not turns:
        return ""
    lines = []
    for idx, turn in enumerate(turns):
        parts = [f'[Turn -{len(turns) - idx}] User: "{truncate(turn.user_message, 80)}"']
        if turn.action_type:
            parts.append(f"action={turn.action_type}")
        if turn.created_title:
            parts.append(f'created="{turn.created_title}"')
        if turn.project_title:
            parts.append(f'project="{turn.project_title}"')
        if turn.area_title:
            parts.append(f'area="{turn.area_title}"')
        lines.append(" → ".join(parts))
    plural = "s" if len(turns) > 1 else ""
    return (
        f"\nRecent session ({len(turns)} turn{plural}, same source, last 30min):\n" + "\n".join(lines) +
        "\nSession rule: If this message is short/ambiguous (no explicit project/area named) and a "
        "recent turn mentions a specific project, assume the same project. Override only if the user "
        "names a different project."
    )


def _memory_section(snapshot: GroundingSnapshot) -> str:
    if not snapshot.memory:
        return ""
    lines = [f"[{m.category}] {m.key}: {truncate(m.value, 120)}" for m in snapshot.memory]
    return "\nMemory (what you know about the user):\n" + "\n".join(lines)


def _learnings_section(snapshot: GroundingSnapshot) -> str:
    if not snapshot.learnings:
        return ""
    lines = [f"[{l.category}/{l.outcome}] {truncate(l.lesson, 120)}" for l in snapshot.learnings]
    return "\nLearnings (from earlier conversations):\n" + "\n".join(lines)


def _message_header(
    message: str,
    urls: Sequence[str],
    url_title: Optional[str],
    hints: Optional[MessageHints],
) -> str:
    lines = [f'Msg: "{message}"']
    if urls:
        lines.append(f"URLs: {', '.join(urls)}")
    if url_title:
        lines.append(f'URL Title: "{url_title}" (use this as the resource title)')
    if hints and hints.tags:
        lines.append("User tags: " + " ".join(f"#{t}" for t in hints.tags) + " (add to suggestedTags)")
    if hints and hints.area_hint:
        lines.append(f'User area hint: "{hints.area_hint}" (use as relatedAreaTitle if area exists)')
    return "\n".join(lines)


def build_capture_prompt(
    *,
    message: str,
    source: CaptureSource,
    snapshot: GroundingSnapshot,
    dedup: DedupVerdict,
    confirm_threshold: float,
    tz_name: Optional[str] = None,
    urls: Sequence[str] = (),
    url_title: Optional[str] = None,
    hints: Optional[MessageHints] = None,
    now: Optional[datetime] = None,
) -> str:
    zone = resolve_zone(tz_name)
    now = now or datetime.now(timezone.utc)
    local_now = now.astimezone(zone)
    language = detect_language(message)

    is_planning = looks_like_planning_request(message)
    is_meta = looks_like_meta_question(message)

    dedup_line = f"Dedup: dup={str(dedup.is_duplicate).lower()}; reason={dedup.reason}"
    if dedup.matched:
        dedup_line += f"; id={dedup.matched.id}"

    meta_line = ""
    if is_meta:
        meta_line = (
            "\nMeta-question detected: the user is asking WHY/EXPLAIN. You MUST give a clear, "
            'informative explanation in chatResponse. Do NOT reply with just "รับทราบ". '
            "Explain what happened and what to do next."
        )

    planning_rule = ""
    if is_planning:
        planning_rule = (
            '\n11. Planning mode ("ทำยังไง/แนวทาง/framework/plan"): fill goal, prerequisites[], '
            "starterTasks[], nextActions[], riskNotes[], clarifyingQuestions[]."
        )

    tz_label = getattr(zone, "key", DEFAULT_TIMEZONE)

    rules = f"""Rules:
1. CHITCHAT→operation=CHAT (no DB write). ACTIONABLE→map to PARA/finance/module.
2. URL RULE (CRITICAL): Any message containing a URL is ALWAYS actionable. Set isActionable=true, operation=CREATE, type=Resources. If the user adds context like "Resource for X project" or "สำหรับโปรเจกต์ X" → set relatedProjectTitle=X. Never treat URL messages as CHITCHAT.
3. CAPABILITY QUESTION RULE (CRITICAL): If the message asks WHETHER you CAN do something ("ทำได้มั้ย", "สามารถ...ได้มั้ย", "ได้ไหม", "can you", "is it possible") it is a QUESTION, not a command. Set operation=CHAT, isActionable=false, confirm the capability and ask the user to confirm. Never auto-execute on a capability question.
4. If operation=CHAT: never claim saved/created. Be honest that nothing was written this turn.
5. META-QUESTION RULE: If the user asks "ทำไม", "why", "explain", "อธิบาย" or anything about system behavior → operation=CHAT, isActionable=false, and chatResponse MUST explain what happened and how to fix it (2-4 sentences). Never give a one-line non-answer.
6. Dedup: if dup=true, skip create unless the user explicitly asks again.
7. Low confidence (<{confirm_threshold:.2f}): keep operation and data; the system will ask for confirmation.
8. Reminder ("remind me/เตือน"): type=Tasks, dueDate=ISO8601 with offset, title=the action (not "remind me to..."), tag "reminder". Default 09:00 if no time is given.
9. dueDate from Thai time expressions (ISO8601, timezone {tz_label}):
   - "วันนี้"→today, "พรุ่งนี้"→+1d, "มะรืน"→+2d
   - "อาทิตย์หน้า"/"สัปดาห์หน้า"→next Monday, "สองอาทิตย์"→+14d
   - "ต้นเดือนหน้า"→1st of next month 09:00, "กลางเดือน"→15th, "สิ้นเดือน"/"ก่อนสิ้นเดือน"→last day of this month
   - weekday names ("วันจันทร์".."วันอาทิตย์")→next occurrence of that weekday
   - "เช้า"→08:00, "สาย"→10:00, "เที่ยง"→12:00, "บ่าย"→14:00, "เย็น"→17:00, "ค่ำ"→19:00, "ดึก"→22:00
   - "ด่วน"/"ด่วนมาก"/"urgent"→today 09:00, "เร็วๆนี้"→+2d
   - no time clue→leave dueDate empty (the system adds +7d 09:00)
10. Finance shorthands:
   - amount: "3k"→3000, "1.5k"→1500, "3M"→3000000; a bare number is EXPENSE when the context implies spending
   - "โอน X ไป [account]"/"transfer X to [account]"→TRANSACTION type=TRANSFER with accountId from Accounts
   - "ได้รับ/ได้"→INCOME, "จ่าย/ซื้อ/ค่า"→EXPENSE
   - several expenses in one message: pick the larger or most explicit one and mention the others in chatResponse{planning_rule}"""

    para = f"""PARA (STRICT):
P1. Project→must have an Area: always set relatedAreaTitle from the existing Areas (closest fit).
P2. Task parent order: (a) relatedProjectTitle if the project exists → (b) relatedAreaTitle if the area exists → (c) askForParent=true + clarifyingQuestion if unsure.
P3. createProjectIfMissing=true only when the area is also known (set relatedAreaTitle).
P4. Never orphan a Task or Project without a parent.
- "#tag"/"@area" prefixes→apply as tag/area hint. "!personal"→Area personal.
- Travel one-off→"Side Projects & Experiments". With family→"Family & Relationships". Fitness→"Health & Energy".
- "ซื้อ/จัด/หา X สำหรับ [project]"→Task under that project, not standalone.
(routing v{ROUTING_RULES_VERSION})"""

    sections = [
        "Areas:\n" + format_context_rows(snapshot.areas, ["id", "title"]),
        "Projects:\n" + format_context_rows(snapshot.projects, ["id", "title", "category"]),
        "Tasks (pending):\n" + format_context_rows(snapshot.tasks[:PROMPT_TASK_COUNT], ["id", "title", "category"]),
    ]
    if snapshot.accounts:
        sections.append("Accounts:\n" + format_context_rows(snapshot.accounts, ["id", "name"]))
    if snapshot.modules:
        sections.append("Modules:\n" + format_context_rows(snapshot.modules, ["id", "name"]))
    if snapshot.custom_instructions:
        sections.append("Custom:\n" + "\n".join(
            f"{i}. {line}" for i, line in enumerate(snapshot.custom_instructions, start=1)
        ))

    tail = _memory_section(snapshot) + _learnings_section(snapshot) + _session_section(snapshot)

    header = (
        f"{PERSONA}\n\n"
        "# Task: PARA Brain Capture Router. Return strict JSON only.\n"
        f"Now: {local_now.strftime('%Y-%m-%d %H:%M')} ({tz_label}) | ISO: {now.isoformat()} | Source: {source.value}\n"
        f"Reply language: {language.reply_language}\n"
        f"{_message_header(message, urls, url_title, hints)}\n"
        f"{dedup_line}{meta_line}"
    )

    return "\n\n".join([header, rules, para, *sections]) + tail


def _nullable(schema: Dict[str, Any]) -> Dict[str, Any]:
    return {**schema, "nullable": True}


def _enum(values: List[str]) -> Dict[str, Any]:
    return {"type": "string", "enum": values}


def build_response_schema() -> Dict[str, Any]:
    """JSON schema for the classifier answer (camelCase keys)"""
    string = {"type": "string"}
    string_list = {"type": "array", "items": {"type": "string"}}

    properties: Dict[str, Any] = {
        "intent": _enum([i.value for i in Intent]),
        "confidence": {"type": "number"},
        "isActionable": {"type": "boolean"},
        "operation": _enum([o.value for o in Operation]),
        "chatResponse": string,
        "title": _nullable(string),
        "summary": _nullable(string),
        "category": _nullable(string),
        "type": _nullable(_enum([t.value for t in ParaType])),
        "relatedItemId": _nullable(string),
        "relatedProjectTitle": _nullable(string),
        "relatedAreaTitle": _nullable(string),
        "createProjectIfMissing": _nullable({"type": "boolean"}),
        "askForParent": _nullable({"type": "boolean"}),
        "clarifyingQuestion": _nullable(string),
        "suggestedTags": _nullable(string_list),
        "dueDate": _nullable(string),
        "amount": _nullable({"type": "number"}),
        "transactionType": _nullable(_enum([t.value for t in TransactionType])),
        "accountId": _nullable(string),
        "targetModuleId": _nullable(string),
        "moduleDataRaw": _nullable({
            "type": "array",
            "items": {
                "type": "object",
                "properties": {"key": string, "value": string},
                "required": ["key", "value"],
            },
        }),
        "dedupRecommendation": _nullable(_enum([d.value for d in DedupRecommendation])),
        "goal": _nullable(string),
        "assumptions": _nullable(string_list),
        "prerequisites": _nullable(string_list),
        "starterTasks": _nullable({
            "type": "array",
            "items": {
                "type": "object",
                "properties": {"title": string, "description": _nullable(string)},
                "required": ["title"],
            },
        }),
        "nextActions": _nullable(string_list),
        "clarifyingQuestions": _nullable(string_list),
        "riskNotes": _nullable(string_list),
        "recommendedProjectTitle": _nullable(string),
        "recommendedAreaTitle": _nullable(string),
    }
    return {
        "type": "object",
        "properties": properties,
        "required": ["intent", "confidence", "isActionable", "operation", "chatResponse"],
    }


def render_schema_instruction(schema: Dict[str, Any]) -> str:
    """Schema appended to the prompt for providers without native schema support"""
    return "Respond with one JSON object matching this schema:\n" + json.dumps(schema, ensure_ascii=False)
