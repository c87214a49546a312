"""
Decision Overrides

Deterministic corrections applied to the classifier's answer before any gate
or write. Each override is a pure ``(DecisionState) -> DecisionState``
function; OVERRIDES lists them in application order:

1. coerce_non_actionable      - non-actionable write → chat
2. guard_capability_question  - "can you ...?" → chat, invite confirmation
3. force_url_resource         - URL left as chat → resource create
4. apply_completion_shortcut  - "done: X" → complete task X
5. apply_auto_capture_plan    - "plan this and save it" → task create
6. apply_travel_routing       - travel wording → canonical area + Trip project
   (planning guidance is appended to chat replies right after)
7. sanitize_write_claim       - chat reply claiming a save → honest reply
8. guard_short_reply          - near-empty chat reply → generic offer
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Optional, Tuple

from ..common.schemas import ClassifierOutput, Intent, Operation, ParaType
from .context_loader import GroundingSnapshot
from .routing_rules import RoutingDecision, build_travel_routing
from .text_utils import (
    ConfirmCommand,
    build_guidance_text,
    find_by_title,
    looks_like_capability_question,
    looks_like_meta_question,
    looks_like_planning_request,
    normalize_message,
    response_claims_write,
    strip_urls,
    truncate,
    wants_auto_capture_plan,
)

logger = logging.getLogger("parabrain.capture.overrides")

DEFAULT_ACK = "รับทราบครับ"
CAPABILITY_REPLY = "ได้เลยครับ ต้องการให้บันทึกเลยไหม?"
AUTO_PLAN_NOTE = "รับทราบครับ ผมจัดเป็นแผนเริ่มต้นและบันทึกเป็น task ให้ทันที"
NOT_SAVED_REPLY = "รับทราบครับ ผมยังไม่ได้บันทึกลงฐานข้อมูลในรอบนี้"
SHORT_REPLY_FALLBACK = "รับทราบครับ ถ้าต้องการให้บันทึกหรือสร้างรายการ ให้ระบุเพิ่มเติมได้เลย"


@dataclass(frozen=True)
class DecisionState:
    """Working decision: classifier fields plus message-derived flags"""
    output: ClassifierOutput
    message: str
    snapshot: GroundingSnapshot
    urls: Tuple[str, ...] = ()
    url_title: Optional[str] = None
    classifier_actionable: bool = False
    force_confirmed: bool = False
    complete_target: Optional[str] = None
    planning_request: bool = False
    meta_question: bool = False
    capability_question: bool = False
    auto_capture_plan: bool = False
    travel: Optional[RoutingDecision] = None
    guidance: str = ""
    write_claim_sanitized: bool = False
    applied: Tuple[str, ...] = field(default=())

    @property
    def operation(self) -> Operation:
        return self.output.operation

    @property
    def reply(self) -> str:
        return self.output.chat_response

    def update(self, name: str, **changes) -> "DecisionState":
        """Copy with classifier-field changes, recording the override name"""
        return replace(
            self,
            output=self.output.model_copy(update=changes),
            applied=self.applied + (name,),
        )


def initial_state(
    output: ClassifierOutput,
    *,
    command: ConfirmCommand,
    message: str,
    snapshot: GroundingSnapshot,
    urls: Tuple[str, ...] = (),
    url_title: Optional[str] = None,
    auto_capture_plan_enabled: bool = True,
) -> DecisionState:
    """Pre-process classifier output and derive message flags"""
    changes = {}
    if not output.related_project_title and output.recommended_project_title:
        changes["related_project_title"] = normalize_message(output.recommended_project_title)
    if not output.related_area_title and output.recommended_area_title:
        changes["related_area_title"] = normalize_message(output.recommended_area_title)
    if not output.chat_response.strip():
        changes["chat_response"] = DEFAULT_ACK
    else:
        changes["chat_response"] = output.chat_response.strip()

    planning = looks_like_planning_request(message)
    return DecisionState(
        output=output.model_copy(update=changes),
        message=message,
        snapshot=snapshot,
        urls=tuple(urls),
        url_title=url_title,
        classifier_actionable=output.is_actionable,
        force_confirmed=command.force,
        complete_target=command.complete_target,
        planning_request=planning,
        meta_question=looks_like_meta_question(message),
        capability_question=looks_like_capability_question(message),
        auto_capture_plan=auto_capture_plan_enabled and planning and wants_auto_capture_plan(message),
    )


# ============================================================================
# Overrides
# ============================================================================

def coerce_non_actionable(state: DecisionState) -> DecisionState:
    if not state.output.is_actionable and state.operation.is_write:
        return state.update("coerce_non_actionable", operation=Operation.CHAT)
    return state


def guard_capability_question(state: DecisionState) -> DecisionState:
    if not state.capability_question or state.force_confirmed or state.complete_target:
        return state
    hint = state.output.title or truncate(strip_urls(state.message), 60) or "<รายการ>"
    reply = f"{CAPABILITY_REPLY}\nถ้าต้องการให้บันทึกทันที ให้พิมพ์: ยืนยัน: {hint}"
    return state.update(
        "guard_capability_question",
        operation=Operation.CHAT,
        is_actionable=False,
        chat_response=reply,
    )


def force_url_resource(state: DecisionState) -> DecisionState:
    if state.operation is not Operation.CHAT or not state.urls or state.meta_question:
        return state
    if state.capability_question and not state.force_confirmed:
        return state

    out = state.output
    title = out.title or state.url_title or truncate(strip_urls(state.message), 80) or "Captured Resource"
    reply = out.chat_response
    if not reply or reply == DEFAULT_ACK:
        reply = f'บันทึก Resource เรียบร้อยครับ — "{title}"'
    return state.update(
        "force_url_resource",
        operation=Operation.CREATE,
        type=out.type or ParaType.RESOURCES,
        title=title,
        summary=out.summary or state.message,
        is_actionable=True,
        chat_response=reply,
    )


def apply_completion_shortcut(state: DecisionState) -> DecisionState:
    if not state.complete_target:
        return state
    changes = {"operation": Operation.COMPLETE, "is_actionable": True}
    if not state.output.related_item_id:
        task = find_by_title(state.snapshot.tasks, state.complete_target)
        if task and task.get("id"):
            changes["related_item_id"] = str(task["id"])
        else:
            changes["title"] = state.complete_target
    return state.update("apply_completion_shortcut", **changes)


def apply_auto_capture_plan(state: DecisionState) -> DecisionState:
    out = state.output
    if not (state.auto_capture_plan and out.is_actionable and state.operation is Operation.CHAT):
        return state
    changes = {"operation": Operation.CREATE, "type": out.type or ParaType.TASKS}
    if not out.title and out.starter_tasks:
        changes["title"] = out.starter_tasks[0].title
    if not out.summary and out.goal:
        changes["summary"] = out.goal
    if out.create_project_if_missing is None:
        changes["create_project_if_missing"] = bool(out.related_project_title)
    changes["chat_response"] = f"{out.chat_response}\n\n{AUTO_PLAN_NOTE}"
    return state.update("apply_auto_capture_plan", **changes)


def apply_travel_routing(state: DecisionState) -> DecisionState:
    out = state.output
    seed = out.title or out.goal or out.summary or state.message
    routing = build_travel_routing(state.message, state.snapshot.areas, seed_title=seed)
    state = replace(state, travel=routing)
    if not routing.applied:
        return state
    if not (out.is_actionable or state.operation is Operation.CREATE):
        return state

    changes = {}
    current_area = (out.related_area_title or out.category or "").strip()
    matched = find_by_title(state.snapshot.areas, current_area) if current_area else None
    if matched is None or current_area.lower() in ("inbox", "general"):
        changes["related_area_title"] = routing.area_name
        changes["category"] = routing.area_name
    if not out.related_project_title and routing.suggested_project_title:
        changes["related_project_title"] = routing.suggested_project_title
    if routing.ensure_project_link and out.create_project_if_missing is None:
        changes["create_project_if_missing"] = True
    changes["chat_response"] = f"{out.chat_response}\n\n(จัดหมวดอัตโนมัติ: {routing.area_name})"
    logger.debug("Travel routing applied: %s -> %s", routing.reason, routing.area_name)
    return state.update("apply_travel_routing", **changes)


def append_planning_guidance(state: DecisionState) -> DecisionState:
    if not state.planning_request:
        return state
    out = state.output
    guidance = build_guidance_text(
        goal=out.goal,
        summary=out.summary,
        prerequisites=out.prerequisites,
        starter_tasks=out.starter_tasks,
        next_actions=out.next_actions,
        assumptions=out.assumptions,
        risk_notes=out.risk_notes,
        clarifying_questions=out.clarifying_questions,
    )
    state = replace(state, guidance=guidance)
    if state.operation is Operation.CHAT and guidance:
        return state.update("append_planning_guidance", chat_response=f"{out.chat_response}\n\n{guidance}")
    return state


def _save_hint(intent: Intent) -> str:
    if intent is Intent.RESOURCE_CAPTURE:
        return "บันทึกเรื่องนี้เป็น Resource"
    if intent is Intent.PROJECT_IDEA:
        return "สร้าง Project: <ชื่อโปรเจกต์>"
    return "สร้าง Task: <ชื่องาน>"


def sanitize_write_claim(state: DecisionState) -> DecisionState:
    if state.operation is not Operation.CHAT or state.meta_question:
        return state
    if not response_claims_write(state.reply):
        return state
    reply = f"{NOT_SAVED_REPLY}\nถ้าต้องการให้บันทึกทันที ให้พิมพ์: {_save_hint(state.output.intent)}"
    state = state.update("sanitize_write_claim", chat_response=reply)
    return replace(state, write_claim_sanitized=True)


def guard_short_reply(state: DecisionState) -> DecisionState:
    if state.operation is Operation.CHAT and len(state.reply) <= 10 and not state.meta_question:
        return state.update("guard_short_reply", chat_response=SHORT_REPLY_FALLBACK)
    return state


Override = Callable[[DecisionState], DecisionState]

OVERRIDES: Tuple[Override, ...] = (
    coerce_non_actionable,
    guard_capability_question,
    force_url_resource,
    apply_completion_shortcut,
    apply_auto_capture_plan,
    apply_travel_routing,
    append_planning_guidance,
    sanitize_write_claim,
    guard_short_reply,
)


def apply_overrides(state: DecisionState, overrides: Tuple[Override, ...] = OVERRIDES) -> DecisionState:
    for override in overrides:
        state = override(state)
    if state.applied:
        logger.info("Overrides applied: %s", ", ".join(state.applied))
    return state
