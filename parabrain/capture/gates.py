"""
Decision Gates

Checked in order after the overrides. The first gate that fires ends the run
without writing anything:

- duplicate   → SKIP_DUPLICATE / SKIPPED_DUPLICATE
- confidence  → NEEDS_CONFIRMATION / PENDING
- approval    → PENDING_APPROVAL / PENDING
- parent      → NEEDS_PARENT_CLARIFICATION / PENDING
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..common.schemas import ActionType, DedupVerdict, LogStatus, Operation
from .overrides import DecisionState
from .text_utils import truncate

logger = logging.getLogger("parabrain.capture.gates")

APPROVAL_OPERATIONS = (Operation.TRANSACTION, Operation.MODULE_ITEM, Operation.COMPLETE)
APPROVAL_NOTE = "⚠️ Action requires approval and was not executed automatically."


@dataclass
class GateOutcome:
    """Terminal, non-writing result of a gate"""
    gate: str
    action_type: ActionType
    status: LogStatus
    reply: str
    operation: Operation
    is_actionable: bool
    meta: Dict[str, Any] = field(default_factory=dict)


def duplicate_gate(state: DecisionState, dedup: DedupVerdict) -> Optional[GateOutcome]:
    if not (dedup.is_duplicate and state.operation.is_write and not state.force_confirmed):
        return None
    recommendation = state.output.dedup_recommendation
    return GateOutcome(
        gate="duplicate",
        action_type=ActionType.SKIP_DUPLICATE,
        status=LogStatus.SKIPPED_DUPLICATE,
        reply=f"ข้อมูลนี้ดูเหมือนเคยมีแล้ว ({dedup.reason}) ผมยังไม่สร้างรายการซ้ำให้นะครับ",
        operation=Operation.CHAT,
        is_actionable=False,
        meta={
            "dedupRecommendation": recommendation.value if recommendation else "DUPLICATE",
            "requiresConfirmation": False,
        },
    )


def confidence_gate(state: DecisionState, threshold: float) -> Optional[GateOutcome]:
    out = state.output
    # classifier's own flag; overrides may have flipped out.is_actionable
    if state.force_confirmed or not state.operation.is_write or not state.classifier_actionable:
        return None
    if out.confidence >= threshold:
        return None
    suggested_title = out.title or truncate(state.message, 80)
    reply = "\n".join([
        state.reply,
        "",
        f"ผมยังไม่บันทึกทันที เพราะความมั่นใจยังต่ำ ({round(out.confidence * 100)}%).",
        f"ถ้าต้องการให้สร้างตอนนี้ ให้พิมพ์: ยืนยัน: {suggested_title}",
    ])
    return GateOutcome(
        gate="confidence",
        action_type=ActionType.NEEDS_CONFIRMATION,
        status=LogStatus.PENDING,
        reply=reply,
        operation=state.operation,
        is_actionable=out.is_actionable,
        meta={
            "requiresConfirmation": True,
            "suggestedTitle": suggested_title,
            "confirmThreshold": threshold,
        },
    )


def approval_gate(state: DecisionState, enabled: bool) -> Optional[GateOutcome]:
    if not enabled or state.operation not in APPROVAL_OPERATIONS:
        return None
    return GateOutcome(
        gate="approval",
        action_type=ActionType.PENDING_APPROVAL,
        status=LogStatus.PENDING,
        reply=f"{state.reply}\n\n{APPROVAL_NOTE}",
        operation=state.operation,
        is_actionable=state.output.is_actionable,
        meta={"requestedOperation": state.operation.value},
    )


def parent_gate(state: DecisionState) -> Optional[GateOutcome]:
    out = state.output
    if not (out.ask_for_parent and state.operation is Operation.CREATE and not state.force_confirmed):
        return None
    question = (out.clarifying_question or "").strip() or (
        f'ควรให้ "{out.title or truncate(state.message, 60)}" อยู่ใน Project หรือ Area ไหนครับ?'
    )
    return GateOutcome(
        gate="parent",
        action_type=ActionType.NEEDS_PARENT_CLARIFICATION,
        status=LogStatus.PENDING,
        reply=question,
        operation=state.operation,
        is_actionable=out.is_actionable,
        meta={
            "requiresConfirmation": True,
            "suggestedTitle": out.title or truncate(state.message, 80),
        },
    )


def evaluate_gates(
    state: DecisionState,
    dedup: DedupVerdict,
    *,
    confirm_threshold: float,
    approval_gates_enabled: bool = False,
) -> Optional[GateOutcome]:
    """First gate that fires, or None when the write may proceed"""
    for outcome in (
        duplicate_gate(state, dedup),
        confidence_gate(state, confirm_threshold),
        approval_gate(state, approval_gates_enabled),
        parent_gate(state),
    ):
        if outcome is not None:
            logger.info("Gate '%s' stopped the write (%s)", outcome.gate, outcome.action_type.value)
            return outcome
    return None
