"""
Capture Pipeline

Orchestrates one run for one inbound message:

    confirm-command parse → context + dedup + URL title (parallel)
    → prompt → classifier → overrides → gates → write executor

and wraps every outcome in the uniform CaptureResult envelope. The pipeline
itself never raises for a message; failures come back as FAILED results with
a machine reason in ``meta.reason``.
"""

import asyncio
import logging
import re
from typing import Any, Dict, Optional

import httpx

from ..common.config import CaptureSettings
from ..common.embedding_service import EmbeddingService
from ..common.schemas import (
    ActionType,
    CaptureRequest,
    CaptureResult,
    DedupVerdict,
    LearningEntry,
    LogStatus,
    MemoryEntry,
    Operation,
)
from .classifier import CaptureClassifier, ClassifierUnavailableError
from .context_loader import ContextLoader
from .dedup_detector import DuplicateDetector
from .executor import ExecutionOutcome, WriteExecutor
from .gates import GateOutcome, evaluate_gates
from .overrides import DecisionState, apply_overrides, initial_state
from .prompt_builder import build_capture_prompt
from .store import CaptureStore
from .text_utils import (
    extract_hints,
    extract_urls,
    normalize_message,
    parse_confirm_command,
    truncate,
)

logger = logging.getLogger("parabrain.capture.pipeline")

LOG_CONTRACT = "telegram_chat_v1"
LOG_CONTRACT_VERSION = 1

URL_TITLE_USER_AGENT = "Mozilla/5.0 (compatible; PARABrain/1.0)"
URL_TITLE_MAX_LEN = 120
_TITLE_RE = re.compile(r"<title[^>]*>([^<]+)</title>", re.IGNORECASE)

UNAVAILABLE_REPLY = "ตอนนี้ระบบวิเคราะห์ข้อความไม่พร้อมใช้งานชั่วคราวครับ ลองส่งใหม่อีกครั้งในอีกสักครู่"
EXCEPTION_REPLY = "ระบบขัดข้องชั่วคราวครับ"


async def fetch_url_title(url: str, timeout: float = 4.0) -> Optional[str]:
    """Best-effort ``<title>`` of a page; None on any failure"""
    try:
        async with httpx.AsyncClient(follow_redirects=True, timeout=timeout) as client:
            response = await client.get(url, headers={"User-Agent": URL_TITLE_USER_AGENT})
    except httpx.HTTPError as e:
        logger.debug("URL title fetch failed for %s: %s", url, e)
        return None
    if not response.is_success:
        return None
    match = _TITLE_RE.search(response.text)
    if not match:
        return None
    return re.sub(r"\s+", " ", match.group(1).strip())[:URL_TITLE_MAX_LEN]


async def _no_title() -> Optional[str]:
    return None


def to_capture_log_payload(result: CaptureResult) -> Dict[str, Any]:
    """Payload stored in ``ai_response`` of the capture log row"""
    payload: Dict[str, Any] = {
        "contract": LOG_CONTRACT,
        "version": LOG_CONTRACT_VERSION,
        "source": result.source.value,
        "intent": result.intent.value,
        "confidence": result.confidence,
        "isActionable": result.is_actionable,
        "operation": result.operation.value,
        "chatResponse": result.chat_response,
        "itemType": result.item_type.value if result.item_type else None,
        "dedup": result.dedup.to_payload(),
        "meta": {
            "actionType": result.action_type.value,
            "status": result.status.value,
            **result.meta,
        },
    }
    if result.created_item:
        payload["createdItem"] = result.created_item
    if result.created_items:
        payload["createdItems"] = result.created_items
    return payload


class CapturePipeline:
    """Single entry point for text captures."""

    def __init__(
        self,
        store: CaptureStore,
        settings: CaptureSettings,
        classifier: CaptureClassifier,
        embedding_service: Optional[EmbeddingService] = None,
    ):
        self._store = store
        self._settings = settings
        self._classifier = classifier
        self._loader = ContextLoader(store, settings)
        self._detector = DuplicateDetector(store, settings, embedding_service)
        self._executor = WriteExecutor(store, settings, embedding_service)

    @property
    def settings(self) -> CaptureSettings:
        return self._settings

    async def run(self, request: CaptureRequest) -> CaptureResult:
        settings = self._settings
        tz_name = request.timezone or settings.timezone
        command = parse_confirm_command(request.message)
        message = normalize_message(command.message)
        urls = extract_urls(message)

        snapshot, dedup, url_title = await asyncio.gather(
            self._loader.load(request.source, request.exclude_log_id),
            self._detector.detect(
                message, urls, request.exclude_log_id, exact_text=request.message.strip()
            ),
            fetch_url_title(urls[0], settings.url_title_timeout) if urls else _no_title(),
        )
        if snapshot.failed_sections:
            logger.warning("Running with partial context; missing: %s", ", ".join(snapshot.failed_sections))

        prompt = build_capture_prompt(
            message=message,
            source=request.source,
            snapshot=snapshot,
            dedup=dedup,
            confirm_threshold=settings.confirm_threshold,
            tz_name=tz_name,
            urls=urls,
            url_title=url_title,
            hints=extract_hints(message),
        )

        try:
            output = await self._classifier.classify(prompt)
        except ClassifierUnavailableError as e:
            logger.warning("Classifier unavailable: %s", e)
            return CaptureResult(
                success=False,
                source=request.source,
                operation=Operation.CHAT,
                chat_response=UNAVAILABLE_REPLY,
                action_type=ActionType.ERROR,
                status=LogStatus.FAILED,
                dedup=dedup,
                meta={
                    "reason": "CLASSIFIER_UNAVAILABLE",
                    "error": str(e),
                    "writeExecuted": False,
                    "dedupExactMessageNoWriteIgnored": dedup.exact_message_no_write_ignored,
                },
            )

        state = apply_overrides(initial_state(
            output,
            command=command,
            message=message,
            snapshot=snapshot,
            urls=tuple(urls),
            url_title=url_title,
            auto_capture_plan_enabled=settings.auto_capture_plan_enabled,
        ))

        approval_enabled = (
            settings.approval_gates_enabled
            if request.approval_gates_enabled is None
            else request.approval_gates_enabled
        )
        gate = evaluate_gates(
            state,
            dedup,
            confirm_threshold=settings.confirm_threshold,
            approval_gates_enabled=approval_enabled,
        )
        if gate is not None:
            return self._from_gate(request, state, dedup, gate)

        try:
            outcome = await self._executor.execute(state, original_message=request.message, tz_name=tz_name)
        except Exception as e:
            logger.exception("Write execution failed")
            return CaptureResult(
                success=False,
                source=request.source,
                intent=state.output.intent,
                confidence=state.output.confidence,
                is_actionable=state.output.is_actionable,
                operation=state.operation,
                chat_response=EXCEPTION_REPLY,
                action_type=ActionType.ERROR,
                status=LogStatus.FAILED,
                dedup=dedup,
                meta={
                    "reason": "PIPELINE_EXCEPTION",
                    "error": str(e),
                    "writeExecuted": False,
                    "dedupExactMessageNoWriteIgnored": dedup.exact_message_no_write_ignored,
                },
            )

        result = self._from_outcome(request, state, dedup, outcome)
        await self._write_back(state, result)
        return result

    # ---------------------------------------------------------------- results

    def _state_meta(self, state: DecisionState, dedup: DedupVerdict) -> Dict[str, Any]:
        out = state.output
        meta: Dict[str, Any] = {
            "forceConfirmed": state.force_confirmed,
            "planningRequest": state.planning_request,
            "autoCapturePlan": state.auto_capture_plan,
            "guidanceIncluded": bool(state.guidance),
            "chatWriteClaimSanitized": state.write_claim_sanitized,
            "dedupExactMessageNoWriteIgnored": dedup.exact_message_no_write_ignored,
        }
        if state.travel is not None:
            meta["travelRouting"] = state.travel.to_meta()
        if state.applied:
            meta["overridesApplied"] = list(state.applied)
        if out.related_project_title:
            meta["relatedProjectTitle"] = out.related_project_title
        if out.related_area_title:
            meta["relatedAreaTitle"] = out.related_area_title
        if state.snapshot.failed_sections:
            meta["contextFailures"] = list(state.snapshot.failed_sections)
        return meta

    def _from_gate(
        self,
        request: CaptureRequest,
        state: DecisionState,
        dedup: DedupVerdict,
        gate: GateOutcome,
    ) -> CaptureResult:
        meta = self._state_meta(state, dedup)
        meta.update(gate.meta)
        meta["writeExecuted"] = False
        return CaptureResult(
            success=True,
            source=request.source,
            intent=state.output.intent,
            confidence=state.output.confidence,
            is_actionable=gate.is_actionable,
            operation=gate.operation,
            chat_response=gate.reply,
            action_type=gate.action_type,
            status=gate.status,
            dedup=dedup,
            meta=meta,
        )

    def _from_outcome(
        self,
        request: CaptureRequest,
        state: DecisionState,
        dedup: DedupVerdict,
        outcome: ExecutionOutcome,
    ) -> CaptureResult:
        meta = self._state_meta(state, dedup)
        meta.update(outcome.meta)
        meta["writeExecuted"] = outcome.write_executed
        created = outcome.created
        return CaptureResult(
            success=outcome.success,
            source=request.source,
            intent=state.output.intent,
            confidence=state.output.confidence,
            is_actionable=state.output.is_actionable,
            operation=outcome.operation,
            chat_response=outcome.reply,
            item_type=outcome.item_type,
            created_item=created[0] if len(created) == 1 else None,
            created_items=list(created) if len(created) > 1 else None,
            action_type=outcome.action_type,
            status=outcome.status,
            dedup=dedup,
            meta=meta,
        )

    # ------------------------------------------------------------- write-back

    async def _write_back(self, state: DecisionState, result: CaptureResult) -> None:
        """Memory and learnings updates; failures are logged and dropped"""
        try:
            project = state.output.related_project_title
            if result.write_executed and project:
                await self._store.upsert_memory(MemoryEntry(
                    key="recent_project",
                    value=project,
                    category="context",
                    confidence=0.8,
                ))
            if state.write_claim_sanitized:
                await self._store.insert_learning(LearningEntry(
                    lesson="Chat reply claimed a save that did not happen; say it was not saved and offer the ยืนยัน: command",
                    category="honesty",
                    outcome="negative",
                    trigger_message=truncate(state.message, 200),
                ))
            if result.action_type is ActionType.COMPLETE_TASK_NOT_FOUND:
                target = state.complete_target or state.output.title or ""
                await self._store.insert_learning(LearningEntry(
                    lesson=f'Completion target "{truncate(target, 80)}" matched no open task; ask for the exact task name',
                    category="completion",
                    outcome="negative",
                    trigger_message=truncate(state.message, 200),
                ))
        except Exception as e:
            logger.warning("Memory write-back failed: %s", e)
