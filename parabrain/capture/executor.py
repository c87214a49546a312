"""
Write Executor

Turns a resolved, un-gated decision into store writes.

Per target:
- Tasks: parent = related id → named project → auto-created project → area.
  A named project that does not exist, without authorization to create it,
  ends in a clarification instead of a write.
- Projects: always try to link an Area (relatedArea → category).
- Resources: optional project link (same clarification branch), area fallback.
- Areas: ``title`` and ``name`` carry the same value.
- Transactions: account required (classifier id, else first account).
- Module items: target module required; values coerced to numbers.
- Complete: task by id or title; not found is a friendly chat reply.

Store errors propagate to the pipeline, which reports PIPELINE_EXCEPTION.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from ..common.config import CaptureSettings
from ..common.embedding_service import EmbeddingService
from ..common.llm_utils import safe_number
from ..common.schemas import (
    ActionType,
    ItemType,
    LogStatus,
    Operation,
    ParaType,
    TransactionType,
)
from .context_loader import GroundingSnapshot
from .overrides import DecisionState
from .prompt_builder import resolve_zone
from .text_utils import (
    build_planning_task_content,
    find_by_title,
    normalize_type,
    parse_amount_shorthand,
    to_safe_tags,
    truncate,
)

logger = logging.getLogger("parabrain.capture.executor")

MAX_TAGS = 12
CLARIFY_PROJECT_LIST = 8
EMBEDDED_TABLES = ("tasks", "projects", "resources")


@dataclass
class ExecutionOutcome:
    """What the executor did; the pipeline wraps it in a CaptureResult"""
    action_type: ActionType
    status: LogStatus
    reply: str
    operation: Operation
    success: bool = True
    item_type: Optional[ItemType] = None
    created: List[Dict[str, Any]] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def write_executed(self) -> bool:
        return self.success and self.action_type in (
            ActionType.CREATE_PARA, ActionType.CREATE_TX,
            ActionType.CREATE_MODULE, ActionType.COMPLETE_TASK,
        )


def default_due_date(tz_name: Optional[str], now: Optional[datetime] = None) -> str:
    """+7 days at 09:00 local time, as a naive ISO string"""
    now = now or datetime.now(timezone.utc)
    local = (now + timedelta(days=7)).astimezone(resolve_zone(tz_name))
    return f"{local.strftime('%Y-%m-%d')}T09:00:00"


def coerce_module_value(value: Any) -> Any:
    raw = "" if value is None else str(value).strip()
    if raw == "":
        return raw
    number = safe_number(raw)
    if number is None:
        return raw
    return int(number) if number.is_integer() and "." not in raw else number


def _project_clarification(
    requested: str,
    projects: Sequence[Dict[str, Any]],
    original_message: str,
    allow_create_hint: bool,
) -> str:
    known = ", ".join(f'"{p.get("title")}"' for p in list(projects)[:CLARIFY_PROJECT_LIST] if p.get("title"))
    lines = [f'หา project "{requested}" ไม่เจอครับ']
    if known:
        lines.append(f"Project ที่มีอยู่: {known}")
    if allow_create_hint:
        lines.append(f"ถ้าชื่อถูกต้องและต้องการสร้าง project ใหม่ พิมพ์: ยืนยัน: {original_message}")
    else:
        lines.append(f"ถ้าชื่อถูกต้อง พิมพ์: ยืนยัน: {original_message}")
    lines.append("หรือระบุชื่อ project ที่ถูกต้องมาใหม่ได้เลยครับ")
    return "\n".join(lines)


class WriteExecutor:
    """Executes CREATE / TRANSACTION / MODULE_ITEM / COMPLETE operations."""

    def __init__(
        self,
        store,
        settings: CaptureSettings,
        embedding_service: Optional[EmbeddingService] = None,
    ):
        self._store = store
        self._settings = settings
        self._embedder = embedding_service

    async def execute(
        self,
        state: DecisionState,
        *,
        original_message: str,
        tz_name: Optional[str] = None,
    ) -> ExecutionOutcome:
        out = state.output
        base_title = (out.title or "").strip() or truncate(state.message, 80)
        base_category = (out.category or "").strip() or "Inbox"
        route_tags = list(state.travel.extra_tags) if state.travel and state.travel.applied else []
        tags = to_safe_tags(list(out.suggested_tags) + route_tags, MAX_TAGS)

        op = state.operation
        if op is Operation.CHAT:
            return ExecutionOutcome(
                action_type=ActionType.CHAT_WITH_GUIDANCE if state.guidance else ActionType.CHAT,
                status=LogStatus.SUCCESS,
                reply=state.reply,
                operation=Operation.CHAT,
                meta={"guidanceIncluded": bool(state.guidance)},
            )
        if op is Operation.CREATE:
            return await self._create(state, base_title, base_category, tags, original_message, tz_name)
        if op is Operation.TRANSACTION:
            return await self._transaction(state, base_title, base_category)
        if op is Operation.MODULE_ITEM:
            return await self._module_item(state, base_title, tags)
        return await self._complete(state, base_title)

    # ------------------------------------------------------------------ create

    async def _create(self, state, base_title, base_category, tags, original_message, tz_name):
        out = state.output
        snapshot: GroundingSnapshot = state.snapshot
        para_type = normalize_type(out.type)
        now_iso = datetime.now(timezone.utc).isoformat()

        if para_type is ParaType.TASKS:
            return await self._create_task(state, base_title, base_category, tags, original_message, tz_name, now_iso)

        related_ids: List[str] = []
        meta: Dict[str, Any] = {"table": para_type.table, "paraType": para_type.value}

        if out.related_item_id:
            related_ids = [out.related_item_id]
        elif para_type is ParaType.PROJECTS:
            lookup = out.related_area_title or out.category or base_category
            area = find_by_title(snapshot.areas, lookup)
            if area and area.get("id"):
                related_ids = [str(area["id"])]
            else:
                logger.warning("Project '%s' created without an area link (lookup=%r)", base_title, lookup)
                meta["areaUnresolved"] = True
        elif para_type is ParaType.RESOURCES:
            if out.related_project_title:
                project = find_by_title(snapshot.projects, out.related_project_title)
                if project and project.get("id"):
                    related_ids = [str(project["id"])]
                elif not state.force_confirmed:
                    return self._needs_project(state, out.related_project_title, base_title, original_message, False)
            if not related_ids and out.related_area_title:
                area = find_by_title(snapshot.areas, out.related_area_title)
                if area and area.get("id"):
                    related_ids = [str(area["id"])]

        payload: Dict[str, Any] = {
            "title": base_title,
            "type": para_type.value,
            "category": out.related_area_title or base_category,
            "content": out.summary or state.message,
            "tags": tags,
            "related_item_ids": related_ids,
            "is_completed": False,
            "created_at": now_iso,
            "updated_at": now_iso,
        }
        if para_type is ParaType.AREAS:
            payload["name"] = base_title
            payload["category"] = base_category

        row = await self._store.insert_record(para_type.table, payload)
        await self._index(para_type.table, row)
        return ExecutionOutcome(
            action_type=ActionType.CREATE_PARA,
            status=LogStatus.SUCCESS,
            reply=state.reply,
            operation=Operation.CREATE,
            item_type=ItemType.PARA,
            created=[row],
            meta=meta,
        )

    async def _create_task(self, state, base_title, base_category, tags, original_message, tz_name, now_iso):
        out = state.output
        snapshot: GroundingSnapshot = state.snapshot
        created: List[Dict[str, Any]] = []
        related_ids: List[str] = []

        if out.related_item_id:
            related_ids = [out.related_item_id]
        elif out.related_project_title:
            project = find_by_title(snapshot.projects, out.related_project_title)
            if project and project.get("id"):
                related_ids = [str(project["id"])]
            elif not out.create_project_if_missing and not state.force_confirmed:
                return self._needs_project(state, out.related_project_title, base_title, original_message, True)

        if not related_ids and out.related_project_title:
            area = (
                find_by_title(snapshot.areas, out.related_area_title or base_category)
                or find_by_title(snapshot.areas, base_category)
            )
            project_payload = {
                "title": out.related_project_title,
                "type": ParaType.PROJECTS.value,
                "category": out.related_area_title or (area or {}).get("title") or base_category or "General",
                "content": f"Auto-created from capture: {truncate(state.message, 220)}",
                "tags": to_safe_tags(["auto-capture", "project", *tags], MAX_TAGS + 2),
                "related_item_ids": [str(area["id"])] if area and area.get("id") else [],
                "is_completed": False,
                "created_at": now_iso,
                "updated_at": now_iso,
            }
            project_row = await self._store.insert_record("projects", project_payload)
            await self._index("projects", project_row)
            logger.info("Auto-created project '%s'", out.related_project_title)
            created.append(project_row)
            related_ids = [str(project_row["id"])]

        if not related_ids and out.related_area_title:
            area = find_by_title(snapshot.areas, out.related_area_title)
            if area and area.get("id"):
                related_ids = [str(area["id"])]

        due_date = out.due_date if out.due_date and "T" in out.due_date else default_due_date(tz_name)
        task_payload = {
            "title": base_title,
            "type": ParaType.TASKS.value,
            "category": base_category,
            "content": build_planning_task_content(out.summary or state.message, state.guidance),
            "tags": tags,
            "related_item_ids": related_ids,
            "is_completed": False,
            "due_date": due_date,
            "created_at": now_iso,
            "updated_at": now_iso,
        }
        task_row = await self._store.insert_record("tasks", task_payload)
        await self._index("tasks", task_row)
        created.append(task_row)

        return ExecutionOutcome(
            action_type=ActionType.CREATE_PARA,
            status=LogStatus.SUCCESS,
            reply=state.reply,
            operation=Operation.CREATE,
            item_type=ItemType.PARA,
            created=created,
            meta={
                "table": "tasks",
                "paraType": ParaType.TASKS.value,
                "autoProjectCreated": len(created) > 1,
                "autoCapturePlan": state.auto_capture_plan,
                "guidanceIncluded": bool(state.guidance),
            },
        )

    def _needs_project(self, state, requested, base_title, original_message, allow_create_hint):
        return ExecutionOutcome(
            action_type=ActionType.NEEDS_PROJECT_CLARIFICATION,
            status=LogStatus.PENDING,
            reply=_project_clarification(requested, state.snapshot.projects, original_message, allow_create_hint),
            operation=state.operation,
            meta={
                "requiresConfirmation": True,
                "suggestedTitle": base_title,
                "requestedProject": requested,
            },
        )

    # ------------------------------------------------------------- transaction

    async def _transaction(self, state, base_title, base_category):
        out = state.output
        accounts = state.snapshot.accounts
        account_id = out.account_id or (str(accounts[0]["id"]) if accounts and accounts[0].get("id") else None)
        if not account_id:
            return ExecutionOutcome(
                action_type=ActionType.ERROR,
                status=LogStatus.FAILED,
                reply="⚠️ หาบัญชีไม่เจอครับ",
                operation=Operation.TRANSACTION,
                success=False,
                meta={"reason": "ACCOUNT_NOT_FOUND"},
            )

        amount = parse_amount_shorthand(out.amount)
        if amount is None:
            amount = safe_number(out.amount) or 0.0
        payload = {
            "description": base_title,
            "amount": amount,
            "type": (out.transaction_type or TransactionType.EXPENSE).value,
            "category": base_category or "General",
            "account_id": account_id,
            "transaction_date": datetime.now(timezone.utc).isoformat(),
        }
        row = await self._store.insert_record("transactions", payload)
        return ExecutionOutcome(
            action_type=ActionType.CREATE_TX,
            status=LogStatus.SUCCESS,
            reply=state.reply,
            operation=Operation.TRANSACTION,
            item_type=ItemType.TRANSACTION,
            created=[row],
            meta={"table": "transactions"},
        )

    # ------------------------------------------------------------- module item

    async def _module_item(self, state, base_title, tags):
        out = state.output
        if not out.target_module_id:
            return ExecutionOutcome(
                action_type=ActionType.ERROR,
                status=LogStatus.FAILED,
                reply="⚠️ ไม่พบโมดูลเป้าหมายสำหรับบันทึกข้อมูล",
                operation=Operation.MODULE_ITEM,
                success=False,
                meta={"reason": "MODULE_TARGET_MISSING"},
            )

        data = {item.key: coerce_module_value(item.value) for item in out.module_data}
        payload = {
            "module_id": out.target_module_id,
            "title": base_title or "Entry",
            "data": data,
            "tags": tags,
        }
        row = await self._store.insert_record("module_entries", payload)
        return ExecutionOutcome(
            action_type=ActionType.CREATE_MODULE,
            status=LogStatus.SUCCESS,
            reply=state.reply,
            operation=Operation.MODULE_ITEM,
            item_type=ItemType.MODULE,
            created=[row],
            meta={"table": "module_entries"},
        )

    # ---------------------------------------------------------------- complete

    async def _complete(self, state, base_title):
        out = state.output
        target_id = out.related_item_id
        if not target_id and base_title:
            task = find_by_title(state.snapshot.tasks, base_title)
            if task and task.get("id"):
                target_id = str(task["id"])

        row = None
        if target_id:
            row = await self._store.update_record("tasks", target_id, {"is_completed": True})

        if row is None:
            return ExecutionOutcome(
                action_type=ActionType.COMPLETE_TASK_NOT_FOUND,
                status=LogStatus.SUCCESS,
                reply="ยังหา task ที่จะ complete ไม่เจอครับ ลองระบุชื่องานอีกครั้ง",
                operation=Operation.CHAT,
                meta={"requestedOperation": Operation.COMPLETE.value, "reason": "COMPLETE_TASK_NOT_FOUND"},
            )

        return ExecutionOutcome(
            action_type=ActionType.COMPLETE_TASK,
            status=LogStatus.SUCCESS,
            reply=state.reply,
            operation=Operation.COMPLETE,
            item_type=ItemType.PARA,
            created=[row],
            meta={"table": "tasks"},
        )

    # ---------------------------------------------------------------- indexing

    async def _index(self, table: str, row: Dict[str, Any]) -> None:
        """Attach an embedding so later messages can be matched semantically"""
        if self._embedder is None or table not in EMBEDDED_TABLES:
            return
        text = " ".join(str(row.get(k) or "") for k in ("title", "content")).strip()
        if not text:
            return
        try:
            vector = await asyncio.to_thread(self._embedder.embed_single, text)
            await self._store.update_record(table, str(row["id"]), {"embedding": vector})
        except Exception as e:
            logger.warning("Could not index %s/%s for semantic dedup: %s", table, row.get("id"), e)
