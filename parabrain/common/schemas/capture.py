"""
Capture Schemas

Enums and models shared by every stage of the capture pipeline:
the classifier's structured output, the duplicate verdict, and the uniform
result envelope returned to callers.
"""

from typing import Any, Dict, List, Optional

from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..llm_utils import clamp_confidence


# ============================================================================
# Enums
# ============================================================================

class CaptureSource(str, Enum):
    """Where the message came from"""
    WEB = "WEB"
    TELEGRAM = "TELEGRAM"
    LINE = "LINE"

    @classmethod
    def coerce(cls, value: Any) -> "CaptureSource":
        try:
            return cls(str(value or "").strip().upper())
        except ValueError:
            return cls.WEB


class Intent(str, Enum):
    CHITCHAT = "CHITCHAT"
    ACTIONABLE_NOTE = "ACTIONABLE_NOTE"
    PROJECT_IDEA = "PROJECT_IDEA"
    TASK_CAPTURE = "TASK_CAPTURE"
    RESOURCE_CAPTURE = "RESOURCE_CAPTURE"
    FINANCE_CAPTURE = "FINANCE_CAPTURE"
    COMPLETE_TASK = "COMPLETE_TASK"
    MODULE_CAPTURE = "MODULE_CAPTURE"


class Operation(str, Enum):
    CREATE = "CREATE"
    TRANSACTION = "TRANSACTION"
    MODULE_ITEM = "MODULE_ITEM"
    COMPLETE = "COMPLETE"
    CHAT = "CHAT"

    @property
    def is_write(self) -> bool:
        return self is not Operation.CHAT


class ParaType(str, Enum):
    """PARA record kinds and their backing collections"""
    TASKS = "Tasks"
    PROJECTS = "Projects"
    RESOURCES = "Resources"
    AREAS = "Areas"
    ARCHIVES = "Archives"

    @property
    def table(self) -> str:
        return self.value.lower()


class TransactionType(str, Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    TRANSFER = "TRANSFER"


class DedupRecommendation(str, Enum):
    NEW = "NEW"
    LIKELY_DUPLICATE = "LIKELY_DUPLICATE"
    DUPLICATE = "DUPLICATE"


class DedupMethod(str, Enum):
    EXACT_MESSAGE = "EXACT_MESSAGE"
    URL_MATCH = "URL_MATCH"
    SEMANTIC_VECTOR = "SEMANTIC_VECTOR"
    NONE = "NONE"


class LogStatus(str, Enum):
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING = "PENDING"
    SKIPPED_DUPLICATE = "SKIPPED_DUPLICATE"


class ActionType(str, Enum):
    """What the run did (or deliberately did not do)"""
    THINKING = "THINKING"
    CHAT = "CHAT"
    CHAT_WITH_GUIDANCE = "CHAT_WITH_GUIDANCE"
    CREATE_PARA = "CREATE_PARA"
    CREATE_TX = "CREATE_TX"
    CREATE_MODULE = "CREATE_MODULE"
    COMPLETE_TASK = "COMPLETE_TASK"
    COMPLETE_TASK_NOT_FOUND = "COMPLETE_TASK_NOT_FOUND"
    SKIP_DUPLICATE = "SKIP_DUPLICATE"
    NEEDS_CONFIRMATION = "NEEDS_CONFIRMATION"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    NEEDS_PARENT_CLARIFICATION = "NEEDS_PARENT_CLARIFICATION"
    NEEDS_PROJECT_CLARIFICATION = "NEEDS_PROJECT_CLARIFICATION"
    ERROR = "ERROR"
    IMAGE_MISSING = "IMAGE_MISSING"
    IMAGE_TOO_LARGE = "IMAGE_TOO_LARGE"
    IMAGE_ANALYZED = "IMAGE_ANALYZED"
    IMAGE_ANALYSIS_ERROR = "IMAGE_ANALYSIS_ERROR"
    FINANCE_ACCOUNT_REQUIRED = "FINANCE_ACCOUNT_REQUIRED"


WRITE_ACTION_TYPES = frozenset({
    ActionType.CREATE_PARA.value,
    ActionType.CREATE_TX.value,
    ActionType.CREATE_MODULE.value,
    ActionType.COMPLETE_TASK.value,
})


class ItemType(str, Enum):
    PARA = "PARA"
    TRANSACTION = "TRANSACTION"
    MODULE = "MODULE"


def _coerce_enum(enum_cls, value: Any, default=None):
    if isinstance(value, enum_cls):
        return value
    if value is None:
        return default
    text = str(value).strip()
    for member in enum_cls:
        if member.value.lower() == text.lower():
            return member
    return default


# ============================================================================
# Duplicate verdict
# ============================================================================

class MatchedRecordRef(BaseModel):
    """Pointer at the record a duplicate verdict matched"""
    table: str
    id: str
    title: Optional[str] = None
    link: Optional[str] = None


class DedupVerdict(BaseModel):
    """Outcome of the exact / URL / semantic duplicate checks"""
    is_duplicate: bool = False
    reason: str = ""
    method: DedupMethod = DedupMethod.NONE
    similarity: Optional[float] = None
    matched: Optional[MatchedRecordRef] = None
    matched_log_id: Optional[str] = None
    matched_action_type: Optional[str] = None
    matched_status: Optional[str] = None
    exact_message_no_write_ignored: bool = False

    def to_payload(self) -> Dict[str, Any]:
        """camelCase dict for the prompt, the log row and API responses"""
        payload: Dict[str, Any] = {
            "isDuplicate": self.is_duplicate,
            "reason": self.reason,
            "method": self.method.value,
        }
        if self.similarity is not None:
            payload["similarity"] = round(self.similarity, 4)
        if self.matched:
            payload["matchedItemId"] = self.matched.id
            payload["matchedTable"] = self.matched.table
            payload["matchedTitle"] = self.matched.title
            payload["matchedLink"] = self.matched.link
        if self.matched_log_id:
            payload["matchedLogId"] = self.matched_log_id
            payload["matchedActionType"] = self.matched_action_type
            payload["matchedStatus"] = self.matched_status
        if self.exact_message_no_write_ignored:
            payload["exactMessageNoWriteIgnored"] = True
        return payload


# ============================================================================
# Classifier output
# ============================================================================

class StarterTask(BaseModel):
    title: str
    description: Optional[str] = None


class ModuleDatum(BaseModel):
    key: str
    value: Any = None


def _text_list(value: Any, limit: int) -> List[str]:
    if not isinstance(value, list):
        return []
    out = []
    for item in value:
        text = str(item).strip() if item is not None else ""
        if text:
            out.append(text)
        if len(out) >= limit:
            break
    return out


class ClassifierOutput(BaseModel):
    """
    Structured classification of one message.

    Built from the raw model JSON (camelCase keys). Unknown enum values fall
    back to safe defaults instead of failing validation.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    intent: Intent = Intent.CHITCHAT
    confidence: float = 0.5
    is_actionable: bool = False
    operation: Operation = Operation.CHAT
    chat_response: str = ""

    title: Optional[str] = None
    summary: Optional[str] = None
    category: Optional[str] = None
    type: Optional[ParaType] = None
    related_item_id: Optional[str] = None
    related_project_title: Optional[str] = None
    related_area_title: Optional[str] = None
    create_project_if_missing: Optional[bool] = None
    ask_for_parent: bool = False
    clarifying_question: Optional[str] = None
    suggested_tags: List[str] = Field(default_factory=list)
    due_date: Optional[str] = None

    amount: Optional[Any] = None
    transaction_type: Optional[TransactionType] = None
    account_id: Optional[str] = None
    target_module_id: Optional[str] = None
    module_data: List[ModuleDatum] = Field(default_factory=list, alias="moduleDataRaw")

    dedup_recommendation: Optional[DedupRecommendation] = None

    goal: Optional[str] = None
    assumptions: List[str] = Field(default_factory=list)
    prerequisites: List[str] = Field(default_factory=list)
    starter_tasks: List[StarterTask] = Field(default_factory=list)
    next_actions: List[str] = Field(default_factory=list)
    clarifying_questions: List[str] = Field(default_factory=list)
    risk_notes: List[str] = Field(default_factory=list)

    recommended_project_title: Optional[str] = None
    recommended_area_title: Optional[str] = None

    @field_validator("intent", mode="before")
    @classmethod
    def _intent(cls, v):
        return _coerce_enum(Intent, v, Intent.CHITCHAT)

    @field_validator("operation", mode="before")
    @classmethod
    def _operation(cls, v):
        return _coerce_enum(Operation, v, Operation.CHAT)

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, v):
        return _coerce_enum(ParaType, v)

    @field_validator("transaction_type", mode="before")
    @classmethod
    def _transaction_type(cls, v):
        return _coerce_enum(TransactionType, v)

    @field_validator("dedup_recommendation", mode="before")
    @classmethod
    def _dedup_recommendation(cls, v):
        return _coerce_enum(DedupRecommendation, v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v):
        return clamp_confidence(v)

    @field_validator("is_actionable", "ask_for_parent", mode="before")
    @classmethod
    def _flag(cls, v):
        if isinstance(v, str):
            return v.strip().lower() in ("true", "yes", "1")
        return bool(v)

    @field_validator("create_project_if_missing", mode="before")
    @classmethod
    def _optional_flag(cls, v):
        if v is None:
            return None
        if isinstance(v, str):
            return v.strip().lower() in ("true", "yes", "1")
        return bool(v)

    @field_validator("chat_response", mode="before")
    @classmethod
    def _chat_response(cls, v):
        return "" if v is None else str(v)

    @field_validator(
        "title", "summary", "category", "related_item_id", "related_project_title",
        "related_area_title", "clarifying_question", "due_date", "account_id",
        "target_module_id", "goal", "recommended_project_title",
        "recommended_area_title", mode="before",
    )
    @classmethod
    def _optional_text(cls, v):
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    @field_validator("suggested_tags", mode="before")
    @classmethod
    def _tags(cls, v):
        return _text_list(v, 12)

    @field_validator(
        "assumptions", "prerequisites", "next_actions", "clarifying_questions",
        "risk_notes", mode="before",
    )
    @classmethod
    def _planning_list(cls, v):
        return _text_list(v, 6)

    @field_validator("starter_tasks", mode="before")
    @classmethod
    def _starter_tasks(cls, v):
        if not isinstance(v, list):
            return []
        tasks = []
        for item in v:
            if not isinstance(item, dict):
                continue
            title = str(item.get("title") or "").strip()
            if not title:
                continue
            description = str(item.get("description") or "").strip() or None
            tasks.append({"title": title, "description": description})
            if len(tasks) >= 6:
                break
        return tasks

    @field_validator("module_data", mode="before")
    @classmethod
    def _module_data(cls, v):
        if not isinstance(v, list):
            return []
        pairs = []
        for item in v:
            if isinstance(item, dict) and str(item.get("key") or "").strip():
                pairs.append({"key": str(item["key"]).strip(), "value": item.get("value")})
        return pairs

    @classmethod
    def fallback(cls) -> "ClassifierOutput":
        """Neutral reply used when the classifier output is unusable"""
        return cls(
            intent=Intent.CHITCHAT,
            confidence=0.4,
            is_actionable=False,
            operation=Operation.CHAT,
            chat_response="รับทราบครับ",
        )


# ============================================================================
# Requests and results
# ============================================================================

class CaptureRequest(BaseModel):
    """One inbound message for the pipeline"""
    message: str
    source: CaptureSource = CaptureSource.WEB
    timezone: Optional[str] = None
    exclude_log_id: Optional[str] = None
    approval_gates_enabled: Optional[bool] = None

    @field_validator("source", mode="before")
    @classmethod
    def _source(cls, v):
        return CaptureSource.coerce(v)


class CaptureResult(BaseModel):
    """Uniform envelope returned by every pipeline path"""
    success: bool = True
    source: CaptureSource = CaptureSource.WEB
    intent: Intent = Intent.CHITCHAT
    confidence: float = 0.0
    is_actionable: bool = False
    operation: Operation = Operation.CHAT
    chat_response: str = ""
    item_type: Optional[ItemType] = None
    created_item: Optional[Dict[str, Any]] = None
    created_items: Optional[List[Dict[str, Any]]] = None
    action_type: ActionType = ActionType.CHAT
    status: LogStatus = LogStatus.SUCCESS
    dedup: DedupVerdict = Field(default_factory=DedupVerdict)
    meta: Dict[str, Any] = Field(default_factory=dict)

    @property
    def write_executed(self) -> bool:
        return self.action_type.value in WRITE_ACTION_TYPES and self.success

    def to_payload(self) -> Dict[str, Any]:
        """camelCase JSON-ready dict (API response body)"""
        return {
            "success": self.success,
            "source": self.source.value,
            "intent": self.intent.value,
            "confidence": self.confidence,
            "isActionable": self.is_actionable,
            "operation": self.operation.value,
            "chatResponse": self.chat_response,
            "itemType": self.item_type.value if self.item_type else None,
            "createdItem": self.created_item,
            "createdItems": self.created_items,
            "actionType": self.action_type.value,
            "status": self.status.value,
            "dedup": self.dedup.to_payload(),
            "meta": self.meta,
        }
