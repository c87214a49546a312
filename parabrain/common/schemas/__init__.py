"""
ParaBrain Capture Schemas

Classifier output, duplicate verdict, result envelope and log records.
"""

from .capture import (
    ActionType,
    CaptureRequest,
    CaptureResult,
    CaptureSource,
    ClassifierOutput,
    DedupMethod,
    DedupRecommendation,
    DedupVerdict,
    Intent,
    ItemType,
    LogStatus,
    MatchedRecordRef,
    ModuleDatum,
    Operation,
    ParaType,
    StarterTask,
    TransactionType,
    WRITE_ACTION_TYPES,
)
from .records import (
    CaptureLogRecord,
    LearningEntry,
    MemoryEntry,
    SessionTurn,
    parse_iso,
    parse_log_payload,
    utc_now_iso,
)

__all__ = [
    "ActionType",
    "CaptureRequest",
    "CaptureResult",
    "CaptureSource",
    "ClassifierOutput",
    "DedupMethod",
    "DedupRecommendation",
    "DedupVerdict",
    "Intent",
    "ItemType",
    "LogStatus",
    "MatchedRecordRef",
    "ModuleDatum",
    "Operation",
    "ParaType",
    "StarterTask",
    "TransactionType",
    "WRITE_ACTION_TYPES",
    "CaptureLogRecord",
    "LearningEntry",
    "MemoryEntry",
    "SessionTurn",
    "parse_iso",
    "parse_log_payload",
    "utc_now_iso",
]
