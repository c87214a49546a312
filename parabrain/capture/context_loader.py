"""
Context Loader

Builds the grounding snapshot the classifier sees: recent records from each
collection plus session turns, long-term memory, learnings and custom
instructions. Every sub-read is independent; a failed read is logged and
contributes an empty section. load() never raises.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..common.config import CaptureSettings
from ..common.schemas import (
    CaptureSource,
    LearningEntry,
    LogStatus,
    MemoryEntry,
    SessionTurn,
)
from .store import CaptureStore

logger = logging.getLogger("parabrain.capture.context_loader")

# (collection, limit, filters)
CONTEXT_QUERIES: Tuple[Tuple[str, int, Optional[Dict[str, Any]]], ...] = (
    ("projects", 30, None),
    ("areas", 25, None),
    ("tasks", 30, {"is_completed": False}),
    ("resources", 15, None),
    ("accounts", 15, None),
    ("modules", 10, None),
)

SESSION_LOG_LIMIT = 5
SESSION_TURN_LIMIT = 3
MEMORY_LIMIT = 20
LEARNING_LIMIT = 10
CUSTOM_INSTRUCTION_LIMIT = 12


@dataclass(frozen=True)
class GroundingSnapshot:
    """Read-only context for one pipeline run"""
    projects: Tuple[Dict[str, Any], ...] = ()
    areas: Tuple[Dict[str, Any], ...] = ()
    tasks: Tuple[Dict[str, Any], ...] = ()
    resources: Tuple[Dict[str, Any], ...] = ()
    accounts: Tuple[Dict[str, Any], ...] = ()
    modules: Tuple[Dict[str, Any], ...] = ()
    session_turns: Tuple[SessionTurn, ...] = ()
    memory: Tuple[MemoryEntry, ...] = ()
    learnings: Tuple[LearningEntry, ...] = ()
    custom_instructions: Tuple[str, ...] = ()
    failed_sections: Tuple[str, ...] = field(default=(), compare=False)


def session_turn_from_log(log) -> SessionTurn:
    payload = log.payload or {}
    created = payload.get("createdItem")
    if not created:
        items = payload.get("createdItems") or []
        created = items[0] if items else None
    meta = payload.get("meta") or {}
    return SessionTurn(
        user_message=log.user_message,
        intent=payload.get("intent"),
        action_type=log.action_type or meta.get("actionType"),
        created_title=(created or {}).get("title") if isinstance(created, dict) else None,
        project_title=payload.get("relatedProjectTitle") or meta.get("relatedProjectTitle"),
        area_title=payload.get("relatedAreaTitle") or meta.get("relatedAreaTitle"),
    )


class ContextLoader:
    """Parallel, failure-isolated context reads."""

    def __init__(self, store: CaptureStore, settings: CaptureSettings):
        self._store = store
        self._settings = settings

    async def _session_turns(self, source: CaptureSource, exclude_log_id: Optional[str]) -> List[SessionTurn]:
        since = datetime.now(timezone.utc) - timedelta(minutes=self._settings.session_window_minutes)
        logs = await self._store.recent_logs(source, LogStatus.SUCCESS, since, limit=SESSION_LOG_LIMIT)
        turns = [session_turn_from_log(log) for log in logs if log.id != exclude_log_id]
        # oldest first so the prompt reads chronologically
        return list(reversed(turns[:SESSION_TURN_LIMIT]))

    async def load(
        self,
        source: CaptureSource = CaptureSource.WEB,
        exclude_log_id: Optional[str] = None,
    ) -> GroundingSnapshot:
        names = [name for name, _, _ in CONTEXT_QUERIES]
        reads = [
            self._store.list_records(name, limit=limit, filters=filters)
            for name, limit, filters in CONTEXT_QUERIES
        ]
        names += ["session_turns", "memory", "learnings", "custom_instructions"]
        reads += [
            self._session_turns(source, exclude_log_id),
            self._store.list_memory(limit=MEMORY_LIMIT),
            self._store.list_learnings(limit=LEARNING_LIMIT),
            self._store.get_custom_instructions(limit=CUSTOM_INSTRUCTION_LIMIT),
        ]

        results = await asyncio.gather(*reads, return_exceptions=True)

        sections: Dict[str, tuple] = {}
        failed = []
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                logger.warning("Context read '%s' failed: %s", name, result)
                failed.append(name)
                sections[name] = ()
            else:
                sections[name] = tuple(result or ())

        return GroundingSnapshot(failed_sections=tuple(failed), **sections)
