"""
Capture Store

Persistence boundary for the capture pipeline.

- CaptureStore: async interface the pipeline depends on (records, capture
  log, memory, learnings, custom instructions).
- JsonCaptureStore: single-file JSON implementation persisted to
  ~/.parabrain/store.json. All mutations run under one asyncio.Lock and are
  flushed with an atomic replace.

The capture log is unique on (event_source, event_id); a second insert raises
DuplicateEventError. claim_log() is a compare-and-set on the log status.
Record rows handed back to callers never include the stored ``embedding`` vector.
"""

import asyncio
import json
import logging
import os
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..common.config import STORE_PATH
from ..common.embedding_service import batch_cosine_similarity
from ..common.schemas import (
    CaptureLogRecord,
    CaptureSource,
    LearningEntry,
    LogStatus,
    MemoryEntry,
    parse_iso,
    utc_now_iso,
)

logger = logging.getLogger("parabrain.capture.store")

RECORD_TABLES = ("tasks", "projects", "areas", "resources", "archives", "accounts", "modules",
                 "transactions", "module_entries")


class StoreError(Exception):
    """Raised when the backing store cannot complete an operation"""


class DuplicateEventError(StoreError):
    """Raised when a capture log with the same (source, event_id) exists"""

    def __init__(self, source: str, event_id: str):
        super().__init__(f"Capture log already exists for {source}:{event_id}")
        self.source = source
        self.event_id = event_id


class CaptureStore(ABC):
    """Async storage interface used by every pipeline component."""

    # -- structured records -------------------------------------------------

    @abstractmethod
    async def list_records(
        self,
        table: str,
        *,
        limit: int = 50,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Rows of ``table`` matching ``filters``, newest ``updated_at`` first"""

    @abstractmethod
    async def get_record(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def insert_record(self, table: str, data: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def update_record(self, table: str, record_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def find_by_content(self, table: str, needle: str, limit: int = 1) -> List[Dict[str, Any]]:
        """Case-insensitive substring match on the ``content`` field"""

    @abstractmethod
    async def match_records(
        self,
        embedding: Sequence[float],
        tables: Sequence[str],
        match_count: int = 3,
    ) -> List[Tuple[str, Dict[str, Any], float]]:
        """Nearest rows by cosine similarity: (table, row, similarity)"""

    # -- capture log --------------------------------------------------------

    @abstractmethod
    async def find_log(self, source: CaptureSource, event_id: str) -> Optional[CaptureLogRecord]:
        pass

    @abstractmethod
    async def insert_log(self, record: CaptureLogRecord) -> CaptureLogRecord:
        pass

    @abstractmethod
    async def update_log(self, log_id: str, **changes: Any) -> Optional[CaptureLogRecord]:
        pass

    @abstractmethod
    async def claim_log(
        self,
        log_id: str,
        expected_status: LogStatus,
        *,
        expected_updated_at: Optional[str] = None,
        **changes: Any,
    ) -> bool:
        """Apply ``changes`` only if the log is still in ``expected_status``

        With ``expected_updated_at`` the row must also be unchanged since it
        was read, so two redeliveries cannot both claim the same stale row.
        """

    @abstractmethod
    async def find_logs_by_message(
        self, message: str, limit: int = 5, exclude_id: Optional[str] = None
    ) -> List[CaptureLogRecord]:
        pass

    @abstractmethod
    async def recent_logs(
        self,
        source: CaptureSource,
        status: LogStatus,
        since: datetime,
        limit: int = 5,
    ) -> List[CaptureLogRecord]:
        pass

    @abstractmethod
    async def log_status_counts(self) -> Dict[str, int]:
        pass

    # -- memory / learnings / profile ---------------------------------------

    @abstractmethod
    async def list_memory(self, limit: int = 20) -> List[MemoryEntry]:
        pass

    @abstractmethod
    async def upsert_memory(self, entry: MemoryEntry) -> None:
        pass

    @abstractmethod
    async def list_learnings(self, limit: int = 10) -> List[LearningEntry]:
        pass

    @abstractmethod
    async def insert_learning(self, entry: LearningEntry) -> None:
        pass

    @abstractmethod
    async def get_custom_instructions(self, limit: int = 12) -> List[str]:
        pass


def _public_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a stored row without its embedding vector"""
    return {k: v for k, v in row.items() if k != "embedding"}


def _sort_key(row: Dict[str, Any], field: str) -> float:
    parsed = parse_iso(row.get(field))
    return parsed.timestamp() if parsed else 0.0


class JsonCaptureStore(CaptureStore):
    """
    Single-file JSON store.

    Layout: ``{"records": {table: [row, ...]}, "logs": [...], "memory": [...],
    "learnings": [...], "profile": {"preferences": {"custom_instructions": [...]}}}``
    """

    def __init__(self, path: Optional[Path] = None):
        self._path = Path(path) if path else STORE_PATH
        self._lock = asyncio.Lock()
        self._data: Dict[str, Any] = self._load()

    def _empty(self) -> Dict[str, Any]:
        return {
            "records": {table: [] for table in RECORD_TABLES},
            "logs": [],
            "memory": [],
            "learnings": [],
            "profile": {"preferences": {"custom_instructions": []}},
        }

    def _load(self) -> Dict[str, Any]:
        """Load store from disk"""
        data = self._empty()
        if not self._path.exists():
            return data
        try:
            with open(self._path) as f:
                loaded = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Failed to load store %s: %s", self._path, e)
            return data
        data.update({k: v for k, v in loaded.items() if k in data})
        for table in RECORD_TABLES:
            data["records"].setdefault(table, [])
        return data

    def _save(self) -> None:
        """Flush store to disk (atomic replace)"""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            with open(tmp_path, "w") as f:
                json.dump(self._data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self._path)
        except IOError as e:
            raise StoreError(f"Failed to write store: {e}") from e

    async def _mutate(self, fn: Callable[[Dict[str, Any]], Any]) -> Any:
        async with self._lock:
            result = fn(self._data)
            # mutations are serialized by the lock, so the flush thread sees a stable dict
            await asyncio.to_thread(self._save)
            return result

    def _table(self, table: str) -> List[Dict[str, Any]]:
        if table not in self._data["records"]:
            raise StoreError(f"Unknown table: {table}")
        return self._data["records"][table]

    # -- structured records -------------------------------------------------

    async def list_records(self, table, *, limit=50, filters=None):
        rows = [
            row for row in self._table(table)
            if all(row.get(k) == v for k, v in (filters or {}).items())
        ]
        rows.sort(key=lambda r: _sort_key(r, "updated_at"), reverse=True)
        return [_public_row(r) for r in rows[:limit]]

    async def get_record(self, table, record_id):
        for row in self._table(table):
            if row.get("id") == record_id:
                return _public_row(row)
        return None

    async def insert_record(self, table, data):
        now = utc_now_iso()
        row = {"id": uuid.uuid4().hex, "created_at": now, "updated_at": now, **data}

        def _insert(store):
            self._table(table).append(row)
            return _public_row(row)

        return await self._mutate(_insert)

    async def update_record(self, table, record_id, changes):
        def _update(store):
            for row in self._table(table):
                if row.get("id") == record_id:
                    row.update(changes)
                    row["updated_at"] = utc_now_iso()
                    return _public_row(row)
            return None

        return await self._mutate(_update)

    async def find_by_content(self, table, needle, limit=1):
        needle = (needle or "").lower()
        if not needle:
            return []
        hits = [
            _public_row(row) for row in self._table(table)
            if needle in str(row.get("content") or "").lower()
        ]
        return hits[:limit]

    async def match_records(self, embedding, tables, match_count=3):
        candidates = [
            (table, row) for table in tables for row in self._table(table)
            if row.get("embedding")
        ]
        scores = batch_cosine_similarity(embedding, [row["embedding"] for _, row in candidates])
        scored = [
            (table, _public_row(row), score)
            for (table, row), score in zip(candidates, scores)
            if score > 0
        ]
        scored.sort(key=lambda hit: hit[2], reverse=True)
        return scored[:match_count]

    # -- capture log --------------------------------------------------------

    def _log_rows(self) -> List[Dict[str, Any]]:
        return self._data["logs"]

    async def find_log(self, source, event_id):
        for row in self._log_rows():
            if row.get("event_source") == source.value and row.get("event_id") == event_id:
                return CaptureLogRecord(**row)
        return None

    async def insert_log(self, record):
        def _insert(store):
            if record.event_id:
                for row in self._log_rows():
                    if row.get("event_source") == record.event_source.value and row.get("event_id") == record.event_id:
                        raise DuplicateEventError(record.event_source.value, record.event_id)
            self._log_rows().append(record.model_dump(mode="json"))
            return record

        return await self._mutate(_insert)

    async def update_log(self, log_id, **changes):
        def _update(store):
            for row in self._log_rows():
                if row.get("id") == log_id:
                    row.update(_jsonable(changes))
                    row["updated_at"] = utc_now_iso()
                    return CaptureLogRecord(**row)
            return None

        return await self._mutate(_update)

    async def claim_log(self, log_id, expected_status, *, expected_updated_at=None, **changes):
        def _claim(store):
            for row in self._log_rows():
                if row.get("id") == log_id:
                    if row.get("status") != expected_status.value:
                        return False
                    if expected_updated_at is not None and row.get("updated_at") != expected_updated_at:
                        return False
                    row.update(_jsonable(changes))
                    row["updated_at"] = utc_now_iso()
                    return True
            return False

        return await self._mutate(_claim)

    async def find_logs_by_message(self, message, limit=5, exclude_id=None):
        rows = [
            row for row in self._log_rows()
            if row.get("user_message") == message and row.get("id") != exclude_id
        ]
        rows.sort(key=lambda r: _sort_key(r, "created_at"), reverse=True)
        return [CaptureLogRecord(**row) for row in rows[:limit]]

    async def recent_logs(self, source, status, since, limit=5):
        cutoff = since.timestamp()
        rows = [
            row for row in self._log_rows()
            if row.get("event_source") == source.value
            and row.get("status") == status.value
            and _sort_key(row, "created_at") >= cutoff
        ]
        rows.sort(key=lambda r: _sort_key(r, "created_at"), reverse=True)
        return [CaptureLogRecord(**row) for row in rows[:limit]]

    async def log_status_counts(self):
        counts: Dict[str, int] = {}
        for row in self._log_rows():
            status = row.get("status", "UNKNOWN")
            counts[status] = counts.get(status, 0) + 1
        return counts

    # -- memory / learnings / profile ---------------------------------------

    async def list_memory(self, limit=20):
        rows = sorted(self._data["memory"], key=lambda r: _sort_key(r, "last_seen"), reverse=True)
        return [MemoryEntry(**row) for row in rows[:limit]]

    async def upsert_memory(self, entry):
        def _upsert(store):
            payload = entry.model_dump(mode="json")
            for row in store["memory"]:
                if row.get("key") == entry.key:
                    row.update(payload)
                    return
            store["memory"].append(payload)

        await self._mutate(_upsert)

    async def list_learnings(self, limit=10):
        rows = [r for r in self._data["learnings"] if r.get("is_active", True)]
        rows.sort(key=lambda r: _sort_key(r, "created_at"), reverse=True)
        return [LearningEntry(**row) for row in rows[:limit]]

    async def insert_learning(self, entry):
        await self._mutate(lambda store: store["learnings"].append(entry.model_dump(mode="json")))

    async def get_custom_instructions(self, limit=12):
        prefs = (self._data.get("profile") or {}).get("preferences") or {}
        items = prefs.get("custom_instructions") or []
        return [str(item).strip() for item in items if str(item).strip()][:limit]


def _jsonable(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Enum values to their string form for JSON storage"""
    out = {}
    for key, value in changes.items():
        out[key] = value.value if hasattr(value, "value") else value
    return out
