"""
Duplicate Detector

Three tiers, checked in order; the first positive tier wins:

1. Exact message: an earlier log with the same text that actually committed a write.
2. URL match: a URL in the message already stored in resources/tasks/projects.
3. Semantic: nearest stored record above the similarity threshold.

A failing tier degrades to "no signal" and never aborts the run.
"""

import asyncio
import logging
from typing import Optional, Sequence

from ..common.config import CaptureSettings
from ..common.embedding_service import EmbeddingService
from ..common.schemas import DedupMethod, DedupVerdict, MatchedRecordRef
from .store import CaptureStore
from .text_utils import has_committed_write

logger = logging.getLogger("parabrain.capture.dedup_detector")

URL_MATCH_TABLES = ("resources", "tasks", "projects")
SEMANTIC_TABLES = ("projects", "tasks", "resources")
EXACT_LOOKBACK = 5
SEMANTIC_MATCH_COUNT = 3

NO_SIGNAL_REASON = "No duplicate signal from exact/url/semantic checks"


def _title_of(row: dict) -> Optional[str]:
    return row.get("title") or row.get("name")


class DuplicateDetector:
    """Exact / URL / semantic duplicate checks for one inbound message."""

    def __init__(
        self,
        store: CaptureStore,
        settings: CaptureSettings,
        embedding_service: Optional[EmbeddingService] = None,
    ):
        self._store = store
        self._settings = settings
        self._embedder = embedding_service

    async def detect(
        self,
        message: str,
        urls: Sequence[str] = (),
        exclude_log_id: Optional[str] = None,
        exact_text: Optional[str] = None,
    ) -> DedupVerdict:
        """``exact_text`` is the text as the capture log stores it; defaults to ``message``"""
        ignored_reason: Optional[str] = None

        # Tier 1: exact message
        try:
            rows = await self._store.find_logs_by_message(
                exact_text or message, limit=EXACT_LOOKBACK, exclude_id=exclude_log_id)
        except Exception as e:
            logger.warning("Exact-message dedup check failed: %s", e)
            rows = []

        for row in rows:
            if not has_committed_write(row.action_type, row.ai_response):
                if ignored_reason is None:
                    ignored_reason = (
                        f"Exact message seen but prior run had no write "
                        f"(action={row.action_type}, status={row.status.value})"
                    )
                continue
            return DedupVerdict(
                is_duplicate=True,
                reason="Exact same message already created previously",
                method=DedupMethod.EXACT_MESSAGE,
                matched_log_id=row.id,
                matched_action_type=row.action_type,
                matched_status=row.status.value,
            )

        # Tier 2: URL match
        for url in urls:
            for table in URL_MATCH_TABLES:
                try:
                    hits = await self._store.find_by_content(table, url, limit=1)
                except Exception as e:
                    logger.warning("URL dedup check on %s failed: %s", table, e)
                    continue
                if hits:
                    hit = hits[0]
                    return DedupVerdict(
                        is_duplicate=True,
                        reason=f"Found matching URL in {table}",
                        method=DedupMethod.URL_MATCH,
                        matched=MatchedRecordRef(table=table, id=str(hit.get("id")), title=_title_of(hit), link=url),
                        exact_message_no_write_ignored=ignored_reason is not None,
                    )

        # Tier 3: semantic
        verdict = await self._semantic(message)
        if verdict is not None:
            if ignored_reason is not None:
                verdict = verdict.model_copy(update={"exact_message_no_write_ignored": True})
            return verdict

        return DedupVerdict(
            is_duplicate=False,
            reason=ignored_reason or NO_SIGNAL_REASON,
            method=DedupMethod.NONE,
            exact_message_no_write_ignored=ignored_reason is not None,
        )

    async def _semantic(self, message: str) -> Optional[DedupVerdict]:
        if self._embedder is None or not message.strip():
            return None
        try:
            vector = await asyncio.to_thread(self._embedder.embed_single, message)
            hits = await self._store.match_records(vector, SEMANTIC_TABLES, match_count=SEMANTIC_MATCH_COUNT)
        except Exception as e:
            logger.warning("Semantic dedup check failed: %s", e)
            return None

        if not hits:
            return None
        table, row, similarity = hits[0]
        if similarity < self._settings.semantic_dedup_threshold:
            logger.debug("Top semantic hit %.3f below threshold", similarity)
            return None
        return DedupVerdict(
            is_duplicate=True,
            reason=f"Semantic match {similarity:.3f} from {table}",
            method=DedupMethod.SEMANTIC_VECTOR,
            similarity=similarity,
            matched=MatchedRecordRef(table=table, id=str(row.get("id")), title=_title_of(row)),
        )
