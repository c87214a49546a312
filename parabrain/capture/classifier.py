"""
Capture Classifier

One JSON-mode model call per message. Transport and rate-limit failures are
retried under the retry policy; unusable output becomes a neutral chat reply.
"""

import asyncio
import logging
from typing import Optional

from pydantic import ValidationError

from ..common.config import CaptureSettings
from ..common.llm_client import LLMClient
from ..common.llm_utils import parse_llm_json
from ..common.retry import RetryPolicy, run_with_retry
from ..common.schemas import ClassifierOutput
from .prompt_builder import build_response_schema, render_schema_instruction

logger = logging.getLogger("parabrain.capture.classifier")

SYSTEM_PROMPT = "You classify personal capture messages. Output a single JSON object and nothing else."


class ClassifierUnavailableError(Exception):
    """The classifier could not be reached within the retry budget"""


class CaptureClassifier:
    """Wraps LLMClient for structured capture classification."""

    def __init__(
        self,
        llm_client: Optional[LLMClient],
        settings: CaptureSettings,
        max_tokens: int = 2048,
    ):
        self._llm = llm_client
        self._policy = RetryPolicy.from_settings(settings)
        self._max_tokens = max_tokens
        self._schema_instruction = render_schema_instruction(build_response_schema())

    @property
    def is_available(self) -> bool:
        return self._llm is not None and self._llm.is_available

    async def classify(self, prompt: str) -> ClassifierOutput:
        if not self.is_available:
            raise ClassifierUnavailableError("LLM client is not available")

        full_prompt = f"{prompt}\n\n{self._schema_instruction}"

        async def _call() -> str:
            return await asyncio.to_thread(
                self._llm.generate,
                full_prompt,
                system=SYSTEM_PROMPT,
                max_tokens=self._max_tokens,
                timeout=self._policy.timeout,
                json_mode=True,
            )

        try:
            raw = await run_with_retry(_call, self._policy, label="classifier")
        except Exception as e:
            logger.warning("Classifier call failed: %s", e)
            raise ClassifierUnavailableError(str(e)) from e

        return self.parse(raw)

    @staticmethod
    def parse(raw: str) -> ClassifierOutput:
        """Validate raw model text; anything unusable yields the fallback"""
        data = parse_llm_json(raw)
        if not data:
            logger.info("Classifier returned no parseable JSON, using fallback")
            return ClassifierOutput.fallback()
        try:
            return ClassifierOutput.model_validate(data)
        except ValidationError as e:
            logger.info("Classifier output failed validation, using fallback: %s", e)
            return ClassifierOutput.fallback()
