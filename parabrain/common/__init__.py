"""
ParaBrain Common Module

Shared infrastructure for the capture pipeline: configuration, retry policy,
LLM and embedding clients, language detection and schemas.
"""

from .config import ParaBrainConfig, CaptureSettings, load_config
from .embedding_service import EmbeddingService
from .llm_client import LLMClient
from .retry import RetryPolicy, run_with_retry

__all__ = [
    "ParaBrainConfig",
    "CaptureSettings",
    "load_config",
    "EmbeddingService",
    "LLMClient",
    "RetryPolicy",
    "run_with_retry",
]
