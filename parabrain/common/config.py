"""
Configuration Management for ParaBrain

Loads configuration from ~/.parabrain/config.json and environment variables.
Every section is a frozen dataclass: the configuration is built once at startup
and passed explicitly into the pipeline components.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

logger = logging.getLogger("parabrain.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".parabrain"
CONFIG_PATH = CONFIG_DIR / "config.json"
LOGS_DIR = CONFIG_DIR / "logs"
STORE_PATH = CONFIG_DIR / "store.json"

DEFAULT_TIMEZONE = "Asia/Bangkok"


@dataclass(frozen=True)
class LLMConfig:
    """Classifier / vision provider configuration"""
    provider: str = "google"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    google_api_key: str = ""
    google_model: str = "gemini-2.0-flash"
    vision_model: str = ""  # empty: same model as the classifier
    max_tokens: int = 2048


@dataclass(frozen=True)
class EmbeddingConfig:
    """Embedding model configuration (fastembed, on-device)"""
    model: str = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"
    fallback_model: str = "BAAI/bge-small-en-v1.5"


@dataclass(frozen=True)
class CaptureSettings:
    """Decision thresholds and feature flags for the capture pipeline"""
    confirm_threshold: float = 0.72
    semantic_dedup_threshold: float = 0.9
    auto_capture_plan_enabled: bool = True
    approval_gates_enabled: bool = False
    timezone: str = DEFAULT_TIMEZONE
    processing_stale_seconds: float = 90.0
    image_max_bytes: int = 2_500_000
    image_finance_threshold: float = 0.55
    url_title_timeout: float = 4.0
    session_window_minutes: int = 30
    api_timeout: float = 15.0
    retry_count: int = 2
    retry_base_delay: float = 0.4


@dataclass(frozen=True)
class ServerConfig:
    """HTTP intake server configuration"""
    host: str = "0.0.0.0"
    port: int = 8080
    capture_api_secret: str = ""


@dataclass(frozen=True)
class TelegramConfig:
    """Telegram bot webhook configuration"""
    bot_token: str = ""
    webhook_secret: str = ""
    allowed_user_id: str = ""
    allowed_chat_id: str = ""


@dataclass(frozen=True)
class LineConfig:
    """LINE Messaging API configuration (legacy channel)"""
    channel_access_token: str = ""
    channel_secret: str = ""
    allowed_user_id: str = ""


@dataclass(frozen=True)
class StoreConfig:
    """Record store configuration"""
    path: str = str(STORE_PATH)


@dataclass(frozen=True)
class ParaBrainConfig:
    """Main ParaBrain configuration"""
    llm: LLMConfig = field(default_factory=LLMConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    capture: CaptureSettings = field(default_factory=CaptureSettings)
    server: ServerConfig = field(default_factory=ServerConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    line: LineConfig = field(default_factory=LineConfig)
    store: StoreConfig = field(default_factory=StoreConfig)


def _section_kwargs(cls, section: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only keys that the dataclass declares"""
    allowed = set(cls.__dataclass_fields__)
    return {k: v for k, v in (section or {}).items() if k in allowed}


def _parse_llm_config(data: dict) -> LLMConfig:
    """Parse llm section from config dict"""
    return LLMConfig(**_section_kwargs(LLMConfig, data.get("llm", {})))


def _parse_embedding_config(data: dict) -> EmbeddingConfig:
    """Parse embedding section from config dict"""
    return EmbeddingConfig(**_section_kwargs(EmbeddingConfig, data.get("embedding", {})))


def _parse_capture_settings(data: dict) -> CaptureSettings:
    """Parse capture section, coercing numeric fields"""
    section = _section_kwargs(CaptureSettings, data.get("capture", {}))
    for key in (
        "confirm_threshold", "semantic_dedup_threshold", "processing_stale_seconds",
        "image_finance_threshold", "url_title_timeout", "api_timeout", "retry_base_delay",
    ):
        if key in section:
            section[key] = float(section[key])
    for key in ("image_max_bytes", "session_window_minutes", "retry_count"):
        if key in section:
            section[key] = int(section[key])
    return CaptureSettings(**section)


def _parse_server_config(data: dict) -> ServerConfig:
    """Parse server section from config dict"""
    return ServerConfig(**_section_kwargs(ServerConfig, data.get("server", {})))


def _parse_telegram_config(data: dict) -> TelegramConfig:
    """Parse telegram section from config dict"""
    section = _section_kwargs(TelegramConfig, data.get("telegram", {}))
    return TelegramConfig(**{k: str(v) for k, v in section.items()})


def _parse_line_config(data: dict) -> LineConfig:
    """Parse line section from config dict"""
    return LineConfig(**_section_kwargs(LineConfig, data.get("line", {})))


def _parse_store_config(data: dict) -> StoreConfig:
    """Parse store section from config dict"""
    return StoreConfig(**_section_kwargs(StoreConfig, data.get("store", {})))


def _env_bool(value: str) -> bool:
    return value.strip().lower() not in ("0", "false", "no", "off", "")


def _env_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return None


def _capture_env_overrides() -> Dict[str, Any]:
    """Collect capture-setting overrides from the environment"""
    overrides: Dict[str, Any] = {}

    for env_var, attr in (
        ("CAPTURE_CONFIRM_THRESHOLD", "confirm_threshold"),
        ("CAPTURE_SEMANTIC_DEDUP_THRESHOLD", "semantic_dedup_threshold"),
        ("IMAGE_FINANCE_CONFIDENCE_THRESHOLD", "image_finance_threshold"),
    ):
        val = _env_float(env_var)
        if val is not None:
            overrides[attr] = val

    max_bytes = _env_float("CAPTURE_IMAGE_MAX_BYTES")
    if max_bytes is not None:
        overrides["image_max_bytes"] = int(max_bytes)

    # Millisecond env vars map onto second-based settings
    for env_var, attr in (
        ("TELEGRAM_PROCESSING_STALE_MS", "processing_stale_seconds"),
        ("EXTERNAL_API_TIMEOUT_MS", "api_timeout"),
        ("EXTERNAL_API_RETRY_BASE_DELAY_MS", "retry_base_delay"),
    ):
        val = _env_float(env_var)
        if val is not None:
            overrides[attr] = val / 1000.0

    retries = _env_float("EXTERNAL_API_RETRY_COUNT")
    if retries is not None:
        overrides["retry_count"] = max(0, int(retries))

    if os.getenv("ALFRED_AUTO_CAPTURE_ENABLED") is not None:
        overrides["auto_capture_plan_enabled"] = _env_bool(os.getenv("ALFRED_AUTO_CAPTURE_ENABLED"))
    if os.getenv("ENABLE_APPROVAL_GATES") is not None:
        overrides["approval_gates_enabled"] = _env_bool(os.getenv("ENABLE_APPROVAL_GATES"))
    if os.getenv("AGENT_DEFAULT_TIMEZONE"):
        overrides["timezone"] = os.getenv("AGENT_DEFAULT_TIMEZONE")

    return overrides


def load_config() -> ParaBrainConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.parabrain/config.json)
    3. Default values
    """
    data: Dict[str, Any] = {}
    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Failed to load config file: %s", e)
            data = {}

    llm = _parse_llm_config(data)
    embedding = _parse_embedding_config(data)
    capture = _parse_capture_settings(data)
    server = _parse_server_config(data)
    telegram = _parse_telegram_config(data)
    line = _parse_line_config(data)
    store = _parse_store_config(data)

    # LLM env var overrides (track env-sourced keys so they are never persisted)
    _env_llm_map = {
        "ANTHROPIC_API_KEY": "anthropic_api_key",
        "ANTHROPIC_MODEL": "anthropic_model",
        "OPENAI_API_KEY": "openai_api_key",
        "OPENAI_MODEL": "openai_model",
        "GOOGLE_API_KEY": "google_api_key",
        "GEMINI_API_KEY": "google_api_key",
        "GOOGLE_MODEL": "google_model",
        "GEMINI_VISION_MODEL": "vision_model",
        "PARABRAIN_LLM_PROVIDER": "provider",
    }
    llm_overrides = {}
    for env_var, attr in _env_llm_map.items():
        val = os.getenv(env_var)
        if val:
            llm_overrides[attr] = val
    if llm_overrides:
        llm = replace(llm, **llm_overrides)

    if os.getenv("AGENT_EMBEDDING_MODEL"):
        embedding = replace(embedding, model=os.getenv("AGENT_EMBEDDING_MODEL"))

    capture_overrides = _capture_env_overrides()
    if capture_overrides:
        capture = replace(capture, **capture_overrides)

    if os.getenv("PARABRAIN_PORT"):
        server = replace(server, port=int(os.getenv("PARABRAIN_PORT")))
    if os.getenv("CAPTURE_API_SECRET"):
        server = replace(server, capture_api_secret=os.getenv("CAPTURE_API_SECRET"))

    _env_telegram_map = {
        "TELEGRAM_BOT_TOKEN": "bot_token",
        "TELEGRAM_WEBHOOK_SECRET": "webhook_secret",
        "TELEGRAM_USER_ID": "allowed_user_id",
        "TELEGRAM_CHAT_ID": "allowed_chat_id",
    }
    telegram_overrides = {
        attr: os.getenv(env_var)
        for env_var, attr in _env_telegram_map.items()
        if os.getenv(env_var)
    }
    if telegram_overrides:
        telegram = replace(telegram, **telegram_overrides)

    _env_line_map = {
        "LINE_CHANNEL_ACCESS_TOKEN": "channel_access_token",
        "LINE_CHANNEL_SECRET": "channel_secret",
        "LINE_USER_ID": "allowed_user_id",
    }
    line_overrides = {
        attr: os.getenv(env_var)
        for env_var, attr in _env_line_map.items()
        if os.getenv(env_var)
    }
    if line_overrides:
        line = replace(line, **line_overrides)

    if os.getenv("PARABRAIN_STORE_PATH"):
        store = replace(store, path=os.getenv("PARABRAIN_STORE_PATH"))

    return ParaBrainConfig(
        llm=llm,
        embedding=embedding,
        capture=capture,
        server=server,
        telegram=telegram,
        line=line,
        store=store,
    )


def ensure_directories() -> None:
    """Ensure required directories exist"""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
