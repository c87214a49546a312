"""Tests for config loading -- sections, env overrides, secret handling."""

import json
import os
import pytest
from unittest.mock import patch


class TestDefaults:
    def test_capture_settings_defaults(self):
        from parabrain.common.config import CaptureSettings
        settings = CaptureSettings()
        assert settings.confirm_threshold == 0.72
        assert settings.semantic_dedup_threshold == 0.9
        assert settings.auto_capture_plan_enabled is True
        assert settings.approval_gates_enabled is False
        assert settings.timezone == "Asia/Bangkok"
        assert settings.processing_stale_seconds == 90.0

    def test_settings_are_frozen(self):
        from dataclasses import FrozenInstanceError
        from parabrain.common.config import CaptureSettings
        settings = CaptureSettings()
        with pytest.raises(FrozenInstanceError):
            settings.confirm_threshold = 0.1

    def test_load_config_without_file(self, tmp_path):
        from parabrain.common.config import load_config
        with patch("parabrain.common.config.CONFIG_PATH", tmp_path / "missing.json"), \
             patch.dict(os.environ, {}, clear=True):
            cfg = load_config()
        assert cfg.llm.provider == "google"
        assert cfg.capture.confirm_threshold == 0.72
        assert cfg.server.port == 8080


class TestLoadConfig:
    def test_file_sections(self, tmp_path):
        from parabrain.common.config import load_config
        config_data = {
            "llm": {"provider": "openai", "openai_api_key": "sk-test", "unknown_key": 1},
            "capture": {"confirm_threshold": "0.8", "retry_count": "4", "timezone": "UTC"},
            "telegram": {"allowed_user_id": 12345},
        }
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps(config_data))

        with patch("parabrain.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, {}, clear=True):
            cfg = load_config()

        assert cfg.llm.provider == "openai"
        assert cfg.llm.openai_api_key == "sk-test"
        assert cfg.capture.confirm_threshold == 0.8
        assert cfg.capture.retry_count == 4
        assert cfg.capture.timezone == "UTC"
        assert cfg.telegram.allowed_user_id == "12345"

    def test_invalid_json_falls_back_to_defaults(self, tmp_path):
        from parabrain.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text("{not json")

        with patch("parabrain.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, {}, clear=True):
            cfg = load_config()

        assert cfg.llm.provider == "google"

    def test_env_overrides_file(self, tmp_path):
        from parabrain.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"capture": {"confirm_threshold": 0.5}}))

        env = {
            "CAPTURE_CONFIRM_THRESHOLD": "0.65",
            "GEMINI_API_KEY": "g-key",
            "ENABLE_APPROVAL_GATES": "true",
            "ALFRED_AUTO_CAPTURE_ENABLED": "false",
            "AGENT_DEFAULT_TIMEZONE": "Europe/Berlin",
        }
        with patch("parabrain.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, env, clear=True):
            cfg = load_config()

        assert cfg.capture.confirm_threshold == 0.65
        assert cfg.llm.google_api_key == "g-key"
        assert cfg.capture.approval_gates_enabled is True
        assert cfg.capture.auto_capture_plan_enabled is False
        assert cfg.capture.timezone == "Europe/Berlin"

    def test_millisecond_env_vars(self, tmp_path):
        from parabrain.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text("{}")

        env = {
            "TELEGRAM_PROCESSING_STALE_MS": "120000",
            "EXTERNAL_API_TIMEOUT_MS": "2500",
            "EXTERNAL_API_RETRY_BASE_DELAY_MS": "100",
            "EXTERNAL_API_RETRY_COUNT": "-3",
        }
        with patch("parabrain.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, env, clear=True):
            cfg = load_config()

        assert cfg.capture.processing_stale_seconds == 120.0
        assert cfg.capture.api_timeout == 2.5
        assert cfg.capture.retry_base_delay == pytest.approx(0.1)
        assert cfg.capture.retry_count == 0

    def test_non_numeric_env_is_ignored(self, tmp_path, caplog):
        import logging
        from parabrain.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text("{}")

        with patch("parabrain.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, {"CAPTURE_CONFIRM_THRESHOLD": "high"}, clear=True), \
             caplog.at_level(logging.WARNING, logger="parabrain.common.config"):
            cfg = load_config()

        assert cfg.capture.confirm_threshold == 0.72
        assert "CAPTURE_CONFIRM_THRESHOLD" in caplog.text

