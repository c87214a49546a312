"""Tests for LLMClient provider abstraction."""

import pytest
from unittest.mock import MagicMock

from parabrain.common.llm_client import LLMClient, build_llm_client


class TestLLMClientInit:
    def test_missing_anthropic_key_logs_info(self, caplog):
        import logging
        with caplog.at_level(logging.INFO, logger="parabrain.common.llm_client"):
            client = LLMClient(provider="anthropic")
        assert not client.is_available
        assert "API key not provided" in caplog.text

    def test_missing_google_key_logs_info(self, caplog):
        import logging
        with caplog.at_level(logging.INFO, logger="parabrain.common.llm_client"):
            client = LLMClient(provider="google")
        assert not client.is_available
        assert "API key not provided" in caplog.text

    def test_auto_provider_raises(self):
        with pytest.raises(ValueError, match="auto"):
            LLMClient(provider="auto")

    def test_unsupported_provider_logs_warning(self, caplog):
        import logging
        with caplog.at_level(logging.WARNING, logger="parabrain.common.llm_client"):
            client = LLMClient(provider="unsupported_xyz")
        assert not client.is_available
        assert "Unsupported" in caplog.text


class TestLLMClientGenerate:
    def test_generate_raises_when_unavailable(self):
        client = LLMClient(provider="anthropic")
        with pytest.raises(RuntimeError, match="not available"):
            client.generate("test")

    def test_generate_with_image_raises_when_unavailable(self):
        client = LLMClient(provider="openai")
        with pytest.raises(RuntimeError, match="not available"):
            client.generate_with_image("read this", b"\x89PNG")

    def test_openai_json_mode_sets_response_format(self):
        client = LLMClient(provider="openai")
        fake = MagicMock()
        fake.chat.completions.create.return_value.choices = [
            MagicMock(message=MagicMock(content='  {"intent": "CHITCHAT"}  '))
        ]
        client._client = fake
        client.model = "gpt-4o-mini"

        text = client.generate("hello", system="sys", json_mode=True)

        assert text == '{"intent": "CHITCHAT"}'
        kwargs = fake.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][0] == {"role": "system", "content": "sys"}

    def test_anthropic_image_block(self):
        client = LLMClient(provider="anthropic")
        fake = MagicMock()
        fake.messages.create.return_value.content = [MagicMock(text="{}")]
        client._client = fake

        client.generate_with_image("read", b"abc", "image/png")

        content = fake.messages.create.call_args.kwargs["messages"][0]["content"]
        assert content[0]["type"] == "image"
        assert content[0]["source"]["media_type"] == "image/png"
        assert content[0]["source"]["data"] == "YWJj"


class TestBuildLLMClient:
    def test_picks_provider_model(self):
        from parabrain.common.config import LLMConfig
        client = build_llm_client(LLMConfig(provider="openai", openai_model="gpt-x"))
        assert client.provider == "openai"
        assert client.model == "gpt-x"
        assert not client.is_available

    def test_explicit_model_wins(self):
        from parabrain.common.config import LLMConfig
        client = build_llm_client(LLMConfig(provider="google"), model="gemini-vision")
        assert client.model == "gemini-vision"
