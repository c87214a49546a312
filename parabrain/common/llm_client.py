"""
LLM client used by the classifier and the vision reader.

One object per (provider, model). Provider SDKs are imported lazily so a
deployment only needs the package for the provider it configures:

    anthropic  -> anthropic.Anthropic
    openai     -> openai.OpenAI
    google     -> google.generativeai (models cached per system prompt)

Calls are synchronous; async callers go through ``asyncio.to_thread``.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger("parabrain.common.llm_client")

SUPPORTED_PROVIDERS = ("anthropic", "openai", "google")


def _connect_anthropic(api_key: str):
    import anthropic

    return anthropic.Anthropic(api_key=api_key)


def _connect_openai(api_key: str):
    from openai import OpenAI

    return OpenAI(api_key=api_key)


def _connect_google(api_key: str):
    import google.generativeai as genai

    genai.configure(api_key=api_key)
    return genai


_CONNECTORS = {
    "anthropic": (_connect_anthropic, "anthropic"),
    "openai": (_connect_openai, "openai"),
    "google": (_connect_google, "google-generativeai"),
}


class LLMClient:
    """Text and single-image generation over one configured provider."""

    def __init__(
        self,
        provider: str = "google",
        model: str = "",
        anthropic_api_key: Optional[str] = None,
        openai_api_key: Optional[str] = None,
        google_api_key: Optional[str] = None,
    ) -> None:
        self.provider = (provider or "google").lower()
        self.model = model
        self._client = None
        self._google_models: Dict[str, Any] = {}

        if self.provider == "auto":
            raise ValueError(
                '"auto" is not a provider; set llm.provider to one of '
                + ", ".join(SUPPORTED_PROVIDERS)
            )
        if self.provider not in _CONNECTORS:
            logger.warning("Unsupported LLM provider: %s", self.provider)
            return

        api_key = {
            "anthropic": anthropic_api_key,
            "openai": openai_api_key,
            "google": google_api_key,
        }[self.provider]
        if not api_key:
            logger.info("%s API key not provided, LLM client unavailable", self.provider)
            return

        connect, package = _CONNECTORS[self.provider]
        try:
            self._client = connect(api_key)
        except ImportError:
            logger.warning("%s package not installed", package)
        except Exception as e:
            logger.warning("Failed to initialize %s client: %s", self.provider, e)

    @property
    def is_available(self) -> bool:
        return self._client is not None

    def _require(self) -> None:
        if not self.is_available:
            raise RuntimeError("LLM client is not available")

    # -- provider calls -----------------------------------------------------

    def _anthropic(self, content: Any, system, max_tokens, timeout) -> str:
        response = self._client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            system=system or "",
            messages=[{"role": "user", "content": content}],
            timeout=timeout,
        )
        return response.content[0].text.strip()

    def _openai(self, content: Any, system, max_tokens, timeout, json_mode: bool) -> str:
        messages: List[Dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": content})
        extra = {"response_format": {"type": "json_object"}} if json_mode else {}
        response = self._client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            messages=messages,
            timeout=timeout,
            **extra,
        )
        return (response.choices[0].message.content or "").strip()

    def _google(self, content: Any, system, max_tokens, timeout, json_mode: bool) -> str:
        key = hashlib.md5((system or "").encode()).hexdigest()
        model = self._google_models.get(key)
        if model is None:
            options = {"model_name": self.model}
            if system:
                options["system_instruction"] = system
            model = self._google_models[key] = self._client.GenerativeModel(**options)

        generation_config: Dict[str, Any] = {"max_output_tokens": max_tokens}
        if json_mode:
            generation_config["response_mime_type"] = "application/json"
        response = model.generate_content(
            content,
            generation_config=generation_config,
            request_options={"timeout": timeout},
        )
        return response.text.strip()

    # -- public API ---------------------------------------------------------

    def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: int = 512,
        timeout: float = 30.0,
        json_mode: bool = False,
    ) -> str:
        """Plain prompt in, model text out.

        ``json_mode`` asks OpenAI and Gemini for a JSON-only response;
        Anthropic relies on the prompt wording.
        """
        self._require()
        if self.provider == "anthropic":
            return self._anthropic(prompt, system, max_tokens, timeout)
        if self.provider == "openai":
            return self._openai(prompt, system, max_tokens, timeout, json_mode)
        return self._google(prompt, system, max_tokens, timeout, json_mode)

    def generate_with_image(
        self,
        prompt: str,
        image_bytes: bytes,
        mime_type: str = "image/jpeg",
        *,
        system: Optional[str] = None,
        max_tokens: int = 1024,
        timeout: float = 30.0,
    ) -> str:
        """One image plus an instruction; the answer is expected to be JSON"""
        self._require()
        if self.provider == "google":
            parts = [{"mime_type": mime_type, "data": image_bytes}, prompt]
            return self._google(parts, system, max_tokens, timeout, True)

        encoded = base64.b64encode(image_bytes).decode("ascii")
        if self.provider == "anthropic":
            blocks = [
                {"type": "image", "source": {"type": "base64", "media_type": mime_type, "data": encoded}},
                {"type": "text", "text": prompt},
            ]
            return self._anthropic(blocks, system, max_tokens, timeout)

        blocks = [
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
        ]
        return self._openai(blocks, system, max_tokens, timeout, True)


def build_llm_client(llm_config, model: str = "") -> LLMClient:
    """LLMClient for the configured provider; ``model`` overrides the default"""
    provider = (llm_config.provider or "google").lower()
    default_model = {
        "anthropic": llm_config.anthropic_model,
        "openai": llm_config.openai_model,
        "google": llm_config.google_model,
    }.get(provider, "")
    return LLMClient(
        provider=provider,
        model=model or default_model,
        anthropic_api_key=llm_config.anthropic_api_key or None,
        openai_api_key=llm_config.openai_api_key or None,
        google_api_key=llm_config.google_api_key or None,
    )
