"""
LLM Client for Commit Karaoke.

OpenAI-compatible chat completions over whichever provider the model
registry names for the configured model:
- provider, endpoint and credential resolved once, at construction
- payload trimmed to the model's context window by ContextAssembler
- every request fingerprinted and served through the call cache
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from karaoke.config import DEFAULT_CONTEXT_WINDOW, ModelSpec, get_model_spec, settings
from karaoke.core.context_assembler import ContextAssembler, Message
from karaoke.errors import GatewayError, InvalidRequestError
from karaoke.services.call_cache import ExternalCallCache
from karaoke.services.gateway import GatewayClient, hours

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 1024
STRUCTURED_MAX_TOKENS = 4096

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


@dataclass
class LLMResponse:
    """Response from the LLM."""
    content: str = ""
    finish_reason: Optional[str] = None
    usage: Optional[dict[str, Any]] = None
    trimmed: bool = False

    def json(self) -> Optional[dict[str, Any]]:
        """Parse ``content`` as a JSON object; ``None`` if it is not one."""
        text = _FENCE_RE.sub("", self.content.strip())
        try:
            value = json.loads(text)
        except ValueError:
            return None
        return value if isinstance(value, dict) else None


class LLMClient(GatewayClient):
    """
    Chat-completion client bound to one registered model.

    Unknown models fail at construction, not on the first request.
    """

    def __init__(
        self,
        cache: ExternalCallCache,
        *,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        assembler: Optional[ContextAssembler] = None,
    ) -> None:
        self.model = model or settings.llm_model
        try:
            self.model_spec: ModelSpec = get_model_spec(self.model)
        except KeyError as e:
            raise InvalidRequestError(str(e.args[0])) from None

        super().__init__(
            cache,
            base_url=self.model_spec.endpoint,
            timeout=timeout or settings.llm_timeout,
        )
        self.service = self.model_spec.provider
        self.api_key = api_key if api_key is not None else getattr(settings, self.model_spec.credential_setting)
        self.assembler = assembler or ContextAssembler()
        self.cache_ttl = hours(settings.llm_cache_hours)

    @property
    def context_window(self) -> int:
        return self.model_spec.context_window or DEFAULT_CONTEXT_WINDOW

    def default_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if self.model_spec.provider == "openrouter":
            headers["X-Title"] = "Commit Karaoke"
        return headers

    async def complete(
        self,
        system: str,
        prompt: str,
        *,
        history: Optional[list[Message]] = None,
        temperature: float = 0.7,
        response_format: Optional[dict[str, Any]] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """Send one chat completion, trimming the context to fit the model."""
        if response_format is not None:
            max_tokens = STRUCTURED_MAX_TOKENS
        max_tokens = max_tokens or DEFAULT_MAX_TOKENS

        budget = max(self.context_window - max_tokens, 1)
        context = self.assembler.fit(system, history, prompt, budget)

        payload: dict[str, Any] = {
            "model": self.model,
            "messages": context.messages(),
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if response_format is not None:
            payload["response_format"] = response_format

        logger.debug(
            f"LLM request: {self.model} via {self.service}, ~{context.estimated_tokens} tokens, "
            f"{len(context.history)} history turns"
        )
        data = await self.request(
            "POST",
            self.base_url,
            json_body=payload,
            cache_ttl=self.cache_ttl,
            validate=self._require_choices,
        )
        response = self._parse_response(data)
        response.trimmed = context.iterations > 0
        return response

    def _require_choices(self, data: Any) -> list[dict[str, Any]]:
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices or not isinstance(choices[0], dict):
            raise GatewayError(
                "Completion response has no choices",
                service=self.service,
                endpoint=self.base_url,
                response_payload=data if isinstance(data, dict) else None,
            )
        return choices

    def _parse_response(self, data: Any) -> LLMResponse:
        """Parse OpenAI-compatible response."""
        choice = self._require_choices(data)[0]
        message = choice.get("message") or {}
        usage = data.get("usage") or {}
        logger.info(
            f"LLM: {usage.get('prompt_tokens', 0)} prompt, "
            f"{usage.get('completion_tokens', 0)} completion tokens"
        )
        return LLMResponse(
            content=message.get("content") or "",
            finish_reason=choice.get("finish_reason"),
            usage=usage,
        )


class ImageClient(GatewayClient):
    """OpenAI image generation, used for optional cover art."""

    service = "openai"

    def __init__(
        self,
        cache: ExternalCallCache,
        *,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        size: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1",
        timeout: Optional[float] = None,
    ) -> None:
        super().__init__(cache, base_url=base_url, timeout=timeout or settings.llm_timeout)
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.cover_art_model
        self.size = size or settings.cover_art_size

    def default_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def generate_image(self, prompt: str) -> str:
        """Return the URL of one generated image."""
        if not prompt:
            raise InvalidRequestError("Missing parameter: prompt")
        data = await self.request(
            "POST",
            "/images/generations",
            json_body={"model": self.model, "prompt": prompt[:1000], "n": 1, "size": self.size},
            bypass_cache=True,
        )
        images = data.get("data") if isinstance(data, dict) else None
        if not images or not images[0].get("url"):
            raise GatewayError(
                "Image response has no URL",
                service=self.service,
                endpoint="/images/generations",
                response_payload=data,
            )
        return images[0]["url"]
