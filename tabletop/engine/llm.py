"""
tabletop.engine.llm — Vision-Capable Language Model Clients
============================================================

Two interchangeable providers sit behind :class:`VisionClient`:

* :class:`OpenAIVisionClient` — chat completions with ``image_url`` parts and
  a JSON-schema ``response_format``.
* :class:`AnthropicVisionClient` — messages API with base64 image blocks and
  a single forced tool whose ``input_schema`` is the response schema.

Both validate the reply against a pydantic model and raise :class:`LLMError`
on any provider failure (HTTP, rate limit, malformed or off-schema output).
Model choices are written ``provider__model`` (see :class:`AIModel`).
"""

from __future__ import annotations

import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Any, TypeVar

import anthropic
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI
from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=BaseModel)

DEFAULT_MODEL = "anthropic__claude-3-haiku-20240307"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_MAX_TOKENS = 8192

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.*)$", re.DOTALL)


class LLMError(Exception):
    """A model call failed or returned something unusable."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def parse_model_preference(value: str | None, default: str = DEFAULT_MODEL) -> tuple[str, str]:
    """Split ``provider__model`` into ``(provider, model)``.

    ``None`` falls back to *default*.  Anything that isn't ``anthropic`` is
    served by OpenAI, with ``gpt-4o-mini`` when the model part is missing.
    """
    provider, _, model = (value or default).partition("__")
    if provider == "anthropic" and model:
        return "anthropic", model
    return "openai", model or DEFAULT_OPENAI_MODEL


def split_data_url(url: str) -> tuple[str, str]:
    """Return ``(mime, base64_payload)`` for a ``data:`` URL."""
    match = _DATA_URL_RE.match(url)
    if match is None:
        raise LLMError("Image is not an inline base64 data URL")
    return match.group("mime"), match.group("data")


def _validate(schema: type[S], payload: Any, provider: str) -> S:
    try:
        if isinstance(payload, str):
            return schema.model_validate_json(payload)
        return schema.model_validate(payload)
    except SchemaValidationError as exc:
        raise LLMError(
            f"{provider} response did not match {schema.__name__}: {exc}"
        ) from exc


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------
class VisionClient(ABC):
    """Common surface of both providers."""

    provider = "base"

    def __init__(self, model: str, max_tokens: int = DEFAULT_MAX_TOKENS) -> None:
        self.model = model
        self.max_tokens = max_tokens

    @property
    def model_id(self) -> str:
        return f"{self.provider}__{self.model}"

    @abstractmethod
    async def extract(
        self,
        *,
        system: str,
        images: list[str],
        schema: type[S],
        text: str | None = None,
    ) -> S:
        """Send *images* (data URLs) with *system* and return a *schema* instance."""

    @abstractmethod
    async def complete(self, prompt: str, images: list[str] | None = None) -> str:
        """Free-form answer to *prompt*, optionally with inline images."""


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------
class OpenAIVisionClient(VisionClient):
    provider = "openai"

    def __init__(
        self,
        model: str = DEFAULT_OPENAI_MODEL,
        api_key: str | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        super().__init__(model, max_tokens)
        self._api_key = api_key
        self._client: AsyncOpenAI | None = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self._api_key or os.getenv("OPENAI_API_KEY"))
        return self._client

    @staticmethod
    def _content(text: str | None, images: list[str]) -> list[dict[str, Any]]:
        parts: list[dict[str, Any]] = []
        if text:
            parts.append({"type": "text", "text": text})
        parts.extend({"type": "image_url", "image_url": {"url": url}} for url in images)
        return parts

    async def extract(self, *, system, images, schema, text=None):
        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": self._content(text, images)},
                ],
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": schema.__name__,
                        "schema": schema.model_json_schema(),
                    },
                },
            )
        except openai.OpenAIError as exc:
            raise LLMError(f"OpenAI request failed: {exc}") from exc

        raw = response.choices[0].message.content
        if not raw:
            raise LLMError("OpenAI returned an empty response")
        return _validate(schema, raw, "OpenAI")

    async def complete(self, prompt, images=None):
        client = self._get_client()
        content: str | list[dict[str, Any]] = (
            self._content(prompt, images) if images else prompt
        )
        try:
            response = await client.chat.completions.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": content}],
            )
        except openai.OpenAIError as exc:
            raise LLMError(f"OpenAI request failed: {exc}") from exc
        return response.choices[0].message.content or ""


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------
class AnthropicVisionClient(VisionClient):
    provider = "anthropic"

    def __init__(
        self,
        model: str = "claude-3-haiku-20240307",
        api_key: str | None = None,
        max_tokens: int = 4096,
    ) -> None:
        super().__init__(model, max_tokens)
        self._api_key = api_key
        self._client: AsyncAnthropic | None = None

    def _get_client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic(
                api_key=self._api_key or os.getenv("ANTHROPIC_API_KEY")
            )
        return self._client

    @staticmethod
    def _content(text: str | None, images: list[str]) -> list[dict[str, Any]]:
        blocks: list[dict[str, Any]] = []
        for url in images:
            mime, payload = split_data_url(url)
            blocks.append({
                "type": "image",
                "source": {"type": "base64", "media_type": mime, "data": payload},
            })
        if text:
            blocks.append({"type": "text", "text": text})
        return blocks

    async def extract(self, *, system, images, schema, text=None):
        client = self._get_client()
        tool_name = f"record_{re.sub(r'(?<!^)(?=[A-Z])', '_', schema.__name__).lower()}"
        try:
            response = await client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=system,
                messages=[{"role": "user", "content": self._content(text, images)}],
                tools=[{
                    "name": tool_name,
                    "description": f"Record the extracted {schema.__name__}.",
                    "input_schema": schema.model_json_schema(),
                }],
                tool_choice={"type": "tool", "name": tool_name},
            )
        except anthropic.AnthropicError as exc:
            raise LLMError(f"Anthropic request failed: {exc}") from exc

        for block in response.content:
            if block.type == "tool_use" and block.name == tool_name:
                return _validate(schema, block.input, "Anthropic")
        raise LLMError("Anthropic response contained no structured output")

    async def complete(self, prompt, images=None):
        client = self._get_client()
        content: str | list[dict[str, Any]] = (
            self._content(prompt, images) if images else prompt
        )
        try:
            response = await client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": content}],
            )
        except anthropic.AnthropicError as exc:
            raise LLMError(f"Anthropic request failed: {exc}") from exc
        return "".join(block.text for block in response.content if block.type == "text")


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------
def get_vision_client(
    model_preference: str | None = None, default: str = DEFAULT_MODEL
) -> VisionClient:
    """Build the client for a ``provider__model`` preference."""
    provider, model = parse_model_preference(model_preference, default)
    logger.info("Using %s model: %s", provider, model)
    if provider == "anthropic":
        return AnthropicVisionClient(model=model)
    return OpenAIVisionClient(model=model)
