"""
Language-model provider interface.

Every completion is requested in JSON mode and parsed straight away into
``Ok(value)`` or ``Malformed(reason)`` against a pydantic model, so no
unchecked JSON leaves the calling stage.

Swap the concrete provider with ``set_llm_provider`` (tests, other vendors).
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from clipforge.settings import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Malformed:
    reason: str
    raw: str | None = None


CompletionResult = Union[Ok[T], Malformed]


def parse_completion(raw: str | None, model: type[T]) -> CompletionResult:
    """Validate raw model output against ``model``."""
    if not raw or not raw.strip():
        return Malformed("empty completion", raw)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        return Malformed(f"invalid json: {e.msg}", raw[:500])
    if not isinstance(data, dict):
        return Malformed(f"expected a json object, got {type(data).__name__}", raw[:500])
    try:
        return Ok(model.model_validate(data))
    except ValidationError as e:
        return Malformed(f"schema mismatch: {e.error_count()} error(s)", raw[:500])


@dataclass
class PromptSpec:
    system: str
    user: str
    temperature: float = 0.7


class CompletionProvider(ABC):
    """Abstract JSON-mode completion backend."""

    name: str = "unknown"

    @abstractmethod
    async def complete(self, prompt: PromptSpec) -> str:
        """Return the raw JSON text produced for ``prompt``."""
        ...


class OpenAICompletionProvider(CompletionProvider):
    name = "openai"

    def __init__(self, client: AsyncOpenAI | None = None, model: str | None = None):
        self._client = client
        self.model = model or get_settings().openai_chat_model

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=get_settings().openai_api_key, timeout=120.0)
        return self._client

    async def complete(self, prompt: PromptSpec) -> str:
        completion = await self._get_client().chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": prompt.system},
                {"role": "user", "content": prompt.user},
            ],
            response_format={"type": "json_object"},
            temperature=prompt.temperature,
        )
        return completion.choices[0].message.content or ""


async def complete_json(prompt: PromptSpec, model: type[T], *, provider: CompletionProvider | None = None) -> CompletionResult:
    """Call the provider and parse. Transport errors propagate; bad output becomes Malformed."""
    provider = provider or get_llm_provider()
    raw = await provider.complete(prompt)
    result = parse_completion(raw, model)
    if isinstance(result, Malformed):
        logger.warning(f"[llm] {provider.name} malformed {model.__name__}: {result.reason}")
    return result


def as_index(value: Any) -> int | None:
    """Integral segment index from model output, or None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def format_segments(segments: list[Any], *, mark_highlights: bool = False) -> str:
    lines = []
    for i, s in enumerate(segments):
        line = f'[{i}] {s.start:.1f}-{s.end:.1f}s: "{s.text}"'
        if mark_highlights and s.is_highlight:
            line += " [HIGHLIGHT]"
        lines.append(line)
    return "\n".join(lines)


_provider: CompletionProvider | None = None


def get_llm_provider() -> CompletionProvider:
    global _provider
    if _provider is None:
        _provider = OpenAICompletionProvider()
    return _provider


def set_llm_provider(provider: CompletionProvider | None) -> None:
    global _provider
    _provider = provider
