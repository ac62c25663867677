"""Language-model service client and LLM response parsing utilities.

The pipeline talks to language models only through the ``LLMService``
protocol (chat completion, embeddings, provider listing, liveness). The
default implementation routes ``anthropic`` to the Anthropic SDK and every
other provider to an OpenAI-compatible endpoint.
"""

import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from docflow.core.config import get_settings
from docflow.core.errors import LLMUnavailableError
from docflow.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ProviderModels:
    """A chat provider and the models it serves."""

    provider: str
    models: list[str] = field(default_factory=list)


@dataclass
class ProviderChoice:
    provider: str
    model: str
    is_default_fallback: bool = False


class LLMService(Protocol):
    """Narrow contract the pipeline needs from a model provider."""

    async def chat_complete(
        self,
        messages: list[dict[str, Any]],
        provider: str,
        model: str,
        temperature: float | None = None,
    ) -> str: ...

    async def embed(self, text: str, provider: str, model: str) -> list[float]: ...

    async def list_chat_providers(self) -> list[ProviderModels]: ...

    async def ping(self) -> bool: ...


class ProviderLLMService:
    """LLMService backed by the OpenAI and Anthropic SDKs."""

    def __init__(
        self,
        openai_client: AsyncOpenAI | None = None,
        anthropic_client: AsyncAnthropic | None = None,
    ):
        settings = get_settings()
        if openai_client is None and settings.OPENAI_API_KEY:
            openai_client = AsyncOpenAI(
                api_key=settings.OPENAI_API_KEY,
                base_url=settings.OPENAI_BASE_URL,
            )
        if anthropic_client is None and settings.ANTHROPIC_API_KEY:
            anthropic_client = AsyncAnthropic(api_key=settings.ANTHROPIC_API_KEY)
        self._openai = openai_client
        self._anthropic = anthropic_client

    def _require_openai(self, provider: str, model: str) -> AsyncOpenAI:
        if self._openai is None:
            raise LLMUnavailableError("OpenAI-compatible client not configured", provider, model)
        return self._openai

    async def chat_complete(
        self,
        messages: list[dict[str, Any]],
        provider: str,
        model: str,
        temperature: float | None = None,
    ) -> str:
        if provider == "anthropic":
            if self._anthropic is None:
                raise LLMUnavailableError("Anthropic client not configured", provider, model)
            system = "\n\n".join(m["content"] for m in messages if m.get("role") == "system")
            turns = [m for m in messages if m.get("role") != "system"]
            kwargs: dict[str, Any] = {
                "model": model,
                "max_tokens": 2048,
                "messages": turns,
            }
            if system:
                kwargs["system"] = system
            if temperature is not None:
                kwargs["temperature"] = temperature
            response = await self._anthropic.messages.create(**kwargs)
            return normalize_llm_content(
                [block for block in response.content if getattr(block, "type", "") == "text"]
            )

        client = self._require_openai(provider, model)
        kwargs = {"model": model, "messages": messages}
        if temperature is not None:
            kwargs["temperature"] = temperature
        response = await client.chat.completions.create(**kwargs)
        if not response.choices:
            return ""
        return normalize_llm_content(response.choices[0].message.content)

    async def embed(self, text: str, provider: str, model: str) -> list[float]:
        client = self._require_openai(provider, model)
        response = await client.embeddings.create(model=model, input=text)
        if not response.data:
            raise LLMUnavailableError("No embedding returned", provider, model)
        return list(response.data[0].embedding)

    async def list_chat_providers(self) -> list[ProviderModels]:
        providers: list[ProviderModels] = []
        if self._openai is not None:
            page = await self._openai.models.list()
            models = sorted(m.id for m in page.data)
            providers.append(ProviderModels(provider="openai", models=models))
        if self._anthropic is not None:
            page = await self._anthropic.models.list()
            providers.append(
                ProviderModels(provider="anthropic", models=[m.id for m in page.data])
            )
        return providers

    async def ping(self) -> bool:
        try:
            providers = await self.list_chat_providers()
        except Exception as e:
            logger.debug(f"LLM ping failed: {e}")
            return False
        return bool(providers)


class ChatProviderResolver:
    """Resolves the default chat provider/model once and caches it.

    Held by the orchestrator and passed to services; ``invalidate()`` forces
    the next call to ask the LLM service again.
    """

    def __init__(self, llm: LLMService):
        self._llm = llm
        self._cached: ProviderChoice | None = None
        self._lock = asyncio.Lock()

    async def resolve(
        self, provider: str | None = None, model: str | None = None
    ) -> ProviderChoice:
        """Explicit provider/model override the cached default."""
        if provider and model:
            return ProviderChoice(provider=provider, model=model)
        default = await self._default()
        return ProviderChoice(
            provider=provider or default.provider,
            model=model or default.model,
            is_default_fallback=default.is_default_fallback,
        )

    def invalidate(self) -> None:
        self._cached = None

    async def _default(self) -> ProviderChoice:
        async with self._lock:
            if self._cached is None:
                self._cached = await self._discover()
            return self._cached

    async def _discover(self) -> ProviderChoice:
        settings = get_settings()
        fallback = ProviderChoice(
            provider=settings.DEFAULT_LLM_PROVIDER,
            model=settings.DEFAULT_LLM_MODEL,
            is_default_fallback=True,
        )
        try:
            providers = await asyncio.wait_for(
                self._llm.list_chat_providers(),
                timeout=settings.PROVIDER_LIST_TIMEOUT_SECONDS,
            )
        except Exception as e:
            logger.warning(f"Provider listing failed, using configured default: {e}")
            return fallback

        if not providers:
            return fallback

        preferred = next(
            (p for p in providers if p.provider == settings.DEFAULT_LLM_PROVIDER), None
        )
        chosen = preferred or providers[0]
        if preferred and settings.DEFAULT_LLM_MODEL in chosen.models:
            model = settings.DEFAULT_LLM_MODEL
        else:
            model = chosen.models[0] if chosen.models else settings.DEFAULT_LLM_MODEL
        return ProviderChoice(
            provider=chosen.provider, model=model, is_default_fallback=preferred is None
        )


# =============================================================================
# Response parsing
# =============================================================================


def normalize_llm_content(content: Any) -> str:
    """Flatten the content shapes returned by chat SDKs into plain text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, (int, float, bool)):
        return str(content)
    if isinstance(content, list):
        parts = [normalize_llm_content(part) for part in content]
        return "\n".join(p for p in parts if p)
    text = getattr(content, "text", None)
    if isinstance(text, str):
        return text
    if isinstance(content, dict):
        if isinstance(content.get("text"), str):
            return content["text"]
        if "content" in content:
            return normalize_llm_content(content["content"])
        return json.dumps(content)
    return str(content)


def preview_llm_text(raw: str, max_chars: int = 240) -> str:
    """Whitespace-collapsed prefix for logs and traces."""
    return re.sub(r"\s+", " ", raw).strip()[:max_chars]


def _strip_llm_fences(raw_output: str) -> str:
    """Strip markdown code fences from LLM output.

    Handles: ```json ... ```, ``` ... ```, leading/trailing whitespace.
    """
    cleaned = raw_output.strip()

    fence_match = re.search(r"```(?:json)?\s*\n?(.*?)```", cleaned, re.DOTALL)
    if fence_match:
        return fence_match.group(1).strip()

    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def find_json_object(raw_output: str) -> str | None:
    """Return the first balanced-brace ``{...}`` block in the text.

    String literals are respected so braces inside quoted values do not
    unbalance the scan.
    """
    start = raw_output.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(raw_output)):
            ch = raw_output[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return raw_output[start : i + 1]
        start = raw_output.find("{", start + 1)
    return None


def parse_llm_json_dict(raw_output: str) -> dict:
    """
    Parse LLM output as a JSON object.

    Tries the fence-stripped text first, then the first balanced-brace block.

    Args:
        raw_output: Raw string from LLM response

    Returns:
        Parsed dict

    Raises:
        json.JSONDecodeError: If no JSON object can be parsed
        ValueError: If the parsed JSON is not an object
    """
    cleaned = _strip_llm_fences(raw_output)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        block = find_json_object(cleaned)
        if block is None:
            raise
        parsed = json.loads(block)
    if not isinstance(parsed, dict):
        raise ValueError(f"Expected JSON object, got {type(parsed).__name__}")
    return parsed

