"""Provider-agnostic model access with an explicit fallback chain.

A reply cycle talks to exactly one model, but *which* model is decided at
run time by a small state machine:

    TRY_VARIANT(0) ─fail→ TRY_VARIANT(1) ─fail→ … ─exhausted→ FALLBACK_FAMILY
         │ ok                 │ ok                                  │ ok    │ fail
         └────────────────────┴──────────────→ BOUND ←──────────────┘       └→ FAILED

* Variants are concrete names of the requested model family
  (``claude-haiku-4-5``, ``claude-haiku-4-5-001``, ``claude-haiku-4-5-latest``).
* Each attempt is one blocking call with an explicit timeout and no
  client-side retries; retrying means moving to the next variant.
* Once a variant answers it is pinned (``BOUND``) for the rest of the cycle.
* ``FAILED`` surfaces as :class:`ProviderUnavailableError`, which the
  orchestrator turns into an apology.

Whatever the provider's wire format, a tool invocation comes out of this
module as a :class:`~konsul.models.ToolCall` and results go back in as
:class:`~konsul.models.ToolResult`.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_openai import ChatOpenAI

from konsul.config import (
    FALLBACK_MODEL_NAME,
    LLM_MAX_TOKENS,
    LLM_TIMEOUT_SECONDS,
    PROVIDER_KEY_ENV,
    get_secret,
)
from konsul.models import ToolCall, ToolResult
from konsul.services.metrics import metrics

logger = logging.getLogger(__name__)

# Model-name prefixes → provider family
_PROVIDER_PREFIXES: tuple[tuple[str, str], ...] = (
    ("gpt-", "openai"),
    ("chatgpt-", "openai"),
    ("o1", "openai"),
    ("o3", "openai"),
    ("o4", "openai"),
    ("claude-", "anthropic"),
)

# Names that already pin a concrete release are not expanded further.
_PINNED_SUFFIX_RE = re.compile(r"-(latest|\d{3}|\d{8}|\d{4}-\d{2}-\d{2})$")


class ProviderConfigError(Exception):
    """Raised when a provider cannot be used because of configuration."""

    def __init__(self, message: str, provider: str | None = None):
        self.provider = provider
        super().__init__(message)


class ProviderUnavailableError(Exception):
    """Raised when every variant and the fallback family have failed."""


# ── Chain descriptors ────────────────────────────────────────────────


@dataclass(frozen=True)
class ModelVariant:
    provider: str
    model: str

    def __str__(self) -> str:
        return f"{self.provider}/{self.model}"


def provider_for_model(model: str) -> str | None:
    """Return the provider family serving ``model``, or ``None`` if unknown."""
    name = model.lower()
    for prefix, provider in _PROVIDER_PREFIXES:
        if name.startswith(prefix):
            return provider
    return None


def variants_for(model: str) -> list[str]:
    """Return the concrete names to try for a requested model family."""
    if _PINNED_SUFFIX_RE.search(model):
        return [model]
    return [model, f"{model}-001", f"{model}-latest"]


@dataclass(frozen=True)
class FallbackChain:
    """Ordered variants of the requested family plus one fallback family."""

    variants: tuple[ModelVariant, ...]
    fallback: ModelVariant | None = None

    @classmethod
    def for_model(cls, model: str, fallback_model: str | None = FALLBACK_MODEL_NAME) -> FallbackChain:
        provider = provider_for_model(model) or "unknown"
        variants = tuple(ModelVariant(provider, name) for name in variants_for(model))
        fallback = None
        if fallback_model:
            candidate = ModelVariant(provider_for_model(fallback_model) or "unknown", fallback_model)
            if candidate not in variants:
                fallback = candidate
        return cls(variants=variants, fallback=fallback)

    @property
    def primary(self) -> ModelVariant:
        return self.variants[0]

    def attempts(self) -> list[ModelVariant]:
        return [*self.variants, *([self.fallback] if self.fallback else [])]


# ── Chat model construction ──────────────────────────────────────────


def require_credentials(provider: str) -> str:
    """Return the API key for ``provider`` or raise :class:`ProviderConfigError`."""
    env_name = PROVIDER_KEY_ENV.get(provider)
    if env_name is None:
        raise ProviderConfigError(f"No provider adapter for '{provider}'", provider=provider)
    api_key = get_secret(env_name)
    if not api_key:
        raise ProviderConfigError(f"Missing required credential {env_name}", provider=provider)
    return api_key


def build_chat_model(
    model: str,
    *,
    temperature: float = 0.7,
    max_tokens: int = LLM_MAX_TOKENS,
    timeout: float = LLM_TIMEOUT_SECONDS,
) -> BaseChatModel:
    """Build a LangChain chat model for ``model`` with retries disabled."""
    provider = provider_for_model(model)
    if provider is None:
        raise ProviderConfigError(f"No provider adapter for model '{model}'")
    api_key = require_credentials(provider)

    if provider == "anthropic":
        return ChatAnthropic(
            model=model,
            api_key=api_key,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
            max_retries=0,
        )
    return ChatOpenAI(
        model=model,
        api_key=api_key,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=timeout,
        max_retries=0,
    )


# ── Normalized responses ─────────────────────────────────────────────


@dataclass
class ModelTurn:
    """One model response: final text, or a batch of tool calls."""

    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    tokens: int = 0
    variant: ModelVariant | None = None

    @property
    def is_final(self) -> bool:
        return not self.tool_calls


def _content_text(content: str | list[Any]) -> str:
    """Flatten provider content (plain string or content blocks) to text."""
    if isinstance(content, str):
        return content.strip()
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts).strip()


def normalize_response(message: AIMessage, variant: ModelVariant | None = None) -> ModelTurn:
    """Convert a LangChain ``AIMessage`` into a :class:`ModelTurn`."""
    calls = [
        ToolCall(
            id=call.get("id") or f"call_{index}",
            name=call["name"],
            arguments=dict(call.get("args") or {}),
        )
        for index, call in enumerate(message.tool_calls or [])
    ]
    usage = message.usage_metadata or {}
    return ModelTurn(
        text=_content_text(message.content),
        tool_calls=calls,
        tokens=int(usage.get("total_tokens", 0)),
        variant=variant,
    )


# ── Session state machine ────────────────────────────────────────────


class SessionState(str, Enum):
    TRY_VARIANT = "TRY_VARIANT"
    FALLBACK_FAMILY = "FALLBACK_FAMILY"
    BOUND = "BOUND"
    FAILED = "FAILED"


ModelFactory = Callable[..., BaseChatModel]


class ProviderSession:
    """One reply cycle's dialogue with a model behind a :class:`FallbackChain`."""

    def __init__(
        self,
        chain: FallbackChain,
        *,
        tools: Sequence[dict[str, Any]] = (),
        temperature: float = 0.7,
        max_tokens: int = LLM_MAX_TOKENS,
        timeout: float = LLM_TIMEOUT_SECONDS,
        model_factory: ModelFactory = build_chat_model,
    ) -> None:
        self.chain = chain
        self.state = SessionState.TRY_VARIANT
        self.bound: ModelVariant | None = None
        self.tokens_used = 0
        self._tools = list(tools)
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = timeout
        self._model_factory = model_factory
        self._attempt_index = 0
        self._bound_model: Any = None
        self._messages: list[BaseMessage] = []

    @property
    def messages(self) -> list[BaseMessage]:
        return list(self._messages)

    def check_credentials(self) -> None:
        """Fail fast when the requested provider is known but not configured."""
        provider = self.chain.primary.provider
        if provider in PROVIDER_KEY_ENV:
            require_credentials(provider)

    def converse(
        self,
        system_prompt: str,
        history: Sequence[BaseMessage],
        user_message: str,
    ) -> ModelTurn:
        """Start the dialogue and return the model's first turn."""
        self.check_credentials()
        self._messages = [SystemMessage(content=system_prompt), *history, HumanMessage(content=user_message)]
        return self._advance()

    def resume(self, results: Sequence[ToolResult]) -> ModelTurn:
        """Feed tool results back and return the model's next turn."""
        for result in results:
            self._messages.append(ToolMessage(
                content=json.dumps(result.to_json_payload(), default=str),
                tool_call_id=result.tool_call_id,
            ))
        return self._advance()

    # ── Internal ──────────────────────────────────────────────────────

    def _advance(self) -> ModelTurn:
        if self.state is SessionState.FAILED:
            raise ProviderUnavailableError("Provider session already failed")

        if self.state is SessionState.BOUND:
            try:
                return self._call(self._bound_model, self.bound)
            except Exception as exc:
                self.state = SessionState.FAILED
                logger.error("Bound model %s failed mid-cycle: %s", self.bound, exc)
                raise ProviderUnavailableError(f"{self.bound} failed: {exc}") from exc

        attempts = self.chain.attempts()
        while self._attempt_index < len(attempts):
            variant = attempts[self._attempt_index]
            if self._attempt_index >= len(self.chain.variants):
                if self.state is not SessionState.FALLBACK_FAMILY:
                    logger.warning(
                        "All variants of %s failed; falling back to %s",
                        self.chain.primary.model, variant,
                    )
                self.state = SessionState.FALLBACK_FAMILY
            self._attempt_index += 1

            try:
                model = self._build(variant)
                turn = self._call(model, variant)
            except ProviderConfigError as exc:
                logger.warning("Skipping model variant %s: %s", variant, exc)
                continue
            except Exception as exc:
                logger.warning("Model variant %s failed: %s", variant, exc)
                metrics.record_fallback(variant.provider, variant.model)
                continue

            self.state = SessionState.BOUND
            self.bound = variant
            self._bound_model = model
            logger.debug("Bound model variant %s", variant)
            return turn

        self.state = SessionState.FAILED
        logger.error("Every model variant failed for %s", self.chain.primary.model)
        raise ProviderUnavailableError(f"No model available for {self.chain.primary.model}")

    def _build(self, variant: ModelVariant):
        model = self._model_factory(
            variant.model,
            temperature=self._temperature,
            max_tokens=self._max_tokens,
            timeout=self._timeout,
        )
        return model.bind_tools(self._tools) if self._tools else model

    def _call(self, model: Any, variant: ModelVariant) -> ModelTurn:
        t0 = time.perf_counter()
        try:
            response = model.invoke(self._messages)
        except Exception as exc:
            metrics.record_failure(
                variant.provider, variant.model,
                error_type=type(exc).__name__, latency_ms=(time.perf_counter() - t0) * 1000,
            )
            raise
        metrics.record_success(variant.provider, variant.model, latency_ms=(time.perf_counter() - t0) * 1000)

        self._messages.append(response)
        turn = normalize_response(response, variant)
        self.tokens_used += turn.tokens
        return turn
