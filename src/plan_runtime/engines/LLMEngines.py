from __future__ import annotations

import asyncio
import inspect
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Sequence

from openai import APIConnectionError, APITimeoutError, AsyncOpenAI, RateLimitError

from ..core.Exceptions import LLMEngineError
from ..streaming.accumulator import AccumulationResult, ToolCallAccumulator

logger = logging.getLogger(__name__)

__all__ = [
    "CompletionDelta",
    "CompletionOutcome",
    "LLMEngine",
    "OpenAIEngine",
    "ScriptedEngine",
    "collect_tool_calls",
]


@dataclass(slots=True)
class CompletionDelta:
    """One normalized event of a completion stream."""
    content: Optional[str] = None
    tool_calls: List[Any] = field(default_factory=list)
    finish_reason: Optional[str] = None


@dataclass(slots=True)
class CompletionOutcome:
    text: str
    tool_calls: AccumulationResult
    finish_reason: Optional[str] = None


class LLMEngine(ABC):
    """
    Base template-method primitive for streaming completion providers.

    Engines are stateless with respect to conversation history: the caller
    owns the message list.

    Public contract
    ---------------
    - `stream(messages, tools=None)` is an async iterator of
      :class:`CompletionDelta`, ending after the delta that carries a
      `finish_reason` (or when the provider closes the stream).
    """

    def __init__(
        self,
        *,
        name: Optional[str] = None,
        timeout_seconds: float = 60.0,
        max_retries: int = 2,
        retry_backoff_base: float = 0.5,
        retry_backoff_max: float = 8.0,
    ) -> None:
        """
        Parameters
        ----------
        name:
            Optional human-friendly identifier for logging/introspection.
        timeout_seconds:
            Per-call timeout passed to the provider where supported.
        max_retries:
            Maximum number of *retries* when opening the stream (so total
            attempts is `max_retries + 1`). A stream already yielding is
            never retried.
        retry_backoff_base:
            Base seconds for exponential backoff (approx base * 2^(attempt-1)).
        retry_backoff_max:
            Upper bound in seconds for backoff delay.
        """
        self._name = name or type(self).__name__
        self._timeout_seconds = float(timeout_seconds)
        self._max_retries = int(max_retries)
        self._retry_backoff_base = float(retry_backoff_base)
        self._retry_backoff_max = float(retry_backoff_max)

    @property
    def name(self) -> str:
        return self._name

    # Template `stream` --------------------------------------------------- #

    async def stream(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[Sequence[Mapping[str, Any]]] = None,
    ) -> AsyncIterator[CompletionDelta]:
        """
        Template method that defines the streaming lifecycle.

        1. Normalize and validate `messages`.
        2. Build a provider-specific payload.
        3. Open the stream with retries.
        4. Yield normalized deltas.

        Subclasses customize the protected hooks, not this method.
        """
        start = time.time()
        response: Any = None
        deltas: Any = None
        try:
            normalized = self._normalize_messages(messages)
            payload = self._build_provider_payload(normalized, list(tools or []))
            response = await self._open_with_retries(payload)
            deltas = self._iter_deltas(response)
            async for delta in deltas:
                yield delta
                if delta.finish_reason:
                    logger.debug("LLMEngine %s finished: %s", self._name, delta.finish_reason)
                    break
        except LLMEngineError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise LLMEngineError(f"{self._name}.stream failed: {exc}") from exc
        finally:
            if hasattr(deltas, "aclose"):
                await deltas.aclose()
            if response is not None:
                await self._close_stream(response)
            logger.debug("LLMEngine %s.stream completed in %.3fs", self._name, time.time() - start)

    # --------------------------------------------------------------------- #
    # Shared helpers used by the template
    # --------------------------------------------------------------------- #

    def _normalize_messages(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Validate chat messages and lowercase their roles.

        Assistant messages may carry `tool_calls` with `content` set to None;
        every other message needs string content.
        """
        if not isinstance(messages, list):
            raise LLMEngineError("LLMEngine.stream: messages must be a list")
        if not messages:
            raise LLMEngineError("LLMEngine.stream: messages must not be empty")

        normalized: List[Dict[str, Any]] = []
        for idx, msg in enumerate(messages):
            if not isinstance(msg, Mapping):
                raise LLMEngineError(
                    f"LLMEngine.stream: message {idx} is not a mapping (got {type(msg)!r})"
                )
            role = msg.get("role")
            content = msg.get("content")
            if not isinstance(role, str):
                raise LLMEngineError(f"LLMEngine.stream: message {idx} has no string 'role'")
            if not isinstance(content, str) and not (content is None and msg.get("tool_calls")):
                raise LLMEngineError(f"LLMEngine.stream: message {idx} must have string 'content'")
            out = dict(msg)
            out["role"] = role.lower()
            normalized.append(out)
        return normalized

    async def _open_with_retries(self, payload: Any) -> Any:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._open_stream(payload)
            except LLMEngineError:
                raise
            except Exception as exc:
                if not self._should_retry(exc, attempt):
                    raise
                sleep = min(
                    self._retry_backoff_base * (2 ** (attempt - 1)),
                    self._retry_backoff_max,
                )
                sleep *= random.uniform(0.8, 1.2)
                logger.debug(
                    "LLMEngine %s attempt %d failed with %r; retrying in %.2fs",
                    self._name, attempt, exc, sleep,
                )
                await asyncio.sleep(sleep)

    def _should_retry(self, exc: Exception, attempt: int) -> bool:
        if attempt > self._max_retries:
            return False
        return isinstance(exc, (TimeoutError, ConnectionError))

    async def _close_stream(self, response: Any) -> None:
        """Release the provider stream; called even when iteration stops early."""
        close = getattr(response, "close", None)
        if close is None:
            return
        try:
            result = close()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # noqa: BLE001
            logger.debug("LLMEngine %s: closing stream failed: %r", self._name, exc)

    # --------------------------------------------------------------------- #
    # Abstract hooks for subclasses
    # --------------------------------------------------------------------- #

    @abstractmethod
    def _build_provider_payload(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Mapping[str, Any]],
    ) -> Any:
        raise NotImplementedError

    @abstractmethod
    async def _open_stream(self, payload: Any) -> Any:
        raise NotImplementedError

    @abstractmethod
    def _iter_deltas(self, response: Any) -> AsyncIterator[CompletionDelta]:
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self._name,
            "timeout_seconds": self._timeout_seconds,
            "max_retries": self._max_retries,
            "provider": type(self).__name__,
        }


class OpenAIEngine(LLMEngine):
    """OpenAI chat-completions adapter with streamed tool calls."""

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        temperature: float = 0.1,
        max_tokens: Optional[int] = None,
        base_url: Optional[str] = None,
        *,
        name: Optional[str] = None,
        timeout_seconds: float = 60.0,
        max_retries: int = 2,
        retry_backoff_base: float = 0.5,
        retry_backoff_max: float = 8.0,
    ) -> None:
        super().__init__(
            name=name,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            retry_backoff_base=retry_backoff_base,
            retry_backoff_max=retry_backoff_max,
        )
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        # SDK retries are disabled; the template owns the retry loop.
        self._client = AsyncOpenAI(
            api_key=api_key, base_url=base_url, timeout=timeout_seconds, max_retries=0
        )

    @classmethod
    def from_settings(cls, settings: Any, **kwargs: Any) -> "OpenAIEngine":
        return cls(
            model=settings.model_name,
            api_key=settings.openai_api_key,
            max_tokens=settings.max_tokens,
            base_url=settings.openai_base_url,
            **kwargs,
        )

    def _build_provider_payload(self, messages, tools):
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "stream": True,
        }
        if self.max_tokens:
            payload["max_tokens"] = self.max_tokens
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        return payload

    async def _open_stream(self, payload):
        return await self._client.chat.completions.create(**payload)

    async def _iter_deltas(self, response):
        async for chunk in response:
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta
            yield CompletionDelta(
                content=getattr(delta, "content", None) if delta is not None else None,
                tool_calls=list(getattr(delta, "tool_calls", None) or []) if delta is not None else [],
                finish_reason=choice.finish_reason,
            )

    def _should_retry(self, exc: Exception, attempt: int) -> bool:
        if attempt > self._max_retries:
            return False
        return isinstance(exc, (APIConnectionError, APITimeoutError, RateLimitError, TimeoutError, ConnectionError))

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d.update({"model": self.model, "temperature": self.temperature, "max_tokens": self.max_tokens})
        return d


class ScriptedEngine(LLMEngine):
    """Deterministic engine for tests and demos.

    Each call to :meth:`stream` replays the next script: a sequence of
    :class:`CompletionDelta` objects or plain dicts with ``content``,
    ``tool_calls`` and ``finish_reason`` keys.
    """

    def __init__(self, scripts: Iterable[Sequence[Any]], *, name: Optional[str] = None) -> None:
        super().__init__(name=name, max_retries=0)
        self._scripts: List[Sequence[Any]] = [list(s) for s in scripts]
        self.requests: List[Dict[str, Any]] = []

    def _build_provider_payload(self, messages, tools):
        return {"messages": messages, "tools": tools}

    async def _open_stream(self, payload):
        if not self._scripts:
            raise LLMEngineError(f"{self.name}: no scripted responses left")
        self.requests.append(payload)
        return self._scripts.pop(0)

    async def _iter_deltas(self, response):
        for item in response:
            if isinstance(item, CompletionDelta):
                yield item
            else:
                yield CompletionDelta(
                    content=item.get("content"),
                    tool_calls=list(item.get("tool_calls") or []),
                    finish_reason=item.get("finish_reason"),
                )
            await asyncio.sleep(0)


async def collect_tool_calls(deltas: AsyncIterator[CompletionDelta]) -> CompletionOutcome:
    """Drain a completion stream: concatenate text and reconstruct tool calls."""
    accumulator = ToolCallAccumulator()
    text: List[str] = []
    finish_reason: Optional[str] = None
    async for delta in deltas:
        if delta.content:
            text.append(delta.content)
        if delta.tool_calls:
            accumulator.add_delta(delta.tool_calls)
        if delta.finish_reason:
            finish_reason = delta.finish_reason
    return CompletionOutcome(text="".join(text), tool_calls=accumulator.finalize(), finish_reason=finish_reason)
