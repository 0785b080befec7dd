"""Chat-completion clients for the analysis service.

Two backends share one async interface (``ChatClient``):

- ``OpenRouterClient`` posts to an OpenAI-compatible ``/chat/completions``
  endpoint over a shared ``httpx.AsyncClient``.  Token usage reported by the
  provider becomes the batch cost.
- ``OllamaClient`` wraps the synchronous ``ollama.Client`` in
  ``asyncio.to_thread()`` for local models, retrying connection errors with
  exponential backoff [1 s, 2 s, 4 s].

Both strip ``<think>...</think>`` reasoning blocks from the returned content.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Final, Protocol

import httpx
import ollama
from pydantic import BaseModel, ConfigDict

from Pick_Sync.utils.exceptions import AnalysisBatchError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_BASE_URL: Final[str] = "https://openrouter.ai/api/v1"
DEFAULT_MODEL: Final[str] = "x-ai/grok-4"
DEFAULT_OLLAMA_HOST: Final[str] = "http://localhost:11434"
DEFAULT_OLLAMA_MODEL: Final[str] = "llama3.1:8b"
DEFAULT_TIMEOUT: Final[float] = 60.0
DEFAULT_TEMPERATURE: Final[float] = 0.3
DEFAULT_MAX_TOKENS: Final[int] = 4000
NUM_CTX: Final[int] = 8192

APP_REFERER: Final[str] = "https://picksync.app"
APP_TITLE: Final[str] = "Picksync Analysis"

_THINK_TAG_RE: re.Pattern[str] = re.compile(r"<think>.*?</think>", re.DOTALL)

_RETRY_DELAYS: list[float] = [1.0, 2.0, 4.0]
_RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    httpx.ConnectError,
    ConnectionRefusedError,
)

# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class ChatMessage(BaseModel):
    """A single message in a chat conversation."""

    model_config = ConfigDict(frozen=True)

    role: str
    content: str


class LLMResponse(BaseModel):
    """Parsed response from a chat completion."""

    model_config = ConfigDict(frozen=True)

    content: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    duration_ms: int


class ChatClient(Protocol):
    """Anything that can answer a chat conversation asynchronously."""

    async def chat(self, messages: list[ChatMessage]) -> LLMResponse: ...

    async def aclose(self) -> None: ...


def _strip_think_tags(raw: str) -> str:
    return _THINK_TAG_RE.sub("", raw).strip()


def _token_count(usage: dict[str, object], field: str, http_status: int) -> int:
    """Return ``usage[field]`` as a token count; a missing or null field counts as 0.

    Raises:
        AnalysisBatchError: If the value is not a non-negative integer.
    """
    value = usage.get(field)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        msg = f"Analysis service reported an invalid {field} value: {value!r}"
        raise AnalysisBatchError(msg, http_status=http_status)
    return value


# ---------------------------------------------------------------------------
# OpenRouter (OpenAI-compatible HTTP)
# ---------------------------------------------------------------------------


class OpenRouterClient:
    """Async client for an OpenAI-compatible chat-completions endpoint.

    Usage::

        client = OpenRouterClient(api_key="sk-or-...")
        response = await client.chat([ChatMessage(role="user", content="hi")])
        await client.aclose()

    An ``httpx.AsyncClient`` may be injected (tests pass one backed by
    ``httpx.MockTransport``); otherwise one is created and owned here.
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._url = f"{base_url.rstrip('/')}/chat/completions"
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=5.0, read=timeout, write=10.0, pool=5.0),
            limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
        )

        logger.info(
            "OpenRouterClient initialized: model=%s api_key=%s",
            model,
            "configured" if api_key else "not configured",
        )

    async def aclose(self) -> None:
        """Close the underlying httpx client."""
        await self._client.aclose()

    async def chat(self, messages: list[ChatMessage]) -> LLMResponse:
        """Send one chat-completion request.

        Returns:
            The first choice's content plus the provider's token usage.

        Raises:
            AnalysisBatchError: On a non-2xx status, an undecodable body, or a
                response whose choices, content or usage are malformed.
            httpx.HTTPError: On transport failures.
        """
        headers = {
            "Authorization": f"Bearer {self._api_key or ''}",
            "Content-Type": "application/json",
            "HTTP-Referer": APP_REFERER,
            "X-Title": APP_TITLE,
        }
        payload = {
            "model": self._model,
            "messages": [m.model_dump() for m in messages],
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
        }

        start = time.monotonic()
        response = await self._client.post(self._url, headers=headers, json=payload)
        duration_ms = int((time.monotonic() - start) * 1000)

        if not response.is_success:
            msg = f"Analysis service returned HTTP {response.status_code}."
            logger.error("%s Body: %s", msg, response.text[:500])
            raise AnalysisBatchError(msg, http_status=response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            msg = "Analysis service returned a non-JSON body."
            raise AnalysisBatchError(msg, http_status=response.status_code) from exc

        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices:
            msg = "Analysis service response contained no choices."
            raise AnalysisBatchError(msg, http_status=response.status_code)

        first = choices[0]
        message = first.get("message") if isinstance(first, dict) else None
        if not isinstance(message, dict):
            msg = "Analysis service response has a malformed choice."
            raise AnalysisBatchError(msg, http_status=response.status_code)

        raw_content = message.get("content") or ""
        if not isinstance(raw_content, str):
            msg = "Analysis service returned non-text message content."
            raise AnalysisBatchError(msg, http_status=response.status_code)
        content = _strip_think_tags(raw_content)

        usage = data.get("usage") or {}
        if not isinstance(usage, dict):
            msg = "Analysis service response has a malformed usage block."
            raise AnalysisBatchError(msg, http_status=response.status_code)
        input_tokens = _token_count(usage, "prompt_tokens", response.status_code)
        output_tokens = _token_count(usage, "completion_tokens", response.status_code)
        total_tokens = (
            _token_count(usage, "total_tokens", response.status_code)
            or input_tokens + output_tokens
        )
        model = data.get("model")

        logger.info(
            "LLM response: model=%s input_tokens=%d output_tokens=%d duration_ms=%d",
            self._model,
            input_tokens,
            output_tokens,
            duration_ms,
        )

        return LLMResponse(
            content=content,
            model=model if isinstance(model, str) and model else self._model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total_tokens,
            duration_ms=duration_ms,
        )


# ---------------------------------------------------------------------------
# Ollama (local)
# ---------------------------------------------------------------------------


class OllamaClient:
    """Async wrapper around ``ollama.Client`` for local chat completions.

    Parameters
    ----------
    host:
        Ollama server URL.
    model:
        Model tag to use for all chat calls (e.g. ``"llama3.1:8b"``).
    timeout:
        Maximum wall-clock seconds for a single call.
    """

    def __init__(
        self,
        host: str = DEFAULT_OLLAMA_HOST,
        model: str = DEFAULT_OLLAMA_MODEL,
        *,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._client: ollama.Client = ollama.Client(host=host)
        self._model = model
        self._host = host
        self._timeout = timeout

    async def aclose(self) -> None:
        """Nothing to release; the sync client has no persistent session."""

    async def chat(self, messages: list[ChatMessage]) -> LLMResponse:
        """Send a chat request to the Ollama server.

        Raises
        ------
        TimeoutError
            If the call exceeds the configured timeout.
        ollama.ResponseError
            If the model is not found (status 404) or another server error.
        httpx.ConnectError
            If the Ollama server is unreachable after retries.
        """
        raw_messages = [m.model_dump() for m in messages]
        response = await self._call_with_retry(raw_messages)

        input_tokens = response.prompt_eval_count or 0
        output_tokens = response.eval_count or 0
        duration_ms = (response.total_duration or 0) // 1_000_000

        logger.info(
            "LLM response: model=%s input_tokens=%d output_tokens=%d duration_ms=%d",
            self._model,
            input_tokens,
            output_tokens,
            duration_ms,
        )

        return LLMResponse(
            content=_strip_think_tags(response.message.content or ""),
            model=response.model or self._model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            duration_ms=duration_ms,
        )

    async def _call_with_retry(self, raw_messages: list[dict[str, str]]) -> ollama.ChatResponse:
        """Run the chat call, retrying connection errors with backoff.

        ``ollama.ResponseError`` is never retried.
        """
        for attempt, delay in enumerate(_RETRY_DELAYS):
            try:
                return await self._do_chat(raw_messages)
            except _RETRYABLE_EXCEPTIONS as exc:
                logger.warning(
                    "Connection error (attempt %d/%d, retry in %.0fs): %s",
                    attempt + 1,
                    len(_RETRY_DELAYS),
                    delay,
                    exc,
                )
            await asyncio.sleep(delay)

        # Final attempt (no sleep after)
        try:
            return await self._do_chat(raw_messages)
        except _RETRYABLE_EXCEPTIONS as exc:
            logger.error(
                "Ollama unreachable at %s after %d retries: %s",
                self._host,
                len(_RETRY_DELAYS),
                exc,
            )
            raise

    async def _do_chat(self, raw_messages: list[dict[str, str]]) -> ollama.ChatResponse:
        """Run the synchronous ``ollama.Client.chat`` in a thread with timeout."""
        model = self._model

        def _sync_call() -> ollama.ChatResponse:
            return self._client.chat(
                model=model,
                messages=raw_messages,
                stream=False,
                options={"num_ctx": NUM_CTX},
            )

        return await asyncio.wait_for(asyncio.to_thread(_sync_call), timeout=self._timeout)
