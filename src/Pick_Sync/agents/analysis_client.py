"""Analysis service: one chat call per batch of source items.

``LLMAnalysisService`` is the concrete ``AnalysisService`` used by the batch
analyzer.  It builds the extraction prompt, sends it through whichever
``ChatClient`` backend is configured, and turns the reply into a
``BatchAnalysis``.  A reply that cannot be parsed fails the batch with
``AnalysisBatchError``.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

import ollama

from Pick_Sync.agents._parsing import ParseFailure, parse_extractions
from Pick_Sync.agents.llm_client import (
    ChatClient,
    ChatMessage,
    OllamaClient,
    OpenRouterClient,
)
from Pick_Sync.agents.prompts import build_extraction_messages
from Pick_Sync.config import Settings
from Pick_Sync.models import BatchAnalysis, RawItem
from Pick_Sync.utils.exceptions import AnalysisBatchError

logger = logging.getLogger(__name__)


class AnalysisService(Protocol):
    """Turns one batch of raw items into extracted picks plus a cost figure."""

    async def analyze_batch(
        self, items: Sequence[RawItem], *, batch_number: int | None = None
    ) -> BatchAnalysis: ...


class LLMAnalysisService:
    """Extract picks from a batch of comments with a chat model.

    Args:
        client: Chat backend (OpenRouter or Ollama).
        max_comment_chars: Per-comment truncation applied in the prompt.
    """

    def __init__(self, client: ChatClient, *, max_comment_chars: int = 500) -> None:
        self._client = client
        self._max_comment_chars = max_comment_chars

    async def aclose(self) -> None:
        await self._client.aclose()

    async def analyze_batch(
        self, items: Sequence[RawItem], *, batch_number: int | None = None
    ) -> BatchAnalysis:
        """Send *items* to the model and parse the extracted picks.

        Raises:
            AnalysisBatchError: If the backend rejects the request or the
                reply contains no recoverable JSON array.
        """
        prompt = build_extraction_messages(items, max_chars=self._max_comment_chars)
        messages = [ChatMessage(role=pm.role, content=pm.content) for pm in prompt]

        try:
            response = await self._client.chat(messages)
        except ollama.ResponseError as exc:
            msg = f"Analysis backend error: {exc}"
            raise AnalysisBatchError(
                msg, batch_number=batch_number, http_status=exc.status_code
            ) from exc
        except AnalysisBatchError as exc:
            if exc.batch_number is None:
                exc.batch_number = batch_number
            raise

        parsed = parse_extractions(response.content)
        if isinstance(parsed, ParseFailure):
            logger.error(
                "Batch %s: unparseable model output (%s): %r",
                batch_number,
                parsed.reason,
                parsed.excerpt,
            )
            msg = f"Unparseable model output: {parsed.reason}"
            raise AnalysisBatchError(msg, batch_number=batch_number)

        logger.info(
            "Batch %s: %d picks from %d items (%d tokens)",
            batch_number,
            len(parsed),
            len(items),
            response.total_tokens,
        )
        return BatchAnalysis(picks=parsed, cost_units=response.total_tokens)


def build_chat_client(settings: Settings) -> ChatClient:
    """Create the chat backend selected by ``settings.analysis_backend``."""
    if settings.analysis_backend == "ollama":
        return OllamaClient(
            host=settings.ollama_host,
            model=settings.analysis_model,
            timeout=settings.analysis_timeout_seconds,
        )
    return OpenRouterClient(
        settings.analysis_api_key,
        base_url=settings.analysis_base_url,
        model=settings.analysis_model,
        temperature=settings.analysis_temperature,
        max_tokens=settings.analysis_max_tokens,
        timeout=settings.analysis_timeout_seconds,
    )


def build_analysis_service(settings: Settings) -> LLMAnalysisService:
    """Create the analysis service configured by *settings*."""
    return LLMAnalysisService(
        build_chat_client(settings), max_comment_chars=settings.max_comment_chars
    )
