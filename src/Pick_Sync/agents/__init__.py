"""Analysis side of the pipeline: chat clients, prompts, and the batch analyzer."""

from Pick_Sync.agents.analysis_client import (
    AnalysisService,
    LLMAnalysisService,
    build_analysis_service,
    build_chat_client,
)
from Pick_Sync.agents.analyzer import (
    BatchAnalyzer,
    batch_fingerprint,
    derive_quantity,
    partition,
)
from Pick_Sync.agents.llm_client import (
    ChatClient,
    ChatMessage,
    LLMResponse,
    OllamaClient,
    OpenRouterClient,
)

__all__ = [
    "AnalysisService",
    "BatchAnalyzer",
    "ChatClient",
    "ChatMessage",
    "LLMAnalysisService",
    "LLMResponse",
    "OllamaClient",
    "OpenRouterClient",
    "batch_fingerprint",
    "build_analysis_service",
    "build_chat_client",
    "derive_quantity",
    "partition",
]
