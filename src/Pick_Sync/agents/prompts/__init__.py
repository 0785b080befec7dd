"""Versioned prompt templates for the analysis service.

Builders return typed ``PromptMessage`` lists where the system message is
included inside the list with ``role="system"``.
"""

from Pick_Sync.agents.prompts.extraction_prompt import (
    PROMPT_VERSION,
    PromptMessage,
    build_extraction_messages,
)

__all__ = [
    "PROMPT_VERSION",
    "PromptMessage",
    "build_extraction_messages",
]
