"""Pick-extraction prompt builder.

Turns one batch of source comments into a system + user message pair.  The
model is asked for a bare JSON array; the parser tolerates fences and
surrounding prose anyway.
"""

import json
from collections.abc import Sequence

from pydantic import BaseModel, ConfigDict

from Pick_Sync.models import RawItem

PROMPT_VERSION: str = "v2.1"

DEFAULT_MAX_COMMENT_CHARS: int = 500


class PromptMessage(BaseModel):
    """Single message in a chat messages list.

    Frozen because messages are immutable once built.
    """

    model_config = ConfigDict(frozen=True)

    role: str
    content: str


# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT: str = f"""\
# VERSION: {PROMPT_VERSION}

You are a sports betting analyst.  Return ONLY a valid JSON array with no \
markdown and no text before or after it.  Extract ALL picks with reasoning \
from the comments you are given.
"""

_OUTPUT_EXAMPLE: str = (
    '[{"poster":"user","posterRecord":"10-5","sport":"NBA",'
    '"teams":"Lakers vs Warriors","pick":"Lakers -2.5","confidence":75,'
    '"reasoning":"short analysis","keyFactors":["factor1","factor2"],'
    '"riskLevel":"medium","units":1}]'
)


def _format_items(items: Sequence[RawItem], max_chars: int) -> str:
    formatted = [
        {
            "id": index,
            "author": item.author,
            "record": item.record,
            "score": item.score,
            "text": item.text[:max_chars],
        }
        for index, item in enumerate(items, start=1)
    ]
    return json.dumps(formatted, indent=2, ensure_ascii=False)


def build_extraction_messages(
    items: Sequence[RawItem],
    *,
    max_chars: int = DEFAULT_MAX_COMMENT_CHARS,
) -> list[PromptMessage]:
    """Build the chat messages asking the model to extract picks from *items*.

    Each comment's text is truncated to *max_chars* characters.
    """
    user_prompt = f"""\
Analyze {len(items)} Reddit sports betting comments. Extract ALL picks with reasoning.

CONFIDENCE LEVELS:
85-100: Elite capper (>70% win rate) + strong analysis
70-84: Good capper (60-70%) + solid reasoning
55-69: Average capper + decent logic
40-54: Casual pick + basic reasoning

INCLUDE: Any pick with a specific game/bet and reasoning
EXCLUDE: Jokes, questions, spam

COMMENTS:
{_format_items(items, max_chars)}

Return ONLY this JSON format (no markdown, no text):
{_OUTPUT_EXAMPLE}"""

    return [
        PromptMessage(role="system", content=_SYSTEM_PROMPT),
        PromptMessage(role="user", content=user_prompt),
    ]
