"""Structured-payload extraction from free-form model output.

Models wrap the JSON they were asked for in markdown fences, prepend
commentary, or answer with an object instead of a bare array.  The helpers
here recover the array of pick objects and validate each element into an
``ExtractedPick``.

Failure is reported as a ``ParseFailure`` *value*, never as an exception:
callers decide whether an unparseable reply fails the batch.

This is a private module, not exported from ``agents/__init__.py``.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict

from Pick_Sync.models import ExtractedPick

logger = logging.getLogger(__name__)

EXCERPT_CHARS: int = 200

# Markdown code fences, with or without a language tag.
_FENCE_RE: re.Pattern[str] = re.compile(r"```(?:json)?[ \t]*\n?", re.IGNORECASE)


class ParseFailure(BaseModel):
    """Why a model reply could not be turned into a list of pick objects."""

    model_config = ConfigDict(frozen=True)

    reason: str
    excerpt: str = ""


def _failure(reason: str, text: str) -> ParseFailure:
    return ParseFailure(reason=reason, excerpt=text[:EXCERPT_CHARS])


def _strip_fences(raw: str) -> str:
    return _FENCE_RE.sub("", raw).strip()


def extract_json_array(raw: str) -> list[dict[str, Any]] | ParseFailure:
    """Locate and decode the JSON array of pick objects inside *raw*.

    The text between the first ``[`` and the last ``]`` is decoded.  When no
    array is present, an object carrying a ``picks`` array is accepted
    instead.  Non-object array elements are dropped with a warning.

    Returns:
        The decoded objects (possibly empty), or a ``ParseFailure``.
    """
    content = _strip_fences(raw)
    if not content:
        return _failure("empty response", raw)

    start = content.find("[")
    end = content.rfind("]")

    if start != -1 and end > start:
        try:
            parsed: object = json.loads(content[start : end + 1])
        except json.JSONDecodeError as exc:
            return _failure(f"invalid JSON array: {exc.msg}", content[start:])
    else:
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError:
            return _failure("no JSON array found", content)

    if isinstance(parsed, dict):
        parsed = parsed.get("picks")
    if not isinstance(parsed, list):
        return _failure("payload is not a JSON array", content)

    objects = [element for element in parsed if isinstance(element, dict)]
    dropped = len(parsed) - len(objects)
    if dropped:
        logger.warning("Dropped %d non-object elements from model output", dropped)
    return objects


def parse_extractions(raw: str) -> list[ExtractedPick] | ParseFailure:
    """Extract and validate pick objects from a model reply.

    An element that fails validation is skipped rather than failing the
    whole reply.
    """
    objects = extract_json_array(raw)
    if isinstance(objects, ParseFailure):
        return objects

    picks: list[ExtractedPick] = []
    for index, obj in enumerate(objects):
        try:
            picks.append(ExtractedPick.model_validate(obj))
        except pydantic.ValidationError as exc:
            logger.warning("Skipping invalid extraction #%d: %s", index, exc)
    return picks
