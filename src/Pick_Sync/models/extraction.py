"""Extraction models: what the analysis service returns per batch.

``ExtractedPick`` accepts the loose field names the model is prompted with
(``poster``, ``sport``, ``teams``, ``pick``, ``keyFactors`` ...) and repairs
the usual type drift (numeric strings, floats, a bare string instead of a
list) so that a single sloppy field does not sink a whole batch.
"""

from __future__ import annotations

import math

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
)

from Pick_Sync.models.scan import Pick

MIN_CONFIDENCE: int = 0
MAX_CONFIDENCE: int = 100


class ExtractedPick(BaseModel):
    """A single pick as extracted by the analysis service, before enrichment."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    poster: str = "unknown"
    poster_record: str | None = Field(
        default=None, validation_alias=AliasChoices("poster_record", "posterRecord")
    )
    category: str = Field(default="Unknown", validation_alias=AliasChoices("category", "sport"))
    subject: str = Field(
        default="Unknown", validation_alias=AliasChoices("subject", "teams", "event")
    )
    action: str = Field(default="", validation_alias=AliasChoices("action", "pick"))
    confidence: int | None = None
    reasoning: str = ""
    key_factors: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("key_factors", "keyFactors")
    )
    risk_level: str = Field(
        default="medium", validation_alias=AliasChoices("risk_level", "riskLevel")
    )
    units: float = 1.0

    @field_validator(
        "poster", "category", "subject", "action", "reasoning", "risk_level", mode="before"
    )
    @classmethod
    def _none_to_default(cls, value: object, info: ValidationInfo) -> object:
        if value is None:
            return cls.model_fields[info.field_name].default
        if isinstance(value, int | float):
            return str(value)
        return value

    @field_validator("poster_record", mode="before")
    @classmethod
    def _record_to_str(cls, value: object) -> object:
        if isinstance(value, int | float):
            return str(value)
        return value

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value: object) -> int | None:
        """Round numeric confidences and clamp to 0-100; junk becomes None."""
        if value is None or isinstance(value, bool):
            return None
        try:
            numeric = float(str(value).strip().rstrip("%"))
        except ValueError:
            return None
        if not math.isfinite(numeric):
            return None
        return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, round(numeric)))

    @field_validator("key_factors", mode="before")
    @classmethod
    def _coerce_factors(cls, value: object) -> object:
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value else []
        if isinstance(value, list):
            return [str(v) for v in value if v is not None]
        return value

    @field_validator("units", mode="before")
    @classmethod
    def _coerce_units(cls, value: object) -> object:
        if value is None or value == "":
            return 1.0
        try:
            units = float(str(value).lower().removesuffix("u").strip())
        except ValueError:
            return 1.0
        return units if math.isfinite(units) else 1.0


class BatchAnalysis(BaseModel):
    """Output of one successful analysis-service call."""

    model_config = ConfigDict(frozen=True)

    picks: list[ExtractedPick]
    cost_units: int = 0


class AnalysisResult(BaseModel):
    """Output of a full batch-analyzer run over one topic listing."""

    model_config = ConfigDict(frozen=True)

    picks: list[Pick]
    cost_units: int = 0
    batch_count: int = 0
    failed_batches: int = 0
    cached_batches: int = 0
