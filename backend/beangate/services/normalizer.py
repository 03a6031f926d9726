"""
BeanGate Backend: Response Normalizer
=======================================

What:  Turns the raw text a vision backend returns into a validated
       AnalysisResult.
How:   parse() digs the JSON object out of the text (markdown fences and
       surrounding prose are tolerated), decodes it and validates it against
       RawAnalysis. transform() clamps, defaults and timestamps the parsed
       data into the canonical shape.
Who:   Called by ProviderClient._finish for every backend, so all providers
       share one interpretation of "a good answer".

Failure contract:
    parse()      → MalformedResponseError for anything that is not a usable
                   analysis object
    transform()  → never fails on a RawAnalysis
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, List, Optional

import pydantic
from pydantic import AliasGenerator, BaseModel, field_validator, model_validator
from pydantic.alias_generators import to_camel

from beangate.exceptions import MalformedResponseError
from beangate.schemas.analysis import (
    AnalysisResult,
    BrewParameters,
    RoastLevel,
    lenient_number,
    lenient_object,
    lenient_text,
)

logger = logging.getLogger(__name__)

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)

# Longest spellings first so "MEDIUM_DARK" wins over "DARK".
_ROAST_ALIASES = {
    "MEDIUM_LIGHT": RoastLevel.MEDIUM_LIGHT,
    "LIGHT_MEDIUM": RoastLevel.MEDIUM_LIGHT,
    "MEDIUM_DARK": RoastLevel.MEDIUM_DARK,
    "DARK_MEDIUM": RoastLevel.MEDIUM_DARK,
    "LIGHT": RoastLevel.LIGHT,
    "MEDIUM": RoastLevel.MEDIUM,
    "DARK": RoastLevel.DARK,
}


def normalize_roast_level(value: Any) -> Optional[RoastLevel]:
    """
    Maps free-form roast wording onto RoastLevel.

    "Medium-Dark Roast", "medium dark" and "MEDIUM_DARK" all become
    MEDIUM_DARK. Anything unrecognized becomes None.
    """
    if value is None:
        return None
    if isinstance(value, RoastLevel):
        return value
    if not isinstance(value, str):
        return None
    key = re.sub(r"[\s\-]+", "_", value.strip().upper())
    if key.endswith("_ROAST"):
        key = key[: -len("_ROAST")]
    return _ROAST_ALIASES.get(key)


class RawAnalysis(BaseModel):
    """
    The analysis object as a backend returns it (camelCase keys), after
    validation but before clamping and defaulting.
    """

    identified: bool
    confidence: Optional[float] = None
    brand_name: Optional[str] = None
    coffee_name: Optional[str] = None
    bean_type: Optional[str] = None
    possible_origin: Optional[str] = None
    roast_level: Optional[RoastLevel] = None
    roast_level_confidence: Optional[float] = None
    observations: Optional[List[str]] = None
    tasting_notes: Optional[List[str]] = None
    flavor_profile: Optional[str] = None
    weight: Optional[str] = None
    suggested_brew_methods: Optional[List[str]] = None
    brew_parameters: Optional[BrewParameters] = None
    tasting_notes_likely: Optional[List[str]] = None
    warnings: Optional[List[str]] = None

    model_config = {
        "alias_generator": AliasGenerator(validation_alias=to_camel),
        "populate_by_name": True,
        "extra": "ignore",
    }

    @field_validator("roast_level", mode="before")
    @classmethod
    def coerce_roast_level(cls, v):
        return normalize_roast_level(v)

    # Optional descriptive fields never sink an analysis: off-type values
    # become None. identified, confidence and beanType stay strict.
    @field_validator("roast_level_confidence", mode="before")
    @classmethod
    def coerce_optional_number(cls, v):
        return lenient_number(v)

    @field_validator("brand_name", "coffee_name", "possible_origin", "flavor_profile", "weight", mode="before")
    @classmethod
    def coerce_optional_text(cls, v):
        return lenient_text(v)

    @field_validator("brew_parameters", mode="before")
    @classmethod
    def coerce_brew_parameters(cls, v):
        return lenient_object(v)

    @field_validator(
        "observations",
        "tasting_notes",
        "suggested_brew_methods",
        "tasting_notes_likely",
        "warnings",
        mode="before",
    )
    @classmethod
    def coerce_string_list(cls, v):
        # Models occasionally answer a list field with a single string.
        if v is None:
            return None
        if isinstance(v, str):
            return [v] if v.strip() else []
        if isinstance(v, list):
            return [str(item) for item in v if item is not None]
        return None

    @model_validator(mode="after")
    def require_identification_fields(self) -> "RawAnalysis":
        if self.identified:
            if self.confidence is None:
                raise ValueError("confidence is required when identified is true")
            if self.bean_type is None or not self.bean_type.strip():
                raise ValueError("beanType is required when identified is true")
        return self


def _extract_json_text(raw_text: str) -> str:
    text = raw_text.strip()
    fenced = _FENCED_BLOCK.search(text)
    if fenced:
        text = fenced.group(1)
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        text = text[start : end + 1]
    return text


def _clamp_unit(value: Optional[float]) -> float:
    if value is None:
        return 0.0
    return min(1.0, max(0.0, float(value)))


class ResponseNormalizer:
    """Stateless; one instance is shared by all provider clients."""

    def parse(self, raw_text: str) -> RawAnalysis:
        """
        What:  Extracts and validates the analysis object from backend output.
        Raises MalformedResponseError on invalid JSON, a non-object payload,
        a missing `identified` flag, or an identified answer without
        confidence/beanType.
        """
        if not raw_text or not raw_text.strip():
            raise MalformedResponseError(message="The provider returned an empty analysis")

        candidate = _extract_json_text(raw_text)
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError as e:
            logger.warning("Provider output is not valid JSON: %s", e.msg)
            raise MalformedResponseError(context={"reason": "invalid_json"}) from e

        if not isinstance(payload, dict):
            logger.warning("Provider output is JSON but not an object (%s)", type(payload).__name__)
            raise MalformedResponseError(context={"reason": "not_an_object"})

        try:
            return RawAnalysis.model_validate(payload)
        except pydantic.ValidationError as e:
            fields = sorted({".".join(str(p) for p in err["loc"]) or "<root>" for err in e.errors()})
            logger.warning("Provider output failed validation on fields: %s", fields)
            raise MalformedResponseError(
                context={"reason": "schema_mismatch", "fields": fields},
            ) from e

    def transform(self, raw: RawAnalysis, image_ref: str) -> AnalysisResult:
        """Canonical result with confidences clamped to [0, 1] and empty lists for absent collections."""
        return AnalysisResult(
            identified=raw.identified,
            confidence=_clamp_unit(raw.confidence),
            brand_name=raw.brand_name,
            coffee_name=raw.coffee_name,
            bean_type=raw.bean_type,
            possible_origin=raw.possible_origin,
            roast_level=raw.roast_level,
            roast_level_confidence=_clamp_unit(raw.roast_level_confidence),
            observations=raw.observations or [],
            tasting_notes=raw.tasting_notes or [],
            flavor_profile=raw.flavor_profile,
            weight=raw.weight,
            suggested_brew_methods=raw.suggested_brew_methods or [],
            brew_parameters=raw.brew_parameters or BrewParameters(),
            tasting_notes_likely=raw.tasting_notes_likely or [],
            warnings=raw.warnings or [],
            image_ref=image_ref,
            analyzed_at=datetime.now(timezone.utc),
        )


normalizer = ResponseNormalizer()
