"""
BeanGate Backend: Analysis Schemas
====================================

What:  Pydantic models for the canonical analysis result and the analysis API.
How:   AnalysisResult is the provider-agnostic shape every client returns.
       Request/response models wrap it for the HTTP layer and drive the
       OpenAPI docs.
Who:   Built by the normalizer; returned by the orchestrator and routes.
"""

import math
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import AliasGenerator, BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

from beangate.providers.identity import ProviderIdentity


class RoastLevel(str, Enum):
    LIGHT = "LIGHT"
    MEDIUM_LIGHT = "MEDIUM_LIGHT"
    MEDIUM = "MEDIUM"
    MEDIUM_DARK = "MEDIUM_DARK"
    DARK = "DARK"


# ══════════════════════════════════════════════════════════════════════════
# Brew parameters: every field optional, providers fill in what they can.
# Providers answer in camelCase (pullTime, pourOver); output stays snake_case.
# A value of the wrong type ("18g", "hot", a list) becomes None instead of
# failing the whole analysis.
# ══════════════════════════════════════════════════════════════════════════

_ACCEPT_CAMEL_CASE = {
    "alias_generator": AliasGenerator(validation_alias=to_camel),
    "populate_by_name": True,
}


def lenient_number(value: Any) -> Optional[float]:
    """Finite numbers and numeric strings pass; anything else becomes None."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return value
    return None


def lenient_text(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def lenient_object(value: Any) -> Any:
    return value if isinstance(value, (dict, BaseModel)) else None


class TimeRange(BaseModel):
    min: Optional[float] = None
    max: Optional[float] = None

    model_config = _ACCEPT_CAMEL_CASE

    @field_validator("min", "max", mode="before")
    @classmethod
    def coerce_numbers(cls, v):
        return lenient_number(v)


class EspressoParameters(BaseModel):
    dose: Optional[float] = Field(default=None, description="Grams in")
    yield_: Optional[float] = Field(default=None, alias="yield", description="Grams out")
    ratio: Optional[str] = None
    temperature: Optional[float] = Field(default=None, description="Celsius")
    pull_time: Optional[TimeRange] = Field(default=None, description="Seconds")
    pressure: Optional[float] = Field(default=None, description="Bars")
    grind_size: Optional[str] = None

    model_config = _ACCEPT_CAMEL_CASE

    @field_validator("dose", "yield_", "temperature", "pressure", mode="before")
    @classmethod
    def coerce_numbers(cls, v):
        return lenient_number(v)

    @field_validator("ratio", "grind_size", mode="before")
    @classmethod
    def coerce_texts(cls, v):
        return lenient_text(v)

    @field_validator("pull_time", mode="before")
    @classmethod
    def coerce_range(cls, v):
        return lenient_object(v)


class PourOverParameters(BaseModel):
    dose: Optional[float] = Field(default=None, description="Grams")
    water_amount: Optional[float] = Field(default=None, description="Millilitres")
    ratio: Optional[str] = None
    temperature: Optional[float] = Field(default=None, description="Celsius")
    total_time: Optional[TimeRange] = Field(default=None, description="Seconds")
    grind_size: Optional[str] = None
    bloom_time: Optional[float] = Field(default=None, description="Seconds")
    bloom_water: Optional[float] = Field(default=None, description="Millilitres")

    model_config = _ACCEPT_CAMEL_CASE

    @field_validator("dose", "water_amount", "temperature", "bloom_time", "bloom_water", mode="before")
    @classmethod
    def coerce_numbers(cls, v):
        return lenient_number(v)

    @field_validator("ratio", "grind_size", mode="before")
    @classmethod
    def coerce_texts(cls, v):
        return lenient_text(v)

    @field_validator("total_time", mode="before")
    @classmethod
    def coerce_range(cls, v):
        return lenient_object(v)


class BrewParameters(BaseModel):
    """Partial, per-method brew recommendations."""

    espresso: Optional[EspressoParameters] = None
    pour_over: Optional[PourOverParameters] = None

    model_config = _ACCEPT_CAMEL_CASE

    @field_validator("espresso", "pour_over", mode="before")
    @classmethod
    def coerce_methods(cls, v):
        return lenient_object(v)


# ══════════════════════════════════════════════════════════════════════════
# Canonical analysis result
# ══════════════════════════════════════════════════════════════════════════


class AnalysisResult(BaseModel):
    """
    What:  Provider-agnostic analysis of one coffee bag photo.
    When:  Produced by ResponseNormalizer.transform for every provider.

    identified=False is a legitimate outcome meaning "no coffee packaging
    recognized". When identified=True, bean_type is never null.
    """

    identified: bool
    confidence: float = Field(ge=0.0, le=1.0)
    brand_name: Optional[str] = None
    coffee_name: Optional[str] = None
    bean_type: Optional[str] = None
    possible_origin: Optional[str] = None
    roast_level: Optional[RoastLevel] = None
    roast_level_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    observations: List[str] = Field(default_factory=list)
    tasting_notes: List[str] = Field(default_factory=list)
    flavor_profile: Optional[str] = None
    weight: Optional[str] = None
    suggested_brew_methods: List[str] = Field(default_factory=list)
    brew_parameters: BrewParameters = Field(default_factory=BrewParameters)
    tasting_notes_likely: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    image_ref: str
    analyzed_at: datetime


# ══════════════════════════════════════════════════════════════════════════
# API models
# ══════════════════════════════════════════════════════════════════════════


class AnalyzeRequest(BaseModel):
    image_ref: str = Field(min_length=1, max_length=255, description="Reference returned by POST /api/images")
    # Left as a plain string so unknown values reach the registry and come
    # back as unknown_provider rather than a schema error.
    provider: Optional[str] = Field(
        default=None,
        description="HOUSE_BLEND, OPENAI, CLAUDE or GEMINI. Defaults to the caller's preferred provider.",
    )


class AnalyzeResponse(BaseModel):
    analysis: AnalysisResult
    saved_id: Optional[uuid.UUID] = Field(default=None, description="Analysis record id (authenticated callers)")
    image_ref: str
    provider: ProviderIdentity
    provider_display_name: str
    message: Optional[str] = Field(default=None, description="Set when no coffee bag was recognized")
    metering_degraded: bool = Field(
        default=False,
        description="True when the analysis succeeded but free-tier usage could not be recorded",
    )


class UsageResponse(BaseModel):
    used: int
    limit: int
    remaining: int
    resets_at: datetime


class ProviderInfo(BaseModel):
    name: ProviderIdentity
    display_name: str
    model: str
    requires_key: bool


class AnalysisRecordResponse(BaseModel):
    id: uuid.UUID
    image_ref: str
    provider: ProviderIdentity
    identified: bool
    confidence: float
    bean_type: Optional[str] = None
    brand_name: Optional[str] = None
    coffee_name: Optional[str] = None
    possible_origin: Optional[str] = None
    roast_level: Optional[RoastLevel] = None
    observations: List[str] = Field(default_factory=list)
    brew_parameters: BrewParameters = Field(default_factory=BrewParameters)
    coffee_id: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class AnalysisHistoryResponse(BaseModel):
    analyses: List[AnalysisRecordResponse]


class LinkCoffeeRequest(BaseModel):
    coffee_id: str = Field(min_length=1, max_length=64)


class ImageUploadResponse(BaseModel):
    image_ref: str = Field(description="Pass this to POST /api/analyze")
    size: int


class ErrorResponse(BaseModel):
    """Standardized error body rendered by the global exception handlers."""

    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    status: str = Field(description="healthy, degraded or unhealthy")
    version: str
    database: str = Field(description="connected or disconnected")
    house_blend: str = Field(description="configured or unconfigured")
    house_blend_backend: ProviderIdentity
    uptime_seconds: float
