"""
BeanGate Backend: Provider Client Contract
============================================

What:  Abstract base classes every vision backend (and the House Blend facade)
       implements, plus the analysis prompt they all send.
How:   ProviderClient is the contract the registry and orchestrator see.
       BackendClient implements the shared flow for real backends:
       validate the data URL → one SDK call → translate SDK errors → parse and
       normalize the answer. Subclasses only supply the SDK call, a minimal
       "ping" call and the error translation.
Who:   OpenAIClient, ClaudeClient, GeminiClient extend BackendClient;
       HouseBlendRouter extends ProviderClient directly.

Contract for analyze_image():
    Returns an AnalysisResult with identified=True, or raises one of
    ValidationError (bad data URL), InvalidCredentialError, RateLimitedError,
    MalformedResponseError, UpstreamFailureError, or NotIdentifiedError
    (which carries the normalized identified=False result).

    SDK clients are built per call from the call's credential with SDK
    retries disabled. Nothing in a client is mutated after construction.
"""

import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Optional, Tuple

from beangate.exceptions import (
    BeanGateError,
    MissingCredentialError,
    NotIdentifiedError,
    ValidationError,
)
from beangate.providers.identity import ProviderDescriptor, ProviderIdentity
from beangate.schemas.analysis import AnalysisResult
from beangate.services.normalizer import ResponseNormalizer, normalizer as default_normalizer

logger = logging.getLogger(__name__)


ANALYSIS_PROMPT = """You are an expert coffee specialist. Analyze this image of a coffee bag/package and extract all visible information from the packaging.

Return a JSON object with the following structure:
{
  "identified": boolean,           // Whether this is clearly a coffee bag/package
  "confidence": number,            // 0-1 confidence in your analysis
  "brandName": string | null,      // Brand/roaster name visible on the bag
  "coffeeName": string | null,     // Product name or blend name
  "beanType": string | null,       // "Arabica", "Robusta", "Blend", or specific variety if stated
  "possibleOrigin": string | null, // Country/region if listed on package
  "roastLevel": "LIGHT" | "MEDIUM_LIGHT" | "MEDIUM" | "MEDIUM_DARK" | "DARK",
  "roastLevelConfidence": number,  // 0-1 confidence in roast level (higher if explicitly stated on bag)
  "observations": string[],        // Other notable info from the packaging (certifications, process method, altitude, etc.)
  "tastingNotes": string[],        // Tasting notes if listed on the bag (e.g., "chocolate", "citrus", "berry")
  "flavorProfile": string | null,  // Overall flavor description if provided
  "weight": string | null,         // Package weight if visible (e.g., "250g", "12oz")
  "suggestedBrewMethods": string[],// Recommended brew methods if listed, or infer from roast level
  "brewParameters": {
    "espresso": {
      "dose": number,              // grams in (suggest 18 as default)
      "yield": number,             // grams out
      "ratio": string,             // e.g., "1:2"
      "temperature": number,       // Celsius
      "pullTime": { "min": number, "max": number },  // seconds
      "pressure": number,          // bars
      "grindSize": string          // descriptive (Fine, Medium-Fine, etc.)
    },
    "pourOver": {
      "dose": number,              // grams
      "waterAmount": number,       // ml
      "ratio": string,             // e.g., "1:16"
      "temperature": number,       // Celsius
      "totalTime": { "min": number, "max": number },  // seconds
      "grindSize": string,
      "bloomTime": number,         // seconds
      "bloomWater": number         // ml
    }
  },
  "tastingNotesLikely": string[],  // If no tasting notes on bag, predict based on origin and roast
  "warnings": string[]             // Any concerns (unclear info, conflicting details, etc.)
}

Guidelines for roast-based brew recommendations:
- LIGHT: Higher temps (93-96°C), longer extractions, highlight origin characteristics
- MEDIUM_LIGHT: Balanced temps (92-94°C), good for both espresso and filter
- MEDIUM: Versatile temps (91-93°C), balanced sweetness and acidity
- MEDIUM_DARK: Lower temps (89-92°C), shorter extractions, more body
- DARK: Lower temps (88-91°C), shorter extractions, bold flavors

Priority: Extract actual text from the packaging first. Only infer/predict when information is not visible.
If roast level is explicitly stated on the bag (e.g., "Light Roast", "Dark Roast"), use that with high confidence.
If you cannot clearly identify this as a coffee bag/package, set identified to false.

IMPORTANT: Return ONLY the JSON object, no additional text."""


_DATA_URL = re.compile(r"^data:([^;]+);base64,(.+)$")


def split_data_url(image_data_url: str) -> Tuple[str, str]:
    """Returns (mime_type, base64_payload) or raises ValidationError."""
    match = _DATA_URL.match(image_data_url or "")
    if not match:
        raise ValidationError(message="Invalid image data URL format", field="image")
    return match.group(1), match.group(2)


def retry_after_from(error: Exception) -> Optional[int]:
    """Seconds from a Retry-After header on an SDK status error, if present."""
    response = getattr(error, "response", None)
    if response is None:
        return None
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(1, int(float(value)))
    except ValueError:
        return None


class ProviderClient(ABC):
    """
    Contract shared by every provider the registry can resolve.

    Subclasses set `identity` and `display_name` as class attributes and
    expose `model` (a property, since House Blend reports its backend's).
    """

    identity: ProviderIdentity
    display_name: str
    requires_user_credential: bool = True

    @property
    @abstractmethod
    def model(self) -> str:
        ...

    @abstractmethod
    def validate_key_format(self, candidate: str) -> bool:
        """Local prefix/length check. No network call."""
        ...

    @abstractmethod
    async def test_connection(self, credential: Optional[str]) -> bool:
        """One minimal live call. Every failure becomes False."""
        ...

    @abstractmethod
    async def analyze_image(
        self,
        image_data_url: str,
        credential: Optional[str],
        image_ref: str,
    ) -> AnalysisResult:
        ...

    def describe(self) -> ProviderDescriptor:
        return ProviderDescriptor(
            identity=self.identity,
            display_name=self.display_name,
            model=self.model,
            requires_user_credential=self.requires_user_credential,
        )


class BackendClient(ProviderClient):
    """
    Shared analyze/test flow for real vision backends.

    Subclasses define `key_prefix`, `min_key_length` and the three hooks
    below. Hooks may raise any SDK exception; BackendClient routes it
    through `_translate_error` so callers only ever see the typed errors.
    """

    key_prefix: str
    min_key_length: int

    def __init__(
        self,
        model: str,
        max_tokens: int = 2000,
        normalizer: Optional[ResponseNormalizer] = None,
    ):
        self._model = model
        self.max_tokens = max_tokens
        self.normalizer = normalizer or default_normalizer

    @property
    def model(self) -> str:
        return self._model

    def validate_key_format(self, candidate: str) -> bool:
        return bool(candidate) and candidate.startswith(self.key_prefix) and len(candidate) >= self.min_key_length

    async def test_connection(self, credential: Optional[str]) -> bool:
        if not credential:
            return False
        try:
            await self._ping(credential)
            return True
        except Exception as e:
            logger.info(
                "%s connection test failed: %s",
                self.identity.value,
                type(e).__name__,
            )
            return False

    async def analyze_image(
        self,
        image_data_url: str,
        credential: Optional[str],
        image_ref: str,
    ) -> AnalysisResult:
        if not credential:
            raise MissingCredentialError(self.identity.value)
        mime_type, payload = split_data_url(image_data_url)

        start_time = time.perf_counter()
        try:
            raw_text = await self._request_analysis(image_data_url, mime_type, payload, credential)
        except BeanGateError:
            raise
        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            translated = self._translate_error(e)
            logger.warning(
                "%s analysis failed after %.0fms: %s → %s",
                self.identity.value,
                duration_ms,
                type(e).__name__,
                translated.error_code,
            )
            raise translated from e

        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            "%s analysis completed in %.0fms (%d chars)",
            self.identity.value,
            duration_ms,
            len(raw_text or ""),
        )
        return self._finish(raw_text, image_ref)

    def _finish(self, raw_text: Optional[str], image_ref: str) -> AnalysisResult:
        raw = self.normalizer.parse(raw_text or "")
        result = self.normalizer.transform(raw, image_ref)
        if not result.identified:
            raise NotIdentifiedError(result)
        return result

    @abstractmethod
    async def _request_analysis(
        self,
        image_data_url: str,
        mime_type: str,
        payload: str,
        credential: str,
    ) -> Optional[str]:
        """Sends the prompt and image; returns the backend's text output."""
        ...

    @abstractmethod
    async def _ping(self, credential: str) -> None:
        ...

    @abstractmethod
    def _translate_error(self, error: Exception) -> BeanGateError:
        ...
