"""
BeanGate Backend: Google Gemini Provider Client
=================================================

What:  Coffee bag analysis through the Gemini API (`google-genai` SDK).
How:   A `genai.Client` is built per call with the call's key (the SDK's
       client object carries the credential, so concurrent calls with
       different keys never share auth state). Its async side is used as
       `async with`, which closes its HTTP connections when the call ends.
       The image goes inline as a bytes Part;
       `response_mime_type="application/json"` asks for a bare JSON answer.

Error mapping:
    Gemini reports a bad key as HTTP 400 with reason API_KEY_INVALID, so the
    message is inspected in addition to the status code.
"""

import base64
import binascii
import logging

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from beangate.exceptions import (
    BeanGateError,
    InvalidCredentialError,
    RateLimitedError,
    UpstreamFailureError,
    ValidationError,
)
from beangate.providers.base import ANALYSIS_PROMPT, BackendClient
from beangate.providers.identity import ProviderIdentity

logger = logging.getLogger(__name__)


class GeminiClient(BackendClient):
    identity = ProviderIdentity.GEMINI
    display_name = "Gemini 2.5 Flash"
    key_prefix = "AIza"
    min_key_length = 35

    def _client(self, credential: str) -> genai.Client:
        return genai.Client(api_key=credential)

    async def _request_analysis(self, image_data_url, mime_type, payload, credential):
        try:
            image_bytes = base64.b64decode(payload, validate=True)
        except binascii.Error:
            raise ValidationError(message="Invalid image data URL format", field="image") from None

        async with self._client(credential).aio as client:
            response = await client.models.generate_content(
                model=self.model,
                contents=[
                    types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
                    ANALYSIS_PROMPT,
                ],
                config=types.GenerateContentConfig(response_mime_type="application/json"),
            )
        return response.text

    async def _ping(self, credential: str) -> None:
        async with self._client(credential).aio as client:
            await client.models.generate_content(model=self.model, contents="Hi")

    def _translate_error(self, error: Exception) -> BeanGateError:
        context = {"provider": self.identity.value, "error_type": type(error).__name__}
        if isinstance(error, genai_errors.APIError):
            code = error.code
            detail = f"{error.status or ''} {error.message or ''}"
            context["upstream_status"] = code
            if code in (401, 403) or "API_KEY_INVALID" in detail:
                return InvalidCredentialError(
                    message="Invalid Google AI API key",
                    context={"provider": self.identity.value},
                )
            if code == 429 or "RESOURCE_EXHAUSTED" in detail:
                return RateLimitedError(
                    message="Gemini rate limit exceeded. Please try again later.",
                    context={"provider": self.identity.value},
                )
        return UpstreamFailureError(message="Failed to analyze image with Gemini", context=context)
