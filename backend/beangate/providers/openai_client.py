"""
BeanGate Backend: OpenAI Provider Client
==========================================

What:  Coffee bag analysis through OpenAI's chat completions API (gpt-4o).
How:   Sends the shared prompt plus the image data URL in one user message
       with `response_format={"type": "json_object"}`; the SDK client is
       created per call with the caller's key and `max_retries=0`.
"""

import logging

import openai
from openai import AsyncOpenAI

from beangate.exceptions import (
    BeanGateError,
    InvalidCredentialError,
    RateLimitedError,
    UpstreamFailureError,
)
from beangate.providers.base import ANALYSIS_PROMPT, BackendClient, retry_after_from
from beangate.providers.identity import ProviderIdentity

logger = logging.getLogger(__name__)


class OpenAIClient(BackendClient):
    identity = ProviderIdentity.OPENAI
    display_name = "OpenAI GPT-4o"
    key_prefix = "sk-"
    min_key_length = 40

    def _client(self, credential: str) -> AsyncOpenAI:
        return AsyncOpenAI(api_key=credential, max_retries=0)

    async def _request_analysis(self, image_data_url, mime_type, payload, credential):
        async with self._client(credential) as client:
            response = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": ANALYSIS_PROMPT},
                            {"type": "image_url", "image_url": {"url": image_data_url, "detail": "high"}},
                        ],
                    }
                ],
                response_format={"type": "json_object"},
                max_tokens=self.max_tokens,
            )
        if not response.choices:
            return None
        return response.choices[0].message.content

    async def _ping(self, credential: str) -> None:
        async with self._client(credential) as client:
            await client.models.list()

    def _translate_error(self, error: Exception) -> BeanGateError:
        if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
            return InvalidCredentialError(message="Invalid OpenAI API key", context={"provider": self.identity.value})
        if isinstance(error, openai.RateLimitError):
            return RateLimitedError(
                message="OpenAI rate limit exceeded. Please try again later.",
                retry_after=retry_after_from(error),
                context={"provider": self.identity.value},
            )
        context = {"provider": self.identity.value, "error_type": type(error).__name__}
        if isinstance(error, openai.APIStatusError):
            context["upstream_status"] = error.status_code
        return UpstreamFailureError(message="Failed to analyze image with OpenAI", context=context)
