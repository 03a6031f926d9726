"""
BeanGate Backend: Claude Provider Client
==========================================

What:  Coffee bag analysis through Anthropic's Messages API.
How:   The image travels as a base64 `image` block followed by the shared
       prompt as a `text` block. The first text block of the reply is the
       answer.
"""

import logging

import anthropic
from anthropic import AsyncAnthropic

from beangate.exceptions import (
    BeanGateError,
    InvalidCredentialError,
    RateLimitedError,
    UpstreamFailureError,
)
from beangate.providers.base import ANALYSIS_PROMPT, BackendClient, retry_after_from
from beangate.providers.identity import ProviderIdentity

logger = logging.getLogger(__name__)


class ClaudeClient(BackendClient):
    identity = ProviderIdentity.CLAUDE
    display_name = "Claude Sonnet 4"
    key_prefix = "sk-ant-"
    min_key_length = 90

    def _client(self, credential: str) -> AsyncAnthropic:
        return AsyncAnthropic(api_key=credential, max_retries=0)

    async def _request_analysis(self, image_data_url, mime_type, payload, credential):
        async with self._client(credential) as client:
            response = await client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "image",
                                "source": {"type": "base64", "media_type": mime_type, "data": payload},
                            },
                            {"type": "text", "text": ANALYSIS_PROMPT},
                        ],
                    }
                ],
            )
        for block in response.content:
            if block.type == "text":
                return block.text
        return None

    async def _ping(self, credential: str) -> None:
        async with self._client(credential) as client:
            await client.messages.create(
                model=self.model,
                max_tokens=10,
                messages=[{"role": "user", "content": "Hi"}],
            )

    def _translate_error(self, error: Exception) -> BeanGateError:
        if isinstance(error, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
            return InvalidCredentialError(message="Invalid Anthropic API key", context={"provider": self.identity.value})
        if isinstance(error, anthropic.RateLimitError):
            return RateLimitedError(
                message="Anthropic rate limit exceeded. Please try again later.",
                retry_after=retry_after_from(error),
                context={"provider": self.identity.value},
            )
        context = {"provider": self.identity.value, "error_type": type(error).__name__}
        if isinstance(error, anthropic.APIStatusError):
            context["upstream_status"] = error.status_code
            if error.status_code == 404:
                logger.error("Claude model not found: %s", self.model)
        return UpstreamFailureError(message="Failed to analyze image with Claude", context=context)
