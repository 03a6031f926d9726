"""
BeanGate Backend: Provider Registry
=====================================

What:  Maps a ProviderIdentity (or its string form) to the client that serves
       it and publishes the provider catalog.
How:   Built once from the frozen Settings at startup; the mapping is never
       mutated afterwards, so one registry is shared by all requests.
"""

import logging
from typing import Dict, List, Mapping, Optional, Union

from beangate.config import Settings
from beangate.exceptions import UnknownProviderError
from beangate.providers.base import ProviderClient
from beangate.providers.claude_client import ClaudeClient
from beangate.providers.gemini_client import GeminiClient
from beangate.providers.house_blend import HouseBlendRouter
from beangate.providers.identity import BACKEND_IDENTITIES, ProviderDescriptor, ProviderIdentity
from beangate.providers.openai_client import OpenAIClient

logger = logging.getLogger(__name__)


def parse_identity(value: Union[ProviderIdentity, str, None]) -> ProviderIdentity:
    """Accepts an enum member or a case-insensitive name; anything else is UnknownProviderError."""
    if isinstance(value, ProviderIdentity):
        return value
    if not isinstance(value, str):
        raise UnknownProviderError(value)
    try:
        return ProviderIdentity(value.strip().upper())
    except ValueError:
        raise UnknownProviderError(value) from None


class ProviderRegistry:
    """
    Read-only lookup of provider clients.

    `backends` may be supplied to substitute clients (tests); otherwise the
    three real backends are built from settings. House Blend is always the
    router over whatever backends the registry holds.
    """

    def __init__(
        self,
        settings: Settings,
        backends: Optional[Mapping[ProviderIdentity, ProviderClient]] = None,
    ):
        self.settings = settings
        if backends is None:
            backends = {
                ProviderIdentity.OPENAI: OpenAIClient(settings.openai_model, settings.analysis_max_tokens),
                ProviderIdentity.CLAUDE: ClaudeClient(settings.claude_model, settings.analysis_max_tokens),
                ProviderIdentity.GEMINI: GeminiClient(settings.gemini_model, settings.analysis_max_tokens),
            }
        self._clients: Dict[ProviderIdentity, ProviderClient] = dict(backends)
        self._clients[ProviderIdentity.HOUSE_BLEND] = HouseBlendRouter(settings, self)

    @property
    def house_blend(self) -> HouseBlendRouter:
        return self._clients[ProviderIdentity.HOUSE_BLEND]

    def resolve(self, identity: Union[ProviderIdentity, str]) -> ProviderClient:
        provider = parse_identity(identity)
        client = self._clients.get(provider)
        if client is None:
            raise UnknownProviderError(provider.value)
        return client

    def describe_all(self) -> List[ProviderDescriptor]:
        order = (ProviderIdentity.HOUSE_BLEND,) + BACKEND_IDENTITIES
        return [self._clients[identity].describe() for identity in order if identity in self._clients]

    def requires_user_credential(self, identity: Union[ProviderIdentity, str]) -> bool:
        return self.resolve(identity).requires_user_credential
