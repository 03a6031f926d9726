"""
BeanGate Backend: House Blend Router
======================================

What:  The free-tier provider. Looks like any other ProviderClient, but
       forwards every call to the backend named by FREE_TIER_PROVIDER using
       the platform's own API key.
How:   The backend and its platform secret are looked up on each call, never
       cached. The caller's credential is ignored.
Who:   Registered under ProviderIdentity.HOUSE_BLEND by ProviderRegistry.
       Metering happens in the orchestrator, not here.
"""

import logging
from typing import TYPE_CHECKING, Optional

from beangate.config import Settings
from beangate.exceptions import ConfigurationError
from beangate.providers.base import ProviderClient
from beangate.providers.identity import ProviderIdentity
from beangate.schemas.analysis import AnalysisResult

if TYPE_CHECKING:
    from beangate.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


class HouseBlendRouter(ProviderClient):
    identity = ProviderIdentity.HOUSE_BLEND
    display_name = "House Blend (Free)"
    requires_user_credential = False

    def __init__(self, settings: Settings, registry: "ProviderRegistry"):
        self.settings = settings
        self.registry = registry

    @property
    def backend(self) -> ProviderClient:
        return self.registry.resolve(self.settings.free_tier_provider)

    @property
    def model(self) -> str:
        return self.backend.model

    def platform_credential(self) -> str:
        """
        The operator's key for the current House Blend backend.
        Raises ConfigurationError when it is not configured.
        """
        backend_identity = self.settings.free_tier_provider
        secret = self.settings.platform_secret_for(backend_identity)
        if secret is None or not secret.get_secret_value():
            logger.error(
                "House Blend backend %s has no platform API key configured",
                backend_identity.value,
            )
            raise ConfigurationError(
                message="House Blend is not configured. Please contact the administrator.",
                context={"backend": backend_identity.value},
            )
        return secret.get_secret_value()

    def is_configured(self) -> bool:
        secret = self.settings.platform_secret_for(self.settings.free_tier_provider)
        return secret is not None and bool(secret.get_secret_value())

    def validate_key_format(self, candidate: str) -> bool:
        return True

    async def test_connection(self, credential: Optional[str] = None) -> bool:
        try:
            return await self.backend.test_connection(self.platform_credential())
        except Exception as e:
            logger.info("House Blend connection test failed: %s", type(e).__name__)
            return False

    async def analyze_image(
        self,
        image_data_url: str,
        credential: Optional[str],
        image_ref: str,
    ) -> AnalysisResult:
        backend = self.backend
        platform_key = self.platform_credential()
        logger.debug("House Blend routing to %s", backend.identity.value)
        return await backend.analyze_image(image_data_url, platform_key, image_ref)
