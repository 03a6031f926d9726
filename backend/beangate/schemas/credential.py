"""
BeanGate Backend: Credential Schemas
======================================

What:  Request/response models for the /api/keys endpoints.
How:   Keys go in as plaintext over TLS (SaveCredentialRequest) and only ever
       come back masked (CredentialInfo.masked_key).
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator

from beangate.providers.identity import ProviderIdentity
from beangate.schemas.analysis import ProviderInfo, UsageResponse


class SaveCredentialRequest(BaseModel):
    api_key: SecretStr = Field(description="Provider API key")

    @field_validator("api_key")
    @classmethod
    def check_length(cls, v: SecretStr) -> SecretStr:
        # Message never includes the value.
        if not 20 <= len(v.get_secret_value().strip()) <= 512:
            raise ValueError("API key must be between 20 and 512 characters")
        return v


class CredentialInfo(BaseModel):
    provider: ProviderIdentity
    is_configured: bool
    is_valid: bool
    masked_key: Optional[str] = None
    last_used_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class CredentialListResponse(BaseModel):
    keys: List[CredentialInfo]
    preferred_provider: ProviderIdentity
    providers: List[ProviderInfo]


class CredentialTestResponse(BaseModel):
    valid: bool
    message: str


class PreferredProviderRequest(BaseModel):
    # Plain string so unknown values surface as unknown_provider.
    provider: str = Field(min_length=1, max_length=32)


class PreferredProviderResponse(BaseModel):
    preferred_provider: ProviderIdentity


class ProviderCatalogResponse(BaseModel):
    """Everything a client needs to render a provider picker."""

    providers: List[ProviderInfo]
    usage: UsageResponse = Field(description="Free House Blend analyses left today")
    keys: Optional[List[CredentialInfo]] = Field(default=None, description="Authenticated callers only")
    preferred_provider: Optional[ProviderIdentity] = Field(default=None, description="Authenticated callers only")
