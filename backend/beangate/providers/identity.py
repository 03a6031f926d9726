"""
BeanGate Backend: Provider Identity and Descriptor
====================================================

What:  The closed set of provider identifiers and their catalog metadata.
How:   ProviderIdentity is a str-valued Enum, so it serializes as its name in
       JSON and can be parsed straight from request bodies and env vars.
       HOUSE_BLEND is a routing alias; the other members are real backends.
"""

from dataclasses import dataclass
from enum import Enum


class ProviderIdentity(str, Enum):
    HOUSE_BLEND = "HOUSE_BLEND"
    OPENAI = "OPENAI"
    CLAUDE = "CLAUDE"
    GEMINI = "GEMINI"

    @property
    def is_house_blend(self) -> bool:
        return self is ProviderIdentity.HOUSE_BLEND


# Backends a user can bring their own credential for, in catalog order.
BACKEND_IDENTITIES = (
    ProviderIdentity.OPENAI,
    ProviderIdentity.CLAUDE,
    ProviderIdentity.GEMINI,
)


@dataclass(frozen=True)
class ProviderDescriptor:
    """Immutable catalog entry shown to callers choosing a provider."""

    identity: ProviderIdentity
    display_name: str
    model: str
    requires_user_credential: bool
