"""
BeanGate Backend: Provider Registry Unit Tests
================================================

What we test:
    ✅ resolve() is stable per identity and accepts case-insensitive names
    ✅ Unknown identities → UnknownProviderError
    ✅ Catalog order and credential requirements
    ✅ Default construction builds the three real SDK-backed clients
"""

import pytest

from beangate.exceptions import UnknownProviderError
from beangate.providers.claude_client import ClaudeClient
from beangate.providers.gemini_client import GeminiClient
from beangate.providers.house_blend import HouseBlendRouter
from beangate.providers.identity import ProviderIdentity
from beangate.providers.openai_client import OpenAIClient
from beangate.providers.registry import ProviderRegistry, parse_identity


class TestParseIdentity:

    @pytest.mark.parametrize("value,expected", [
        ("OPENAI", ProviderIdentity.OPENAI),
        ("openai", ProviderIdentity.OPENAI),
        (" Claude ", ProviderIdentity.CLAUDE),
        ("house_blend", ProviderIdentity.HOUSE_BLEND),
        (ProviderIdentity.GEMINI, ProviderIdentity.GEMINI),
    ])
    def test_valid(self, value, expected):
        assert parse_identity(value) is expected

    @pytest.mark.parametrize("value", ["MISTRAL", "", "gpt-4o", None, 3])
    def test_invalid(self, value):
        with pytest.raises(UnknownProviderError):
            parse_identity(value)


class TestResolve:

    @pytest.mark.parametrize("identity", list(ProviderIdentity))
    def test_idempotent(self, registry, identity):
        first = registry.resolve(identity)
        assert registry.resolve(identity) is first
        assert registry.resolve(identity.value.lower()) is first
        assert first.identity is identity

    def test_unknown(self, registry):
        with pytest.raises(UnknownProviderError):
            registry.resolve("LLAMA")

    def test_house_blend_is_router(self, registry):
        assert isinstance(registry.resolve(ProviderIdentity.HOUSE_BLEND), HouseBlendRouter)
        assert registry.house_blend is registry.resolve("HOUSE_BLEND")

    def test_requires_user_credential(self, registry):
        assert registry.requires_user_credential(ProviderIdentity.HOUSE_BLEND) is False
        for identity in (ProviderIdentity.OPENAI, ProviderIdentity.CLAUDE, ProviderIdentity.GEMINI):
            assert registry.requires_user_credential(identity) is True


class TestDescribeAll:

    def test_catalog_order(self, registry):
        names = [d.identity for d in registry.describe_all()]
        assert names == [
            ProviderIdentity.HOUSE_BLEND,
            ProviderIdentity.OPENAI,
            ProviderIdentity.CLAUDE,
            ProviderIdentity.GEMINI,
        ]

    def test_house_blend_entry(self, registry):
        house_blend = registry.describe_all()[0]
        assert house_blend.display_name == "House Blend (Free)"
        assert house_blend.requires_user_credential is False


class TestDefaultConstruction:

    def test_builds_sdk_clients_from_settings(self, settings):
        registry = ProviderRegistry(settings)
        assert isinstance(registry.resolve("OPENAI"), OpenAIClient)
        assert isinstance(registry.resolve("CLAUDE"), ClaudeClient)
        assert isinstance(registry.resolve("GEMINI"), GeminiClient)
        assert registry.resolve("OPENAI").model == settings.openai_model
        assert registry.resolve("GEMINI").max_tokens == settings.analysis_max_tokens
