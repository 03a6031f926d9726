"""
BeanGate Backend: Analysis Orchestrator Tests
===============================================

What:  End-to-end analyze/get_usage flows over real ledger, credential
       store, image store and SQLite, with scripted fake backends.

What we test:
    ✅ Anonymous House Blend: 3 analyses, then QuotaExceeded; usage reports 0 left
    ✅ Keyed provider without a stored key → MissingCredential; after saving
       a key, the same call reaches the backend
    ✅ Failures (malformed, upstream, timeout) are not metered
    ✅ "No coffee bag" is metered, not saved, and surfaces as NotIdentified
    ✅ Lost metering race degrades the response instead of failing it
    ✅ Authenticated results are saved; persistence failure is tolerated
    ✅ Preferred provider, history, detail, coffee linking
"""

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from beangate.exceptions import (
    ConfigurationError,
    IntegrityError,
    MalformedResponseError,
    MissingCredentialError,
    NotFoundError,
    NotIdentifiedError,
    QuotaExceededError,
    RateLimitedError,
    UnknownProviderError,
    UpstreamFailureError,
)
from beangate.providers.identity import ProviderIdentity
from beangate.providers.registry import ProviderRegistry
from beangate.services.analysis_service import AnalysisOrchestrator, Caller
from beangate.services.quota_ledger import QuotaIdentity

from conftest import CLAUDE_KEY, IDENTIFIED_REPLY, NOT_IDENTIFIED_REPLY, OPENAI_KEY, PLATFORM_KEY, make_settings

ANONYMOUS = Caller(address="198.51.100.23")
SIGNED_IN = Caller(user_id="user-1", address="198.51.100.23")


class TestAnonymousHouseBlend:

    @pytest.mark.asyncio
    async def test_daily_ceiling_scenario(self, orchestrator, stored_image, fake_backends):
        """Calls 1-3 succeed, usage then reads remaining=0, call 4 is refused."""
        backend = fake_backends[ProviderIdentity.OPENAI]
        backend.replies = [NOT_IDENTIFIED_REPLY]

        with pytest.raises(NotIdentifiedError) as exc_info:
            await orchestrator.analyze(stored_image, None, ANONYMOUS)
        assert exc_info.value.result.identified is False
        assert exc_info.value.provider is ProviderIdentity.HOUSE_BLEND

        for _ in range(2):
            outcome = await orchestrator.analyze(stored_image, "HOUSE_BLEND", ANONYMOUS)
            assert outcome.result.identified is True
            assert outcome.provider is ProviderIdentity.HOUSE_BLEND
            assert outcome.saved_id is None

        usage = await orchestrator.get_usage(ANONYMOUS)
        assert (usage.used, usage.limit, usage.remaining) == (3, 3, 0)

        with pytest.raises(QuotaExceededError):
            await orchestrator.analyze(stored_image, None, ANONYMOUS)
        # Refused before any outbound call.
        assert len(backend.calls) == 3
        assert all(call["credential"] == PLATFORM_KEY for call in backend.calls)

    @pytest.mark.asyncio
    async def test_anonymous_identity_is_per_address(self, orchestrator, stored_image):
        for _ in range(3):
            await orchestrator.analyze(stored_image, None, ANONYMOUS)
        other = Caller(address="198.51.100.99")
        assert (await orchestrator.get_usage(other)).remaining == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failure,expected", [
        ("not json at all", MalformedResponseError),
        (ConnectionResetError("peer reset"), UpstreamFailureError),
        (RateLimitedError(retry_after=30), RateLimitedError),
    ])
    async def test_failures_are_not_metered(self, orchestrator, stored_image, fake_backends, failure, expected):
        fake_backends[ProviderIdentity.OPENAI].replies = [failure]
        with pytest.raises(expected):
            await orchestrator.analyze(stored_image, None, ANONYMOUS)
        assert (await orchestrator.get_usage(ANONYMOUS)).used == 0

    @pytest.mark.asyncio
    async def test_timeout_is_upstream_failure_and_not_metered(
        self, tmp_path, registry, credential_store, ledger, image_store, session_factory,
        stored_image, fake_backends,
    ):
        settings = make_settings(tmp_path, analysis_timeout_seconds=0.05)
        orchestrator = AnalysisOrchestrator(settings, registry, credential_store, ledger, image_store, session_factory)
        fake_backends[ProviderIdentity.OPENAI].delay = 1.0

        with pytest.raises(UpstreamFailureError) as exc_info:
            await orchestrator.analyze(stored_image, None, ANONYMOUS)
        assert exc_info.value.context["timeout_seconds"] == 0.05
        assert (await orchestrator.get_usage(ANONYMOUS)).used == 0

    @pytest.mark.asyncio
    async def test_lost_metering_race_degrades(self, orchestrator, stored_image, ledger, fake_backends, monkeypatch):
        """Another request takes the last slot while this analysis is running."""
        identity = orchestrator.quota_identity(ANONYMOUS)
        await ledger.record_usage(identity)
        await ledger.record_usage(identity)

        async def competing_request(*args):
            await ledger.record_usage(identity)
            return IDENTIFIED_REPLY

        monkeypatch.setattr(fake_backends[ProviderIdentity.OPENAI], "_request_analysis", competing_request)
        outcome = await orchestrator.analyze(stored_image, None, ANONYMOUS)

        assert outcome.result.identified is True
        assert outcome.metering_degraded is True
        assert (await ledger.check_usage(identity)).used == 3

    @pytest.mark.asyncio
    async def test_ledger_outage_degrades(self, orchestrator, stored_image, ledger):
        from beangate.exceptions import DatabaseError

        with patch.object(ledger, "record_usage", AsyncMock(side_effect=DatabaseError())):
            outcome = await orchestrator.analyze(stored_image, None, ANONYMOUS)
        assert outcome.result.identified is True
        assert outcome.metering_degraded is True

    @pytest.mark.asyncio
    async def test_unconfigured_house_blend(
        self, tmp_path, fake_backends, credential_store, ledger, image_store, session_factory, stored_image,
    ):
        settings = make_settings(tmp_path, openai_api_key=None)
        registry = ProviderRegistry(settings, backends=fake_backends)
        orchestrator = AnalysisOrchestrator(settings, registry, credential_store, ledger, image_store, session_factory)
        with pytest.raises(ConfigurationError):
            await orchestrator.analyze(stored_image, None, ANONYMOUS)

    @pytest.mark.asyncio
    async def test_unknown_image(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.analyze("2026/01/01/nothing.jpg", None, ANONYMOUS)


class TestKeyedProviders:

    @pytest.mark.asyncio
    async def test_missing_then_saved_credential_scenario(self, orchestrator, credential_store, stored_image, fake_backends):
        backend = fake_backends[ProviderIdentity.CLAUDE]
        with pytest.raises(MissingCredentialError):
            await orchestrator.analyze(stored_image, "CLAUDE", SIGNED_IN)
        assert backend.calls == []

        await credential_store.save("user-1", "CLAUDE", CLAUDE_KEY)
        outcome = await orchestrator.analyze(stored_image, "CLAUDE", SIGNED_IN)

        assert backend.calls[-1]["credential"] == CLAUDE_KEY
        assert outcome.provider is ProviderIdentity.CLAUDE
        assert outcome.provider_display_name == "Claude Sonnet 4"

    @pytest.mark.asyncio
    async def test_anonymous_caller_cannot_use_keyed_provider(self, orchestrator, stored_image):
        with pytest.raises(MissingCredentialError):
            await orchestrator.analyze(stored_image, "OPENAI", ANONYMOUS)

    @pytest.mark.asyncio
    async def test_keyed_analysis_is_not_metered(self, orchestrator, credential_store, stored_image):
        await credential_store.save("user-1", "OPENAI", OPENAI_KEY)
        for _ in range(12):
            await orchestrator.analyze(stored_image, "OPENAI", SIGNED_IN)
        assert (await orchestrator.get_usage(SIGNED_IN)).used == 0

    @pytest.mark.asyncio
    async def test_unknown_provider(self, orchestrator, stored_image):
        with pytest.raises(UnknownProviderError):
            await orchestrator.analyze(stored_image, "COPILOT", SIGNED_IN)

    @pytest.mark.asyncio
    async def test_tampered_credential(self, orchestrator, credential_store, session_factory, stored_image):
        from sqlalchemy import select
        from beangate.models.credential import ProviderCredential

        await credential_store.save("user-1", "OPENAI", OPENAI_KEY)
        async with session_factory() as session:
            row = (await session.execute(select(ProviderCredential))).scalar_one()
            row.iv = ("00" if row.iv[:2] != "00" else "11") + row.iv[2:]
            await session.commit()

        with pytest.raises(IntegrityError):
            await orchestrator.analyze(stored_image, "OPENAI", SIGNED_IN)

    @pytest.mark.asyncio
    async def test_preferred_provider_used_by_default(self, orchestrator, credential_store, stored_image, fake_backends):
        await credential_store.save("user-1", "CLAUDE", CLAUDE_KEY)
        await credential_store.set_preferred("user-1", "CLAUDE")

        outcome = await orchestrator.analyze(stored_image, None, SIGNED_IN)
        assert outcome.provider is ProviderIdentity.CLAUDE
        assert fake_backends[ProviderIdentity.OPENAI].calls == []

    @pytest.mark.asyncio
    async def test_blank_provider_means_default(self, orchestrator, stored_image):
        outcome = await orchestrator.analyze(stored_image, "  ", SIGNED_IN)
        assert outcome.provider is ProviderIdentity.HOUSE_BLEND


class TestPersistence:

    @pytest.mark.asyncio
    async def test_authenticated_result_is_saved(self, orchestrator, stored_image):
        outcome = await orchestrator.analyze(stored_image, None, SIGNED_IN)
        assert outcome.saved_id is not None

        record = await orchestrator.get_record("user-1", outcome.saved_id)
        assert record.provider == "HOUSE_BLEND"
        assert record.bean_type == "Arabica"
        assert record.roast_level == "MEDIUM_DARK"
        assert record.brew_parameters["espresso"]["yield"] == 36
        assert record.image_ref == stored_image

    @pytest.mark.asyncio
    async def test_authenticated_house_blend_is_metered_per_user(self, orchestrator, stored_image):
        await orchestrator.analyze(stored_image, None, SIGNED_IN)
        usage = await orchestrator.get_usage(SIGNED_IN)
        assert (usage.used, usage.limit) == (1, 10)
        assert (await orchestrator.get_usage(ANONYMOUS)).used == 0

    @pytest.mark.asyncio
    async def test_not_identified_is_not_saved(self, orchestrator, stored_image, fake_backends):
        fake_backends[ProviderIdentity.OPENAI].replies = [NOT_IDENTIFIED_REPLY]
        with pytest.raises(NotIdentifiedError):
            await orchestrator.analyze(stored_image, None, SIGNED_IN)
        assert await orchestrator.history("user-1") == []
        assert (await orchestrator.get_usage(SIGNED_IN)).used == 1

    @pytest.mark.asyncio
    async def test_persistence_failure_is_tolerated(self, orchestrator, stored_image, monkeypatch):
        broken = MagicMock(side_effect=OperationalError("INSERT", {}, Exception("disk full")))
        monkeypatch.setattr(orchestrator, "session_factory", broken)

        outcome = await orchestrator.analyze(stored_image, None, SIGNED_IN)
        assert outcome.result.identified is True
        assert outcome.saved_id is None
        broken.assert_called_once()

    @pytest.mark.asyncio
    async def test_anonymous_result_is_not_saved(self, orchestrator, stored_image):
        outcome = await orchestrator.analyze(stored_image, None, ANONYMOUS)
        assert outcome.saved_id is None

    @pytest.mark.asyncio
    async def test_history_newest_first_and_owner_scoped(self, orchestrator, stored_image):
        first = await orchestrator.analyze(stored_image, None, SIGNED_IN)
        await asyncio.sleep(0.01)
        second = await orchestrator.analyze(stored_image, None, SIGNED_IN)
        await orchestrator.analyze(stored_image, None, Caller(user_id="user-2"))

        history = await orchestrator.history("user-1")
        assert [r.id for r in history] == [second.saved_id, first.saved_id]
        assert len(await orchestrator.history("user-1", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_other_users_record_is_not_found(self, orchestrator, stored_image):
        outcome = await orchestrator.analyze(stored_image, None, SIGNED_IN)
        with pytest.raises(NotFoundError):
            await orchestrator.get_record("user-2", outcome.saved_id)
        with pytest.raises(NotFoundError):
            await orchestrator.get_record("user-1", uuid.uuid4())

    @pytest.mark.asyncio
    async def test_link_coffee(self, orchestrator, stored_image):
        outcome = await orchestrator.analyze(stored_image, None, SIGNED_IN)
        record = await orchestrator.link_coffee("user-1", outcome.saved_id, "coffee-77")
        assert record.coffee_id == "coffee-77"
        assert (await orchestrator.get_record("user-1", outcome.saved_id)).coffee_id == "coffee-77"

        with pytest.raises(NotFoundError):
            await orchestrator.link_coffee("user-2", outcome.saved_id, "coffee-78")


class TestUsage:

    @pytest.mark.asyncio
    async def test_fresh_caller(self, orchestrator):
        usage = await orchestrator.get_usage(ANONYMOUS)
        assert (usage.used, usage.limit, usage.remaining) == (0, 3, 3)

    @pytest.mark.asyncio
    async def test_quota_identity(self, orchestrator):
        assert orchestrator.quota_identity(SIGNED_IN) == QuotaIdentity.for_user("user-1")
        assert orchestrator.quota_identity(ANONYMOUS).kind == "address"
