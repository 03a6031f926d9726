"""
BeanGate Backend: Credential Store Tests
==========================================

What we test:
    ✅ save encrypts (no plaintext at rest), re-save replaces, list masks
    ✅ Concurrent first saves and preference writes upsert one row
    ✅ Format checks and House Blend rejection
    ✅ get_decrypted bumps last_used_at; tampered rows → IntegrityError
    ✅ Connection tests record is_valid
    ✅ Preferred provider: needs a key, reset on delete
"""

import asyncio

import pytest
from sqlalchemy import select

from beangate.exceptions import (
    IntegrityError,
    MissingCredentialError,
    UnknownProviderError,
    ValidationError,
)
from beangate.models.credential import ProviderCredential, ProviderPreference
from beangate.providers.identity import ProviderIdentity

from conftest import CLAUDE_KEY, GEMINI_KEY, OPENAI_KEY


async def stored_rows(session_factory):
    async with session_factory() as session:
        return (await session.execute(select(ProviderCredential))).scalars().all()


class TestSave:

    @pytest.mark.asyncio
    async def test_save_encrypts_at_rest(self, credential_store, session_factory):
        summary = await credential_store.save("user-1", "openai", OPENAI_KEY)

        assert summary.provider is ProviderIdentity.OPENAI
        assert summary.is_configured is True
        assert summary.is_valid is True
        assert summary.masked_key == "sk-a" + "*" * 20 + "aaaa"

        rows = await stored_rows(session_factory)
        assert len(rows) == 1
        assert OPENAI_KEY not in (rows[0].ciphertext + rows[0].iv + rows[0].tag)

    @pytest.mark.asyncio
    async def test_resave_replaces_single_row(self, credential_store, session_factory):
        await credential_store.save("user-1", "OPENAI", OPENAI_KEY)
        replacement = "sk-" + "r" * 45
        await credential_store.save("user-1", "OPENAI", replacement)

        rows = await stored_rows(session_factory)
        assert len(rows) == 1
        assert await credential_store.get_decrypted("user-1", "OPENAI") == replacement

    @pytest.mark.asyncio
    async def test_surrounding_whitespace_is_stripped(self, credential_store):
        await credential_store.save("user-1", "GEMINI", f"  {GEMINI_KEY}\n")
        assert await credential_store.get_decrypted("user-1", "GEMINI") == GEMINI_KEY

    @pytest.mark.asyncio
    @pytest.mark.parametrize("provider,key", [
        ("OPENAI", "sk-tooshort"),
        ("OPENAI", CLAUDE_KEY[:30]),
        ("CLAUDE", OPENAI_KEY),
        ("GEMINI", "not-a-google-key-but-long-enough-0000"),
    ])
    async def test_bad_format_rejected(self, credential_store, session_factory, provider, key):
        with pytest.raises(ValidationError) as exc_info:
            await credential_store.save("user-1", provider, key)
        assert key not in exc_info.value.message
        assert await stored_rows(session_factory) == []

    @pytest.mark.asyncio
    async def test_house_blend_takes_no_key(self, credential_store):
        with pytest.raises(ValidationError):
            await credential_store.save("user-1", "HOUSE_BLEND", OPENAI_KEY)

    @pytest.mark.asyncio
    async def test_unknown_provider(self, credential_store):
        with pytest.raises(UnknownProviderError):
            await credential_store.save("user-1", "MISTRAL", OPENAI_KEY)

    @pytest.mark.asyncio
    async def test_concurrent_first_saves_share_one_row(self, credential_store, session_factory):
        replacement = "sk-" + "r" * 45
        outcomes = await asyncio.gather(
            credential_store.save("user-1", "OPENAI", OPENAI_KEY),
            credential_store.save("user-1", "OPENAI", replacement),
            return_exceptions=True,
        )
        assert [o.is_configured for o in outcomes] == [True, True]

        rows = await stored_rows(session_factory)
        assert len(rows) == 1
        assert await credential_store.get_decrypted("user-1", "OPENAI") in (OPENAI_KEY, replacement)

    @pytest.mark.asyncio
    async def test_resave_keeps_last_used_and_revalidates(self, credential_store, session_factory):
        await credential_store.save("user-1", "CLAUDE", CLAUDE_KEY)
        await credential_store.get_decrypted("user-1", "CLAUDE")
        async with session_factory() as session:
            row = (await session.execute(select(ProviderCredential))).scalar_one()
            row.is_valid = False
            await session.commit()

        summary = await credential_store.save("user-1", "CLAUDE", CLAUDE_KEY)
        assert summary.last_used_at is not None

        rows = await stored_rows(session_factory)
        assert len(rows) == 1
        assert rows[0].is_valid is True
        assert rows[0].updated_at >= rows[0].created_at


class TestListAndDecrypt:

    @pytest.mark.asyncio
    async def test_list_covers_every_keyed_provider(self, credential_store):
        await credential_store.save("user-1", "CLAUDE", CLAUDE_KEY)
        summaries = await credential_store.list("user-1")

        assert [s.provider for s in summaries] == [
            ProviderIdentity.OPENAI,
            ProviderIdentity.CLAUDE,
            ProviderIdentity.GEMINI,
        ]
        openai_summary, claude_summary, _ = summaries
        assert openai_summary.is_configured is False
        assert openai_summary.masked_key is None
        assert claude_summary.is_configured is True
        assert claude_summary.masked_key.startswith("sk-a")
        assert CLAUDE_KEY not in claude_summary.masked_key

    @pytest.mark.asyncio
    async def test_users_are_isolated(self, credential_store):
        await credential_store.save("user-1", "OPENAI", OPENAI_KEY)
        assert await credential_store.get_decrypted("user-2", "OPENAI") is None
        assert all(not s.is_configured for s in await credential_store.list("user-2"))

    @pytest.mark.asyncio
    async def test_get_decrypted_bumps_last_used(self, credential_store):
        await credential_store.save("user-1", "OPENAI", OPENAI_KEY)
        before = (await credential_store.list("user-1"))[0]
        assert before.last_used_at is None

        assert await credential_store.get_decrypted("user-1", ProviderIdentity.OPENAI) == OPENAI_KEY
        after = (await credential_store.list("user-1"))[0]
        assert after.last_used_at is not None

    @pytest.mark.asyncio
    async def test_tampered_row(self, credential_store, session_factory):
        await credential_store.save("user-1", "OPENAI", OPENAI_KEY)
        async with session_factory() as session:
            row = (await session.execute(select(ProviderCredential))).scalar_one()
            row.tag = ("00" if row.tag[:2] != "00" else "11") + row.tag[2:]
            await session.commit()

        with pytest.raises(IntegrityError):
            await credential_store.get_decrypted("user-1", "OPENAI")

        summary = (await credential_store.list("user-1"))[0]
        assert summary.is_configured is True
        assert summary.is_valid is False
        assert summary.masked_key is None


class TestDelete:

    @pytest.mark.asyncio
    async def test_delete(self, credential_store):
        await credential_store.save("user-1", "GEMINI", GEMINI_KEY)
        assert await credential_store.delete("user-1", "GEMINI") is True
        assert await credential_store.get_decrypted("user-1", "GEMINI") is None
        assert await credential_store.delete("user-1", "GEMINI") is False

    @pytest.mark.asyncio
    async def test_delete_resets_matching_preference(self, credential_store):
        await credential_store.save("user-1", "CLAUDE", CLAUDE_KEY)
        await credential_store.set_preferred("user-1", "CLAUDE")
        await credential_store.delete("user-1", "CLAUDE")
        assert await credential_store.get_preferred("user-1") is ProviderIdentity.HOUSE_BLEND

    @pytest.mark.asyncio
    async def test_delete_keeps_other_preference(self, credential_store):
        await credential_store.save("user-1", "CLAUDE", CLAUDE_KEY)
        await credential_store.save("user-1", "OPENAI", OPENAI_KEY)
        await credential_store.set_preferred("user-1", "CLAUDE")
        await credential_store.delete("user-1", "OPENAI")
        assert await credential_store.get_preferred("user-1") is ProviderIdentity.CLAUDE


class TestConnectionTest:

    @pytest.mark.asyncio
    async def test_valid_key(self, credential_store):
        await credential_store.save("user-1", "OPENAI", OPENAI_KEY)
        result = await credential_store.test("user-1", "OPENAI")
        assert result.valid is True
        assert (await credential_store.list("user-1"))[0].is_valid is True

    @pytest.mark.asyncio
    async def test_rejected_key_marked_invalid(self, credential_store, fake_backends):
        await credential_store.save("user-1", "OPENAI", OPENAI_KEY)
        fake_backends[ProviderIdentity.OPENAI].ping_ok = False

        result = await credential_store.test("user-1", "OPENAI")
        assert result.valid is False
        assert OPENAI_KEY not in result.message
        assert (await credential_store.list("user-1"))[0].is_valid is False

        # Saving again resets the flag.
        await credential_store.save("user-1", "OPENAI", OPENAI_KEY)
        assert (await credential_store.list("user-1"))[0].is_valid is True

    @pytest.mark.asyncio
    async def test_nothing_stored(self, credential_store):
        with pytest.raises(MissingCredentialError):
            await credential_store.test("user-1", "CLAUDE")


class TestPreference:

    @pytest.mark.asyncio
    async def test_default_is_house_blend(self, credential_store):
        assert await credential_store.get_preferred("new-user") is ProviderIdentity.HOUSE_BLEND

    @pytest.mark.asyncio
    async def test_keyed_provider_needs_key(self, credential_store):
        with pytest.raises(MissingCredentialError):
            await credential_store.set_preferred("user-1", "GEMINI")
        await credential_store.save("user-1", "GEMINI", GEMINI_KEY)
        assert await credential_store.set_preferred("user-1", "gemini") is ProviderIdentity.GEMINI
        assert await credential_store.get_preferred("user-1") is ProviderIdentity.GEMINI

    @pytest.mark.asyncio
    async def test_house_blend_always_allowed(self, credential_store):
        assert await credential_store.set_preferred("user-1", "HOUSE_BLEND") is ProviderIdentity.HOUSE_BLEND

    @pytest.mark.asyncio
    async def test_concurrent_preference_writes(self, credential_store, session_factory):
        await credential_store.save("user-1", "CLAUDE", CLAUDE_KEY)
        outcomes = await asyncio.gather(
            credential_store.set_preferred("user-1", "CLAUDE"),
            credential_store.set_preferred("user-1", "HOUSE_BLEND"),
            return_exceptions=True,
        )
        assert set(outcomes) == {ProviderIdentity.CLAUDE, ProviderIdentity.HOUSE_BLEND}

        async with session_factory() as session:
            rows = (await session.execute(select(ProviderPreference))).scalars().all()
        assert len(rows) == 1
        assert await credential_store.get_preferred("user-1") in outcomes

    @pytest.mark.asyncio
    async def test_preference_can_change(self, credential_store):
        await credential_store.save("user-1", "GEMINI", GEMINI_KEY)
        await credential_store.set_preferred("user-1", "GEMINI")
        await credential_store.set_preferred("user-1", "HOUSE_BLEND")
        assert await credential_store.get_preferred("user-1") is ProviderIdentity.HOUSE_BLEND
