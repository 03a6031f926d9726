"""
BeanGate Backend: Credential Store
====================================

What:  Per-user management of stored provider API keys and the preferred
       provider.
How:   Keys pass through CredentialVault before they touch the database and
       come back out only through get_decrypted(). Listing shows masked keys.
       Each operation runs in its own short session and commits on success.
Who:   Called by the /api/keys routes and by the AnalysisOrchestrator
       (credential resolution, preferred provider).

Operation summary:
    save(user, provider, key)     → validate format, encrypt, upsert, is_valid=True
    delete(user, provider)        → remove; reset preference if it pointed there
    list(user)                    → masked summary per provider + preference
    test(user, provider)          → live connection test; stores is_valid
    get_decrypted(user, provider) → plaintext or None; bumps last_used_at
    set_preferred / get_preferred
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Union

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from beangate.database import dialect_insert
from beangate.exceptions import (
    DatabaseError,
    IntegrityError,
    MissingCredentialError,
    ValidationError,
)
from beangate.models.credential import ProviderCredential, ProviderPreference
from beangate.providers.identity import BACKEND_IDENTITIES, ProviderIdentity
from beangate.providers.registry import ProviderRegistry, parse_identity
from beangate.services.credential_vault import CredentialVault

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CredentialSummary:
    provider: ProviderIdentity
    is_configured: bool
    is_valid: bool
    masked_key: Optional[str]
    last_used_at: Optional[datetime]


@dataclass(frozen=True)
class CredentialTestResult:
    valid: bool
    message: str


class CredentialStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: CredentialVault,
        registry: ProviderRegistry,
    ):
        self.session_factory = session_factory
        self.vault = vault
        self.registry = registry

    def _keyed_provider(self, provider: Union[ProviderIdentity, str]) -> ProviderIdentity:
        identity = parse_identity(provider)
        if not self.registry.requires_user_credential(identity):
            raise ValidationError(
                message=f"{identity.value} does not use a personal API key",
                field="provider",
            )
        return identity

    async def _find(self, session: AsyncSession, user_id: str, identity: ProviderIdentity) -> Optional[ProviderCredential]:
        result = await session.execute(
            select(ProviderCredential).where(
                ProviderCredential.user_id == user_id,
                ProviderCredential.provider == identity.value,
            )
        )
        return result.scalar_one_or_none()

    async def save(self, user_id: str, provider: Union[ProviderIdentity, str], plaintext: str) -> CredentialSummary:
        """
        Encrypts and stores a key, replacing any previous one.
        Raises ValidationError when the provider takes no key or the key does
        not look like one of that provider's keys.
        """
        identity = self._keyed_provider(provider)
        candidate = (plaintext or "").strip()
        client = self.registry.resolve(identity)
        if not client.validate_key_format(candidate):
            raise ValidationError(
                message=f"Invalid API key format for {client.display_name}",
                field="api_key",
            )

        sealed = self.vault.encrypt(candidate)
        now = datetime.now(timezone.utc)
        try:
            async with self.session_factory() as session:
                insert = dialect_insert(session)
                stmt = (
                    insert(ProviderCredential)
                    .values(
                        user_id=user_id,
                        provider=identity.value,
                        ciphertext=sealed.ciphertext,
                        iv=sealed.iv,
                        tag=sealed.tag,
                        is_valid=True,
                    )
                    # Concurrent first saves collapse onto one row.
                    .on_conflict_do_update(
                        index_elements=[ProviderCredential.user_id, ProviderCredential.provider],
                        set_={
                            "ciphertext": sealed.ciphertext,
                            "iv": sealed.iv,
                            "tag": sealed.tag,
                            "is_valid": True,
                            "updated_at": now,
                        },
                    )
                    .returning(ProviderCredential.last_used_at)
                )
                last_used_at = (await session.execute(stmt)).scalar_one()
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Saving %s credential failed: %s", identity.value, type(e).__name__)
            raise DatabaseError(context={"operation": "save_credential"}) from e

        masked = self.vault.mask(candidate)
        logger.info("Stored %s credential for user %s (%s)", identity.value, user_id, masked)
        return CredentialSummary(
            provider=identity,
            is_configured=True,
            is_valid=True,
            masked_key=masked,
            last_used_at=last_used_at,
        )

    async def delete(self, user_id: str, provider: Union[ProviderIdentity, str]) -> bool:
        """Removes the key. Returns False when none was stored."""
        identity = self._keyed_provider(provider)
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    delete(ProviderCredential).where(
                        ProviderCredential.user_id == user_id,
                        ProviderCredential.provider == identity.value,
                    )
                )
                preference = await session.get(ProviderPreference, user_id)
                if preference is not None and preference.preferred_provider == identity.value:
                    preference.preferred_provider = ProviderIdentity.HOUSE_BLEND.value
                    logger.info("Preference for user %s reset to HOUSE_BLEND", user_id)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Deleting %s credential failed: %s", identity.value, type(e).__name__)
            raise DatabaseError(context={"operation": "delete_credential"}) from e
        removed = (result.rowcount or 0) > 0
        if removed:
            logger.info("Deleted %s credential for user %s", identity.value, user_id)
        return removed

    async def list(self, user_id: str) -> List[CredentialSummary]:
        """
        One summary per keyed provider, in catalog order. Rows that fail to
        decrypt list as configured but invalid, with no mask.
        """
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(ProviderCredential).where(ProviderCredential.user_id == user_id)
                )
                rows = {row.provider: row for row in result.scalars().all()}
        except SQLAlchemyError as e:
            logger.error("Listing credentials failed: %s", type(e).__name__)
            raise DatabaseError(context={"operation": "list_credentials"}) from e

        summaries = []
        for identity in BACKEND_IDENTITIES:
            row = rows.get(identity.value)
            if row is None:
                summaries.append(CredentialSummary(identity, False, False, None, None))
                continue
            try:
                masked = self.vault.mask(self.vault.decrypt(row.ciphertext, row.iv, row.tag))
                is_valid = row.is_valid
            except IntegrityError:
                masked, is_valid = None, False
            summaries.append(CredentialSummary(identity, True, is_valid, masked, row.last_used_at))
        return summaries

    async def get_decrypted(self, user_id: str, provider: Union[ProviderIdentity, str]) -> Optional[str]:
        """
        Plaintext key or None when nothing is stored. Updates last_used_at.
        IntegrityError propagates when the stored key fails verification.
        """
        identity = parse_identity(provider)
        try:
            async with self.session_factory() as session:
                row = await self._find(session, user_id, identity)
                if row is None:
                    return None
                plaintext = self.vault.decrypt(row.ciphertext, row.iv, row.tag)
                row.last_used_at = datetime.now(timezone.utc)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Loading %s credential failed: %s", identity.value, type(e).__name__)
            raise DatabaseError(context={"operation": "get_credential"}) from e
        return plaintext

    async def test(self, user_id: str, provider: Union[ProviderIdentity, str]) -> CredentialTestResult:
        """Runs one live call with the stored key and records whether it worked."""
        identity = self._keyed_provider(provider)
        plaintext = await self.get_decrypted(user_id, identity)
        if plaintext is None:
            raise MissingCredentialError(identity.value, message=f"No {identity.value} API key is stored")

        client = self.registry.resolve(identity)
        valid = await client.test_connection(plaintext)
        try:
            async with self.session_factory() as session:
                row = await self._find(session, user_id, identity)
                if row is not None:
                    row.is_valid = valid
                    await session.commit()
        except SQLAlchemyError as e:
            logger.error("Recording %s test result failed: %s", identity.value, type(e).__name__)
            raise DatabaseError(context={"operation": "test_credential"}) from e

        logger.info("%s credential test for user %s: %s", identity.value, user_id, "valid" if valid else "invalid")
        if valid:
            return CredentialTestResult(valid=True, message=f"{client.display_name} API key is working")
        return CredentialTestResult(valid=False, message=f"{client.display_name} rejected the API key or is unreachable")

    async def get_preferred(self, user_id: str) -> ProviderIdentity:
        try:
            async with self.session_factory() as session:
                preference = await session.get(ProviderPreference, user_id)
        except SQLAlchemyError as e:
            logger.error("Loading provider preference failed: %s", type(e).__name__)
            raise DatabaseError(context={"operation": "get_preferred"}) from e
        if preference is None:
            return ProviderIdentity.HOUSE_BLEND
        try:
            return ProviderIdentity(preference.preferred_provider)
        except ValueError:
            logger.warning("Ignoring unknown stored preference %r for user %s", preference.preferred_provider, user_id)
            return ProviderIdentity.HOUSE_BLEND

    async def set_preferred(self, user_id: str, provider: Union[ProviderIdentity, str]) -> ProviderIdentity:
        """Non-House-Blend providers need a stored key first (MissingCredentialError)."""
        identity = parse_identity(provider)
        try:
            async with self.session_factory() as session:
                if self.registry.requires_user_credential(identity):
                    if await self._find(session, user_id, identity) is None:
                        raise MissingCredentialError(identity.value)
                insert = dialect_insert(session)
                await session.execute(
                    insert(ProviderPreference)
                    .values(user_id=user_id, preferred_provider=identity.value)
                    .on_conflict_do_update(
                        index_elements=[ProviderPreference.user_id],
                        set_={
                            "preferred_provider": identity.value,
                            "updated_at": datetime.now(timezone.utc),
                        },
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Saving provider preference failed: %s", type(e).__name__)
            raise DatabaseError(context={"operation": "set_preferred"}) from e
        logger.info("User %s now prefers %s", user_id, identity.value)
        return identity
