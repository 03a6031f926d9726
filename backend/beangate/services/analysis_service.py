"""
BeanGate Backend: Analysis Orchestrator
=========================================

What:  The gateway's entry point: one coffee bag photo in, one analysis out.
How:   Composes the ProviderRegistry, CredentialStore, QuotaLedger and
       ImageStore. Holds no per-request state; every collaborator is injected
       at construction in the app lifespan.
Who:   Called by the /api/analyze and /api/keys/usage routes.

Orchestration Flow (POST /api/analyze):
    ┌───────────┐   ┌──────────────┐   ┌───────────┐   ┌──────────┐   ┌──────────┐
    │ Resolve   │──▶│ Credential   │──▶│ Load      │──▶│ Provider │──▶│ Meter &  │
    │ provider  │   │ or quota     │   │ image     │   │ call     │   │ persist  │
    └───────────┘   └──────────────┘   └───────────┘   └──────────┘   └──────────┘

    - Provider: explicit request, else the caller's preference, else HOUSE_BLEND
    - Keyed providers need an authenticated caller with a stored key; House
      Blend checks the daily ceiling before any outbound call
    - The provider call is bounded by ANALYSIS_TIMEOUT_SECONDS and cancelled
      on expiry (UpstreamFailureError, nothing metered)
    - Any returned answer (including "not a coffee bag") is metered on the
      House Blend path; a lost metering race or a ledger failure only sets
      metering_degraded
    - Identified results of authenticated callers are saved best-effort
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from beangate.config import Settings
from beangate.exceptions import (
    DatabaseError,
    MissingCredentialError,
    NotFoundError,
    NotIdentifiedError,
    QuotaExceededError,
    UpstreamFailureError,
)
from beangate.models.analysis import BeanAnalysis
from beangate.providers.identity import ProviderIdentity
from beangate.providers.registry import ProviderRegistry, parse_identity
from beangate.schemas.analysis import AnalysisResult
from beangate.services.credential_store import CredentialStore
from beangate.services.image_store import ImageStore
from beangate.services.quota_ledger import QuotaIdentity, QuotaLedger, UsageInfo, resolve_quota_identity

logger = logging.getLogger(__name__)

MAX_HISTORY = 100


@dataclass(frozen=True)
class Caller:
    """Who is asking: a user id from the auth layer, the network address, or both."""

    user_id: Optional[str] = None
    address: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return bool(self.user_id)


@dataclass(frozen=True)
class AnalysisOutcome:
    result: AnalysisResult
    provider: ProviderIdentity
    provider_display_name: str
    saved_id: Optional[uuid.UUID] = None
    metering_degraded: bool = False


class AnalysisOrchestrator:
    def __init__(
        self,
        settings: Settings,
        registry: ProviderRegistry,
        credentials: CredentialStore,
        ledger: QuotaLedger,
        images: ImageStore,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self.settings = settings
        self.registry = registry
        self.credentials = credentials
        self.ledger = ledger
        self.images = images
        self.session_factory = session_factory

    def quota_identity(self, caller: Caller) -> QuotaIdentity:
        pepper = self.settings.address_hash_pepper
        return resolve_quota_identity(
            caller.user_id,
            caller.address,
            pepper.get_secret_value() if pepper else None,
        )

    async def resolve_provider(
        self,
        provider: Union[ProviderIdentity, str, None],
        caller: Caller,
    ) -> ProviderIdentity:
        if isinstance(provider, str) and not provider.strip():
            provider = None
        if provider is not None:
            return parse_identity(provider)
        if caller.authenticated:
            return await self.credentials.get_preferred(caller.user_id)
        return ProviderIdentity.HOUSE_BLEND

    async def analyze(
        self,
        image_ref: str,
        provider: Union[ProviderIdentity, str, None],
        caller: Caller,
    ) -> AnalysisOutcome:
        """
        Runs one analysis end to end.

        Raises:
            UnknownProviderError, MissingCredentialError, IntegrityError,
            QuotaExceededError, NotFoundError (image), and every typed provider
            failure unchanged. NotIdentifiedError is raised after metering and
            carries the normalized result plus the metering flag.
        """
        identity = await self.resolve_provider(provider, caller)
        client = self.registry.resolve(identity)

        # ── Step 1: Credential (keyed providers) or quota (House Blend) ──
        credential: Optional[str] = None
        quota_identity: Optional[QuotaIdentity] = None
        if client.requires_user_credential:
            if not caller.authenticated:
                raise MissingCredentialError(
                    identity.value,
                    message=f"Sign in and add a {identity.value} API key to use {client.display_name}",
                )
            credential = await self.credentials.get_decrypted(caller.user_id, identity)
            if credential is None:
                raise MissingCredentialError(identity.value)
        else:
            quota_identity = self.quota_identity(caller)
            usage = await self.ledger.check_usage(quota_identity)
            if usage.remaining <= 0:
                logger.info("Rejecting House Blend analysis for %r: ceiling reached", quota_identity)
                raise QuotaExceededError(limit=usage.limit, resets_at=usage.resets_at, used=usage.used)

        # ── Step 2: Image ─────────────────────────────────────────────────
        image = await self.images.load(image_ref)

        # ── Step 3: Provider call ─────────────────────────────────────────
        timeout = self.settings.analysis_timeout_seconds
        not_identified: Optional[NotIdentifiedError] = None
        try:
            result = await asyncio.wait_for(
                client.analyze_image(image.to_data_url(), credential, image_ref),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("%s analysis timed out after %.1fs", identity.value, timeout)
            raise UpstreamFailureError(
                message="The analysis provider took too long to respond. Please try again.",
                context={"provider": identity.value, "timeout_seconds": timeout},
            ) from None
        except NotIdentifiedError as e:
            not_identified = e
            result = e.result

        # ── Step 4: Metering ──────────────────────────────────────────────
        metering_degraded = False
        if quota_identity is not None:
            metering_degraded = not await self._meter(quota_identity)

        if not_identified is not None:
            logger.info("%s found no coffee bag in %s", identity.value, image_ref)
            raise NotIdentifiedError(
                result,
                provider=identity,
                metering_degraded=metering_degraded,
            ) from None

        # ── Step 5: Persistence ───────────────────────────────────────────
        saved_id = None
        if caller.authenticated and result.identified:
            saved_id = await self._persist(caller.user_id, identity, result)

        return AnalysisOutcome(
            result=result,
            provider=identity,
            provider_display_name=client.display_name,
            saved_id=saved_id,
            metering_degraded=metering_degraded,
        )

    async def _meter(self, quota_identity: QuotaIdentity) -> bool:
        try:
            await self.ledger.record_usage(quota_identity)
            return True
        except QuotaExceededError:
            logger.warning("Usage for %r exceeded the ceiling during analysis; not recorded", quota_identity)
        except DatabaseError:
            logger.error("Usage for %r could not be recorded", quota_identity)
        return False

    async def _persist(
        self,
        user_id: str,
        provider: ProviderIdentity,
        result: AnalysisResult,
    ) -> Optional[uuid.UUID]:
        data = result.model_dump(mode="json", by_alias=True)
        record = BeanAnalysis(
            owner_user_id=user_id,
            image_ref=result.image_ref,
            provider=provider.value,
            identified=result.identified,
            confidence=result.confidence,
            brand_name=result.brand_name,
            coffee_name=result.coffee_name,
            bean_type=result.bean_type,
            possible_origin=result.possible_origin,
            roast_level=result.roast_level.value if result.roast_level else None,
            roast_level_confidence=result.roast_level_confidence,
            flavor_profile=result.flavor_profile,
            weight=result.weight,
            observations=data["observations"],
            tasting_notes=data["tasting_notes"],
            suggested_brew_methods=data["suggested_brew_methods"],
            tasting_notes_likely=data["tasting_notes_likely"],
            warnings=data["warnings"],
            brew_parameters=data["brew_parameters"],
            analyzed_at=result.analyzed_at,
        )
        try:
            async with self.session_factory() as session:
                session.add(record)
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Saving analysis for user %s failed; returning result unsaved", user_id)
            return None
        logger.info("Saved analysis %s for user %s", record.id, user_id)
        return record.id

    async def get_usage(self, caller: Caller) -> UsageInfo:
        return await self.ledger.check_usage(self.quota_identity(caller))

    # ── Saved analyses ────────────────────────────────────────────────────

    async def history(self, user_id: str, limit: int = 20) -> List[BeanAnalysis]:
        limit = max(1, min(limit, MAX_HISTORY))
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(BeanAnalysis)
                    .where(BeanAnalysis.owner_user_id == user_id)
                    .order_by(BeanAnalysis.created_at.desc())
                    .limit(limit)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Loading analysis history failed: %s", type(e).__name__)
            raise DatabaseError(context={"operation": "history"}) from e

    async def get_record(self, user_id: str, record_id: uuid.UUID) -> BeanAnalysis:
        """Records owned by someone else are reported as not found."""
        try:
            async with self.session_factory() as session:
                record = await session.get(BeanAnalysis, record_id)
        except SQLAlchemyError as e:
            logger.error("Loading analysis %s failed: %s", record_id, type(e).__name__)
            raise DatabaseError(context={"operation": "get_record"}) from e
        if record is None or record.owner_user_id != user_id:
            raise NotFoundError(resource="analysis", resource_id=str(record_id))
        return record

    async def link_coffee(self, user_id: str, record_id: uuid.UUID, coffee_id: str) -> BeanAnalysis:
        try:
            async with self.session_factory() as session:
                record = await session.get(BeanAnalysis, record_id)
                if record is None or record.owner_user_id != user_id:
                    raise NotFoundError(resource="analysis", resource_id=str(record_id))
                record.coffee_id = coffee_id
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Linking analysis %s failed: %s", record_id, type(e).__name__)
            raise DatabaseError(context={"operation": "link_coffee"}) from e
        logger.info("Linked analysis %s to coffee %s", record_id, coffee_id)
        return record
