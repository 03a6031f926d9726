"""
BeanGate Backend: Quota Ledger
================================

What:  Daily usage counters for the free House Blend tier.
How:   One `usage_counters` row per (identity kind, identity value, UTC day).
       record_usage() is a single conditional upsert:

           INSERT ... VALUES (kind, value, day, 1)
           ON CONFLICT (identity_kind, identity_value, day)
           DO UPDATE SET count = count + 1 WHERE count < :limit
           RETURNING count

       committed in its own transaction. No returned row means the ceiling
       was already reached, so concurrent requests can never push a counter
       past its limit.
Who:   Called by the AnalysisOrchestrator on the House Blend path only; the
       retention sweep runs as a background task started by the lifespan.

Identity:
    Authenticated callers are counted by user id. Anonymous callers are
    counted by the SHA-256 hex digest of their network address (HMAC-SHA256
    when ADDRESS_HASH_PEPPER is set). The raw address is never stored.
"""

import asyncio
import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from beangate.config import Settings
from beangate.database import dialect_insert
from beangate.exceptions import DatabaseError, QuotaExceededError, ValidationError
from beangate.models.usage import UsageCounter

logger = logging.getLogger(__name__)

USER_KIND = "user"
ADDRESS_KIND = "address"

# Width of the identity_value and user_id columns.
MAX_USER_ID_LENGTH = 64


@dataclass(frozen=True)
class QuotaIdentity:
    kind: str
    value: str

    @property
    def authenticated(self) -> bool:
        return self.kind == USER_KIND

    @classmethod
    def for_user(cls, user_id: str) -> "QuotaIdentity":
        return cls(kind=USER_KIND, value=user_id)

    @classmethod
    def for_address(cls, address: str, pepper: Optional[str] = None) -> "QuotaIdentity":
        if pepper:
            digest = hmac.new(pepper.encode("utf-8"), address.encode("utf-8"), hashlib.sha256).hexdigest()
        else:
            digest = hashlib.sha256(address.encode("utf-8")).hexdigest()
        return cls(kind=ADDRESS_KIND, value=digest)

    def __repr__(self) -> str:
        shown = self.value if self.authenticated else f"{self.value[:8]}..."
        return f"QuotaIdentity({self.kind}:{shown})"


def resolve_quota_identity(
    user_id: Optional[str],
    address: Optional[str],
    pepper: Optional[str] = None,
) -> QuotaIdentity:
    """User id wins; otherwise the hashed address. Neither → ValidationError."""
    if user_id:
        if len(user_id) > MAX_USER_ID_LENGTH:
            raise ValidationError(message=f"User id must be at most {MAX_USER_ID_LENGTH} characters")
        return QuotaIdentity.for_user(user_id)
    if address:
        return QuotaIdentity.for_address(address, pepper)
    raise ValidationError(message="Could not determine the caller's identity for usage metering")


@dataclass(frozen=True)
class UsageInfo:
    used: int
    limit: int
    remaining: int
    resets_at: datetime


def utc_day(now: Optional[datetime] = None) -> date:
    return (now or datetime.now(timezone.utc)).astimezone(timezone.utc).date()


def next_utc_midnight(now: Optional[datetime] = None) -> datetime:
    return datetime.combine(utc_day(now) + timedelta(days=1), time.min, tzinfo=timezone.utc)


class QuotaLedger:
    """
    Per-identity, per-day usage counter with a ceiling per identity kind.

    Each operation opens its own short session from `session_factory` and
    commits it, independent of any request transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: Settings):
        self.session_factory = session_factory
        self.settings = settings

    def limit_for(self, identity: QuotaIdentity) -> int:
        return self.settings.daily_limit_for(identity.authenticated)

    def _usage(self, identity: QuotaIdentity, used: int, now: Optional[datetime]) -> UsageInfo:
        limit = self.limit_for(identity)
        return UsageInfo(
            used=used,
            limit=limit,
            remaining=max(0, limit - used),
            resets_at=next_utc_midnight(now),
        )

    async def check_usage(self, identity: QuotaIdentity, now: Optional[datetime] = None) -> UsageInfo:
        """Today's usage snapshot. Read-only; a missing row means zero used."""
        day = utc_day(now)
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(UsageCounter.count).where(
                        UsageCounter.identity_kind == identity.kind,
                        UsageCounter.identity_value == identity.value,
                        UsageCounter.day == day,
                    )
                )
                used = result.scalar_one_or_none() or 0
        except SQLAlchemyError as e:
            logger.error("Usage lookup failed for %r: %s", identity, type(e).__name__)
            raise DatabaseError(context={"operation": "check_usage"}) from e
        return self._usage(identity, used, now)

    async def record_usage(self, identity: QuotaIdentity, now: Optional[datetime] = None) -> UsageInfo:
        """
        What:  Counts one analysis against today's ceiling.
        Raises QuotaExceededError when the ceiling was already reached at the
        moment of recording (including a ceiling of zero), DatabaseError on
        storage failure.
        """
        limit = self.limit_for(identity)
        resets_at = next_utc_midnight(now)
        if limit <= 0:
            raise QuotaExceededError(limit=limit, resets_at=resets_at, used=0)

        day = utc_day(now)
        try:
            async with self.session_factory() as session:
                insert = dialect_insert(session)
                stmt = (
                    insert(UsageCounter)
                    .values(
                        identity_kind=identity.kind,
                        identity_value=identity.value,
                        day=day,
                        count=1,
                    )
                    .on_conflict_do_update(
                        index_elements=[
                            UsageCounter.identity_kind,
                            UsageCounter.identity_value,
                            UsageCounter.day,
                        ],
                        set_={"count": UsageCounter.count + 1},
                        where=UsageCounter.count < limit,
                    )
                    .returning(UsageCounter.count)
                )
                result = await session.execute(stmt)
                new_count = result.scalar_one_or_none()
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Usage recording failed for %r: %s", identity, type(e).__name__)
            raise DatabaseError(context={"operation": "record_usage"}) from e

        if new_count is None:
            logger.info("Daily ceiling of %d reached for %r", limit, identity)
            raise QuotaExceededError(limit=limit, resets_at=resets_at)

        logger.debug("Recorded usage %d/%d for %r", new_count, limit, identity)
        return UsageInfo(used=new_count, limit=limit, remaining=max(0, limit - new_count), resets_at=resets_at)

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Deletes counters older than USAGE_RETENTION_DAYS. Returns rows removed."""
        cutoff = utc_day(now) - timedelta(days=self.settings.usage_retention_days)
        try:
            async with self.session_factory() as session:
                result = await session.execute(delete(UsageCounter).where(UsageCounter.day < cutoff))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Usage retention sweep failed: %s", type(e).__name__)
            raise DatabaseError(context={"operation": "purge_expired"}) from e
        removed = result.rowcount or 0
        if removed:
            logger.info("Purged %d usage counters older than %s", removed, cutoff.isoformat())
        return removed

    async def run_retention_sweep(self, interval_seconds: Optional[float] = None) -> None:
        """
        Background loop calling purge_expired() every interval. Failures are
        logged and the loop keeps going; cancellation ends it.
        """
        interval = interval_seconds or self.settings.usage_sweep_interval_seconds
        logger.info("Usage retention sweep started (every %ss, keep %d days)",
                    interval, self.settings.usage_retention_days)
        while True:
            try:
                await self.purge_expired()
            except Exception:
                logger.exception("Usage retention sweep iteration failed")
            await asyncio.sleep(interval)
