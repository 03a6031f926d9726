"""
BeanGate Backend: Credential SQLAlchemy Models
================================================

What:  ORM models for the `provider_credentials` and `provider_preferences`
       tables.
How:   A ProviderCredential row holds one encrypted API key per
       (user_id, provider); ciphertext, IV and tag are hex strings produced by
       CredentialVault. ProviderPreference records which provider a user's
       analyses default to.
Who:   Read and written only through CredentialStore.

Column types are the SQLAlchemy generic ones (Uuid, DateTime(timezone=True))
so the same models run on PostgreSQL and on the SQLite test database.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from beangate.database import Base
from beangate.providers.identity import ProviderIdentity


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderCredential(Base):
    """
    One user-supplied API key, encrypted at rest.

    Lifecycle:
        1. Created on the user's first save for a provider
        2. Overwritten (new IV, new tag, is_valid reset) on every re-save
        3. is_valid updated by connection tests; last_used_at by analyses
        4. Deleted when the user removes the key
    """

    __tablename__ = "provider_credentials"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    user_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="Owner, as supplied by the authentication layer",
    )

    provider: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="ProviderIdentity value; never HOUSE_BLEND",
    )

    # ── Encrypted key material (hex) ──────────────────────────────────────
    ciphertext: Mapped[str] = mapped_column(Text, nullable=False)
    iv: Mapped[str] = mapped_column(String(32), nullable=False, comment="16-byte AES-GCM IV, hex")
    tag: Mapped[str] = mapped_column(String(32), nullable=False, comment="16-byte AES-GCM tag, hex")

    is_valid: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Result of the most recent connection test",
    )
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_provider_credentials_user_provider"),
    )

    def __repr__(self) -> str:
        # No key material, not even ciphertext.
        return (
            f"<ProviderCredential(user_id='{self.user_id}', provider='{self.provider}', "
            f"is_valid={self.is_valid})>"
        )


class ProviderPreference(Base):
    """A user's default provider. Absent row means HOUSE_BLEND."""

    __tablename__ = "provider_preferences"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    preferred_provider: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=ProviderIdentity.HOUSE_BLEND.value,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )
