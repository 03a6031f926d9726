"""
BeanGate Backend: Usage Counter SQLAlchemy Model
==================================================

What:  ORM model for the `usage_counters` table that backs the free-tier quota.
How:   One row per (identity_kind, identity_value, day). `count` only ever
       increments, and only through QuotaLedger's conditional upsert.
       identity_value is a user id for authenticated callers and a SHA-256 hex
       digest of the network address for anonymous ones; raw addresses are
       never stored.

Retention:
    Rows older than USAGE_RETENTION_DAYS are deleted by the ledger sweep.
    The `day` index serves that range delete.
"""

import uuid
from datetime import date

from sqlalchemy import Date, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from beangate.database import Base


class UsageCounter(Base):
    __tablename__ = "usage_counters"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    identity_kind: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        comment="'user' or 'address'",
    )
    identity_value: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="User id, or hex digest of the caller address",
    )
    day: Mapped[date] = mapped_column(Date, nullable=False, comment="UTC calendar day")
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("identity_kind", "identity_value", "day", name="uq_usage_counters_identity_day"),
        Index("idx_usage_counters_day", "day"),
    )

    def __repr__(self) -> str:
        return f"<UsageCounter(kind='{self.identity_kind}', day={self.day}, count={self.count})>"
