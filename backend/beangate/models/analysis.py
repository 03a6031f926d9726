"""
BeanGate Backend: Bean Analysis SQLAlchemy Model
==================================================

What:  ORM model for `bean_analyses`, the saved analyses of authenticated
       users.
How:   The scalar result fields get their own columns; list and nested fields
       (observations, tasting notes, brew parameters, ...) are JSON columns.
       A record is immutable once written, except for `coffee_id`, the link to
       the user's coffee catalog entry.

Index on (owner_user_id, created_at DESC):
    Serves the history query "my most recent analyses".
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from beangate.database import Base


class BeanAnalysis(Base):
    __tablename__ = "bean_analyses"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    owner_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    image_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="Provider the caller selected (HOUSE_BLEND stays HOUSE_BLEND)",
    )

    # ── Result fields ─────────────────────────────────────────────────────
    identified: Mapped[bool] = mapped_column(Boolean, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    brand_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    coffee_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    bean_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    possible_origin: Mapped[str | None] = mapped_column(String(255), nullable=True)
    roast_level: Mapped[str | None] = mapped_column(String(32), nullable=True)
    roast_level_confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    flavor_profile: Mapped[str | None] = mapped_column(Text, nullable=True)
    weight: Mapped[str | None] = mapped_column(String(64), nullable=True)
    observations: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    tasting_notes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    suggested_brew_methods: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    tasting_notes_likely: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    warnings: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    brew_parameters: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    coffee_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="Catalog entry this analysis was linked to, if any",
    )
    analyzed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return (
            f"<BeanAnalysis(id={self.id}, provider='{self.provider}', "
            f"identified={self.identified}, created_at='{self.created_at}')>"
        )


Index(
    "idx_bean_analyses_owner_created",
    BeanAnalysis.owner_user_id,
    BeanAnalysis.created_at.desc(),
)
