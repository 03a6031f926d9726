"""Create gateway tables

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

What:  Creates provider_credentials, provider_preferences, usage_counters and
       bean_analyses.
How:   Portable column types, so the same revision runs on PostgreSQL and
       SQLite. UUID primary keys are generated by the application.

Rollback: downgrade() drops all four tables (stored keys and usage history
are lost).
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "provider_credentials",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False,
                  comment="Owner, as supplied by the authentication layer"),
        sa.Column("provider", sa.String(32), nullable=False,
                  comment="ProviderIdentity value; never HOUSE_BLEND"),
        sa.Column("ciphertext", sa.Text(), nullable=False),
        sa.Column("iv", sa.String(32), nullable=False, comment="16-byte AES-GCM IV, hex"),
        sa.Column("tag", sa.String(32), nullable=False, comment="16-byte AES-GCM tag, hex"),
        sa.Column("is_valid", sa.Boolean(), nullable=False, server_default=sa.true(),
                  comment="Result of the most recent connection test"),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "provider", name="uq_provider_credentials_user_provider"),
    )
    op.create_index(
        "ix_provider_credentials_user_id", "provider_credentials", ["user_id"],
    )

    op.create_table(
        "provider_preferences",
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("preferred_provider", sa.String(32), nullable=False,
                  server_default=sa.text("'HOUSE_BLEND'")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "usage_counters",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("identity_kind", sa.String(16), nullable=False, comment="'user' or 'address'"),
        sa.Column("identity_value", sa.String(64), nullable=False,
                  comment="User id, or hex digest of the caller address"),
        sa.Column("day", sa.Date(), nullable=False, comment="UTC calendar day"),
        sa.Column("count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("identity_kind", "identity_value", "day",
                            name="uq_usage_counters_identity_day"),
    )
    # Range deletes by the retention sweep.
    op.create_index("idx_usage_counters_day", "usage_counters", ["day"])

    op.create_table(
        "bean_analyses",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_user_id", sa.String(64), nullable=False),
        sa.Column("image_ref", sa.String(255), nullable=False),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("identified", sa.Boolean(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("brand_name", sa.String(255), nullable=True),
        sa.Column("coffee_name", sa.String(255), nullable=True),
        sa.Column("bean_type", sa.String(255), nullable=True),
        sa.Column("possible_origin", sa.String(255), nullable=True),
        sa.Column("roast_level", sa.String(32), nullable=True),
        sa.Column("roast_level_confidence", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("flavor_profile", sa.Text(), nullable=True),
        sa.Column("weight", sa.String(64), nullable=True),
        sa.Column("observations", sa.JSON(), nullable=False),
        sa.Column("tasting_notes", sa.JSON(), nullable=False),
        sa.Column("suggested_brew_methods", sa.JSON(), nullable=False),
        sa.Column("tasting_notes_likely", sa.JSON(), nullable=False),
        sa.Column("warnings", sa.JSON(), nullable=False),
        sa.Column("brew_parameters", sa.JSON(), nullable=False),
        sa.Column("coffee_id", sa.String(64), nullable=True),
        sa.Column("analyzed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("id"),
    )
    # "My most recent analyses".
    op.create_index(
        "idx_bean_analyses_owner_created",
        "bean_analyses",
        ["owner_user_id", sa.text("created_at DESC")],
    )


def downgrade() -> None:
    op.drop_index("idx_bean_analyses_owner_created", table_name="bean_analyses")
    op.drop_table("bean_analyses")
    op.drop_index("idx_usage_counters_day", table_name="usage_counters")
    op.drop_table("usage_counters")
    op.drop_table("provider_preferences")
    op.drop_index("ix_provider_credentials_user_id", table_name="provider_credentials")
    op.drop_table("provider_credentials")
