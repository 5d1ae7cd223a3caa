"""Create flash offer, notification and rate limit tables.

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid() -> sa.types.TypeEngine:
    return sa.dialects.postgresql.UUID(as_uuid=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="customer"),
        sa.Column("last_latitude", sa.Float(), nullable=True),
        sa.Column("last_longitude", sa.Float(), nullable=True),
        sa.Column("location_updated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "venues",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("owner_id", _uuid(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("subscription_tier", sa.String(length=16), nullable=False, server_default="free"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"], name="fk_venues_owner_id_users", ondelete="SET NULL"),
    )

    op.create_table(
        "venue_favorites",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("venue_id", _uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_venue_favorites_user_id_users", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["venue_id"], ["venues.id"], name="fk_venue_favorites_venue_id_venues", ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "venue_id", name="uq_venue_favorites_user_venue"),
    )
    op.create_index("ix_venue_favorites_venue_id", "venue_favorites", ["venue_id"])

    op.create_table(
        "check_ins",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("venue_id", _uuid(), nullable=False),
        sa.Column("checked_in_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("checked_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_check_ins_user_id_users", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["venue_id"], ["venues.id"], name="fk_check_ins_venue_id_venues", ondelete="CASCADE"),
    )
    op.create_index("ix_check_ins_user_venue", "check_ins", ["user_id", "venue_id"])

    op.create_table(
        "flash_offers",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("venue_id", _uuid(), nullable=False),
        sa.Column("title", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("value_cap", sa.String(length=50), nullable=True),
        sa.Column("claim_value", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("max_claims", sa.Integer(), nullable=False),
        sa.Column("claimed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("radius_miles", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("target_favorites_only", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="scheduled"),
        sa.Column("push_status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("push_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("push_sent_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["venue_id"], ["venues.id"], name="fk_flash_offers_venue_id_venues", ondelete="RESTRICT"),
        sa.CheckConstraint("max_claims > 0", name="ck_flash_offers_max_claims_positive"),
        sa.CheckConstraint(
            "claimed_count >= 0 AND claimed_count <= max_claims",
            name="ck_flash_offers_claimed_count_bounds",
        ),
        sa.CheckConstraint("end_time > start_time", name="ck_flash_offers_window"),
        sa.CheckConstraint("radius_miles > 0", name="ck_flash_offers_radius_positive"),
        sa.CheckConstraint("claim_value >= 0", name="ck_flash_offers_claim_value_non_negative"),
    )
    op.create_index("ix_flash_offers_venue_id", "flash_offers", ["venue_id"])
    op.create_index("ix_flash_offers_status_end_time", "flash_offers", ["status", "end_time"])

    op.create_table(
        "flash_offer_reservations",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("offer_id", _uuid(), nullable=False),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(
            ["offer_id"], ["flash_offers.id"], name="fk_flash_offer_reservations_offer_id", ondelete="RESTRICT"
        ),
        sa.ForeignKeyConstraint(
            ["user_id"], ["users.id"], name="fk_flash_offer_reservations_user_id", ondelete="CASCADE"
        ),
        sa.UniqueConstraint("offer_id", "user_id", name="uq_flash_offer_reservations_offer_user"),
    )

    op.create_table(
        "flash_offer_claims",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("offer_id", _uuid(), nullable=False),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("reservation_id", _uuid(), nullable=True),
        sa.Column("token", sa.String(length=12), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="reserved"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("redeemed_by_user_id", _uuid(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["offer_id"], ["flash_offers.id"], name="fk_flash_offer_claims_offer_id", ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_flash_offer_claims_user_id", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["reservation_id"],
            ["flash_offer_reservations.id"],
            name="fk_flash_offer_claims_reservation_id",
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["redeemed_by_user_id"], ["users.id"], name="fk_flash_offer_claims_redeemed_by", ondelete="SET NULL"
        ),
        sa.UniqueConstraint("offer_id", "user_id", name="uq_flash_offer_claims_offer_user"),
        sa.UniqueConstraint("offer_id", "token", name="uq_flash_offer_claims_offer_token"),
    )
    op.create_index("ix_flash_offer_claims_user_id", "flash_offer_claims", ["user_id"])
    op.create_index("ix_flash_offer_claims_status_expires_at", "flash_offer_claims", ["status", "expires_at"])

    op.create_table(
        "flash_offer_events",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("offer_id", _uuid(), nullable=False),
        sa.Column("user_id", _uuid(), nullable=True),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["offer_id"], ["flash_offers.id"], name="fk_flash_offer_events_offer_id", ondelete="CASCADE"),
    )
    op.create_index("ix_flash_offer_events_offer_id", "flash_offer_events", ["offer_id"])

    op.create_table(
        "notification_preferences",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), nullable=False, unique=True),
        sa.Column("flash_offers_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("quiet_hours_start", sa.Time(), nullable=True),
        sa.Column("quiet_hours_end", sa.Time(), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="UTC"),
        sa.Column("max_distance_miles", sa.Float(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["user_id"],
            ["users.id"],
            name="fk_notification_preferences_user_id_users",
            ondelete="CASCADE",
        ),
    )

    op.create_table(
        "device_tokens",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("token", sa.String(length=255), nullable=False, unique=True),
        sa.Column("platform", sa.String(length=16), nullable=False, server_default="ios"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_device_tokens_user_id_users", ondelete="CASCADE"),
    )
    op.create_index("ix_device_tokens_user_id", "device_tokens", ["user_id"])

    op.create_table(
        "flash_offer_rate_limits",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("scope", sa.String(length=16), nullable=False),
        sa.Column("subject_id", _uuid(), nullable=False),
        sa.Column("day_key", sa.String(length=10), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("scope", "subject_id", "day_key", name="uq_flash_offer_rate_limits_scope_subject_day"),
    )


def downgrade() -> None:
    op.drop_table("flash_offer_rate_limits")
    op.drop_index("ix_device_tokens_user_id", table_name="device_tokens")
    op.drop_table("device_tokens")
    op.drop_table("notification_preferences")
    op.drop_index("ix_flash_offer_events_offer_id", table_name="flash_offer_events")
    op.drop_table("flash_offer_events")
    op.drop_index("ix_flash_offer_claims_status_expires_at", table_name="flash_offer_claims")
    op.drop_index("ix_flash_offer_claims_user_id", table_name="flash_offer_claims")
    op.drop_table("flash_offer_claims")
    op.drop_table("flash_offer_reservations")
    op.drop_index("ix_flash_offers_status_end_time", table_name="flash_offers")
    op.drop_index("ix_flash_offers_venue_id", table_name="flash_offers")
    op.drop_table("flash_offers")
    op.drop_index("ix_check_ins_user_venue", table_name="check_ins")
    op.drop_table("check_ins")
    op.drop_index("ix_venue_favorites_venue_id", table_name="venue_favorites")
    op.drop_table("venue_favorites")
    op.drop_table("venues")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
