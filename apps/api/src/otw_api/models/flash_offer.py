from decimal import Decimal
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import validates

from otw_api.core.settings import settings
from otw_api.db.base import Base

MAX_CLAIMS_CEILING = 1000


class FlashOfferStatusEnum(str, Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    FULL = "full"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class FlashOfferPushStatusEnum(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class FlashOfferClaimStatusEnum(str, Enum):
    RESERVED = "reserved"
    REDEEMED = "redeemed"
    EXPIRED = "expired"


class FlashOfferEventTypeEnum(str, Enum):
    PUSH_SENT = "push_sent"
    CLAIM = "claim"
    REDEEM = "redeem"
    CAPACITY_RACE = "capacity_race"


class FlashOffer(Base):
    """Time-boxed, capacity-limited promotion tied to a venue."""

    __tablename__ = "flash_offers"
    __table_args__ = (
        CheckConstraint("max_claims > 0", name="ck_flash_offers_max_claims_positive"),
        CheckConstraint(
            "claimed_count >= 0 AND claimed_count <= max_claims",
            name="ck_flash_offers_claimed_count_bounds",
        ),
        CheckConstraint("end_time > start_time", name="ck_flash_offers_window"),
        CheckConstraint("radius_miles > 0", name="ck_flash_offers_radius_positive"),
        CheckConstraint("claim_value >= 0", name="ck_flash_offers_claim_value_non_negative"),
        Index("ix_flash_offers_status_end_time", "status", "end_time"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    venue_id = Column(UUID(as_uuid=True), ForeignKey("venues.id", ondelete="RESTRICT"), nullable=False, index=True)
    title = Column(String(length=100), nullable=False)
    description = Column(Text, nullable=False)
    value_cap = Column(String(length=50), nullable=True)
    claim_value = Column(Numeric(10, 2), nullable=False, default=0, server_default="0")
    max_claims = Column(Integer, nullable=False)
    # Written only by ClaimLedger.reserve / ClaimLedger.release.
    claimed_count = Column(Integer, nullable=False, default=0, server_default="0")
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    radius_miles = Column(Float, nullable=False, default=1.0, server_default="1.0")
    target_favorites_only = Column(Boolean, nullable=False, default=False, server_default=false())
    status = Column(
        String(length=16),
        nullable=False,
        default=FlashOfferStatusEnum.SCHEDULED.value,
        server_default=FlashOfferStatusEnum.SCHEDULED.value,
    )
    push_status = Column(
        String(length=16),
        nullable=False,
        default=FlashOfferPushStatusEnum.PENDING.value,
        server_default=FlashOfferPushStatusEnum.PENDING.value,
    )
    push_started_at = Column(DateTime(timezone=True), nullable=True)
    push_sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @validates("max_claims")
    def _validate_max_claims(self, key, value):
        if value is None or not 1 <= int(value) <= MAX_CLAIMS_CEILING:
            raise ValueError(f"max_claims must be between 1 and {MAX_CLAIMS_CEILING}")
        return value

    @validates("claim_value")
    def _validate_claim_value(self, key, value):
        amount = Decimal(str(value if value is not None else 0))
        if amount < 0 or amount > settings.flash_offer_max_claim_value:
            raise ValueError(f"claim_value must be between 0 and {settings.flash_offer_max_claim_value}")
        return amount


class FlashOfferReservation(Base):
    """Ledger entry backing one unit of an offer's claimed_count."""

    __tablename__ = "flash_offer_reservations"
    __table_args__ = (UniqueConstraint("offer_id", "user_id", name="uq_flash_offer_reservations_offer_user"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    offer_id = Column(UUID(as_uuid=True), ForeignKey("flash_offers.id", ondelete="RESTRICT"), nullable=False)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class FlashOfferClaim(Base):
    __tablename__ = "flash_offer_claims"
    __table_args__ = (
        UniqueConstraint("offer_id", "user_id", name="uq_flash_offer_claims_offer_user"),
        UniqueConstraint("offer_id", "token", name="uq_flash_offer_claims_offer_token"),
        Index("ix_flash_offer_claims_status_expires_at", "status", "expires_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    offer_id = Column(UUID(as_uuid=True), ForeignKey("flash_offers.id", ondelete="RESTRICT"), nullable=False)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    reservation_id = Column(
        UUID(as_uuid=True),
        ForeignKey("flash_offer_reservations.id", ondelete="SET NULL"),
        nullable=True,
    )
    token = Column(String(length=12), nullable=False)
    status = Column(
        String(length=16),
        nullable=False,
        default=FlashOfferClaimStatusEnum.RESERVED.value,
        server_default=FlashOfferClaimStatusEnum.RESERVED.value,
    )
    expires_at = Column(DateTime(timezone=True), nullable=False)
    redeemed_at = Column(DateTime(timezone=True), nullable=True)
    redeemed_by_user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class FlashOfferEvent(Base):
    __tablename__ = "flash_offer_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    offer_id = Column(UUID(as_uuid=True), ForeignKey("flash_offers.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(UUID(as_uuid=True), nullable=True)
    event_type = Column(String(length=32), nullable=False)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
