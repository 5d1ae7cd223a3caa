from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Float, String, func
from sqlalchemy.dialects.postgresql import UUID

from otw_api.db.base import Base


class UserRoleEnum(str, Enum):
    CUSTOMER = "customer"
    VENUE_OWNER = "venue_owner"
    VENUE_STAFF = "venue_staff"


class User(Base):
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    email = Column(String, nullable=False, unique=True, index=True)
    display_name = Column(String, nullable=True)
    role = Column(
        String(length=16),
        nullable=False,
        default=UserRoleEnum.CUSTOMER.value,
        server_default=UserRoleEnum.CUSTOMER.value,
    )
    last_latitude = Column(Float, nullable=True)
    last_longitude = Column(Float, nullable=True)
    location_updated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
