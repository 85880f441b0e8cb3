"""
Read-only mirror of the community user directory.
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from messaging.core.database import Base


class UserRole:
    GUEST = "guest"
    REGISTERED = "registered"
    BADGE_HOLDER = "badge_holder"
    PAID = "paid"
    MODERATOR = "moderator"
    ADMIN = "admin"


class UserProfile(Base):
    """User fields the messaging service reads for addressing and templates."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(String(150), nullable=False, unique=True)
    email = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=True)
    first_name = Column(String(150), nullable=True)
    last_name = Column(String(150), nullable=True)

    role = Column(String(32), nullable=False, default=UserRole.REGISTERED, index=True)
    is_blocked = Column(Boolean, nullable=False, default=False)

    has_membership_badge = Column(Boolean, nullable=False, default=False)
    membership_badge_number = Column(String(64), nullable=True)

    subscription_status = Column(String(32), nullable=True)
    subscription_start_date = Column(DateTime(timezone=True), nullable=True)
    subscription_end_date = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    def __repr__(self) -> str:
        return f"<UserProfile(id={self.id}, username={self.username}, role={self.role})>"
