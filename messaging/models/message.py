"""
Message, attachment and delivery-record database models.
"""
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from messaging.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageType(str, enum.Enum):
    """How a message was addressed."""

    DIRECT = "direct"
    BROADCAST_ALL = "broadcast-all"
    BROADCAST_REGISTERED = "broadcast-registered"
    BROADCAST_BADGE_HOLDERS = "broadcast-badge-holders"
    BROADCAST_ADMINS = "broadcast-admins"
    DYNAMIC_AUDIENCE = "dynamic-audience"


class Message(Base):
    """A logical message; one row regardless of how many recipients it has."""

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # User ids come from the external user directory, so no foreign key
    sender_id = Column(Integer, nullable=False, index=True)

    subject = Column(String(500), nullable=False)
    content = Column(Text, nullable=False)

    message_type = Column(String(32), nullable=False, default=MessageType.DIRECT.value)
    # Broadcast class or predicate name at send time
    target = Column(String(100), nullable=True)

    in_reply_to = Column(Integer, ForeignKey("messages.id"), nullable=True, index=True)

    template_id = Column(String(100), nullable=True)
    template_version = Column(Integer, nullable=True)

    sender_deleted = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    attachments = relationship(
        "MessageAttachment",
        back_populates="message",
        order_by="MessageAttachment.position",
        cascade="all, delete-orphan",
    )
    recipients = relationship(
        "MessageRecipient",
        back_populates="message",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_messages_created_at_id", "created_at", "id"),
    )

    def __repr__(self) -> str:
        return f"<Message(id={self.id}, sender_id={self.sender_id}, in_reply_to={self.in_reply_to})>"


class MessageAttachment(Base):
    """Metadata for a file already stored in object storage."""

    __tablename__ = "message_attachments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    message_id = Column(Integer, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    filename = Column(String(255), nullable=False)
    url = Column(String(2048), nullable=False)
    content_type = Column(String(255), nullable=False, default="application/octet-stream")
    size = Column(Integer, nullable=False, default=0)

    message = relationship("Message", back_populates="attachments")


class MessageRecipient(Base):
    """Fan-out record: one per (message, recipient)."""

    __tablename__ = "message_recipients"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(Integer, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False)
    recipient_id = Column(Integer, nullable=False, index=True)

    read = Column(Boolean, nullable=False, default=False)
    delivered_at = Column(DateTime(timezone=True), default=utcnow, nullable=True)
    read_at = Column(DateTime(timezone=True), nullable=True)

    target = Column(String(100), nullable=True)

    message = relationship("Message", back_populates="recipients")

    __table_args__ = (
        UniqueConstraint("message_id", "recipient_id", name="uq_message_recipient"),
        Index("ix_message_recipients_recipient_read", "recipient_id", "read"),
    )

    def __repr__(self) -> str:
        return f"<MessageRecipient(message_id={self.message_id}, recipient_id={self.recipient_id}, read={self.read})>"
