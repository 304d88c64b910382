"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import enum
import uuid

from sqlalchemy import Boolean, Column, Enum, ForeignKey, Index, Integer, String, Text, UniqueConstraint

from marketchat.storage import Base


def new_id() -> str:
    return uuid.uuid4().hex


class NotificationType(str, enum.Enum):
    SYSTEM = "SYSTEM"
    ORDER = "ORDER"
    PAYMENT = "PAYMENT"
    MESSAGE = "MESSAGE"
    OTHER = "OTHER"


class Role(str, enum.Enum):
    BUYER = "BUYER"
    VENDOR = "VENDOR"
    SUPER_ADMIN = "SUPER_ADMIN"


class Conversation(Base):
    """
    The single durable pairing between one buyer and one vendor.

    Table: chat_conversations
    Unique: (buyer_id, vendor_id), whatever the originating service
    """
    __tablename__ = "chat_conversations"
    __table_args__ = (
        UniqueConstraint("buyer_id", "vendor_id", name="uq_chat_conversations_pair"),
    )

    id = Column(String, primary_key=True, default=new_id)
    buyer_id = Column(String, nullable=False, index=True)
    vendor_id = Column(String, nullable=False, index=True)
    service_id = Column(String, nullable=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601
    updated_at = Column(String, nullable=False, index=True)  # Bumped on every append


class ChatMessage(Base):
    """
    One message in a conversation.

    Table: chat_messages
    The integer id is the message ordinal: it breaks created_at ties and
    is the restart point for incremental listing.
    """
    __tablename__ = "chat_messages"
    __table_args__ = (
        Index("ix_chat_messages_conversation_order", "conversation_id", "created_at", "id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String, ForeignKey("chat_conversations.id"), nullable=False)
    sender_id = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(String, nullable=False)


class Notification(Base):
    """
    A typed alert owned by one user.

    Table: notifications
    """
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_user_unread", "user_id", "is_read", "created_at"),
    )

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, nullable=False)
    type = Column(Enum(NotificationType, native_enum=False, length=16), nullable=False)
    title = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    link = Column(String, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(String, nullable=False)


# =============================================================================
# Directory tables
# Owned by the identity/profile system; this package only reads them.
# =============================================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    full_name = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)


class Vendor(Base):
    __tablename__ = "vendors"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    company_name = Column(String, nullable=True)
    logo_url = Column(String, nullable=True)
