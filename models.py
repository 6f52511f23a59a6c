from sqlalchemy import (
    Column, Integer, String, Boolean, ForeignKey, DateTime, BigInteger, UniqueConstraint, Text, Index, Uuid
)
import uuid
from sqlalchemy.orm import relationship
from core.db import Base
from datetime import datetime
import random


def generate_account_id():
    """Generate a 10-digit random unique number."""
    return int("".join(str(random.randint(0, 9)) for _ in range(10)))

# =================================
#  Users Table
# =================================
class User(Base):
    __tablename__ = "users"

    account_id = Column(BigInteger, primary_key=True, unique=True, index=True, nullable=False, default=generate_account_id)
    descope_user_id = Column(String, unique=True, index=True, nullable=True)
    email = Column(String, unique=True, index=True, nullable=False)
    username = Column(String, unique=True, index=True, nullable=False)
    is_online = Column(Boolean, nullable=False, default=False)
    profile_pic_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    memberships = relationship("ConversationParticipant", back_populates="user")

# =================================
#  Conversations Table
# =================================
class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    is_group = Column(Boolean, nullable=False, default=False)
    name = Column(String, nullable=True)  # groups only, dialogs derive it per viewer
    admin_id = Column(BigInteger, ForeignKey("users.account_id", ondelete="SET NULL"), nullable=True, index=True)
    created_by = Column(BigInteger, ForeignKey("users.account_id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    admin = relationship("User", foreign_keys=[admin_id])
    creator = relationship("User", foreign_keys=[created_by])
    participants = relationship(
        "ConversationParticipant",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    pins = relationship(
        "PinnedMessage",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

# =================================
#  Conversation Participants Table
# =================================
class ConversationParticipant(Base):
    __tablename__ = "conversation_participants"

    # Also the secondary key when two members share a joined_at
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    conversation_id = Column(Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(BigInteger, ForeignKey("users.account_id", ondelete="CASCADE"), nullable=False, index=True)
    joined_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    is_muted = Column(Boolean, nullable=False, default=False)

    # Relationships
    conversation = relationship("Conversation", back_populates="participants")
    user = relationship("User", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint('conversation_id', 'user_id', name='uq_conversation_participants_conversation_user'),
    )

# =================================
#  Messages Table
# =================================
class Message(Base):
    __tablename__ = "messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    sender_id = Column(BigInteger, ForeignKey("users.account_id", ondelete="SET NULL"), nullable=True, index=True)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    is_edited = Column(Boolean, nullable=False, default=False)
    edited_at = Column(DateTime, nullable=True)
    is_forwarded = Column(Boolean, nullable=False, default=False)
    forwarded_from_username = Column(String, nullable=True)
    replied_to_message_id = Column(Uuid, ForeignKey("messages.id", ondelete="SET NULL"), nullable=True)

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")
    sender = relationship("User", foreign_keys=[sender_id])
    replied_to = relationship("Message", remote_side=[id])
    reads = relationship(
        "MessageRead",
        back_populates="message",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    pin = relationship(
        "PinnedMessage",
        back_populates="message",
        cascade="all, delete-orphan",
        passive_deletes=True,
        uselist=False,
    )

    __table_args__ = (
        # Last-message lookups scan (conversation_id, created_at desc)
        Index('ix_messages_conversation_created', 'conversation_id', 'created_at'),
    )

# =================================
#  Message Reads Table
# =================================
class MessageRead(Base):
    __tablename__ = "message_reads"

    message_id = Column(Uuid, ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(BigInteger, ForeignKey("users.account_id", ondelete="CASCADE"), primary_key=True, index=True)
    read_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Relationships
    message = relationship("Message", back_populates="reads")

# =================================
#  Pinned Messages Table
# =================================
class PinnedMessage(Base):
    __tablename__ = "pinned_messages"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    conversation_id = Column(Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    message_id = Column(Uuid, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False)
    pinned_by = Column(BigInteger, ForeignKey("users.account_id", ondelete="SET NULL"), nullable=True)
    pinned_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Relationships
    conversation = relationship("Conversation", back_populates="pins")
    message = relationship("Message", back_populates="pin")

    __table_args__ = (
        UniqueConstraint('conversation_id', 'message_id', name='uq_pinned_messages_conversation_message'),
    )
