"""Authoritative message log models"""
import uuid
import enum
from sqlalchemy import (
    Column,
    String,
    Text,
    Integer,
    DateTime,
    ForeignKey,
    Enum,
    JSON,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.core.clock import utcnow
from app.core.database import Base


class ConversationType(str, enum.Enum):
    DIRECT = "direct"
    GROUP = "group"
    CHANNEL = "channel"


class MemberRole(str, enum.Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class Conversation(Base):
    """Chat conversations"""
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), nullable=False, index=True)

    name = Column(String(255), nullable=True)
    type = Column(Enum(ConversationType), default=ConversationType.GROUP, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_message_at = Column(DateTime, nullable=True)

    # Relationships
    members = relationship("ConversationMember", back_populates="conversation", cascade="all, delete-orphan")
    state = relationship("ConversationState", uselist=False, back_populates="conversation", cascade="all, delete-orphan")


class ConversationMember(Base):
    """Conversation participants"""
    __tablename__ = "conversation_members"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False)
    user_id = Column(String(36), nullable=False)
    role = Column(Enum(MemberRole), default=MemberRole.MEMBER, nullable=False)
    joined_at = Column(DateTime, default=utcnow)
    last_read_sequence = Column(Integer, nullable=True)

    conversation = relationship("Conversation", back_populates="members")

    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_conversation_member"),
    )


class ConversationState(Base):
    """Highest sequence number written to a conversation"""
    __tablename__ = "conversation_states"

    conversation_id = Column(String(36), ForeignKey("conversations.id"), primary_key=True)
    last_seq = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    conversation = relationship("Conversation", back_populates="state")


class SequenceCounter(Base):
    """Tenant-wide sequence allocator; keeps delta sync cursors global"""
    __tablename__ = "sequence_counters"

    scope = Column(String(64), primary_key=True)
    value = Column(Integer, default=0, nullable=False)


class Message(Base):
    """Chat messages ordered by sequence number"""
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), nullable=False)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False)
    sender_id = Column(String(36), nullable=True)

    content = Column(Text, nullable=False, default="")
    message_type = Column(String(50), default="text", nullable=False)
    sequence_number = Column(Integer, nullable=False)
    # Log sequence of the latest write to this row; delta sync cursors run on it
    change_sequence = Column(Integer, nullable=False)
    reactions = Column(JSON, default=dict)  # emoji -> [user ids]
    attachments = Column(JSON, default=list)
    client_message_id = Column(String(100), nullable=True)

    version = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    edited_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)  # soft delete

    conversation = relationship("Conversation")

    __table_args__ = (
        Index("ix_messages_tenant_change_sequence", "tenant_id", "change_sequence"),
        Index("ix_messages_conversation_sequence", "conversation_id", "sequence_number"),
    )


class MessageTombstone(Base):
    """Hard-deleted entities, reported to devices by delta sync"""
    __tablename__ = "message_tombstones"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), nullable=False)
    entity_type = Column(String(50), nullable=False, default="message")
    entity_id = Column(String(36), nullable=False)
    conversation_id = Column(String(36), nullable=True)
    sequence_number = Column(Integer, nullable=False)
    deleted_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_message_tombstones_tenant_sequence", "tenant_id", "sequence_number"),
    )
