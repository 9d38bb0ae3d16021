from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from market_chat.database import Base
from market_chat.models.db.conversation_model import utcnow


class MessageModel(Base):
    """SQLAlchemy model for messages table."""

    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_messages_conversation_created", "conversation_id", "created_at"),
        Index("idx_unread_messages", "conversation_id", "is_read", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(
        Integer, ForeignKey("conversations.id"), nullable=False, index=True
    )
    # 0 is reserved for system-generated messages
    sender_id = Column(Integer, nullable=False, index=True)
    content = Column(Text, nullable=False)
    message_type = Column(String(20), nullable=False, default="text")
    system_message_type = Column(String(50), nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
    is_edited = Column(Boolean, nullable=False, default=False)
    edited_at = Column(DateTime(timezone=True), nullable=True)
    reply_to_message_id = Column(Integer, ForeignKey("messages.id"), nullable=True)
    # "metadata" is reserved on declarative classes
    message_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    conversation = relationship("ConversationModel", back_populates="messages")
    attachments = relationship(
        "AttachmentModel", back_populates="message", cascade="all, delete-orphan"
    )

    # Constraints (enforced by database CHECK constraints in the migration)
    # message_type IN ('text', 'image', 'file', 'system', 'offer')
