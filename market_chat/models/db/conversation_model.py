from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from market_chat.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationModel(Base):
    """SQLAlchemy model for conversations table."""

    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint(
            "article_id", "buyer_id", "seller_id", name="unique_conversation"
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    article_id = Column(Integer, nullable=False, index=True)
    buyer_id = Column(Integer, nullable=False, index=True)
    seller_id = Column(Integer, nullable=False, index=True)
    status = Column(String(20), nullable=False, default="active", index=True)
    # Not a foreign key: messages already reference conversations
    last_message_id = Column(Integer, nullable=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True, index=True)
    buyer_unread_count = Column(Integer, nullable=False, default=0)
    seller_unread_count = Column(Integer, nullable=False, default=0)
    is_buyer_typing = Column(Boolean, nullable=False, default=False)
    is_seller_typing = Column(Boolean, nullable=False, default=False)
    buyer_last_seen = Column(DateTime(timezone=True), nullable=True)
    seller_last_seen = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    messages = relationship(
        "MessageModel", back_populates="conversation", cascade="all, delete-orphan"
    )

    # Constraints (enforced by database CHECK constraints in the migration)
    # status IN ('active', 'archived', 'blocked')
