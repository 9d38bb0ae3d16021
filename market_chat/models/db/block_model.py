from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)

from market_chat.database import Base
from market_chat.models.db.conversation_model import utcnow


class BlockModel(Base):
    """SQLAlchemy model for message_blocks table (blocker -> blocked edges)."""

    __tablename__ = "message_blocks"
    __table_args__ = (
        UniqueConstraint("blocker_id", "blocked_id", name="unique_block"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    blocker_id = Column(Integer, nullable=False, index=True)
    blocked_id = Column(Integer, nullable=False, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=True)
    reason = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
