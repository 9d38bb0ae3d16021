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


class DeliveryStatusModel(Base):
    """SQLAlchemy model for message_delivery_status table."""

    __tablename__ = "message_delivery_status"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="unique_delivery"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(Integer, ForeignKey("messages.id"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, index=True)
    status_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Constraints (enforced by database CHECK constraints in the migration)
    # status IN ('sent', 'delivered', 'read')
