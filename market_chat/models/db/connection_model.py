from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from market_chat.database import Base
from market_chat.models.db.conversation_model import utcnow


class ConnectionModel(Base):
    """SQLAlchemy model for websocket_connections table (WebSocket and SSE)."""

    __tablename__ = "websocket_connections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    connection_id = Column(String(255), nullable=False, unique=True)
    transport = Column(String(20), nullable=False, default="websocket")
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    last_ping = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    user_agent = Column(Text, nullable=True)
    ip_address = Column(String(45), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
