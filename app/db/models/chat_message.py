"""
Chat Message Model - local copy of messages sent through GetStream
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Text, Boolean

from app.db.database import Base, utcnow


class ChatMessageType(str, enum.Enum):
    REGULAR = "regular"
    SYSTEM = "system"
    OFFER = "offer"
    ORDER = "order"
    INQUIRY = "inquiry"


class ChatMessage(Base):
    """Mirror of a GetStream message"""

    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, index=True)
    stream_message_id = Column(String(128), nullable=False, unique=True)
    stream_channel_id = Column(String(128), nullable=False, index=True)
    stream_channel_type = Column(String(32), nullable=False, default="messaging")

    sender_id = Column(String(64), nullable=True)
    text = Column(Text, nullable=True)
    message_type = Column(SQLEnum(ChatMessageType), nullable=False, default=ChatMessageType.REGULAR)
    attachments = Column(JSON, nullable=True)

    listing_id = Column(String(64), nullable=True)
    offer_id = Column(String(64), nullable=True)
    order_id = Column(String(64), nullable=True)
    custom_data = Column(JSON, nullable=True)

    # [{"user_id": ..., "type": ...}]
    reactions = Column(JSON, nullable=False, default=list)

    status = Column(String(16), nullable=False, default="sent")
    is_deleted = Column(Boolean, nullable=False, default=False)
    # "webhook" for rows created from events
    source = Column(String(16), nullable=False, default="webhook")

    stream_created_at = Column(DateTime, nullable=True)
    edited_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
