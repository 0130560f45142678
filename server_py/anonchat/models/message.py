from __future__ import annotations

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from anonchat.core.database import Base, utcnow


class Message(Base):
    __tablename__ = "chat_messages"
    __table_args__ = (Index("ix_chat_messages_pair", "sender_id", "receiver_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    sender_id = Column(String(128), nullable=False)
    receiver_id = Column(String(128), nullable=False)
    content = Column(Text, nullable=False)
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)
