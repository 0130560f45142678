from sqlalchemy import Column, Integer, String, DateTime, Boolean
from anonchat.core.database import Base, utcnow

class ChatUser(Base):
    __tablename__ = "chat_users"
    
    id = Column(Integer, primary_key=True, index=True)
    external_id = Column(String(128), unique=True, index=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    current_partner_id = Column(String(128), nullable=True, index=True)  # external_id собеседника
    connection_handle = Column(String(64), nullable=True)
    last_active_at = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow)
