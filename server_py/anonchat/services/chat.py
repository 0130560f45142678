from __future__ import annotations

from typing import Iterable, List, Optional

from anonchat.models.message import Message
from anonchat.models.user import ChatUser


def event(event_type: str, **data) -> dict:
    """Исходящий кадр вебсокета."""
    return {"type": event_type, "data": data}


def serialize_message(message: Message, viewer_id: Optional[str] = None) -> dict:
    """Преобразует модель SQLAlchemy в JSON-совместимый словарь."""
    payload = {
        "id": message.id,
        "senderId": message.sender_id,
        "receiverId": message.receiver_id,
        "content": message.content,
        "timestamp": message.timestamp.isoformat(),
    }
    if viewer_id is not None:
        payload["isOwn"] = message.sender_id == viewer_id
    return payload


def serialize_messages(messages: Iterable[Message], viewer_id: Optional[str] = None) -> List[dict]:
    return [serialize_message(message, viewer_id) for message in messages]


def serialize_user(user: ChatUser) -> dict:
    return {
        "id": user.id,
        "externalId": user.external_id,
        "isActive": bool(user.is_active),
        "currentPartnerId": user.current_partner_id,
        "lastActiveAt": user.last_active_at.isoformat() if user.last_active_at else None,
    }


def partner_ref(external_id: str) -> dict:
    return {"externalId": external_id}
