from __future__ import annotations

import logging
from typing import List

from anonchat.core.errors import InvalidMessage, NoActiveSession
from anonchat.models.message import Message
from anonchat.services.chat import event, serialize_message
from anonchat.services.locks import KeyedLock
from anonchat.services.pairing import PairingEngine
from anonchat.services.registry import ConnectionRegistry
from anonchat.services.store import ChatStore

logger = logging.getLogger(__name__)


class MessageRelay:
    """Сохраняет сообщение и пересылает его живому собеседнику."""

    def __init__(
        self,
        store: ChatStore,
        registry: ConnectionRegistry,
        pairing: PairingEngine,
        locks: KeyedLock,
        *,
        max_length: int = 4096,
    ) -> None:
        self.store = store
        self.registry = registry
        self.pairing = pairing
        self.locks = locks
        self.max_length = max_length

    async def send(self, sender_id: str, content: str) -> Message:
        text = (content or "").strip()
        if not text:
            raise InvalidMessage("Message is empty")
        if len(text) > self.max_length:
            raise InvalidMessage(f"Message is longer than {self.max_length} characters")

        async with self.locks.hold(sender_id):
            _, partner = await self.pairing.load_pair(sender_id)
            if partner is None:
                raise NoActiveSession("No active chat found")
            message = await self.store.insert_message(sender_id, partner.external_id, text)

        await self.registry.send_to_user(
            sender_id, event("message", **serialize_message(message, sender_id))
        )
        delivered = await self.registry.send_to_user(
            message.receiver_id,
            event("message", **serialize_message(message, message.receiver_id)),
        )
        if not delivered:
            logger.info("Message %s stored for offline user %s", message.id, message.receiver_id)
        return message

    async def get_history(self, user_a: str, user_b: str) -> List[Message]:
        return await self.store.query_messages_between(user_a, user_b)
