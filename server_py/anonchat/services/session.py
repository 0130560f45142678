from __future__ import annotations

import enum
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from anonchat.core.config import settings
from anonchat.core.database import utcnow
from anonchat.core.errors import (
    ChatError,
    InvalidCommand,
    InvalidMessage,
    NoActiveSession,
    NotRegistered,
)
from anonchat.core.identity import resolve_identity
from anonchat.models.message import Message
from anonchat.models.user import ChatUser
from anonchat.schemas.chat import RegisterCommand, SendMessageCommand
from anonchat.services.chat import event, partner_ref, serialize_messages, serialize_user
from anonchat.services.locks import KeyedLock
from anonchat.services.pairing import PairingEngine
from anonchat.services.pool import WaitingPool
from anonchat.services.registry import Connection, ConnectionEntry, ConnectionRegistry
from anonchat.services.relay import MessageRelay
from anonchat.services.store import ChatStore

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    PAIRED = "paired"


class ChatCoordinator:
    """Точка входа для команд клиента.

    Владеет реестром соединений, пулом ожидания и блокировками. Команды
    приходят с handle соединения, личность определяется через реестр.
    """

    def __init__(
        self,
        store: Optional[ChatStore] = None,
        registry: Optional[ConnectionRegistry] = None,
        pool: Optional[WaitingPool] = None,
        *,
        max_attempts: int = settings.PAIRING_MAX_ATTEMPTS,
        max_message_length: int = settings.MAX_MESSAGE_LENGTH,
    ) -> None:
        self.store = store or ChatStore()
        self.registry = registry or ConnectionRegistry()
        self.registry.on_drop = self._connection_dropped
        self.pool = pool or WaitingPool()
        self.locks = KeyedLock()
        self.pairing = PairingEngine(
            self.store, self.registry, self.pool, self.locks, max_attempts=max_attempts
        )
        self.relay = MessageRelay(
            self.store, self.registry, self.pairing, self.locks, max_length=max_message_length
        )
        self._handlers: Dict[str, Callable[[str, Connection, dict], Awaitable[Any]]] = {
            "register": self._on_register,
            "init": self._on_register,
            "find_partner": self._on_find_partner,
            "next_partner": self._on_next_partner,
            "cancel_search": self._on_cancel_search,
            "send_message": self._on_send_message,
            "get_messages": self._on_get_messages,
            "heartbeat": self._on_heartbeat,
        }

    async def dispatch(self, handle: str, connection: Connection, payload: Any) -> Any:
        """Разбирает входящий кадр и вызывает соответствующую команду."""
        if not isinstance(payload, dict):
            raise InvalidCommand("Frame must be a JSON object")
        command = payload.get("type")
        handler = self._handlers.get(command) if isinstance(command, str) else None
        if handler is None:
            raise InvalidCommand(f"Unknown command: {command!r}")
        return await handler(handle, connection, payload)

    async def _on_register(self, handle: str, connection: Connection, payload: dict) -> ChatUser:
        command = RegisterCommand.model_validate(payload)
        return await self.register(handle, command.identity, connection)

    async def _on_find_partner(self, handle: str, connection: Connection, payload: dict):
        return await self.find_partner(handle)

    async def _on_next_partner(self, handle: str, connection: Connection, payload: dict):
        return await self.next_partner(handle)

    async def _on_cancel_search(self, handle: str, connection: Connection, payload: dict):
        return await self.cancel_search(handle)

    async def _on_send_message(self, handle: str, connection: Connection, payload: dict):
        try:
            command = SendMessageCommand.model_validate(payload)
        except ValidationError:
            raise InvalidMessage("Message content must be text")
        return await self.send_message(handle, command.content)

    async def _on_get_messages(self, handle: str, connection: Connection, payload: dict):
        return await self.get_messages(handle)

    async def _on_heartbeat(self, handle: str, connection: Connection, payload: dict):
        return await self.heartbeat(handle)

    async def _identify(self, handle: str) -> str:
        user_id = await self.registry.resolve(handle)
        await self.registry.touch(handle)
        return user_id

    async def register(self, handle: str, identity: Any, connection: Connection) -> ChatUser:
        external_id = resolve_identity(identity)

        try:
            previous = await self.registry.resolve(handle)
        except NotRegistered:
            previous = None
        if previous is not None and previous != external_id:
            await self.disconnect(handle)

        user = await self.store.find_user_by_external_id(external_id)
        if user is None:
            user = await self.store.create_user(external_id, connection_handle=handle)
            logger.info("Registered new user %s on %s", external_id, handle)
        else:
            user = await self.store.update_user(
                external_id,
                is_active=True,
                connection_handle=handle,
                last_active_at=utcnow(),
            )
            logger.info("User %s reconnected on %s", external_id, handle)

        await self.registry.bind(handle, external_id, connection)
        await self.registry.send_to_handle(handle, event("registered", user=serialize_user(user)))

        # Собеседник еще связан с нами: восстанавливаем чат с полной историей
        if user.current_partner_id is not None:
            async with self.locks.hold(external_id, user.current_partner_id):
                _, partner = await self.pairing.load_pair(external_id)
                if partner is not None:
                    await self.pairing.emit_chat_started(external_id, partner.external_id)
                    await self.registry.send_to_user(
                        partner.external_id,
                        event("partner_reconnected", partner=partner_ref(external_id)),
                    )
        return user

    async def find_partner(self, handle: str) -> Optional[str]:
        user_id = await self._identify(handle)
        return await self.pairing.find_partner(user_id)

    async def next_partner(self, handle: str) -> Optional[str]:
        user_id = await self._identify(handle)
        return await self.pairing.next_partner(user_id)

    async def cancel_search(self, handle: str) -> bool:
        user_id = await self._identify(handle)
        return await self.pairing.cancel_search(user_id)

    async def send_message(self, handle: str, content: str) -> Message:
        user_id = await self._identify(handle)
        return await self.relay.send(user_id, content)

    async def get_messages(self, handle: str) -> list:
        user_id = await self._identify(handle)
        _, partner = await self.pairing.load_pair(user_id)
        if partner is None:
            raise NoActiveSession("No active chat found")
        messages = await self.relay.get_history(user_id, partner.external_id)
        await self.registry.send_to_user(
            user_id,
            event(
                "history",
                partner=partner_ref(partner.external_id),
                messages=serialize_messages(messages, user_id),
            ),
        )
        return messages

    async def heartbeat(self, handle: str) -> None:
        await self._identify(handle)

    async def disconnect(self, handle: str) -> Optional[str]:
        """Соединение закрылось. Запись пользователя и связь сохраняются."""
        user_id = await self.registry.unbind(handle)
        if user_id is None:
            # Реестр уже забыл handle (неудачная отправка), запись в базе нет
            user = await self.store.find_user_by_connection_handle(handle)
            if user is None:
                return None
            user_id = user.external_id
        if not await self._mark_offline(user_id):
            return None
        logger.info("User %s disconnected (%s)", user_id, handle)
        return user_id

    async def _connection_dropped(self, entry: ConnectionEntry) -> None:
        try:
            await self._mark_offline(entry.external_id)
        except ChatError as exc:
            logger.warning("Could not record drop of %s: %s", entry.handle, exc)
        else:
            logger.info("User %s dropped (%s)", entry.external_id, entry.handle)

    async def _mark_offline(self, user_id: str) -> bool:
        """Помечает пользователя отключенным и уведомляет собеседника.

        Ничего не делает, если у личности уже есть новое живое соединение.
        """
        async with self.locks.hold(user_id):
            if self.registry.is_live(user_id):
                return False
            self.pool.remove(user_id)
            user = await self.store.update_user(
                user_id,
                is_active=False,
                connection_handle=None,
                last_active_at=utcnow(),
            )
        if user is not None and user.current_partner_id is not None:
            await self.registry.send_to_user(
                user.current_partner_id,
                event("partner_disconnected", partner=partner_ref(user_id)),
            )
        return True

    async def abandon(self, user_id: str) -> Optional[str]:
        """Разрывает чат пользователя, пропавшего без живого соединения."""
        async with self.locks.hold(user_id):
            if self.registry.is_live(user_id):
                return None
            self.pool.remove(user_id)
            await self.store.update_user(user_id, is_active=False, connection_handle=None)
        return await self.pairing.end_session(user_id, reason="partner_inactive")

    async def expire(self, handle: str) -> Optional[str]:
        """Выселяет устаревшее соединение и разрывает его чат."""
        entry = await self.registry.evict(handle)
        if entry is None:
            return None
        user_id = entry.external_id
        self.pool.remove(user_id)
        async with self.locks.hold(user_id):
            await self.store.update_user(
                user_id,
                is_active=False,
                connection_handle=None,
            )
        await self.pairing.end_session(user_id, reason="partner_inactive")
        try:
            await entry.connection.close(code=4408)
        except Exception:  # noqa: BLE001
            logger.debug("Stale connection %s already closed", handle)
        logger.info("Expired stale connection %s of %s", handle, user_id)
        return user_id

    async def state_of(self, user_id: str) -> SessionState:
        user = await self.store.find_user_by_external_id(user_id)
        if user is None:
            raise NotRegistered(f"Unknown user {user_id}")
        if user.is_active and user.current_partner_id is not None:
            partner = await self.store.find_user_by_external_id(user.current_partner_id)
            if (
                partner is not None
                and partner.current_partner_id == user_id
                and partner.is_active
            ):
                return SessionState.PAIRED
        if user_id in self.pool:
            return SessionState.SEARCHING
        return SessionState.IDLE

    def stats(self) -> dict:
        return {**self.registry.stats(), "waiting": len(self.pool)}
