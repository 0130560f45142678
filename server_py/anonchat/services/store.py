from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable, List, Optional

from sqlalchemy import and_, asc, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from anonchat.core.database import AsyncSessionLocal, utcnow
from anonchat.core.errors import StoreUnavailable
from anonchat.models.message import Message
from anonchat.models.user import ChatUser

logger = logging.getLogger(__name__)

USER_FIELDS = frozenset(
    {"is_active", "current_partner_id", "connection_handle", "last_active_at"}
)


class ChatStore:
    """Хранилище пользователей и сообщений чата.

    Каждая операция открывает свою сессию и коммитит ее целиком. Любая
    ошибка SQLAlchemy откатывает транзакцию и превращается в
    ``StoreUnavailable``.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession] = AsyncSessionLocal) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.warning("Store operation failed: %s", exc)
                raise StoreUnavailable("Storage is unavailable") from exc

    async def find_user_by_external_id(self, external_id: str) -> Optional[ChatUser]:
        async with self._session() as session:
            result = await session.execute(
                select(ChatUser).where(ChatUser.external_id == external_id)
            )
            return result.scalar_one_or_none()

    async def create_user(
        self,
        external_id: str,
        *,
        connection_handle: Optional[str] = None,
    ) -> ChatUser:
        user = ChatUser(
            external_id=external_id,
            is_active=True,
            connection_handle=connection_handle,
            last_active_at=utcnow(),
        )
        try:
            async with self._session() as session:
                session.add(user)
                await session.flush()
                await session.refresh(user)
            return user
        except StoreUnavailable as exc:
            # Параллельная регистрация той же личности уже создала запись
            if not isinstance(exc.__cause__, IntegrityError):
                raise
        existing = await self.find_user_by_external_id(external_id)
        if existing is None:
            raise StoreUnavailable("User could not be created")
        return existing

    async def find_user_by_connection_handle(self, handle: str) -> Optional[ChatUser]:
        async with self._session() as session:
            result = await session.execute(
                select(ChatUser).where(ChatUser.connection_handle == handle)
            )
            return result.scalars().first()

    async def update_user(self, external_id: str, /, **fields) -> Optional[ChatUser]:
        unknown = set(fields) - USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)}")
        async with self._session() as session:
            result = await session.execute(
                select(ChatUser).where(ChatUser.external_id == external_id)
            )
            user = result.scalar_one_or_none()
            if user is None:
                return None
            for field, value in fields.items():
                setattr(user, field, value)
            await session.flush()
            return user

    async def link_partners(self, user_a: str, user_b: str) -> None:
        """Записывает связь в обе стороны в одной транзакции."""
        async with self._session() as session:
            await session.execute(
                update(ChatUser)
                .where(ChatUser.external_id == user_a)
                .values(current_partner_id=user_b)
            )
            await session.execute(
                update(ChatUser)
                .where(ChatUser.external_id == user_b)
                .values(current_partner_id=user_a)
            )

    async def unlink_partners(self, user_a: str, user_b: Optional[str]) -> None:
        """Снимает связь у ``user_a`` и у ``user_b``, если тот ссылается на ``user_a``."""
        async with self._session() as session:
            await session.execute(
                update(ChatUser)
                .where(ChatUser.external_id == user_a)
                .values(current_partner_id=None)
            )
            if user_b is not None:
                await session.execute(
                    update(ChatUser)
                    .where(
                        ChatUser.external_id == user_b,
                        ChatUser.current_partner_id == user_a,
                    )
                    .values(current_partner_id=None)
                )

    async def insert_message(self, sender_id: str, receiver_id: str, content: str) -> Message:
        message = Message(
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            timestamp=utcnow(),
        )
        async with self._session() as session:
            session.add(message)
            await session.flush()
            await session.refresh(message)
        return message

    async def query_messages_between(self, user_a: str, user_b: str) -> List[Message]:
        stmt = (
            select(Message)
            .where(
                or_(
                    and_(Message.sender_id == user_a, Message.receiver_id == user_b),
                    and_(Message.sender_id == user_b, Message.receiver_id == user_a),
                )
            )
            .order_by(asc(Message.timestamp), asc(Message.id))
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars())

    async def find_stale_paired_users(self, cutoff: datetime) -> List[ChatUser]:
        """Пользователи со связью, не проявлявшие активности с ``cutoff``.

        Флаг ``is_active`` не учитывается: соединение могло пропасть без
        чистого отключения. Живость проверяет вызывающий по реестру.
        """
        stmt = select(ChatUser).where(
            ChatUser.current_partner_id.is_not(None),
            ChatUser.last_active_at < cutoff,
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars())
