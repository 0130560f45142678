from __future__ import annotations

import logging
from typing import Optional, Tuple

from anonchat.core.errors import NoActiveSession, NotRegistered, PartnerUnreachable, StoreUnavailable
from anonchat.models.user import ChatUser
from anonchat.services.chat import event, partner_ref, serialize_messages
from anonchat.services.locks import KeyedLock
from anonchat.services.pool import WaitingPool
from anonchat.services.registry import ConnectionRegistry
from anonchat.services.store import ChatStore

logger = logging.getLogger(__name__)


class PairingEngine:
    """Подбор собеседников и симметричная связь ``current_partner_id``.

    Все записи связи делаются под ``KeyedLock`` обоих участников, а выбор
    кандидата и удаление из пула выполняет атомарный ``WaitingPool.claim``.
    """

    def __init__(
        self,
        store: ChatStore,
        registry: ConnectionRegistry,
        pool: WaitingPool,
        locks: KeyedLock,
        *,
        max_attempts: int = 3,
    ) -> None:
        self.store = store
        self.registry = registry
        self.pool = pool
        self.locks = locks
        self.max_attempts = max(1, max_attempts)

    async def load_pair(self, user_id: str) -> Tuple[ChatUser, Optional[ChatUser]]:
        """Читает пользователя и собеседника, чиня одностороннюю связь.

        Если ``A -> B``, а ``B`` не ссылается на ``A`` (или его нет), связь
        считается разорванной и сторона ``A`` очищается.
        """
        user = await self.store.find_user_by_external_id(user_id)
        if user is None:
            raise NotRegistered(f"Unknown user {user_id}")
        partner_id = user.current_partner_id
        if partner_id is None:
            return user, None
        partner = await self.store.find_user_by_external_id(partner_id)
        if partner is None or partner.current_partner_id != user_id:
            logger.warning("Clearing one-sided partner link %s -> %s", user_id, partner_id)
            await self.store.unlink_partners(user_id, None)
            user.current_partner_id = None
            return user, None
        return user, partner

    async def emit_chat_started(self, user_id: str, partner_id: str) -> bool:
        """Отправляет ``chat_started`` с полной историей пары."""
        messages = await self.store.query_messages_between(user_id, partner_id)
        return await self.registry.send_to_user(
            user_id,
            event(
                "chat_started",
                partner=partner_ref(partner_id),
                messages=serialize_messages(messages, user_id),
            ),
        )

    async def find_partner(self, user_id: str) -> Optional[str]:
        user = await self.store.find_user_by_external_id(user_id)
        if user is None:
            raise NotRegistered(f"Unknown user {user_id}")

        if user.current_partner_id is not None:
            async with self.locks.hold(user_id, user.current_partner_id):
                user, partner = await self.load_pair(user_id)
                if partner is not None and partner.is_active:
                    # Уже в чате: повторяем chat_started, второй связи не создаем
                    await self.emit_chat_started(user_id, partner.external_id)
                    return partner.external_id
                if partner is not None:
                    logger.info(
                        "Dropping link %s <-> %s, partner is offline",
                        user_id,
                        partner.external_id,
                    )
                    await self.store.unlink_partners(user_id, partner.external_id)

        return await self._search(user_id)

    async def next_partner(self, user_id: str) -> Optional[str]:
        former = await self._detach(user_id)
        if former is None:
            raise NoActiveSession("No active chat found")
        logger.info("User %s left chat with %s", user_id, former)
        await self.registry.send_to_user(former, event("chat_ended", reason="partner_left"))
        return await self._search(user_id)

    async def end_session(self, user_id: str, reason: str) -> Optional[str]:
        """Разрывает связь без команды клиента и уведомляет собеседника."""
        former = await self._detach(user_id)
        if former is not None:
            logger.info("Chat %s <-> %s ended: %s", user_id, former, reason)
            await self.registry.send_to_user(former, event("chat_ended", reason=reason))
        return former

    async def cancel_search(self, user_id: str) -> bool:
        removed = self.pool.remove(user_id)
        await self.registry.send_to_user(user_id, event("search_cancelled"))
        return removed

    async def _detach(self, user_id: str) -> Optional[str]:
        user = await self.store.find_user_by_external_id(user_id)
        if user is None:
            raise NotRegistered(f"Unknown user {user_id}")
        partner_id = user.current_partner_id
        if partner_id is None:
            return None
        async with self.locks.hold(user_id, partner_id):
            _, partner = await self.load_pair(user_id)
            if partner is None or partner.external_id != partner_id:
                return None
            await self.store.unlink_partners(user_id, partner_id)
        return partner_id

    async def _search(self, user_id: str) -> Optional[str]:
        self.pool.add(user_id)
        await self.registry.send_to_user(user_id, event("searching"))

        for attempt in range(1, self.max_attempts + 1):
            claimed = self.pool.claim(user_id)
            if claimed is None:
                # Кандидата нет, либо нас уже забрал чужой поиск
                return await self._settle_waiting(user_id)
            candidate = claimed[1]
            try:
                return await self._pair(user_id, candidate)
            except PartnerUnreachable:
                logger.warning(
                    "Candidate %s for %s is unreachable (attempt %d/%d)",
                    candidate,
                    user_id,
                    attempt,
                    self.max_attempts,
                )
                if not self.registry.is_live(user_id):
                    return None
                self.pool.add(user_id)
                await self.registry.send_to_user(user_id, event("searching"))
        return None

    async def _pair(self, user_id: str, candidate: str) -> Optional[str]:
        async with self.locks.hold(user_id, candidate):
            user = await self.store.find_user_by_external_id(user_id)
            other = await self.store.find_user_by_external_id(candidate)
            if user is None or user.current_partner_id is not None:
                self._return_to_pool(candidate)
                return user.current_partner_id if user is not None else None
            if other is None or other.current_partner_id is not None or not other.is_active:
                raise PartnerUnreachable(f"Candidate {candidate} is not available")

            try:
                await self.store.link_partners(user_id, candidate)
            except StoreUnavailable:
                self._return_to_pool(user_id)
                self._return_to_pool(candidate)
                raise

            # Параллельный find_partner мог вернуть кого-то из пары в пул
            self.pool.remove(user_id)
            self.pool.remove(candidate)

            if not self.registry.is_live(user_id):
                # Запросивший отключился, пока шел подбор
                await self.store.unlink_partners(user_id, candidate)
                self._return_to_pool(candidate)
                logger.info("Pairing %s <-> %s rolled back, requester left", user_id, candidate)
                return None

            if not await self.emit_chat_started(candidate, user_id):
                await self.store.unlink_partners(user_id, candidate)
                raise PartnerUnreachable(f"Candidate {candidate} has no live connection")

            await self.emit_chat_started(user_id, candidate)

        logger.info("Paired %s with %s", user_id, candidate)
        return candidate

    async def _settle_waiting(self, user_id: str) -> Optional[str]:
        """Остается в пуле, только если связь не появилась, пока мы в него входили."""
        async with self.locks.hold(user_id):
            user = await self.store.find_user_by_external_id(user_id)
            if user is not None and user.current_partner_id is not None:
                self.pool.remove(user_id)
                return user.current_partner_id
        logger.debug("No partner for %s yet, waiting in pool", user_id)
        return None

    def _return_to_pool(self, user_id: str) -> None:
        if self.registry.is_live(user_id):
            self.pool.add(user_id)
