from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

from anonchat.core.database import utcnow
from anonchat.core.errors import NotRegistered

logger = logging.getLogger(__name__)


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


@dataclass
class ConnectionEntry:
    handle: str
    external_id: str
    connection: Connection
    last_active_at: datetime = field(default_factory=utcnow)


class ConnectionRegistry:
    """Живые соединения: handle -> личность, не больше одного handle на личность."""

    def __init__(
        self,
        on_drop: Optional[Callable[[ConnectionEntry], Awaitable[None]]] = None,
    ) -> None:
        self._entries: Dict[str, ConnectionEntry] = {}
        self._handle_by_user: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        # Вызывается для соединения, выселенного после неудачной отправки
        self.on_drop = on_drop
        self._drops: Set[asyncio.Task] = set()

    async def bind(self, handle: str, external_id: str, connection: Connection) -> Optional[str]:
        """Привязывает handle к личности. Возвращает вытесненный handle, если был."""
        async with self._lock:
            previous = self._entries.pop(handle, None)
            if previous is not None and previous.external_id != external_id:
                # Соединение перерегистрировалось под другой личностью
                self._handle_by_user.pop(previous.external_id, None)

            superseded = self._handle_by_user.get(external_id)
            if superseded is not None and superseded != handle:
                self._entries.pop(superseded, None)
                logger.info("Connection %s for %s superseded by %s", superseded, external_id, handle)
            else:
                superseded = None

            self._entries[handle] = ConnectionEntry(handle, external_id, connection)
            self._handle_by_user[external_id] = handle
            return superseded

    async def resolve(self, handle: str) -> str:
        async with self._lock:
            entry = self._entries.get(handle)
        if entry is None:
            raise NotRegistered("Connection is not registered")
        return entry.external_id

    async def unbind(self, handle: str) -> Optional[str]:
        """Удаляет handle. Для неизвестного или вытесненного handle ничего не делает."""
        entry = await self.evict(handle)
        return entry.external_id if entry is not None else None

    async def evict(self, handle: str) -> Optional[ConnectionEntry]:
        async with self._lock:
            entry = self._entries.pop(handle, None)
            if entry is None:
                return None
            if self._handle_by_user.get(entry.external_id) == handle:
                self._handle_by_user.pop(entry.external_id, None)
            return entry

    async def touch(self, handle: str, now: Optional[datetime] = None) -> None:
        async with self._lock:
            entry = self._entries.get(handle)
            if entry is None:
                raise NotRegistered("Connection is not registered")
            entry.last_active_at = now or utcnow()

    def is_live(self, external_id: str) -> bool:
        return external_id in self._handle_by_user

    def handle_for(self, external_id: str) -> Optional[str]:
        return self._handle_by_user.get(external_id)

    async def stale_handles(self, cutoff: datetime) -> List[str]:
        async with self._lock:
            return [
                entry.handle
                for entry in self._entries.values()
                if entry.last_active_at < cutoff
            ]

    def stats(self) -> Dict[str, int]:
        return {
            "connections": len(self._entries),
            "identities": len(self._handle_by_user),
        }

    async def _snapshot_connection(self, external_id: str) -> Optional[ConnectionEntry]:
        async with self._lock:
            handle = self._handle_by_user.get(external_id)
            return self._entries.get(handle) if handle is not None else None

    async def send_to_user(self, external_id: str, message: dict) -> bool:
        """Отправляет событие живому соединению личности. False, если доставить некуда."""
        entry = await self._snapshot_connection(external_id)
        if entry is None:
            return False
        return await self._safe_send(entry, message)

    async def send_to_handle(self, handle: str, message: dict) -> bool:
        async with self._lock:
            entry = self._entries.get(handle)
        if entry is None:
            return False
        return await self._safe_send(entry, message)

    async def _safe_send(self, entry: ConnectionEntry, message: dict) -> bool:
        try:
            await entry.connection.send_json(message)
        except Exception:  # noqa: BLE001
            logger.warning("Dropping unreachable connection %s (%s)", entry.handle, entry.external_id)
            dropped = await self.evict(entry.handle)
            if dropped is not None and self.on_drop is not None:
                # Отдельной задачей: отправитель может держать блокировки
                task = asyncio.create_task(self.on_drop(dropped))
                self._drops.add(task)
                task.add_done_callback(self._drops.discard)
            return False
        return True

    async def wait_dropped(self) -> None:
        """Дожидается обработки всех выселенных соединений."""
        while self._drops:
            await asyncio.gather(*list(self._drops), return_exceptions=True)
