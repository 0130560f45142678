from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from anonchat.core.config import settings
from anonchat.core.database import utcnow
from anonchat.core.errors import ChatError
from anonchat.services.session import ChatCoordinator

logger = logging.getLogger(__name__)


class LivenessSweeper:
    """Периодически выселяет соединения без активности и разрывает их чаты."""

    def __init__(
        self,
        coordinator: ChatCoordinator,
        *,
        interval: float = settings.SWEEP_INTERVAL_SECONDS,
        stale_after: float = settings.STALE_AFTER_SECONDS,
    ) -> None:
        self.coordinator = coordinator
        self.interval = interval
        self.stale_after = timedelta(seconds=stale_after)
        self.last_sweep_at: Optional[datetime] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "Liveness sweeper started (interval=%ss, stale_after=%ss)",
            self.interval,
            self.stale_after.total_seconds(),
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Liveness sweeper stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await self.sweep_once()
            except asyncio.CancelledError:
                break
            except Exception:  # noqa: BLE001
                logger.exception("Liveness sweep failed")

    async def sweep_once(self, now: Optional[datetime] = None) -> List[str]:
        """Один проход. Возвращает личности, чьи чаты были разорваны или соединения выселены."""
        now = now or utcnow()
        cutoff = now - self.stale_after
        registry = self.coordinator.registry
        swept: List[str] = []

        stale = await registry.stale_handles(cutoff)
        if stale:
            logger.info("Sweeping %d stale connection(s)", len(stale))
        for handle in stale:
            try:
                user_id = await self.coordinator.expire(handle)
            except ChatError as exc:
                logger.warning("Could not expire connection %s: %s", handle, exc)
                continue
            if user_id is not None:
                swept.append(user_id)

        # Пропали, будучи в чате, и не вернулись за отведенное время
        try:
            abandoned = await self.coordinator.store.find_stale_paired_users(cutoff)
        except ChatError as exc:
            logger.warning("Could not load abandoned chats: %s", exc)
            abandoned = []
        for user in abandoned:
            if registry.is_live(user.external_id):
                continue
            try:
                former = await self.coordinator.abandon(user.external_id)
            except ChatError as exc:
                logger.warning("Could not end chat of %s: %s", user.external_id, exc)
                continue
            if former is not None:
                swept.append(user.external_id)

        self.last_sweep_at = now
        return swept
