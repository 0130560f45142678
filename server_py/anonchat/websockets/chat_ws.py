from __future__ import annotations

import asyncio
import logging
import uuid

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from anonchat.core.dependencies import get_coordinator
from anonchat.core.errors import ChatError
from anonchat.services.session import ChatCoordinator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/chat")
async def chat_websocket(
    websocket: WebSocket,
    coordinator: ChatCoordinator = Depends(get_coordinator),
) -> None:
    await websocket.accept()
    handle = uuid.uuid4().hex
    logger.info("New client connected: %s", handle)
    try:
        while True:
            try:
                data = await websocket.receive_json()
            except (KeyError, ValueError):
                await websocket.send_json(
                    {"type": "error", "data": {"reason": "invalid_command", "message": "Frame is not valid JSON"}}
                )
                continue
            try:
                await coordinator.dispatch(handle, websocket, data)
            except ChatError as exc:
                await websocket.send_json(exc.to_event())
    except WebSocketDisconnect:
        pass
    except Exception:  # noqa: BLE001
        logger.exception("Chat websocket error")
        try:
            await websocket.close(code=1011)
        except Exception:  # noqa: BLE001
            pass
    finally:
        # Отмена задачи сокета не должна прерывать запись об отключении
        await asyncio.shield(_release(coordinator, handle))


async def _release(coordinator: ChatCoordinator, handle: str) -> None:
    try:
        await coordinator.disconnect(handle)
    except ChatError as exc:
        logger.warning("Disconnect of %s not recorded: %s", handle, exc)
