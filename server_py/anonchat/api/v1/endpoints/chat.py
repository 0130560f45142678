from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from anonchat.core.dependencies import get_coordinator, get_sweeper
from anonchat.core.errors import NotRegistered
from anonchat.schemas.chat import ChatStats, MessageResponse
from anonchat.schemas.user import ChatUserStatus
from anonchat.services.session import ChatCoordinator
from anonchat.services.sweeper import LivenessSweeper

router = APIRouter()


@router.get("/users/{external_id}", response_model=ChatUserStatus)
async def get_user_status(
    external_id: str,
    coordinator: ChatCoordinator = Depends(get_coordinator),
):
    """Пользователь и производное состояние сессии."""
    user = await coordinator.store.find_user_by_external_id(external_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Пользователь не найден")
    try:
        state = await coordinator.state_of(external_id)
    except NotRegistered:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Пользователь не найден")
    return ChatUserStatus(
        id=user.id,
        external_id=user.external_id,
        is_active=user.is_active,
        current_partner_id=user.current_partner_id,
        last_active_at=user.last_active_at,
        state=state.value,
        searching=external_id in coordinator.pool,
        online=coordinator.registry.is_live(external_id),
    )


@router.get("/history", response_model=List[MessageResponse])
async def get_history(
    user_a: str = Query(..., min_length=1),
    user_b: str = Query(..., min_length=1),
    coordinator: ChatCoordinator = Depends(get_coordinator),
):
    """История переписки пары в порядке отправки."""
    return await coordinator.relay.get_history(user_a, user_b)


@router.get("/stats", response_model=ChatStats)
async def get_stats(
    coordinator: ChatCoordinator = Depends(get_coordinator),
    sweeper: LivenessSweeper = Depends(get_sweeper),
):
    stats = coordinator.stats()
    return ChatStats(
        connections=stats["connections"],
        identities=stats["identities"],
        waiting=stats["waiting"],
        sweeper_running=sweeper.running,
        last_sweep_at=sweeper.last_sweep_at,
    )
