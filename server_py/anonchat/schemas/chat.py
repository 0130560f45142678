from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator


class RegisterCommand(BaseModel):
    identity: Any = Field(
        default=None,
        validation_alias=AliasChoices("identity", "telegramId", "token"),
    )


class SendMessageCommand(BaseModel):
    content: str

    @field_validator("content", mode="before")
    @classmethod
    def clean_content(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()


class MessageResponse(BaseModel):
    id: int
    sender_id: str = Field(alias="senderId")
    receiver_id: str = Field(alias="receiverId")
    content: str
    timestamp: datetime

    model_config = {
        "from_attributes": True,
        "populate_by_name": True,
    }


class ChatStats(BaseModel):
    connections: int
    identities: int
    waiting: int
    sweeper_running: bool = Field(alias="sweeperRunning")
    last_sweep_at: Optional[datetime] = Field(default=None, alias="lastSweepAt")

    model_config = {"populate_by_name": True}
