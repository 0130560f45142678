from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional

# Схема для ответа с данными пользователя
class ChatUserResponse(BaseModel):
    id: int
    external_id: str = Field(alias="externalId")
    is_active: bool = Field(alias="isActive")
    current_partner_id: Optional[str] = Field(default=None, alias="currentPartnerId")
    last_active_at: datetime = Field(alias="lastActiveAt")

    model_config = {
        "from_attributes": True,
        "populate_by_name": True,
    }


# Пользователь вместе с производным состоянием сессии
class ChatUserStatus(ChatUserResponse):
    state: str
    searching: bool = False
    online: bool = False
