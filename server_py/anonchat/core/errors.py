from __future__ import annotations


class ChatError(Exception):
    """Базовая ошибка чата. ``reason`` уходит клиенту в событии ``error``."""

    reason = "chat_error"

    def __init__(self, message: str = "", *, reason: str | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        if reason:
            self.reason = reason

    def to_event(self) -> dict:
        return {"type": "error", "data": {"reason": self.reason, "message": str(self)}}


class NotRegistered(ChatError):
    reason = "not_registered"


class NoActiveSession(ChatError):
    reason = "no_active_session"


class InvalidMessage(ChatError):
    reason = "invalid_message"


class InvalidCommand(ChatError):
    reason = "invalid_command"


class PartnerUnreachable(ChatError):
    """Кандидат выбран, но его соединение уже не живое."""

    reason = "partner_unreachable"


class StoreUnavailable(ChatError):
    reason = "store_unavailable"
