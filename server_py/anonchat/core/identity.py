from datetime import timedelta
from typing import Any, Optional

from jose import JWTError, jwt

from anonchat.core.config import settings
from anonchat.core.database import utcnow
from anonchat.core.errors import InvalidCommand

ALGORITHM = "HS256"
MAX_IDENTITY_LENGTH = 128


def resolve_identity(raw: Any) -> str:
    """Возвращает external id из того, что прислал клиент при регистрации.

    Без ``REQUIRE_SIGNED_IDENTITY`` принимается любой непустой идентификатор
    (например, Telegram user id). С ним ожидается JWT, подписанный
    ``SECRET_KEY``, и external id берется из ``sub``.
    """
    if raw is None or isinstance(raw, bool):
        raise InvalidCommand("Identity is required", reason="invalid_identity")
    identity = str(raw).strip()
    if not identity:
        raise InvalidCommand("Identity is required", reason="invalid_identity")

    if settings.REQUIRE_SIGNED_IDENTITY:
        try:
            payload = jwt.decode(identity, settings.SECRET_KEY, algorithms=[ALGORITHM])
        except JWTError:
            raise InvalidCommand("Identity token is invalid", reason="invalid_identity")
        subject = payload.get("sub")
        if subject is None or not str(subject).strip():
            raise InvalidCommand("Identity token has no subject", reason="invalid_identity")
        identity = str(subject).strip()

    if len(identity) > MAX_IDENTITY_LENGTH:
        raise InvalidCommand("Identity is too long", reason="invalid_identity")
    return identity


def create_identity_token(external_id: str, expires_minutes: Optional[int] = None) -> str:
    """Подписанный токен личности для клиентов и скриптов."""
    claims: dict = {"sub": str(external_id)}
    if expires_minutes:
        claims["exp"] = utcnow() + timedelta(minutes=expires_minutes)
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=ALGORITHM)
