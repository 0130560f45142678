import random
import uuid

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from anonchat.core.database import Base
from anonchat.models import message, user  # noqa: F401
from anonchat.services.pool import WaitingPool
from anonchat.services.session import ChatCoordinator
from anonchat.services.store import ChatStore


class FakeConnection:
    """Транспорт, запоминающий отправленные кадры."""

    def __init__(self) -> None:
        self.sent = []
        self.closed_with = None
        self.fail = False

    async def send_json(self, data) -> None:
        if self.fail:
            raise RuntimeError("connection lost")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code

    def types(self):
        return [frame["type"] for frame in self.sent]

    def events(self, event_type):
        return [frame["data"] for frame in self.sent if frame["type"] == event_type]

    def clear(self) -> None:
        self.sent.clear()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def store(engine):
    return ChatStore(sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))


@pytest_asyncio.fixture
async def coordinator(store):
    coordinator = ChatCoordinator(store, pool=WaitingPool(random.Random(7)))
    yield coordinator
    await coordinator.registry.wait_dropped()


@pytest.fixture
def connect(coordinator):
    async def _connect(identity, handle=None):
        connection = FakeConnection()
        handle = handle or uuid.uuid4().hex
        await coordinator.register(handle, identity, connection)
        return handle, connection

    return _connect


@pytest.fixture
def pair(coordinator, connect):
    """Регистрирует двух пользователей и соединяет их в чат."""

    async def _pair(first="alice", second="bob"):
        first_handle, first_conn = await connect(first)
        second_handle, second_conn = await connect(second)
        await coordinator.find_partner(first_handle)
        await coordinator.find_partner(second_handle)
        first_conn.clear()
        second_conn.clear()
        return (first_handle, first_conn), (second_handle, second_conn)

    return _pair


