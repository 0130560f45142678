from sqlalchemy.ext.asyncio import create_async_engine
from anonchat.core.config import settings
from anonchat.core.database import Base

# Импортируем модели чтобы они попали в metadata перед созданием таблиц
from anonchat.models import user  # noqa: F401
from anonchat.models import message  # noqa: F401

async def init_db():
    """Инициализация базы данных и создание таблиц"""
    # Гарантируем наличие директории для файла базы данных
    settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
    # Создаем временный движок для инициализации
    engine = create_async_engine(settings.DATABASE_URL)

    async with engine.begin() as conn:
        # Создаем все таблицы
        await conn.run_sync(Base.metadata.create_all)
    
    # Закрываем движок
    await engine.dispose()
