"""
Модуль для управления сессиями базы данных.
"""
from sqlmodel import Session, SQLModel, create_engine

from app.core.config import settings
from app.models import models  # noqa: F401 - регистрирует таблицы в SQLModel.metadata

connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    # Обязательный флаг для SQLite при работе из асинхронных хэндлеров aiogram.
    connect_args["check_same_thread"] = False

engine = create_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO, connect_args=connect_args)


def create_db_and_tables():
    """
    Создает все таблицы чата.

    Вызывается один раз при старте приложения.
    """
    SQLModel.metadata.create_all(engine)


def get_session():
    """
    Зависимость (dependency) для получения сессии БД.

    Использует `yield` для гарантии закрытия сессии после использования.
    """
    with Session(engine) as session:
        yield session
