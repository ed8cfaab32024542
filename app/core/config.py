"""
Модуль конфигурации проекта.

Загружает настройки из переменных окружения и .env файла.
Использует Pydantic V2 для валидации данных.
"""
from typing import List, Optional

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

CHAT_DEPARTMENTS = ("general", "sales", "service", "warranty", "billing", "technical")


class Settings(BaseSettings):
    """
    Класс для хранения и валидации настроек приложения.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # --- Database Settings ---
    DATABASE_URL: str = "sqlite:///thor_chat.db"
    DATABASE_ECHO: bool = False

    # --- Telegram Bot Settings ---
    BOT_TOKEN: Optional[SecretStr] = None
    SUPERGROUP_ID: Optional[int] = None

    # --- Live Chat Settings ---
    AGENT_IDS: str = ""  # ID пользователей портала через запятую, например "12,34"
    CHAT_DEFAULT_DEPARTMENTS: str = ",".join(CHAT_DEPARTMENTS)
    CHAT_MAX_ACTIVE_CHATS: int = 5
    CHAT_AUTO_ASSIGN: bool = False
    CHAT_INACTIVITY_TIMEOUT_MINUTES: int = 0  # 0 - автозакрытие выключено
    CHAT_SWEEP_INTERVAL_SECONDS: int = 300
    CHAT_HISTORY_PAGE_SIZE: int = 50
    CHAT_ADMIN_PAGE_SIZE: int = 100

    @field_validator("AGENT_IDS")
    @classmethod
    def parse_agent_ids(cls, v: str) -> List[int]:
        """Преобразует строку ID агентов в список чисел. Пустая строка - агентов нет."""
        if not v or not v.strip():
            return []
        try:
            return [int(agent_id.strip()) for agent_id in v.split(",") if agent_id.strip()]
        except ValueError:
            raise ValueError("AGENT_IDS должен содержать только числа, разделенные запятой.")

    @field_validator("CHAT_DEFAULT_DEPARTMENTS")
    @classmethod
    def parse_departments(cls, v: str) -> List[str]:
        departments = [item.strip().lower() for item in v.split(",") if item.strip()]
        unknown = [item for item in departments if item not in CHAT_DEPARTMENTS]
        if unknown:
            raise ValueError(f"Неизвестные отделы в CHAT_DEFAULT_DEPARTMENTS: {', '.join(unknown)}")
        return departments


# Создаем единственный экземпляр настроек для всего приложения
settings = Settings()
