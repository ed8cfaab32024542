"""
Исключения сервисного слоя чата.
"""
from typing import Any


class ChatError(Exception):
    """Базовое исключение для ошибок живого чата."""


class NotFoundError(ChatError):
    """
    Сущность (канал, дилер, пользователь, агент) запрошена по ID, но отсутствует в БД.
    """

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class InvalidTransitionError(ChatError):
    """Операция пытается перевести канал в недопустимый статус."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move chat from '{current}' to '{target}'")
