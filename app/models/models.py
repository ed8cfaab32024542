"""
Модуль с моделями данных для базы данных.

Определяет таблицы дилеров, пользователей и живого чата с использованием SQLModel,
а также перечисления статусов и таблицу допустимых переходов статусов канала.
"""
import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import JSON, Column, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class ChatStatus(str, Enum):
    OPEN = "open"
    WAITING = "waiting"
    ACTIVE = "active"
    RESOLVED = "resolved"
    CLOSED = "closed"


class ChatDepartment(str, Enum):
    GENERAL = "general"
    SALES = "sales"
    SERVICE = "service"
    WARRANTY = "warranty"
    BILLING = "billing"
    TECHNICAL = "technical"


class ChatPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class CloseReason(str, Enum):
    RESOLVED = "resolved"
    DEALER_CLOSED = "dealer_closed"
    AGENT_CLOSED = "agent_closed"
    TIMEOUT = "timeout"


class MessageType(str, Enum):
    TEXT = "text"
    SYSTEM = "system"
    ATTACHMENT = "attachment"


class AgentPresence(str, Enum):
    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


# Единственное место, где описаны допустимые переходы статусов канала.
# Из closed выхода нет.
STATUS_TRANSITIONS: Dict[ChatStatus, FrozenSet[ChatStatus]] = {
    ChatStatus.OPEN: frozenset(
        {ChatStatus.OPEN, ChatStatus.WAITING, ChatStatus.ACTIVE, ChatStatus.RESOLVED, ChatStatus.CLOSED}
    ),
    ChatStatus.WAITING: frozenset(
        {ChatStatus.OPEN, ChatStatus.ACTIVE, ChatStatus.RESOLVED, ChatStatus.CLOSED}
    ),
    ChatStatus.ACTIVE: frozenset(
        {ChatStatus.OPEN, ChatStatus.ACTIVE, ChatStatus.RESOLVED, ChatStatus.CLOSED}
    ),
    ChatStatus.RESOLVED: frozenset({ChatStatus.CLOSED}),
    ChatStatus.CLOSED: frozenset(),
}


def utcnow() -> datetime.datetime:
    """Текущее время в UTC с часовым поясом: колонки datetime хранят только aware-значения."""
    return datetime.datetime.now(datetime.timezone.utc)


def can_transition(current: str, target: str) -> bool:
    """Проверяет, разрешен ли переход канала из статуса `current` в `target`."""
    return ChatStatus(target) in STATUS_TRANSITIONS[ChatStatus(current)]


class Dealer(SQLModel, table=True):
    """
    Модель дилера (тенанта портала).
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    code: str = Field(index=True, unique=True, description="Короткий код дилера")


class User(SQLModel, table=True):
    """
    Модель пользователя портала: сотрудник дилера или администратор.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    first_name: str
    last_name: str
    role: str = Field(index=True, description="Роль: dealer_admin, dealer_user, admin, super_admin")
    dealer_id: Optional[int] = Field(default=None, foreign_key="dealer.id")
    telegram_id: Optional[int] = Field(
        default=None, index=True, unique=True, description="Привязанный Telegram User ID"
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class ChatChannel(SQLModel, table=True):
    """
    Модель канала живого чата (одно обращение в поддержку).
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    channel_number: str = Field(index=True, unique=True, description="Номер вида CHAT-2026-00001")
    dealer_id: int = Field(foreign_key="dealer.id", index=True)
    initiated_by_id: int = Field(foreign_key="user.id", index=True)
    assigned_to_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    department: str = Field(default=ChatDepartment.GENERAL.value, index=True)
    subject: Optional[str] = None
    status: str = Field(default=ChatStatus.OPEN.value, index=True)
    priority: str = Field(default=ChatPriority.NORMAL.value)

    # Денормализованные счетчики
    message_count: int = Field(default=0)
    last_message_at: Optional[datetime.datetime] = None
    last_message_by_id: Optional[int] = Field(default=None, foreign_key="user.id")
    transfer_count: int = Field(default=0)

    closed_at: Optional[datetime.datetime] = None
    closed_by_id: Optional[int] = Field(default=None, foreign_key="user.id")
    close_reason: Optional[str] = None
    resolved_at: Optional[datetime.datetime] = None
    resolved_by_id: Optional[int] = Field(default=None, foreign_key="user.id")

    satisfaction_rating: Optional[int] = Field(default=None, description="Оценка 0-5")
    satisfaction_comment: Optional[str] = None

    created_at: datetime.datetime = Field(default_factory=utcnow)
    updated_at: datetime.datetime = Field(
        default_factory=utcnow,
        sa_column_kwargs={"onupdate": utcnow},
    )


class ChatMessage(SQLModel, table=True):
    """
    Модель сообщения в канале. Сообщения не удаляются физически, только флагом is_deleted.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    channel_id: int = Field(foreign_key="chatchannel.id", index=True)
    sender_id: int = Field(foreign_key="user.id")
    content: str = Field(sa_column=Column(Text, nullable=False))
    message_type: str = Field(default=MessageType.TEXT.value)
    attachments: Optional[str] = Field(default=None, description="JSON-список вложений")
    is_system_message: bool = Field(default=False)
    system_action: Optional[str] = Field(default=None, description="assigned, closed, transferred")
    is_edited: bool = Field(default=False)
    is_deleted: bool = Field(default=False, index=True)
    read_at: Optional[datetime.datetime] = None
    read_by_id: Optional[int] = Field(default=None, foreign_key="user.id")
    created_at: datetime.datetime = Field(default_factory=utcnow, index=True)


class ChatChannelAgent(SQLModel, table=True):
    """
    Участие агента в канале. Агент, покинувший канал, остается в таблице с left_at.
    """
    __table_args__ = (UniqueConstraint("channel_id", "user_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    channel_id: int = Field(foreign_key="chatchannel.id", index=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    role: str = Field(default="agent")
    is_active: bool = Field(default=True)
    joined_at: datetime.datetime = Field(default_factory=utcnow)
    left_at: Optional[datetime.datetime] = None
    last_typing_at: Optional[datetime.datetime] = None


class ChatAgentStatus(SQLModel, table=True):
    """
    Текущее присутствие агента. История не хранится, запись перезаписывается.
    """
    user_id: int = Field(foreign_key="user.id", primary_key=True)
    status: str = Field(default=AgentPresence.OFFLINE.value, index=True)
    status_message: Optional[str] = None
    departments: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    auto_assign_enabled: bool = Field(default=True)
    active_chats_count: int = Field(default=0)
    max_active_chats: int = Field(default=5)
    last_online_at: Optional[datetime.datetime] = None
    last_activity_at: Optional[datetime.datetime] = None


class ChatChannelSequence(SQLModel, table=True):
    """
    Счетчик номеров каналов, одна строка на год.
    """
    year: int = Field(primary_key=True)
    last_value: int = Field(default=0)
