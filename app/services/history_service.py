"""
Чтение каналов для списков, журналов и панели статистики.
"""
import datetime
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel
from sqlalchemy import case, func
from sqlmodel import Session, col, select

from app.core.config import settings
from app.core.exceptions import NotFoundError
from app.models.models import ChatChannel, ChatDepartment, ChatPriority, ChatStatus, CloseReason, utcnow

# Порядок сортировки в админке: сначала открытые, потом ожидающие и т.д.
_STATUS_ORDER = case(
    {status.value: index for index, status in enumerate(ChatStatus)},
    value=ChatChannel.status,
    else_=len(ChatStatus),
)
_PRIORITY_ORDER = case(
    {priority.value: index for index, priority in enumerate(ChatPriority)},
    value=ChatChannel.priority,
    else_=0,
)


class ChatStats(BaseModel):
    total_chats: int
    open_chats: int
    active_chats: int
    resolved_today: int
    avg_response_time: Optional[float] = None
    by_department: Dict[str, int]


def _status_values(statuses: Optional[Sequence[ChatStatus]]) -> Optional[List[str]]:
    if not statuses:
        return None
    return [ChatStatus(status).value for status in statuses]


def get_channel(session: Session, channel_id: int) -> Optional[ChatChannel]:
    return session.get(ChatChannel, channel_id)


def get_channel_by_number(session: Session, channel_number: str) -> Optional[ChatChannel]:
    statement = select(ChatChannel).where(ChatChannel.channel_number == channel_number.strip().upper())
    return session.exec(statement).first()


def get_open_channel_for_user(session: Session, user_id: int) -> Optional[ChatChannel]:
    """Последний незакрытый канал, начатый пользователем."""
    statement = (
        select(ChatChannel)
        .where(
            ChatChannel.initiated_by_id == user_id,
            col(ChatChannel.status) != ChatStatus.CLOSED.value,
        )
        .order_by(col(ChatChannel.created_at).desc(), col(ChatChannel.id).desc())
        .limit(1)
    )
    return session.exec(statement).first()


def get_last_closed_channel_for_user(session: Session, user_id: int) -> Optional[ChatChannel]:
    """Последний закрытый канал пользователя (для оценки работы поддержки)."""
    statement = (
        select(ChatChannel)
        .where(
            ChatChannel.initiated_by_id == user_id,
            ChatChannel.status == ChatStatus.CLOSED.value,
        )
        .order_by(col(ChatChannel.closed_at).desc(), col(ChatChannel.id).desc())
        .limit(1)
    )
    return session.exec(statement).first()


def get_dealer_channels(
    session: Session,
    dealer_id: int,
    statuses: Optional[Sequence[ChatStatus]] = None,
    limit: Optional[int] = None,
) -> List[ChatChannel]:
    """Каналы дилера, по умолчанию во всех статусах, свежие сверху."""
    statement = select(ChatChannel).where(ChatChannel.dealer_id == dealer_id)
    status_values = _status_values(statuses)
    if status_values:
        statement = statement.where(col(ChatChannel.status).in_(status_values))
    statement = statement.order_by(
        col(ChatChannel.last_message_at).desc().nulls_last(), col(ChatChannel.id).desc()
    ).limit(limit or settings.CHAT_HISTORY_PAGE_SIZE)
    return list(session.exec(statement).all())


def get_admin_channels(
    session: Session,
    statuses: Optional[Sequence[ChatStatus]] = None,
    department: Optional[ChatDepartment] = None,
    assigned_to_id: Optional[int] = None,
    unassigned_only: bool = False,
    limit: Optional[int] = None,
) -> List[ChatChannel]:
    """
    Каналы для панели администратора.

    По умолчанию показываются все незакрытые. Порядок: по статусу (open первыми),
    по приоритету (urgent первыми), затем по последней активности.
    """
    statement = select(ChatChannel)
    status_values = _status_values(statuses)
    if status_values:
        statement = statement.where(col(ChatChannel.status).in_(status_values))
    else:
        statement = statement.where(col(ChatChannel.status) != ChatStatus.CLOSED.value)
    if department is not None:
        statement = statement.where(ChatChannel.department == ChatDepartment(department).value)
    if unassigned_only:
        statement = statement.where(col(ChatChannel.assigned_to_id).is_(None))
    elif assigned_to_id is not None:
        statement = statement.where(ChatChannel.assigned_to_id == assigned_to_id)

    statement = statement.order_by(
        _STATUS_ORDER,
        _PRIORITY_ORDER.desc(),
        col(ChatChannel.last_message_at).desc().nulls_last(),
        col(ChatChannel.id).desc(),
    ).limit(limit or settings.CHAT_ADMIN_PAGE_SIZE)
    return list(session.exec(statement).all())


def get_chat_history(
    session: Session,
    dealer_id: Optional[int] = None,
    department: Optional[ChatDepartment] = None,
    status: Optional[ChatStatus] = None,
    start_date: Optional[datetime.datetime] = None,
    end_date: Optional[datetime.datetime] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> Tuple[List[ChatChannel], int]:
    """
    Журнал чатов с фильтрами и постраничной выборкой.

    :return: Страница каналов (новые сверху) и общее количество по фильтру.
    """
    conditions = []
    if dealer_id is not None:
        conditions.append(ChatChannel.dealer_id == dealer_id)
    if department is not None:
        conditions.append(ChatChannel.department == ChatDepartment(department).value)
    if status is not None:
        conditions.append(ChatChannel.status == ChatStatus(status).value)
    if start_date is not None:
        conditions.append(ChatChannel.created_at >= start_date)
    if end_date is not None:
        conditions.append(ChatChannel.created_at <= end_date)

    statement = (
        select(ChatChannel)
        .where(*conditions)
        .order_by(col(ChatChannel.created_at).desc(), col(ChatChannel.id).desc())
        .offset(offset)
        .limit(limit or settings.CHAT_HISTORY_PAGE_SIZE)
    )
    channels = list(session.exec(statement).all())
    total = session.exec(select(func.count(col(ChatChannel.id))).where(*conditions)).one()
    return channels, total


def _count(session: Session, *conditions) -> int:
    return session.exec(select(func.count(col(ChatChannel.id))).where(*conditions)).one()


def get_chat_stats(
    session: Session,
    start_date: Optional[datetime.datetime] = None,
    end_date: Optional[datetime.datetime] = None,
) -> ChatStats:
    """
    Счетчики для панели: всего (с учетом дат), открытые, активные, решенные сегодня,
    и незакрытые каналы по отделам.
    """
    date_conditions = []
    if start_date is not None:
        date_conditions.append(ChatChannel.created_at >= start_date)
    if end_date is not None:
        date_conditions.append(ChatChannel.created_at <= end_date)

    # Начало текущих суток по UTC
    today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)

    by_department_rows = session.exec(
        select(ChatChannel.department, func.count(col(ChatChannel.id)))
        .where(col(ChatChannel.status) != ChatStatus.CLOSED.value)
        .group_by(ChatChannel.department)
    ).all()

    return ChatStats(
        total_chats=_count(session, *date_conditions),
        open_chats=_count(session, ChatChannel.status == ChatStatus.OPEN.value),
        active_chats=_count(session, ChatChannel.status == ChatStatus.ACTIVE.value),
        resolved_today=_count(
            session,
            ChatChannel.status == ChatStatus.CLOSED.value,
            ChatChannel.close_reason == CloseReason.RESOLVED.value,
            col(ChatChannel.resolved_at) >= today,
        ),
        # TODO: считать по времени первого ответа агента, когда оно начнет сохраняться
        avg_response_time=None,
        by_department={department: count for department, count in by_department_rows},
    )


def submit_satisfaction_rating(
    session: Session, channel_id: int, rating: int, comment: Optional[str] = None
) -> ChatChannel:
    """
    Сохраняет оценку дилера (0-5) и комментарий.

    :raises NotFoundError: если нет канала.
    :raises ValueError: если оценка вне диапазона 0-5.
    """
    if not 0 <= rating <= 5:
        raise ValueError("Rating must be between 0 and 5")

    channel = session.get(ChatChannel, channel_id)
    if not channel:
        raise NotFoundError("Channel", channel_id)

    channel.satisfaction_rating = rating
    channel.satisfaction_comment = comment
    session.add(channel)
    session.commit()
    session.refresh(channel)
    logging.info(f"Channel {channel.channel_number} rated {rating}.")
    return channel
