"""
Сервис для управления жизненным циклом каналов живого чата.

Статусы: open -> waiting -> active -> closed (resolved - вариант закрытия).
Все переходы проверяются по таблице STATUS_TRANSITIONS через chat_state.transition.
"""
import datetime
import logging
from typing import List, Optional

from sqlmodel import Session, col, select

from app.core.config import settings
from app.core.exceptions import NotFoundError
from app.models.models import (
    ChatChannel,
    ChatChannelAgent,
    ChatDepartment,
    ChatPriority,
    ChatStatus,
    CloseReason,
    Dealer,
    User,
    utcnow,
)
from app.services import message_service, presence_service, realtime
from app.services.channel_number_service import next_channel_number
from app.services.chat_state import transition


def _get_channel(session: Session, channel_id: int) -> ChatChannel:
    channel = session.get(ChatChannel, channel_id)
    if not channel:
        raise NotFoundError("Channel", channel_id)
    return channel


def _get_agent(session: Session, user_id: int) -> User:
    agent = session.get(User, user_id)
    if not agent:
        raise NotFoundError("Agent", user_id)
    return agent


def _join_channel(session: Session, channel_id: int, user_id: int) -> None:
    """Добавляет агента в участники канала или возвращает покинувшего."""
    membership = session.exec(
        select(ChatChannelAgent).where(
            ChatChannelAgent.channel_id == channel_id, ChatChannelAgent.user_id == user_id
        )
    ).first()
    if membership is None:
        membership = ChatChannelAgent(channel_id=channel_id, user_id=user_id, role="agent")
    else:
        membership.is_active = True
        membership.left_at = None
    session.add(membership)


def _leave_channel(session: Session, channel_id: int, user_id: Optional[int] = None) -> None:
    """Помечает участие агента (или всех агентов) в канале завершенным."""
    statement = select(ChatChannelAgent).where(
        ChatChannelAgent.channel_id == channel_id, ChatChannelAgent.is_active == True  # noqa: E712
    )
    if user_id is not None:
        statement = statement.where(ChatChannelAgent.user_id == user_id)
    for membership in session.exec(statement).all():
        membership.is_active = False
        membership.left_at = utcnow()
        session.add(membership)


async def create_channel(
    session: Session,
    dealer_id: int,
    user_id: int,
    department: ChatDepartment = ChatDepartment.GENERAL,
    subject: Optional[str] = None,
    initial_message: Optional[str] = None,
    priority: ChatPriority = ChatPriority.NORMAL,
) -> ChatChannel:
    """
    Создает новый канал чата.

    1. Проверяет дилера и пользователя.
    2. Выделяет номер канала и сохраняет канал со статусом 'open'.
    3. Добавляет первое сообщение, если оно передано.
    4. Оповещает администраторов о новом чате.
    5. При включенном CHAT_AUTO_ASSIGN назначает наименее загруженного агента.

    :raises NotFoundError: если нет дилера или пользователя.
    """
    dealer = session.get(Dealer, dealer_id)
    if not dealer:
        raise NotFoundError("Dealer", dealer_id)
    if not session.get(User, user_id):
        raise NotFoundError("User", user_id)

    channel = ChatChannel(
        channel_number=next_channel_number(session),
        dealer_id=dealer_id,
        initiated_by_id=user_id,
        department=ChatDepartment(department or ChatDepartment.GENERAL).value,
        subject=subject,
        status=ChatStatus.OPEN.value,
        priority=ChatPriority(priority).value,
    )
    session.add(channel)
    session.commit()
    session.refresh(channel)
    logging.info(f"Channel {channel.channel_number} created for dealer {dealer.code} by user {user_id}.")

    if initial_message:
        # Первое сообщение - часть создания канала, статус остается 'open'
        await message_service.send_message(
            session,
            channel_id=channel.id,
            sender_id=user_id,
            content=initial_message,
            update_status=False,
        )

    realtime.emit_new_chat_notification(
        channel.id, channel.channel_number, dealer.name, channel.department, subject
    )

    if settings.CHAT_AUTO_ASSIGN:
        agent = presence_service.find_available_agent(session, ChatDepartment(channel.department))
        if agent:
            return await assign_channel(session, channel.id, agent.user_id, agent.user_id)

    session.refresh(channel)
    return channel


async def assign_channel(
    session: Session, channel_id: int, assigned_to_id: int, assigned_by_user_id: int
) -> ChatChannel:
    """
    Назначает канал агенту. Статус всегда становится 'active'.

    Агент добавляется в участники канала (или возвращается, если уходил),
    в канал пишется системное сообщение "<Имя> joined the chat", а инициатор,
    новый и предыдущий агенты получают событие назначения.

    :raises NotFoundError: если нет канала или агента.
    :raises InvalidTransitionError: если канал уже закрыт.
    """
    channel = _get_channel(session, channel_id)
    agent = _get_agent(session, assigned_to_id)

    previous_assignee_id = channel.assigned_to_id
    previous_assignee = session.get(User, previous_assignee_id) if previous_assignee_id else None

    transition(channel, ChatStatus.ACTIVE)
    channel.assigned_to_id = assigned_to_id
    session.add(channel)

    if previous_assignee_id != assigned_to_id:
        if previous_assignee_id:
            _leave_channel(session, channel_id, previous_assignee_id)
            presence_service.adjust_active_chats(session, previous_assignee_id, -1)
        presence_service.adjust_active_chats(session, assigned_to_id, +1)
    _join_channel(session, channel_id, assigned_to_id)

    session.commit()
    session.refresh(channel)
    logging.info(f"Channel {channel.channel_number} assigned to agent {assigned_to_id} by {assigned_by_user_id}.")

    await message_service.send_message(
        session,
        channel_id=channel_id,
        sender_id=assigned_by_user_id,
        content=f"{agent.full_name} joined the chat",
        is_system_message=True,
        system_action="assigned",
    )

    target_users = [channel.initiated_by_id, assigned_to_id]
    if previous_assignee_id and previous_assignee_id != assigned_to_id:
        target_users.append(previous_assignee_id)

    realtime.emit_chat_assigned(
        realtime.ChatAssignedEvent(
            channel_id=channel_id,
            channel_number=channel.channel_number,
            assigned_to_id=assigned_to_id,
            assigned_to_name=agent.full_name,
            previous_assignee_id=previous_assignee.id if previous_assignee else None,
            previous_assignee_name=previous_assignee.full_name if previous_assignee else None,
            department=channel.department,
        ),
        target_users,
        channel.dealer_id,
    )

    session.refresh(channel)
    return channel


def _close_reason_text(close_reason: CloseReason, closed_by: Optional[User]) -> str:
    if close_reason == CloseReason.RESOLVED:
        return "Chat resolved"
    if close_reason == CloseReason.DEALER_CLOSED:
        return "Chat closed by dealer"
    if close_reason == CloseReason.AGENT_CLOSED:
        return f"Chat closed by {closed_by.first_name if closed_by else 'agent'}"
    return "Chat closed due to inactivity"


async def close_channel(
    session: Session,
    channel_id: int,
    closed_by_id: int,
    close_reason: CloseReason = CloseReason.RESOLVED,
) -> ChatChannel:
    """
    Закрывает канал.

    При причине 'resolved' дополнительно проставляются resolved_at и resolved_by_id.
    Нагрузка назначенного агента уменьшается, участники канала помечаются ушедшими.

    :raises NotFoundError: если нет канала.
    :raises InvalidTransitionError: если канал уже закрыт.
    """
    close_reason = CloseReason(close_reason)
    channel = _get_channel(session, channel_id)
    closed_by = session.get(User, closed_by_id)

    now = utcnow()
    previous_status = transition(channel, ChatStatus.CLOSED)
    channel.closed_at = now
    channel.closed_by_id = closed_by_id
    channel.close_reason = close_reason.value
    if close_reason == CloseReason.RESOLVED:
        channel.resolved_at = now
        channel.resolved_by_id = closed_by_id
    session.add(channel)

    presence_service.adjust_active_chats(session, channel.assigned_to_id, -1)
    _leave_channel(session, channel_id)

    session.commit()
    session.refresh(channel)
    logging.info(f"Channel {channel.channel_number} closed by {closed_by_id} ({close_reason.value}).")

    await message_service.send_message(
        session,
        channel_id=channel_id,
        sender_id=closed_by_id,
        content=_close_reason_text(close_reason, closed_by),
        is_system_message=True,
        system_action="closed",
    )

    target_users = [channel.initiated_by_id]
    if channel.assigned_to_id:
        target_users.append(channel.assigned_to_id)

    realtime.emit_chat_status(
        realtime.ChatStatusEvent(
            channel_id=channel_id,
            channel_number=channel.channel_number,
            status=ChatStatus.CLOSED.value,
            previous_status=previous_status,
            updated_by_id=closed_by_id,
            updated_by_name=closed_by.full_name if closed_by else None,
            close_reason=close_reason.value,
        ),
        target_users,
        channel.dealer_id,
    )

    session.refresh(channel)
    return channel


async def transfer_channel(
    session: Session,
    channel_id: int,
    department: ChatDepartment,
    new_assignee_id: Optional[int] = None,
    transferred_by_id: Optional[int] = None,
) -> ChatChannel:
    """
    Передает канал в другой отдел и, опционально, другому агенту.

    С новым агентом канал становится 'active', без него возвращается в 'open'
    и снова анонсируется администраторам.

    :raises NotFoundError: если нет канала или нового агента.
    :raises InvalidTransitionError: если канал уже закрыт.
    """
    department = ChatDepartment(department)
    channel = _get_channel(session, channel_id)
    if new_assignee_id is not None:
        _get_agent(session, new_assignee_id)
    dealer = session.get(Dealer, channel.dealer_id)

    previous_department = channel.department
    previous_assignee_id = channel.assigned_to_id

    transition(channel, ChatStatus.ACTIVE if new_assignee_id else ChatStatus.OPEN)
    channel.department = department.value
    channel.assigned_to_id = new_assignee_id
    channel.transfer_count = ChatChannel.transfer_count + 1
    session.add(channel)

    if previous_assignee_id != new_assignee_id:
        if previous_assignee_id:
            _leave_channel(session, channel_id, previous_assignee_id)
            presence_service.adjust_active_chats(session, previous_assignee_id, -1)
        presence_service.adjust_active_chats(session, new_assignee_id, +1)
    if new_assignee_id:
        _join_channel(session, channel_id, new_assignee_id)

    session.commit()
    session.refresh(channel)
    logging.info(
        f"Channel {channel.channel_number} transferred from {previous_department} to {department.value}"
        f" (assignee: {new_assignee_id})."
    )

    if transferred_by_id:
        await message_service.send_message(
            session,
            channel_id=channel_id,
            sender_id=transferred_by_id,
            content=f"Chat transferred to {department.value} department",
            is_system_message=True,
            system_action="transferred",
        )

    realtime.emit_new_chat_notification(
        channel.id,
        channel.channel_number,
        dealer.name if dealer else "Unknown",
        department.value,
        f"Transferred from {previous_department}",
    )

    session.refresh(channel)
    return channel


async def close_inactive_channels(
    session: Session,
    idle_minutes: int,
    closed_by_id: Optional[int] = None,
    now: Optional[datetime.datetime] = None,
) -> List[ChatChannel]:
    """
    Закрывает с причиной 'timeout' каналы без активности дольше `idle_minutes`.

    Активность - время последнего сообщения, а если сообщений нет - время создания.
    Каналы закрываются по одному: если закрытие упало, транзакция откатывается,
    а проход продолжается со следующего канала.
    :param closed_by_id: От чьего имени закрывать; по умолчанию инициатор канала.
    :return: Список закрытых каналов.
    """
    now = now or utcnow()
    threshold = now - datetime.timedelta(minutes=idle_minutes)

    statement = select(ChatChannel).where(col(ChatChannel.status) != ChatStatus.CLOSED.value)
    # Номера и инициаторы запоминаются заранее: после rollback объекты сессии устаревают
    candidates = [
        (channel.id, channel.channel_number, channel.initiated_by_id)
        for channel in session.exec(statement).all()
        if (channel.last_message_at or channel.created_at) < threshold
    ]

    closed = []
    for channel_id, channel_number, initiated_by_id in candidates:
        try:
            closed.append(
                await close_channel(session, channel_id, closed_by_id or initiated_by_id, CloseReason.TIMEOUT)
            )
        except Exception as e:
            session.rollback()
            logging.error(f"Failed to close inactive channel {channel_number}: {e}", exc_info=True)
    if closed:
        logging.info(f"Closed {len(closed)} inactive channel(s).")
    return closed
