"""
Сервис сообщений живого чата: отправка, история и отметки о прочтении.
"""
import datetime
import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import update
from sqlmodel import Session, col, select

from app.core.config import settings
from app.core.exceptions import NotFoundError
from app.models.models import ChatChannel, ChatChannelAgent, ChatMessage, ChatStatus, MessageType, User, utcnow
from app.services import realtime
from app.services.chat_state import transition


class Attachment(BaseModel):
    filename: str
    url: str
    mime_type: str
    size: int


def channel_participants(session: Session, channel: ChatChannel) -> set:
    """Инициатор, назначенный агент и все активные участники канала."""
    participants = {channel.initiated_by_id}
    if channel.assigned_to_id:
        participants.add(channel.assigned_to_id)
    statement = select(ChatChannelAgent.user_id).where(
        ChatChannelAgent.channel_id == channel.id, ChatChannelAgent.is_active == True  # noqa: E712
    )
    participants.update(session.exec(statement).all())
    return participants


def decode_attachments(message: ChatMessage) -> List[Dict[str, Any]]:
    if not message.attachments:
        return []
    return json.loads(message.attachments)


async def send_message(
    session: Session,
    channel_id: int,
    sender_id: int,
    content: str,
    message_type: MessageType = MessageType.TEXT,
    attachments: Optional[List[Dict[str, Any]]] = None,
    is_system_message: bool = False,
    system_action: Optional[str] = None,
    *,
    update_status: bool = True,
) -> ChatMessage:
    """
    Добавляет сообщение в канал.

    1. Сохраняет сообщение (вложения сериализуются в JSON-список).
    2. Обновляет счетчики канала: last_message_at, last_message_by_id, message_count.
    3. Если канал открыт и пишет дилер, переводит канал в 'waiting'.
    4. Рассылает событие всем участникам, кроме отправителя.

    Сообщение и счетчики канала фиксируются одним коммитом.

    :param session: Сессия базы данных.
    :param channel_id: ID канала.
    :param sender_id: ID отправителя (для системных сообщений - инициатор действия).
    :param update_status: False для первого сообщения, записанного при создании канала:
        такой канал остается 'open'.
    :return: Сохраненное сообщение.
    :raises NotFoundError: если нет канала или отправителя.
    """
    channel = session.get(ChatChannel, channel_id)
    if not channel:
        raise NotFoundError("Channel", channel_id)

    sender = session.get(User, sender_id)
    if not sender:
        raise NotFoundError("Sender", sender_id)

    attachment_list = None
    if attachments is not None:
        attachment_list = [Attachment.model_validate(item).model_dump() for item in attachments]

    message = ChatMessage(
        channel_id=channel_id,
        sender_id=sender_id,
        content=content,
        message_type=MessageType(message_type).value,
        attachments=json.dumps(attachment_list) if attachment_list is not None else None,
        is_system_message=is_system_message,
        system_action=system_action,
    )
    session.add(message)

    channel.last_message_at = utcnow()
    channel.last_message_by_id = sender_id
    # Инкремент на стороне БД, чтобы параллельные отправители не теряли обновления
    channel.message_count = ChatChannel.message_count + 1
    if update_status and channel.status == ChatStatus.OPEN and "dealer" in sender.role:
        transition(channel, ChatStatus.WAITING)
        logging.info(f"Channel {channel.channel_number} is now waiting for an agent.")
    session.add(channel)

    session.commit()
    session.refresh(message)
    session.refresh(channel)

    if not is_system_message or system_action:
        targets = channel_participants(session, channel)
        targets.discard(sender_id)
        event = realtime.ChatMessageEvent(
            channel_id=channel.id,
            channel_number=channel.channel_number,
            message_id=message.id,
            sender_id=sender.id,
            sender_name=sender.full_name,
            sender_role=sender.role,
            content=content,
            message_type=message.message_type,
            attachments=attachment_list,
            is_system_message=is_system_message,
            system_action=system_action,
            created_at=message.created_at,
        )
        realtime.emit_chat_message(event, sorted(targets), channel.dealer_id)

    return message


def get_channel_messages(
    session: Session,
    channel_id: int,
    limit: Optional[int] = None,
    before: Optional[datetime.datetime] = None,
) -> List[ChatMessage]:
    """
    Последние `limit` неудаленных сообщений канала, созданных раньше `before`.

    Выборка идет от новых к старым, а возвращается в хронологическом порядке.
    """
    statement = select(ChatMessage).where(
        ChatMessage.channel_id == channel_id, ChatMessage.is_deleted == False  # noqa: E712
    )
    if before is not None:
        statement = statement.where(ChatMessage.created_at < before)
    statement = statement.order_by(
        col(ChatMessage.created_at).desc(), col(ChatMessage.id).desc()
    ).limit(limit or settings.CHAT_HISTORY_PAGE_SIZE)

    messages = list(session.exec(statement).all())
    messages.reverse()
    return messages


def mark_messages_read(
    session: Session, channel_id: int, user_id: int, up_to_message_id: Optional[int] = None
) -> int:
    """
    Отмечает прочитанными чужие непрочитанные сообщения канала.

    :param up_to_message_id: Если задан, отмечаются только сообщения не новее этого.
    :return: Количество отмеченных сообщений.
    """
    statement = update(ChatMessage).where(
        ChatMessage.channel_id == channel_id,
        ChatMessage.sender_id != user_id,
        col(ChatMessage.read_at).is_(None),
    )

    if up_to_message_id is not None:
        up_to_message = session.get(ChatMessage, up_to_message_id)
        if up_to_message:
            statement = statement.where(ChatMessage.created_at <= up_to_message.created_at)

    result = session.exec(statement.values(read_at=utcnow(), read_by_id=user_id))
    session.commit()
    return result.rowcount
