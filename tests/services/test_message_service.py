import datetime

import pytest
from sqlmodel import Session

from app.core.exceptions import NotFoundError
from app.models.models import ChatChannel, ChatChannelAgent, ChatMessage, ChatStatus, utcnow
from app.services import channel_service
from app.services.channel_number_service import next_channel_number
from app.services.message_service import (
    decode_attachments,
    get_channel_messages,
    mark_messages_read,
    send_message,
)


@pytest.fixture(name="channel")
def channel_fixture(session: Session, dealer, dealer_user) -> ChatChannel:
    channel = ChatChannel(
        channel_number=next_channel_number(session),
        dealer_id=dealer.id,
        initiated_by_id=dealer_user.id,
        department="service",
    )
    session.add(channel)
    session.commit()
    session.refresh(channel)
    return channel


# --- Тесты для функции send_message ---


@pytest.mark.asyncio
async def test_dealer_message_on_open_channel_sets_waiting(session: Session, channel, dealer_user):
    """
    Дилер пишет в открытый канал - канал ждет агента.
    """
    # Act
    await send_message(session, channel.id, dealer_user.id, "Hello?")

    # Assert
    session.refresh(channel)
    assert channel.status == ChatStatus.WAITING
    assert channel.last_message_by_id == dealer_user.id
    assert channel.last_message_at is not None


@pytest.mark.asyncio
async def test_agent_message_does_not_change_status(session: Session, channel, agent):
    await send_message(session, channel.id, agent.id, "How can I help?")

    session.refresh(channel)
    assert channel.status == ChatStatus.OPEN


@pytest.mark.asyncio
async def test_message_count_matches_number_of_messages(session: Session, channel, dealer_user, agent):
    """
    После N отправок message_count равен N.
    """
    for index in range(7):
        sender = dealer_user if index % 2 else agent
        await send_message(session, channel.id, sender.id, f"message {index}")

    session.refresh(channel)
    assert channel.message_count == 7


@pytest.mark.asyncio
async def test_attachments_are_serialized(session: Session, channel, dealer_user, events):
    attachments = [{"filename": "invoice.pdf", "url": "/files/1", "mime_type": "application/pdf", "size": 2048}]

    message = await send_message(
        session, channel.id, dealer_user.id, "See attached", message_type="attachment", attachments=attachments
    )

    assert message.message_type == "attachment"
    assert decode_attachments(message) == attachments
    assert events[-1].payload.attachments == attachments


@pytest.mark.asyncio
async def test_message_without_attachments(session: Session, channel, dealer_user):
    message = await send_message(session, channel.id, dealer_user.id, "Plain text")

    assert message.attachments is None
    assert decode_attachments(message) == []


@pytest.mark.asyncio
async def test_send_message_unknown_channel(session: Session, dealer_user):
    with pytest.raises(NotFoundError) as exc_info:
        await send_message(session, 999, dealer_user.id, "Hello")

    assert exc_info.value.entity == "Channel"


@pytest.mark.asyncio
async def test_send_message_unknown_sender(session: Session, channel):
    with pytest.raises(NotFoundError) as exc_info:
        await send_message(session, channel.id, 999, "Hello")

    assert exc_info.value.entity == "Sender"
    session.refresh(channel)
    assert channel.message_count == 0


@pytest.mark.asyncio
async def test_message_event_targets_everyone_but_sender(
    session: Session, channel, dealer_user, agent, second_agent, events
):
    """
    Событие получают инициатор, назначенный агент и активные участники, кроме отправителя.
    """
    # Arrange
    await channel_service.assign_channel(session, channel.id, agent.id, agent.id)
    session.add(ChatChannelAgent(channel_id=channel.id, user_id=second_agent.id, role="observer"))
    session.commit()
    events.clear()

    # Act
    await send_message(session, channel.id, agent.id, "On it")

    # Assert
    assert len(events) == 1
    event = events[0]
    assert event.type == "chat_message"
    assert event.target_user_ids == sorted([dealer_user.id, second_agent.id])
    assert event.dealer_id == channel.dealer_id
    assert event.payload.sender_name == "Alex Stone"
    assert event.payload.sender_role == "admin"


@pytest.mark.asyncio
async def test_plain_system_message_is_not_broadcast(session: Session, channel, agent, events):
    events.clear()

    await send_message(session, channel.id, agent.id, "internal note", is_system_message=True)

    assert events == []
    session.refresh(channel)
    assert channel.message_count == 1


@pytest.mark.asyncio
async def test_system_message_with_action_is_broadcast(session: Session, channel, agent, events):
    events.clear()

    await send_message(
        session, channel.id, agent.id, "Agent joined", is_system_message=True, system_action="assigned"
    )

    assert [event.type for event in events] == ["chat_message"]
    assert events[0].payload.system_action == "assigned"


# --- Тесты для функции get_channel_messages ---


def _add_message(session: Session, channel: ChatChannel, sender_id: int, content: str, minutes_ago: int, **kwargs):
    message = ChatMessage(
        channel_id=channel.id,
        sender_id=sender_id,
        content=content,
        created_at=utcnow() - datetime.timedelta(minutes=minutes_ago),
        **kwargs,
    )
    session.add(message)
    session.commit()
    session.refresh(message)
    return message


def test_get_channel_messages_chronological_with_limit(session: Session, channel, dealer_user):
    """
    Возвращаются последние N сообщений в хронологическом порядке.
    """
    for minutes_ago, content in [(50, "one"), (40, "two"), (30, "three"), (20, "four")]:
        _add_message(session, channel, dealer_user.id, content, minutes_ago)

    messages = get_channel_messages(session, channel.id, limit=3)

    assert [message.content for message in messages] == ["two", "three", "four"]


def test_get_channel_messages_before_cursor(session: Session, channel, dealer_user):
    for minutes_ago, content in [(50, "one"), (40, "two"), (30, "three"), (20, "four")]:
        _add_message(session, channel, dealer_user.id, content, minutes_ago)
    cursor = utcnow() - datetime.timedelta(minutes=35)

    messages = get_channel_messages(session, channel.id, before=cursor)

    assert [message.content for message in messages] == ["one", "two"]


def test_get_channel_messages_skips_deleted(session: Session, channel, dealer_user):
    _add_message(session, channel, dealer_user.id, "kept", 10)
    _add_message(session, channel, dealer_user.id, "removed", 5, is_deleted=True)

    messages = get_channel_messages(session, channel.id)

    assert [message.content for message in messages] == ["kept"]


# --- Тесты для функции mark_messages_read ---


def test_mark_messages_read_marks_only_foreign_unread(session: Session, channel, dealer_user, agent):
    """
    Отмечаются только чужие непрочитанные сообщения.
    """
    from_agent_1 = _add_message(session, channel, agent.id, "a1", 30)
    from_agent_2 = _add_message(session, channel, agent.id, "a2", 20)
    own = _add_message(session, channel, dealer_user.id, "mine", 10)

    updated = mark_messages_read(session, channel.id, dealer_user.id)

    assert updated == 2
    for message in (from_agent_1, from_agent_2, own):
        session.refresh(message)
    assert from_agent_1.read_by_id == dealer_user.id
    assert from_agent_2.read_at is not None
    assert own.read_at is None

    assert mark_messages_read(session, channel.id, dealer_user.id) == 0


def test_mark_messages_read_up_to_message(session: Session, channel, dealer_user, agent):
    first = _add_message(session, channel, agent.id, "a1", 30)
    second = _add_message(session, channel, agent.id, "a2", 20)
    third = _add_message(session, channel, agent.id, "a3", 10)

    updated = mark_messages_read(session, channel.id, dealer_user.id, up_to_message_id=second.id)

    assert updated == 2
    for message in (first, second, third):
        session.refresh(message)
    assert first.read_at is not None
    assert second.read_at is not None
    assert third.read_at is None
