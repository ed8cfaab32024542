import datetime

import pytest
from sqlmodel import Session

from app.core.exceptions import NotFoundError
from app.models.models import ChatChannel, Dealer, User, utcnow
from app.services import history_service
from app.services.channel_number_service import next_channel_number


def _channel(session: Session, dealer_id: int, user_id: int, **fields) -> ChatChannel:
    channel = ChatChannel(
        channel_number=next_channel_number(session),
        dealer_id=dealer_id,
        initiated_by_id=user_id,
        **fields,
    )
    session.add(channel)
    session.commit()
    session.refresh(channel)
    return channel


@pytest.fixture(name="other_dealer_user")
def other_dealer_user_fixture(session: Session) -> User:
    other_dealer = Dealer(name="Mountain Campers", code="MTC")
    session.add(other_dealer)
    session.commit()
    session.refresh(other_dealer)
    user = User(first_name="Chris", last_name="Vale", role="dealer_user", dealer_id=other_dealer.id)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def test_get_channel_by_number(session: Session, dealer, dealer_user):
    channel = _channel(session, dealer.id, dealer_user.id)

    assert history_service.get_channel_by_number(session, channel.channel_number.lower()).id == channel.id
    assert history_service.get_channel_by_number(session, "CHAT-1999-00001") is None
    assert history_service.get_channel(session, channel.id).id == channel.id


def test_get_open_and_last_closed_channel_for_user(session: Session, dealer, dealer_user):
    closed = _channel(session, dealer.id, dealer_user.id, status="closed", closed_at=utcnow())
    waiting = _channel(session, dealer.id, dealer_user.id, status="waiting")

    assert history_service.get_open_channel_for_user(session, dealer_user.id).id == waiting.id
    assert history_service.get_last_closed_channel_for_user(session, dealer_user.id).id == closed.id


def test_get_dealer_channels_is_tenant_scoped(session: Session, dealer, dealer_user, other_dealer_user):
    """
    Дилер видит только свои каналы; фильтр по статусам работает.
    """
    mine_open = _channel(session, dealer.id, dealer_user.id)
    mine_closed = _channel(session, dealer.id, dealer_user.id, status="closed")
    _channel(session, other_dealer_user.dealer_id, other_dealer_user.id)

    all_mine = history_service.get_dealer_channels(session, dealer.id)
    only_open = history_service.get_dealer_channels(session, dealer.id, statuses=["open"])

    assert {channel.id for channel in all_mine} == {mine_open.id, mine_closed.id}
    assert [channel.id for channel in only_open] == [mine_open.id]


def test_get_admin_channels_default_excludes_closed_and_orders(session: Session, dealer, dealer_user, agent):
    """
    По умолчанию закрытые скрыты; открытые идут первыми, внутри статуса - по приоритету.
    """
    active = _channel(session, dealer.id, dealer_user.id, status="active", assigned_to_id=agent.id)
    open_normal = _channel(session, dealer.id, dealer_user.id, status="open", priority="normal")
    open_urgent = _channel(session, dealer.id, dealer_user.id, status="open", priority="urgent")
    waiting = _channel(session, dealer.id, dealer_user.id, status="waiting")
    _channel(session, dealer.id, dealer_user.id, status="closed")

    channels = history_service.get_admin_channels(session)

    assert [channel.id for channel in channels] == [open_urgent.id, open_normal.id, waiting.id, active.id]


def test_get_admin_channels_filters(session: Session, dealer, dealer_user, agent):
    assigned = _channel(session, dealer.id, dealer_user.id, status="active", assigned_to_id=agent.id, department="sales")
    unassigned = _channel(session, dealer.id, dealer_user.id, department="sales")
    _channel(session, dealer.id, dealer_user.id, department="billing")

    assert [c.id for c in history_service.get_admin_channels(session, unassigned_only=True, department="sales")] == [
        unassigned.id
    ]
    assert [c.id for c in history_service.get_admin_channels(session, assigned_to_id=agent.id)] == [assigned.id]
    assert history_service.get_admin_channels(session, statuses=["closed"]) == []


def test_get_chat_history_filters_and_pagination(session: Session, dealer, dealer_user, other_dealer_user):
    """
    Журнал: фильтр по дилеру, отделу и датам, total не зависит от страницы.
    """
    # Arrange
    old = _channel(
        session, dealer.id, dealer_user.id, department="sales",
        created_at=utcnow() - datetime.timedelta(days=10),
    )
    recent = [_channel(session, dealer.id, dealer_user.id, department="sales") for _ in range(3)]
    _channel(session, other_dealer_user.dealer_id, other_dealer_user.id, department="sales")

    # Act
    page, total = history_service.get_chat_history(session, dealer_id=dealer.id, limit=2, offset=0)
    next_page, _ = history_service.get_chat_history(session, dealer_id=dealer.id, limit=2, offset=2)
    last_week, last_week_total = history_service.get_chat_history(
        session, dealer_id=dealer.id, start_date=utcnow() - datetime.timedelta(days=7)
    )

    # Assert
    assert total == 4
    assert [channel.id for channel in page] == [recent[2].id, recent[1].id]
    assert [channel.id for channel in next_page] == [recent[0].id, old.id]
    assert last_week_total == 3
    assert old.id not in {channel.id for channel in last_week}


def test_get_chat_stats(session: Session, dealer, dealer_user, agent):
    now = utcnow()
    _channel(session, dealer.id, dealer_user.id, status="open", department="sales")
    _channel(session, dealer.id, dealer_user.id, status="waiting", department="sales")
    _channel(session, dealer.id, dealer_user.id, status="active", department="billing", assigned_to_id=agent.id)
    _channel(
        session, dealer.id, dealer_user.id, status="closed", close_reason="resolved",
        resolved_at=now, closed_at=now,
    )
    _channel(
        session, dealer.id, dealer_user.id, status="closed", close_reason="resolved",
        resolved_at=now - datetime.timedelta(days=2), closed_at=now - datetime.timedelta(days=2),
    )
    _channel(session, dealer.id, dealer_user.id, status="closed", close_reason="timeout", closed_at=now)

    stats = history_service.get_chat_stats(session)

    assert stats.total_chats == 6
    assert stats.open_chats == 1
    assert stats.active_chats == 1
    assert stats.resolved_today == 1
    assert stats.avg_response_time is None
    assert stats.by_department == {"sales": 2, "billing": 1}


def test_get_chat_stats_date_filter_applies_to_total(session: Session, dealer, dealer_user):
    _channel(session, dealer.id, dealer_user.id, created_at=utcnow() - datetime.timedelta(days=30))
    _channel(session, dealer.id, dealer_user.id)

    stats = history_service.get_chat_stats(session, start_date=utcnow() - datetime.timedelta(days=1))

    assert stats.total_chats == 1
    assert stats.open_chats == 2


# --- Тесты для функции submit_satisfaction_rating ---


def test_submit_satisfaction_rating(session: Session, dealer, dealer_user):
    channel = _channel(session, dealer.id, dealer_user.id, status="closed")

    rated = history_service.submit_satisfaction_rating(session, channel.id, 5, "Great help")

    assert rated.satisfaction_rating == 5
    assert rated.satisfaction_comment == "Great help"


@pytest.mark.parametrize("rating", [-1, 6])
def test_submit_satisfaction_rating_out_of_range(session: Session, dealer, dealer_user, rating):
    channel = _channel(session, dealer.id, dealer_user.id)

    with pytest.raises(ValueError):
        history_service.submit_satisfaction_rating(session, channel.id, rating)


def test_submit_satisfaction_rating_unknown_channel(session: Session):
    with pytest.raises(NotFoundError):
        history_service.submit_satisfaction_rating(session, 999, 4)
