"""
Применение переходов статуса канала по таблице STATUS_TRANSITIONS.
"""
from app.core.exceptions import InvalidTransitionError
from app.models.models import ChatChannel, ChatStatus, can_transition


def transition(channel: ChatChannel, target: ChatStatus) -> str:
    """
    Переводит канал в статус `target`.

    :return: Предыдущий статус канала.
    :raises InvalidTransitionError: если переход не разрешен таблицей.
    """
    previous = channel.status
    if not can_transition(previous, target):
        raise InvalidTransitionError(previous, ChatStatus(target).value)
    channel.status = ChatStatus(target).value
    return previous
