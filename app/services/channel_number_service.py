"""
Генерация человекочитаемых номеров каналов вида CHAT-<год>-<00001>.
"""
import logging
import re
from typing import Optional, Tuple

from sqlmodel import Session, col, select

from app.models.models import ChatChannel, ChatChannelSequence, utcnow

CHANNEL_NUMBER_RE = re.compile(r"^CHAT-(\d{4})-(\d{5,})$")


def format_channel_number(year: int, value: int) -> str:
    return f"CHAT-{year}-{value:05d}"


def parse_channel_number(channel_number: str) -> Tuple[int, int]:
    """
    Разбирает номер канала на год и порядковый номер.

    :raises ValueError: если строка не похожа на номер канала.
    """
    match = CHANNEL_NUMBER_RE.match(channel_number.strip().upper())
    if not match:
        raise ValueError(f"Invalid channel number: {channel_number!r}")
    return int(match.group(1)), int(match.group(2))


def _last_issued_value(session: Session, year: int) -> int:
    """Находит последний выданный номер за год по самой таблице каналов."""
    prefix = f"CHAT-{year}-"
    statement = (
        select(ChatChannel.channel_number)
        .where(col(ChatChannel.channel_number).startswith(prefix))
        .order_by(col(ChatChannel.channel_number).desc())
        .limit(1)
    )
    last_number = session.exec(statement).first()
    if not last_number:
        return 0
    return int(last_number[len(prefix):])


def next_channel_number(session: Session, year: Optional[int] = None) -> str:
    """
    Выделяет следующий номер канала для года.

    Счетчик хранится в строке ChatChannelSequence и блокируется 'SELECT ... FOR UPDATE'
    до конца транзакции вызывающего кода, поэтому два параллельных создания канала
    не получат одинаковый номер. Если строки за год еще нет, счетчик начинается
    с последнего номера, уже записанного в таблицу каналов (для первого канала года - с 1).

    Коммит не выполняется: номер фиксируется вместе с самим каналом.
    :param session: Сессия базы данных.
    :param year: Год; по умолчанию текущий.
    :return: Строка вида CHAT-2026-00001.
    """
    year = year or utcnow().year

    statement = (
        select(ChatChannelSequence)
        .where(ChatChannelSequence.year == year)
        .with_for_update()  # Блокируем счетчик до конца транзакции
    )
    sequence = session.exec(statement).first()

    if sequence is None:
        sequence = ChatChannelSequence(year=year, last_value=_last_issued_value(session, year))
        logging.info(f"Starting channel number sequence for {year} at {sequence.last_value}")

    sequence.last_value += 1
    session.add(sequence)
    session.flush()

    return format_channel_number(year, sequence.last_value)
