"""
Обработчики личных сообщений от сотрудников дилеров.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Optional

from aiogram import F, Router
from aiogram.filters import Command, CommandObject
from aiogram.types import Message
from sqlmodel import Session

from app.core.exceptions import ChatError
from app.models.models import CloseReason, User
from app.services import channel_service, history_service, message_service

router = Router()
router.message.filter(F.chat.type == "private")

# Блокировка на каждого пользователя: два быстрых сообщения не должны создать два канала.
# Запись удаляется, когда блокировку никто не держит и не ждет.
user_locks = defaultdict(asyncio.Lock)
lock_waiters = defaultdict(int)

NOT_LINKED_TEXT = (
    "🔒 Ваш Telegram не привязан к учетной записи дилерского портала. "
    "Привяжите его в профиле портала и напишите снова."
)
NO_DEALER_TEXT = "⚠️ Ваша учетная запись не относится ни к одному дилеру."


@asynccontextmanager
async def _user_lock(user_id: int):
    lock = user_locks[user_id]
    lock_waiters[user_id] += 1
    try:
        async with lock:
            yield
    finally:
        lock_waiters[user_id] -= 1
        if not lock_waiters[user_id]:
            del lock_waiters[user_id]
            user_locks.pop(user_id, None)


def _check_dealer_user(portal_user: Optional[User]) -> Optional[str]:
    if portal_user is None:
        return NOT_LINKED_TEXT
    if portal_user.dealer_id is None:
        return NO_DEALER_TEXT
    return None


@router.message(Command("start"))
async def handle_start_command(message: Message, portal_user: Optional[User] = None):
    problem = _check_dealer_user(portal_user)
    if problem:
        await message.answer(problem)
        return
    await message.answer(
        f"👋 Здравствуйте, {portal_user.first_name}! Напишите свой вопрос, и мы подключим оператора.\n"
        "/close - закрыть обращение, /rate - оценить последнее обращение."
    )


@router.message(Command("close"))
async def handle_close_command(message: Message, session: Session, portal_user: Optional[User] = None):
    """
    Закрывает открытое обращение пользователя с причиной 'dealer_closed'.
    """
    problem = _check_dealer_user(portal_user)
    if problem:
        await message.answer(problem)
        return

    channel = history_service.get_open_channel_for_user(session, portal_user.id)
    if not channel:
        await message.answer("⚠️ У вас нет открытых обращений.")
        return

    try:
        await channel_service.close_channel(
            session, channel.id, portal_user.id, CloseReason.DEALER_CLOSED
        )
    except ChatError as e:
        logging.warning(f"Dealer user {portal_user.id} could not close {channel.channel_number}: {e}")
        await message.answer("🔴 Не удалось закрыть обращение. Попробуйте снова.")
        return

    await message.answer(
        f"✅ Обращение {channel.channel_number} закрыто. Спасибо за обращение!\n"
        "Оцените работу поддержки командой /rate от 0 до 5."
    )


@router.message(Command("rate"))
async def handle_rate_command(
    message: Message,
    session: Session,
    command: CommandObject,
    portal_user: Optional[User] = None,
):
    """
    Оценка последнего закрытого обращения: /rate <0-5> [комментарий].
    """
    problem = _check_dealer_user(portal_user)
    if problem:
        await message.answer(problem)
        return

    args = (command.args or "").split(maxsplit=1)
    try:
        rating = int(args[0])
        if not 0 <= rating <= 5:
            raise ValueError(rating)
    except (IndexError, ValueError):
        await message.answer("Использование: /rate <0-5> [комментарий]")
        return

    channel = history_service.get_last_closed_channel_for_user(session, portal_user.id)
    if not channel:
        await message.answer("⚠️ У вас нет закрытых обращений для оценки.")
        return

    comment = args[1] if len(args) > 1 else None
    history_service.submit_satisfaction_rating(session, channel.id, rating, comment)
    await message.answer(f"⭐️ Спасибо! Оценка {rating} для {channel.channel_number} сохранена.")


@router.message()
async def handle_dealer_message(message: Message, session: Session, portal_user: Optional[User] = None):
    """
    Обрабатывает все остальные сообщения от пользователя в личном чате.

    Если у пользователя есть открытое обращение, сообщение добавляется в него,
    иначе создается новый канал с этим сообщением в качестве первого.
    """
    problem = _check_dealer_user(portal_user)
    if problem:
        await message.answer(problem)
        return

    if not message.text:
        await message.answer("⚠️ Пока поддерживаются только текстовые сообщения.")
        return

    # Захватываем блокировку для конкретного пользователя
    async with _user_lock(portal_user.id):
        channel = history_service.get_open_channel_for_user(session, portal_user.id)

        if channel:
            logging.info(f"Adding message from user {portal_user.id} to channel {channel.channel_number}")
            await message_service.send_message(
                session, channel_id=channel.id, sender_id=portal_user.id, content=message.text
            )
            return

        logging.info(f"No open channel for user {portal_user.id}. Creating a new one.")
        new_channel = await channel_service.create_channel(
            session,
            dealer_id=portal_user.dealer_id,
            user_id=portal_user.id,
            initial_message=message.text,
        )
        await message.answer(
            f"✅ Создано обращение {new_channel.channel_number}. "
            "Оператор поддержки скоро подключится к вашему чату. Пожалуйста, ожидайте."
        )
