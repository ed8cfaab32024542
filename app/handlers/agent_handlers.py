"""
Обработчики команд агентов поддержки в супергруппе.
"""

import html
import logging
from typing import List, Optional

from aiogram import F, Router
from aiogram.filters import Command, CommandObject
from aiogram.types import Message
from sqlmodel import Session

from app.core.config import settings
from app.core.exceptions import ChatError, InvalidTransitionError, NotFoundError
from app.models.models import AgentPresence, ChatChannel, ChatDepartment, ChatStatus, CloseReason, User
from app.services import channel_service, history_service, message_service, presence_service
from app.services.channel_number_service import parse_channel_number
from app.services.realtime import ADMIN_ROLES

router = Router()
# Фильтруем сообщения: только из нашей супергруппы
router.message.filter(F.chat.id == settings.SUPERGROUP_ID)

NOT_AGENT_TEXT = "⛔️ Команда доступна только агентам поддержки."


def _is_agent(portal_user: Optional[User]) -> bool:
    return portal_user is not None and portal_user.role in ADMIN_ROLES


def _args(command: CommandObject, maxsplit: int = -1) -> List[str]:
    return (command.args or "").split(maxsplit=maxsplit)


def _find_channel(session: Session, channel_number: str) -> Optional[ChatChannel]:
    try:
        parse_channel_number(channel_number)
    except ValueError:
        return None
    return history_service.get_channel_by_number(session, channel_number)


def _error_text(error: ChatError) -> str:
    if isinstance(error, InvalidTransitionError):
        return "⚠️ Чат уже закрыт, действие невозможно."
    if isinstance(error, NotFoundError):
        return f"⚠️ Не найдено: {error.entity} {error.entity_id}."
    return f"⚠️ {error}"


def _format_channel(channel: ChatChannel) -> str:
    return (
        f"{channel.channel_number} · {channel.status} · {channel.department}"
        f" · {html.escape(channel.subject or '—')} · сообщений: {channel.message_count}"
    )


@router.message(Command("chats"))
async def handle_chats_command(message: Message, session: Session, portal_user: Optional[User] = None):
    """Список незакрытых чатов: открытые первыми, затем по приоритету."""
    if not _is_agent(portal_user):
        await message.reply(NOT_AGENT_TEXT)
        return

    channels = history_service.get_admin_channels(session, limit=20)
    if not channels:
        await message.reply("📭 Открытых чатов нет.")
        return
    await message.reply("\n".join(_format_channel(channel) for channel in channels))


@router.message(Command("take"))
async def handle_take_command(
    message: Message, session: Session, command: CommandObject, portal_user: Optional[User] = None
):
    """
    Агент берет чат себе: /take CHAT-2026-00001.
    """
    if not _is_agent(portal_user):
        await message.reply(NOT_AGENT_TEXT)
        return

    args = _args(command)
    if len(args) != 1:
        await message.reply("Использование: /take <номер чата>")
        return

    channel = _find_channel(session, args[0])
    if not channel:
        await message.reply(f"⚠️ Чат {args[0]} не найден.")
        return

    try:
        await channel_service.assign_channel(session, channel.id, portal_user.id, portal_user.id)
    except ChatError as e:
        await message.reply(_error_text(e))
        return
    await message.reply(f"✅ Чат {channel.channel_number} назначен на вас.")


@router.message(Command("reply"))
async def handle_reply_command(
    message: Message, session: Session, command: CommandObject, portal_user: Optional[User] = None
):
    """
    Ответ дилеру: /reply CHAT-2026-00001 текст ответа.
    """
    if not _is_agent(portal_user):
        await message.reply(NOT_AGENT_TEXT)
        return

    args = _args(command, maxsplit=1)
    if len(args) != 2:
        await message.reply("Использование: /reply <номер чата> <текст>")
        return

    channel = _find_channel(session, args[0])
    if not channel:
        await message.reply(f"⚠️ Чат {args[0]} не найден.")
        return
    if channel.status == ChatStatus.CLOSED:
        await message.reply("⚠️ Чат уже закрыт, действие невозможно.")
        return

    logging.info(f"Agent {portal_user.id} replies in channel {channel.channel_number}")
    await message_service.send_message(
        session, channel_id=channel.id, sender_id=portal_user.id, content=args[1]
    )


@router.message(Command("close"))
async def handle_close_command(
    message: Message, session: Session, command: CommandObject, portal_user: Optional[User] = None
):
    """
    Закрытие чата агентом: /close <номер чата> [resolved|agent_closed].
    """
    if not _is_agent(portal_user):
        await message.reply(NOT_AGENT_TEXT)
        return

    args = _args(command)
    if len(args) not in (1, 2):
        await message.reply("Использование: /close <номер чата> [resolved|agent_closed]")
        return

    try:
        close_reason = CloseReason(args[1]) if len(args) == 2 else CloseReason.AGENT_CLOSED
    except ValueError:
        await message.reply(f"⚠️ Неизвестная причина закрытия: {args[1]}")
        return

    channel = _find_channel(session, args[0])
    if not channel:
        await message.reply(f"⚠️ Чат {args[0]} не найден.")
        return

    try:
        await channel_service.close_channel(session, channel.id, portal_user.id, close_reason)
    except ChatError as e:
        await message.reply(_error_text(e))
        return
    await message.reply(f"✅ Чат {channel.channel_number} закрыт ({close_reason.value}).")


@router.message(Command("transfer"))
async def handle_transfer_command(
    message: Message, session: Session, command: CommandObject, portal_user: Optional[User] = None
):
    """
    Передача чата в другой отдел: /transfer <номер чата> <отдел>.
    """
    if not _is_agent(portal_user):
        await message.reply(NOT_AGENT_TEXT)
        return

    args = _args(command)
    if len(args) != 2:
        await message.reply("Использование: /transfer <номер чата> <отдел>")
        return

    try:
        department = ChatDepartment(args[1].lower())
    except ValueError:
        departments = ", ".join(item.value for item in ChatDepartment)
        await message.reply(f"⚠️ Неизвестный отдел. Доступные: {departments}")
        return

    channel = _find_channel(session, args[0])
    if not channel:
        await message.reply(f"⚠️ Чат {args[0]} не найден.")
        return

    try:
        await channel_service.transfer_channel(
            session, channel.id, department, transferred_by_id=portal_user.id
        )
    except ChatError as e:
        await message.reply(_error_text(e))
        return
    await message.reply(f"🔀 Чат {channel.channel_number} передан в отдел {department.value}.")


@router.message(Command("status"))
async def handle_status_command(
    message: Message, session: Session, command: CommandObject, portal_user: Optional[User] = None
):
    """
    Смена статуса присутствия: /status online|away|busy|offline [сообщение].
    """
    if not _is_agent(portal_user):
        await message.reply(NOT_AGENT_TEXT)
        return

    args = _args(command, maxsplit=1)
    try:
        presence = AgentPresence(args[0].lower())
    except (IndexError, ValueError):
        await message.reply("Использование: /status online|away|busy|offline [сообщение]")
        return

    agent_status = presence_service.update_agent_status(
        session, portal_user.id, presence, args[1] if len(args) > 1 else None
    )
    await message.reply(
        f"🟢 Статус: {agent_status.status}. "
        f"Активных чатов: {agent_status.active_chats_count}/{agent_status.max_active_chats}."
    )


@router.message(Command("stats"))
async def handle_stats_command(message: Message, session: Session, portal_user: Optional[User] = None):
    """Сводка для панели поддержки."""
    if not _is_agent(portal_user):
        await message.reply(NOT_AGENT_TEXT)
        return

    stats = history_service.get_chat_stats(session)
    departments = ", ".join(f"{name}: {count}" for name, count in sorted(stats.by_department.items())) or "—"
    await message.reply(
        "📊 Статистика чатов\n"
        f"Всего: {stats.total_chats}\n"
        f"Открытых: {stats.open_chats}\n"
        f"В работе: {stats.active_chats}\n"
        f"Решено сегодня: {stats.resolved_today}\n"
        f"По отделам: {departments}"
    )
