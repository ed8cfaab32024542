"""
Доставка событий живого чата в Telegram.

Подписчик realtime_emitter: анонсирует новые чаты в супергруппе агентов и
пересылает сообщения и смену статусов тем участникам, у которых привязан Telegram.
"""
import html
import logging
from typing import Callable, Dict, Iterable, Optional

from aiogram import Bot
from sqlmodel import Session, col, select

from app.db.session import get_session
from app.models.models import User
from app.services.realtime import (
    ChatAssignedEvent,
    ChatMessageEvent,
    ChatStatusEvent,
    NewChatEvent,
    RealtimeEmitter,
    RealtimeEvent,
)

CLOSE_REASON_TEXT = {
    "resolved": "вопрос решен",
    "dealer_closed": "закрыт дилером",
    "agent_closed": "закрыт агентом",
    "timeout": "закрыт из-за неактивности",
}


def _default_session_factory() -> Session:
    return next(get_session())


class TelegramNotifier:
    """
    Пересылает события чата через Telegram-бота.

    :param bot: Экземпляр aiogram Bot.
    :param supergroup_id: Чат агентов для анонсов новых обращений; None - не анонсировать.
    :param session_factory: Откуда брать сессию БД для поиска Telegram ID пользователей.
    """

    def __init__(
        self,
        bot: Bot,
        supergroup_id: Optional[int],
        session_factory: Callable[[], Session] = _default_session_factory,
    ):
        self.bot = bot
        self.supergroup_id = supergroup_id
        self.session_factory = session_factory

    def subscribe(self, emitter: RealtimeEmitter) -> Callable[[], None]:
        return emitter.subscribe_all(self.handle_event)

    def _telegram_ids(self, user_ids: Iterable[int]) -> Dict[int, int]:
        user_ids = list(user_ids)
        if not user_ids:
            return {}
        with self.session_factory() as session:
            users = session.exec(
                select(User).where(col(User.id).in_(user_ids), col(User.telegram_id).is_not(None))
            ).all()
            return {user.id: user.telegram_id for user in users}

    async def _send_to_users(self, user_ids: Iterable[int], text: str) -> None:
        for user_id, telegram_id in self._telegram_ids(user_ids).items():
            try:
                await self.bot.send_message(chat_id=telegram_id, text=text)
            except Exception as e:
                # Доставка "не более одного раза": клиент перечитает состояние канала сам
                logging.error(f"Failed to deliver chat event to user {user_id}: {e}")

    async def handle_event(self, event: RealtimeEvent) -> None:
        payload = event.payload
        if event.type == "new_chat" and isinstance(payload, NewChatEvent):
            await self._announce_new_chat(payload)
        elif event.type == "chat_message" and isinstance(payload, ChatMessageEvent):
            await self._send_to_users(event.target_user_ids, self._format_message(payload))
        elif event.type == "chat_assigned" and isinstance(payload, ChatAssignedEvent):
            await self._send_to_users(
                event.target_user_ids,
                f"👤 {payload.channel_number}: к чату подключился {html.escape(payload.assigned_to_name)}.",
            )
        elif event.type == "chat_status" and isinstance(payload, ChatStatusEvent):
            reason = CLOSE_REASON_TEXT.get(payload.close_reason or "", payload.status)
            await self._send_to_users(
                event.target_user_ids, f"✅ {payload.channel_number}: чат завершен ({reason})."
            )

    async def _announce_new_chat(self, payload: NewChatEvent) -> None:
        if self.supergroup_id is None:
            return
        text = (
            f"🆕 Новый чат {payload.channel_number}\n"
            f"🏢 Дилер: {html.escape(payload.dealer_name)}\n"
            f"📂 Отдел: {payload.department}\n"
        )
        if payload.subject:
            text += f"📝 Тема: {html.escape(payload.subject)}\n"
        text += f"\nВзять в работу: /take {payload.channel_number}"
        await self.bot.send_message(chat_id=self.supergroup_id, text=text)

    @staticmethod
    def _format_message(payload: ChatMessageEvent) -> str:
        if payload.is_system_message:
            return f"ℹ️ {payload.channel_number}: {html.escape(payload.content)}"
        return f"💬 {payload.channel_number} | {html.escape(payload.sender_name)}:\n{html.escape(payload.content)}"
