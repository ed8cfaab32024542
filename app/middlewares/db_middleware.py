from typing import Callable, Dict, Any, Awaitable

from aiogram import BaseMiddleware
from aiogram.types import TelegramObject
from sqlmodel import select

from app.db.session import get_session
from app.models.models import User


class DbSessionMiddleware(BaseMiddleware):
    """
    Middleware для внедрения сессии базы данных и пользователя портала в хэндлеры.
    """

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        """
        Выполняется для каждого входящего события.

        Создает сессию с помощью `get_session` и передает ее в `data`.
        По Telegram ID отправителя находит привязанного пользователя портала
        и передает его как `portal_user` (None, если аккаунт не привязан).
        """
        with next(get_session()) as session:
            data["session"] = session
            telegram_user = data.get("event_from_user")
            portal_user = None
            if telegram_user is not None:
                portal_user = session.exec(
                    select(User).where(User.telegram_id == telegram_user.id)
                ).first()
            data["portal_user"] = portal_user
            return await handler(event, data)
