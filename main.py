import asyncio
import logging
import sys

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.types.error_event import ErrorEvent

from app.core.config import settings
from app.db.session import create_db_and_tables, get_session
from app.handlers import agent_handlers, dealer_handlers
from app.middlewares.db_middleware import DbSessionMiddleware
from app.services.channel_service import close_inactive_channels
from app.services.presence_service import sync_agents_from_env
from app.services.realtime import realtime_emitter
from app.services.telegram_notifier import TelegramNotifier


def on_startup():
    """Выполняется при старте бота."""
    logging.info("Initializing database and tables...")
    create_db_and_tables()
    logging.info("Database initialized successfully.")

    # Синхронизация агентов при старте
    with next(get_session()) as session:
        sync_agents_from_env(session)


async def inactivity_sweeper():
    """
    Периодически закрывает чаты без активности (причина 'timeout').
    Работает, только если задан CHAT_INACTIVITY_TIMEOUT_MINUTES.
    """
    while True:
        await asyncio.sleep(settings.CHAT_SWEEP_INTERVAL_SECONDS)
        try:
            with next(get_session()) as session:
                await close_inactive_channels(session, settings.CHAT_INACTIVITY_TIMEOUT_MINUTES)
        except Exception as e:
            logging.error(f"Inactivity sweep failed: {e}", exc_info=True)


async def error_handler(event: ErrorEvent, bot: Bot):
    """
    Глобальный обработчик ошибок.
    Ловит все исключения, которые не были обработаны в хэндлерах.
    """
    logging.error(f"Unhandled exception: {event.exception}", exc_info=True)

    # Отправляем сообщение пользователю, если это возможно
    if event.update.message:
        user_id = event.update.message.from_user.id
        try:
            await bot.send_message(
                user_id,
                "Произошла непредвиденная ошибка. Мы уже работаем над решением. "
                "Пожалуйста, попробуйте позже.",
            )
        except Exception as e:
            logging.error(f"Failed to send error message to user {user_id}: {e}")


async def main() -> None:
    """Главная функция для запуска бота."""
    if settings.BOT_TOKEN is None:
        logging.error("BOT_TOKEN is not set. Nothing to run.")
        return

    bot = Bot(
        token=settings.BOT_TOKEN.get_secret_value(),
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    dp = Dispatcher()

    dp.update.middleware(DbSessionMiddleware())

    dp.startup.register(on_startup)
    dp.errors.register(error_handler)

    dp.include_router(dealer_handlers.router)
    dp.include_router(agent_handlers.router)

    # События чата уходят в Telegram участникам и в супергруппу агентов
    TelegramNotifier(bot, settings.SUPERGROUP_ID).subscribe(realtime_emitter)

    sweeper = None
    if settings.CHAT_INACTIVITY_TIMEOUT_MINUTES > 0:
        sweeper = asyncio.create_task(inactivity_sweeper())

    logging.info("Starting bot...")
    try:
        await bot.delete_webhook(drop_pending_updates=True)
        await dp.start_polling(bot)
    finally:
        if sweeper:
            sweeper.cancel()
        await realtime_emitter.wait_idle()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stdout,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logging.info("Bot stopped.")
        raise
