import asyncio
import logging

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.client.session.aiohttp import AiohttpSession
from aiogram.enums import ParseMode
from aiogram.fsm.storage.memory import MemoryStorage
from aiogram.types import BotCommand

from portraits.config import Settings, load_settings
from portraits.db import Database
from portraits.handlers.commands import create_router
from portraits.logs import configure_logging
from portraits.ratelimit import TTLCache

logger = logging.getLogger(__name__)


def create_bot(settings: Settings) -> Bot:
    proxy_url = settings.bot_proxy
    if proxy_url:
        logger.info("Бот запущен через прокси: %s", proxy_url.split("@")[-1])
        return Bot(
            token=settings.bot_token,
            session=AiohttpSession(proxy=proxy_url),
            default=DefaultBotProperties(parse_mode=ParseMode.HTML),
        )
    return Bot(token=settings.bot_token, default=DefaultBotProperties(parse_mode=ParseMode.HTML))


def build_dispatcher(settings: Settings, db: Database, cache: TTLCache) -> Dispatcher:
    dp = Dispatcher(storage=MemoryStorage())
    dp.include_router(create_router())
    dp["settings"] = settings
    dp["db"] = db
    dp["cache"] = cache
    return dp


async def set_commands(bot: Bot) -> None:
    await bot.set_my_commands(
        [
            BotCommand(command="start", description="🏠 Начало"),
            BotCommand(command="admin", description="🔐 Админ-панель"),
        ]
    )


async def main() -> None:
    settings = load_settings()
    configure_logging(settings.data_dir, "bot.log")

    db = Database(db_path=settings.db_path)
    await db.init()

    bot = create_bot(settings)
    dp = build_dispatcher(settings, db, TTLCache())
    try:
        await bot.delete_webhook(drop_pending_updates=False)
        await set_commands(bot)
        logger.info("Starting polling")
        await dp.start_polling(bot)
    finally:
        await bot.session.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
