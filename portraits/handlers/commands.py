import logging

from aiogram import Router
from aiogram.filters import Command, CommandStart
from aiogram.types import Message

from portraits.admin import build_admin_link, is_admin, issue_access_token
from portraits.config import Settings
from portraits.db import Database
from portraits.keyboards import admin_link_keyboard, start_keyboard
from portraits.ratelimit import TTLCache
from portraits.strings import get_string
from portraits.telegram import channel_link

logger = logging.getLogger(__name__)


async def _is_admin_chat(user_id: int, settings: Settings, db: Database) -> bool:
    if user_id in (settings.admin_ids or []):
        return True
    return is_admin(settings, await db.get_user_by_telegram_id(user_id))


async def cmd_start(message: Message, settings: Settings) -> None:
    text = get_string("welcome")
    channel = channel_link(settings.channel_id, settings.channel_url)
    if channel:
        text += "\n\n" + get_string("subscribe_channel") + f"\n{channel}"
    await message.answer(text, reply_markup=start_keyboard(settings.base_url, channel))


async def cmd_admin(message: Message, settings: Settings, db: Database, cache: TTLCache) -> None:
    user_id = message.from_user.id
    if not await _is_admin_chat(user_id, settings, db):
        logger.warning("Denied /admin for user %s", user_id)
        await message.answer(get_string("admin_denied"))
        return

    token = issue_access_token(cache, telegram_id=user_id)
    link = build_admin_link(settings, token.token)
    logger.info("Issued admin token for user %s", user_id)
    await message.answer(get_string("admin_link", link=link), reply_markup=admin_link_keyboard(link))


def create_router() -> Router:
    # Router можно подключить только к одному Dispatcher
    router = Router(name="commands")
    router.message.register(cmd_start, CommandStart())
    router.message.register(cmd_admin, Command("admin"))
    return router
