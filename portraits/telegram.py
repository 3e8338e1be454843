import hashlib
import hmac
import logging
import time
from typing import Any, Mapping

from aiogram import Bot
from aiogram.types import Message

logger = logging.getLogger(__name__)

SUBSCRIBED_STATUSES = ("member", "administrator", "creator")
LOGIN_MAX_AGE = 86400


def build_check_string(data: Mapping[str, Any]) -> str:
    pairs = []
    for key in sorted(data):
        if key == "hash":
            continue
        value = data[key]
        if value is None or value == "":
            continue
        pairs.append(f"{key}={value}")
    return "\n".join(pairs)


def sign_login_data(data: Mapping[str, Any], bot_token: str) -> str:
    secret = hashlib.sha256(bot_token.encode()).digest()
    return hmac.new(secret, build_check_string(data).encode(), hashlib.sha256).hexdigest()


def verify_login_data(
    data: Mapping[str, Any], bot_token: str, max_age: int = LOGIN_MAX_AGE, now: float | None = None
) -> bool:
    """Проверяет подпись данных Telegram Login Widget."""
    received = str(data.get("hash") or "")
    if not received or not bot_token:
        return False
    expected = sign_login_data(data, bot_token)
    if not hmac.compare_digest(expected, received):
        logger.warning("[Telegram] login hash mismatch for id=%s", data.get("id"))
        return False
    try:
        auth_date = int(data.get("auth_date") or 0)
    except (TypeError, ValueError):
        return False
    now = time.time() if now is None else now
    if now - auth_date > max_age:
        logger.warning("[Telegram] login data expired for id=%s", data.get("id"))
        return False
    return True


async def check_channel_subscription(bot: Bot, user_id: int | str, channel_id: str) -> bool:
    """Проверяет подписку на обязательный канал"""
    try:
        member = await bot.get_chat_member(chat_id=channel_id, user_id=int(user_id))
        return member.status in SUBSCRIBED_STATUSES
    except Exception as e:
        logger.warning("[Telegram] getChatMember failed for user=%s channel=%s: %s", user_id, channel_id, e)
        return False


def channel_link(channel_id: str | None, channel_url: str | None = None) -> str | None:
    if channel_url:
        return channel_url
    if not channel_id:
        return None
    name = channel_id.lstrip("@")
    return f"https://t.me/{name}"


async def send_message(bot: Bot, chat_id: int | str, text: str, **kwargs) -> Message | None:
    try:
        return await bot.send_message(chat_id=chat_id, text=text, parse_mode="HTML", **kwargs)
    except Exception as e:
        logger.error("[Telegram] send_message to %s failed: %s", chat_id, e)
        return None
