from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

from portraits.strings import get_string


def _public_url(url: str | None) -> bool:
    # Telegram не принимает кнопки с localhost/http
    return bool(url) and url.startswith("https://")


def start_keyboard(site_url: str | None, channel_url: str | None) -> InlineKeyboardMarkup | None:
    rows = []
    if _public_url(site_url):
        rows.append([InlineKeyboardButton(text=get_string("open_site"), url=site_url)])
    if _public_url(channel_url):
        rows.append([InlineKeyboardButton(text=get_string("open_channel"), url=channel_url)])
    return InlineKeyboardMarkup(inline_keyboard=rows) if rows else None


def admin_link_keyboard(link: str) -> InlineKeyboardMarkup | None:
    if not _public_url(link):
        return None
    return InlineKeyboardMarkup(
        inline_keyboard=[[InlineKeyboardButton(text=get_string("open_admin"), url=link)]]
    )
