from types import SimpleNamespace

from portraits.admin import TOKEN_PREFIX
from portraits.handlers.commands import cmd_admin, cmd_start, create_router
from portraits.main import build_dispatcher
from portraits.ratelimit import TTLCache


class FakeMessage:
    def __init__(self, user_id):
        self.from_user = SimpleNamespace(id=user_id)
        self.answers = []

    async def answer(self, text, reply_markup=None, **kwargs):
        self.answers.append((text, reply_markup))


async def test_start_mentions_channel(settings):
    message = FakeMessage(5001)
    await cmd_start(message, settings)
    text, keyboard = message.answers[0]
    assert "https://t.me/history_channel" in text
    urls = [row[0].url for row in keyboard.inline_keyboard]
    assert urls == ["https://portraits.example.com", "https://t.me/history_channel"]


async def test_start_without_public_site(settings):
    settings.base_url = "http://localhost:8000"
    settings.channel_id = None
    message = FakeMessage(5001)
    await cmd_start(message, settings)
    assert message.answers[0][1] is None


async def test_admin_link_for_admin(settings, db):
    cache = TTLCache()
    message = FakeMessage(1001)
    await cmd_admin(message, settings, db, cache)

    text, keyboard = message.answers[0]
    link = keyboard.inline_keyboard[0][0].url
    assert link.startswith("https://portraits.example.com/admin?token=")
    assert link in text
    token = link.split("token=")[1]
    assert cache.get(TOKEN_PREFIX + token) == {"telegram_id": "1001"}


async def test_admin_flag_in_database_grants_link(settings, db):
    await db.upsert_user("7007", "carol", "Carol", None)
    await db.set_admin_by_telegram_id("7007")
    message = FakeMessage(7007)
    await cmd_admin(message, settings, db, TTLCache())
    assert "admin?token=" in message.answers[0][0]


async def test_admin_denied(settings, db):
    cache = TTLCache()
    message = FakeMessage(5001)
    await cmd_admin(message, settings, db, cache)
    assert message.answers[0][0].startswith("⛔")
    assert cache.stats()["total"] == 0


async def test_each_dispatcher_gets_its_own_router(settings, db):
    first = build_dispatcher(settings, db, TTLCache())
    second = build_dispatcher(settings, db, TTLCache())
    assert first["settings"] is settings
    assert second["db"] is db
    assert create_router() is not create_router()
