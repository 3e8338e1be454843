import os
import time

import pytest
from fastapi.testclient import TestClient

from portraits import generation
from portraits.config import Settings
from portraits.db import Database
from portraits.telegram import sign_login_data
from web.main import create_app

BOT_TOKEN = "123456:TEST-TOKEN"


@pytest.fixture
def settings(tmp_path):
    data_dir = str(tmp_path / "data")
    return Settings(
        bot_token=BOT_TOKEN,
        session_secret="test-session-secret",
        bot_username="portraits_test_bot",
        channel_id="@history_channel",
        admin_ids=[1001],
        database_url=f"sqlite+aiosqlite:///{os.path.join(data_dir, 'test.db')}",
        base_url="https://portraits.example.com",
        data_dir=data_dir,
        admin_setup_secret="setup-secret",
    )


@pytest.fixture
async def db(settings):
    database = Database(db_path=settings.db_path)
    await database.init()
    return database


@pytest.fixture(autouse=True)
def _reset_active_users():
    generation._active_users.clear()
    yield
    generation._active_users.clear()


def login_payload(telegram_id=5001, username="tester", first_name="Test", auth_date=None, token=BOT_TOKEN):
    data = {
        "id": telegram_id,
        "first_name": first_name,
        "username": username,
        "auth_date": int(auth_date if auth_date is not None else time.time()),
    }
    data["hash"] = sign_login_data(data, token)
    return data


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app, base_url="https://testserver") as c:
        yield c


@pytest.fixture
def login(client):
    def _login(telegram_id=5001, **kwargs):
        resp = client.post("/api/auth/telegram", json=login_payload(telegram_id, **kwargs))
        assert resp.status_code == 200, resp.text
        return resp.json()["user"]

    return _login
