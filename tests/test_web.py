import asyncio
import io

import pytest
from PIL import Image

from conftest import login_payload
from portraits import subscriptions
from portraits.ai import images, perplexity, prompts
from portraits.ai.models import ImageResult
from web import admin as admin_routes


def png_bytes():
    buf = io.BytesIO()
    Image.new("RGB", (32, 32), (10, 20, 30)).save(buf, "PNG")
    return buf.getvalue()


@pytest.fixture
def subscribed(client, monkeypatch):
    async def member(bot, user_id, channel_id):
        return True

    monkeypatch.setattr(subscriptions, "check_channel_subscription", member)

    def _subscribe():
        resp = client.post("/api/subscription/check")
        assert resp.status_code == 200, resp.text
        assert resp.json()["is_subscribed"] is True

    return _subscribe


@pytest.fixture
def fake_ai(monkeypatch):
    async def fake_prompt(settings, person, style="realistic"):
        return f"Portrait of {person.name}"

    async def fake_image(settings, prompt):
        return ImageResult(provider="gemini", data=png_bytes())

    monkeypatch.setattr(prompts, "generate_image_prompt", fake_prompt)
    monkeypatch.setattr(images, "generate_image", fake_image)


def test_health(client):
    data = client.get("/api/health").json()
    assert data["status"] == "healthy"
    assert data["service"] == "historical-portraits"


def test_login_and_me(client, login):
    user = login(5001, username="alice")
    assert user["telegram_id"] == "5001"
    assert user["is_admin"] is False

    me = client.get("/api/me").json()
    assert me["user"]["username"] == "alice"
    assert me["quota"] == {"limit": 15, "used": 0, "remaining": 15, "is_limit_reached": False}

    client.post("/api/auth/logout")
    assert client.get("/api/me").status_code == 401


def test_login_with_bad_signature(client):
    payload = login_payload()
    payload["first_name"] = "Mallory"
    resp = client.post("/api/auth/telegram", json=payload)
    assert resp.status_code == 401
    assert "error" in resp.json()


def test_widget_redirect_login(client):
    params = {k: str(v) for k, v in login_payload(6001).items()}
    resp = client.get("/auth/telegram", params=params, follow_redirects=False)
    assert resp.status_code == 303
    assert resp.headers["location"] == "/generate"
    assert client.get("/api/me").json()["user"]["telegram_id"] == "6001"

    params["hash"] = "0" * 64
    resp = client.get("/auth/telegram", params=params, follow_redirects=False)
    assert resp.headers["location"] == "/login?error=auth"


def test_protected_routes_require_login(client):
    assert client.get("/api/generations").status_code == 401
    assert client.post("/api/generate", json={"personName": "Пётр I"}).status_code == 401
    assert client.get("/api/subscription/check").status_code == 401


def test_generate_requires_subscription(client, login, fake_ai):
    login()
    resp = client.post("/api/generate", json={"personName": "Пётр I"})
    assert resp.status_code == 403
    assert resp.json()["code"] == "SUBSCRIPTION_REQUIRED"


def test_generate_unknown_person_without_search_key(client, login, subscribed, fake_ai):
    login()
    subscribed()
    resp = client.post("/api/generate", json={"personName": "Пётр I"})
    assert resp.status_code == 404
    assert resp.json()["code"] == "PERSON_NOT_FOUND"


def test_generate_existing_person(client, login, subscribed, fake_ai, app):
    login()
    subscribed()
    asyncio.run(app.state.db.create_person(name="Пётр I", era="18th Century"))

    resp = client.post("/api/generate", json={"personName": "Пётр I", "style": "historical"})
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["success"] is True
    assert body["remaining"] == 14
    assert body["generation"]["person_name"] == "Пётр I"
    assert resp.headers["X-RateLimit-Remaining"] == "19"

    image_url = body["generation"]["image_url"]
    assert client.get(image_url).status_code == 200

    listing = client.get("/api/generations").json()
    assert listing["total"] == 1
    assert client.get("/api/generations/limit").json()["used"] == 1
    public = client.get("/api/generations/public").json()["images"]
    assert public[0]["url"] == image_url

    gen_id = body["generation"]["id"]
    assert client.delete(f"/api/generations/{gen_id}").status_code == 200
    assert client.delete(f"/api/generations/{gen_id}").status_code == 404


def test_generate_validation_and_ip_limit(client, login, subscribed, settings):
    settings.ip_daily_limit = 1
    login()
    subscribed()

    resp = client.post("/api/generate", json={"personName": "<b>"})
    assert resp.status_code == 400
    assert resp.json()["details"][0]["field"] == "personName"

    resp = client.post("/api/generate", json={"personName": "Пётр I"})
    assert resp.status_code == 429
    assert int(resp.headers["Retry-After"]) > 0
    assert resp.headers["X-RateLimit-Remaining"] == "0"


def test_cannot_delete_foreign_generation(client, login, app):
    other = asyncio.run(app.state.db.upsert_user("9999", "other", "Other", None))
    gen_id = asyncio.run(app.state.db.create_generation(other["id"], "Пётр I", "completed", image_url="/x.jpg"))
    login()
    assert client.delete(f"/api/generations/{gen_id}").status_code == 403


def test_persons_endpoints(client, app):
    asyncio.run(app.state.db.create_person(name="Николай 2", era="19th Century", category="Politician"))

    data = client.get("/api/persons", params={"category": "politician"}).json()
    assert data["total"] == 1
    assert data["persons"][0]["name"] == "Николай 2"

    data = client.get("/api/persons", params={"q": "никол"}).json()
    assert [p["name"] for p in data["persons"]] == ["Николай 2"]
    assert data["from_internet"] is False

    assert client.get("/api/persons", params={"limit": 500}).status_code == 400
    assert client.get("/api/persons/search", params={"q": "Н"}).status_code == 400

    data = client.get("/api/persons/autocomplete", params={"q": "Никол"}).json()
    assert data["suggestions"][0]["name"] == "Николай 2 (19th Century)"
    assert client.get("/api/persons/autocomplete", params={"q": "Н"}).json() == {
        "suggestions": [],
        "from_internet": False,
    }


def test_subscription_endpoints(client, login, subscribed, settings):
    login()
    assert client.get("/api/subscription/check").json()["needs_recheck"] is True
    subscribed()
    status = client.get("/api/subscription/check").json()
    assert status["is_subscribed"] is True
    assert status["needs_recheck"] is False

    assert client.get("/api/subscription/channel").json()["channel_link"] == "https://t.me/history_channel"
    settings.channel_id = None
    assert client.get("/api/subscription/channel").status_code == 500


def test_subscription_check_is_rate_limited(client, login, subscribed):
    login()
    for _ in range(10):
        subscribed()
    resp = client.post("/api/subscription/check")
    assert resp.status_code == 429
    assert "Retry-After" in resp.headers


def test_admin_routes_require_admin(client, login):
    assert client.get("/api/admin/stats").status_code == 401
    login(5001)
    assert client.get("/api/admin/stats").status_code == 403


def test_admin_reports(client, login):
    login(1001)
    stats = client.get("/api/admin/stats").json()
    assert stats["overview"]["total_users"] == 1
    assert client.get("/api/admin/activity", params={"group_by": "day"}).json()["period"]["group_by"] == "day"
    users = client.get("/api/admin/users", params={"search": "tester"}).json()
    assert users["pagination"]["total"] == 1
    assert "issues" in client.get("/api/admin/diagnostics").json()


def test_admin_access_token(client, login, app):
    login(1001)
    token = client.post("/api/admin/access-token").json()["token"]
    client.post("/api/auth/logout")

    assert client.get("/api/admin/stats").status_code == 401
    assert client.get("/api/admin/stats", headers={"X-Admin-Token": token}).status_code == 200
    assert client.get("/api/admin/access-token/verify", params={"token": "bogus"}).json() == {"valid": False}

    resp = client.get("/admin", params={"token": token}, follow_redirects=False)
    assert resp.status_code == 303
    assert client.get("/api/admin/stats").status_code == 200


def test_make_me_admin(client, login):
    login(5001)
    assert client.post("/api/admin/make-me-admin", json={"secret": "wrong"}).status_code == 403
    resp = client.post("/api/admin/make-me-admin", json={"secret": "setup-secret"})
    assert resp.status_code == 200
    assert resp.json()["user"]["is_admin"] is True
    assert client.get("/api/admin/stats").status_code == 200


def test_pages(client, login):
    assert client.get("/").status_code == 200
    assert "portraits_test_bot" in client.get("/login").text
    assert client.get("/generate", follow_redirects=False).headers["location"] == "/login"
    assert client.get("/admin", follow_redirects=False).headers["location"] == "/login"

    login(5001)
    assert client.get("/generate").status_code == 200
    assert client.get("/profile").status_code == 200
    assert client.get("/admin").status_code == 403
    assert client.get("/login", follow_redirects=False).headers["location"] == "/generate"


def test_webhook(client):
    assert client.get("/api/telegram/webhook").json()["ok"] is True
    assert client.post("/api/telegram/webhook", json={"foo": "bar"}).json()["ok"] is False

    update = {
        "update_id": 1,
        "message": {
            "message_id": 10,
            "date": 1700000000,
            "chat": {"id": 5001, "type": "private"},
            "from": {"id": 5001, "is_bot": False, "first_name": "Test"},
            "text": "hello",
        },
    }
    assert client.post("/api/telegram/webhook", json=update).json() == {"ok": True}


def test_admin_link_can_be_sent_to_telegram(client, login, monkeypatch):
    sent = []

    async def fake_send(bot, chat_id, text, **kwargs):
        sent.append((chat_id, text))
        return object()

    monkeypatch.setattr(admin_routes, "send_message", fake_send)
    login(1001)
    data = client.post("/api/admin/access-token", params={"notify": "true"}).json()
    assert data["sent"] is True
    assert sent[0][0] == "1001"
    assert data["link"] in sent[0][1]


def test_persons_search_can_skip_internet(client, settings, monkeypatch):
    settings.perplexity_api_key = "p"

    async def no_network(settings, name):
        raise AssertionError("internet search must be skipped")

    monkeypatch.setattr(perplexity, "search_historical_person", no_network)

    data = client.get("/api/persons/search", params={"q": "Эйнштейн", "useInternet": "false"}).json()
    assert data == {"persons": [], "from_internet": False}

    data = client.get("/api/persons", params={"q": "Эйнштейн", "useInternet": "false"}).json()
    assert data["persons"] == []
    assert data["from_internet"] is False
