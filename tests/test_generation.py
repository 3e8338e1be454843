import base64
import io
import os
from datetime import datetime, timedelta

import pytest
from PIL import Image

from portraits import generation
from portraits.ai import images, prompts
from portraits.ai.models import ImageResult
from portraits.errors import (
    DailyLimitReached,
    GenerationInProgress,
    ImageGenerationFailed,
    PersonNotFound,
    SubscriptionRequired,
)
from portraits.validation import GenerateRequest

NOW = datetime(2026, 3, 10, 15, 30, 0)


def png_bytes(size=(1200, 800)):
    buf = io.BytesIO()
    Image.new("RGB", size, (120, 80, 40)).save(buf, "PNG")
    return buf.getvalue()


async def make_user(db, telegram_id="5001", subscribed=True):
    user = await db.upsert_user(telegram_id, "tester", "Test", None)
    await db.set_user_subscribed(user["id"], subscribed)
    return await db.get_user(user["id"])


@pytest.fixture
def providers(monkeypatch):
    seen = {}

    async def fake_prompt(settings, person, style="realistic"):
        seen["person"] = person
        seen["style"] = style
        return f"Portrait of {person.name}"

    async def fake_image(settings, prompt):
        seen["prompt"] = prompt
        return ImageResult(provider="gemini", data=png_bytes())

    monkeypatch.setattr(prompts, "generate_image_prompt", fake_prompt)
    monkeypatch.setattr(images, "generate_image", fake_image)
    return seen


async def test_quota_counts_only_completed_today(db, settings):
    user = await make_user(db)
    await db.create_generation(user["id"], "A", "completed", created_at=NOW - timedelta(hours=1))
    await db.create_generation(user["id"], "B", "failed", created_at=NOW - timedelta(hours=1))
    await db.create_generation(user["id"], "C", "completed", created_at=NOW - timedelta(days=1))

    quota = await generation.get_quota(db, settings, user["id"], NOW)
    assert quota.as_dict() == {"limit": 15, "used": 1, "remaining": 14, "is_limit_reached": False}


async def test_generate_portrait_success(db, settings, providers):
    user = await make_user(db)
    await db.create_person(name="Пётр I", description="Russian tsar", era="18th Century")

    row = await generation.generate_portrait(
        db, settings, user, GenerateRequest(personName="Пётр I", style="historical"), NOW
    )

    assert row["status"] == "completed"
    assert row["person_name"] == "Пётр I"
    assert row["prompt"] == "Portrait of Пётр I"
    assert row["style"] == "historical"
    assert row["historical_person_id"] is not None
    assert row["image_url"].startswith("/media/generations/")

    path = generation.local_image_path(settings, row["image_url"])
    with Image.open(path) as img:
        assert img.format == "JPEG"
        assert max(img.size) == 1024
    assert (await generation.get_quota(db, settings, user["id"], NOW)).used == 1


async def test_details_in_parentheses_reach_the_prompt(db, settings, providers):
    user = await make_user(db)
    person = await db.create_person(name="Пётр I", description="Russian tsar", era="18th Century")

    row = await generation.generate_portrait(
        db, settings, user, GenerateRequest(personName="Пётр I (в молодости)"), NOW
    )

    assert row["person_name"] == "Пётр I (в молодости)"
    assert row["historical_person_id"] == person["id"]
    assert providers["person"].name == "Пётр I (в молодости)"
    assert providers["person"].description.endswith("в молодости")


async def test_generate_by_person_id(db, settings, providers):
    user = await make_user(db)
    person = await db.create_person(name="Екатерина II", era="18th Century")

    row = await generation.generate_portrait(db, settings, user, GenerateRequest(personId=person["id"]), NOW)
    assert row["person_name"] == "Екатерина II"
    assert row["historical_person_id"] == person["id"]


async def test_unsubscribed_user_is_refused(db, settings, providers):
    user = await make_user(db, subscribed=False)
    with pytest.raises(SubscriptionRequired):
        await generation.generate_portrait(db, settings, user, GenerateRequest(personName="Пётр I"), NOW)


async def test_concurrent_generation_is_refused(db, settings, providers):
    user = await make_user(db)
    generation._active_users.add(user["id"])
    with pytest.raises(GenerationInProgress) as exc:
        await generation.generate_portrait(db, settings, user, GenerateRequest(personName="Пётр I"), NOW)
    assert exc.value.status_code == 409


async def test_daily_limit(db, settings, providers):
    user = await make_user(db)
    for i in range(settings.daily_limit):
        await db.create_generation(user["id"], f"P{i}", "completed", image_url="/x.jpg", created_at=NOW)

    with pytest.raises(DailyLimitReached) as exc:
        await generation.generate_portrait(db, settings, user, GenerateRequest(personName="Пётр I"), NOW)
    assert exc.value.payload()["remaining"] == 0
    assert exc.value.payload()["limit"] == 15
    assert user["id"] not in generation._active_users


async def test_failed_image_is_recorded_and_not_counted(db, settings, monkeypatch, providers):
    user = await make_user(db)
    await db.create_person(name="Пётр I")

    async def broken(settings, prompt):
        raise ImageGenerationFailed("Не удалось сгенерировать изображение", "gemini: quota")

    monkeypatch.setattr(images, "generate_image", broken)
    with pytest.raises(ImageGenerationFailed):
        await generation.generate_portrait(db, settings, user, GenerateRequest(personName="Пётр I"), NOW)

    stats = await db.get_overview_stats()
    assert stats["failed_generations"] == 1
    assert stats["successful_generations"] == 0
    assert (await generation.get_quota(db, settings, user["id"], NOW)).used == 0


async def test_unknown_person_is_recorded_as_failed(db, settings, providers):
    user = await make_user(db)
    with pytest.raises(PersonNotFound):
        await generation.generate_portrait(db, settings, user, GenerateRequest(personName="Неизвестный"), NOW)
    stats = await db.get_overview_stats()
    assert stats["failed_generations"] == 1


async def test_store_image_from_data_url(settings):
    encoded = base64.b64encode(png_bytes((64, 64))).decode()
    url = await generation.store_image(settings, ImageResult(provider="openai", url=f"data:image/png;base64,{encoded}"))
    path = generation.local_image_path(settings, url)
    assert os.path.exists(path)
    assert generation.local_image_path(settings, "https://example.com/a.png") is None


async def test_list_and_delete_generations(db, settings, providers):
    owner = await make_user(db, "1")
    other = await make_user(db, "2")
    await db.create_person(name="Пётр I", era="18th Century")
    row = await generation.generate_portrait(db, settings, owner, GenerateRequest(personName="Пётр I"), NOW)
    await db.create_generation(owner["id"], "X", "failed", created_at=NOW)

    items, total = await generation.list_user_generations(db, owner["id"])
    assert total == 1
    assert items[0]["person"]["era"] == "18th Century"

    public = await generation.public_generations(db)
    assert public == [{"id": row["id"], "url": row["image_url"], "alt": "Портрет: Пётр I", "person_name": "Пётр I"}]

    with pytest.raises(PermissionError):
        await generation.delete_generation(db, settings, other, row["id"])
    with pytest.raises(LookupError):
        await generation.delete_generation(db, settings, owner, 99999)

    path = generation.local_image_path(settings, row["image_url"])
    await generation.delete_generation(db, settings, owner, row["id"])
    assert await db.get_generation(row["id"]) is None
    assert not os.path.exists(path)
