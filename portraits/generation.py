from __future__ import annotations

import asyncio
import base64
import io
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime

import httpx
from PIL import Image

from portraits import persons
from portraits.ai import images, prompts
from portraits.ai.models import ImageResult, PersonInfo
from portraits.config import Settings
from portraits.db import Database, utcnow
from portraits.errors import (
    DailyLimitReached,
    GenerationInProgress,
    ImageGenerationFailed,
    PersonNotFound,
    PromptGenerationFailed,
    ProviderNotConfigured,
    SubscriptionRequired,
)
from portraits.names import (
    extract_additional_info,
    extract_person_name,
    full_name_for_generation,
    has_additional_info,
)
from portraits.validation import GenerateRequest

logger = logging.getLogger(__name__)

MEDIA_PREFIX = "/media/generations/"
MAX_IMAGE_DIM = 1024
JPEG_QUALITY = 90

# Пользователи, у которых сейчас идёт генерация
_active_users: set[int] = set()


@dataclass
class QuotaStatus:
    limit: int
    used: int
    remaining: int
    is_limit_reached: bool

    def as_dict(self) -> dict:
        return {
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
            "is_limit_reached": self.is_limit_reached,
        }


def day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


async def get_quota(db: Database, settings: Settings, user_id: int, now: datetime | None = None) -> QuotaStatus:
    now = now or utcnow()
    used = await db.count_completed_since(user_id, day_start(now))
    limit = settings.daily_limit
    remaining = max(0, limit - used)
    return QuotaStatus(limit=limit, used=used, remaining=remaining, is_limit_reached=used >= limit)


def compress_image(img_bytes: bytes) -> bytes:
    """Пережимает картинку в JPEG, длинная сторона не больше MAX_IMAGE_DIM."""
    img = Image.open(io.BytesIO(img_bytes)).convert("RGB")
    w, h = img.size
    if w > MAX_IMAGE_DIM or h > MAX_IMAGE_DIM:
        scale = min(MAX_IMAGE_DIM / w, MAX_IMAGE_DIM / h)
        img = img.resize((int(w * scale), int(h * scale)), Image.Resampling.LANCZOS)
    buf = io.BytesIO()
    img.save(buf, "JPEG", quality=JPEG_QUALITY, optimize=True)
    out = buf.getvalue()
    logger.info("Image compressed: %d -> %d bytes", len(img_bytes), len(out))
    return out


def save_image_bytes(settings: Settings, img_bytes: bytes) -> str:
    os.makedirs(settings.generations_dir, exist_ok=True)
    try:
        payload = compress_image(img_bytes)
    except (OSError, ValueError) as e:
        logger.warning("Compression failed, saving original: %s", e)
        payload = img_bytes
    filename = f"{uuid.uuid4().hex}.jpg"
    with open(os.path.join(settings.generations_dir, filename), "wb") as f:
        f.write(payload)
    return MEDIA_PREFIX + filename


async def store_image(settings: Settings, result: ImageResult) -> str:
    if result.data:
        return await asyncio.to_thread(save_image_bytes, settings, result.data)

    url = result.url or ""
    if url.startswith("data:"):
        _header, _sep, encoded = url.partition(",")
        return await asyncio.to_thread(save_image_bytes, settings, base64.b64decode(encoded))

    try:
        async with httpx.AsyncClient(timeout=60.0, follow_redirects=True) as client:
            resp = await client.get(url)
            resp.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning("Image download failed (%s), keeping remote URL: %s", result.provider, e)
        return url
    return await asyncio.to_thread(save_image_bytes, settings, resp.content)


def local_image_path(settings: Settings, image_url: str | None) -> str | None:
    if not image_url or not image_url.startswith(MEDIA_PREFIX):
        return None
    return os.path.join(settings.generations_dir, os.path.basename(image_url))


async def _resolve_person(db: Database, settings: Settings, request: GenerateRequest) -> tuple[dict, PersonInfo]:
    if request.person_id is not None:
        row = await db.get_person(request.person_id)
        if row:
            return row, PersonInfo.from_row(row)
        if not request.person_name:
            raise PersonNotFound(f"#{request.person_id}")
    return await persons.find_or_create_person(db, settings, extract_person_name(request.person_name))


async def _run_pipeline(
    db: Database, settings: Settings, user: dict, request: GenerateRequest, now: datetime | None
) -> dict:
    person_name = request.person_name or f"#{request.person_id}"
    person_row = None
    prompt = None
    try:
        person_row, info = await _resolve_person(db, settings, request)
        raw_name = request.person_name or person_row["name"]
        if has_additional_info(raw_name):
            extra = extract_additional_info(raw_name)
            info.name = full_name_for_generation(raw_name)
            if extra.casefold() not in (info.description or "").casefold():
                info.description = f"{info.description} {extra}".strip()
        person_name = info.name or person_row["name"]

        prompt = await prompts.generate_image_prompt(settings, info, request.style)
        if not prompt:
            raise PromptGenerationFailed("Не удалось создать промпт")

        try:
            result = await images.generate_image(settings, prompt)
        except ProviderNotConfigured as e:
            raise ImageGenerationFailed("Генерация изображений не настроена", str(e)) from e
        image_url = await store_image(settings, result)
    except Exception as e:
        logger.error("Generation failed for user=%s person=%r: %s", user["id"], person_name, e)
        await db.create_generation(
            user_id=user["id"],
            person_name=person_name,
            status="failed",
            historical_person_id=person_row["id"] if person_row else None,
            prompt=prompt,
            style=request.style,
            error_message=str(getattr(e, "details", None) or e)[:1000],
            created_at=now,
        )
        raise

    generation_id = await db.create_generation(
        user_id=user["id"],
        person_name=person_name,
        status="completed",
        historical_person_id=person_row["id"],
        prompt=prompt,
        image_url=image_url,
        style=request.style,
        created_at=now,
    )
    logger.info("Generation %s completed for user=%s person=%r", generation_id, user["id"], person_name)
    return await db.get_generation(generation_id)


async def generate_portrait(
    db: Database, settings: Settings, user: dict, request: GenerateRequest, now: datetime | None = None
) -> dict:
    if not user.get("is_subscribed"):
        raise SubscriptionRequired()
    if user["id"] in _active_users:
        raise GenerationInProgress()

    _active_users.add(user["id"])
    try:
        quota = await get_quota(db, settings, user["id"], now)
        if quota.is_limit_reached:
            raise DailyLimitReached(quota.limit, quota.used)
        return await _run_pipeline(db, settings, user, request, now)
    finally:
        _active_users.discard(user["id"])


def serialize_generation(row: dict) -> dict:
    data = {
        "id": row["id"],
        "image_url": row.get("image_url"),
        "person_name": row.get("person_name"),
        "prompt": row.get("prompt"),
        "style": row.get("style"),
        "created_at": row.get("created_at"),
    }
    if row.get("historical_person_id"):
        data["person"] = {
            "id": row["historical_person_id"],
            "name": row.get("hp_name") or row.get("person_name"),
            "era": row.get("hp_era"),
        }
    return data


async def list_user_generations(db: Database, user_id: int, limit: int = 20, offset: int = 0) -> tuple[list[dict], int]:
    rows, total = await db.list_user_generations(user_id, limit, offset)
    return [serialize_generation(r) for r in rows], total


async def delete_generation(db: Database, settings: Settings, user: dict, generation_id: int) -> None:
    row = await db.get_generation(generation_id)
    if not row:
        raise LookupError(f"generation {generation_id} not found")
    if row["user_id"] != user["id"]:
        raise PermissionError("generation belongs to another user")
    await db.delete_generation(generation_id)
    path = local_image_path(settings, row.get("image_url"))
    if path and os.path.exists(path):
        try:
            os.remove(path)
        except OSError as e:
            logger.warning("Failed to remove image file %s: %s", path, e)


async def public_generations(db: Database, limit: int = 12) -> list[dict]:
    rows = await db.list_public_generations(limit)
    return [
        {
            "id": r["id"],
            "url": r["image_url"],
            "alt": f"Портрет: {r['person_name']}",
            "person_name": r["person_name"],
        }
        for r in rows
    ]
