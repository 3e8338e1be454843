import logging

from fastapi import Depends, HTTPException, Request, status

from portraits.admin import is_admin, verify_access_token
from portraits.config import Settings
from portraits.db import Database
from portraits.ratelimit import RateLimiter, TTLCache
from portraits.telegram import verify_login_data

logger = logging.getLogger(__name__)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_cache(request: Request) -> TTLCache:
    return request.app.state.cache


def get_limiter(request: Request) -> RateLimiter:
    return request.app.state.limiter


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def serialize_user(user: dict, settings: Settings) -> dict:
    return {
        "id": user["id"],
        "telegram_id": user["telegram_id"],
        "username": user.get("username"),
        "first_name": user.get("first_name"),
        "last_name": user.get("last_name"),
        "photo_url": user.get("photo_url"),
        "is_subscribed": bool(user.get("is_subscribed")),
        "is_admin": is_admin(settings, user),
    }


async def login_user(request: Request, data: dict) -> dict:
    settings = get_settings(request)
    db = get_db(request)
    if not verify_login_data(data, settings.bot_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Telegram login data")
    user = await db.upsert_user(
        telegram_id=str(data["id"]),
        username=data.get("username"),
        first_name=data.get("first_name"),
        last_name=data.get("last_name"),
        photo_url=data.get("photo_url"),
    )
    request.session["user_id"] = user["id"]
    logger.info("User %s logged in (telegram_id=%s)", user["id"], user["telegram_id"])
    return user


async def optional_user(request: Request, db: Database = Depends(get_db)) -> dict | None:
    user_id = request.session.get("user_id")
    if not user_id:
        return None
    return await db.get_user(int(user_id))


async def current_user(request: Request, db: Database = Depends(get_db)) -> dict:
    user_id = request.session.get("user_id")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    user = await db.get_user(int(user_id))
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


async def admin_access(
    request: Request,
    settings: Settings = Depends(get_settings),
    cache: TTLCache = Depends(get_cache),
    user: dict | None = Depends(optional_user),
) -> dict | None:
    """Админ по сессии или по одноразовой ссылке из бота (токен в сессии/заголовке)."""
    if is_admin(settings, user):
        return user
    token = request.headers.get("x-admin-token") or request.session.get("admin_token")
    if verify_access_token(cache, token):
        return user
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")


def validation_details(errors: list[dict]) -> list[dict]:
    details = []
    for err in errors:
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query")]
        details.append({"field": ".".join(loc) or None, "message": err.get("msg")})
    return details
