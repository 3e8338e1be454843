import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from portraits.ai.images import provider_configured
from portraits.config import Settings
from portraits.db import Database, format_ts, utcnow
from portraits.generation import day_start
from portraits.ratelimit import TTLCache

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TTL = 3600
TOKEN_PREFIX = "admin_token:"


@dataclass
class AccessToken:
    token: str
    expires_at: datetime


def is_admin(settings: Settings, user: dict | None) -> bool:
    if not user:
        return False
    if user.get("is_admin"):
        return True
    try:
        return int(user.get("telegram_id")) in (settings.admin_ids or [])
    except (TypeError, ValueError):
        return False


def issue_access_token(cache: TTLCache, ttl: int = ACCESS_TOKEN_TTL, telegram_id: str | int | None = None) -> AccessToken:
    token = secrets.token_hex(32)
    cache.set(TOKEN_PREFIX + token, {"telegram_id": str(telegram_id) if telegram_id else None}, ttl)
    return AccessToken(token=token, expires_at=utcnow() + timedelta(seconds=ttl))


def verify_access_token(cache: TTLCache, token: str | None) -> bool:
    if not token:
        return False
    return cache.get(TOKEN_PREFIX + token) is not None


def build_admin_link(settings: Settings, token: str) -> str:
    return f"{settings.base_url}/admin?token={token}"


def _rate(part: int, total: int) -> float:
    return round(part / total * 100, 2) if total else 0.0


async def collect_stats(db: Database, days: int = 30, now: datetime | None = None) -> dict:
    now = now or utcnow()
    since = now - timedelta(days=days)
    overview = await db.get_overview_stats()
    total_users = overview["total_users"]
    subscribed = overview["subscribed_users"]
    total_gens = overview["total_generations"]
    successful = overview["successful_generations"]
    return {
        "overview": {
            "total_users": total_users,
            "subscribed_users": subscribed,
            "unsubscribed_users": total_users - subscribed,
            "subscription_rate": _rate(subscribed, total_users),
            "total_generations": total_gens,
            "successful_generations": successful,
            "failed_generations": overview["failed_generations"],
            "success_rate": _rate(successful, total_gens),
            "total_persons": overview["total_persons"],
        },
        "period": {"days": days, "since": format_ts(since), **await db.get_period_stats(since)},
        "daily_stats": await db.get_daily_stats(since),
        "top_users": await db.get_top_users(since, 10),
        "top_persons": await db.get_top_persons(since, 10),
    }


async def collect_activity(db: Database, days: int = 7, group_by: str = "hour", now: datetime | None = None) -> dict:
    if group_by not in ("hour", "day"):
        group_by = "hour"
    now = now or utcnow()
    since = now - timedelta(days=days)
    return {
        "period": {"days": days, "group_by": group_by, "since": format_ts(since)},
        "activity": await db.get_activity(since, group_by),
        "top_active_users": await db.get_top_active_users(since, 20),
    }


async def list_users(
    db: Database,
    page: int = 1,
    limit: int = 50,
    search: str | None = None,
    subscribed: bool | None = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    now: datetime | None = None,
) -> dict:
    page = max(1, page)
    limit = max(1, min(limit, 200))
    rows, total = await db.list_users_page(
        offset=(page - 1) * limit,
        limit=limit,
        search=search,
        subscribed=subscribed,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    today = format_ts(day_start(now or utcnow()))
    stats = await db.user_generation_stats([r["id"] for r in rows], today)
    users = []
    for r in rows:
        s = stats.get(r["id"], {})
        users.append({
            "id": r["id"],
            "telegram_id": r["telegram_id"],
            "username": r["username"],
            "first_name": r["first_name"],
            "last_name": r["last_name"],
            "is_subscribed": bool(r["is_subscribed"]),
            "is_admin": bool(r["is_admin"]),
            "created_at": r["created_at"],
            "stats": {
                "total": int(s.get("total") or 0),
                "successful": int(s.get("successful") or 0),
                "failed": int(s.get("failed") or 0),
                "today": int(s.get("today") or 0),
                "last_generation_at": s.get("last_generation_at"),
            },
        })
    return {
        "users": users,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


async def make_admin(db: Database, telegram_id: str | int) -> dict:
    if not await db.set_admin_by_telegram_id(telegram_id):
        raise LookupError(f"user with telegram_id={telegram_id} not found")
    logger.info("User %s is now admin", telegram_id)
    return await db.get_user_by_telegram_id(telegram_id)


async def diagnostics(db: Database, settings: Settings) -> dict:
    issues = []
    try:
        db_ok = await db.ping()
    except Exception as e:
        logger.error("Diagnostics: database ping failed: %s", e)
        db_ok = False
    if not db_ok:
        issues.append("Database is not reachable")

    totals = await db.get_overview_stats() if db_ok else {}
    providers = {name: provider_configured(settings, name) for name in ("gemini", "openai", "replicate", "nano_banana")}
    if not any(providers.values()):
        issues.append("No image provider is configured")
    if not settings.perplexity_api_key:
        issues.append("PERPLEXITY_API_KEY is not set: new persons cannot be found")
    if not settings.channel_id:
        issues.append("CHANNEL_ID is not set: subscription checks are disabled")
    if not settings.admin_ids:
        issues.append("ADMIN_IDS is not set")

    return {
        "database": {"ok": db_ok, "users": totals.get("total_users"), "generations": totals.get("total_generations")},
        "telegram": {
            "bot_token": bool(settings.bot_token),
            "channel_id": settings.channel_id,
            "admin_ids": len(settings.admin_ids),
            "webhook_url": f"{settings.base_url}/api/telegram/webhook",
        },
        "providers": {
            "image": providers,
            "prompt": {
                "gemini": bool(settings.gemini_api_key),
                "openai": bool(settings.openai_api_key),
                "perplexity": bool(settings.perplexity_api_key),
            },
            "image_order": settings.image_providers,
        },
        "issues": issues,
    }
