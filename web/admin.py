import json
import logging
import secrets

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from portraits import admin as admin_service
from portraits.admin import issue_access_token, verify_access_token
from portraits.config import Settings
from portraits.db import Database, format_ts
from portraits.ratelimit import TTLCache
from portraits.strings import get_string
from portraits.telegram import send_message
from portraits.validation import sanitize_string
from web.deps import admin_access, current_user, get_cache, get_db, get_settings, serialize_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin")


@router.post("/access-token")
async def create_access_token(
    request: Request,
    notify: bool = Query(False),
    admin: dict | None = Depends(admin_access),
    cache: TTLCache = Depends(get_cache),
    settings: Settings = Depends(get_settings),
):
    token = issue_access_token(cache, telegram_id=admin["telegram_id"] if admin else None)
    link = admin_service.build_admin_link(settings, token.token)
    sent = False
    if notify and admin:
        message = await send_message(request.app.state.bot, admin["telegram_id"], get_string("admin_link", link=link))
        sent = message is not None
    return {"token": token.token, "expires_at": format_ts(token.expires_at), "link": link, "sent": sent}


@router.get("/access-token/verify")
async def check_access_token(
    request: Request,
    token: str | None = Query(None),
    cache: TTLCache = Depends(get_cache),
):
    token = token or request.headers.get("x-admin-token")
    valid = verify_access_token(cache, token)
    if valid:
        request.session["admin_token"] = token
    return {"valid": valid}


@router.get("/stats")
async def stats(
    days: int = Query(30, ge=1, le=365),
    _admin: dict | None = Depends(admin_access),
    db: Database = Depends(get_db),
):
    return await admin_service.collect_stats(db, days)


@router.get("/activity")
async def activity(
    days: int = Query(7, ge=1, le=90),
    group_by: str = Query("hour"),
    _admin: dict | None = Depends(admin_access),
    db: Database = Depends(get_db),
):
    return await admin_service.collect_activity(db, days, group_by)


@router.get("/users")
async def users(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    search: str | None = Query(None, max_length=100),
    subscribed: bool | None = Query(None),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc"),
    _admin: dict | None = Depends(admin_access),
    db: Database = Depends(get_db),
):
    search = sanitize_string(search, 100) if search else None
    return await admin_service.list_users(db, page, limit, search, subscribed, sort_by, sort_order)


@router.get("/diagnostics")
async def diagnostics(
    _admin: dict | None = Depends(admin_access),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return await admin_service.diagnostics(db, settings)


@router.post("/make-me-admin")
async def make_me_admin(
    request: Request,
    user: dict = Depends(current_user),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    if not settings.admin_setup_secret:
        raise HTTPException(status_code=403, detail="ADMIN_SETUP_SECRET is not configured")
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    secret = str(body.get("secret") or "") if isinstance(body, dict) else ""
    if not secrets.compare_digest(secret.encode(), settings.admin_setup_secret.encode()):
        logger.warning("Wrong admin setup secret from user %s", user["id"])
        raise HTTPException(status_code=403, detail="Invalid secret")

    updated = await admin_service.make_admin(db, user["telegram_id"])
    return {"success": True, "user": serialize_user(updated, settings)}
