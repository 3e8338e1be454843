import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from portraits import generation, persons
from portraits.config import Settings
from portraits.db import Database, utcnow
from portraits.errors import ChannelNotConfigured, DailyLimitReached, GenerationError, SubscriptionRequired
from portraits.ratelimit import RateLimiter
from portraits.subscriptions import get_subscription_status, refresh_subscription
from portraits.telegram import channel_link
from portraits.validation import GenerateRequest, PersonQuery
from web.deps import (
    client_ip,
    current_user,
    get_db,
    get_limiter,
    get_settings,
    login_user,
    serialize_user,
    validation_details,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

IP_WINDOW_SECONDS = 24 * 60 * 60


def _too_many(result, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"error": message, "retry_after": result.retry_after()},
        headers={"Retry-After": str(result.retry_after()), "X-RateLimit-Remaining": "0"},
    )


def _bad_request(err: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "details": validation_details(err.errors())},
    )


# --- Служебное ---

@router.get("/health")
async def health():
    return {"status": "healthy", "timestamp": utcnow().isoformat() + "Z", "service": "historical-portraits"}


# --- Авторизация ---

@router.post("/auth/telegram")
async def auth_telegram(request: Request, settings: Settings = Depends(get_settings)):
    try:
        data = await request.json()
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(data, dict) or "id" not in data or "hash" not in data:
        raise HTTPException(status_code=400, detail="Missing Telegram login fields")
    user = await login_user(request, data)
    return {"success": True, "user": serialize_user(user, settings)}


@router.post("/auth/logout")
async def logout(request: Request):
    request.session.clear()
    return {"success": True}


@router.get("/me")
async def me(
    user: dict = Depends(current_user),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    quota = await generation.get_quota(db, settings, user["id"])
    return {"user": serialize_user(user, settings), "quota": quota.as_dict()}


# --- Генерация ---

@router.post("/generate")
async def generate(
    request: Request,
    user: dict = Depends(current_user),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
    limiter: RateLimiter = Depends(get_limiter),
):
    if not user.get("is_subscribed"):
        raise SubscriptionRequired()
    quota = await generation.get_quota(db, settings, user["id"])
    if quota.is_limit_reached:
        raise DailyLimitReached(quota.limit, quota.used)

    ip_result = limiter.hit(f"generate_ip:{client_ip(request)}", settings.ip_daily_limit, IP_WINDOW_SECONDS)
    if not ip_result.allowed:
        logger.warning("IP limit reached for %s (user=%s)", client_ip(request), user["id"])
        return _too_many(ip_result, "Слишком много генераций с этого IP-адреса")

    try:
        body = await request.json()
    except json.JSONDecodeError:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON"})
    try:
        payload = GenerateRequest.model_validate(body)
    except ValidationError as e:
        return _bad_request(e)

    try:
        row = await generation.generate_portrait(db, settings, user, payload)
    except GenerationError:
        raise
    except Exception as e:
        logger.exception("Unexpected generation error for user=%s", user["id"])
        return JSONResponse(status_code=500, content={"error": "Ошибка генерации", "details": str(e)})

    quota = await generation.get_quota(db, settings, user["id"])
    return JSONResponse(
        content={
            "success": True,
            "generation": generation.serialize_generation(row),
            "remaining": quota.remaining,
        },
        headers={"X-RateLimit-Remaining": str(ip_result.remaining)},
    )


@router.get("/generations")
async def user_generations(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: dict = Depends(current_user),
    db: Database = Depends(get_db),
):
    items, total = await generation.list_user_generations(db, user["id"], limit, offset)
    return {"generations": items, "total": total, "limit": limit, "offset": offset}


@router.get("/generations/limit")
async def generations_limit(
    user: dict = Depends(current_user),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    quota = await generation.get_quota(db, settings, user["id"])
    return quota.as_dict()


@router.get("/generations/public")
async def generations_public(limit: int = Query(12, ge=1, le=50), db: Database = Depends(get_db)):
    return {"images": await generation.public_generations(db, limit)}


@router.delete("/generations/{generation_id}")
async def delete_generation(
    generation_id: int,
    user: dict = Depends(current_user),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        await generation.delete_generation(db, settings, user, generation_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Generation not found")
    except PermissionError:
        raise HTTPException(status_code=403, detail="Forbidden")
    return {"success": True}


# --- Исторические личности ---

def _search_allowed(request: Request, limiter: RateLimiter):
    result = limiter.hit_preset("search", client_ip(request))
    if not result.allowed:
        return _too_many(result, "Слишком много поисковых запросов")
    return None


@router.get("/persons")
async def persons_index(
    request: Request,
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
    limiter: RateLimiter = Depends(get_limiter),
):
    try:
        query = PersonQuery.model_validate(dict(request.query_params))
    except ValidationError as e:
        return _bad_request(e)

    if query.q:
        limited = _search_allowed(request, limiter)
        if limited:
            return limited
        rows, from_internet = await persons.search_persons(db, settings, query.q, query.use_internet, query.limit)
        return {
            "persons": [persons.serialize_person(r) for r in rows],
            "total": len(rows),
            "from_internet": from_internet,
        }

    rows, total = await persons.list_persons(db, query.era, query.category, query.limit, query.offset)
    return {
        "persons": [persons.serialize_person(r) for r in rows],
        "total": total,
        "limit": query.limit,
        "offset": query.offset,
    }


@router.get("/persons/search")
async def persons_search(
    request: Request,
    q: str = Query("", max_length=100),
    limit: int = Query(20, ge=1, le=50),
    use_internet: bool = Query(True, alias="useInternet"),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
    limiter: RateLimiter = Depends(get_limiter),
):
    q = q.strip()
    if len(q) < 2:
        return JSONResponse(status_code=400, content={"error": "Запрос должен содержать минимум 2 символа"})
    limited = _search_allowed(request, limiter)
    if limited:
        return limited
    rows, from_internet = await persons.search_persons(db, settings, q, use_internet, limit)
    return {"persons": [persons.serialize_person(r) for r in rows], "from_internet": from_internet}


@router.get("/persons/autocomplete")
async def persons_autocomplete(
    request: Request,
    q: str = Query("", max_length=100),
    limit: int = Query(5, ge=1, le=10),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
    limiter: RateLimiter = Depends(get_limiter),
):
    if len(q.strip()) < 2:
        return {"suggestions": [], "from_internet": False}
    limited = _search_allowed(request, limiter)
    if limited:
        return limited
    suggestions, from_internet = await persons.autocomplete(db, settings, q, limit)
    return {"suggestions": [s.as_dict() for s in suggestions], "from_internet": from_internet}


# --- Подписка ---

@router.post("/subscription/check")
async def subscription_refresh(
    request: Request,
    user: dict = Depends(current_user),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
    limiter: RateLimiter = Depends(get_limiter),
):
    result = limiter.hit_preset("subscription", str(user["id"]))
    if not result.allowed:
        return _too_many(result, "Слишком частые проверки подписки")
    try:
        status = await refresh_subscription(db, request.app.state.bot, settings, user)
    except ChannelNotConfigured as e:
        logger.error("Subscription check failed: %s", e)
        return JSONResponse(status_code=500, content={"error": str(e)})
    return status.as_dict()


@router.get("/subscription/check")
async def subscription_status(
    user: dict = Depends(current_user),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    status = await get_subscription_status(db, settings, user)
    return status.as_dict()


@router.get("/subscription/channel")
async def subscription_channel(settings: Settings = Depends(get_settings)):
    link = channel_link(settings.channel_id, settings.channel_url)
    if not link:
        return JSONResponse(status_code=500, content={"error": "CHANNEL_ID is not configured"})
    return {"channel_link": link, "channel_id": settings.channel_id}

