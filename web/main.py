import logging
import os
from contextlib import asynccontextmanager

from aiogram.types import Update
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from portraits import generation
from portraits.admin import is_admin, verify_access_token
from portraits.config import Settings, load_settings
from portraits.db import Database
from portraits.errors import GenerationError
from portraits.logs import configure_logging
from portraits.main import build_dispatcher, create_bot
from portraits.ratelimit import RateLimiter, TTLCache
from portraits.subscriptions import get_subscription_status
from portraits.telegram import channel_link
from web import admin as admin_routes
from web import api as api_routes
from web.deps import login_user, validation_details

logger = logging.getLogger(__name__)

TEMPLATES_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")
SESSION_MAX_AGE = 30 * 24 * 60 * 60

templates = Jinja2Templates(directory=TEMPLATES_DIR)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    await app.state.db.init()

    bot = create_bot(settings)
    app.state.bot = bot
    app.state.dp = build_dispatcher(settings, app.state.db, app.state.cache)
    logger.info("Web app started (base_url=%s)", settings.base_url)
    try:
        yield
    finally:
        await bot.session.close()


async def _page_context(request: Request, **extra) -> dict:
    settings: Settings = request.app.state.settings
    db: Database = request.app.state.db
    user_id = request.session.get("user_id")
    user = await db.get_user(int(user_id)) if user_id else None
    ctx = {
        "user": user,
        "is_admin": is_admin(settings, user),
        "bot_username": settings.bot_username,
        "channel_link": channel_link(settings.channel_id, settings.channel_url),
        "daily_limit": settings.daily_limit,
    }
    ctx.update(extra)
    return ctx


def _register_pages(app: FastAPI) -> None:
    @app.get("/", response_class=HTMLResponse)
    async def index(request: Request):
        images = await generation.public_generations(request.app.state.db, 12)
        return templates.TemplateResponse(request, "index.html", await _page_context(request, images=images))

    @app.get("/login", response_class=HTMLResponse)
    async def login_page(request: Request, error: str | None = None):
        ctx = await _page_context(request, error=error)
        if ctx["user"]:
            return RedirectResponse(url="/generate", status_code=303)
        return templates.TemplateResponse(request, "login.html", ctx)

    @app.get("/auth/telegram")
    async def auth_telegram_redirect(request: Request):
        data = dict(request.query_params)
        if "id" not in data or "hash" not in data:
            return RedirectResponse(url="/login?error=missing", status_code=303)
        try:
            await login_user(request, data)
        except HTTPException:
            return RedirectResponse(url="/login?error=auth", status_code=303)
        return RedirectResponse(url="/generate", status_code=303)

    @app.get("/generate", response_class=HTMLResponse)
    async def generate_page(request: Request):
        ctx = await _page_context(request)
        if not ctx["user"]:
            return RedirectResponse(url="/login", status_code=303)
        settings = request.app.state.settings
        db = request.app.state.db
        ctx["quota"] = await generation.get_quota(db, settings, ctx["user"]["id"])
        ctx["subscription"] = await get_subscription_status(db, settings, ctx["user"])
        return templates.TemplateResponse(request, "generate.html", ctx)

    @app.get("/profile", response_class=HTMLResponse)
    async def profile_page(request: Request):
        ctx = await _page_context(request)
        if not ctx["user"]:
            return RedirectResponse(url="/login", status_code=303)
        settings = request.app.state.settings
        db = request.app.state.db
        items, total = await generation.list_user_generations(db, ctx["user"]["id"], 50, 0)
        ctx.update(
            generations=items,
            total=total,
            quota=await generation.get_quota(db, settings, ctx["user"]["id"]),
        )
        return templates.TemplateResponse(request, "profile.html", ctx)

    @app.get("/admin", response_class=HTMLResponse)
    async def admin_page(request: Request, token: str | None = None):
        cache: TTLCache = request.app.state.cache
        if token and verify_access_token(cache, token):
            request.session["admin_token"] = token
            return RedirectResponse(url="/admin", status_code=303)

        ctx = await _page_context(request)
        has_token = verify_access_token(cache, request.session.get("admin_token"))
        if not (ctx["is_admin"] or has_token):
            if not ctx["user"]:
                return RedirectResponse(url="/login", status_code=303)
            return templates.TemplateResponse(request, "admin.html", {**ctx, "denied": True}, status_code=403)
        return templates.TemplateResponse(request, "admin.html", {**ctx, "denied": False})


def _register_webhook(app: FastAPI) -> None:
    @app.post("/api/telegram/webhook")
    async def telegram_webhook(request: Request):
        bot = request.app.state.bot
        dp = request.app.state.dp
        try:
            payload = await request.json()
            update = Update.model_validate(payload, context={"bot": bot})
            await dp.feed_update(bot, update)
        except Exception as e:
            # Ответ всегда 200
            logger.exception("Webhook update failed")
            return {"ok": False, "error": str(e)}
        return {"ok": True}

    @app.get("/api/telegram/webhook")
    async def telegram_webhook_info():
        return {"ok": True, "message": "Telegram webhook endpoint is active"}


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(GenerationError)
    async def generation_error_handler(request: Request, exc: GenerationError):
        return JSONResponse(status_code=exc.status_code, content=exc.payload())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "Validation error", "details": validation_details(exc.errors())},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )


def create_app(settings: Settings | None = None) -> FastAPI:
    if settings is None:
        settings = load_settings()
        configure_logging(settings.data_dir, "web.log")

    app = FastAPI(title="Historical Portraits", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = Database(db_path=settings.db_path)
    app.state.cache = TTLCache()
    app.state.limiter = RateLimiter()

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        max_age=SESSION_MAX_AGE,
        same_site="lax",
        https_only=settings.base_url.startswith("https://"),
    )

    os.makedirs(settings.generations_dir, exist_ok=True)
    app.mount("/media/generations", StaticFiles(directory=settings.generations_dir), name="generations")

    _register_error_handlers(app)
    app.include_router(api_routes.router)
    app.include_router(admin_routes.router)
    _register_webhook(app)
    _register_pages(app)
    return app


def run() -> None:
    import uvicorn

    uvicorn.run(
        "web.main:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    run()
