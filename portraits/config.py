import os
from dataclasses import dataclass, field
from typing import List
from urllib.parse import urlparse

from dotenv import load_dotenv


DEFAULT_IMAGE_PROVIDERS = ("gemini", "openai", "replicate", "nano_banana")


@dataclass
class ProxyConfig:
    scheme: str | None = None
    host: str | None = None
    port: int | None = None
    username: str | None = None
    password: str | None = None

    def as_url(self) -> str | None:
        if not (self.scheme and self.host and self.port):
            return None
        if self.username and self.password:
            return f"{self.scheme}://{self.username}:{self.password}@{self.host}:{self.port}"
        return f"{self.scheme}://{self.host}:{self.port}"


@dataclass
class Settings:
    bot_token: str
    session_secret: str
    bot_username: str | None = None
    channel_id: str | None = None
    channel_url: str | None = None
    admin_ids: list[int] = field(default_factory=list)
    database_url: str = "sqlite+aiosqlite:///./data/portraits.db"
    base_url: str = "http://localhost:8000"
    data_dir: str = "data"
    daily_limit: int = 15
    ip_daily_limit: int = 20
    admin_setup_secret: str | None = None
    gemini_api_key: str | None = None
    nano_banana_api_key: str | None = None
    nano_banana_api_url: str | None = None
    banana_model_key: str | None = None
    openai_api_key: str | None = None
    perplexity_api_key: str | None = None
    replicate_api_key: str | None = None
    image_providers: list[str] = field(default_factory=lambda: list(DEFAULT_IMAGE_PROVIDERS))
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    bot_proxy: str | None = None

    @property
    def db_path(self) -> str:
        db_url = self.database_url
        if "sqlite+aiosqlite:///" in db_url:
            return db_url.replace("sqlite+aiosqlite:///", "")
        if db_url.startswith("sqlite:///"):
            return db_url.replace("sqlite:///", "")
        return os.path.join(self.data_dir, "portraits.db")

    @property
    def image_key(self) -> str | None:
        # Отдельный ключ для картинок, иначе общий ключ Gemini
        return self.nano_banana_api_key or self.gemini_api_key

    @property
    def generations_dir(self) -> str:
        return os.path.join(self.data_dir, "generations")


def _parse_proxy(raw: str) -> ProxyConfig:
    if "://" in raw:
        parsed = urlparse(raw)
        return ProxyConfig(
            scheme=parsed.scheme or "http",
            host=parsed.hostname,
            port=parsed.port,
            username=parsed.username,
            password=parsed.password,
        )
    # host:port:user:pass или host:port
    parts = raw.split(":")
    if len(parts) == 4:
        return ProxyConfig(scheme="http", host=parts[0], port=int(parts[1]), username=parts[2], password=parts[3])
    if len(parts) == 2:
        return ProxyConfig(scheme="http", host=parts[0], port=int(parts[1]))
    return ProxyConfig()


def _parse_ids(raw: str) -> List[int]:
    ids: List[int] = []
    for p in raw.replace(";", ",").split(","):
        p = p.strip()
        if not p:
            continue
        try:
            ids.append(int(p))
        except ValueError:
            continue
    return ids


def _env(name: str, *aliases: str) -> str | None:
    for key in (name, *aliases):
        value = os.getenv(key, "").strip()
        if value:
            return value
    return None


def load_settings() -> Settings:
    load_dotenv()

    bot_token = _env("BOT_TOKEN", "TELEGRAM_BOT_TOKEN", "TELEGRAM_BOT_TOKEN_BASE") or ""
    session_secret = _env("SESSION_SECRET", "NEXTAUTH_SECRET") or ""

    proxy_raw = _env("AI_HTTP_PROXY")
    if proxy_raw:
        proxy = _parse_proxy(proxy_raw)
    else:
        proxy = ProxyConfig(
            scheme=os.getenv("PROXY_SCHEME", "").strip() or None,
            host=os.getenv("PROXY_HOST", "").strip() or None,
            port=int(os.getenv("PROXY_PORT", "0") or 0) or None,
            username=os.getenv("PROXY_USER", "").strip() or None,
            password=os.getenv("PROXY_PASS", "").strip() or None,
        )

    admin_ids = _parse_ids(os.getenv("ADMIN_IDS", ""))
    for extra in _parse_ids(os.getenv("TELEGRAM_ADMIN_ID", "")):
        if extra not in admin_ids:
            admin_ids.append(extra)

    providers_raw = _env("IMAGE_PROVIDERS")
    if providers_raw:
        image_providers = [p.strip().lower() for p in providers_raw.split(",") if p.strip()]
    else:
        image_providers = list(DEFAULT_IMAGE_PROVIDERS)

    if not bot_token:
        raise RuntimeError("BOT_TOKEN is required in .env")
    if not session_secret:
        raise RuntimeError("SESSION_SECRET is required in .env")

    return Settings(
        bot_token=bot_token,
        session_secret=session_secret,
        bot_username=(_env("BOT_USERNAME", "TELEGRAM_BOT_USERNAME") or "").lstrip("@") or None,
        channel_id=_env("CHANNEL_ID", "TELEGRAM_CHANNEL_ID"),
        channel_url=_env("CHANNEL_URL"),
        admin_ids=admin_ids,
        database_url=_env("DATABASE_URL") or "sqlite+aiosqlite:///./data/portraits.db",
        base_url=(_env("BASE_URL", "NEXTAUTH_URL") or "http://localhost:8000").rstrip("/"),
        data_dir=_env("DATA_DIR") or "data",
        daily_limit=int(_env("DAILY_LIMIT") or 15),
        ip_daily_limit=int(_env("IP_DAILY_LIMIT") or 20),
        admin_setup_secret=_env("ADMIN_SETUP_SECRET"),
        gemini_api_key=_env("GEMINI_API_KEY"),
        nano_banana_api_key=_env("NANO_BANANA_API_KEY"),
        nano_banana_api_url=_env("NANO_BANANA_API_URL"),
        banana_model_key=_env("BANANA_MODEL_KEY"),
        openai_api_key=_env("OPENAI_API_KEY"),
        perplexity_api_key=_env("PERPLEXITY_API_KEY"),
        replicate_api_key=_env("REPLICATE_API_KEY", "REPLICATE_API_TOKEN"),
        image_providers=image_providers,
        proxy=proxy,
        bot_proxy=_env("BOT_HTTP_PROXY"),
    )
