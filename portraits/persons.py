import logging
import re

from portraits.ai import perplexity
from portraits.ai.models import PersonInfo, Suggestion
from portraits.config import Settings
from portraits.db import Database, name_key
from portraits.errors import PersonNotFound, ProviderError, ProviderNotConfigured

logger = logging.getLogger(__name__)

# Уточнения для однословных запросов ("Ленин" -> "Ленин политик")
SEARCH_VARIANTS = (" историческая личность", " политик", " лидер")

CATEGORY_KEYWORDS = (
    ("Politician", ("politician", "president", "leader", "emperor", "king", "queen", "tsar", "политик", "император", "царь")),
    ("Artist", ("artist", "painter", "sculptor", "composer", "writer", "poet", "художник", "писатель", "поэт", "композитор")),
    ("Scientist", ("scientist", "physicist", "chemist", "mathematician", "inventor", "учёный", "ученый", "физик", "химик")),
    ("Military", ("general", "military", "commander", "admiral", "marshal", "полководец", "генерал", "маршал")),
)

MIN_DB_RESULTS = 3


def extract_category(info: PersonInfo) -> str | None:
    text = (info.description or "").lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(kw in text for kw in keywords):
            return category
    return None


def format_display_name(name: str, era: str | None) -> str:
    if era and re.search(r"\d", name):
        return f"{name} ({era})"
    return name


def serialize_person(row: dict) -> dict:
    return {
        "id": row["id"],
        "name": row["name"],
        "name_en": row.get("name_en"),
        "description": row.get("description"),
        "era": row.get("era"),
        "country": row.get("country"),
        "birth_year": row.get("birth_year"),
        "death_year": row.get("death_year"),
        "category": row.get("category"),
    }


async def _store(db: Database, name: str, info: PersonInfo) -> dict:
    return await db.create_person(
        name=name,
        description=info.description,
        era=info.era,
        country=info.country,
        birth_year=info.birth_year,
        death_year=info.death_year,
        category=extract_category(info),
        appearance=info.appearance,
    )


async def find_or_create_person(db: Database, settings: Settings, name: str) -> tuple[dict, PersonInfo]:
    """Ищет личность в БД, при отсутствии ищет в интернете и кэширует результат."""
    existing = await db.find_person_by_name(name)
    if existing:
        logger.info("Person found in DB: %s (id=%s)", existing["name"], existing["id"])
        return existing, PersonInfo.from_row(existing)

    variants = [name]
    if len(name.split()) == 1:
        variants += [name + suffix for suffix in SEARCH_VARIANTS]

    last_error: str | None = None
    for variant in variants:
        try:
            info = await perplexity.search_historical_person(settings, variant)
        except ProviderNotConfigured as e:
            last_error = str(e)
            break
        except ProviderError as e:
            last_error = str(e)
            if e.error_type == "auth":
                break
            continue
        if info is None:
            continue
        info.name = name
        row = await _store(db, name, info)
        logger.info("Person created from internet search: %s (variant=%r, id=%s)", name, variant, row["id"])
        return row, PersonInfo.from_row(row)

    raise PersonNotFound(name, last_error)


async def search_persons(
    db: Database, settings: Settings, query: str, use_internet: bool = True, limit: int = 20
) -> tuple[list[dict], bool]:
    """Возвращает (результаты, был ли поиск в интернете)."""
    results = await db.search_persons(query, limit)
    if not use_internet or len(results) >= MIN_DB_RESULTS or len(query) <= 3 or not settings.perplexity_api_key:
        return results, False

    try:
        info = await perplexity.search_historical_person(settings, query)
    except (ProviderError, ProviderNotConfigured) as e:
        logger.warning("Internet search failed for %r: %s", query, e)
        return results, False
    if info is None:
        return results, True

    known = {name_key(r["name"]) for r in results}
    if name_key(query) in known:
        return results, True
    row = await _store(db, query, info)
    if row["id"] not in {r["id"] for r in results}:
        results.append(row)
    return results[:limit], True


async def list_persons(
    db: Database, era: str | None = None, category: str | None = None, limit: int = 20, offset: int = 0
) -> tuple[list[dict], int]:
    return await db.list_persons(era=era, category=category, limit=limit, offset=offset)


async def autocomplete(db: Database, settings: Settings, query: str, limit: int = 5) -> tuple[list[Suggestion], bool]:
    query = (query or "").strip()
    if len(query) < 2:
        return [], False

    rows = await db.search_persons(query, limit)
    suggestions = [
        Suggestion(
            name=format_display_name(r["name"], r.get("era")),
            era=r.get("era"),
            country=r.get("country"),
            source="database",
            person_id=r["id"],
        )
        for r in rows
    ]
    if len(suggestions) >= limit or not settings.perplexity_api_key:
        return suggestions[:limit], False

    try:
        extra = await perplexity.suggest_persons(settings, query, limit - len(suggestions))
    except (ProviderError, ProviderNotConfigured) as e:
        logger.warning("Perplexity suggestions failed for %r: %s", query, e)
        return suggestions, False

    seen = {r["name"].casefold() for r in rows} | {s.name.casefold() for s in suggestions}
    for s in extra:
        if s.name.casefold() in seen:
            continue
        seen.add(s.name.casefold())
        suggestions.append(s)
    return suggestions[:limit], bool(extra)

