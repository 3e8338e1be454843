"""Perplexity: поиск биографий и подсказки имён через chat/completions."""
from __future__ import annotations

import asyncio
import logging
import re

from portraits.ai.http import post_text_request
from portraits.ai.models import PersonInfo, Suggestion
from portraits.config import Settings
from portraits.errors import ProviderError, ProviderNotConfigured

logger = logging.getLogger(__name__)

PERPLEXITY_API_URL = "https://api.perplexity.ai/chat/completions"
SEARCH_MODEL = "llama-3.1-sonar-large-128k-online"
SUGGEST_MODEL = "llama-3.1-sonar-small-128k-online"
PROMPT_MODELS = (
    "llama-3.1-sonar-huge-128k-online",
    "llama-3.1-sonar-small-128k-online",
    "sonar",
)

SEARCH_SYSTEM = (
    "You are a helpful assistant that provides detailed information about historical figures, "
    "politicians, leaders, and notable people for AI image generation. Always try to find information "
    "about the person, even if the name is incomplete or in a different language."
)

SEARCH_PROMPT = """Find and provide detailed information about the person named "{name}".
This could be a historical figure, politician, leader, artist, scientist, or any notable person from any time period.

Please provide:
1. Full name
2. Brief biography (3-5 sentences with key facts about their life, achievements, and significance)
3. Historical era/period
4. Physical appearance description (facial features, build, hair) if known from portraits or photographs
5. Country/region of origin
6. Birth year and death year (if known)
7. Profession and role in history
8. Typical clothing or attire for their era and status

If this person is not found or not a real historical figure, clearly state that."""

SUGGEST_SYSTEM = (
    "You are a helpful assistant that provides lists of historical figures with their full names and "
    "identifiers. Always include specific identifiers like numbers or professions when there are "
    "multiple people with the same name."
)

SUGGEST_PROMPT = """List {limit} different historical figures, politicians, leaders, or notable people whose name starts with or contains "{query}".

Format as a list, one person per line, like:
- Николай II (второй) - 19th-20th Century, Russia
- Николай Кондратьев (экономист) - 20th Century, Russia

Only include real historical figures. Be specific with names and identifiers."""

NOT_FOUND_MARKERS = ("not found", "not a real", "cannot find", "could not find", "no information")

ERA_PATTERNS = (
    (("ancient", "antiquity", "bce", "before christ"), "Ancient"),
    (("medieval", "middle ages"), "Medieval"),
    (("renaissance", "15th century", "16th century"), "Renaissance"),
    (("17th century", "1600s"), "17th Century"),
    (("18th century", "1700s"), "18th Century"),
    (("19th century", "1800s"), "19th Century"),
    (("20th century", "1900s", "world war"), "20th Century"),
    (("21st century", "2000s"), "21st Century"),
    (("modern", "contemporary"), "Modern"),
)

COUNTRY_PATTERNS = (
    (("france", "french"), "France"),
    (("england", "english", "britain", "british"), "England"),
    (("germany", "german"), "Germany"),
    (("italy", "italian"), "Italy"),
    (("spain", "spanish"), "Spain"),
    (("russia", "russian"), "Russia"),
    (("greece", "greek"), "Greece"),
    (("egypt", "egyptian"), "Egypt"),
    (("china", "chinese"), "China"),
    (("japan", "japanese"), "Japan"),
    (("india", "indian"), "India"),
    (("united states", "america", "american", "usa"), "United States"),
)

APPEARANCE_KEYWORDS = ("appearance", "looked like", "physical", "portrait", "depicted")

YEAR_RE = re.compile(r"\b(1[0-9]{3}|20[0-2][0-9])\b")
SUGGESTION_RE = re.compile(r"^\s*(?:[-•*]|\d+[.)])\s*(.+?)\s*$")
MAX_LIFESPAN = 120


def _require_key(settings: Settings) -> str:
    if not settings.perplexity_api_key:
        raise ProviderNotConfigured("perplexity", "PERPLEXITY_API_KEY")
    return settings.perplexity_api_key


def _chat_sync(
    api_key: str,
    model: str,
    system: str,
    user: str,
    max_tokens: int = 1000,
    temperature: float = 0.7,
    timeout: int = 30,
) -> str | None:
    payload = {
        "model": model,
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
    data = post_text_request("Perplexity", PERPLEXITY_API_URL, headers=headers, payload=payload, timeout=timeout, attempts=2)
    choices = data.get("choices") or []
    if not choices:
        return None
    return ((choices[0].get("message") or {}).get("content") or "").strip() or None


def _contains(text: str, keyword: str) -> bool:
    # короткие ключи ищем как отдельные слова
    if len(keyword) <= 4:
        return re.search(rf"\b{re.escape(keyword)}\b", text) is not None
    return keyword in text


def looks_not_found(content: str) -> bool:
    lower = content.lower()
    if any(marker in lower for marker in NOT_FOUND_MARKERS):
        return True
    return "not" in lower.split() and "historical figure" in lower and len(lower) < 300


def _description(content: str) -> str:
    description = content[:500].strip()
    last_end = max(description.rfind("."), description.rfind("!"), description.rfind("?"))
    if last_end > 100:
        description = description[: last_end + 1].strip()
    if len(description) < 100:
        description = content[:800].strip()
        last_period = description.rfind(".")
        if last_period > 100:
            description = description[: last_period + 1].strip()
    if len(description) < 50:
        description = content[:500].strip()
    return description


def _years(content: str) -> tuple[int | None, int | None]:
    years = sorted(int(y) for y in YEAR_RE.findall(content) if 1000 <= int(y) <= 2024)
    if not years:
        return None, None
    if len(years) == 1:
        return years[0], None
    birth, death = years[0], years[-1]
    if death - birth > MAX_LIFESPAN:
        for a, b in zip(years, years[1:]):
            if 0 < b - a < MAX_LIFESPAN:
                return a, b
    return birth, death


def parse_person_info(name: str, content: str) -> PersonInfo:
    lower = content.lower()

    era = "Unknown"
    for keywords, era_name in ERA_PATTERNS:
        if any(_contains(lower, kw) for kw in keywords):
            era = era_name
            break

    country = None
    for keywords, country_name in COUNTRY_PATTERNS:
        if any(_contains(lower, kw) for kw in keywords):
            country = country_name
            break

    appearance = "Historical figure"
    for keyword in APPEARANCE_KEYWORDS:
        index = lower.find(keyword)
        if index != -1:
            snippet = content[index:index + 200]
            if len(snippet) > 20:
                appearance = snippet[:150].strip()
                break

    birth_year, death_year = _years(content)
    return PersonInfo(
        name=name,
        description=_description(content),
        era=era,
        appearance=appearance,
        country=country,
        birth_year=birth_year,
        death_year=death_year,
    )


async def search_historical_person(settings: Settings, name: str) -> PersonInfo | None:
    api_key = _require_key(settings)
    logger.info('[Perplexity] Searching for: "%s"', name)
    try:
        content = await asyncio.to_thread(
            _chat_sync, api_key, SEARCH_MODEL, SEARCH_SYSTEM, SEARCH_PROMPT.format(name=name)
        )
    except ProviderError as e:
        if e.error_type == "auth":
            raise ProviderError("Perplexity", "PERPLEXITY_API_KEY is invalid or expired", e.status_code, "auth") from e
        logger.error("[Perplexity] search failed for %r: %s", name, e)
        return None

    if not content:
        logger.warning("[Perplexity] empty response for %r", name)
        return None
    if looks_not_found(content):
        logger.warning("[Perplexity] Response indicates person not found: %r", name)
        return None

    info = parse_person_info(name, content)
    logger.info("[Perplexity] Parsed person info: name=%s era=%s country=%s", info.name, info.era, info.country)
    return info


def parse_suggestions(content: str, query: str, limit: int | None = None) -> list[Suggestion]:
    needle = query.casefold()
    suggestions: list[Suggestion] = []
    for line in content.splitlines():
        m = SUGGESTION_RE.match(line)
        if not m:
            continue
        body = m.group(1).replace("**", "")
        head, _sep, tail = body.partition(" - ")
        head = head.strip()
        identifier = None
        ident_match = re.match(r"^(.+?)\s*\((.+?)\)$", head)
        if ident_match:
            head, identifier = ident_match.group(1).strip(), ident_match.group(2).strip()
        if not head or needle not in head.casefold():
            continue
        era, _c, country = tail.partition(",")
        suggestions.append(Suggestion(
            name=head,
            identifier=identifier,
            era=era.strip() or None,
            country=country.strip() or None,
        ))
        if limit is not None and len(suggestions) >= limit:
            break
    return suggestions


async def suggest_persons(settings: Settings, query: str, limit: int = 5) -> list[Suggestion]:
    api_key = _require_key(settings)
    content = await asyncio.to_thread(
        _chat_sync,
        api_key,
        SUGGEST_MODEL,
        SUGGEST_SYSTEM,
        SUGGEST_PROMPT.format(limit=limit, query=query),
        500,
        0.7,
        10,
    )
    if not content:
        return []
    return parse_suggestions(content, query, limit)


async def complete_prompt(settings: Settings, system: str, instruction: str) -> str:
    """Пробует модели Perplexity по очереди, возвращает первый непустой ответ."""
    api_key = _require_key(settings)
    last_error: Exception | None = None
    for model in PROMPT_MODELS:
        try:
            logger.info("[Perplexity Prompt] Trying model: %s", model)
            text = await asyncio.to_thread(_chat_sync, api_key, model, system, instruction, 500, 0.8, 30)
            if text:
                return text
        except ProviderError as e:
            last_error = e
            logger.warning("[Perplexity Prompt] model %s failed: %s", model, e)
            if e.error_type == "auth":
                break
    raise last_error or ProviderError("Perplexity", "empty prompt response", error_type="no_text")
