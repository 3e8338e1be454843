import pytest

from portraits.ai import perplexity
from portraits.errors import ProviderError, ProviderNotConfigured

NAPOLEON = (
    "Napoleon Bonaparte was a French military leader and emperor who rose to prominence during the "
    "19th century. He was born in 1769 in Corsica and died in 1821 on Saint Helena. His appearance in "
    "portraits shows a short man with dark hair and a determined gaze."
)


def test_parse_person_info():
    info = perplexity.parse_person_info("Наполеон", NAPOLEON)
    assert info.name == "Наполеон"
    assert info.era == "19th Century"
    assert info.country == "France"
    assert (info.birth_year, info.death_year) == (1769, 1821)
    assert info.appearance.startswith("appearance in portraits")
    assert info.description == NAPOLEON


def test_short_country_keywords_match_whole_words_only():
    info = perplexity.parse_person_info("X", "A thinker who lived in the 18th century in Germany and later in the USA.")
    assert info.country == "Germany"
    assert info.era == "18th Century"
    info = perplexity.parse_person_info("Y", "Causal reasoning was his passion.")
    assert info.country is None
    assert info.era == "Unknown"


def test_years_skip_implausible_lifespan():
    info = perplexity.parse_person_info("Z", "Born 1412, died 1431. A film about her appeared in 1999.")
    assert (info.birth_year, info.death_year) == (1412, 1431)


def test_not_found_detection():
    assert perplexity.looks_not_found("I could not find any information about this person.")
    assert perplexity.looks_not_found("This is not a real historical figure.")
    assert not perplexity.looks_not_found(NAPOLEON)


def test_parse_suggestions():
    content = (
        "Here are some people:\n"
        "- Николай II (второй) - 19th-20th Century, Russia\n"
        "- **Николай Кондратьев** (экономист) - 20th Century, Russia\n"
        "1. Николай Пирогов - 19th Century, Russia\n"
        "- Пётр I - 18th Century, Russia\n"
    )
    result = perplexity.parse_suggestions(content, "Никол")
    assert [s.name for s in result] == ["Николай II", "Николай Кондратьев", "Николай Пирогов"]
    assert result[0].identifier == "второй"
    assert result[0].era == "19th-20th Century"
    assert result[0].country == "Russia"
    assert len(perplexity.parse_suggestions(content, "Никол", limit=2)) == 2


async def test_search_requires_key(settings):
    with pytest.raises(ProviderNotConfigured):
        await perplexity.search_historical_person(settings, "Наполеон")


async def test_search_parses_response(settings, monkeypatch):
    settings.perplexity_api_key = "pplx-test"
    monkeypatch.setattr(perplexity, "_chat_sync", lambda *args, **kwargs: NAPOLEON)
    info = await perplexity.search_historical_person(settings, "Наполеон")
    assert info.country == "France"


async def test_search_returns_none_when_not_found(settings, monkeypatch):
    settings.perplexity_api_key = "pplx-test"
    monkeypatch.setattr(perplexity, "_chat_sync", lambda *a, **k: "Sorry, this person was not found.")
    assert await perplexity.search_historical_person(settings, "Qwerty") is None


async def test_search_auth_error_is_raised(settings, monkeypatch):
    settings.perplexity_api_key = "pplx-bad"

    def fail(*args, **kwargs):
        raise ProviderError("Perplexity", "unauthorized", 401, "auth")

    monkeypatch.setattr(perplexity, "_chat_sync", fail)
    with pytest.raises(ProviderError) as exc:
        await perplexity.search_historical_person(settings, "Наполеон")
    assert "invalid or expired" in str(exc.value)


async def test_search_other_errors_return_none(settings, monkeypatch):
    settings.perplexity_api_key = "pplx-test"

    def fail(*args, **kwargs):
        raise ProviderError("Perplexity", "boom", 500, "unknown")

    monkeypatch.setattr(perplexity, "_chat_sync", fail)
    assert await perplexity.search_historical_person(settings, "Наполеон") is None
