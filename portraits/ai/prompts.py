import logging

from portraits.ai import gemini, openai, perplexity
from portraits.ai.models import PersonInfo
from portraits.config import Settings
from portraits.errors import ProviderError, ProviderNotConfigured

logger = logging.getLogger(__name__)

QUALITY_SUFFIX = ", high quality, detailed, professional photography, 8k resolution, historical accuracy"

SYSTEM_PROMPT = (
    "You are an expert at creating detailed prompts for AI image generation. "
    "Create a detailed, vivid description of a historical person that will be used to generate a realistic portrait. "
    "Focus on physical appearance, clothing, setting, and historical accuracy."
)


def build_prompt_request(person: PersonInfo, style: str = "realistic") -> str:
    lines = [
        f"Create a detailed image generation prompt for {person.name}, a historical figure from the {person.era} era.",
        "",
        "Information about the person:",
        person.description or "",
        "",
        f"Era: {person.era}",
    ]
    if person.country:
        lines.append(f"Country: {person.country}")
    if person.birth_year:
        lines.append(f"Born: {person.birth_year}")
    if person.death_year:
        lines.append(f"Died: {person.death_year}")
    if person.appearance and person.appearance != "Historical figure":
        lines.append(f"Appearance notes: {person.appearance}")
    lines += [
        "",
        f"Style: {style}",
        "",
        "Create a detailed prompt (2-3 sentences) that describes:",
        "- Physical appearance and facial features",
        "- Clothing and attire appropriate for the era",
        "- Setting and background",
        "- Lighting and mood",
        "- Historical accuracy",
        "",
        "The prompt should be in English and suitable for AI image generation models like Flux or Stable Diffusion.",
    ]
    return "\n".join(lines)


def fallback_prompt(person: PersonInfo) -> str:
    return (
        f"A realistic portrait of {person.name}, a historical figure from the {person.era} era, "
        "detailed facial features, period-appropriate clothing, professional photography, high quality, 8k resolution"
    )


def with_quality_suffix(text: str) -> str:
    return text.strip().rstrip(".,") + QUALITY_SUFFIX


async def generate_image_prompt(settings: Settings, person: PersonInfo, style: str = "realistic") -> str:
    """Gemini -> OpenAI -> Perplexity -> шаблон. Всегда возвращает непустой промпт."""
    instruction = build_prompt_request(person, style)
    attempts = (
        ("Gemini", settings.gemini_api_key, lambda: gemini.generate_text(settings, f"{SYSTEM_PROMPT}\n\n{instruction}")),
        ("OpenAI", settings.openai_api_key, lambda: openai.generate_text(settings, SYSTEM_PROMPT, instruction)),
        ("Perplexity", settings.perplexity_api_key, lambda: perplexity.complete_prompt(settings, SYSTEM_PROMPT, instruction)),
    )
    for name, key, call in attempts:
        if not key:
            continue
        try:
            text = await call()
        except (ProviderError, ProviderNotConfigured) as e:
            logger.warning("[Prompt] %s failed, trying next provider: %s", name, e)
            continue
        if text and text.strip():
            logger.info("[Prompt] generated by %s: %s", name, text[:100])
            return with_quality_suffix(text)

    logger.warning("[Prompt] all providers failed for %s, using template", person.name)
    return fallback_prompt(person)
