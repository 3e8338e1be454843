import logging

from portraits.ai import gemini, nano_banana, openai, replicate
from portraits.ai.models import ImageResult
from portraits.config import Settings
from portraits.errors import ImageGenerationFailed, ProviderError, ProviderNotConfigured

logger = logging.getLogger(__name__)

PROVIDERS = {
    "gemini": gemini.generate_image,
    "openai": openai.generate_image,
    "replicate": replicate.generate_image,
    "nano_banana": nano_banana.generate_image,
}


def provider_configured(settings: Settings, name: str) -> bool:
    if name == "gemini":
        return bool(settings.image_key)
    if name == "openai":
        return bool(settings.openai_api_key)
    if name == "replicate":
        return bool(settings.replicate_api_key)
    if name == "nano_banana":
        return bool(settings.nano_banana_api_key)
    return False


async def generate_image(settings: Settings, prompt: str) -> ImageResult:
    failures: list[str] = []
    tried = 0
    for name in settings.image_providers:
        func = PROVIDERS.get(name)
        if func is None:
            logger.warning("[Images] unknown provider in IMAGE_PROVIDERS: %s", name)
            continue
        if not provider_configured(settings, name):
            continue
        tried += 1
        try:
            result = await func(settings, prompt)
        except (ProviderError, ProviderNotConfigured) as e:
            logger.warning("[Images] %s failed: %s", name, e)
            failures.append(f"{name}: {e}")
            continue
        logger.info("[Images] image generated by %s", name)
        return result

    if tried == 0:
        raise ProviderNotConfigured("images", "GEMINI_API_KEY / OPENAI_API_KEY / REPLICATE_API_KEY / NANO_BANANA_API_KEY")
    raise ImageGenerationFailed("Не удалось сгенерировать изображение", "; ".join(failures))
