from __future__ import annotations

import asyncio
import base64
import logging

from portraits.ai.http import json_body, post_image_request, post_text_request, response_error
from portraits.ai.models import ImageResult
from portraits.config import Settings
from portraits.errors import ProviderError, ProviderNotConfigured

logger = logging.getLogger(__name__)

CHAT_URL = "https://api.openai.com/v1/chat/completions"
IMAGES_URL = "https://api.openai.com/v1/images/generations"
CHAT_MODEL = "gpt-4o-mini"
IMAGE_MODEL = "dall-e-3"


def _headers(api_key: str) -> dict:
    return {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}


def _generate_text_sync(api_key: str, system: str, text: str) -> str:
    payload = {
        "model": CHAT_MODEL,
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": text},
        ],
        "temperature": 0.8,
        "max_tokens": 300,
    }
    data = post_text_request("OpenAI", CHAT_URL, headers=_headers(api_key), payload=payload, timeout=60, attempts=2)
    choices = data.get("choices") or []
    content = ((choices[0].get("message") or {}).get("content") if choices else None) or ""
    if not content.strip():
        raise ProviderError("OpenAI", "Failed to generate prompt", 200, "no_text")
    return content.strip()


async def generate_text(settings: Settings, system: str, text: str) -> str:
    if not settings.openai_api_key:
        raise ProviderNotConfigured("openai", "OPENAI_API_KEY")
    return await asyncio.to_thread(_generate_text_sync, settings.openai_api_key, system, text)


def _generate_image_sync(api_key: str, prompt: str) -> ImageResult:
    payload = {
        "model": IMAGE_MODEL,
        "prompt": prompt[:4000],
        "n": 1,
        "size": "1024x1024",
        "quality": "hd",
    }
    logger.info("[OpenAI] DALL-E image start: prompt_len=%d", len(prompt))
    resp = post_image_request("OpenAI", IMAGES_URL, headers=_headers(api_key), payload=payload)
    if resp.status_code != 200:
        err = response_error("OpenAI", resp)
        logger.error("[OpenAI] image error status=%s type=%s", err.status_code, err.error_type)
        raise err

    items = json_body("OpenAI", resp).get("data") or []
    if items:
        item = items[0]
        if item.get("url"):
            return ImageResult(provider="openai", url=item["url"])
        if item.get("b64_json"):
            return ImageResult(provider="openai", data=base64.b64decode(item["b64_json"]), mime_type="image/png")
    raise ProviderError("OpenAI", "No image URL in response", 200, "no_image")


async def generate_image(settings: Settings, prompt: str) -> ImageResult:
    if not settings.openai_api_key:
        raise ProviderNotConfigured("openai", "OPENAI_API_KEY")
    return await asyncio.to_thread(_generate_image_sync, settings.openai_api_key, prompt)
