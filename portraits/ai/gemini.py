from __future__ import annotations

import asyncio
import base64
import logging

from portraits.ai.http import json_body, key_preview, post_image_request, post_text_request, response_error
from portraits.ai.models import ImageResult
from portraits.config import Settings
from portraits.errors import ProviderError, ProviderNotConfigured

logger = logging.getLogger(__name__)

API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"
TEXT_MODEL = "gemini-2.5-flash"
IMAGE_MODELS = (
    "gemini-2.5-flash-image-preview",
    "gemini-3-pro-image-preview",
    "gemini-2.0-flash-exp-image-generation",
)


def _text_parts(data: dict) -> list[str]:
    parts = []
    for cand in data.get("candidates", []) or []:
        for part in (cand.get("content") or {}).get("parts", []) or []:
            if part.get("text"):
                parts.append(part["text"])
    return parts


def _generate_text_sync(api_key: str, text: str, proxy_url: str | None = None) -> str:
    headers = {"Content-Type": "application/json", "x-goog-api-key": api_key}
    payload = {
        "contents": [{"parts": [{"text": text}]}],
        "generationConfig": {"temperature": 0.8, "maxOutputTokens": 1024},
    }
    logger.info("[Gemini] text generation start: prompt_len=%d, key=%s", len(text), key_preview(api_key))
    data = post_text_request(
        "Gemini", f"{API_BASE}/{TEXT_MODEL}:generateContent",
        headers=headers, payload=payload, timeout=30, attempts=2, proxy_url=proxy_url,
    )
    parts = _text_parts(data)
    if not parts:
        raise ProviderError("Gemini", "No text in response", 200, "no_text")
    return "\n".join(parts).strip()


async def generate_text(settings: Settings, text: str) -> str:
    if not settings.gemini_api_key:
        raise ProviderNotConfigured("gemini", "GEMINI_API_KEY")
    return await asyncio.to_thread(_generate_text_sync, settings.gemini_api_key, text, settings.proxy.as_url())


def extract_inline_image(data: dict) -> tuple[bytes, str] | None:
    for cand in data.get("candidates", []) or []:
        content = cand.get("content") or {}
        for part in content.get("parts", []) or []:
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                mime = inline.get("mimeType") or inline.get("mime_type") or "image/png"
                return base64.b64decode(inline["data"]), mime
    return None


def _generate_image_sync(api_key: str, model: str, prompt: str, proxy_url: str | None = None) -> ImageResult:
    endpoint = f"{API_BASE}/{model}:generateContent"
    headers = {"Content-Type": "application/json", "x-goog-api-key": api_key}
    payload = {
        "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        "generationConfig": {"responseModalities": ["Text", "Image"]},
    }
    logger.info(
        "[Gemini] image start: model=%s, prompt_len=%d, proxy=%s",
        model, len(prompt or ""), (proxy_url[:30] + "...") if proxy_url else "none",
    )
    resp = post_image_request("Gemini", endpoint, headers=headers, payload=payload, proxy_url=proxy_url)
    if resp.status_code != 200:
        err = response_error("Gemini", resp)
        logger.error(
            "[Gemini] ERROR - Key Preview: %s, Model: %s, Status: %s, Type: %s",
            key_preview(api_key), model, err.status_code, err.error_type,
        )
        raise err

    data = json_body("Gemini", resp)
    found = extract_inline_image(data)
    if found:
        image_bytes, mime = found
        return ImageResult(provider="gemini", data=image_bytes, mime_type=mime)

    text_parts = _text_parts(data)
    if text_parts:
        logger.warning("[Gemini] returned text instead of image: %s", text_parts[0][:500])
        raise ProviderError("Gemini", "returned text instead of image: " + text_parts[0][:200], 200, "no_image")
    raise ProviderError("Gemini", "No image in response", 200, "no_image")


async def generate_image(settings: Settings, prompt: str) -> ImageResult:
    api_key = settings.image_key
    if not api_key:
        raise ProviderNotConfigured("gemini", "NANO_BANANA_API_KEY")

    last_error: ProviderError | None = None
    for model in IMAGE_MODELS:
        try:
            return await asyncio.to_thread(_generate_image_sync, api_key, model, prompt, settings.proxy.as_url())
        except ProviderError as e:
            last_error = e
            logger.warning("[Gemini] model %s failed: %s", model, e)
            # ключ общий для всех моделей
            if e.error_type in ("auth", "rate_limit"):
                break
    raise last_error or ProviderError("Gemini", "no image models configured", error_type="no_image")
