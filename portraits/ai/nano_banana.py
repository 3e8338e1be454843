from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import ssl
import time

import httpx

from portraits.ai.http import json_body, response_error
from portraits.ai.models import ImageResult
from portraits.config import Settings
from portraits.errors import ProviderError, ProviderNotConfigured

logger = logging.getLogger(__name__)

BANANA_START_URL = "https://api.banana.dev/start/v1"
BANANA_CHECK_URL = "https://api.banana.dev/check/v1"
DEFAULT_MODEL_KEY = "flux"
POLL_INTERVAL = 2.0
POLL_ATTEMPTS = 60
TIMEOUT = httpx.Timeout(connect=30.0, read=120.0, write=30.0, pool=30.0)


def extract_image_url(data) -> str:
    """Достаёт URL (или base64) картинки из ответа в одном из известных форматов."""
    if isinstance(data, str) and data:
        return data
    if isinstance(data, list) and data:
        first = data[0]
        if isinstance(first, str):
            return first
        if isinstance(first, dict) and (first.get("url") or first.get("image_url")):
            return first.get("url") or first.get("image_url")
    if isinstance(data, dict):
        if data.get("image_url"):
            return data["image_url"]
        if data.get("url"):
            return data["url"]
        items = data.get("data")
        if isinstance(items, list) and items and isinstance(items[0], dict) and items[0].get("url"):
            return items[0]["url"]
        output = data.get("output")
        if isinstance(output, list) and output and isinstance(output[0], str):
            return output[0]
        outputs = data.get("modelOutputs")
        if isinstance(outputs, list) and outputs and isinstance(outputs[0], dict):
            if outputs[0].get("image_base64"):
                return outputs[0]["image_base64"]
            if outputs[0].get("image_url"):
                return outputs[0]["image_url"]
    raise ProviderError("NanoBanana", "No URL returned from Nano Banana API", error_type="no_image")


def to_image_result(value: str) -> ImageResult:
    if value.startswith(("http://", "https://", "data:")):
        return ImageResult(provider="nano_banana", url=value)
    try:
        return ImageResult(provider="nano_banana", data=base64.b64decode(value, validate=True), mime_type="image/png")
    except (binascii.Error, ValueError) as e:
        raise ProviderError("NanoBanana", "Unrecognized image payload", error_type="no_image") from e


def _is_ssl_error(exc: Exception) -> bool:
    if isinstance(exc, ssl.SSLError) or isinstance(exc.__cause__, ssl.SSLError):
        return True
    text = str(exc)
    return "SSL" in text or "tlsv1" in text or "EPROTO" in text


def _poll_banana_task(client: httpx.Client, api_key: str, task_id: str, poll_interval: float = POLL_INTERVAL) -> str:
    headers = {"X-Banana-API-Key": api_key, "Content-Type": "application/json"}
    last_error: Exception | None = None
    for attempt in range(POLL_ATTEMPTS):
        time.sleep(poll_interval)
        try:
            resp = client.post(BANANA_CHECK_URL, headers=headers, json={"id": task_id})
            if resp.status_code != 200:
                raise response_error("NanoBanana", resp)
            data = json_body("NanoBanana", resp)
        except (httpx.HTTPError, ProviderError) as e:
            last_error = e
            logger.warning("[NanoBanana] check attempt %d failed: %s", attempt + 1, e)
            continue

        outputs = data.get("modelOutputs")
        if isinstance(outputs, list) and outputs:
            if isinstance(outputs[0], dict):
                return extract_image_url({"modelOutputs": outputs})
            return extract_image_url(outputs)
        if data.get("error") or "error" in str(data.get("message") or "").lower():
            raise ProviderError("NanoBanana", str(data.get("error") or data.get("message")), error_type="failed")
    if last_error:
        raise ProviderError("NanoBanana", f"Banana.dev task failed: {last_error}", error_type="timeout")
    raise ProviderError("NanoBanana", "Banana.dev task timeout", error_type="timeout")


def _banana_dev_sync(client: httpx.Client, api_key: str, model_key: str, prompt: str) -> str:
    headers = {"X-Banana-API-Key": api_key, "Content-Type": "application/json"}
    payload = {
        "modelKey": model_key,
        "modelInputs": {"prompt": prompt, "num_outputs": 1, "aspect_ratio": "1:1"},
    }
    logger.info("[NanoBanana] Banana.dev start: model=%s", model_key)
    try:
        resp = client.post(BANANA_START_URL, headers=headers, json=payload)
    except httpx.HTTPError as e:
        raise ProviderError("NanoBanana", str(e), error_type="network", is_network_error=True) from e
    if resp.status_code != 200:
        raise response_error("NanoBanana", resp)
    data = json_body("NanoBanana", resp, (dict, list, str))
    if isinstance(data, dict) and data.get("id") and not data.get("modelOutputs"):
        return _poll_banana_task(client, api_key, data["id"])
    return extract_image_url(data)


def _generate_image_sync(api_key: str, prompt: str, api_url: str | None, model_key: str) -> ImageResult:
    with httpx.Client(timeout=TIMEOUT) as client:
        if not api_url:
            return to_image_result(_banana_dev_sync(client, api_key, model_key, prompt))

        payload = {
            "prompt": prompt,
            "num_images": 1,
            "width": 1024,
            "height": 1024,
            "steps": 30,
            "guidance_scale": 7.5,
        }
        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        try:
            resp = client.post(api_url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            if _is_ssl_error(e):
                logger.warning("[NanoBanana] SSL error on %s, switching to Banana.dev format", api_url)
                return to_image_result(_banana_dev_sync(client, api_key, model_key, prompt))
            raise ProviderError("NanoBanana", str(e), error_type="network", is_network_error=True) from e
        if resp.status_code != 200:
            raise response_error("NanoBanana", resp)
        return to_image_result(extract_image_url(json_body("NanoBanana", resp, (dict, list, str))))


async def generate_image(settings: Settings, prompt: str) -> ImageResult:
    api_key = (settings.nano_banana_api_key or "").strip()
    if not api_key:
        raise ProviderNotConfigured("nano_banana", "NANO_BANANA_API_KEY")
    if len(api_key) < 10:
        raise ProviderError("NanoBanana", "NANO_BANANA_API_KEY appears to be invalid (too short)", error_type="auth")
    return await asyncio.to_thread(
        _generate_image_sync,
        api_key,
        prompt,
        settings.nano_banana_api_url,
        settings.banana_model_key or DEFAULT_MODEL_KEY,
    )
