from __future__ import annotations

import asyncio
import logging
import time

import httpx

from portraits.ai.http import json_body, response_error
from portraits.ai.models import ImageResult
from portraits.config import Settings
from portraits.errors import ProviderError, ProviderNotConfigured

logger = logging.getLogger(__name__)

PREDICTIONS_URL = "https://api.replicate.com/v1/models/black-forest-labs/flux-1.1-pro/predictions"
PENDING_STATUSES = ("starting", "processing")
POLL_INTERVAL = 2.0
POLL_TIMEOUT = 180.0


def _first_output(output) -> str | None:
    if isinstance(output, str):
        return output
    if isinstance(output, list) and output:
        return output[0] if isinstance(output[0], str) else None
    return None


def _generate_image_sync(
    api_key: str, prompt: str, poll_interval: float = POLL_INTERVAL, poll_timeout: float = POLL_TIMEOUT
) -> ImageResult:
    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
    payload = {"input": {"prompt": prompt, "aspect_ratio": "1:1", "output_format": "jpg"}}
    timeout = httpx.Timeout(connect=30.0, read=60.0, write=30.0, pool=30.0)

    with httpx.Client(timeout=timeout) as client:
        try:
            resp = client.post(PREDICTIONS_URL, headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise ProviderError("Replicate", str(e), error_type="network", is_network_error=True) from e
        if resp.status_code not in (200, 201):
            raise response_error("Replicate", resp)

        prediction = json_body("Replicate", resp)
        logger.info("[Replicate] prediction %s status=%s", prediction.get("id"), prediction.get("status"))
        deadline = time.monotonic() + poll_timeout
        while prediction.get("status") in PENDING_STATUSES:
            if time.monotonic() > deadline:
                raise ProviderError("Replicate", "prediction timed out", error_type="timeout")
            time.sleep(poll_interval)
            get_url = (prediction.get("urls") or {}).get("get") or f"https://api.replicate.com/v1/predictions/{prediction['id']}"
            try:
                poll = client.get(get_url, headers=headers)
            except httpx.HTTPError as e:
                raise ProviderError("Replicate", str(e), error_type="network", is_network_error=True) from e
            if poll.status_code != 200:
                raise response_error("Replicate", poll)
            prediction = json_body("Replicate", poll)

    if prediction.get("status") != "succeeded":
        raise ProviderError("Replicate", f"prediction {prediction.get('status')}: {prediction.get('error')}", error_type="failed")
    url = _first_output(prediction.get("output"))
    if not url:
        raise ProviderError("Replicate", "No image URL in output", error_type="no_image")
    return ImageResult(provider="replicate", url=url)


async def generate_image(settings: Settings, prompt: str) -> ImageResult:
    if not settings.replicate_api_key:
        raise ProviderNotConfigured("replicate", "REPLICATE_API_KEY")
    return await asyncio.to_thread(_generate_image_sync, settings.replicate_api_key, prompt)
