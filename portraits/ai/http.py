import logging
import time
from urllib.parse import urlparse

import httpx
import requests

from portraits.errors import ProviderError, classify_status

logger = logging.getLogger(__name__)

IMAGE_TIMEOUT = httpx.Timeout(connect=30.0, read=300.0, write=60.0, pool=30.0)


def valid_proxy(url: str | None) -> bool:
    if not url:
        return False
    try:
        p = urlparse(url)
        return p.scheme in ("http", "https", "socks5", "socks5h") and bool(p.hostname) and bool(p.port)
    except ValueError:
        return False


def response_error(provider: str, resp, last_text: str | None = None, is_network_error: bool = False) -> ProviderError:
    status_code = getattr(resp, "status_code", None) if resp is not None else None
    body_text = (getattr(resp, "text", None) if resp is not None else None) or last_text or ""
    snippet = body_text[:500]
    error_type = classify_status(status_code)
    if error_type == "unknown" and "quota" in snippet.lower():
        error_type = "rate_limit"
    if status_code is None:
        is_network_error = True
    return ProviderError(provider, snippet, status_code=status_code, error_type=error_type, is_network_error=is_network_error)


def json_body(provider: str, resp, allowed: tuple = (dict,)):
    """Тело ответа как JSON; HTML от прокси и прочий мусор превращается в ProviderError."""
    try:
        data = resp.json()
    except ValueError as e:
        logger.warning("[%s] non-JSON response: %s", provider, (getattr(resp, "text", "") or "")[:200])
        raise ProviderError(provider, "invalid JSON response", resp.status_code, "bad_response") from e
    if not isinstance(data, allowed):
        raise ProviderError(provider, f"unexpected JSON type: {type(data).__name__}", resp.status_code, "bad_response")
    return data


def post_image_request(
    provider: str,
    url: str,
    *,
    headers: dict,
    payload: dict,
    proxy_url: str | None = None,
    timeout: httpx.Timeout = IMAGE_TIMEOUT,
) -> httpx.Response:
    """POST напрямую, при сетевой ошибке или 5xx повтор через прокси."""
    proxy_used = proxy_url if valid_proxy(proxy_url) else None
    resp = None
    last_text = None
    for attempt in range(1, 3):
        use_proxy = None if attempt == 1 else proxy_used
        if attempt == 2 and proxy_used:
            logger.info("[%s] Retry WITH proxy (direct failed)", provider)
        try:
            with httpx.Client(proxy=use_proxy, timeout=timeout) as client:
                resp = client.post(url, headers=headers, json=payload)
            if resp.status_code >= 500:
                last_text = resp.text
                logger.warning("[%s] 5xx on attempt %d: %s", provider, attempt, (resp.text or "")[:200])
                time.sleep(1)
                continue
            break
        except httpx.HTTPError as e:
            resp = None
            last_text = str(e)
            logger.warning("[%s] network error on attempt %d: %s", provider, attempt, e)
            if attempt == 1 and proxy_used:
                continue
            time.sleep(1)

    if resp is None:
        raise response_error(provider, None, last_text, is_network_error=True)
    return resp


def post_text_request(
    provider: str,
    url: str,
    *,
    headers: dict,
    payload: dict,
    timeout: int = 60,
    attempts: int = 3,
    proxy_url: str | None = None,
) -> dict:
    proxies = {"http": proxy_url, "https": proxy_url} if valid_proxy(proxy_url) else None
    session = requests.Session()
    session.trust_env = False

    resp = None
    last_text = None
    try:
        for attempt in range(1, attempts + 1):
            try:
                resp = session.post(url, headers=headers, json=payload, timeout=timeout, proxies=proxies)
                if resp.status_code >= 500:
                    last_text = resp.text
                    logger.warning("[%s] 5xx on attempt %d: %s", provider, attempt, (resp.text or "")[:200])
                    time.sleep(2 * attempt)
                    continue
                break
            except requests.RequestException as e:
                resp = None
                last_text = str(e)
                logger.warning("[%s] network error on attempt %d: %s", provider, attempt, e)
                time.sleep(2 * attempt)
    finally:
        session.close()

    if resp is None or resp.status_code != 200:
        err = response_error(provider, resp, last_text)
        logger.error("[%s] text error status=%s body=%s", provider, err.status_code or "n/a", (last_text or getattr(resp, "text", "") or "")[:300])
        raise err
    return json_body(provider, resp)


def key_preview(api_key: str | None) -> str:
    if not api_key:
        return "none"
    return api_key[:10] + "..." if len(api_key) > 10 else api_key
