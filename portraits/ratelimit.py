import re
import time
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_seconds: int


RATE_LIMITS = {
    "generate": RateLimitConfig(15, 24 * 60 * 60),
    "search": RateLimitConfig(100, 60 * 60),
    "subscription": RateLimitConfig(10, 60),
    "api": RateLimitConfig(200, 60),
}


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float

    def retry_after(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        return max(0, int(self.reset_at - now + 0.999))


class RateLimiter:
    """Фиксированное окно в памяти процесса: key -> (count, reset_at)."""

    def __init__(self, clock=time.time) -> None:
        self._clock = clock
        self._entries: dict[str, list] = {}

    def _prune(self, now: float) -> None:
        expired = [k for k, (_count, reset_at) in self._entries.items() if reset_at <= now]
        for k in expired:
            del self._entries[k]

    def hit(self, key: str, max_requests: int, window_seconds: int) -> RateLimitResult:
        now = self._clock()
        self._prune(now)
        entry = self._entries.get(key)
        if entry is None:
            reset_at = now + window_seconds
            self._entries[key] = [1, reset_at]
            return RateLimitResult(True, max_requests - 1, reset_at)

        count, reset_at = entry
        if count >= max_requests:
            return RateLimitResult(False, 0, reset_at)
        entry[0] = count + 1
        return RateLimitResult(True, max_requests - entry[0], reset_at)

    def hit_preset(self, name: str, key: str) -> RateLimitResult:
        cfg = RATE_LIMITS[name]
        return self.hit(f"{name}:{key}", cfg.max_requests, cfg.window_seconds)

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)


class TTLCache:
    def __init__(self, default_ttl: int = 300, clock=time.time) -> None:
        self._default_ttl = default_ttl
        self._clock = clock
        self._data: dict[str, tuple[Any, float]] = {}

    def get(self, key: str, default: Any = None) -> Any:
        item = self._data.get(key)
        if item is None:
            return default
        value, expires_at = item
        if expires_at <= self._clock():
            del self._data[key]
            return default
        return value

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        self._data[key] = (value, self._clock() + (ttl if ttl is not None else self._default_ttl))

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self, pattern: str | None = None) -> None:
        if pattern is None:
            self._data.clear()
            return
        regex = re.compile(pattern)
        for key in [k for k in self._data if regex.search(k)]:
            del self._data[key]

    def stats(self) -> dict:
        now = self._clock()
        expired = sum(1 for _v, exp in self._data.values() if exp <= now)
        return {"total": len(self._data), "valid": len(self._data) - expired, "expired": expired}
