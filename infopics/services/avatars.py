from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from flask import current_app

DEFAULT_CACHE_CONTROL = "public, max-age=86400"
_MAX_AVATAR_BYTES = 2 * 1024 * 1024


@dataclass(frozen=True)
class CachedAvatar:
    body: bytes
    content_type: str
    cache_control: str


def is_remote_image_ref(ref: str | None) -> bool:
    if not isinstance(ref, str):
        return False
    parsed = urlparse(ref.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class AvatarProxy:
    """Fetches remote profile pictures and keeps them in an in-process TTL cache."""

    def __init__(self, *, ttl_seconds: int = 60 * 60, timeout: int = 10) -> None:
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout
        self._cache: dict[str, tuple[float, CachedAvatar]] = {}
        self._lock = Lock()

    def _cached(self, url: str, now: float) -> CachedAvatar | None:
        with self._lock:
            entry = self._cache.get(url)
            if entry is None:
                return None
            stored_at, avatar = entry
            if now - stored_at >= self.ttl_seconds:
                del self._cache[url]
                return None
            return avatar

    def fetch(self, url: str) -> CachedAvatar | None:
        """Return the image behind ``url`` or None when it cannot be served as an image."""
        if not is_remote_image_ref(url):
            return None
        now = time.monotonic()
        cached = self._cached(url, now)
        if cached is not None:
            return cached

        req = Request(url, headers={"Accept": "image/*"}, method="GET")
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                content_type = resp.headers.get("Content-Type") or ""
                cache_control = resp.headers.get("Cache-Control") or DEFAULT_CACHE_CONTROL
                body = resp.read(_MAX_AVATAR_BYTES + 1)
        except OSError as e:
            current_app.logger.warning("Avatar fetch failed for %s: %s", url, e)
            return None

        if not content_type.startswith("image/") or len(body) > _MAX_AVATAR_BYTES:
            return None

        avatar = CachedAvatar(body=body, content_type=content_type, cache_control=cache_control)
        with self._lock:
            self._cache[url] = (now, avatar)
        return avatar
