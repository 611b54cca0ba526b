"""Pass-through image cache.

Logos from upstream CDNs are fetched once and kept in the KV store, keyed by
the decoded target URL. Bytes are stored base64-encoded in a small JSON
envelope since the store only holds strings.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import httpx

from ..config import Settings, settings as default_settings
from ..core.errors import StoreError
from .kv_store import KVStore

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "img:"
EDGE_CACHE_CONTROL = "public, max-age=86400, s-maxage=604800"


class InvalidImageUrl(ValueError):
    """Target is not an absolute http(s) URL."""


class ImageFetchError(Exception):
    """Upstream did not return a usable image."""


@dataclass(frozen=True)
class CachedImage:
    content: bytes
    content_type: str
    cache_hit: bool = False


def validate_target(url: Optional[str]) -> str:
    if not url:
        raise InvalidImageUrl("Missing url parameter")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidImageUrl("Only absolute http(s) URLs can be proxied")
    return url


class ImageProxy:
    timeout_s = 10

    def __init__(
        self,
        kv: Optional[KVStore],
        *,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        config = config or default_settings
        self._kv = kv
        self._ttl = config.image_proxy_ttl_seconds
        self._max_bytes = config.image_proxy_max_bytes
        self._transport = transport

    async def get(self, url: str) -> CachedImage:
        target = validate_target(url)
        key = CACHE_KEY_PREFIX + target

        cached = await self._read(key)
        if cached is not None:
            return cached

        image = await self._fetch(target)
        await self._write(key, image)
        return image

    async def _read(self, key: str) -> Optional[CachedImage]:
        if self._kv is None:
            return None
        try:
            raw = await self._kv.get(key)
        except StoreError as exc:
            logger.warning("Image cache read failed: %s", exc)
            return None
        if not raw:
            return None
        try:
            envelope = json.loads(raw)
            content = base64.b64decode(envelope["data"], validate=True)
            return CachedImage(content=content, content_type=envelope["contentType"], cache_hit=True)
        except (ValueError, KeyError, TypeError, binascii.Error):
            logger.debug("Discarding malformed image cache entry %s", key)
            return None

    async def _write(self, key: str, image: CachedImage) -> None:
        if self._kv is None:
            return
        envelope = {
            "contentType": image.content_type,
            "data": base64.b64encode(image.content).decode("ascii"),
        }
        try:
            await self._kv.put(key, json.dumps(envelope), ttl_seconds=self._ttl)
        except StoreError as exc:
            logger.warning("Image cache write failed: %s", exc)

    async def _fetch(self, url: str) -> CachedImage:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_s,
                follow_redirects=True,
                transport=self._transport,
                headers={"User-Agent": "Mozilla/5.0", "Accept": "image/*"},
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            raise ImageFetchError(f"Image fetch failed: {exc}") from exc

        if not response.is_success:
            raise ImageFetchError(f"Image fetch failed: HTTP {response.status_code}")
        content_type = response.headers.get("content-type", "").split(";")[0].strip()
        if not content_type.startswith("image/"):
            raise ImageFetchError(f"Not an image: {content_type or 'unknown type'}")
        if len(response.content) > self._max_bytes:
            raise ImageFetchError("Image too large")
        return CachedImage(content=response.content, content_type=content_type)
