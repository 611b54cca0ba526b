"""Static asset readers.

The exclusion lists live next to the front-end's static files. Locally they
are read from the static directory; behind a CDN they can be read over HTTP.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import httpx

from ..config import Settings, settings as default_settings


class AssetNotFound(Exception):
    """Requested asset does not exist (or the origin answered non-200)."""


class AssetStore(ABC):
    @abstractmethod
    async def read(self, path: str) -> bytes:
        """Return the raw bytes of an asset addressed by its URL path."""


class LocalAssetStore(AssetStore):
    """Reads assets from a directory on disk."""

    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        candidate = (self.root / path.lstrip("/")).resolve()
        # Refuse paths escaping the static root
        if self.root != candidate and self.root not in candidate.parents:
            raise AssetNotFound(path)
        return candidate

    async def read(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as exc:
            raise AssetNotFound(path) from exc


class HttpAssetStore(AssetStore):
    """Fetches assets from an HTTP origin."""

    timeout_s = 10

    def __init__(self, base_url: str, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    async def read(self, path: str) -> bytes:
        async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
            response = await client.get(f"{self.base_url}/{path.lstrip('/')}")
        if response.status_code != 200:
            raise AssetNotFound(f"{path} ({response.status_code})")
        return response.content


def create_asset_store(config: Optional[Settings] = None) -> AssetStore:
    config = config or default_settings
    if config.assets_base_url:
        return HttpAssetStore(config.assets_base_url)
    return LocalAssetStore(config.static_dir)
