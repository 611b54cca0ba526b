"""Deny-lists of symbols that never appear in gainers/losers.

Stablecoins, wrapped tokens and reward tokens move for reasons unrelated to
the market, so they are dropped after every fetch. The lists are re-read on
every refresh cycle; edits take effect on the next refresh.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Iterable, List, Set

import httpx

from .assets import AssetNotFound, AssetStore

logger = logging.getLogger(__name__)


class ExclusionFilter:
    """Loads and merges the exclusion documents."""

    def __init__(self, assets: AssetStore, files: Iterable[str]):
        self._assets = assets
        self._files: List[str] = list(files)

    async def load(self) -> Set[str]:
        """Return the union of all lower-cased symbols across documents."""
        results = await asyncio.gather(*(self._load_file(path) for path in self._files))
        merged: Set[str] = set()
        for symbols in results:
            merged |= symbols
        return merged

    async def _load_file(self, path: str) -> Set[str]:
        try:
            raw = await self._assets.read(path)
            document = json.loads(raw)
        except AssetNotFound:
            logger.debug("Exclusion list %s not found", path)
            return set()
        except (httpx.HTTPError, OSError, ValueError) as exc:
            logger.debug("Exclusion list %s could not be loaded: %s", path, exc)
            return set()

        if not isinstance(document, list):
            logger.debug("Exclusion list %s is not a JSON array", path)
            return set()
        return {item.lower() for item in document if isinstance(item, str)}


def is_excluded(symbol: str | None, exclusion_set: Set[str]) -> bool:
    return bool(symbol) and symbol.lower() in exclusion_set
