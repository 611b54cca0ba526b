"""Ranking of normalized entities into top gainers and losers."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, TypeVar

from ..types.market import RankedEntity

EntityT = TypeVar("EntityT", bound=RankedEntity)


@dataclass
class RankedLists:
    gainers: List[RankedEntity] = field(default_factory=list)
    losers: List[RankedEntity] = field(default_factory=list)

    def unique(self) -> List[RankedEntity]:
        """Entities from both lists, gainers first, without duplicates."""
        seen: set[int] = set()
        merged: List[RankedEntity] = []
        for entity in (*self.gainers, *self.losers):
            if id(entity) in seen:
                continue
            seen.add(id(entity))
            merged.append(entity)
        return merged


def _finite(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def is_rankable(entity: RankedEntity, change_field: str = "change_24h") -> bool:
    """Entities without a price or change cannot be ordered."""
    return _finite(entity.price) and _finite(getattr(entity, change_field, None))


def rank_entities(
    entities: Sequence[EntityT],
    *,
    change_field: str = "change_24h",
    limit: int = 50,
    split_by_sign: bool = False,
) -> RankedLists:
    """Sort by change and slice the top `limit` in each direction.

    Sorting is stable, so ties keep upstream order. With split_by_sign only
    positive changes can be gainers and only negative changes losers.
    """
    valid = [entity for entity in entities if is_rankable(entity, change_field)]

    def change(entity: RankedEntity) -> float:
        return getattr(entity, change_field)

    gainer_pool = [e for e in valid if change(e) > 0] if split_by_sign else valid
    loser_pool = [e for e in valid if change(e) < 0] if split_by_sign else valid

    return RankedLists(
        gainers=sorted(gainer_pool, key=change, reverse=True)[:limit],
        losers=sorted(loser_pool, key=change)[:limit],
    )


def project(entities: Sequence[RankedEntity]) -> List[Dict[str, Any]]:
    """Public response shape of each entity."""
    return [entity.public_fields() for entity in entities]
