from .market import CachedPayload, CexCoin, DexPair, RankedEntity
from .responses import ErrorResponse

__all__ = [
    "CachedPayload",
    "CexCoin",
    "DexPair",
    "RankedEntity",
    "ErrorResponse",
]
