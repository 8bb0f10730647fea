"""Content-addressed cache of per-file symbol trees."""

from agent_substrate.symbol_cache.cache import SymbolCache, SymbolSearch
from agent_substrate.symbol_cache.models import (
    CacheEntry,
    CacheStats,
    SymbolMatch,
    SymbolNode,
    parse_symbols,
)
from agent_substrate.symbol_cache.utils import compute_fingerprint, fingerprint_bytes

__all__ = [
    "CacheEntry",
    "CacheStats",
    "SymbolCache",
    "SymbolMatch",
    "SymbolNode",
    "SymbolSearch",
    "compute_fingerprint",
    "fingerprint_bytes",
    "parse_symbols",
]
