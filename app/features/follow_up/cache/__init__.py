from .calculation_cache import CacheEntry, CalculationCache, build_cache_key
from .idle_timer import IdleCalculationTimer
from .persisted_store import PersistedCalculationStore

__all__ = [
    "CacheEntry",
    "CalculationCache",
    "IdleCalculationTimer",
    "PersistedCalculationStore",
    "build_cache_key",
]
