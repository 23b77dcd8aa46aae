"""Pull-through cache coordination for remote file mirrors."""

from .coordinator import CacheCoordinator, CacheResult, FillOutcome
from .locks import KeyLockManager, Permit
from .paths import EntryPaths, StorageLayout

__all__ = [
    "CacheCoordinator",
    "CacheResult",
    "EntryPaths",
    "FillOutcome",
    "KeyLockManager",
    "Permit",
    "StorageLayout",
]
