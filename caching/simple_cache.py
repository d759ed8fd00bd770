"""
Short-TTL in-memory caches for the read paths (balance display, auction status).
Mutations never consult these; they re-read the authoritative rows.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from config import Config

logger = logging.getLogger(__name__)


class SimpleCache:
    """Thread-safe TTL cache keyed by string"""

    def __init__(self, name: str, default_ttl: int = 30):
        self.name = name
        self.default_ttl = default_ttl
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return default
            expires_at, value = entry
            if expires_at <= time.monotonic():
                del self._entries[key]
                self.misses += 1
                return default
            self.hits += 1
            return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        expires_at = time.monotonic() + (self.default_ttl if ttl is None else ttl)
        with self._lock:
            self._entries[key] = (expires_at, value)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_or_load(self, key: str, loader: Callable[[], Any], ttl: Optional[int] = None) -> Any:
        """Cached value, or loader() cached when it returns something"""
        value = self.get(key)
        if value is None:
            value = loader()
            if value is not None:
                self.set(key, value, ttl)
        return value

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self.hits + self.misses
            return {
                "entries": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate_percent": round(self.hits / lookups * 100, 2) if lookups else 0,
            }


wallet_cache = SimpleCache("wallets", default_ttl=Config.WALLET_CACHE_TTL_SECONDS)
auction_cache = SimpleCache("auctions", default_ttl=Config.AUCTION_CACHE_TTL_SECONDS)
