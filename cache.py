import json
import threading
from typing import Any, Dict, Optional

from cachetools import TTLCache

from config import get_settings

LIST_PREFIX = "products:"
ITEM_PREFIX = "product:"


class ProductCache:
    """Read-through cache for catalog listing and detail responses."""

    def __init__(self, ttl: int = 300, maxsize: int = 1024):
        self._cache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = threading.RLock()

    @staticmethod
    def list_key(params: Dict[str, Any]) -> str:
        return LIST_PREFIX + json.dumps(params, sort_keys=True, default=str)

    @staticmethod
    def item_key(identifier) -> str:
        return f"{ITEM_PREFIX}{identifier}"

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._cache.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._cache[key] = value

    def invalidate_product(self, *identifiers) -> None:
        with self._lock:
            for identifier in identifiers:
                if identifier is not None:
                    self._cache.pop(self.item_key(identifier), None)
            for key in [k for k in self._cache.keys() if k.startswith(LIST_PREFIX)]:
                self._cache.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


product_cache = ProductCache(ttl=get_settings().product_cache_ttl)
