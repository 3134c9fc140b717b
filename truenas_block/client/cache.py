"""
TTL cache for idempotent API queries.
"""

import copy
import json
import threading
import time
from typing import Any, Callable, Dict, Iterable, Optional, Set, Tuple

from oslo_log import log as logging

LOG = logging.getLogger(__name__)

DEFAULT_TTL = 60

# Query methods whose responses may be served from the cache
CACHEABLE_METHODS = frozenset(
    [
        "iscsi.extent.query",
        "iscsi.targetextent.query",
        "iscsi.target.query",
        "iscsi.global.config",
        "nvmet.subsys.query",
    ]
)

# Mutating one resource class also invalidates these classes
RELATED_CLASSES = {
    "iscsi.extent": ("iscsi.targetextent",),
    "iscsi.targetextent": ("iscsi.extent",),
    "iscsi.target": ("iscsi.targetextent",),
    "nvmet.port": ("nvmet.subsys",),
}

_MISSING = object()


def resource_class(method: str) -> str:
    """Return the resource class of a method (``iscsi.extent.create`` -> ``iscsi.extent``)."""
    return method.rsplit(".", 1)[0] if "." in method else method


class ResponseCache:
    """Thread-safe read-through cache keyed by method and parameters.

    Entries expire after ``ttl`` seconds and are dropped whenever a mutation
    touches the same (or a related) resource class.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
        cacheable: Iterable[str] = CACHEABLE_METHODS,
    ):
        self.ttl = ttl
        self._clock = clock
        self._cacheable = frozenset(cacheable)
        self._entries: Dict[Tuple[str, str], Tuple[float, Any]] = {}
        # Bumped on every invalidation; a load that straddles one is not stored
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self._lock = threading.Lock()

    @staticmethod
    def _key(method: str, params: Any) -> Tuple[str, str]:
        return method, json.dumps(params, sort_keys=True, default=str)

    def is_cacheable(self, method: str) -> bool:
        return self.ttl > 0 and method in self._cacheable

    def get(self, method: str, params: Any = None) -> Any:
        """Return a cached response, or ``_MISSING`` if absent or expired."""
        key = self._key(method, params)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return _MISSING
            expires, value = entry
            if self._clock() >= expires:
                del self._entries[key]
                return _MISSING
        LOG.debug("Cache hit for %s", method)
        return copy.deepcopy(value)

    def generation(self, method: str) -> Tuple[int, int]:
        """Return the invalidation generation of the resource class of ``method``."""
        with self._lock:
            return self._epoch, self._generations.get(resource_class(method), 0)

    def put(self, method: str, params: Any, value: Any, generation: Optional[Tuple[int, int]] = None) -> bool:
        """
        Store a response.

        Args:
            generation: Value of :meth:`generation` taken before the response
                was loaded; the response is dropped if an invalidation of its
                resource class happened since

        Returns:
            True if the response was stored
        """
        key = self._key(method, params)
        with self._lock:
            current = (self._epoch, self._generations.get(resource_class(method), 0))
            if generation is not None and generation != current:
                LOG.debug("Not caching %s, invalidated while loading", method)
                return False
            self._entries[key] = (self._clock() + self.ttl, copy.deepcopy(value))
            return True

    def fetch(self, method: str, params: Any, loader: Callable[[], Any]) -> Any:
        """Return the cached response or load, store and return it."""
        if not self.is_cacheable(method):
            return loader()
        value = self.get(method, params)
        if value is not _MISSING:
            return value
        generation = self.generation(method)
        value = loader()
        self.put(method, params, value, generation=generation)
        return value

    def invalidate(self, method: Optional[str] = None) -> None:
        """Invalidate entries for the resource class touched by ``method``.

        Without a method the whole cache is cleared.
        """
        with self._lock:
            if method is None:
                self._epoch += 1
                self._entries.clear()
                return
            klass = resource_class(method)
            classes: Set[str] = {klass, *RELATED_CLASSES.get(klass, ())}
            for name in classes:
                self._generations[name] = self._generations.get(name, 0) + 1
            stale = [k for k in self._entries if resource_class(k[0]) in classes]
            for key in stale:
                del self._entries[key]
        if stale:
            LOG.debug("Invalidated %d cache entries for %s", len(stale), ", ".join(sorted(classes)))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
