"""Per-run memoization of package catalogs.

Keys are ``(source kind, source identity)``. Concurrent requests for the same
key are coalesced: the first caller performs the lookup and later callers
block on the same future, so a single network call is issued per key per run.
Failures are memoized too; a package that was not found stays not found for
the rest of the run.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, Tuple

from common.logging_utils import extra_context, is_debug_enabled
from versioning.models import PackageCatalog

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


class MetadataCache:
    """Single-flight cache scoped to one resolution run."""

    def __init__(self) -> None:
        self._futures: Dict[CacheKey, "Future[PackageCatalog]"] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get_or_load(self, key: CacheKey, loader: Callable[[], PackageCatalog]) -> PackageCatalog:
        """Return the cached catalog for ``key``, calling ``loader`` at most once.

        Raises:
            Whatever ``loader`` raised, for every caller of that key.
        """
        with self._lock:
            future = self._futures.get(key)
            owner = future is None
            if owner:
                future = Future()
                future.set_running_or_notify_cancel()
                self._futures[key] = future
                self._misses += 1
            else:
                self._hits += 1

        if owner:
            if is_debug_enabled(logger):
                logger.debug(
                    "Metadata cache miss",
                    extra=extra_context(event="cache_miss", component="metadata_cache", target=f"{key[0]}:{key[1]}")
                )
            try:
                future.set_result(loader())
            except BaseException as exc:  # pylint: disable=broad-exception-caught
                future.set_exception(exc)
        elif is_debug_enabled(logger):
            logger.debug(
                "Metadata cache hit",
                extra=extra_context(event="cache_hit", component="metadata_cache", target=f"{key[0]}:{key[1]}")
            )
        return future.result()

    def peek(self, key: CacheKey) -> bool:
        """True when ``key`` has been requested (successfully or not)."""
        with self._lock:
            return key in self._futures

    def clear(self) -> None:
        with self._lock:
            self._futures.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            return {
                "entries": len(self._futures),
                "hits": self._hits,
                "misses": self._misses,
            }
