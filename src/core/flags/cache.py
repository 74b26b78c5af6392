"""
Resolution Cache: read-through cache of resolved flags.

Entries are keyed by (feature, context, resolve options) and tagged with a
per-feature generation.  Any mutation of a feature bumps its generation,
which drops every cached resolution of that feature at once.  That covers
the whole ancestor-or-descendant chain without having to enumerate it.

The cache holds at most ``max_entries`` resolutions and evicts the least
recently used one when full.

A reader records the generation before it hits the database and may only
store its result if the generation has not moved in the meantime, so a
resolution computed from pre-mutation rows is never cached after the
mutation's invalidation.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Optional, Set, Tuple

from src.core.flags.models import ResolvedFlag

logger = logging.getLogger(__name__)

# (feature, context chain keys most specific first, override_hidden, hide_inherited_enabled)
CacheKey = Tuple[str, Tuple[str, ...], bool, bool]

DEFAULT_MAX_ENTRIES = 10000

# Marks a cached "nothing visible" result
_ABSENT = object()


@dataclass
class ResolutionCacheStats:
    """Runtime statistics for the resolution cache."""
    total_entries: int
    hits: int
    misses: int
    invalidations: int
    evictions: int
    max_entries: int
    hit_rate: float


class ResolutionCache:

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        if max_entries < 1:
            raise ValueError(f"max_entries must be positive, got {max_entries}")
        self._max_entries = max_entries
        self._entries: "OrderedDict[CacheKey, Tuple[int, object]]" = OrderedDict()
        self._generations: Dict[str, int] = {}
        self._keys_by_feature: Dict[str, Set[CacheKey]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._invalidations = 0
        self._evictions = 0

    def generation(self, feature: str) -> int:
        with self._lock:
            return self._generations.get(feature, 0)

    def lookup(self, key: CacheKey) -> Tuple[bool, Optional[ResolvedFlag]]:
        """Returns (hit, value).  value may be None on a hit."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry[0] != self._generations.get(key[0], 0):
                self._misses += 1
                return False, None
            self._entries.move_to_end(key)
            self._hits += 1
        value = entry[1]
        logger.debug("Resolution cache hit: %s", key)
        return True, None if value is _ABSENT else value

    def store(self, key: CacheKey, value: Optional[ResolvedFlag], generation: int) -> bool:
        """Store a resolution computed while ``generation`` was current."""
        with self._lock:
            if self._generations.get(key[0], 0) != generation:
                return False
            self._entries[key] = (generation, _ABSENT if value is None else value)
            self._entries.move_to_end(key)
            self._keys_by_feature.setdefault(key[0], set()).add(key)
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._forget(evicted)
                self._evictions += 1
                logger.debug("Resolution cache evicted %s", evicted)
        return True

    def invalidate(self, feature: str) -> None:
        """Drop every cached resolution of ``feature``."""
        with self._lock:
            self._generations[feature] = self._generations.get(feature, 0) + 1
            stale = self._keys_by_feature.pop(feature, set())
            for k in stale:
                del self._entries[k]
            self._invalidations += 1
        logger.debug("Resolution cache invalidated for %s (%d entries)", feature, len(stale))

    def clear(self) -> None:
        with self._lock:
            features = set(self._generations) | {k[0] for k in self._entries}
            for feature in features:
                self._generations[feature] = self._generations.get(feature, 0) + 1
            self._entries.clear()
            self._keys_by_feature.clear()
            self._hits = 0
            self._misses = 0
        logger.info("Resolution cache cleared")

    def _forget(self, key: CacheKey) -> None:
        keys = self._keys_by_feature.get(key[0])
        if keys is not None:
            keys.discard(key)
            if not keys:
                del self._keys_by_feature[key[0]]

    @property
    def stats(self) -> ResolutionCacheStats:
        with self._lock:
            total = self._hits + self._misses
            return ResolutionCacheStats(
                total_entries=len(self._entries),
                hits=self._hits,
                misses=self._misses,
                invalidations=self._invalidations,
                evictions=self._evictions,
                max_entries=self._max_entries,
                hit_rate=self._hits / total if total > 0 else 0.0,
            )
