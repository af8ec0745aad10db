"""Response Cache — TTL cache for normalized AI responses.

  - Deterministic keys: params are serialized with sorted keys, then hashed
  - Per-operation TTLs (stable facts live longer than volatile ones)
  - Capacity bound with oldest-by-creation eviction
  - Tag-based bulk invalidation
  - Best-effort JSON snapshot so a restart doesn't start cold
  - Background sweep of expired entries

Values must be JSON-compatible (the orchestrator stores ``AIResponse.to_dict()``).
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from smartcrm.ai.types import OperationType

logger = logging.getLogger(__name__)


_HOUR = 3600.0

# TTL per operation (seconds)
OPERATION_TTLS: dict[OperationType, float] = {
    OperationType.SCORING: 1 * _HOUR,
    OperationType.ENRICHMENT: 24 * _HOUR,
    OperationType.EMAIL_GENERATION: 0.5 * _HOUR,
    OperationType.EMAIL_ANALYSIS: 0.5 * _HOUR,
    OperationType.INSIGHTS: 1 * _HOUR,
    OperationType.COMMUNICATION_ANALYSIS: 0.5 * _HOUR,
    OperationType.AUTOMATION_SUGGESTIONS: 2 * _HOUR,
    OperationType.PREDICTIVE_ANALYTICS: 1 * _HOUR,
    OperationType.RELATIONSHIP_MAPPING: 24 * _HOUR,
}

DEFAULT_TTL = 0.5 * _HOUR


def ttl_for(operation: OperationType) -> float:
    return OPERATION_TTLS.get(operation, DEFAULT_TTL)


def make_cache_key(namespace: str, params: Mapping[str, Any] | str) -> str:
    """Derive a key that is identical for identical params in any order."""
    if isinstance(params, str):
        raw = params
    else:
        raw = json.dumps(params, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]
    return f"{namespace}:{digest}"


@dataclass
class CacheEntry:
    key: str
    value: Any
    created_at: float
    expires_at: float
    tags: list[str] = field(default_factory=list)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class ResponseCache:
    """In-memory TTL cache with an optional JSON snapshot on disk.

    Usage:
        cache = ResponseCache(max_entries=1000, snapshot_path=Path(".cache/ai.json"))

        cache.set("ai_responses", params, response.to_dict(), ttl_seconds=3600, tags=["ai", "scoring"])
        hit = cache.get("ai_responses", params)

        cache.delete_by_tag("ai")
    """

    def __init__(
        self,
        max_entries: int = 1000,
        default_ttl: float = DEFAULT_TTL,
        snapshot_path: Path | str | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self.snapshot_path = Path(snapshot_path) if snapshot_path else None
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._sweeper: asyncio.Task | None = None

        self._load_snapshot()

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def get(self, namespace: str, params: Mapping[str, Any] | str) -> Any | None:
        key = make_cache_key(namespace, params)
        entry = self._entries.get(key)

        if entry is None:
            self._misses += 1
            return None

        if entry.is_expired(self._clock()):
            del self._entries[key]
            self._misses += 1
            return None

        self._hits += 1
        return entry.value

    def set(
        self,
        namespace: str,
        params: Mapping[str, Any] | str,
        value: Any,
        ttl_seconds: float | None = None,
        tags: Iterable[str] = (),
    ) -> None:
        key = make_cache_key(namespace, params)
        now = self._clock()

        if key not in self._entries and len(self._entries) >= self.max_entries:
            self._evict_oldest()

        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            expires_at=now + ttl,
            tags=list(tags),
        )
        self._save_snapshot()

    def has(self, namespace: str, params: Mapping[str, Any] | str) -> bool:
        key = make_cache_key(namespace, params)
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return False
        return True

    def invalidate(self, namespace: str | None = None, params: Mapping[str, Any] | str | None = None) -> int:
        """Drop one entry (namespace + params), a whole namespace, or everything.

        Returns the number of entries removed.
        """
        if namespace is None:
            removed = len(self._entries)
            self._entries.clear()
        elif params is not None:
            removed = 1 if self._entries.pop(make_cache_key(namespace, params), None) else 0
        else:
            prefix = f"{namespace}:"
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for k in doomed:
                del self._entries[k]
            removed = len(doomed)

        if removed:
            self._save_snapshot()
        return removed

    def delete_by_tag(self, tag: str) -> int:
        doomed = [k for k, e in self._entries.items() if tag in e.tags]
        for k in doomed:
            del self._entries[k]
        if doomed:
            self._save_snapshot()
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()
        self._hits = 0
        self._misses = 0
        self._save_snapshot()

    def cleanup(self) -> int:
        """Remove expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for k in expired:
            del self._entries[k]

        if expired:
            logger.info("Cache cleanup: removed %d expired entries", len(expired))
            self._save_snapshot()
        return len(expired)

    def _evict_oldest(self) -> None:
        if not self._entries:
            return
        # min() keeps the first of equal timestamps, i.e. insertion order
        oldest = min(self._entries.values(), key=lambda e: e.created_at)
        del self._entries[oldest.key]
        logger.debug("Evicted oldest cache entry %s", oldest.key)

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict:
        lookups = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "size": len(self._entries),
            "max_entries": self.max_entries,
            "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
        }

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    def start_sweeper(self, interval: float) -> asyncio.Task:
        """Start periodic cleanup on the running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(interval), name="ai-cache-sweeper")
        return self._sweeper

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.cleanup()

    # ------------------------------------------------------------------
    # Snapshot persistence
    # ------------------------------------------------------------------

    def _load_snapshot(self) -> None:
        if self.snapshot_path is None or not self.snapshot_path.exists():
            return

        try:
            with open(self.snapshot_path, "r", encoding="utf-8") as f:
                pairs = json.load(f)
            entries = {key: CacheEntry(**entry) for key, entry in pairs}
        except (OSError, ValueError, TypeError) as exc:
            # Corrupt or foreign snapshot: start empty
            logger.debug("Discarding unreadable cache snapshot %s: %s", self.snapshot_path, exc)
            return

        now = self._clock()
        self._entries = {k: e for k, e in entries.items() if not e.is_expired(now)}
        logger.info("Loaded %d cache entries from %s", len(self._entries), self.snapshot_path)

    def _save_snapshot(self) -> None:
        if self.snapshot_path is None:
            return

        pairs = [[key, asdict(entry)] for key, entry in self._entries.items()]
        try:
            self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.snapshot_path.with_suffix(self.snapshot_path.suffix + ".tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(pairs, f, ensure_ascii=False, default=str)
            tmp_path.replace(self.snapshot_path)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Failed to write cache snapshot %s: %s", self.snapshot_path, exc)
