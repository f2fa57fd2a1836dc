# -*- coding: utf-8 -*-
"""Location: ./pmo_analytics/services/cache_service.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Tiered Cache Service.

In-memory read-through cache for derived analytics. Every calculation kind
belongs to exactly one retention class, resolved when a value is written:

- never-cache: live data (work item progress, time logs, real-time status,
  current assignments). Writes are ignored.
- session: configuration that must stay consistent for a whole analysis run
  (parameter sets, user rates, policies). Kept until invalidated (ttl 0).
- ttl-bounded: derived results, with per-kind lifetimes from ``TTL_TABLE``
  and a 30 minute default for anything else.

Entries are keyed by ``(kind, scope)``; the scope is normally a project id.
Expired entries are evicted lazily on access and by an opportunistic
background sweep that never blocks a caller. The service is an ordinary
object owned by whoever hosts it; there is no module-level instance.

Examples:
    >>> cache = CacheService(clock=lambda: 1000.0)
    >>> cache.set("evm", {"cpi": 1.0}, scope="42")
    True
    >>> cache.get("evm", scope="42")
    {'cpi': 1.0}
    >>> cache.set("timeLogs", [1, 2], scope="42")
    False
    >>> cache.get("timeLogs", scope="42") is None
    True
    >>> resolve_ttl("metadata_evm", 1800)
    3600
"""

# Standard
import asyncio
from collections import Counter, deque
from dataclasses import dataclass
import time
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Tuple

# Third-Party
import orjson
from pydantic import BaseModel

# First-Party
from pmo_analytics.config import Settings, settings
from pmo_analytics.models import CacheHealth, CacheHealthStatus, CacheStatistics, KindCount, utc_now
from pmo_analytics.services import metrics
from pmo_analytics.services.logging_service import LoggingService

logging_service = LoggingService()
logger = logging_service.get_logger(__name__)

NEVER_CACHE = frozenset({"workItemProgress", "timeLogs", "projectStatus", "currentAssignments"})
SESSION_KINDS = frozenset({"parameterSet", "userRates", "organizationalPolicies", "projectConfiguration"})
TTL_TABLE: Dict[str, int] = {
    "evm": 3600,
    "criticalPath": 1800,
    "portfolioAnalytics": 7200,
    "resourceUtilization": 1800,
    "riskAnalysis": 3600,
    "performanceMetrics": 900,
    "budgetForecasts": 3600,
    "metadata": 3600,
}
WARMING_KIND = "cacheWarming"
PARAMETER_KIND = "parameterSet"


def resolve_ttl(kind: str, default_ttl: int) -> Optional[int]:
    """Resolve the retention of a calculation kind.

    Args:
        kind: Calculation kind
        default_ttl: Lifetime for kinds missing from the table

    Returns:
        Optional[int]: ``None`` for never-cache kinds, ``0`` for session kinds, else seconds

    Examples:
        >>> resolve_ttl("projectStatus", 1800) is None
        True
        >>> resolve_ttl("parameterSet", 1800)
        0
        >>> resolve_ttl("criticalPath", 1800)
        1800
        >>> resolve_ttl("performanceMetrics", 1800)
        900
        >>> resolve_ttl("somethingNew", 1800)
        1800
        >>> resolve_ttl("evmish", 1800)
        1800
    """
    if kind in NEVER_CACHE:
        return None
    if kind in SESSION_KINDS:
        return 0
    if kind in TTL_TABLE:
        return TTL_TABLE[kind]
    for prefix, ttl in TTL_TABLE.items():
        if kind.startswith(f"{prefix}_"):
            return ttl
    return default_ttl


def format_bytes(size: int) -> str:
    """Render a byte count for humans.

    Args:
        size: Number of bytes

    Returns:
        str: Size with a binary unit suffix

    Examples:
        >>> format_bytes(512)
        '512 B'
        >>> format_bytes(2048)
        '2.0 KB'
        >>> format_bytes(5 * 1024 * 1024)
        '5.0 MB'
    """
    if size < 1024:
        return f"{size} B"
    value = float(size)
    for unit in ("KB", "MB", "GB"):
        value /= 1024
        if value < 1024 or unit == "GB":
            break
    return f"{value:.1f} {unit}"


def _json_default(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    if isinstance(obj, (set, frozenset)):
        return list(obj)
    return str(obj)


@dataclass
class CacheEntry:
    """A stored value with its retention.

    Attributes:
        value: Cached object
        stored_at: Clock reading at write time (seconds)
        ttl: Lifetime in seconds; 0 keeps the entry until invalidated
        kind: Calculation kind
        scope: Optional scope, normally a project id
    """

    value: Any
    stored_at: float
    ttl: int
    kind: str
    scope: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        """Whether the entry has outlived its ttl.

        Args:
            now: Current clock reading

        Returns:
            bool: True when ``now - stored_at > ttl`` for a bounded entry

        Examples:
            >>> CacheEntry(value=1, stored_at=0.0, ttl=10, kind="evm").is_expired(10.0)
            False
            >>> CacheEntry(value=1, stored_at=0.0, ttl=10, kind="evm").is_expired(10.5)
            True
            >>> CacheEntry(value=1, stored_at=0.0, ttl=0, kind="parameterSet").is_expired(1e9)
            False
        """
        return self.ttl > 0 and now - self.stored_at > self.ttl


class CacheService:
    """Tiered in-memory cache with lazy eviction and a background sweeper."""

    def __init__(self, config: Optional[Settings] = None, clock: Callable[[], float] = time.time):
        """Initialize the cache.

        Args:
            config: Settings providing ttl, sweep and health parameters
            clock: Source of the current time in seconds (injectable for tests)
        """
        self._settings = config or settings
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lookups: Deque[bool] = deque(maxlen=self._settings.cache_hit_rate_window)
        self._total_lookups = 0
        self._last_sweep = clock()
        self._sweep_task: Optional[asyncio.Task] = None
        self._sweeper_task: Optional[asyncio.Task] = None
        logger.info(f"CacheService initialized: default_ttl={self._settings.cache_default_ttl}s, sweep_interval={self._settings.cache_sweep_interval}s, max_entries={self._settings.cache_max_entries}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic background sweeper."""
        if self._sweeper_task is None or self._sweeper_task.done():
            self._sweeper_task = asyncio.create_task(self._sweep_loop())
            logger.info("Cache sweeper task started")

    async def shutdown(self) -> None:
        """Stop background sweeping. Cached entries are kept."""
        for task in (self._sweeper_task, self._sweep_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._sweeper_task = None
        self._sweep_task = None
        logger.info(f"CacheService shutdown complete ({len(self._entries)} entries retained)")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.cache_sweep_interval)
            try:
                self.sweep_expired()
            except Exception as e:
                logger.error(f"Error in cache sweeper: {e}")

    # ------------------------------------------------------------------
    # Reads and writes
    # ------------------------------------------------------------------

    @staticmethod
    def make_key(kind: str, scope: Optional[str] = None) -> str:
        """Build the composite key for ``(kind, scope)``.

        Args:
            kind: Calculation kind
            scope: Optional scope

        Returns:
            str: Composite key

        Examples:
            >>> CacheService.make_key("evm", "42")
            'evm:42'
            >>> CacheService.make_key("portfolioAnalytics")
            'portfolioAnalytics'
        """
        return f"{kind}:{scope}" if scope is not None else kind

    def get(self, kind: str, scope: Optional[str] = None) -> Any:
        """Return a fresh cached value.

        Args:
            kind: Calculation kind
            scope: Optional scope

        Returns:
            Any: The value, or ``None`` when absent or expired
        """
        key = self.make_key(kind, scope)
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None and entry.is_expired(now):
            self._evict(key, entry)
            entry = None
        self._record_lookup(kind, entry is not None)
        self._maybe_schedule_sweep(now)
        return entry.value if entry is not None else None

    def get_entry(self, kind: str, scope: Optional[str] = None) -> Optional[CacheEntry]:
        """Return the raw entry without touching hit statistics or evicting.

        Args:
            kind: Calculation kind
            scope: Optional scope

        Returns:
            Optional[CacheEntry]: The stored entry, fresh or not
        """
        return self._entries.get(self.make_key(kind, scope))

    def set(self, kind: str, value: Any, scope: Optional[str] = None, ttl_override: Optional[int] = None) -> bool:
        """Store a value under its kind's retention class.

        Args:
            kind: Calculation kind
            value: Value to cache
            scope: Optional scope
            ttl_override: Lifetime replacing the resolved ttl (0 means session)

        Returns:
            bool: False when the kind is never cached
        """
        ttl = resolve_ttl(kind, self._settings.cache_default_ttl)
        if ttl is None:
            logger.debug(f"Skipping cache write for never-cache kind {kind}")
            return False
        if ttl_override is not None:
            ttl = max(0, int(ttl_override))
        now = self._clock()
        self._entries[self.make_key(kind, scope)] = CacheEntry(value=value, stored_at=now, ttl=ttl, kind=kind, scope=scope)
        self._maybe_schedule_sweep(now)
        return True

    def set_bulk(self, items: Iterable[Tuple[str, Any, Optional[str]]]) -> int:
        """Store several ``(kind, value, scope)`` triples.

        Args:
            items: Triples to store

        Returns:
            int: Number of values actually cached
        """
        return sum(1 for kind, value, scope in items if self.set(kind, value, scope))

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate(self, pattern: str, scope: Optional[str] = None) -> int:
        """Remove entries whose composite key contains ``pattern``.

        Args:
            pattern: Substring to look for in composite keys
            scope: When given, only entries with this exact scope match

        Returns:
            int: Number of entries removed
        """
        doomed = [key for key, entry in self._entries.items() if pattern in key and (scope is None or entry.scope == scope)]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cache entries matching '{pattern}' (scope={scope})")
        return len(doomed)

    def clear_scope(self, scope: str) -> int:
        """Remove every entry of a scope.

        Args:
            scope: Scope to clear

        Returns:
            int: Number of entries removed
        """
        doomed = [key for key, entry in self._entries.items() if entry.scope == scope]
        for key in doomed:
            del self._entries[key]
        logger.info(f"Cleared {len(doomed)} cache entries for scope {scope}")
        return len(doomed)

    def clear_all(self) -> int:
        """Remove every entry and reset hit statistics.

        Returns:
            int: Number of entries removed
        """
        count = len(self._entries)
        self._entries.clear()
        self._lookups.clear()
        self._total_lookups = 0
        logger.info(f"Cleared all {count} cache entries")
        return count

    def sweep_expired(self) -> int:
        """Remove expired entries.

        Returns:
            int: Number of entries removed
        """
        now = self._clock()
        self._last_sweep = now
        removed = 0
        for key, entry in list(self._entries.items()):
            if entry.is_expired(now) and self._entries.get(key) is entry:
                del self._entries[key]
                removed += 1
        metrics.record_evictions(removed)
        if removed:
            logger.debug(f"Cache sweep removed {removed} expired entries")
        return removed

    # ------------------------------------------------------------------
    # Warming
    # ------------------------------------------------------------------

    async def warm(self, scopes: Iterable[str], loader: Optional[Callable[[str], Awaitable[Any]]] = None) -> int:
        """Pre-populate session parameters for the given scopes.

        With a ``loader`` each scope lacking a parameter set gets one loaded
        concurrently; loader failures are logged and skipped. Without a loader
        a short-lived warming marker is written per scope instead.

        Args:
            scopes: Scopes (project ids) to warm
            loader: Coroutine function returning the parameter set for a scope

        Returns:
            int: Number of scopes warmed
        """
        missing = list(dict.fromkeys(scope for scope in scopes if self.make_key(PARAMETER_KIND, scope) not in self._entries))
        if not missing:
            return 0
        if loader is None:
            marker = {"warmed_at": self._clock()}
            for scope in missing:
                self.set(WARMING_KIND, marker, scope, ttl_override=self._settings.cache_warming_marker_ttl)
            return len(missing)

        results = await asyncio.gather(*(loader(scope) for scope in missing), return_exceptions=True)
        warmed = 0
        for scope, result in zip(missing, results):
            if isinstance(result, Exception):
                logger.warning(f"Cache warming failed for scope {scope}: {result}")
                continue
            if self.set(PARAMETER_KIND, result, scope):
                warmed += 1
        logger.info(f"Warmed cache for {warmed}/{len(missing)} scopes")
        return warmed

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def hit_rate(self) -> float:
        """Hit rate over the rolling lookup window (0.0 with no lookups)."""
        if not self._lookups:
            return 0.0
        return sum(self._lookups) / len(self._lookups)

    def stats(self) -> CacheStatistics:
        """Collect point-in-time statistics.

        Returns:
            CacheStatistics: Entry counts, memory estimate, hit rate and busiest kinds
        """
        now = self._clock()
        entries = list(self._entries.items())
        expired = sum(1 for _, entry in entries if entry.is_expired(now))
        memory = sum(len(key) + self._estimate_size(entry.value) for key, entry in entries)
        kinds = Counter(entry.kind for _, entry in entries)
        return CacheStatistics(
            total_entries=len(entries),
            expired_entries=expired,
            memory_bytes=memory,
            memory_usage=format_bytes(memory),
            hit_rate=round(self.hit_rate, 3),
            total_lookups=self._total_lookups,
            top_kinds=[KindCount(kind=kind, count=count) for kind, count in kinds.most_common(5)],
        )

    def health(self) -> CacheHealth:
        """Derive a tri-state health verdict.

        Returns:
            CacheHealth: Status, issues and matching recommendations
        """
        stats = self.stats()
        max_entries = self._settings.cache_max_entries
        issues: List[str] = []
        recommendations: List[str] = []

        if stats.total_entries and stats.expired_entries / stats.total_entries > 0.3:
            issues.append(f"High expired entry ratio: {stats.expired_entries}/{stats.total_entries}")
            recommendations.append("Sweep expired entries more often or shorten TTLs")
        if len(self._lookups) >= self._settings.cache_hit_rate_min_samples and self.hit_rate < 0.5:
            issues.append(f"Low hit rate: {self.hit_rate:.1%}")
            recommendations.append("Warm the cache before portfolio runs or lengthen TTLs for hot kinds")
        if stats.total_entries > max_entries:
            issues.append(f"Entry count {stats.total_entries} exceeds ceiling {max_entries}")
            recommendations.append("Invalidate unused project scopes or raise CACHE_MAX_ENTRIES")

        if len(issues) >= 2 or stats.total_entries > 2 * max_entries:
            status = CacheHealthStatus.CRITICAL
        elif issues:
            status = CacheHealthStatus.WARNING
        else:
            status = CacheHealthStatus.HEALTHY
        return CacheHealth(status=status, issues=issues, recommendations=recommendations, checked_at=utc_now())

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _evict(self, key: str, entry: CacheEntry) -> None:
        if self._entries.get(key) is entry:
            del self._entries[key]
            metrics.record_evictions(1)

    def _record_lookup(self, kind: str, hit: bool) -> None:
        self._lookups.append(hit)
        self._total_lookups += 1
        metrics.record_cache_lookup(kind, hit)

    def _maybe_schedule_sweep(self, now: float) -> None:
        if now - self._last_sweep < self._settings.cache_sweep_interval:
            return
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._last_sweep = now
        self._sweep_task = loop.create_task(self._sweep_once())

    async def _sweep_once(self) -> None:
        try:
            self.sweep_expired()
        except Exception as e:
            logger.error(f"Opportunistic cache sweep failed: {e}")

    @staticmethod
    def _estimate_size(value: Any) -> int:
        try:
            return len(orjson.dumps(value, default=_json_default))
        except (orjson.JSONEncodeError, TypeError):
            return len(repr(value))
