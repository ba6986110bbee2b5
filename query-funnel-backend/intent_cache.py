"""
Intent Classification Cache
Two-tier TTL cache for classification results (pattern tier, AI tier)
"""

import asyncio
import hashlib
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from intent_patterns import IntentClassificationResult, METHOD_AI, METHOD_PATTERN

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 60 * 60
DEFAULT_SWEEP_SECONDS = 10 * 60


def normalize_question(question: str) -> str:
    """Trim, lower-case and collapse whitespace so trivially different phrasings share a key."""
    return re.sub(r'\s+', ' ', (question or "").strip().lower())


@dataclass
class IntentCacheEntry:
    """Cached result with an absolute expiry time"""
    result: IntentClassificationResult
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class IntentClassificationCache:
    """
    Separate pattern and AI tiers, each with its own TTL.

    Reads check the pattern tier first. Expired entries are dropped lazily on
    read and by cleanup_expired(). Concurrent writers to the same key are
    last-write-wins.
    """

    def __init__(
        self,
        pattern_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        ai_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        max_entries_per_tier: int = 5000,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize intent cache

        Args:
            pattern_ttl_seconds: TTL for pattern-derived results (60 min)
            ai_ttl_seconds: TTL for AI-derived results (60 min)
            max_entries_per_tier: Oldest entries are evicted beyond this size
            clock: Source of "now" (injectable for tests)
        """
        self.pattern_ttl = timedelta(seconds=pattern_ttl_seconds)
        self.ai_ttl = timedelta(seconds=ai_ttl_seconds)
        self.max_entries_per_tier = max_entries_per_tier
        self._clock = clock
        self._tiers: Dict[str, "OrderedDict[str, IntentCacheEntry]"] = {
            METHOD_PATTERN: OrderedDict(),
            METHOD_AI: OrderedDict(),
        }
        self._stats = {
            "hits": 0,
            "misses": 0,
            "expirations": 0,
            "evictions": 0,
        }

    @staticmethod
    def make_key(question: str, customer_id: str) -> str:
        """SHA-256 of customer id + normalized question (no raw text is stored as a key)"""
        content = f"{customer_id}:{normalize_question(question)}"
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def _read_tier(self, tier: str, key: str) -> Optional[IntentClassificationResult]:
        entries = self._tiers[tier]
        entry = entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del entries[key]
            self._stats["expirations"] += 1
            logger.debug(f"[INTENT_CACHE] Expired {tier} entry: {key[:16]}...")
            return None
        return entry.result

    def get(self, question: str, customer_id: str) -> Optional[IntentClassificationResult]:
        """
        Get cached classification

        Returns:
            Cached result (pattern tier preferred) or None if absent/expired
        """
        key = self.make_key(question, customer_id)

        result = self._read_tier(METHOD_PATTERN, key)
        if result is None:
            result = self._read_tier(METHOD_AI, key)

        if result is None:
            self._stats["misses"] += 1
            return None

        self._stats["hits"] += 1
        logger.debug(f"[INTENT_CACHE] Hit ({result.method}): {key[:16]}...")
        return result

    def set(self, question: str, customer_id: str, result: IntentClassificationResult) -> bool:
        """
        Cache a classification under the tier matching result.method.

        Fallback results are never cached.

        Returns:
            True if the result was stored
        """
        if result.method == METHOD_PATTERN:
            tier, ttl = METHOD_PATTERN, self.pattern_ttl
        elif result.method == METHOD_AI:
            tier, ttl = METHOD_AI, self.ai_ttl
        else:
            logger.debug(f"[INTENT_CACHE] Not caching {result.method} result")
            return False

        key = self.make_key(question, customer_id)
        entries = self._tiers[tier]

        if key not in entries and len(entries) >= self.max_entries_per_tier:
            evicted_key, _ = entries.popitem(last=False)
            self._stats["evictions"] += 1
            logger.debug(f"[INTENT_CACHE] Evicted {tier} entry: {evicted_key[:16]}...")

        now = self._clock()
        entries[key] = IntentCacheEntry(result=result, created_at=now, expires_at=now + ttl)
        entries.move_to_end(key)
        return True

    def cleanup_expired(self) -> int:
        """
        Remove expired entries from both tiers

        Returns:
            Number of entries removed
        """
        now = self._clock()
        removed = 0
        for tier, entries in self._tiers.items():
            expired_keys = [key for key, entry in entries.items() if entry.is_expired(now)]
            for key in expired_keys:
                del entries[key]
            removed += len(expired_keys)

        if removed:
            self._stats["expirations"] += removed
            logger.info(f"[INTENT_CACHE] Swept {removed} expired entries")
        return removed

    def clear(self):
        for entries in self._tiers.values():
            entries.clear()
        logger.info("[INTENT_CACHE] Cleared")

    def get_stats(self) -> dict:
        total = self._stats["hits"] + self._stats["misses"]
        hit_rate = (self._stats["hits"] / total * 100) if total > 0 else 0
        return {
            **self._stats,
            "pattern_entries": len(self._tiers[METHOD_PATTERN]),
            "ai_entries": len(self._tiers[METHOD_AI]),
            "hit_rate_percent": round(hit_rate, 2),
        }


class IntentCacheSweeper:
    """Background task that calls cleanup_expired() on a fixed interval"""

    def __init__(self, cache: IntentClassificationCache, interval_seconds: float = DEFAULT_SWEEP_SECONDS):
        self.cache = cache
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Start sweeping (must be called from a running event loop)"""
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"[INTENT_CACHE] Sweeper started (every {self.interval_seconds}s)")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("[INTENT_CACHE] Sweeper stopped")

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.cache.cleanup_expired()
            except Exception as e:
                logger.error(f"[INTENT_CACHE] Sweep failed: {e}")
