"""
Tests for the two-tier intent classification cache
"""

import asyncio
import unittest
from datetime import datetime, timedelta

from intent_cache import IntentCacheSweeper, IntentClassificationCache, normalize_question
from intent_patterns import IntentClassificationResult, QueryIntent


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def _result(method="pattern", intent=QueryIntent.WORKFLOW_STATUS_MONITORING, confidence=0.9):
    return IntentClassificationResult(intent=intent, confidence=confidence, method=method)


class TestKeys(unittest.TestCase):
    def test_normalize_question(self):
        self.assertEqual(normalize_question("  Show   Forms\nBY status "), "show forms by status")

    def test_key_ignores_trivial_differences(self):
        self.assertEqual(
            IntentClassificationCache.make_key("Show forms by status", "c1"),
            IntentClassificationCache.make_key("  show FORMS  by status", "c1"),
        )

    def test_key_is_per_customer(self):
        self.assertNotEqual(
            IntentClassificationCache.make_key("q", "c1"),
            IntentClassificationCache.make_key("q", "c2"),
        )

    def test_key_does_not_contain_question(self):
        key = IntentClassificationCache.make_key("pending forms", "c1")
        self.assertNotIn("pending", key)
        self.assertEqual(len(key), 64)


class TestCache(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.cache = IntentClassificationCache(pattern_ttl_seconds=60, ai_ttl_seconds=120, clock=self.clock)

    def test_hit_returns_same_object(self):
        result = _result()
        self.assertTrue(self.cache.set("q", "c1", result))
        self.assertIs(self.cache.get("q", "c1"), result)

    def test_miss(self):
        self.assertIsNone(self.cache.get("q", "c1"))
        self.assertEqual(self.cache.get_stats()["misses"], 1)

    def test_fallback_not_cached(self):
        self.assertFalse(self.cache.set("q", "c1", _result(method="fallback", intent=QueryIntent.LEGACY_UNKNOWN)))
        self.assertIsNone(self.cache.get("q", "c1"))

    def test_pattern_entry_expires(self):
        self.cache.set("q", "c1", _result())
        self.clock.advance(60)
        self.assertIsNotNone(self.cache.get("q", "c1"))
        self.clock.advance(1)
        self.assertIsNone(self.cache.get("q", "c1"))
        self.assertEqual(self.cache.get_stats()["expirations"], 1)

    def test_tiers_have_separate_ttls(self):
        self.cache.set("q", "c1", _result(method="ai"))
        self.clock.advance(90)
        self.assertIsNotNone(self.cache.get("q", "c1"))

    def test_pattern_tier_read_first(self):
        ai = _result(method="ai", intent=QueryIntent.TOP_K)
        pattern = _result()
        self.cache.set("q", "c1", ai)
        self.cache.set("q", "c1", pattern)
        self.assertIs(self.cache.get("q", "c1"), pattern)

    def test_ai_tier_used_when_pattern_expired(self):
        ai = _result(method="ai", intent=QueryIntent.TOP_K)
        self.cache.set("q", "c1", _result())
        self.cache.set("q", "c1", ai)
        self.clock.advance(61)
        self.assertIs(self.cache.get("q", "c1"), ai)

    def test_last_write_wins(self):
        first = _result(method="ai", intent=QueryIntent.TOP_K)
        second = _result(method="ai", intent=QueryIntent.PIVOT)
        self.cache.set("q", "c1", first)
        self.cache.set("q", "c1", second)
        self.assertIs(self.cache.get("q", "c1"), second)

    def test_cleanup_expired(self):
        self.cache.set("a", "c1", _result())
        self.cache.set("b", "c1", _result(method="ai"))
        self.clock.advance(61)
        self.assertEqual(self.cache.cleanup_expired(), 1)
        stats = self.cache.get_stats()
        self.assertEqual(stats["pattern_entries"], 0)
        self.assertEqual(stats["ai_entries"], 1)

    def test_oldest_evicted_beyond_capacity(self):
        cache = IntentClassificationCache(max_entries_per_tier=2, clock=self.clock)
        cache.set("a", "c1", _result())
        cache.set("b", "c1", _result())
        cache.set("c", "c1", _result())
        self.assertIsNone(cache.get("a", "c1"))
        self.assertIsNotNone(cache.get("c", "c1"))
        self.assertEqual(cache.get_stats()["evictions"], 1)

    def test_clear(self):
        self.cache.set("a", "c1", _result())
        self.cache.clear()
        self.assertIsNone(self.cache.get("a", "c1"))

    def test_hit_rate(self):
        self.cache.set("a", "c1", _result())
        self.cache.get("a", "c1")
        self.cache.get("b", "c1")
        self.assertEqual(self.cache.get_stats()["hit_rate_percent"], 50.0)


class TestSweeper(unittest.IsolatedAsyncioTestCase):
    async def test_sweeps_in_background(self):
        clock = FakeClock()
        cache = IntentClassificationCache(pattern_ttl_seconds=1, clock=clock)
        cache.set("q", "c1", _result())
        clock.advance(5)

        sweeper = IntentCacheSweeper(cache, interval_seconds=0.01)
        sweeper.start()
        self.assertTrue(sweeper.running)
        await asyncio.sleep(0.1)
        await sweeper.stop()

        self.assertFalse(sweeper.running)
        self.assertEqual(cache.get_stats()["pattern_entries"], 0)

    async def test_stop_without_start(self):
        sweeper = IntentCacheSweeper(IntentClassificationCache())
        await sweeper.stop()
        self.assertFalse(sweeper.running)


if __name__ == "__main__":
    unittest.main()
