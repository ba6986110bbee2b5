"""
Tests for the hybrid (pattern + AI) intent classifier

The provider factory, router and audit sink are replaced with in-memory fakes;
no model is ever called.
"""

import asyncio
import json
import unittest
from unittest.mock import AsyncMock

from audit_log import ClassificationAuditSink, drain_background_tasks
from intent_cache import IntentClassificationCache
from intent_classifier import ClassificationOptions, HybridIntentClassifier, build_intent_classification_prompt
from intent_patterns import QueryIntent
from model_router import ModelSelection
from provider_factory import NoUsableProviderError


class FakeProvider:
    def __init__(self, reply="", delay=0.0):
        self.reply = reply
        self.delay = delay
        self.calls = []
        self.closed = False

    async def complete(self, system_prompt, user_message, temperature=None, max_tokens=None):
        self.calls.append({"user_message": user_message, "temperature": temperature, "max_tokens": max_tokens})
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.reply

    async def close(self):
        self.closed = True


class RecordingSink(ClassificationAuditSink):
    def __init__(self, fail=False):
        self.fail = fail
        self.classifications = []
        self.disagreements = []

    async def log_classification(self, customer_id, question, result, latency_ms):
        if self.fail:
            raise RuntimeError("audit database down")
        self.classifications.append((customer_id, question, result))

    async def log_disagreement(self, customer_id, question, pattern_result, ai_result):
        if self.fail:
            raise RuntimeError("audit database down")
        self.disagreements.append((customer_id, pattern_result.intent, ai_result.intent))


def _ai_reply(intent, confidence=0.8, reasoning="looks like it"):
    return json.dumps({"intent": intent, "confidence": confidence, "reasoning": reasoning})


class ClassifierTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.cache = IntentClassificationCache()
        self.provider = FakeProvider(_ai_reply("aggregation_by_category"))
        self.factory = AsyncMock()
        self.factory.get_provider = AsyncMock(return_value=self.provider)
        self.sink = RecordingSink()

    def make_classifier(self, **kwargs):
        kwargs.setdefault("audit_sink", self.sink)
        return HybridIntentClassifier(self.cache, self.factory, default_model_id="claude-3-5-sonnet-latest", **kwargs)

    async def asyncTearDown(self):
        await drain_background_tasks()


# =============================================================================
# Pattern fast path
# =============================================================================

class TestPatternPath(ClassifierTestCase):
    async def test_confident_pattern_skips_ai(self):
        classifier = self.make_classifier()
        result = await classifier.classify("Show forms by status", "c1")

        self.assertEqual(result.intent, QueryIntent.WORKFLOW_STATUS_MONITORING)
        self.assertEqual(result.method, "pattern")
        self.assertGreaterEqual(result.confidence, 0.85)
        self.factory.get_provider.assert_not_called()

        await drain_background_tasks()
        self.assertEqual(len(self.sink.classifications), 1)

    async def test_pattern_result_cached(self):
        classifier = self.make_classifier()
        first = await classifier.classify("Show forms by status", "c1")
        second = await classifier.classify("show  forms by STATUS", "c1")
        self.assertIs(first, second)


# =============================================================================
# AI fallback
# =============================================================================

class TestAiPath(ClassifierTestCase):
    async def test_no_pattern_uses_ai(self):
        classifier = self.make_classifier()
        result = await classifier.classify("How many patients are there?", "c1")

        self.assertEqual(result.intent, QueryIntent.AGGREGATION_BY_CATEGORY)
        self.assertEqual(result.method, "ai")
        self.assertEqual(result.confidence, 0.8)
        self.assertEqual(result.reasoning, "looks like it")

        self.factory.get_provider.assert_awaited_once_with("claude-3-5-sonnet-latest", True)
        call = self.provider.calls[0]
        self.assertEqual(call["temperature"], 0.1)
        self.assertEqual(call["max_tokens"], 200)
        self.assertIn('Query: "How many patients are there?"', call["user_message"])
        self.assertTrue(self.provider.closed)

    async def test_repeat_question_served_from_cache(self):
        classifier = self.make_classifier()
        first = await classifier.classify("How many patients are there?", "c1")
        second = await classifier.classify("How many patients are there?", "c1")

        self.assertIs(first, second)
        self.assertEqual(self.factory.get_provider.await_count, 1)
        self.assertEqual(len(self.provider.calls), 1)

    async def test_cache_disabled(self):
        classifier = self.make_classifier()
        options = ClassificationOptions(enable_cache=False)
        await classifier.classify("How many patients are there?", "c1", options)
        await classifier.classify("How many patients are there?", "c1", options)
        self.assertEqual(len(self.provider.calls), 2)

    async def test_low_confidence_pattern_disagreement_logged(self):
        self.provider.reply = _ai_reply("time_series_trend")
        classifier = self.make_classifier()

        result = await classifier.classify("Wound size changes over 6 months", "c1")

        self.assertEqual(result.intent, QueryIntent.TIME_SERIES_TREND)
        await drain_background_tasks()
        self.assertEqual(
            self.sink.disagreements,
            [("c1", QueryIntent.TEMPORAL_PROXIMITY_QUERY, QueryIntent.TIME_SERIES_TREND)],
        )

    async def test_agreement_not_logged(self):
        self.provider.reply = _ai_reply("temporal_proximity_query")
        classifier = self.make_classifier()
        await classifier.classify("Wound size changes over 6 months", "c1")
        await drain_background_tasks()
        self.assertEqual(self.sink.disagreements, [])

    async def test_router_selects_model(self):
        router = AsyncMock()
        router.select_model = AsyncMock(
            return_value=ModelSelection("claude-3-5-haiku-latest", "anthropic", "fast")
        )
        classifier = self.make_classifier(model_router=router)

        await classifier.classify("How many patients are there?", "c1", ClassificationOptions(model_id="claude-3-opus-latest"))

        router.select_model.assert_awaited_once_with(
            user_selected_model_id="claude-3-opus-latest",
            complexity="simple",
            task_type="intent",
        )
        self.factory.get_provider.assert_awaited_once_with("claude-3-5-haiku-latest", True)

    async def test_router_failure_keeps_requested_model(self):
        router = AsyncMock()
        router.select_model = AsyncMock(side_effect=RuntimeError("directory unavailable"))
        classifier = self.make_classifier(model_router=router)

        result = await classifier.classify("How many patients are there?", "c1")

        self.assertEqual(result.method, "ai")
        self.factory.get_provider.assert_awaited_once_with("claude-3-5-sonnet-latest", True)


# =============================================================================
# Fallback result
# =============================================================================

class TestFallback(ClassifierTestCase):
    async def test_timeout(self):
        self.provider.delay = 1.0
        classifier = self.make_classifier()

        result = await classifier.classify(
            "How many patients are there?", "c1", ClassificationOptions(timeout_ms=10)
        )

        self.assertEqual(result.intent, QueryIntent.LEGACY_UNKNOWN)
        self.assertEqual(result.confidence, 0.0)
        self.assertEqual(result.method, "fallback")
        self.assertEqual(
            result.reasoning,
            "Classification failed: AI classification timeout after 10ms. Please rephrase your question.",
        )
        self.assertTrue(self.provider.closed)

    async def test_unparseable_reply(self):
        self.provider.reply = "I think it is probably a trend question"
        classifier = self.make_classifier()
        result = await classifier.classify("How many patients are there?", "c1")
        self.assertEqual(result.method, "fallback")
        self.assertIn("No valid JSON object found", result.reasoning)

    async def test_unknown_intent_in_reply(self):
        self.provider.reply = _ai_reply("make_coffee")
        classifier = self.make_classifier()
        result = await classifier.classify("How many patients are there?", "c1")
        self.assertEqual(result.method, "fallback")

    async def test_no_provider(self):
        self.factory.get_provider = AsyncMock(
            side_effect=NoUsableProviderError("claude-3-5-sonnet-latest", "Provider anthropic health check failed")
        )
        classifier = self.make_classifier()
        result = await classifier.classify("How many patients are there?", "c1")
        self.assertEqual(result.intent, QueryIntent.LEGACY_UNKNOWN)
        self.assertIn("NoUsableProvider", result.reasoning)

    async def test_missing_question(self):
        classifier = self.make_classifier()
        result = await classifier.classify(None, "c1")
        self.assertEqual(result.intent, QueryIntent.LEGACY_UNKNOWN)
        self.assertEqual(result.confidence, 0.0)
        self.assertEqual(result.method, "fallback")
        self.factory.get_provider.assert_not_called()

    async def test_fallback_not_cached(self):
        self.provider.reply = "not json"
        classifier = self.make_classifier()
        await classifier.classify("How many patients are there?", "c1")
        self.assertIsNone(self.cache.get("How many patients are there?", "c1"))

        self.provider.reply = _ai_reply("aggregation_by_category")
        result = await classifier.classify("How many patients are there?", "c1")
        self.assertEqual(result.method, "ai")

    async def test_audit_failure_does_not_reach_caller(self):
        classifier = self.make_classifier(audit_sink=RecordingSink(fail=True))
        with self.assertLogs("audit_log", level="ERROR") as logs:
            result = await classifier.classify("Show forms by status", "c1")
            await drain_background_tasks()
        self.assertEqual(result.method, "pattern")
        self.assertTrue(any("audit database down" in line for line in logs.output))


class TestPrompt(unittest.TestCase):
    def test_lists_every_intent(self):
        prompt = build_intent_classification_prompt("q")
        for intent in QueryIntent:
            self.assertIn(f"- {intent.value}:", prompt)


if __name__ == "__main__":
    unittest.main()
