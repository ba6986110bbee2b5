"""
Tests for classification audit sinks and fire-and-forget scheduling
"""

import asyncio
import json
import unittest

from sqlalchemy import create_engine, select
from sqlalchemy.pool import StaticPool

from audit_log import (
    ClassificationAuditSink,
    LoggingAuditSink,
    SqlAuditSink,
    classification_disagreement,
    classification_log,
    create_audit_sink,
    drain_background_tasks,
    fire_and_forget,
    pending_background_tasks,
)
from intent_patterns import IntentClassificationResult, QueryIntent


def _memory_engine():
    return create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)


PATTERN = IntentClassificationResult(
    QueryIntent.TEMPORAL_PROXIMITY_QUERY, 0.6, "pattern", ["proximity:at", "timeUnit:4 weeks"]
)
AI = IntentClassificationResult(QueryIntent.TIME_SERIES_TREND, 0.8, "ai", reasoning="trend over time")


class TestSqlAuditSink(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.engine = _memory_engine()
        self.sink = SqlAuditSink(engine=self.engine)

    def tearDown(self):
        self.engine.dispose()

    async def test_classification_row(self):
        await self.sink.log_classification("c1", "healing at 4 weeks", PATTERN, 12)

        with self.engine.connect() as conn:
            row = conn.execute(select(classification_log)).mappings().one()
        self.assertEqual(row["customer_id"], "c1")
        self.assertEqual(row["intent"], "temporal_proximity_query")
        self.assertEqual(row["method"], "pattern")
        self.assertEqual(row["latency_ms"], 12)
        self.assertEqual(json.loads(row["matched_patterns"]), ["proximity:at", "timeUnit:4 weeks"])
        self.assertIsNotNone(row["created_at"])

    async def test_disagreement_row(self):
        await self.sink.log_disagreement("c1", "healing at 4 weeks", PATTERN, AI)

        with self.engine.connect() as conn:
            row = conn.execute(select(classification_disagreement)).mappings().one()
        self.assertEqual(row["pattern_intent"], "temporal_proximity_query")
        self.assertEqual(row["ai_intent"], "time_series_trend")
        self.assertEqual(row["ai_confidence"], 0.8)

    def test_needs_url_or_engine(self):
        with self.assertRaises(ValueError):
            SqlAuditSink()


class TestAuditSinkBase(unittest.TestCase):
    def test_sink_must_implement_both_events(self):
        class ClassificationOnlySink(ClassificationAuditSink):
            async def log_classification(self, customer_id, question, result, latency_ms):
                pass

        with self.assertRaises(TypeError):
            ClassificationAuditSink()
        with self.assertRaises(TypeError):
            ClassificationOnlySink()


class TestCreateAuditSink(unittest.TestCase):
    def test_log_only_without_url(self):
        self.assertIsInstance(create_audit_sink(None), LoggingAuditSink)

    def test_sql_sink_with_url(self):
        sink = create_audit_sink("sqlite://")
        self.assertIsInstance(sink, SqlAuditSink)
        sink.engine.dispose()


class TestFireAndForget(unittest.IsolatedAsyncioTestCase):
    async def test_failure_logged_not_raised(self):
        async def boom():
            raise RuntimeError("disk full")

        with self.assertLogs("audit_log", level="ERROR") as logs:
            fire_and_forget(boom(), name="audit-test")
            await drain_background_tasks()

        self.assertIn("[AUDIT] Background task audit-test failed: disk full", logs.output[0])
        self.assertEqual(pending_background_tasks(), 0)

    async def test_success(self):
        done = []

        async def work():
            await asyncio.sleep(0)
            done.append(True)

        task = fire_and_forget(work())
        await drain_background_tasks()
        self.assertTrue(task.done())
        self.assertEqual(done, [True])

    async def test_logging_sink(self):
        with self.assertLogs("audit_log", level="INFO") as logs:
            await LoggingAuditSink().log_classification("c1", "q", AI, 5)
        self.assertIn("intent=time_series_trend", logs.output[0])


if __name__ == "__main__":
    unittest.main()
