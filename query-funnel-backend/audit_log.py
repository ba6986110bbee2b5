"""
Classification Audit Log
Fire-and-forget usage and disagreement events for the intent classifier.

Sinks never block a request: the classifier schedules them with
fire_and_forget() and any failure is logged, not raised.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Coroutine, Optional, Set

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
)
from sqlalchemy.engine import Engine

from intent_patterns import IntentClassificationResult

logger = logging.getLogger(__name__)

metadata = MetaData()

classification_log = Table(
    "IntentClassificationLog",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("customer_id", String(64), nullable=False),
    Column("question", Text, nullable=False),
    Column("intent", String(64), nullable=False),
    Column("confidence", Float, nullable=False),
    Column("method", String(16), nullable=False),
    Column("latency_ms", Integer, nullable=False),
    Column("matched_patterns", Text),
    Column("reasoning", Text),
    Column("created_at", DateTime, nullable=False, default=datetime.now),
)

classification_disagreement = Table(
    "IntentClassificationDisagreement",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("customer_id", String(64), nullable=False),
    Column("question", Text, nullable=False),
    Column("pattern_intent", String(64), nullable=False),
    Column("pattern_confidence", Float, nullable=False),
    Column("ai_intent", String(64), nullable=False),
    Column("ai_confidence", Float, nullable=False),
    Column("created_at", DateTime, nullable=False, default=datetime.now),
)


# Strong references so pending tasks are not garbage collected mid-flight
_background_tasks: Set[asyncio.Task] = set()


def _on_task_done(task: asyncio.Task):
    _background_tasks.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"[AUDIT] Background task {task.get_name()} failed: {error}")


def fire_and_forget(coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
    """
    Run a coroutine as a detached task.

    The caller never awaits it; a failure is logged and otherwise ignored.
    Must be called from a running event loop.
    """
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_on_task_done)
    return task


def pending_background_tasks() -> int:
    return len(_background_tasks)


async def drain_background_tasks(timeout: float = 5.0):
    """Wait for outstanding fire-and-forget tasks (used at shutdown and in tests)."""
    if not _background_tasks:
        return
    done, pending = await asyncio.wait(set(_background_tasks), timeout=timeout)
    if pending:
        logger.warning(f"[AUDIT] {len(pending)} background task(s) still running after {timeout}s")


class ClassificationAuditSink(ABC):
    """Receives classification usage and pattern/AI disagreement events"""

    @abstractmethod
    async def log_classification(
        self,
        customer_id: str,
        question: str,
        result: IntentClassificationResult,
        latency_ms: int,
    ):
        """Record one classification and its latency."""

    @abstractmethod
    async def log_disagreement(
        self,
        customer_id: str,
        question: str,
        pattern_result: IntentClassificationResult,
        ai_result: IntentClassificationResult,
    ):
        """Record a pattern result the AI classifier disagreed with."""


class LoggingAuditSink(ClassificationAuditSink):
    """Writes audit events to the application log only"""

    async def log_classification(self, customer_id, question, result, latency_ms):
        logger.info(
            f"[AUDIT] customer={customer_id} intent={result.intent.value} "
            f"confidence={result.confidence:.2f} method={result.method} latency={latency_ms}ms"
        )

    async def log_disagreement(self, customer_id, question, pattern_result, ai_result):
        logger.info(
            f"[AUDIT] Pattern/AI disagreement for customer={customer_id}: "
            f"pattern={pattern_result.intent.value} ({pattern_result.confidence:.2f}) "
            f"ai={ai_result.intent.value} ({ai_result.confidence:.2f})"
        )


class SqlAuditSink(ClassificationAuditSink):
    """
    Persists audit events with SQLAlchemy Core.

    Inserts are blocking, so they run in a worker thread via asyncio.to_thread.
    """

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None, create_tables: bool = True):
        if engine is None:
            if not database_url:
                raise ValueError("SqlAuditSink needs a database_url or an engine")
            engine = create_engine(database_url)
        self.engine = engine
        if create_tables:
            metadata.create_all(self.engine)
        logger.info(f"[AUDIT] SQL audit sink ready ({self.engine.url.get_backend_name()})")

    def _insert(self, table: Table, row: dict):
        with self.engine.begin() as conn:
            conn.execute(table.insert().values(**row))

    async def log_classification(self, customer_id, question, result, latency_ms):
        row = {
            "customer_id": customer_id,
            "question": question,
            "intent": result.intent.value,
            "confidence": result.confidence,
            "method": result.method,
            "latency_ms": int(latency_ms),
            "matched_patterns": json.dumps(result.matched_patterns) if result.matched_patterns else None,
            "reasoning": result.reasoning,
        }
        await asyncio.to_thread(self._insert, classification_log, row)

    async def log_disagreement(self, customer_id, question, pattern_result, ai_result):
        row = {
            "customer_id": customer_id,
            "question": question,
            "pattern_intent": pattern_result.intent.value,
            "pattern_confidence": pattern_result.confidence,
            "ai_intent": ai_result.intent.value,
            "ai_confidence": ai_result.confidence,
        }
        await asyncio.to_thread(self._insert, classification_disagreement, row)
        logger.info(
            f"[AUDIT] Disagreement recorded: pattern={pattern_result.intent.value} "
            f"ai={ai_result.intent.value}"
        )


def create_audit_sink(database_url: Optional[str]) -> ClassificationAuditSink:
    """SQL sink when a database URL is configured, log-only otherwise."""
    if database_url:
        return SqlAuditSink(database_url=database_url)
    return LoggingAuditSink()
