"""
Hybrid Intent Classifier
========================

Pattern fast path with an AI fallback.

FLOW (classify):
1. Cache lookup (pattern tier first)                     -> hit: return
2. Run every pattern detector, keep the best match
3. Best confidence >= threshold (0.85)                   -> cache, log, return
4. AI fallback: model router picks the family's fast model,
   the provider call is bounded by asyncio.wait_for
5. Pattern and AI disagree                               -> disagreement event
6. Cache the AI result, log usage, return
7. Any error along the way                               -> legacy_unknown,
   confidence 0.0, method "fallback" (never raises)

Usage and disagreement events are fire-and-forget; their failures never reach
the caller.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, Field

from audit_log import ClassificationAuditSink, LoggingAuditSink, fire_and_forget
from intent_cache import IntentClassificationCache
from intent_patterns import (
    INTENT_DESCRIPTIONS,
    METHOD_AI,
    METHOD_FALLBACK,
    IntentClassificationResult,
    QueryIntent,
    run_pattern_detectors,
)
from llm_providers import DEFAULT_MODEL_ID
from model_router import COMPLEXITY_SIMPLE, TASK_INTENT
from response_parsing import parse_typed_reply

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 0.85
DEFAULT_TIMEOUT_MS = 60000

AI_TEMPERATURE = 0.1
AI_MAX_TOKENS = 200

INTENT_CLASSIFICATION_SYSTEM_PROMPT = """You are an intent classifier for healthcare data queries.
Your task is to classify user questions into one of the predefined intent types.

Be precise and consider the context carefully. Return your classification with a confidence score."""


def build_intent_classification_prompt(question: str) -> str:
    intents_list = "\n".join(
        f"- {intent.value}: {description}" for intent, description in INTENT_DESCRIPTIONS.items()
    )
    return f"""Classify the following query into one of these intent types:

Available intents:
{intents_list}

Query: "{question}"

Respond in JSON format:
{{
  "intent": "<intent_type>",
  "confidence": <0.0-1.0>,
  "reasoning": "<brief explanation>"
}}"""


class AiIntentReply(BaseModel):
    intent: QueryIntent
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: Optional[str] = None


@dataclass
class ClassificationOptions:
    """Per-call classifier options"""
    model_id: Optional[str] = None
    enable_cache: bool = True
    timeout_ms: int = DEFAULT_TIMEOUT_MS


class HybridIntentClassifier:
    """
    Classifies a question into a QueryIntent.

    All collaborators are injected; the classifier itself holds no global
    state. The cache is shared with other requests and is last-write-wins.
    """

    def __init__(
        self,
        cache: IntentClassificationCache,
        provider_factory,
        model_router=None,
        audit_sink: Optional[ClassificationAuditSink] = None,
        default_model_id: str = DEFAULT_MODEL_ID,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ):
        """
        Args:
            cache: Shared two-tier result cache
            provider_factory: Object with async get_provider(model_id, allow_fallback)
            model_router: Object with async select_model(...); optional
            audit_sink: Receives usage/disagreement events (log-only by default)
            default_model_id: Model used when no model id is given or the router fails
            confidence_threshold: Minimum pattern confidence that skips the AI call
            default_timeout_ms: AI timeout when options do not set one
        """
        self.cache = cache
        self.provider_factory = provider_factory
        self.model_router = model_router
        self.audit_sink = audit_sink or LoggingAuditSink()
        self.default_model_id = default_model_id
        self.confidence_threshold = confidence_threshold
        self.default_timeout_ms = default_timeout_ms

    async def classify(
        self,
        question: str,
        customer_id: str,
        options: Optional[ClassificationOptions] = None,
    ) -> IntentClassificationResult:
        options = options or ClassificationOptions(timeout_ms=self.default_timeout_ms)
        start = time.perf_counter()

        try:
            logger.info(f"[INTENT] Classifying for customer {customer_id}: {question[:80]}")
            if options.enable_cache:
                cached = self.cache.get(question, customer_id)
                if cached is not None:
                    logger.info(f"[INTENT] Cache hit ({cached.method}): {cached.intent.value}")
                    return cached

            pattern_results = run_pattern_detectors(question)
            best_pattern = pattern_results[0] if pattern_results else None

            if best_pattern is not None and best_pattern.confidence >= self.confidence_threshold:
                latency_ms = self._elapsed_ms(start)
                logger.info(
                    f"[INTENT] Pattern match in {latency_ms}ms: {best_pattern.intent.value} "
                    f"({best_pattern.confidence:.2f}) {best_pattern.matched_patterns}"
                )
                self.cache.set(question, customer_id, best_pattern)
                self._log_usage(customer_id, question, best_pattern, latency_ms)
                return best_pattern

            best_confidence = best_pattern.confidence if best_pattern else 0.0
            logger.info(f"[INTENT] Low pattern confidence ({best_confidence:.2f}), using AI fallback")

            ai_result = await self._classify_with_ai(question, options)
            latency_ms = self._elapsed_ms(start)
            logger.info(
                f"[INTENT] AI classification in {latency_ms}ms: {ai_result.intent.value} "
                f"({ai_result.confidence:.2f})"
            )

            if best_pattern is not None and best_pattern.intent != ai_result.intent:
                logger.info(
                    f"[INTENT] Pattern/AI disagreement: {best_pattern.intent.value} vs {ai_result.intent.value}"
                )
                fire_and_forget(
                    self.audit_sink.log_disagreement(customer_id, question, best_pattern, ai_result),
                    name="intent-disagreement",
                )

            self.cache.set(question, customer_id, ai_result)
            self._log_usage(customer_id, question, ai_result, latency_ms)
            return ai_result

        except Exception as e:
            latency_ms = self._elapsed_ms(start)
            message = str(e) or type(e).__name__
            logger.error(f"[INTENT] Classification failed after {latency_ms}ms: {message}")
            return IntentClassificationResult(
                intent=QueryIntent.LEGACY_UNKNOWN,
                confidence=0.0,
                method=METHOD_FALLBACK,
                reasoning=f"Classification failed: {message}. Please rephrase your question.",
            )

    async def _classify_with_ai(self, question: str, options: ClassificationOptions) -> IntentClassificationResult:
        model_id = await self._select_model(options.model_id or self.default_model_id)

        provider = await self.provider_factory.get_provider(model_id, True)
        try:
            response = await asyncio.wait_for(
                provider.complete(
                    INTENT_CLASSIFICATION_SYSTEM_PROMPT,
                    build_intent_classification_prompt(question),
                    temperature=AI_TEMPERATURE,
                    max_tokens=AI_MAX_TOKENS,
                ),
                timeout=options.timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            raise TimeoutError(f"AI classification timeout after {options.timeout_ms}ms")
        finally:
            await provider.close()

        reply = parse_typed_reply(AiIntentReply, response, "intent classification reply")
        return IntentClassificationResult(
            intent=reply.intent,
            confidence=reply.confidence,
            method=METHOD_AI,
            reasoning=reply.reasoning,
        )

    async def _select_model(self, requested_model_id: str) -> str:
        """Ask the router for the family's fast model; keep the requested id if it fails."""
        if self.model_router is None:
            return requested_model_id
        try:
            selection = await self.model_router.select_model(
                user_selected_model_id=requested_model_id,
                complexity=COMPLEXITY_SIMPLE,
                task_type=TASK_INTENT,
            )
        except Exception as e:
            logger.warning(f"[INTENT] Model router unavailable, using {requested_model_id}: {e}")
            return requested_model_id
        logger.info(f"[INTENT] AI model selected: {selection.model_id} ({selection.rationale})")
        return selection.model_id

    def _log_usage(self, customer_id: str, question: str, result: IntentClassificationResult, latency_ms: int):
        fire_and_forget(
            self.audit_sink.log_classification(customer_id, question, result, latency_ms),
            name="intent-usage",
        )

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.perf_counter() - start) * 1000)
