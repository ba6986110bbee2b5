"""
Conversational SQL Composer
===========================

Decides whether a follow-up question builds on the previous turn's query and,
if so, composes SQL on top of it.

PHASE A - should_compose_query()
    Model decides BUILDS ON vs INDEPENDENT. Never raises: any call or parse
    failure returns should_compose=False, confidence=0.0, so the caller
    generates a fresh query instead of risking a wrong composition.

PHASE B - compose_query()
    Model composes SQL with one of three strategies:
        cte           wrap the previous query as a CTE (preferred)
        merged_where  extend the previous WHERE clause
        fresh         ignore the previous query
    Malformed replies raise CompositionFormatError. The result is ALWAYS run
    through validate_composed() (fatal safety rules, temp tables, at most 3
    top-level CTEs) and raises ComposedSqlValidationError on failure.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool

from response_parsing import ModelReplyFormatError, parse_json_reply, validate_reply
from sql_safety import SqlSafetyError, SqlSafetyValidator, get_sql_safety_validator

logger = logging.getLogger(__name__)

STRATEGY_CTE = "cte"
STRATEGY_MERGED_WHERE = "merged_where"
STRATEGY_FRESH = "fresh"

DECISION_TEMPERATURE = 0.0
COMPOSITION_TEMPERATURE = 0.1

FAIL_SAFE_REASONING = "Error determining relationship; generating fresh query for safety"


class CompositionFormatError(ModelReplyFormatError):
    """Raised when the composition reply lacks a usable sql/strategy."""


class ComposedSqlValidationError(SqlSafetyError):
    """Raised when composed SQL breaks a safety or composition rule."""

    prefix = "Composed SQL failed safety validation"


@dataclass
class CompositionDecision:
    should_compose: bool
    reasoning: str
    confidence: float

    def to_dict(self) -> dict:
        return {
            "should_compose": self.should_compose,
            "reasoning": self.reasoning,
            "confidence": self.confidence,
        }


@dataclass
class ComposedQuery:
    """
    Safety-validated composed SQL.

    sql carries the validator's rewrites (row limit, schema prefix);
    warnings lists the advisory messages behind them.
    """
    sql: str
    strategy: str
    is_building_on_previous: bool
    reasoning: str
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "sql": self.sql,
            "strategy": self.strategy,
            "is_building_on_previous": self.is_building_on_previous,
            "reasoning": self.reasoning,
            "warnings": list(self.warnings),
        }


class CompositionDecisionReply(BaseModel):
    should_compose: StrictBool = Field(alias="shouldCompose")
    reasoning: Optional[str] = None
    confidence: Optional[float] = None


class ComposedQueryReply(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    sql: str = Field(min_length=1)
    strategy: Literal["cte", "merged_where", "fresh"]
    reasoning: Optional[str] = None


# =============================================================================
# PROMPTS
# =============================================================================

COMPOSITION_DECISION_SYSTEM_PROMPT = """You are a SQL query relationship analyzer for healthcare data conversations.

Your task is to determine if a current question builds upon (filters/aggregates/refines) previous query results,
or is an independent question requiring fresh data retrieval.

Key principles:
- Questions with pronouns (which ones, those, they) almost always build on previous
- Questions with vague aggregations (what's the average?, how many?) without entity names likely build on previous
- Questions with explicit entity names (show male patients, count clinics) are usually independent
- Time period shifts without pronouns are usually independent (Q1 -> Q2)

Return ONLY a valid JSON object. No markdown, no explanations outside JSON."""

COMPOSITION_SYSTEM_PROMPT = """You are a SQL query composer for healthcare data analysis.

Your task is to generate SQL that builds upon previous queries in a conversation.

**Context Carryover Rules:**

1. When user says "which ones", "those", "they":
   -> Build on previous query using CTE

2. When user asks aggregation on previous results:
   -> Wrap previous query, then aggregate

3. When user asks completely different question:
   -> Generate fresh SQL (ignore previous)

4. Efficiency rules:
   -> Don't nest CTEs more than 3 levels
   -> If composition gets complex, merge WHERE clauses instead
   -> Never use temp tables or result storage

**Privacy Requirements:**
- NEVER suggest storing query results
- NEVER suggest CREATE TEMP TABLE
- Always use CTEs for composition

**Output Format:**
Return ONLY the JSON object. No markdown, no explanation outside the JSON."""


def build_composition_decision_prompt(previous_question: str, current_question: str, previous_sql: str) -> str:
    return f"""You are analyzing a conversation about healthcare data to determine query relationships.

**Previous question:** "{previous_question}"

**Previous SQL:**
```sql
{previous_sql}
```

**Current question:** "{current_question}"

**Task:** Determine if the current question BUILDS ON the previous question's results, or is an INDEPENDENT question.

**BUILDS ON (shouldCompose: true):**
- Filtering previous results: "Show female patients" -> "Which ones are older than 40?"
- Aggregating previous results: "Show patients with wounds" -> "What's their average age?"
- Refining previous query: "List all assessments" -> "Only show from last month"
- Using pronouns referencing previous: "Show patients" -> "Which ones have diabetes?"

**INDEPENDENT (shouldCompose: false):**
- Different subset of same entity: "Show female patients" -> "Show male patients"
- Completely different entity: "How many patients?" -> "How many clinics?"
- Different time period (new analysis): "Show Q1 data" -> "Show Q2 data"
- Parallel question (not building): "Count active wounds" -> "Count healed wounds"

Return JSON with your analysis:
{{
  "shouldCompose": boolean,
  "reasoning": "brief explanation of why you chose this",
  "confidence": number between 0.0 and 1.0
}}"""


def build_composition_prompt(previous_sql: str, previous_question: str, current_question: str) -> str:
    return f"""Previous question: "{previous_question}"
Previous SQL:
```sql
{previous_sql}
```

Current question: "{current_question}"

Task: Generate SQL that builds on the previous query.

**Composition Strategies:**

1. **CTE Composition** (preferred): Wrap previous query in CTE
   Example:
   WITH previous_result AS (
     {previous_sql}
   )
   SELECT * FROM previous_result WHERE <additional_filters>

2. **Merged WHERE**: Add to existing WHERE clause
   Use when previous query can be extended simply

3. **Fresh Query**: Generate new SQL if unrelated

Return JSON:
{{
  "strategy": "cte" | "merged_where" | "fresh",
  "sql": "...",
  "reasoning": "why this strategy was chosen"
}}"""


# =============================================================================
# COMPOSER
# =============================================================================

class SqlComposer:
    """Two-phase conversational SQL composition"""

    def __init__(self, validator: Optional[SqlSafetyValidator] = None):
        self.validator = validator or get_sql_safety_validator()

    async def should_compose_query(
        self,
        current_question: str,
        previous_question: str,
        previous_sql: str,
        provider,
    ) -> CompositionDecision:
        """
        Phase A: does the current question build on the previous one?

        Args:
            provider: Object with async complete(system_prompt, user_message, temperature=...)

        Returns:
            CompositionDecision (fail-safe decision on any error)
        """
        prompt = build_composition_decision_prompt(previous_question, current_question, previous_sql)

        try:
            response = await provider.complete(
                COMPOSITION_DECISION_SYSTEM_PROMPT,
                prompt,
                temperature=DECISION_TEMPERATURE,
            )
            decision = self._parse_decision(response)
        except Exception as e:
            logger.error(
                f"[COMPOSER] Failed to determine composition "
                f"(previous: {previous_question[:100]!r}, current: {current_question[:100]!r}): {e}"
            )
            return CompositionDecision(should_compose=False, reasoning=FAIL_SAFE_REASONING, confidence=0.0)

        logger.info(
            f"[COMPOSER] Decision: compose={decision.should_compose} "
            f"(confidence {decision.confidence:.2f}) - {decision.reasoning}"
        )
        return decision

    async def compose_query(
        self,
        previous_sql: str,
        previous_question: str,
        current_question: str,
        provider,
    ) -> ComposedQuery:
        """
        Phase B: compose SQL on top of the previous query.

        Raises:
            CompositionFormatError: Reply has no usable sql/strategy
            ComposedSqlValidationError: Composed SQL failed validation
        """
        prompt = build_composition_prompt(previous_sql, previous_question, current_question)

        response = await provider.complete(
            COMPOSITION_SYSTEM_PROMPT,
            prompt,
            temperature=COMPOSITION_TEMPERATURE,
        )

        reply = self._parse_composition(response)

        check = self.validator.validate_composed(reply.sql)
        if not check.valid:
            error = ComposedSqlValidationError(check.errors)
            logger.error(f"[COMPOSER] {error}")
            raise error

        logger.info(f"[COMPOSER] Composed query using '{reply.strategy}' strategy ({check.cte_count} CTEs)")
        return ComposedQuery(
            sql=check.report.modified_sql,
            strategy=reply.strategy,
            is_building_on_previous=reply.strategy != STRATEGY_FRESH,
            reasoning=reply.reasoning or "No reasoning provided",
            warnings=list(check.report.warnings),
        )

    @staticmethod
    def _parse_decision(response: str) -> CompositionDecision:
        payload = parse_json_reply(response, "composition decision response")
        reply = validate_reply(CompositionDecisionReply, payload, "composition decision")
        return CompositionDecision(
            should_compose=reply.should_compose,
            reasoning=reply.reasoning or "No reasoning provided",
            confidence=reply.confidence if reply.confidence is not None else 1.0,
        )

    @staticmethod
    def _parse_composition(response: str) -> ComposedQueryReply:
        try:
            payload = parse_json_reply(response, "composition response")
        except ModelReplyFormatError as e:
            raise CompositionFormatError(str(e)) from e

        try:
            return validate_reply(ComposedQueryReply, payload, "composition response")
        except ModelReplyFormatError as e:
            raise CompositionFormatError("Invalid composition response: missing or invalid sql/strategy") from e
