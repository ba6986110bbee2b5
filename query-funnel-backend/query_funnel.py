"""
Query Funnel Driver
===================

Thin orchestration of the incremental "funnel":

    complex question
        -> sub-questions (model)      -> dependency validation
        -> SQL per step (model)       -> fence strip + safety enforcement
        -> chart recommendation (model, optional)

Sub-question validation always completes before any step SQL is generated.
Every generated statement passes enforce_sql_safety() before it is returned.
No retries: errors propagate to the caller.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from response_parsing import parse_json_reply, parse_typed_reply
from sql_safety import SqlSafetyValidator, enforce_sql_safety, get_sql_safety_validator, strip_sql_fences
from subquestion_validator import SubQuestionPlan, SubQuestionStep, parse_sub_questions

logger = logging.getLogger(__name__)

CHART_SAMPLE_ROWS = 10

SUBQUESTIONS_USER_MESSAGE = "Please break down this complex question into incremental sub-questions."
STEP_SQL_USER_MESSAGE = "Please generate a SQL query for this sub-question."
CHART_USER_MESSAGE = "Please recommend a chart for these query results."

FUNNEL_TEMPLATES = [
    ("Healing Rate Comparison", "Compare healing rates across treatments or patient groups."),
    ("Time-to-Heal Analysis", "Analyze average healing durations or healing trajectories."),
    ("Wound Size Trend", "Track changes in wound size or depth over time."),
    ("Resource Utilization Analysis", "Assess resource usage (e.g., dressing changes per patient)."),
    ("Treatment Effectiveness Overview", "Evaluate overall treatment effectiveness and outcomes."),
]

FUNNEL_SUBQUESTIONS_PROMPT = """You are a helpful clinical data analyst assistant. Your task is to take a complex analytical question related to clinical wound assessment data and break it down into smaller, incremental sub-questions. Each sub-question must be simple, clear, and individually answerable with a straightforward SQL query.

## CRITICAL: JSON Response Format
Respond with ONLY a valid JSON object:

{
  "original_question": "Original Complex Question",
  "matched_template": "Template name if matched, otherwise 'None'",
  "sub_questions": [
    {"step": 1, "question": "First simplified sub-question", "depends_on": null},
    {"step": 2, "question": "Second simplified sub-question", "depends_on": 1}
  ]
}

## Breaking Down Questions
Each step builds on the data retrieved by earlier steps until the original question is answered.
Every sub-question after the first MUST explicitly reference the output of the step(s) it depends on.
Number steps 1..N. depends_on is null, a single earlier step number, or an array of earlier step numbers.

## Template Matching
{templates}

If the question matches a template, give its name in matched_template, otherwise "None".

Respond with ONLY the JSON object."""

FUNNEL_SQL_PROMPT = """You are an expert MS SQL Server data analyst specializing in clinical wound care data analysis. Generate one SQL query for the sub-question below.

## CRITICAL: JSON Response Format
Respond with ONLY a valid JSON object:

{
  "explanation": "How this query addresses the sub-question and uses previous steps' data",
  "generatedSql": "SELECT column1, column2 FROM rpt.Table WHERE condition",
  "validationNotes": "Validation rules or data checks applied",
  "matchedQueryTemplate": "Template name if matched, otherwise 'None'"
}

## Incremental Generation
* Chain the PREVIOUS QUERIES as CTEs named Step1_Results, Step2_Results, ... and add the current step.
* Only generate SELECT statements; never modify data or use dynamic SQL.
* Parameterize dynamic values (@patientId, @startDate).
* Handle NULLs explicitly and use the rpt. schema prefix for all tables.
* Limit results using TOP for large datasets.

Respond with ONLY the JSON object."""

CHART_PROMPT = """You are an expert data visualization specialist. Analyze the SQL query results and recommend the best chart type and data mappings.

RESPONSE FORMAT - a single JSON object:
{
  "recommendedChartType": "bar" | "line" | "pie" | "kpi" | "table",
  "availableMappings": {
    "bar"?: { "category": "columnName", "value": "columnName" },
    "line"?: { "x": "columnName", "y": "columnName" },
    "pie"?: { "label": "columnName", "value": "columnName" },
    "kpi"?: { "label": "columnName", "value": "columnName" },
    "table"?: { "columns": [{ "key": "columnName", "header": "Display Name" }] }
  },
  "explanation": "Why this chart type is recommended",
  "chartTitle": "Suggested title for the chart"
}

Only include chart types that suit the data. Column names in mappings must match the result columns."""


class StepQueryReply(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    explanation: str
    generated_sql: str = Field(alias="generatedSql", min_length=1)
    validation_notes: str = Field(alias="validationNotes")
    matched_query_template: Optional[str] = Field(default=None, alias="matchedQueryTemplate")


class ChartRecommendationReply(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    recommended_chart_type: Literal["bar", "line", "pie", "kpi", "table"] = Field(alias="recommendedChartType")
    available_mappings: Dict[str, Any] = Field(alias="availableMappings")
    explanation: str
    chart_title: str = Field(alias="chartTitle")

    @model_validator(mode="after")
    def _recommended_type_has_mapping(self):
        if not self.available_mappings.get(self.recommended_chart_type):
            raise ValueError(f"no mapping for recommended chart type '{self.recommended_chart_type}'")
        return self


@dataclass
class StepQuery:
    """Safety-enforced SQL for one funnel step"""
    step: int
    question: str
    sql: str
    explanation: str = ""
    validation_notes: str = ""
    matched_template: Optional[str] = None


@dataclass
class FunnelResult:
    plan: SubQuestionPlan
    queries: List[StepQuery] = field(default_factory=list)


def build_subquestions_prompt(question: str, form_definition: Optional[dict] = None, schema_context: Optional[str] = None) -> str:
    templates = "\n".join(f'- "{name}": {description}' for name, description in FUNNEL_TEMPLATES)
    prompt = FUNNEL_SUBQUESTIONS_PROMPT.replace("{templates}", templates)
    prompt += f"\n\nORIGINAL QUESTION:\n{question}"
    if form_definition:
        prompt += f"\n\nFORM DEFINITION:\n{json.dumps(form_definition, indent=2)}"
    if schema_context:
        prompt += f"\n\nDATABASE SCHEMA CONTEXT:\n{schema_context}"
    return prompt


def build_step_sql_prompt(
    sub_question: str,
    previous_queries: Optional[List[str]] = None,
    schema_context: Optional[str] = None,
) -> str:
    prompt = FUNNEL_SQL_PROMPT + f"\n\nSUB-QUESTION:\n{sub_question}"
    if previous_queries:
        steps = "\n\n".join(f"Step {i + 1}:\n{sql}" for i, sql in enumerate(previous_queries))
        prompt += f"\n\nPREVIOUS QUERIES:\n{steps}"
    if schema_context:
        prompt += f"\n\nDATABASE SCHEMA CONTEXT:\n{schema_context}"
    return prompt


def build_chart_prompt(sub_question: str, sql: str, rows: List[Dict[str, Any]]) -> str:
    sample = json.dumps(rows[:CHART_SAMPLE_ROWS], indent=2, default=str)
    if len(rows) > CHART_SAMPLE_ROWS:
        sample += f"\n(Showing first {CHART_SAMPLE_ROWS} of {len(rows)} rows)"
    return (
        f"{CHART_PROMPT}\n\nCONTEXT:\n"
        f'- Sub-question: "{sub_question}"\n'
        f"- SQL Query:\n{sql}\n"
        f"- Query Results: {sample}"
    )


class QueryFunnel:
    """Sequences decomposition, per-step SQL generation and chart advice"""

    def __init__(self, validator: Optional[SqlSafetyValidator] = None, schema_context: Optional[str] = None):
        self.validator = validator or get_sql_safety_validator()
        self.schema_context = schema_context

    async def generate_sub_questions(
        self,
        question: str,
        provider,
        form_definition: Optional[dict] = None,
    ) -> SubQuestionPlan:
        """
        Raises:
            ModelReplyFormatError: Reply is not a usable JSON object
            SubQuestionDependencyError: Steps do not form a valid sequence
        """
        response = await provider.complete(
            build_subquestions_prompt(question, form_definition, self.schema_context),
            SUBQUESTIONS_USER_MESSAGE,
        )
        plan = parse_sub_questions(parse_json_reply(response, "sub-question reply"))
        logger.info(
            f"[FUNNEL] {len(plan.steps)} sub-questions "
            f"(template: {plan.matched_template or 'None'})"
        )
        return plan

    async def generate_step_query(
        self,
        step: SubQuestionStep,
        provider,
        previous_queries: Optional[List[str]] = None,
    ) -> StepQuery:
        """
        Raises:
            ModelReplyFormatError: Reply is missing required fields
            SqlSafetyError: Generated SQL breaks a fatal safety rule
        """
        response = await provider.complete(
            build_step_sql_prompt(step.question, previous_queries, self.schema_context),
            STEP_SQL_USER_MESSAGE,
        )
        reply = parse_typed_reply(StepQueryReply, response, "step SQL reply")

        sql = enforce_sql_safety(strip_sql_fences(reply.generated_sql), self.validator)
        template = reply.matched_query_template
        logger.info(f"[FUNNEL] Step {step.step} SQL ready (template: {template or 'None'})")

        return StepQuery(
            step=step.step,
            question=step.question,
            sql=sql,
            explanation=reply.explanation,
            validation_notes=reply.validation_notes,
            matched_template=None if template in (None, "None") else template,
        )

    async def run(self, question: str, provider, form_definition: Optional[dict] = None) -> FunnelResult:
        """Decompose, validate, then generate SQL step by step."""
        plan = await self.generate_sub_questions(question, provider, form_definition)
        result = FunnelResult(plan=plan)

        previous_queries: List[str] = []
        for step in sorted(plan.steps, key=lambda s: s.step):
            query = await self.generate_step_query(step, provider, previous_queries)
            result.queries.append(query)
            previous_queries.append(query.sql)

        return result

    async def recommend_chart(
        self,
        sub_question: str,
        sql: str,
        rows: List[Dict[str, Any]],
        provider,
    ) -> Dict[str, Any]:
        response = await provider.complete(build_chart_prompt(sub_question, sql, rows), CHART_USER_MESSAGE)
        reply = parse_typed_reply(ChartRecommendationReply, response, "chart recommendation")
        logger.info(f"[FUNNEL] Chart recommendation: {reply.recommended_chart_type}")
        return reply.model_dump(by_alias=True)
