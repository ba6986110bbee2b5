"""
Pattern Intent Detectors
========================

Deterministic keyword/regex scorers used as the fast path of the hybrid
intent classifier. Each detector has a mandatory ANCHOR signal; without it
the detector returns None instead of a low-confidence guess.

DETECTORS:
    temporal proximity      anchor: numeric time unit ("4 weeks", "12 mos")
        proximity + time unit + outcome     -> 0.90
        time unit + (proximity | outcome)   -> 0.60

    assessment correlation  anchor: >= 2 distinct assessment types
        anti-join keyword ("without", "no")  -> 0.85
        correlation keyword ("compare")      -> 0.75

    workflow status         anchor: status keyword ("pending", "status")
        + group-by phrase ("by status")      -> 0.90
        + age phrase ("older than")          -> 0.80
        alone                                -> 0.60

Keywords match whole words (a trailing plural "s"/"es" is tolerated), so
"at" does not fire on "rate" and "no" does not fire on "notes".
Matched sub-signals are reported as "<kind>:<keyword>".
"""

import re
import logging
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class QueryIntent(str, Enum):
    """Supported query intents."""
    AGGREGATION_BY_CATEGORY = "aggregation_by_category"
    TIME_SERIES_TREND = "time_series_trend"
    TEMPORAL_PROXIMITY_QUERY = "temporal_proximity_query"
    ASSESSMENT_CORRELATION_CHECK = "assessment_correlation_check"
    WORKFLOW_STATUS_MONITORING = "workflow_status_monitoring"
    LATEST_PER_ENTITY = "latest_per_entity"
    AS_OF_STATE = "as_of_state"
    TOP_K = "top_k"
    PIVOT = "pivot"
    JOIN_ANALYSIS = "join_analysis"
    LEGACY_UNKNOWN = "legacy_unknown"


INTENT_DESCRIPTIONS: Dict[QueryIntent, str] = {
    QueryIntent.TEMPORAL_PROXIMITY_QUERY: 'Outcomes at a specific time point (e.g., "at 4 weeks", "around 12 weeks")',
    QueryIntent.ASSESSMENT_CORRELATION_CHECK: 'Missing or mismatched data across assessment types (e.g., "visits without billing")',
    QueryIntent.WORKFLOW_STATUS_MONITORING: 'Filter or group by workflow status/state (e.g., "forms by status")',
    QueryIntent.AGGREGATION_BY_CATEGORY: "Count/sum/average grouped by categories",
    QueryIntent.TIME_SERIES_TREND: "Trends over time periods",
    QueryIntent.LATEST_PER_ENTITY: "Most recent record per entity",
    QueryIntent.AS_OF_STATE: "State at a specific date",
    QueryIntent.TOP_K: "Top/bottom N results",
    QueryIntent.PIVOT: "Transform rows to columns",
    QueryIntent.JOIN_ANALYSIS: "Combine multiple data sources",
    QueryIntent.LEGACY_UNKNOWN: "Unknown or unclassified query type",
}

METHOD_PATTERN = "pattern"
METHOD_AI = "ai"
METHOD_FALLBACK = "fallback"


@dataclass
class IntentClassificationResult:
    """
    Outcome of intent classification.

    Attributes:
        intent: Classified intent
        confidence: 0.0 - 1.0
        method: "pattern", "ai" or "fallback"
        matched_patterns: Sub-signals that fired (pattern method only)
        reasoning: Model explanation (ai method) or failure reason (fallback)
    """
    intent: QueryIntent
    confidence: float
    method: str
    matched_patterns: List[str] = field(default_factory=list)
    reasoning: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["intent"] = self.intent.value
        return data


# =============================================================================
# INDICATORS
# =============================================================================

TEMPORAL_PROXIMITY_INDICATORS = {
    "keywords": [
        "at", "around", "approximately", "near", "close to", "within",
        "by", "after", "since", "roughly", "about",
    ],
    "time_units": [
        re.compile(r'\b\d+[\s-]*(?:weeks?|wks?)\b', re.IGNORECASE),
        re.compile(r'\b\d+[\s-]*(?:months?|mos?)\b', re.IGNORECASE),
        re.compile(r'\b\d+[\s-]*days?\b', re.IGNORECASE),
        re.compile(r'\b\d+[\s-]*(?:years?|yrs?)\b', re.IGNORECASE),
    ],
    "outcome_keywords": [
        "healing", "healed", "outcome", "result", "reduction", "improvement",
        "measurement", "area", "size", "change", "progress",
    ],
}

ASSESSMENT_CORRELATION_INDICATORS = {
    "anti_join_keywords": [
        "without", "no", "missing", "lacking", "lacks", "absent",
        "not have", "does not have", "doesn't have", "never had", "unmatched",
    ],
    "correlation_keywords": [
        "compare", "comparison", "versus", "vs", "mismatch", "mismatched",
        "discrepancy", "discrepancies", "reconcile", "reconciliation",
        "correlate", "correlation", "between", "match",
    ],
    "assessment_type_keywords": [
        "visit", "discharge", "admission", "intake", "billing", "clinical",
        "documentation", "assessment", "form", "referral", "consent",
    ],
}

WORKFLOW_STATUS_INDICATORS = {
    "status_keywords": [
        "status", "state", "workflow", "pending", "in progress", "in review",
        "draft", "submitted", "approved", "rejected", "signed", "unsigned",
        "awaiting", "overdue",
    ],
    "group_by_keywords": [
        "by status", "by state", "per status", "per state", "group by",
        "grouped by", "breakdown", "broken down", "distribution", "count by",
    ],
    "age_keywords": [
        "older than", "longer than", "more than", "for over", "days old",
        "weeks old", "stuck", "aging", "age", "stale",
    ],
}


def _keyword_pattern(keyword: str) -> re.Pattern:
    """Whole-word (or whole-phrase) pattern with an optional plural suffix."""
    body = r'\s+'.join(re.escape(part) for part in keyword.split())
    return re.compile(rf'\b{body}(?:s|es)?\b', re.IGNORECASE)


def _compile(keywords: List[str]) -> List[tuple]:
    return [(kw, _keyword_pattern(kw)) for kw in keywords]


_PROXIMITY = _compile(TEMPORAL_PROXIMITY_INDICATORS["keywords"])
_OUTCOME = _compile(TEMPORAL_PROXIMITY_INDICATORS["outcome_keywords"])
_ANTI_JOIN = _compile(ASSESSMENT_CORRELATION_INDICATORS["anti_join_keywords"])
_CORRELATION = _compile(ASSESSMENT_CORRELATION_INDICATORS["correlation_keywords"])
_ASSESSMENT_TYPES = _compile(ASSESSMENT_CORRELATION_INDICATORS["assessment_type_keywords"])
_STATUS = _compile(WORKFLOW_STATUS_INDICATORS["status_keywords"])
_GROUP_BY = _compile(WORKFLOW_STATUS_INDICATORS["group_by_keywords"])
_AGE = _compile(WORKFLOW_STATUS_INDICATORS["age_keywords"])


def _first_match(question: str, compiled: List[tuple], kind: str, matched: List[str]) -> bool:
    for keyword, pattern in compiled:
        if pattern.search(question):
            matched.append(f"{kind}:{keyword}")
            return True
    return False


def _all_matches(question: str, compiled: List[tuple], kind: str, matched: List[str]) -> List[str]:
    found = []
    for keyword, pattern in compiled:
        if pattern.search(question):
            matched.append(f"{kind}:{keyword}")
            found.append(keyword)
    return found


def _pattern_result(intent: QueryIntent, confidence: float, matched: List[str]) -> IntentClassificationResult:
    return IntentClassificationResult(
        intent=intent,
        confidence=confidence,
        method=METHOD_PATTERN,
        matched_patterns=matched,
    )


# =============================================================================
# DETECTORS
# =============================================================================

def detect_temporal_proximity(question: str) -> Optional[IntentClassificationResult]:
    """
    Outcomes at a specific time point ("healing rate at 4 weeks").

    "Wounds in the last 4 weeks" is a date range, not a time point: it has a
    time unit but neither a proximity nor an outcome keyword, so no match.
    """
    matched: List[str] = []

    has_proximity = _first_match(question, _PROXIMITY, "proximity", matched)

    has_time_unit = False
    for pattern in TEMPORAL_PROXIMITY_INDICATORS["time_units"]:
        match = pattern.search(question)
        if match:
            matched.append(f"timeUnit:{match.group(0).lower()}")
            has_time_unit = True
            break

    has_outcome = _first_match(question, _OUTCOME, "outcome", matched)

    if not has_time_unit:
        return None

    if has_proximity and has_outcome:
        return _pattern_result(QueryIntent.TEMPORAL_PROXIMITY_QUERY, 0.9, matched)

    if has_proximity or has_outcome:
        return _pattern_result(QueryIntent.TEMPORAL_PROXIMITY_QUERY, 0.6, matched)

    return None


def detect_assessment_correlation(question: str) -> Optional[IntentClassificationResult]:
    """Missing or mismatched data across assessment types ("visits without billing")."""
    matched: List[str] = []

    has_anti_join = _first_match(question, _ANTI_JOIN, "antiJoin", matched)
    has_correlation = _first_match(question, _CORRELATION, "correlation", matched)
    assessment_types = _all_matches(question, _ASSESSMENT_TYPES, "assessmentType", matched)

    if len(assessment_types) < 2:
        return None

    if has_anti_join:
        return _pattern_result(QueryIntent.ASSESSMENT_CORRELATION_CHECK, 0.85, matched)

    if has_correlation:
        return _pattern_result(QueryIntent.ASSESSMENT_CORRELATION_CHECK, 0.75, matched)

    return None


def detect_workflow_status(question: str) -> Optional[IntentClassificationResult]:
    """Filtering or grouping by workflow status ("forms by status")."""
    matched: List[str] = []

    has_status = _first_match(question, _STATUS, "status", matched)
    if not has_status:
        return None

    if _first_match(question, _GROUP_BY, "groupBy", matched):
        return _pattern_result(QueryIntent.WORKFLOW_STATUS_MONITORING, 0.9, matched)

    if _first_match(question, _AGE, "age", matched):
        return _pattern_result(QueryIntent.WORKFLOW_STATUS_MONITORING, 0.8, matched)

    return _pattern_result(QueryIntent.WORKFLOW_STATUS_MONITORING, 0.6, matched)


PatternDetector = Callable[[str], Optional[IntentClassificationResult]]

PATTERN_DETECTORS: List[PatternDetector] = [
    detect_temporal_proximity,
    detect_assessment_correlation,
    detect_workflow_status,
]


def run_pattern_detectors(
    question: str,
    detectors: Optional[List[PatternDetector]] = None,
) -> List[IntentClassificationResult]:
    """
    Run every detector independently.

    Returns:
        Matches sorted by confidence, best first (empty if nothing matched)
    """
    results = []
    for detector in detectors or PATTERN_DETECTORS:
        result = detector(question)
        if result is not None:
            results.append(result)

    results.sort(key=lambda r: r.confidence, reverse=True)
    if results:
        logger.debug(
            f"[INTENT] Pattern matches: "
            f"{[(r.intent.value, r.confidence) for r in results]}"
        )
    return results
