"""
Query Funnel - SQL Safety Layer
===============================

PURPOSE:
Every SQL statement produced by a model passes through this module before it
is executed against the reporting database or handed back to a caller.

RULES:
FATAL (report.is_valid = False):
1. Statement must begin with SELECT or WITH
2. No dangerous keyword as a WHOLE WORD: DROP, DELETE, UPDATE, INSERT,
   TRUNCATE, ALTER, CREATE, EXEC, EXECUTE, and the SP_ / XP_ procedure
   prefixes (createdByUserName is NOT a hit)

ADVISORY + MUTATING (warning, SQL rewritten):
3. Row cap: "TOP 1000" inserted after the main SELECT when neither TOP n
   nor OFFSET is present in the statement itself
4. Schema prefix: bare reporting tables are qualified with "rpt."

ADVISORY (warning only):
5. More than 20 columns in the top-level SELECT list

COMPOSED SQL (validate_composed_sql):
6. CREATE TEMP / INTO TEMP are rejected
7. More than 3 top-level CTEs are rejected

Rewrites and structural counts work on the sqlparse token stream, so text
inside string literals and comments is never rewritten or counted.

ARCHITECTURAL POSITION:
    Model output -> strip_sql_fences -> [SQL SAFETY] -> Database / Caller
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from sqlparse import tokens as T
from sqlparse.lexer import tokenize

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

DEFAULT_ROW_LIMIT = 1000
MAX_SELECT_COLUMNS = 20
MAX_COMPOSED_CTES = 3

REPORTING_SCHEMA = "rpt"
REPORTING_TABLES = frozenset([
    "Assessment",
    "Patient",
    "Wound",
    "Note",
    "Measurement",
    "AttributeType",
    "DimDate",
])

DANGEROUS_KEYWORDS = [
    "DROP",
    "DELETE",
    "UPDATE",
    "INSERT",
    "TRUNCATE",
    "ALTER",
    "CREATE",
    "EXEC",
    "EXECUTE",
    "SP_",
    "XP_",
]

# SP_/XP_ are procedure-name prefixes (sp_executesql, xp_cmdshell), so they
# only need a word boundary in front.
_PREFIX_KEYWORDS = {"SP_", "XP_"}


class SqlSafetyError(ValueError):
    """Raised when SQL breaks one or more fatal safety rules."""

    prefix = "SQL failed safety validation"

    def __init__(self, reasons: List[str]):
        self.reasons = list(reasons)
        super().__init__(f"{self.prefix}: {'; '.join(self.reasons)}")


@dataclass
class SqlSafetyReport:
    """
    Result of SQL safety validation.

    Attributes:
        is_valid: False when any fatal rule fired
        modified_sql: SQL after row-limit and schema-prefix rewrites
                      (None when the statement kind is rejected)
        warnings: Every message produced, fatal and advisory, in rule order
        violations: The fatal subset of warnings
    """
    is_valid: bool
    modified_sql: Optional[str]
    warnings: List[str] = field(default_factory=list)
    violations: List[str] = field(default_factory=list)


@dataclass
class ComposedSqlCheck:
    """Result of the stricter validation applied to composed SQL."""
    valid: bool
    errors: List[str]
    cte_count: int
    report: Optional[SqlSafetyReport] = None


# =============================================================================
# TOKEN HELPERS
# =============================================================================

def _lex(sql: str) -> List[Tuple[Any, str]]:
    return list(tokenize(sql))


def _is_inert(ttype) -> bool:
    """Comments and quoted literals: never rewritten, never counted."""
    return ttype in T.Comment or ttype in T.String or ttype is T.Literal


def _is_space(ttype) -> bool:
    return ttype in T.Whitespace or ttype in T.Newline


def _is_select(ttype, value: str) -> bool:
    return ttype in T.Keyword.DML and value.upper() == "SELECT"


def _previous_significant(tokens: List[Tuple[Any, str]], index: int) -> Optional[Tuple[Any, str]]:
    for ttype, value in reversed(tokens[:index]):
        if _is_space(ttype) or ttype in T.Comment:
            continue
        return ttype, value
    return None


def _main_select_index(tokens: List[Tuple[Any, str]]) -> Optional[int]:
    """
    Index of the SELECT that produces the result set: the first one at
    parenthesis depth 0 (after any CTE prologue), else the first one at all.
    """
    depth = 0
    first_any = None
    for i, (ttype, value) in enumerate(tokens):
        if _is_inert(ttype):
            continue
        if ttype in T.Punctuation:
            if value == "(":
                depth += 1
            elif value == ")":
                depth = max(depth - 1, 0)
            continue
        if _is_select(ttype, value):
            if depth == 0:
                return i
            if first_any is None:
                first_any = i
    return first_any


def _next_significant(tokens: List[Tuple[Any, str]], index: int) -> Optional[Tuple[Any, str]]:
    for ttype, value in tokens[index + 1:]:
        if _is_space(ttype) or ttype in T.Comment:
            continue
        return ttype, value
    return None


def _has_row_limit(tokens: List[Tuple[Any, str]]) -> bool:
    """
    True when the statement already caps its rows: an OFFSET keyword, or
    TOP followed by a count (TOP 10, TOP (10)). TOP lexes as a plain name,
    so a column called "top" is not a row limit.
    """
    for i, (ttype, value) in enumerate(tokens):
        if _is_inert(ttype) or _is_space(ttype):
            continue
        word = value.upper()
        if word == "OFFSET" and ttype in T.Keyword:
            return True
        if word == "TOP":
            following = _next_significant(tokens, i)
            if following is None:
                continue
            next_type, next_value = following
            if next_type in T.Number or (next_type in T.Punctuation and next_value == "("):
                return True
    return False


def strip_sql_fences(text: str) -> str:
    """Remove a ```sql ... ``` wrapper that models like to add around SQL."""
    if text is None:
        return ""
    match = re.match(r'^\s*```(?:sql|tsql|SQL)?\s*\n?(.*?)\n?\s*```\s*$', text, re.DOTALL)
    if match:
        return match.group(1).strip()
    return text.strip()


# =============================================================================
# VALIDATOR
# =============================================================================

class SqlSafetyValidator:
    """
    Validates and rewrites candidate SQL for the reporting database.

    Keyword inspection runs on a trimmed, upper-cased copy of the statement;
    the working copy is only touched by the advisory rewrites.
    """

    STATEMENT_KIND_PATTERN = re.compile(r'^\s*(?:SELECT|WITH)\b', re.IGNORECASE)

    TEMP_TABLE_RULES = [
        (re.compile(r'\bCREATE\s+(?:TEMP|TEMPORARY)\b', re.IGNORECASE), "Temporary tables are not allowed"),
        (re.compile(r'\bINTO\s+(?:TEMP\b|TEMPORARY\b|#)', re.IGNORECASE), "Cannot insert into temporary tables"),
    ]

    def __init__(self, row_limit: int = DEFAULT_ROW_LIMIT, max_columns: int = MAX_SELECT_COLUMNS):
        self.row_limit = row_limit
        self.max_columns = max_columns
        self._dangerous_patterns = []
        for keyword in DANGEROUS_KEYWORDS:
            if keyword in _PREFIX_KEYWORDS:
                pattern = re.compile(rf'\b{keyword}')
            else:
                pattern = re.compile(rf'\b{keyword}\b')
            self._dangerous_patterns.append((keyword, pattern))

    def validate(self, sql: str) -> SqlSafetyReport:
        """
        Validate SQL and apply the advisory rewrites.

        Args:
            sql: Candidate SQL string

        Returns:
            SqlSafetyReport (is_valid reflects the fatal rules only)
        """
        sql = sql or ""
        inspected = sql.strip().upper()

        if not self.STATEMENT_KIND_PATTERN.match(inspected):
            message = "Query must start with SELECT or WITH"
            logger.warning(f"[SQL_SAFETY] Rejected: {message}")
            return SqlSafetyReport(
                is_valid=False,
                modified_sql=None,
                warnings=[message],
                violations=[message],
            )

        warnings: List[str] = []
        violations: List[str] = []

        for keyword, pattern in self._dangerous_patterns:
            if pattern.search(inspected):
                message = f"Dangerous SQL keyword detected: {keyword}"
                violations.append(message)
                warnings.append(message)

        if violations:
            logger.warning(f"[SQL_SAFETY] Rejected: {'; '.join(violations)}")

        modified_sql = sql

        if not _has_row_limit(_lex(modified_sql)):
            modified_sql = self._insert_row_limit(modified_sql)
            warnings.append(f"Added TOP {self.row_limit} clause for safety")
            logger.info(f"[SQL_SAFETY] Added TOP {self.row_limit}")

        prefixed_sql = self._apply_schema_prefix(modified_sql)
        if prefixed_sql != modified_sql:
            modified_sql = prefixed_sql
            warnings.append(f"Applied schema prefixing ({REPORTING_SCHEMA}.) to table names")
            logger.info(f"[SQL_SAFETY] Applied {REPORTING_SCHEMA}. schema prefix")

        column_count = self.count_select_columns(modified_sql)
        if column_count > self.max_columns:
            warnings.append(f"Large number of columns ({column_count}) may impact performance")

        return SqlSafetyReport(
            is_valid=not violations,
            modified_sql=modified_sql,
            warnings=warnings,
            violations=violations,
        )

    def validate_composed(self, sql: str) -> ComposedSqlCheck:
        """
        Stricter validation for SQL composed on top of a previous turn.

        Combines the fatal rules of validate() with the temp-table rule and
        the top-level CTE ceiling.
        """
        errors: List[str] = []
        report = self.validate(sql)
        errors.extend(report.violations)

        for pattern, message in self.TEMP_TABLE_RULES:
            if pattern.search(sql or ""):
                errors.append(message)

        cte_count = self.count_top_level_ctes(sql or "")
        if cte_count > MAX_COMPOSED_CTES:
            errors.append(
                f"Too many CTEs in chain ({cte_count}, max {MAX_COMPOSED_CTES}). "
                f"Consider simplifying or using merged WHERE clauses instead."
            )

        if errors:
            logger.warning(f"[SQL_SAFETY] Composed SQL rejected: {'; '.join(errors)}")

        return ComposedSqlCheck(valid=not errors, errors=errors, cte_count=cte_count, report=report)

    # -------------------------------------------------------------------------
    # Rewrites
    # -------------------------------------------------------------------------

    def _insert_row_limit(self, sql: str) -> str:
        """Insert TOP n after the main SELECT (after DISTINCT when present)."""
        tokens = _lex(sql)
        index = _main_select_index(tokens)
        if index is None:
            return sql

        target = index
        for j in range(index + 1, len(tokens)):
            ttype, value = tokens[j]
            if _is_space(ttype) or ttype in T.Comment:
                continue
            if ttype in T.Keyword and value.upper() == "DISTINCT":
                target = j
            break

        ttype, value = tokens[target]
        tokens[target] = (ttype, f"{value} TOP {self.row_limit}")
        return "".join(value for _, value in tokens)

    def _apply_schema_prefix(self, sql: str) -> str:
        """Qualify bare reporting tables with the reporting schema."""
        tokens = _lex(sql)
        changed = False
        for i, (ttype, value) in enumerate(tokens):
            if _is_inert(ttype) or value not in REPORTING_TABLES:
                continue
            previous = _previous_significant(tokens, i)
            if previous is not None:
                prev_type, prev_value = previous
                # Already qualified, or used as an alias name
                if prev_value == "." or prev_value.upper() == "AS":
                    continue
            tokens[i] = (ttype, f"{REPORTING_SCHEMA}.{value}")
            changed = True
        if not changed:
            return sql
        return "".join(value for _, value in tokens)

    # -------------------------------------------------------------------------
    # Structural counts
    # -------------------------------------------------------------------------

    def count_select_columns(self, sql: str) -> int:
        """
        Count columns between the main SELECT and its FROM (commas at depth 0).

        Returns 0 when there is no SELECT ... FROM pair.
        """
        tokens = _lex(sql)
        start = _main_select_index(tokens)
        if start is None:
            return 0

        depth = 0
        commas = 0
        for ttype, value in tokens[start + 1:]:
            if _is_inert(ttype):
                continue
            if ttype in T.Punctuation:
                if value == "(":
                    depth += 1
                elif value == ")":
                    depth = max(depth - 1, 0)
                elif value == "," and depth == 0:
                    commas += 1
                continue
            if depth == 0 and ttype in T.Keyword and value.upper() == "FROM":
                return commas + 1
        return 0

    def count_top_level_ctes(self, sql: str) -> int:
        """
        Count CTEs in a WITH a AS (...), b AS (...) SELECT prologue.

        Commas at parenthesis depth 0 separate CTEs; the first depth-0
        SELECT ends the prologue. Returns 0 for statements without WITH.
        """
        tokens = [(ttype, value) for ttype, value in _lex(sql) if not _is_space(ttype)]
        tokens = [(ttype, value) for ttype, value in tokens if ttype not in T.Comment]
        if not tokens or tokens[0][1].upper() != "WITH":
            return 0

        depth = 0
        commas = 0
        for ttype, value in tokens[1:]:
            if ttype in T.String or ttype is T.Literal:
                continue
            if ttype in T.Punctuation:
                if value == "(":
                    depth += 1
                elif value == ")":
                    depth = max(depth - 1, 0)
                elif value == "," and depth == 0:
                    commas += 1
                continue
            if depth == 0 and _is_select(ttype, value):
                break
        return commas + 1


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

_validator: Optional[SqlSafetyValidator] = None


def get_sql_safety_validator() -> SqlSafetyValidator:
    """Get the default validator (TOP 1000, 20-column advisory)."""
    global _validator
    if _validator is None:
        _validator = SqlSafetyValidator()
    return _validator


def validate_sql_safety(sql: str) -> SqlSafetyReport:
    """Validate SQL with the default validator."""
    return get_sql_safety_validator().validate(sql)


def validate_composed_sql(sql: str) -> ComposedSqlCheck:
    """Validate composed SQL with the default validator."""
    return get_sql_safety_validator().validate_composed(sql)


def enforce_sql_safety(sql: str, validator: Optional[SqlSafetyValidator] = None) -> str:
    """
    Validate SQL and return the rewritten statement.

    Raises:
        SqlSafetyError: If any fatal rule fired
    """
    report = (validator or get_sql_safety_validator()).validate(sql)
    if not report.is_valid:
        raise SqlSafetyError(report.violations)
    return report.modified_sql
