"""
Sub-Question Dependency Validation
==================================

A complex question is decomposed by the model into ordered sub-questions:

    1. List all distinct wound etiologies recorded in the past year.
    2. Average healing time per treatment for each etiology from step 1.   (depends_on: 1)
    3. Rank treatments by the averages from step 2.                         (depends_on: [1, 2])

RULES (checked in this order, first violation raises):
1. Every dependency must name a declared step
2. Dependencies point strictly backward (no self or forward reference)
3. Step numbers form exactly 1..N (no gaps, no duplicates)

Rule 2 makes the graph acyclic by construction, so there is no separate
cycle detection pass.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

logger = logging.getLogger(__name__)

DependsOn = Union[None, int, List[int]]


class SubQuestionDependencyError(ValueError):
    """Raised when a sub-question decomposition is not a valid funnel."""


@dataclass
class SubQuestionStep:
    """One step of a decomposed question."""
    step: int
    question: str = ""
    depends_on: DependsOn = None

    @property
    def dependencies(self) -> List[int]:
        return normalize_depends_on(self.depends_on)


@dataclass
class SubQuestionPlan:
    """Validated decomposition returned by parse_sub_questions()."""
    original_question: str
    matched_template: Optional[str]
    steps: List[SubQuestionStep] = field(default_factory=list)


def normalize_depends_on(depends_on: Any) -> List[int]:
    """None -> [], 3 -> [3], [1, 2] -> [1, 2]"""
    if depends_on is None:
        return []
    if isinstance(depends_on, (list, tuple, set, frozenset)):
        return [int(d) for d in depends_on]
    return [int(depends_on)]


def _coerce_step(item: Union[SubQuestionStep, Dict[str, Any]]) -> SubQuestionStep:
    if isinstance(item, SubQuestionStep):
        return item
    if not isinstance(item, dict) or "step" not in item:
        raise SubQuestionDependencyError(f"Invalid sub-question entry: {item!r}")

    depends_on = item.get("depends_on", item.get("dependsOn"))
    try:
        step = int(item["step"])
    except (TypeError, ValueError):
        raise SubQuestionDependencyError(f"Invalid step number: {item['step']!r}")

    return SubQuestionStep(
        step=step,
        question=str(item.get("question", "")),
        depends_on=depends_on,
    )


def validate_sub_question_dependencies(
    steps: Iterable[Union[SubQuestionStep, Dict[str, Any]]]
) -> List[SubQuestionStep]:
    """
    Validate that sub-questions form a backward-pointing, contiguous funnel.

    Args:
        steps: SubQuestionStep objects or raw dicts ("step", "depends_on"/"dependsOn")

    Returns:
        The steps as SubQuestionStep objects, in the order given

    Raises:
        SubQuestionDependencyError: On the first violation
    """
    parsed = [_coerce_step(item) for item in steps]
    declared = set(sq.step for sq in parsed)

    for sq in parsed:
        try:
            dependencies = sq.dependencies
        except (TypeError, ValueError):
            raise SubQuestionDependencyError(
                f"Step {sq.step} has an invalid depends_on value: {sq.depends_on!r}"
            )

        for dep in dependencies:
            if dep not in declared:
                raise SubQuestionDependencyError(
                    f"Step {sq.step} depends on non-existent step {dep}"
                )
            if dep >= sq.step:
                raise SubQuestionDependencyError(
                    f"Step {sq.step} cannot depend on a future or current step {dep}"
                )

    # Duplicates collapse in `declared`, so compare against the full list
    ordered = sorted(sq.step for sq in parsed)
    for i, step in enumerate(ordered):
        if step != i + 1:
            raise SubQuestionDependencyError(
                f"Sub-questions must form a continuous sequence starting from 1. "
                f"Missing step {i + 1}."
            )

    logger.debug(f"[SUBQUESTIONS] Validated {len(parsed)} steps")
    return parsed


def parse_sub_questions(payload: Dict[str, Any]) -> SubQuestionPlan:
    """
    Build a validated plan from a decoded model reply.

    Expected shape:
        {"original_question": "...", "matched_template": "...",
         "sub_questions": [{"step": 1, "question": "...", "depends_on": null}, ...]}
    """
    if not isinstance(payload, dict):
        raise SubQuestionDependencyError("Sub-question reply must be a JSON object")

    raw_steps = payload.get("sub_questions")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise SubQuestionDependencyError("Sub-question reply has no sub_questions list")

    for item in raw_steps:
        if not isinstance(item, dict) or not isinstance(item.get("question"), str) or not item["question"].strip():
            raise SubQuestionDependencyError(f"Sub-question entry is missing its question text: {item!r}")

    steps = validate_sub_question_dependencies(raw_steps)

    template = payload.get("matched_template")
    if isinstance(template, str) and template.strip().lower() == "none":
        template = None

    return SubQuestionPlan(
        original_question=str(payload.get("original_question", "")),
        matched_template=template,
        steps=steps,
    )
