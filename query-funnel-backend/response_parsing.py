"""
Model Reply Parsing
===================

Parse-or-fail boundary between free-form model text and typed data.

STRATEGIES (exactly two, in order):
1. Strip a surrounding ```json fence (if any) and parse the rest strictly
2. Locate the first top-level {...} object by brace matching and parse that

Anything else raises ModelReplyFormatError. Typed validation of the decoded
object goes through pydantic models (validate_reply).
"""

import json
import logging
import re
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

FENCE_PATTERN = re.compile(r'^\s*```(?:json|sql)?\s*\n?(.*?)\n?\s*```\s*$', re.DOTALL | re.IGNORECASE)


class ModelReplyFormatError(ValueError):
    """Raised when a model reply cannot be turned into the expected structure."""


def strip_code_fence(text: str) -> str:
    match = FENCE_PATTERN.match(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def extract_json_object(text: str) -> Optional[str]:
    """
    Return the first balanced {...} substring, or None.

    Braces inside JSON string literals (including escaped quotes) are ignored.
    """
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        char = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def parse_json_reply(text: str, what: str = "model reply") -> Dict[str, Any]:
    """
    Decode a model reply into a JSON object.

    Raises:
        ModelReplyFormatError: If neither strategy yields a JSON object
    """
    if not isinstance(text, str) or not text.strip():
        raise ModelReplyFormatError(f"Empty {what}")

    try:
        parsed = json.loads(strip_code_fence(text))
    except json.JSONDecodeError:
        candidate = extract_json_object(text)
        if candidate is None:
            raise ModelReplyFormatError(f"No valid JSON object found in {what}")
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError as e:
            raise ModelReplyFormatError(f"Failed to parse {what} JSON: {e}") from e

    if not isinstance(parsed, dict):
        raise ModelReplyFormatError(f"Expected a JSON object in {what}, got {type(parsed).__name__}")

    return parsed


def validate_reply(model: Type[ModelT], payload: Dict[str, Any], what: str = "model reply") -> ModelT:
    """Validate a decoded reply against a pydantic model."""
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "<root>" for err in e.errors())
        logger.debug(f"[PARSER] {what} failed validation: {e}")
        raise ModelReplyFormatError(f"Invalid {what}: bad or missing fields ({fields})") from e


def parse_typed_reply(model: Type[ModelT], text: str, what: str = "model reply") -> ModelT:
    """parse_json_reply() followed by validate_reply()."""
    return validate_reply(model, parse_json_reply(text, what), what)
