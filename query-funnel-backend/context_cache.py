"""
Conversation Context Cache
Bounded, metadata-only record of the result sets a conversation has produced.

Entries hold row counts, column names and one-way hashed entity references,
never row values. All functions are pure: they return a new context (or the
same one when nothing changes) and do no I/O.
"""

import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

MAX_CACHED_RESULT_SETS = 10


@dataclass
class ReferencedResultSet:
    message_id: str
    row_count: int
    columns: List[str] = field(default_factory=list)
    entity_hashes: Optional[List[str]] = None

    def __post_init__(self):
        if self.row_count < 0:
            raise ValueError(f"row_count must be >= 0, got {self.row_count}")


@dataclass
class ConversationContext:
    """Non-PHI summary of a conversation"""
    customer_id: str
    referenced_result_sets: List[ReferencedResultSet] = field(default_factory=list)
    active_filters: List[Any] = field(default_factory=list)
    time_range: Optional[Dict[str, Any]] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationContext":
        return cls(
            customer_id=data["customer_id"],
            referenced_result_sets=[
                ReferencedResultSet(**entry) for entry in data.get("referenced_result_sets") or []
            ],
            active_filters=list(data.get("active_filters") or []),
            time_range=data.get("time_range"),
        )


def trim_context_cache(
    context: ConversationContext,
    max_results: int = MAX_CACHED_RESULT_SETS,
) -> ConversationContext:
    """
    Keep only the most recent result sets.

    Returns the same context object when it is already within bounds.
    """
    if len(context.referenced_result_sets) <= max_results:
        return context

    dropped = len(context.referenced_result_sets) - max_results
    logger.debug(f"[CONTEXT_CACHE] Trimmed {dropped} oldest result set(s)")
    return replace(context, referenced_result_sets=context.referenced_result_sets[-max_results:])


def add_result_to_cache(
    context: ConversationContext,
    result_set: ReferencedResultSet,
    max_results: int = MAX_CACHED_RESULT_SETS,
) -> ConversationContext:
    """
    Add a result set, then trim.

    An entry with the same message_id is replaced where it stands instead of
    being appended a second time.
    """
    entries = list(context.referenced_result_sets)
    for i, entry in enumerate(entries):
        if entry.message_id == result_set.message_id:
            entries[i] = result_set
            break
    else:
        entries.append(result_set)

    return trim_context_cache(replace(context, referenced_result_sets=entries), max_results)


def get_last_result_set(context: ConversationContext) -> Optional[ReferencedResultSet]:
    if not context.referenced_result_sets:
        return None
    return context.referenced_result_sets[-1]


def clear_result_set_cache(context: ConversationContext) -> ConversationContext:
    """Drop all result sets; filters, time range and customer stay."""
    return replace(context, referenced_result_sets=[])


def estimate_cache_size(context: ConversationContext) -> int:
    """Serialized JSON length, for monitoring only."""
    return len(json.dumps(context.to_dict(), default=str))


def hash_entity_id(value: Any, salt: str = "") -> str:
    """One-way token for an entity id (the raw id never enters the cache)"""
    return hashlib.sha256(f"{salt}:{value}".encode("utf-8")).hexdigest()


def build_result_set(
    message_id: str,
    rows: List[Dict[str, Any]],
    columns: Optional[List[str]] = None,
    entity_key: Optional[str] = None,
    salt: str = "",
) -> ReferencedResultSet:
    """
    Describe a query result without keeping its values.

    Args:
        message_id: Message that produced the rows
        rows: Result rows as dicts
        columns: Column order (defaults to the first row's keys)
        entity_key: Column whose values are hashed into entity_hashes
        salt: Per-customer salt for the entity hashes
    """
    if columns is None:
        columns = list(rows[0].keys()) if rows else []

    entity_hashes = None
    if entity_key is not None:
        entity_hashes = [
            hash_entity_id(row[entity_key], salt)
            for row in rows
            if row.get(entity_key) is not None
        ]

    return ReferencedResultSet(
        message_id=message_id,
        row_count=len(rows),
        columns=list(columns),
        entity_hashes=entity_hashes,
    )
