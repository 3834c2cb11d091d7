"""
Purpose: Domain model for row-level change notifications.
What it does:
- Defines EventType (INSERT | UPDATE | DELETE) and ChangeEvent
- Normalizes the two payload shapes we receive:
    client shape: {"eventType": "UPDATE", "new": {...}, "old": {...}, "table": "orders"}
    wire shape:   {"data": {"type": "UPDATE", "record": {...}, "old_record": {...}, "table": "orders"}}
- Parses the equality / IN filter strings used for server-side scoping

Rule: No socket calls here. Models only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

Row = Dict[str, Any]


class EventType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """
    One row-level change on one table.
    """
    event_type: EventType
    table: str
    new: Row = field(default_factory=dict)
    old: Row = field(default_factory=dict)
    schema: str = "public"

    @property
    def record_id(self) -> Optional[Any]:
        return (self.new or {}).get("id") or (self.old or {}).get("id")

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], table: Optional[str] = None) -> ChangeEvent:
        if "data" in payload and isinstance(payload["data"], Mapping):
            data = payload["data"]
            return cls(
                event_type=EventType(data.get("type") or data.get("eventType")),
                table=data.get("table") or table or "",
                new=dict(data.get("record") or {}),
                old=dict(data.get("old_record") or {}),
                schema=data.get("schema") or "public",
            )
        return cls(
            event_type=EventType(payload.get("eventType") or payload.get("type")),
            table=payload.get("table") or table or "",
            new=dict(payload.get("new") or {}),
            old=dict(payload.get("old") or {}),
            schema=payload.get("schema") or "public",
        )


def parse_filter(expression: Optional[str]) -> Optional[Tuple[str, str, Tuple[str, ...]]]:
    """
    "user_id=eq.42"      -> ("user_id", "eq", ("42",))
    "id=in.(a,b,c)"      -> ("id", "in", ("a", "b", "c"))
    """
    if not expression:
        return None
    column, _, rest = expression.partition("=")
    operator, _, value = rest.partition(".")
    if operator == "in":
        inner = value.strip()
        if inner.startswith("(") and inner.endswith(")"):
            inner = inner[1:-1]
        values = tuple(v.strip().strip('"') for v in inner.split(",") if v.strip())
        return column, operator, values
    return column, operator, (value,)


def row_matches_filter(row: Mapping[str, Any], expression: Optional[str]) -> bool:
    """
    Client-side evaluation of a server filter. No filter matches everything.
    """
    parsed = parse_filter(expression)
    if parsed is None:
        return True
    column, operator, values = parsed
    if column not in row:
        return False
    actual = "" if row[column] is None else str(row[column])
    if operator in ("eq", "in"):
        return actual in values
    if operator == "neq":
        return actual not in values
    # unknown operators are left to the server
    return True
