"""
Placeholder detection and answer value typing.

Shared by the bulk answer projection and the spreadsheet import path so that
both agree on what counts as "no answer" and how a raw value is stored.
"""

import enum
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

PLACEHOLDER_VALUES = frozenset({"", "0", "n/a", "-"})

CHOICE_TYPE_MARKERS = ("dropdown", "select", "radio", "choice")
TRUE_WORDS = frozenset({"yes", "true", "1"})
FALSE_WORDS = frozenset({"no", "false", "0"})

_TRAILING_PUNCTUATION = re.compile(r"[.,!?]$")


class ValueKind(str, enum.Enum):
    TEXT = "text"
    CHOICE = "choice"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    LIST_TABLE = "list_table"


def render_value(value: Any) -> Optional[str]:
    """String form of a raw value; numbers use the shortest general format"""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return format(value, "g")
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def is_placeholder(value: Any) -> bool:
    """True for None, "", "0", "n/a" (any case) and "-", ignoring surrounding space"""
    rendered = render_value(value)
    if rendered is None:
        return True
    return rendered.strip().lower() in PLACEHOLDER_VALUES


@dataclass
class TypedValue:
    """A raw value sorted into the answer column it belongs in"""
    kind: ValueKind
    text_value: Optional[str] = None
    number_value: Optional[float] = None
    boolean_value: Optional[bool] = None
    date_value: Optional[datetime] = None
    choice_id: Optional[str] = None
    choice_text: Optional[str] = None
    auxiliary_values: List[str] = field(default_factory=list)
    issue: Optional[str] = None

    def as_columns(self) -> Dict[str, Any]:
        return {
            "text_value": self.text_value,
            "number_value": self.number_value,
            "boolean_value": self.boolean_value,
            "date_value": self.date_value,
            "choice_id": self.choice_id,
        }


def _normalize_choice(text: Optional[str]) -> str:
    return _TRAILING_PUNCTUATION.sub("", (text or "").strip().lower())


def match_choice(value: str, choices: Sequence[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Find the choice a free-text value refers to.

    Tried in order per choice: exact content, normalized content, yes/no
    prefix, then containment either way.
    """
    if not value or not choices:
        return None

    normalized = _normalize_choice(value)
    for choice in choices:
        content = choice.get("content")
        content_norm = _normalize_choice(content)
        if content == value or content_norm == normalized:
            return choice
        if normalized.startswith("yes") and content_norm.startswith("yes"):
            return choice
        if normalized == "no" and content_norm.startswith("no"):
            return choice
        if content_norm and (content_norm in normalized or normalized in content_norm):
            return choice
    return None


def _parse_date(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def type_value(
    value: str,
    response_type: Optional[str],
    choices: Sequence[Dict[str, Any]] = (),
    auxiliary_values: Sequence[str] = ()
) -> TypedValue:
    """
    Type a non-placeholder raw value by the question's response type.

    Values that do not fit their type fall back to text.
    """
    kind_hint = (response_type or "").lower()
    value = value.strip()

    if any(marker in kind_hint for marker in CHOICE_TYPE_MARKERS):
        if not choices:
            return TypedValue(ValueKind.TEXT, text_value=value)
        match = match_choice(value, choices)
        if match:
            return TypedValue(ValueKind.CHOICE, choice_id=match.get("id"), choice_text=match.get("content"))
        available = ", ".join(str(c.get("content")) for c in choices)
        return TypedValue(
            ValueKind.CHOICE,
            text_value=value,
            issue=f"No matching choice found. Available: {available}"
        )

    if "number" in kind_hint:
        try:
            return TypedValue(ValueKind.NUMBER, number_value=float(value))
        except ValueError:
            return TypedValue(ValueKind.NUMBER, text_value=value)

    if "boolean" in kind_hint or "yes/no" in kind_hint:
        lower = value.lower()
        if lower in TRUE_WORDS:
            return TypedValue(ValueKind.BOOLEAN, boolean_value=True)
        if lower in FALSE_WORDS:
            return TypedValue(ValueKind.BOOLEAN, boolean_value=False)
        return TypedValue(ValueKind.BOOLEAN, text_value=value)

    if "date" in kind_hint:
        parsed = _parse_date(value)
        if parsed is None:
            return TypedValue(ValueKind.DATE, text_value=value)
        return TypedValue(ValueKind.DATE, date_value=parsed)

    if "list" in kind_hint or "table" in kind_hint:
        return TypedValue(
            ValueKind.LIST_TABLE,
            text_value=value,
            auxiliary_values=[v for v in auxiliary_values if not is_placeholder(v)]
        )

    return TypedValue(ValueKind.TEXT, text_value=value)
