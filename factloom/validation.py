"""Checks applied to caller input before it reaches the knowledge table.

Entities, facts and tags are validated and stripped of control characters
on the way in. Agent-authored text that gets quoted inside derived text
(status reasons, reflections) goes through ``sanitize_fact`` instead, which
also removes chat-template delimiter tokens and truncates.
"""

import math
import re
from typing import Any, Iterable, Optional, Set

MAX_ENTITY_LENGTH = 500
MAX_FACT_LENGTH = 10_000
MAX_TAG_LENGTH = 100
MAX_TAGS = 100

# Length derived text may quote from agent-authored input
DERIVED_TEXT_MAX_LENGTH = 500

# C0 and C1 control ranges plus DEL
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")

# Chat-template delimiter tokens such as <|im_start|> or <|endoftext|>
_DELIMITER_TOKENS = re.compile(r"<\|.*?\|>")

# Control characters dropped from stored text; tab, newline and CR survive
_STORED_TEXT_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_string(
    value: Any, field_name: str, max_length: int = MAX_FACT_LENGTH, required: bool = True
) -> str:
    """Check an entity, fact or tag and return it ready for storage.

    Length is measured before control characters are dropped, so a value
    padded with NUL bytes cannot sneak past ``max_length``. With
    ``required=False`` a None becomes the empty string.
    """
    if value is None and not required:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string, not {type(value).__name__}")
    if required and value.strip() == "":
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > max_length:
        raise ValueError(f"{field_name} is too long: {len(value)} > {max_length} characters")
    return _STORED_TEXT_CONTROL_CHARS.sub("", value)


def sanitize_number(
    value: Any,
    field_name: str,
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
    default: Optional[float] = None,
) -> float:
    """Return ``value`` as a finite float.

    Confidences, boosts and reinforcements all pass through here. Booleans
    are refused even though they are ints; NaN would otherwise poison every
    ranking that sorts on confidence.
    """
    if value is None:
        if default is None:
            raise ValueError(f"{field_name} is required")
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{field_name} must be a number, not {type(value).__name__}")
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"{field_name} must be a finite number, got {value}")
    if (min_val is not None and number < min_val) or (max_val is not None and number > max_val):
        raise ValueError(
            f"{field_name} must lie within [{min_val}, {max_val}], got {value}"
        )
    return number


def sanitize_tags(value: Optional[Iterable[Any]], field_name: str = "tags") -> Set[str]:
    """Validate a tag collection and return it as a set.

    Order is irrelevant for tags; empty tags are dropped.
    """
    if value is None:
        return set()

    if isinstance(value, str):
        raise ValueError(f"{field_name} must be a collection of strings, not a string")

    items = list(value)
    if len(items) > MAX_TAGS:
        raise ValueError(f"{field_name} too many items (max {MAX_TAGS}, got {len(items)})")

    tags: Set[str] = set()
    for i, item in enumerate(items):
        if item is None:
            raise ValueError(f"{field_name} must not contain null items")
        tag = sanitize_string(item, f"{field_name}[{i}]", MAX_TAG_LENGTH, required=False).strip()
        if tag:
            tags.add(tag)
    return tags


def sanitize_fact(text: str, max_length: int = DERIVED_TEXT_MAX_LENGTH) -> str:
    """Neutralize agent-authored text before quoting it in derived text.

    Strips control characters and embedded delimiter/control-token
    sequences, then truncates to ``max_length`` characters.
    """
    if not text:
        return ""
    cleaned = _CONTROL_CHARS.sub("", text)
    cleaned = _DELIMITER_TOKENS.sub("", cleaned)
    return cleaned[:max_length]
