from __future__ import annotations

from typing import Any, FrozenSet, Optional

# CiviCRM serializes multi-value fields with this separator when returned as a string.
VALUE_SEPARATOR = "\x01"


def normalize_subtypes(value: Any) -> FrozenSet[str]:
    if value is None:
        return frozenset()
    if isinstance(value, (list, tuple, set, frozenset)):
        items = value
    else:
        items = str(value).split(VALUE_SEPARATOR)
    return frozenset(str(item).strip() for item in items if item is not None and str(item).strip())


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    text = str(value).strip().lower()
    return text not in {"", "0", "false", "no", "off"}


def coerce_id(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        identifier = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return identifier if identifier > 0 else None


def clean_date(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
