from __future__ import annotations

from typing import Any, Tuple, Union

EntityId = Union[int, str]


def normalize_id(value: object) -> EntityId | None:
    """Return ``value`` as an int when it is numeric, else as a stripped string."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    if text.isdigit():
        return int(text)
    return text


def id_order(value: EntityId) -> Tuple[int, Any]:
    """Sort key that orders numeric ids before string ids without comparing across types."""

    if isinstance(value, int):
        return (0, value)
    return (1, str(value))
