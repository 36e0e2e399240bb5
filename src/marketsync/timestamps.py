from __future__ import annotations

import re
import time
from datetime import datetime, timezone

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_ts_ms(value: object) -> int | None:
    """Coerce an epoch number or ISO-8601 string into epoch milliseconds.

    Epoch values below 1e11 are taken as seconds. Naive ISO strings are read as
    UTC. Anything unparseable returns ``None``.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _epoch_to_ms(float(value))
    text = str(value).strip()
    if not text:
        return None
    try:
        return _epoch_to_ms(float(text))
    except ValueError:
        pass
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    # fromisoformat rejects the 7-digit fractions emitted by .NET backends
    text = _FRACTION_RE.sub(r"\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def _epoch_to_ms(value: float) -> int | None:
    if value != value or value in (float("inf"), float("-inf")):
        return None
    if abs(value) < 1e11:
        return int(value * 1000)
    return int(value)
