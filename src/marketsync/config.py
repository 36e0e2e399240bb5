from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

ENV_PREFIX = "MARKETSYNC_"
DEFAULT_SETTINGS_FILE = Path.home() / ".marketsync.json"


@dataclass(frozen=True)
class SyncConfig:
    base_url: str = "http://127.0.0.1:8080"
    hub_path: str = "/chatHub"
    access_token: str = ""
    self_id: str = ""
    site_origin: str = ""
    conversation_poll_seconds: float = 3.0
    inbox_poll_seconds: float = 30.0
    auction_poll_seconds: float = 5.0
    reconnect_delays: Tuple[float, ...] = (0.0, 2.0, 10.0, 30.0)
    request_timeout_seconds: float = 10.0

    @property
    def hub_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.hub_path.lstrip('/')}"


def _coerce(name: str, raw: Any, default: Any) -> Any:
    if isinstance(default, tuple):
        if isinstance(raw, str):
            raw = [part for part in raw.split(",") if part.strip()]
        if not isinstance(raw, (list, tuple)) or not raw:
            raise ValueError(f"{name} must be a non-empty list")
        delays = tuple(float(part) for part in raw)
        if not all(math.isfinite(delay) and delay >= 0 for delay in delays):
            raise ValueError(f"{name} must hold finite non-negative numbers")
        return delays
    if isinstance(default, float):
        value = float(raw)
        # every float option is an interval in seconds
        if not math.isfinite(value) or value <= 0:
            raise ValueError(f"{name} must be a positive number of seconds")
        return value
    return str(raw)


def _apply(config: SyncConfig, values: Mapping[str, Any], source: str) -> SyncConfig:
    updates: Dict[str, Any] = {}
    for option in fields(SyncConfig):
        if option.name not in values:
            continue
        try:
            updates[option.name] = _coerce(option.name, values[option.name], getattr(config, option.name))
        except (TypeError, ValueError) as exc:
            logger.warning("ignoring %s from %s: %s", option.name, source, exc)
    return replace(config, **updates)


def load_settings(path: Path | str = DEFAULT_SETTINGS_FILE) -> Dict[str, Any]:
    """Load persisted settings from disk if present."""

    try:
        data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            return {}
        return data
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError:
        logger.warning("settings file %s is not valid JSON; using defaults", path)
        return {}


def load_config(
    path: Optional[Path | str] = None,
    env: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> SyncConfig:
    """Build a config from defaults, a JSON settings file, then ``MARKETSYNC_*`` variables.

    Keyword overrides win over everything else; ``None`` values are skipped.
    """

    config = SyncConfig()
    if path is not None:
        config = _apply(config, load_settings(path), str(path))

    environ = os.environ if env is None else env
    from_env = {
        key[len(ENV_PREFIX):].lower(): value
        for key, value in environ.items()
        if key.startswith(ENV_PREFIX)
    }
    config = _apply(config, from_env, "environment")
    return _apply(config, {key: value for key, value in overrides.items() if value is not None}, "arguments")
