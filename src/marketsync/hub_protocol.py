"""JSON hub protocol framing used by the push channel.

Every frame is a JSON object terminated by the ``0x1e`` record separator; a
websocket text message may carry several frames.
"""

from __future__ import annotations

import enum
import json
from typing import Any, Dict, List, Optional, Sequence

RECORD_SEPARATOR = "\x1e"
PROTOCOL_NAME = "json"
PROTOCOL_VERSION = 1


class HubProtocolError(ValueError):
    """Raised when a frame cannot be parsed or the handshake is rejected."""


class MessageType(enum.IntEnum):
    INVOCATION = 1
    STREAM_ITEM = 2
    COMPLETION = 3
    STREAM_INVOCATION = 4
    CANCEL_INVOCATION = 5
    PING = 6
    CLOSE = 7


def encode_record(frame: Dict[str, Any]) -> str:
    return json.dumps(frame, ensure_ascii=False, separators=(",", ":"), default=str) + RECORD_SEPARATOR


def parse_records(data: str) -> List[Dict[str, Any]]:
    frames: List[Dict[str, Any]] = []
    for chunk in data.split(RECORD_SEPARATOR):
        if not chunk.strip():
            continue
        try:
            frame = json.loads(chunk)
        except json.JSONDecodeError as exc:
            raise HubProtocolError("frame is not valid JSON") from exc
        if not isinstance(frame, dict):
            raise HubProtocolError("frame must be a JSON object")
        frames.append(frame)
    return frames


def handshake_request() -> str:
    return encode_record({"protocol": PROTOCOL_NAME, "version": PROTOCOL_VERSION})


def check_handshake_response(data: str) -> List[Dict[str, Any]]:
    """Validate the handshake reply; return any frames that followed it."""

    frames = parse_records(data)
    if not frames:
        raise HubProtocolError("empty handshake response")
    response, trailing = frames[0], frames[1:]
    error = response.get("error")
    if error:
        raise HubProtocolError(f"handshake rejected: {error}")
    return trailing


def invocation(target: str, arguments: Sequence[Any], invocation_id: Optional[str] = None) -> Dict[str, Any]:
    frame: Dict[str, Any] = {"type": MessageType.INVOCATION.value, "target": target, "arguments": list(arguments)}
    if invocation_id is not None:
        frame["invocationId"] = invocation_id
    return frame


def ping() -> Dict[str, Any]:
    return {"type": MessageType.PING.value}


def close(error: Optional[str] = None, allow_reconnect: Optional[bool] = None) -> Dict[str, Any]:
    frame: Dict[str, Any] = {"type": MessageType.CLOSE.value}
    if error:
        frame["error"] = error
    if allow_reconnect is not None:
        frame["allowReconnect"] = allow_reconnect
    return frame


def frame_type(frame: Dict[str, Any]) -> Optional[MessageType]:
    try:
        return MessageType(int(frame.get("type", 0)))
    except (TypeError, ValueError):
        return None
