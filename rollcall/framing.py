import json
from typing import Any, Dict, Union

"""
framing.py — JSON text messages over WebSocket frames.

Protocol:
- Each WebSocket text frame carries exactly one JSON object.
- Every object has a string "type" field; the rest depends on the type.
- Inbound frames are capped at 1 MiB; the hub's transport closes connections
  that send more. Outbound messages (roster updates) are not capped.
- JSON is compact (no extra spaces) and keeps non-ASCII as UTF-8.

The WebSocket layer does the actual framing, so this module only turns
dicts into text and back and rejects anything that is not a typed object.
"""

MAX_MESSAGE_SIZE = 1024 * 1024  # 1 MiB inbound limit, handed to serve() as max_size


def encode_message(obj: Dict[str, Any]) -> str:
    """Serialize a dict to compact JSON text for one frame."""
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def decode_message(data: Union[str, bytes]) -> Dict[str, Any]:
    """
    Parse one inbound frame into a dict.

    Binary frames are accepted and decoded as UTF-8.

    Raises:
        ValueError: if the payload is not UTF-8 JSON, is not a JSON object,
        or has no string "type" field.
    """
    if isinstance(data, (bytes, bytearray)):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ValueError(f"Invalid UTF-8 payload: {exc}") from exc

    try:
        obj = json.loads(data)
    except json.JSONDecodeError as exc:
        # Keep the message short; no payload echo.
        raise ValueError(f"Invalid JSON message: {exc}") from exc

    if not isinstance(obj, dict):
        raise ValueError(f"Expected a JSON object, got {type(obj).__name__}")
    if not isinstance(obj.get("type"), str):
        raise ValueError("Message has no 'type' field")
    return obj
