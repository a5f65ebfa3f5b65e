"""
Inbound callback payloads.

Choice buttons carry a compact JSON document as Telegram ``callback_data``
(at most 64 bytes)::

    {"t": "approval", "id": "9f2c1a7e", "o": 1}

Anything arriving from the chat is untrusted. ``parse_callback_payload``
never raises; it returns either a ``CallbackPayload`` or a
``MalformedCallback`` describing why the payload was rejected.
"""

import json
from dataclasses import dataclass
from typing import Any

from opsrelay.core.exceptions import MalformedCallbackError

CALLBACK_TYPE = "approval"
MAX_CALLBACK_BYTES = 64


@dataclass(frozen=True)
class CallbackPayload:
    approval_id: str
    option_index: int


@dataclass(frozen=True)
class MalformedCallback:
    reason: str
    raw: Any = None


def encode_callback_data(approval_id: str, option_index: int) -> str:
    data = json.dumps(
        {"t": CALLBACK_TYPE, "id": approval_id, "o": option_index}, separators=(",", ":")
    )
    if len(data.encode("utf-8")) > MAX_CALLBACK_BYTES:
        raise ValueError(f"callback data exceeds {MAX_CALLBACK_BYTES} bytes: {data!r}")
    return data


def _decode(raw: Any) -> CallbackPayload:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedCallbackError("payload is not valid UTF-8") from e

    if isinstance(raw, str):
        if not raw.strip():
            raise MalformedCallbackError("empty payload")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedCallbackError(f"payload is not JSON: {e.msg}") from e
    elif isinstance(raw, dict):
        data = raw
    else:
        raise MalformedCallbackError(f"unsupported payload type {type(raw).__name__}")

    if not isinstance(data, dict):
        raise MalformedCallbackError("payload is not a JSON object")
    if data.get("t") != CALLBACK_TYPE:
        raise MalformedCallbackError(f"unexpected payload type {data.get('t')!r}")

    approval_id = data.get("id")
    if not isinstance(approval_id, str) or not approval_id:
        raise MalformedCallbackError("missing approval id")

    option_index = data.get("o")
    # bool is an int subclass; reject it explicitly
    if isinstance(option_index, bool) or not isinstance(option_index, int) or option_index < 0:
        raise MalformedCallbackError("option index must be a non-negative integer")

    return CallbackPayload(approval_id=approval_id, option_index=option_index)


def parse_callback_payload(raw: Any) -> CallbackPayload | MalformedCallback:
    """Parse an inbound payload into a tagged result. Never raises."""
    try:
        return _decode(raw)
    except MalformedCallbackError as e:
        return MalformedCallback(reason=e.message, raw=raw)
