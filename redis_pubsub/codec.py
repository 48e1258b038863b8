"""Payload encoding for the wire.

Payloads travel as JSON text. Decoding is lenient: a message that is not valid
JSON (published by a foreign client, or a raw value that could not be encoded)
is delivered to subscribers as the raw text instead of being rejected.
"""

import json
from typing import Any, Union


def encode_payload(payload: Any) -> Union[str, bytes]:
    """Serialize a payload to JSON; values json cannot handle go out as their raw text."""
    try:
        return json.dumps(payload)
    except (TypeError, ValueError):
        if isinstance(payload, (str, bytes)):
            return payload
        return str(payload)


def decode_message(raw: Union[str, bytes]) -> Any:
    """Parse a JSON message, falling back to the raw text when it does not parse."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw
