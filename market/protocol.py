# market/protocol.py
"""
Socket.IO text frame codec for the PD2 API socket.

Outbound calls go out as ``420`` + JSON ``[method, service, payload]``. The ack
id is always 0, so responses can only be correlated by send order.

Inbound frames are ``<digits><json>``. The JSON body is classified by shape:

- auth ack: ``[null, {"accessToken": ..., "user": ...}]``
- push:     ``["<name containing 'pushed'>", data]``
- response: any other two-element ``[error-or-null, payload]``

The push test is a substring match on the event name. It is fragile (a
response whose error slot is a string containing "pushed" would be taken for a
push), but it is what the server side is known to produce, so it is kept as is.
"""
import json
import re
from dataclasses import dataclass
from typing import Any, Optional

from market.enums import FrameKind

CALL_PREFIX = "420"
PUSH_MARKER = "pushed"
PUSH_KEY_PREFIX = "socket:"

_FRAME_RE = re.compile(r"^(\d+)(.+)$", re.DOTALL)
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9\-/:_]")


@dataclass
class Frame:
    code: str
    body: Any
    kind: FrameKind


def _json_dumps_compact(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def encode_call(method: str, service: str, payload: Any) -> str:
    return CALL_PREFIX + _json_dumps_compact([method, service, payload])


def encode_auth(token: str) -> str:
    return encode_call("create", "security/session", {"strategy": "jwt", "accessToken": token})


def sanitize_event_name(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name)


def push_key(event_type: str) -> str:
    """Dispatch key for a push event; idempotent on already-built keys."""
    if event_type.startswith(PUSH_KEY_PREFIX):
        event_type = event_type[len(PUSH_KEY_PREFIX):]
    return PUSH_KEY_PREFIX + sanitize_event_name(event_type)


def is_auth_ack(body: Any) -> bool:
    return (
        isinstance(body, list)
        and len(body) == 2
        and isinstance(body[1], dict)
        and "accessToken" in body[1]
        and "user" in body[1]
    )


def is_push(body: Any) -> bool:
    return (
        isinstance(body, list)
        and len(body) == 2
        and isinstance(body[0], str)
        and PUSH_MARKER in body[0]
    )


def classify(body: Any) -> FrameKind:
    if is_auth_ack(body):
        return FrameKind.AUTH_ACK
    if is_push(body):
        return FrameKind.PUSH
    if isinstance(body, list) and len(body) == 2:
        return FrameKind.RESPONSE
    return FrameKind.OTHER


def decode_frame(text: str) -> Optional[Frame]:
    """Split ``<code><json>``; returns None for frames without a JSON body."""
    m = _FRAME_RE.match(text)
    if not m:
        return None
    code, raw = m.group(1), m.group(2)
    try:
        body = json.loads(raw)
    except ValueError:
        return None
    return Frame(code=code, body=body, kind=classify(body))


def error_text(err: Any) -> str:
    """Human text for the error slot of a response ([error, payload])."""
    if isinstance(err, dict):
        return str(err.get("message") or err.get("name") or err)
    return str(err)
