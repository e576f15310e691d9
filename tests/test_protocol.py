# tests/test_protocol.py
import json

from market import protocol
from market.enums import FrameKind


def test_encode_call_uses_ack_zero_prefix():
    frame = protocol.encode_call("find", "social/message", {"conversation_id": "c1"})
    assert frame.startswith("420")
    assert json.loads(frame[3:]) == ["find", "social/message", {"conversation_id": "c1"}]


def test_encode_auth_frame():
    body = json.loads(protocol.encode_auth("jwt-123")[3:])
    assert body == ["create", "security/session", {"strategy": "jwt", "accessToken": "jwt-123"}]


def test_decode_classifies_auth_ack_push_and_response():
    ack = protocol.decode_frame('430[null,{"accessToken":"t","user":{"_id":"u1"}}]')
    assert ack.kind is FrameKind.AUTH_ACK
    assert ack.code == "430"

    push = protocol.decode_frame('42["system/notification pushed",{"type":"offer_received"}]')
    assert push.kind is FrameKind.PUSH
    assert push.body[1] == {"type": "offer_received"}

    resp = protocol.decode_frame('430[null,{"data":[]}]')
    assert resp.kind is FrameKind.RESPONSE

    err = protocol.decode_frame('430[{"message":"nope"},null]')
    assert err.kind is FrameKind.RESPONSE


def test_decode_drops_frames_without_json_body():
    assert protocol.decode_frame("2") is None          # bare ping
    assert protocol.decode_frame("42not-json") is None
    assert protocol.decode_frame("hello") is None


def test_non_pair_bodies_are_other():
    assert protocol.decode_frame("41").kind is FrameKind.OTHER   # "4" + json 1
    assert protocol.decode_frame('40{"sid":"abc"}').kind is FrameKind.OTHER
    assert protocol.decode_frame('430[1,2,3]').kind is FrameKind.OTHER


def test_string_error_containing_pushed_is_taken_for_a_push():
    # known weakness of the name-based discriminant, kept on purpose
    frame = protocol.decode_frame('430["item already pushed",null]')
    assert frame.kind is FrameKind.PUSH


def test_sanitize_and_push_key():
    assert protocol.sanitize_event_name("system/notification pushed") == "system/notification_pushed"
    assert protocol.sanitize_event_name("a.b c!d") == "a_b_c_d"
    assert protocol.push_key("system/notification pushed") == "socket:system/notification_pushed"
    # already-built keys are left alone
    key = protocol.push_key("system/notification pushed")
    assert protocol.push_key(key) == key


def test_error_text():
    assert protocol.error_text({"message": "jwt expired", "name": "NotAuthenticated"}) == "jwt expired"
    assert protocol.error_text({"name": "NotAuthenticated"}) == "NotAuthenticated"
    assert protocol.error_text("boom") == "boom"
