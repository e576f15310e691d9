# tests/test_ws_client.py
import pytest

import infra.ws_client as ws_client
from infra.ws_client import WSClient


class FakeWS:
    def __init__(self, handshake, stream=()):
        self.handshake = list(handshake)
        self.stream = list(stream)
        self.sent = []
        self.closed = False

    async def recv(self):
        return self.handshake.pop(0)

    async def send(self, text):
        self.sent.append(text)

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for msg in self.stream:
            yield msg


class FakeConnect:
    def __init__(self, ws):
        self.ws = ws
        self.kwargs = None

    def __call__(self, url, **kwargs):
        self.kwargs = kwargs
        return self

    async def __aenter__(self):
        return self.ws

    async def __aexit__(self, *exc):
        return False


@pytest.mark.asyncio
async def test_handshake_connects_namespace_and_answers_ping():
    client = WSClient("wss://example/socket.io/?EIO=4&transport=websocket")
    ws = FakeWS(['0{"sid":"e1","pingInterval":25000}', "2", '40{"sid":"s1"}'])
    await client._handshake(ws)
    assert ws.sent == ["40", "3"]
    assert client.sid == "s1"
    assert client.ping_interval_ms == 25000


@pytest.mark.asyncio
async def test_handshake_rejections():
    client = WSClient("wss://example")
    with pytest.raises(ConnectionRefusedError):
        await client._handshake(FakeWS(["0{}", '44{"message":"unauthorized"}']))
    with pytest.raises(ConnectionError):
        await client._handshake(FakeWS(["hello"]))


@pytest.mark.asyncio
async def test_send_requires_a_connection():
    client = WSClient("wss://example")
    assert not client.connected
    with pytest.raises(ConnectionError):
        await client.send("420[]")


@pytest.mark.asyncio
async def test_run_forever_routes_frames_and_reports_close(monkeypatch):
    ws = FakeWS(["0{}", "40"], stream=["2", '430[null,"x"]', "3", "41", '430[null,"after"]'])
    fake_connect = FakeConnect(ws)
    monkeypatch.setattr(ws_client.websockets, "connect", fake_connect)

    events = []

    async def on_open():
        events.append(("open",))

    async def on_message(msg):
        events.append(("message", msg))

    async def on_close(reason):
        events.append(("close", reason))

    client = WSClient("wss://example", reconnect=False)
    client.bind_handlers(on_open, on_message, on_close)
    await client.run_forever()

    assert events == [("open",), ("message", '430[null,"x"]'), ("close", "server disconnect")]
    assert ws.sent == ["40", "3"]
    assert fake_connect.kwargs["ping_interval"] is None
    assert not client.connected
