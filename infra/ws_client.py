# infra/ws_client.py
from utils.logger import logger
import contextlib
import asyncio, json, random
from typing import Any, Awaitable, Callable, Dict, Optional
import websockets
from websockets.exceptions import InvalidStatus, ConnectionClosedError, ConnectionClosedOK

OnOpen = Callable[[], Awaitable[None]]
OnMessage = Callable[[str], Awaitable[None]]
OnClose = Callable[[str], Awaitable[None]]

# Engine.IO v4 packet types used on a websocket transport
EIO_OPEN = "0"
EIO_CLOSE = "1"
EIO_PING = "2"
EIO_PONG = "3"
SIO_CONNECT = "40"
SIO_DISCONNECT = "41"
SIO_CONNECT_ERROR = "44"


class WSClient:
    """
    Duplex text connection to a Socket.IO server over a raw websocket.

    Owns the Engine.IO open/connect handshake, ping/pong keepalive and the
    reconnect policy. Everything else is handed to the bound callbacks:
    on_open() once the namespace is connected, on_message(text) for every
    other frame, on_close(reason) when an opened connection goes away.
    """

    def __init__(self,
        url: str,
        *,
        reconnect: bool = True,
        reconnect_cap_s: float = 20,
        handshake_timeout_s: float = 10,
        close_timeout_s: float = 10,
        extra_headers: Optional[Dict[str, str]] = None,
        name: str = "pd2",
    ):
        self.url = url
        self.reconnect = reconnect
        self.reconnect_cap_s = reconnect_cap_s
        self.handshake_timeout_s = handshake_timeout_s
        self.close_timeout_s = close_timeout_s
        self.extra_headers = extra_headers or {}
        self.name = name

        self._ws: Optional[Any] = None
        self._stop = False
        self.sid: Optional[str] = None
        self.ping_interval_ms: Optional[int] = None

        self._on_open: Optional[OnOpen] = None
        self._on_message: Optional[OnMessage] = None
        self._on_close: Optional[OnClose] = None

        logger.info(f"WSClient {name} init url={url} reconnect={reconnect} "
                    f"reconnect_cap_s={reconnect_cap_s}")

    def bind_handlers(self, on_open: OnOpen, on_message: OnMessage, on_close: OnClose) -> None:
        self._on_open = on_open
        self._on_message = on_message
        self._on_close = on_close

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def send(self, text: str) -> None:
        if self._ws is None:
            raise ConnectionError(f"WS {self.name} not connected")
        await self._ws.send(text)

    async def _handshake(self, ws) -> None:
        """Engine.IO open packet, then Socket.IO namespace connect on '/'."""
        raw = await asyncio.wait_for(ws.recv(), timeout=self.handshake_timeout_s)
        if not isinstance(raw, str) or not raw.startswith(EIO_OPEN):
            raise ConnectionError(f"unexpected engine.io open packet: {raw!r}")
        info = json.loads(raw[1:] or "{}")
        self.ping_interval_ms = info.get("pingInterval")
        logger.debug(f"WS {self.name} engine open sid={info.get('sid')} pingInterval={self.ping_interval_ms}")

        await ws.send(SIO_CONNECT)
        while True:
            raw = await asyncio.wait_for(ws.recv(), timeout=self.handshake_timeout_s)
            if raw == EIO_PING:
                await ws.send(EIO_PONG)
                continue
            if isinstance(raw, str) and raw.startswith(SIO_CONNECT_ERROR):
                raise ConnectionRefusedError(f"socket.io connect rejected: {raw[2:]}")
            if isinstance(raw, str) and raw.startswith(SIO_CONNECT):
                body = raw[2:]
                self.sid = (json.loads(body) or {}).get("sid") if body else None
                return

    async def run_forever(self) -> None:
        retry = 0
        while not self._stop:
            opened = False
            reason = "closed"
            try:
                await asyncio.sleep(random.uniform(0.0, 0.5) if retry else 0)

                logger.info(f"WS {self.name} connect: connecting to {self.url} (retry={retry})")
                async with websockets.connect(
                    self.url,
                    ping_interval=None,
                    close_timeout=self.close_timeout_s,
                    open_timeout=self.handshake_timeout_s,
                    additional_headers=self.extra_headers or None,
                ) as ws:
                    self._ws = ws
                    await self._handshake(ws)
                    logger.info(f"WS {self.name} connect: connected sid={self.sid}")
                    retry = 0
                    opened = True
                    await self._emit_open()

                    # main read loop
                    async for msg in ws:
                        if isinstance(msg, bytes):
                            msg = msg.decode("utf-8", errors="replace")
                        if msg == EIO_PING:
                            with contextlib.suppress(Exception):
                                await ws.send(EIO_PONG)
                            continue
                        if msg == EIO_PONG:
                            continue
                        if msg == EIO_CLOSE or msg == SIO_DISCONNECT:
                            reason = "server disconnect"
                            break
                        await self._emit_message(msg)
            except asyncio.CancelledError:
                reason = "cancelled"
                raise
            except InvalidStatus as e:
                code = getattr(getattr(e, "response", None), "status_code", None)
                reason = f"handshake rejected: HTTP {code}"
                logger.warning(f"WS {self.name} {reason}")
            except (ConnectionClosedError, ConnectionClosedOK, ConnectionResetError, TimeoutError) as e:
                reason = f"{type(e).__name__} ({e})"
                logger.warning(f"WS {self.name} connection closed: {reason}")
            except Exception as e:
                reason = f"{type(e).__name__} ({e})"
                logger.exception(f"WS {self.name} loop: exception")
            finally:
                self._ws = None
                self.sid = None
                if opened:
                    await self._emit_close(reason)
                logger.info(f"WS {self.name} close: websocket closed ({reason})")

            if self._stop or not self.reconnect:
                break
            backoff = min(self.reconnect_cap_s, 2 ** min(retry, 6))
            backoff *= random.uniform(0.8, 1.3)
            await asyncio.sleep(backoff)
            retry += 1

    async def _emit_open(self) -> None:
        if self._on_open:
            await self._on_open()

    async def _emit_message(self, msg: str) -> None:
        if not self._on_message:
            return
        try:
            await self._on_message(msg)
        except Exception:
            logger.exception(f"WS {self.name} on_message handler failed")

    async def _emit_close(self, reason: str) -> None:
        if not self._on_close:
            return
        try:
            await self._on_close(reason)
        except Exception:
            logger.exception(f"WS {self.name} on_close handler failed")

    async def stop(self):
        self._stop = True
        if self._ws:
            with contextlib.suppress(Exception):
                await self._ws.close()
            logger.info(f"WS {self.name} stop: websocket closed")
