# market/services/socket_service.py
from __future__ import annotations

import asyncio
import contextlib
import itertools
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from utils.logger import logger as default_logger
from infra import SocketPort
from market import protocol
from market.enums import ConnState, FrameKind
from market.errors import (
    AuthenticationError,
    ConnectionLostError,
    NotConnectedError,
    RemoteCallError,
    RequestTimeout,
)
from market.event_bus import EventBus
from market.models import ConnectionStateEvent, PendingRequest

PushHandler = Callable[[Any], Any]
AuthErrorHandler = Callable[[AuthenticationError], Any]


class SocketService:
    """
    Request/response correlator and push demultiplexer over one socket.

    - On every (re)connect the service sends the session auth frame directly on
      the connection and only accepts calls once the ack arrives (Ready).
    - call() frames are answered strictly in send order, so each response is
      matched to the oldest request still in flight.
    - Frames whose first slot names a "...pushed" event are routed to the
      handlers registered via subscribe(); they never touch the request queue.
    - A disconnect rejects every in-flight call with ConnectionLostError.
      Reconnecting is the connection's business; this service only re-auths.

    In-flight requests live in an identity-keyed map (seq -> PendingRequest)
    plus an ordered index of send order. A timed-out request is removed from
    the map but its slot stays in the index until its late answer shows up
    (or its grace period runs out), so one slow reply cannot shift every later
    reply onto the wrong caller.

    The wire carries no ack ids, so a reply that is lost outright cannot be
    told apart from a late one: the next reply arriving within late_grace_s of
    the lost call's deadline is absorbed in its place, and that one caller
    times out too. Keep late_grace_s short; once it passes the slot is skipped.
    """

    def __init__(self,
                 conn: SocketPort,
                 token: str,
                 *,
                 request_timeout_s: float = 10.0,
                 auth_timeout_s: float = 10.0,
                 late_grace_s: float = 2.0,
                 event_bus: Optional[EventBus] = None,
                 on_auth_error: Optional[AuthErrorHandler] = None,
                 clock: Callable[[], float] = time.monotonic,
                 logger=None) -> None:
        self._conn = conn
        self._token = token
        self._request_timeout_s = request_timeout_s
        self._auth_timeout_s = auth_timeout_s
        self._late_grace_s = late_grace_s
        self._bus = event_bus
        self._on_auth_error = on_auth_error
        self._clock = clock
        self._log = logger or default_logger

        self._state = ConnState.DISCONNECTED
        self._seq = itertools.count(1)
        self._pending: Dict[int, PendingRequest] = {}
        self._order: Deque[Tuple[int, float]] = deque()   # (seq, slot expires at)
        self._handlers: Dict[str, List[PushHandler]] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._ready = asyncio.Event()
        self._awaiting_auth = False
        self._auth_timer: Optional[asyncio.TimerHandle] = None
        self._run_task: Optional[asyncio.Task] = None
        self._stopping = False
        self.user: Optional[dict] = None

        conn.bind_handlers(self._on_open, self._on_message, self._on_close)

    # ---- observable state ----------------------------------------------------------
    @property
    def state(self) -> ConnState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ConnState.READY

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _set_state(self, state: ConnState) -> None:
        prev = self._state
        if prev is state:
            return
        self._state = state
        self._log.info(f"Socket state {prev.value} -> {state.value}")
        if self._bus is not None:
            self._bus.publish(ConnectionStateEvent(state=state, previous=prev))

    async def wait_ready(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._ready.wait(), timeout=timeout)

    def set_token(self, token: str) -> None:
        """New token takes effect on the next (re)connect."""
        self._token = token

    # ---- lifecycle -----------------------------------------------------------------
    async def start(self) -> None:
        if self._run_task and not self._run_task.done():
            return
        self._stopping = False
        self._set_state(ConnState.CONNECTING)
        self._run_task = asyncio.create_task(self._conn.run_forever())
        self._run_task.add_done_callback(self._on_run_done)

    def _on_run_done(self, task: asyncio.Task) -> None:
        # connection loop exited on its own (reconnect disabled)
        if task is self._run_task and not self._stopping:
            self._run_task = None
            self._set_state(ConnState.DISCONNECTED)

    async def stop(self) -> None:
        self._stopping = True
        await self._conn.stop()
        if self._run_task:
            self._run_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._run_task
            self._run_task = None
        self._teardown("Socket cleanup")
        self._handlers.clear()
        for t in list(self._tasks):
            t.cancel()
        self._tasks.clear()

    # ---- connection callbacks ------------------------------------------------------
    async def _on_open(self) -> None:
        self._set_state(ConnState.AUTHENTICATING)
        if not self._token:
            self._auth_failed(AuthenticationError("Socket authentication skipped: no token"))
            return
        self._awaiting_auth = True
        self._auth_timer = asyncio.get_running_loop().call_later(self._auth_timeout_s, self._on_auth_timeout)
        try:
            await self._conn.send(protocol.encode_auth(self._token))
        except Exception as e:
            self._auth_failed(AuthenticationError(f"Failed to send auth frame: {e}"))

    async def _on_message(self, text: str) -> None:
        frame = protocol.decode_frame(text)
        if frame is None:
            self._log.debug(f"Socket drop frame without json body: {text[:80]!r}")
            return

        if self._awaiting_auth and frame.kind in (FrameKind.AUTH_ACK, FrameKind.RESPONSE):
            self._complete_auth(frame.body)
            return

        if frame.kind is FrameKind.AUTH_ACK:
            self._log.debug("Socket auth ack outside handshake, ignored")
        elif frame.kind is FrameKind.PUSH:
            self._dispatch_push(frame.body[0], frame.body[1])
        elif frame.kind is FrameKind.RESPONSE:
            self._resolve_head(frame.body)
        else:
            self._log.debug(f"Socket frame code={frame.code} ignored")

    async def _on_close(self, reason: str) -> None:
        self._log.warning(f"Socket disconnected: {reason}")
        self._teardown(f"Socket disconnected: {reason}")
        if not self._stopping and self._run_task is not None and not self._run_task.done():
            # the connection loop is retrying
            self._set_state(ConnState.CONNECTING)

    def _teardown(self, reason: str) -> None:
        self._cancel_auth_timer()
        self._awaiting_auth = False
        self._ready.clear()
        self.user = None
        self._fail_all(reason)
        self._set_state(ConnState.DISCONNECTED)

    # ---- auth handshake ------------------------------------------------------------
    def _complete_auth(self, body: list) -> None:
        self._cancel_auth_timer()
        self._awaiting_auth = False
        err, data = body
        if err is not None:
            self._auth_failed(AuthenticationError(f"Socket authentication failed: {protocol.error_text(err)}"))
            return
        if not isinstance(data, dict) or "accessToken" not in data:
            self._auth_failed(AuthenticationError("Socket authentication failed: malformed ack"))
            return
        self.user = data.get("user")
        self._set_state(ConnState.READY)
        self._ready.set()
        self._log.info("Socket authenticated")

    def _on_auth_timeout(self) -> None:
        self._auth_timer = None
        if self._awaiting_auth:
            self._awaiting_auth = False
            self._auth_failed(AuthenticationError("Socket authentication timed out"))

    def _auth_failed(self, exc: AuthenticationError) -> None:
        self._cancel_auth_timer()
        self._log.error(str(exc))
        if self._on_auth_error is not None:
            self._invoke(self._on_auth_error, exc)

    def _cancel_auth_timer(self) -> None:
        if self._auth_timer is not None:
            self._auth_timer.cancel()
            self._auth_timer = None

    # ---- calls ---------------------------------------------------------------------
    async def call(self, method: str, service: str, payload: Any = None, *,
                   timeout_s: Optional[float] = None) -> Any:
        """Send [method, service, payload] and wait for its [error, data] answer."""
        if self._state is not ConnState.READY:
            raise NotConnectedError("Socket not connected")

        loop = asyncio.get_running_loop()
        timeout = self._request_timeout_s if timeout_s is None else timeout_s
        seq = next(self._seq)
        req = PendingRequest(
            seq=seq, method=method, service=service, payload=payload,
            created_at=self._clock(), future=loop.create_future(),
        )
        self._pending[seq] = req
        self._order.append((seq, req.created_at + timeout + self._late_grace_s))
        req.timer = loop.call_later(timeout, self._on_request_timeout, seq, timeout)

        try:
            await self._conn.send(protocol.encode_call(method, service, payload))
        except Exception as e:
            if not req.future.done():
                self._discard(seq)
                raise RemoteCallError(f"Failed to send message: {e}") from e

        try:
            return await req.future
        except asyncio.CancelledError:
            self._abandon(seq)
            raise

    def _on_request_timeout(self, seq: int, timeout: float) -> None:
        req = self._pending.pop(seq, None)
        if req is None:
            return
        req.timer = None
        self._log.warning(f"Socket request timeout: {req.method} {req.service} after {timeout}s")
        if not req.future.done():
            req.future.set_exception(RequestTimeout(
                "Socket request timeout", method=req.method, service=req.service, timeout_s=timeout,
            ))

    def _abandon(self, seq: int) -> None:
        """Caller went away; keep the ordering slot so its answer is absorbed."""
        req = self._pending.pop(seq, None)
        if req is not None and req.timer is not None:
            req.timer.cancel()

    def _discard(self, seq: int) -> None:
        """Frame never left; drop the request and its ordering slot."""
        self._abandon(seq)
        for i, (s, _) in enumerate(self._order):
            if s == seq:
                del self._order[i]
                break

    def _resolve_head(self, body: list) -> None:
        now = self._clock()
        while self._order:
            seq, slot_expires_at = self._order.popleft()
            req = self._pending.pop(seq, None)
            if req is not None:
                break
            if now <= slot_expires_at:
                self._log.debug(f"Socket late response for expired request #{seq} dropped")
                return
            self._log.debug(f"Socket stale slot #{seq} skipped")
        else:
            self._log.warning("Socket received response but no pending requests")
            return

        if req.timer is not None:
            req.timer.cancel()
            req.timer = None
        if req.future.done():
            return
        err, data = body
        if err is not None:
            req.future.set_exception(RemoteCallError(protocol.error_text(err), payload=err))
        elif data is None:
            req.future.set_exception(RemoteCallError("Empty response"))
        else:
            req.future.set_result(data)

    def _fail_all(self, reason: str) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        self._order.clear()
        for req in pending:
            if req.timer is not None:
                req.timer.cancel()
                req.timer = None
            if not req.future.done():
                req.future.set_exception(ConnectionLostError(reason))
        if pending:
            self._log.warning(f"Socket rejected {len(pending)} in-flight request(s): {reason}")

    # ---- push events ---------------------------------------------------------------
    def subscribe(self, event_type: str, handler: PushHandler) -> Callable[[], None]:
        """
        Register handler for a push event. event_type may be the raw server
        name ("system/notification pushed") or its dispatch key
        ("socket:system/notification_pushed"); both map to the same key.
        """
        key = protocol.push_key(event_type)
        handlers = self._handlers.setdefault(key, [])
        if handler not in handlers:
            handlers.append(handler)

        def _unsubscribe() -> None:
            hs = self._handlers.get(key)
            if hs and handler in hs:
                hs.remove(handler)
                if not hs:
                    self._handlers.pop(key, None)

        return _unsubscribe

    def _dispatch_push(self, name: str, data: Any) -> None:
        key = protocol.push_key(name)
        handlers = self._handlers.get(key)
        if not handlers:
            self._log.debug(f"Socket push {key} has no subscribers, dropped")
            return
        for h in list(handlers):
            self._invoke(h, data)

    def _invoke(self, handler: Callable[..., Any], *args: Any) -> None:
        try:
            res = handler(*args)
        except Exception:
            self._log.exception("Socket handler failed")
            return
        if asyncio.iscoroutine(res):
            task = asyncio.get_running_loop().create_task(res)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._log.opt(exception=task.exception()).error("Socket async handler failed")

    async def drain(self) -> None:
        """Wait for scheduled async push handlers to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
