# infra/__init__.py
from __future__ import annotations

from typing import Any, Awaitable, Mapping, Optional, Protocol

from infra.http_client import HttpClient, HttpError
from infra.ws_client import WSClient


# ========== Ports: upper layers depend on these, not on the concrete clients ==========
class HttpPort(Protocol):
    async def get(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Any: ...
    async def post(self, path: str, json_body: Any) -> Any: ...
    async def patch(self, path: str, json_body: Any) -> Any: ...
    async def delete(self, path: str) -> Any: ...


class SocketPort(Protocol):
    """Duplex text connection the socket correlator runs on."""
    def bind_handlers(self, on_open, on_message, on_close) -> None: ...
    async def send(self, text: str) -> None: ...
    def run_forever(self) -> Awaitable[None]: ...
    async def stop(self) -> None: ...


__all__ = ["HttpClient", "HttpError", "WSClient", "HttpPort", "SocketPort"]
