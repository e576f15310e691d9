# infra/http_client.py
from __future__ import annotations

import aiohttp
import asyncio
import inspect
import json
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import quote
import logging
from utils.logger import logger as default_logger

from market.errors import AuthenticationError

JSON_SEPARATORS = (",", ":")

AuthErrorCallback = Callable[[], Union[None, Awaitable[None]]]


class HttpError(Exception):
    def __init__(self, status: int, message: str, payload: Optional[dict] = None):
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.payload = payload or {}


def _json_dumps_compact(obj: Any) -> str:
    return json.dumps(obj, separators=JSON_SEPARATORS, ensure_ascii=False)


def _scalar(v: Any) -> str:
    if v is True:
        return "true"
    if v is False:
        return "false"
    if v is None:
        return ""
    return str(v)


def _flatten_query(obj: Any, prefix: str = "") -> List[Tuple[str, str]]:
    """
    qs-style flattening (arrayFormat=indices):
      {"$resolve": {"offers": {"user": True}}, "$sort": {"bumped_at": -1}}
      -> [("$resolve[offers][user]", "true"), ("$sort[bumped_at]", "-1")]
    """
    pairs: List[Tuple[str, str]] = []
    if isinstance(obj, Mapping):
        for k, v in obj.items():
            key = f"{prefix}[{k}]" if prefix else str(k)
            pairs.extend(_flatten_query(v, key))
    elif isinstance(obj, (list, tuple)):
        for i, v in enumerate(obj):
            pairs.extend(_flatten_query(v, f"{prefix}[{i}]"))
    else:
        pairs.append((prefix, _scalar(obj)))
    return pairs


def _build_query(params: Optional[Mapping[str, Any]]) -> str:
    """Keys stay literal (brackets, $), values are percent-encoded (encodeValuesOnly)."""
    if not params:
        return ""
    pairs = _flatten_query(params)
    if not pairs:
        return ""
    return "?" + "&".join(f"{k}={quote(v, safe='')}" for k, v in pairs)


def _mask(s: Optional[str]) -> str:
    if not s:
        return ""
    if len(s) <= 8:
        return "*" * len(s)
    return s[:4] + "*" * (len(s) - 8) + s[-4:]


class HttpClient:
    def __init__(self,
                 cfg: Mapping[str, Any],
                 logger: Optional[logging.Logger] = None,
                 token: Optional[str] = None,
                 *,
                 timeout_ms: Optional[int] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 on_auth_error: Optional[AuthErrorCallback] = None,
                 auth_error_cooldown_s: float = 2.0,
                 ) -> None:
        self.cfg = cfg
        self.log = logger or default_logger
        self.session = session
        self._owned_session = session is None

        pd2_cfg = cfg.get("pd2", {})
        self.base_url = str(pd2_cfg.get("api_base", "https://api.projectdiablo2.com")).rstrip("/")

        # credentials
        self.token = token if token is not None else (pd2_cfg.get("token") or None)

        # timeouts & retries
        timeouts_cfg = cfg.get("timeouts", {})
        retries_cfg = cfg.get("retries", {})
        self.timeout_ms = int(timeout_ms or timeouts_cfg.get("rest_ms", 10000))
        self.max_attempts = int(retries_cfg.get("rest_max_attempts", 3))
        self.backoff_ms = int(retries_cfg.get("backoff_ms", 200))

        # 401 handling: callback fires once per cooldown window
        self.on_auth_error = on_auth_error
        self._auth_error_cooldown_s = auth_error_cooldown_s
        self._auth_error_until: float = 0.0

        self.log.debug(f"HttpClient init base_url={self.base_url} token={_mask(self.token)}")

    # ---- async context manager ----------------------------------------------------
    async def __aenter__(self) -> "HttpClient":
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._owned_session and (self.session is None or self.session.closed):
            timeout = aiohttp.ClientTimeout(total=self.timeout_ms / 1000.0)
            self.session = aiohttp.ClientSession(timeout=timeout, raise_for_status=False, trust_env=True)
        return self.session

    async def close(self) -> None:
        if self._owned_session and self.session is not None and not self.session.closed:
            await self.session.close()

    def set_token(self, token: Optional[str]) -> None:
        self.token = token or None
        self._auth_error_until = 0.0

    def _build_auth_headers(self) -> Dict[str, str]:
        if not self.token:
            raise AuthenticationError("missing PD2 session token")
        return {"Authorization": f"Bearer {self.token}"}

    async def _handle_auth_error(self) -> None:
        """Invoke on_auth_error, suppressing re-entrant triggers within the cooldown window."""
        now = time.monotonic()
        if self.on_auth_error is None or now < self._auth_error_until:
            return
        self._auth_error_until = now + self._auth_error_cooldown_s
        try:
            res = self.on_auth_error()
            if inspect.isawaitable(res):
                await res
        except Exception:
            self.log.exception("on_auth_error callback failed")

    async def _raise_for_auth(self, status: int, text: str) -> None:
        reason = "Unauthorized"
        try:
            body = json.loads(text) if text else {}
            if isinstance(body, dict) and body.get("message"):
                reason = str(body["message"])
        except json.JSONDecodeError:
            pass
        await self._handle_auth_error()
        raise AuthenticationError(f"Authentication failed: {reason}", status)

    async def request(
            self,
            method: str,
            path: str,
            *,
            params: Optional[Mapping[str, Any]] = None,
            json_body: Optional[Any] = None,
            auth: bool = True,
            headers: Optional[Mapping[str, str]] = None,
            timeout_ms: Optional[int] = None,
            retry: bool = True,
        ) -> Any:
        """
        Single request entry point.
        - method: "GET" | "POST" | "PATCH" | "DELETE" | "PUT"
        - path: starts with "/", e.g. "/market/listing"
        - params: nested mapping serialized qs-style
        - json_body: JSON-serializable body
        - auth: attach the bearer token
        - retry: exponential backoff on 429 / 5xx / network errors
        """
        assert path.startswith("/"), "path must start with /"
        method = method.upper()
        url = self.base_url + path + _build_query(params)
        body_str = _json_dumps_compact(json_body) if json_body is not None else ""
        req_headers = {"Accept": "application/json"}
        if body_str:
            req_headers["Content-Type"] = "application/json"
        if headers:
            req_headers.update(headers)
        if auth:
            req_headers.update(self._build_auth_headers())

        extra: Dict[str, Any] = {}
        if timeout_ms:
            extra["timeout"] = aiohttp.ClientTimeout(total=timeout_ms / 1000.0)
        session = self._ensure_session()

        attempt = 0
        while True:
            attempt += 1
            try:
                async with session.request(
                    method,
                    url,
                    data=body_str if body_str else None,
                    headers=req_headers,
                    **extra,
                ) as resp:
                    text = await resp.text()
                    status = resp.status
                    if status == 401:
                        await self._raise_for_auth(status, text)
                    if status >= 400:
                        if retry and (status >= 500 or status == 429) and attempt < self.max_attempts:
                            await self._sleep_backoff(attempt)
                            continue
                        raise HttpError(status, text[:512])

                    if not text:
                        return None
                    try:
                        return json.loads(text)
                    except json.JSONDecodeError:
                        raise HttpError(status, f"invalid json: {text[:256]}")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if retry and attempt < self.max_attempts:
                    self.log.warning(f"Network error: {e} when requesting {method} {path}, retrying...")
                    await self._sleep_backoff(attempt)
                    continue
                raise HttpError(599, f"Network error: {e}") from e
            except (AuthenticationError, HttpError):
                raise
            except Exception as e:
                raise HttpError(599, f"Unexpected error: {e}") from e

    async def _sleep_backoff(self, attempt: int) -> None:
        base = self.backoff_ms * (2 ** (attempt - 1))
        jitter = random.randint(0, self.backoff_ms)
        await asyncio.sleep((base + jitter) / 1000.0)

    # ---- convenience wrappers ---------------------------------------------------------
    async def get(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json_body: Any) -> Any:
        return await self.request("POST", path, json_body=json_body)

    async def patch(self, path: str, json_body: Any) -> Any:
        return await self.request("PATCH", path, json_body=json_body)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)
