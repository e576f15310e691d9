# market/errors.py
class MarketError(Exception):
    """Base error for the trade sync core."""
    def __init__(self, msg: str = ""):
        super().__init__(msg)
        self.msg = msg

    def __str__(self):
        return self.msg or self.__class__.__name__


class NotConnectedError(MarketError, ConnectionError):
    """Socket is not Ready; the call was never sent."""


class ConnectionLostError(MarketError, ConnectionError):
    """Connection dropped while the request was in flight."""


class RequestTimeout(MarketError, TimeoutError):
    """No response arrived for a socket request within its timeout."""

    def __init__(self, msg: str = "", *, method: str = "", service: str = "", timeout_s: float = 0.0):
        super().__init__(msg)
        self.method = method
        self.service = service
        self.timeout_s = timeout_s


class IntentExpired(MarketError, TimeoutError):
    """A queued intent outlived its max age without a matching record."""


class AuthenticationError(MarketError):
    """Session token rejected (socket handshake or HTTP 401)."""

    def __init__(self, msg: str = "", status: int = 401):
        super().__init__(msg)
        self.status = status


class RemoteCallError(MarketError):
    """Server answered a socket call with an error slot or an empty payload."""

    def __init__(self, msg: str = "", payload=None):
        super().__init__(msg)
        self.payload = payload


class RemoteExecutionError(MarketError):
    """The execute step of a queued intent was rejected server side."""

    def __init__(self, msg: str = "", *, intent_id: str = "", cause: BaseException | None = None):
        super().__init__(msg)
        self.intent_id = intent_id
        self.cause = cause


class AmbiguousMatchError(MarketError):
    """More than one candidate could satisfy an intent. A handoff signal, not a failure."""

    def __init__(self, msg: str = "", candidates=None, **ctx):
        super().__init__(msg)
        self.candidates = list(candidates or [])
        self.ctx = ctx

    def __str__(self):
        base = super().__str__()
        if self.ctx:
            details = ", ".join(f"{k}={v}" for k, v in self.ctx.items())
            return f"{base} [{details}]"
        return base
