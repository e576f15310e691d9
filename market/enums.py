# market/enums.py
from enum import Enum

class ConnState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"

class OfferDirection(Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"

class IntentOutcome(Enum):
    EXECUTED = "executed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    AMBIGUOUS = "ambiguous"
    FAILED = "failed"

class FrameKind(Enum):
    AUTH_ACK = "auth_ack"
    PUSH = "push"
    RESPONSE = "response"
    OTHER = "other"

class ToastVariant(Enum):
    DEFAULT = "default"
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
