# market/models.py
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Hashable, List, Optional

from market.enums import ConnState, IntentOutcome, OfferDirection, ToastVariant


@dataclass
class Offer:
    id: str
    direction: OfferDirection
    player_name: str             # counterparty username ("Unknown" when unresolved)
    account_name: Optional[str]  # counterparty in-game account
    item_name: Optional[str]
    price: Optional[str]         # note text, or "<n> HR"
    message: str
    created_at: Optional[datetime]
    listing_id: Optional[str] = None
    user_id: Optional[str] = None       # counterparty user id
    accepted_offer_id: Optional[str] = None

    @property
    def is_incoming(self) -> bool:
        return self.direction is OfferDirection.INCOMING

    @property
    def is_accepted(self) -> bool:
        return self.accepted_offer_id is not None and self.accepted_offer_id == self.id


@dataclass
class PendingRequest:
    seq: int                     # position in send order
    method: str
    service: str
    payload: Any
    created_at: float
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None


@dataclass
class QueuedIntent:
    id: str
    payload: Any
    known: FrozenSet[Hashable]   # candidate identities visible when queued
    created_at: float
    last_polled_at: float
    max_age_s: float
    attempts: int = 0

    def age(self, now: float) -> float:
        return now - self.created_at

    def is_expired(self, now: float) -> bool:
        return self.age(now) >= self.max_age_s


# ---- events (typed payloads published on the EventBus) ----------------------

@dataclass
class ToastAction:
    label: str
    type: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToastEvent:
    title: str
    description: str
    variant: ToastVariant = ToastVariant.DEFAULT
    action: Optional[ToastAction] = None
    duration_ms: Optional[int] = None


@dataclass
class OfferCountEvent:
    incoming: int
    outgoing: int

    @property
    def total(self) -> int:
        return self.incoming + self.outgoing


@dataclass
class NewOfferEvent:
    notification_id: str
    listing_id: str
    message: str


@dataclass
class IntentOutcomeEvent:
    intent_id: str
    outcome: IntentOutcome
    payload: Any = None
    candidate: Any = None
    result: Any = None
    error: Optional[BaseException] = None
    candidates: List[Any] = field(default_factory=list)


@dataclass
class IntentRetryEvent:
    intent_id: str
    attempts: int
    error: BaseException


@dataclass
class ConnectionStateEvent:
    state: ConnState
    previous: ConnState
