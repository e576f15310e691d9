# market/app/trade_sync.py
from typing import Any, Callable, List, Mapping, Optional

from utils.logger import logger as default_logger
from infra.http_client import HttpClient
from infra.ws_client import WSClient
from market.config import SyncSettings
from market.enums import ConnState, IntentOutcome, ToastVariant
from market.event_bus import EventBus
from market.models import ConnectionStateEvent, IntentOutcomeEvent, IntentRetryEvent, ToastEvent
from market.services.endpoints import make_endpoints_from_cfg
from market.services.market_service import MarketService
from market.services.offer_service import OfferService
from market.services.pending_queue import PendingListingQueue
from market.services.socket_service import SocketService
from market.stores.notification_store import NotificationDedupSet
from market.stores.offer_store import OfferStore


class TradeSync:
    """
    Application-facing trade sync.
    Wires REST session, socket correlator, pending listings and the offer view
    onto one event bus; UI layers only subscribe to the bus.
    """

    def __init__(self,
                 cfg: Mapping[str, Any],
                 *,
                 logger=None,
                 event_bus: Optional[EventBus] = None,
                 http=None,
                 conn=None) -> None:
        self.cfg = cfg
        self.settings = SyncSettings.from_cfg(cfg)
        self.endpoints = make_endpoints_from_cfg(cfg)
        self.log = logger or default_logger
        self.event_bus = event_bus or EventBus()
        s = self.settings

        self.http = http or HttpClient(cfg, self.log, token=s.token, on_auth_error=self._on_auth_error)
        self.market = MarketService(self.http, self.endpoints, s, logger=self.log)

        self.conn = conn or WSClient(self.endpoints.socket_url,
                                     reconnect_cap_s=s.reconnect_cap_s,
                                     handshake_timeout_s=s.auth_timeout_s)
        self.socket = SocketService(self.conn, s.token,
                                    request_timeout_s=s.request_timeout_s,
                                    auth_timeout_s=s.auth_timeout_s,
                                    late_grace_s=s.late_grace_s,
                                    event_bus=self.event_bus,
                                    on_auth_error=self._on_auth_error,
                                    logger=self.log)

        self.offers = OfferService(self.market,
                                   store=OfferStore(hidden_retention_s=s.hidden_retention_s),
                                   dedup=NotificationDedupSet(s.dedup_capacity),
                                   event_bus=self.event_bus,
                                   logger=self.log)

        self.pending = PendingListingQueue(self._lookup_listing, self._execute_listing,
                                           identity=MarketService.item_identity,
                                           poll_interval_s=s.poll_interval_s,
                                           max_age_s=s.intent_max_age_s,
                                           event_bus=self.event_bus,
                                           logger=self.log)
        self._subs: List[Callable[[], None]] = []

    # ---- lifecycle ----
    async def start(self) -> None:
        await self.market.authenticate()
        self._subs = [
            self.event_bus.subscribe(ConnectionStateEvent, self._on_conn_state),
            self.event_bus.subscribe(IntentOutcomeEvent, self._on_intent_outcome),
            self.event_bus.subscribe(IntentRetryEvent, self._on_intent_retry),
        ]
        self.offers.attach(self.socket)
        await self.socket.start()
        await self.pending.start()
        self.log.info("TradeSync started")

    async def stop(self) -> None:
        await self.pending.stop()
        self.offers.detach()
        await self.socket.stop()
        for unsub in self._subs:
            unsub()
        self._subs.clear()
        await self.event_bus.drain()
        await self.http.close()
        self.log.info("TradeSync stopped")

    async def __aenter__(self) -> "TradeSync":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ---- pending listings ----
    async def queue_listing(self, item_name: str, hr_price: float, note: str = "") -> str:
        """
        Queue a listing for an item that is not in the stash yet. Items already
        matching the name are remembered so only a newly arrived copy is listed.
        """
        current = await self.market.find_matching_items(item_name, fresh=True)
        payload = {"name": item_name, "hr_price": hr_price, "note": note}
        return self.pending.enqueue(payload, [MarketService.item_identity(i) for i in current])

    async def _lookup_listing(self, payload: Mapping[str, Any]) -> List[dict]:
        return await self.market.find_matching_items(payload["name"], fresh=True)

    async def _execute_listing(self, payload: Mapping[str, Any], item: Mapping[str, Any]) -> Any:
        return await self.market.list_specific_item(item, payload["hr_price"], payload.get("note", ""))

    # ---- bus handlers ----
    def _on_conn_state(self, ev: ConnectionStateEvent):
        if ev.state is ConnState.READY:
            return self.offers.refresh_quietly()
        return None

    def _on_intent_outcome(self, ev: IntentOutcomeEvent) -> None:
        name = (ev.payload or {}).get("name", "item") if isinstance(ev.payload, Mapping) else "item"
        if ev.outcome is IntentOutcome.EXECUTED:
            toast = ToastEvent("Item Listed", f"{name} has been listed on the market", ToastVariant.SUCCESS)
        elif ev.outcome is IntentOutcome.EXPIRED:
            toast = ToastEvent("Listing Timed Out",
                               f"Could not find {name} in your stash. Please list it manually.",
                               ToastVariant.ERROR)
        elif ev.outcome is IntentOutcome.FAILED:
            toast = ToastEvent("Failed to List Item", f"{name}: {ev.error}", ToastVariant.ERROR)
        elif ev.outcome is IntentOutcome.AMBIGUOUS:
            toast = ToastEvent("Multiple Matches Found",
                               f"{len(ev.candidates)} items named {name} are in your stash. Pick one to list.",
                               ToastVariant.WARNING)
        else:
            return
        self.event_bus.publish(toast)

    def _on_intent_retry(self, ev: IntentRetryEvent) -> None:
        self.event_bus.publish(ToastEvent("Still Waiting",
                                          f"Stash lookup failed, retrying: {ev.error}",
                                          ToastVariant.INFO))

    def _on_auth_error(self, *_: Any) -> None:
        self.log.error("TradeSync session rejected, reauthentication required")
        self.market.clear_stash_cache()
        self.event_bus.publish(ToastEvent("Authentication Error",
                                          "Your session has expired. Please reauthenticate.",
                                          ToastVariant.ERROR))
