# market/services/offer_service.py
import asyncio
from typing import Any, Awaitable, Callable, List, Optional

from utils.logger import logger as default_logger
from market.enums import ToastVariant
from market.event_bus import EventBus
from market.models import NewOfferEvent, Offer, OfferCountEvent, ToastAction, ToastEvent
from market.stores.notification_store import NotificationDedupSet
from market.stores.offer_store import OfferStore

OFFER_NOTIFICATION_EVENT = "socket:system/notification_pushed"
OFFER_RECEIVED = "offer_received"
OPEN_MARKET_LISTING = "open_market_listing"


def _on_item(offer: Optional[Offer]) -> str:
    return (offer.item_name if offer else None) or "item"


class OfferService:
    """
    Local view of the user's incoming and outgoing offers.

    The server is the source of truth: refresh() pulls both lists and replaces
    the cache; concurrent refreshes are allowed and the last one to finish
    wins. Mutations go to the server first and refresh afterwards. reject and
    revoke drop the offer from the view right away and put it back if the
    server refuses. Offer notifications pushed over the socket trigger a
    refresh once per notification id.
    """

    def __init__(self,
                 market,
                 *,
                 store: Optional[OfferStore] = None,
                 dedup: Optional[NotificationDedupSet] = None,
                 event_bus: Optional[EventBus] = None,
                 logger=None) -> None:
        self._market = market
        self._store = store or OfferStore()
        self._dedup = dedup or NotificationDedupSet()
        self.events = event_bus or EventBus()
        self.log = logger or default_logger
        self._refreshing = 0
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ---------- snapshot ----------
    @property
    def incoming(self) -> List[Offer]:
        return self._store.incoming

    @property
    def outgoing(self) -> List[Offer]:
        return self._store.outgoing

    @property
    def hidden_outgoing(self) -> List[Offer]:
        return self._store.hidden_outgoing

    @property
    def loading(self) -> bool:
        return self._refreshing > 0

    # ---------- pull ----------
    async def refresh(self) -> None:
        """Pull incoming and outgoing offers and replace the cache. Errors propagate."""
        self._refreshing += 1
        try:
            incoming, outgoing = await asyncio.gather(
                self._market.get_incoming_offers(),
                self._market.get_outgoing_offers(),
            )
        finally:
            self._refreshing -= 1
        self._store.replace(incoming, outgoing)
        purged = self._store.purge_hidden()
        if purged:
            self.log.debug(f"Offers purged {purged} expired hidden id(s)")
        self.log.debug(f"Offers refreshed incoming={len(incoming)} outgoing={len(outgoing)}")
        self._publish_counts()

    async def refresh_quietly(self) -> None:
        try:
            await self.refresh()
        except Exception as e:
            self.log.warning(f"Offers refresh failed: {e}")

    def _publish_counts(self) -> None:
        self.events.publish(OfferCountEvent(incoming=len(self._store.incoming),
                                            outgoing=len(self._store.outgoing)))

    def _toast(self, title: str, description: str, variant: ToastVariant = ToastVariant.SUCCESS,
               action: Optional[ToastAction] = None) -> None:
        self.events.publish(ToastEvent(title=title, description=description, variant=variant, action=action))

    # ---------- mutations ----------
    async def _mutate(self,
                      call: Callable[[], Awaitable[Any]],
                      *,
                      verb: str,
                      success_title: str,
                      success_desc: str,
                      optimistic_id: Optional[str] = None) -> Any:
        snap = None
        if optimistic_id is not None:
            snap = self._store.snapshot()
            if self._store.remove(optimistic_id) is not None:
                self._publish_counts()
        try:
            res = await call()
        except Exception as e:
            self.log.error(f"Offers failed to {verb} offer: {e}")
            if snap is not None and self._store.restore(snap):
                self._publish_counts()
            self._toast(f"Failed to {verb.capitalize()} Offer",
                        f"An error occurred while {verb.rstrip('e')}ing the offer", ToastVariant.ERROR)
            raise
        self._toast(success_title, success_desc)
        await self.refresh_quietly()
        return res

    async def accept(self, listing_id: str, offer_id: str) -> Any:
        offer = next((o for o in self._store.incoming if o.id == offer_id and o.listing_id == listing_id), None)
        desc = (f"You accepted {offer.player_name}'s offer on {_on_item(offer)}"
                if offer else "Offer has been accepted")
        return await self._mutate(lambda: self._market.accept_offer(listing_id, offer_id),
                                  verb="accept", success_title="Offer Accepted", success_desc=desc)

    async def unaccept(self, listing_id: str) -> Any:
        offer = next((o for o in self._store.incoming if o.listing_id == listing_id and o.is_accepted), None)
        desc = (f"You unaccepted {offer.player_name}'s offer on {_on_item(offer)}"
                if offer else "Offer has been unaccepted")
        return await self._mutate(lambda: self._market.unaccept_offer(listing_id),
                                  verb="unaccept", success_title="Offer Unaccepted", success_desc=desc)

    async def reject(self, offer_id: str) -> Any:
        offer = next((o for o in self._store.incoming if o.id == offer_id), None)
        desc = (f"You rejected {offer.player_name}'s offer on {_on_item(offer)}"
                if offer else "Offer has been rejected")
        return await self._mutate(lambda: self._market.reject_offer(offer_id),
                                  verb="reject", success_title="Offer Rejected", success_desc=desc,
                                  optimistic_id=offer_id)

    async def revoke(self, offer_id: str) -> Any:
        offer = next((o for o in self._store.outgoing + self._store.hidden_outgoing if o.id == offer_id), None)
        desc = f"Your offer on {_on_item(offer)} has been revoked" if offer else "Offer has been revoked"
        return await self._mutate(lambda: self._market.revoke_offer(offer_id),
                                  verb="revoke", success_title="Offer Revoked", success_desc=desc,
                                  optimistic_id=offer_id)

    # ---------- hidden outgoing ----------
    def hide_outgoing(self, offer_id: str) -> bool:
        offer = next((o for o in self._store.outgoing if o.id == offer_id), None)
        hidden = self._store.hide(offer_id)
        if hidden:
            self._publish_counts()
        days = round(self._store.hidden_retention_s / 86400)
        self._toast("Offer Hidden",
                    f"Your offer on {_on_item(offer)} has been hidden. It will be removed after {days} days."
                    if offer else "Offer has been hidden")
        return hidden

    def restore_outgoing(self, offer_id: str) -> bool:
        offer = next((o for o in self._store.hidden_outgoing if o.id == offer_id), None)
        restored = self._store.unhide(offer_id)
        if restored:
            self._publish_counts()
        self._toast("Offer Restored",
                    f"Your offer on {_on_item(offer)} has been restored" if offer else "Offer has been restored")
        return restored

    # ---------- push ----------
    def attach(self, socket) -> Callable[[], None]:
        """Listen for offer notifications on the socket correlator."""
        self.detach()
        self._unsubscribe = socket.subscribe(OFFER_NOTIFICATION_EVENT, self._on_notification)
        return self.detach

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def _on_notification(self, notification: Any) -> None:
        if not isinstance(notification, dict) or notification.get("type") != OFFER_RECEIVED:
            return
        listing_id = (notification.get("data") or {}).get("listing_id")
        if not listing_id:
            return
        nid = notification.get("_id") or f"{listing_id}:{notification.get('created_at')}"
        if not self._dedup.add(nid):
            self.log.debug(f"Offers duplicate notification {nid} ignored")
            return

        message = (notification.get("meta") or {}).get("string") or "New offer received"
        self.log.info(f"Offers new offer on listing {listing_id}")
        self.events.publish(NewOfferEvent(notification_id=nid, listing_id=listing_id, message=message))
        self._toast("New Offer", message, ToastVariant.DEFAULT,
                    action=ToastAction(label="View Listing", type=OPEN_MARKET_LISTING,
                                       data={"listingId": listing_id}))
        await self.refresh_quietly()
