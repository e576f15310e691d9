# tests/test_offer_service.py
import asyncio

import pytest

from market import protocol
from market.enums import OfferDirection, ToastVariant
from market.event_bus import EventBus
from market.models import NewOfferEvent, Offer, OfferCountEvent, ToastEvent
from market.services.offer_service import OfferService
from market.stores.notification_store import NotificationDedupSet
from market.stores.offer_store import OfferStore


def offer(oid, direction=OfferDirection.INCOMING, listing_id="L1", player="bob", item="Shako", accepted=None):
    return Offer(id=oid, direction=direction, player_name=player, account_name=None, item_name=item,
                 price="2 HR", message="Offer: 2", created_at=None, listing_id=listing_id,
                 accepted_offer_id=accepted)


class FakeMarket:
    def __init__(self, incoming=(), outgoing=()):
        self.incoming = list(incoming)
        self.outgoing = list(outgoing)
        self.calls = []
        self.fetches = 0
        self.fail = None
        self.gate = None

    async def get_incoming_offers(self):
        self.fetches += 1
        return list(self.incoming)

    async def get_outgoing_offers(self):
        return list(self.outgoing)

    async def _mutation(self, *call):
        self.calls.append(call)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        return {"ok": True}

    async def accept_offer(self, listing_id, offer_id):
        return await self._mutation("accept", listing_id, offer_id)

    async def unaccept_offer(self, listing_id):
        return await self._mutation("unaccept", listing_id)

    async def reject_offer(self, offer_id):
        return await self._mutation("reject", offer_id)

    async def revoke_offer(self, offer_id):
        return await self._mutation("revoke", offer_id)


class FakeSocket:
    def __init__(self):
        self.handlers = {}

    def subscribe(self, event_type, handler):
        key = protocol.push_key(event_type)
        self.handlers.setdefault(key, []).append(handler)
        return lambda: self.handlers[key].remove(handler)

    async def push(self, name, data):
        for h in list(self.handlers.get(protocol.push_key(name), [])):
            await h(data)


def make_service(market, **kw):
    bus = EventBus()
    seen = {"toasts": [], "counts": [], "new": []}
    bus.subscribe(ToastEvent, seen["toasts"].append)
    bus.subscribe(OfferCountEvent, seen["counts"].append)
    bus.subscribe(NewOfferEvent, seen["new"].append)
    return OfferService(market, event_bus=bus, **kw), seen


def notification(nid, listing_id="L1", kind="offer_received"):
    return {"_id": nid, "type": kind, "data": {"listing_id": listing_id}, "meta": {"string": "bob offered 2 HR"}}


@pytest.mark.asyncio
async def test_refresh_replaces_cache_and_publishes_counts():
    market = FakeMarket([offer("i1"), offer("i2")], [offer("o1", OfferDirection.OUTGOING)])
    svc, seen = make_service(market)

    await svc.refresh()
    assert [o.id for o in svc.incoming] == ["i1", "i2"]
    assert [o.id for o in svc.outgoing] == ["o1"]
    assert seen["counts"][-1].total == 3

    market.incoming = [offer("i3")]
    await svc.refresh()
    assert [o.id for o in svc.incoming] == ["i3"]
    assert not svc.loading


@pytest.mark.asyncio
async def test_accept_success_toasts_and_refreshes():
    market = FakeMarket([offer("i1")])
    svc, seen = make_service(market)
    await svc.refresh()
    fetches = market.fetches

    await svc.accept("L1", "i1")

    assert market.calls == [("accept", "L1", "i1")]
    assert market.fetches == fetches + 1
    toast = seen["toasts"][-1]
    assert toast.title == "Offer Accepted"
    assert toast.description == "You accepted bob's offer on Shako"
    assert toast.variant is ToastVariant.SUCCESS


@pytest.mark.asyncio
async def test_accept_failure_leaves_cache_and_raises():
    market = FakeMarket([offer("i1")])
    svc, seen = make_service(market)
    await svc.refresh()
    fetches = market.fetches
    market.fail = RuntimeError("HTTP 500")

    with pytest.raises(RuntimeError):
        await svc.accept("L1", "i1")

    assert [o.id for o in svc.incoming] == ["i1"]
    assert market.fetches == fetches
    assert seen["toasts"][-1].title == "Failed to Accept Offer"
    assert seen["toasts"][-1].description == "An error occurred while accepting the offer"
    assert seen["toasts"][-1].variant is ToastVariant.ERROR


@pytest.mark.asyncio
async def test_unaccept_uses_the_accepted_offer_for_the_toast():
    market = FakeMarket([offer("i1", accepted="i1"), offer("i2", player="eve", accepted="i1")])
    svc, seen = make_service(market)
    await svc.refresh()
    await svc.unaccept("L1")
    assert market.calls == [("unaccept", "L1")]
    assert seen["toasts"][-1].description == "You unaccepted bob's offer on Shako"


@pytest.mark.asyncio
async def test_reject_removes_right_away_and_restores_on_failure():
    market = FakeMarket([offer("i1"), offer("i2")])
    svc, seen = make_service(market)
    await svc.refresh()
    market.gate = asyncio.Event()
    market.fail = RuntimeError("HTTP 403")

    task = asyncio.create_task(svc.reject("i1"))
    await asyncio.sleep(0)
    assert [o.id for o in svc.incoming] == ["i2"]

    market.gate.set()
    with pytest.raises(RuntimeError):
        await task
    assert [o.id for o in svc.incoming] == ["i1", "i2"]
    assert seen["toasts"][-1].title == "Failed to Reject Offer"
    assert seen["counts"][-1].incoming == 2


@pytest.mark.asyncio
async def test_reject_success_refetches():
    market = FakeMarket([offer("i1"), offer("i2")])
    svc, seen = make_service(market)
    await svc.refresh()
    market.incoming = [offer("i2")]

    await svc.reject("i1")
    assert [o.id for o in svc.incoming] == ["i2"]
    assert seen["toasts"][-1].title == "Offer Rejected"


@pytest.mark.asyncio
async def test_revoke_is_optimistic_on_outgoing():
    market = FakeMarket(outgoing=[offer("o1", OfferDirection.OUTGOING), offer("o2", OfferDirection.OUTGOING)])
    svc, seen = make_service(market)
    await svc.refresh()
    market.outgoing = [offer("o2", OfferDirection.OUTGOING)]

    await svc.revoke("o1")
    assert market.calls == [("revoke", "o1")]
    assert [o.id for o in svc.outgoing] == ["o2"]
    assert seen["toasts"][-1].description == "Your offer on Shako has been revoked"


@pytest.mark.asyncio
async def test_failed_reject_does_not_clobber_a_newer_pull():
    market = FakeMarket([offer("i1"), offer("i2")])
    svc, _ = make_service(market)
    await svc.refresh()
    market.gate = asyncio.Event()
    market.fail = RuntimeError("HTTP 500")

    task = asyncio.create_task(svc.reject("i1"))
    await asyncio.sleep(0)
    market.incoming = [offer("i2"), offer("i3")]
    await svc.refresh()

    market.gate.set()
    with pytest.raises(RuntimeError):
        await task
    assert [o.id for o in svc.incoming] == ["i2", "i3"]


@pytest.mark.asyncio
async def test_offer_notification_refreshes_once_per_id():
    market = FakeMarket([offer("i1")])
    svc, seen = make_service(market)
    sock = FakeSocket()
    svc.attach(sock)

    await sock.push("system/notification pushed", notification("n1"))
    await sock.push("system/notification pushed", notification("n1"))

    assert market.fetches == 1
    (ev,) = seen["new"]
    assert ev.listing_id == "L1" and ev.message == "bob offered 2 HR"
    toast = seen["toasts"][-1]
    assert toast.title == "New Offer"
    assert toast.action.label == "View Listing"
    assert toast.action.type == "open_market_listing"
    assert toast.action.data == {"listingId": "L1"}


@pytest.mark.asyncio
async def test_other_notifications_are_ignored_and_detach_unsubscribes():
    market = FakeMarket()
    svc, seen = make_service(market)
    sock = FakeSocket()
    svc.attach(sock)

    await sock.push("system/notification pushed", notification("n1", kind="listing_sold"))
    await sock.push("system/notification pushed", {"_id": "n2", "type": "offer_received", "data": {}})
    assert market.fetches == 0 and seen["new"] == []

    svc.detach()
    await sock.push("system/notification pushed", notification("n3"))
    assert market.fetches == 0


@pytest.mark.asyncio
async def test_evicted_notification_ids_are_processed_again():
    market = FakeMarket()
    svc, seen = make_service(market, dedup=NotificationDedupSet(2))
    sock = FakeSocket()
    svc.attach(sock)

    for nid in ("n1", "n2", "n3", "n1"):
        await sock.push("system/notification pushed", notification(nid))
    assert [e.notification_id for e in seen["new"]] == ["n1", "n2", "n3", "n1"]


def test_dedup_set_is_bounded_fifo():
    s = NotificationDedupSet(3)
    assert all(s.add(k) for k in ("a", "b", "c"))
    assert s.add("a") is False
    assert s.add("d") is True
    assert len(s) == 3
    assert "a" not in s and "d" in s
    with pytest.raises(ValueError):
        NotificationDedupSet(0)


@pytest.mark.asyncio
async def test_hide_and_restore_outgoing():
    market = FakeMarket(outgoing=[offer("o1", OfferDirection.OUTGOING), offer("o2", OfferDirection.OUTGOING)])
    svc, seen = make_service(market)
    await svc.refresh()

    assert svc.hide_outgoing("o1") is True
    assert [o.id for o in svc.outgoing] == ["o2"]
    assert [o.id for o in svc.hidden_outgoing] == ["o1"]
    assert seen["counts"][-1].outgoing == 1
    assert seen["toasts"][-1].description == (
        "Your offer on Shako has been hidden. It will be removed after 7 days.")

    # still hidden after a pull that returns it
    await svc.refresh()
    assert [o.id for o in svc.hidden_outgoing] == ["o1"]

    assert svc.restore_outgoing("o1") is True
    assert sorted(o.id for o in svc.outgoing) == ["o1", "o2"]
    assert seen["toasts"][-1].title == "Offer Restored"


@pytest.mark.asyncio
async def test_hidden_ids_gone_from_the_server_are_forgotten():
    market = FakeMarket(outgoing=[offer("o1", OfferDirection.OUTGOING)])
    store = OfferStore()
    svc, _ = make_service(market, store=store)
    await svc.refresh()
    svc.hide_outgoing("o1")

    market.outgoing = []
    await svc.refresh()
    assert not store.is_hidden("o1")

    market.outgoing = [offer("o1", OfferDirection.OUTGOING)]
    await svc.refresh()
    assert [o.id for o in svc.outgoing] == ["o1"]


def test_hidden_ids_expire_after_retention():
    now = [0.0]
    store = OfferStore(hidden_retention_s=100, clock=lambda: now[0])
    store.replace([], [offer("o1", OfferDirection.OUTGOING)])
    assert store.hide("o1")
    now[0] = 50
    assert store.purge_hidden() == 0
    now[0] = 101
    assert store.purge_hidden() == 1
    assert [o.id for o in store.outgoing] == ["o1"]
