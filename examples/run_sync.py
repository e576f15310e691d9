#
import argparse
import asyncio

from market.app.trade_sync import TradeSync
from market.models import NewOfferEvent, OfferCountEvent, ToastEvent
from utils import logger, load_cfg


def on_toast(ev: ToastEvent):
    logger.info(f"[TOAST:{ev.variant.value}] {ev.title} - {ev.description}")


def on_counts(ev: OfferCountEvent):
    logger.info(f"[OFFERS] incoming={ev.incoming} outgoing={ev.outgoing} total={ev.total}")


def on_new_offer(ev: NewOfferEvent):
    logger.info(f"[NEW OFFER] listing={ev.listing_id} {ev.message}")


async def main(args):
    cfg = load_cfg(args.config)
    sync = TradeSync(cfg, logger=logger)
    sync.event_bus.subscribe(ToastEvent, on_toast)
    sync.event_bus.subscribe(OfferCountEvent, on_counts)
    sync.event_bus.subscribe(NewOfferEvent, on_new_offer)

    async with sync:
        await sync.socket.wait_ready(timeout=args.ready_timeout)
        for o in sync.offers.incoming:
            logger.info(f"  <- {o.player_name}: {o.item_name} {o.price}")
        for o in sync.offers.outgoing:
            logger.info(f"  -> {o.player_name}: {o.item_name} {o.price}")

        if args.list_item:
            intent_id = await sync.queue_listing(args.list_item, args.hr_price, args.note)
            logger.info(f"queued pending listing {intent_id} for {args.list_item}")

        if args.duration > 0:
            await asyncio.sleep(args.duration)
        else:
            await asyncio.Event().wait()


if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="Run PD2 trade sync (offers + pending listings)")
    ap.add_argument("--config", default=None, help="path to config.yaml")
    ap.add_argument("--ready-timeout", type=float, default=15.0)
    ap.add_argument("--duration", type=float, default=0, help="seconds to run, 0 = forever")
    ap.add_argument("--list-item", default=None, help="item name to list once it appears in the stash")
    ap.add_argument("--hr-price", type=float, default=1.0)
    ap.add_argument("--note", default="")
    try:
        asyncio.run(main(ap.parse_args()))
    except KeyboardInterrupt:
        pass
