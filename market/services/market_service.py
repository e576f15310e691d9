# market/services/market_service.py
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Hashable, List, Mapping, Optional, Union

from utils.logger import logger as default_logger
from infra import HttpPort
from market.config import SyncSettings
from market.enums import OfferDirection
from market.errors import AuthenticationError
from market.models import Offer


def _parse_ts(x) -> Optional[datetime]:
    if not x:
        return None
    try:
        return datetime.fromisoformat(str(x).replace("Z", "+00:00"))
    except ValueError:
        return None


def _first_account(user: Optional[dict]) -> Optional[str]:
    accounts = ((user or {}).get("game") or {}).get("accounts") or []
    return accounts[0] if accounts else None


def _offer_price(raw: dict) -> Optional[str]:
    if raw.get("offer"):
        return str(raw["offer"])
    if raw.get("hr_offer"):
        return f"{raw['hr_offer']} HR"
    return None


def _offer_message(raw: dict) -> str:
    return f"Offer: {raw.get('offer') or raw.get('hr_offer') or 'N/A'}"


def offer_from_incoming(listing: dict, raw: dict) -> Offer:
    """One offer on one of our listings; the counterparty is the bidder."""
    user = raw.get("user") or {}
    return Offer(
        id=raw["_id"],
        direction=OfferDirection.INCOMING,
        player_name=user.get("username") or "Unknown",
        account_name=_first_account(user),
        item_name=(listing.get("item") or {}).get("name"),
        price=_offer_price(raw),
        message=_offer_message(raw),
        created_at=_parse_ts(raw.get("created_at")),
        listing_id=listing.get("_id"),
        user_id=user.get("_id"),
        accepted_offer_id=listing.get("accepted_offer_id") or None,
    )


def offer_from_outgoing(raw: dict) -> Offer:
    """One of our offers; the counterparty is the listing owner (live or archived)."""
    listing = raw.get("listing") or raw.get("listing_archive") or {}
    user = listing.get("user") or {}
    return Offer(
        id=raw["_id"],
        direction=OfferDirection.OUTGOING,
        player_name=user.get("username") or "Unknown",
        account_name=_first_account(user),
        item_name=(listing.get("item") or {}).get("name"),
        price=_offer_price(raw),
        message=_offer_message(raw),
        created_at=_parse_ts(raw.get("created_at")),
        listing_id=listing.get("_id"),
        user_id=user.get("_id"),
        accepted_offer_id=listing.get("accepted_offer_id") or None,
    )


def _data(resp: Any) -> List[dict]:
    if isinstance(resp, dict):
        return resp.get("data") or []
    if isinstance(resp, list):
        return resp
    return []


class MarketService:
    """
    PD2 marketplace REST calls: session, offers, listings and the stash lookup
    used by pending listings.
    """

    def __init__(self,
                 http_client: HttpPort,
                 endpoints,
                 settings: Optional[SyncSettings] = None,
                 *,
                 clock: Callable[[], float] = time.monotonic,
                 logger=None) -> None:
        self._http = http_client
        self._ep = endpoints
        self._settings = settings
        self._clock = clock
        self.log = logger or getattr(http_client, "log", None) or default_logger

        self.user: Optional[dict] = None
        self._stash_cache: Optional[Dict[str, Any]] = None
        self._stash_cached_at: float = 0.0

    # ---------- session ----------
    @property
    def user_id(self) -> Optional[str]:
        return (self.user or {}).get("_id")

    async def authenticate(self) -> dict:
        """POST /security/session with the jwt strategy; remembers the user."""
        token = getattr(self._http, "token", None)
        if not token:
            raise AuthenticationError("missing PD2 session token")
        resp = await self._http.post(self._ep.security_session, {"strategy": "jwt", "accessToken": token})
        user = (resp or {}).get("user") if isinstance(resp, dict) else None
        if not user or not user.get("_id"):
            raise AuthenticationError("Authentication failed: no user in session response")
        self.user = user
        self.log.info(f"Market authenticated as {user.get('username') or user['_id']}")
        return resp

    def _require_user_id(self, user_id: Optional[str]) -> str:
        uid = user_id or self.user_id
        if not uid:
            raise AuthenticationError("Not authenticated")
        return uid

    # ---------- offers ----------
    async def get_incoming_offers(self, user_id: Optional[str] = None) -> List[Offer]:
        limit = self._settings.incoming_limit if self._settings else 250
        query = {
            "$resolve": {"user": {"in_game_account": True}, "offers": {"user": True}},
            "user_id": self._require_user_id(user_id),
            "$limit": limit,
            "$sort": {"bumped_at": -1},
        }
        listings = _data(await self._http.get(self._ep.market_listing, params=query))

        offers: List[Offer] = []
        for listing in listings:
            for raw in listing.get("offers") or []:
                if raw.get("rejected"):
                    continue
                offers.append(offer_from_incoming(listing, raw))
        return offers

    async def get_outgoing_offers(self, user_id: Optional[str] = None) -> List[Offer]:
        limit = self._settings.outgoing_limit if self._settings else 10
        query = {
            "$resolve": {"listing": True, "listing_archive": {"user": True}},
            "user_id": self._require_user_id(user_id),
            "$limit": limit,
            "$skip": 0,
            "$sort": {"updated_at": -1},
        }
        return [offer_from_outgoing(raw) for raw in _data(await self._http.get(self._ep.market_offer, params=query))]

    async def accept_offer(self, listing_id: str, offer_id: str) -> Any:
        return await self._http.patch(self._ep.listing(listing_id), {"accepted_offer_id": offer_id})

    async def unaccept_offer(self, listing_id: str) -> Any:
        return await self._http.patch(self._ep.listing(listing_id), {"accepted_offer_id": None})

    async def reject_offer(self, offer_id: str) -> Any:
        return await self._http.patch(self._ep.offer(offer_id), {"rejected": True})

    async def revoke_offer(self, offer_id: str) -> Any:
        # same wire call as reject; the offer is ours instead of the bidder's
        return await self._http.patch(self._ep.offer(offer_id), {"rejected": True})

    # ---------- listings ----------
    async def get_market_listings(self, query: Optional[Mapping[str, Any]] = None) -> Any:
        return await self._http.get(self._ep.market_listing, params=query)

    async def update_market_listing(self, listing_id: str, update: Mapping[str, Any]) -> Any:
        return await self._http.patch(self._ep.listing(listing_id), dict(update))

    async def delete_market_listing(self, listing_id: str) -> Any:
        return await self._http.delete(self._ep.listing(listing_id))

    async def list_specific_item(self, stash_item: Mapping[str, Any], hr_price: float, note: str = "") -> Any:
        """POST /market/listing for one concrete stash item."""
        s = self._settings
        body = {
            "user_id": self._require_user_id(None),
            "type": "item",
            "is_hardcore": s.is_hardcore if s else False,
            "is_ladder": s.is_ladder if s else True,
            "item": {**dict(stash_item), "account_id": (s.account if s else "").lower()},
            "hr_price": hr_price,
            "price": note,
            "bumped_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }
        resp = await self._http.post(self._ep.market_listing, body)
        self.log.info(f"Market listed {stash_item.get('name')} hr_price={hr_price}")
        return resp

    # ---------- stash ----------
    async def get_stash(self, *, force: bool = False) -> Dict[str, Any]:
        ttl = self._settings.stash_cache_ttl_s if self._settings else 30.0
        now = self._clock()
        if not force and self._stash_cache is not None and now - self._stash_cached_at < ttl:
            return self._stash_cache

        s = self._settings
        params = {"account": (s.account if s else "").lower()}
        if s:
            params.update({"is_hardcore": s.is_hardcore, "is_ladder": s.is_ladder})
        resp = await self._http.get(self._ep.game_stash, params=params) or {}
        self._stash_cache = resp if isinstance(resp, dict) else {"items": _data(resp)}
        self._stash_cached_at = now
        return self._stash_cache

    def clear_stash_cache(self) -> None:
        self._stash_cache = None
        self._stash_cached_at = 0.0

    async def find_matching_items(self, item: Union[str, Mapping[str, Any]], *, fresh: bool = False) -> List[dict]:
        """Stash items whose name matches (case-insensitive). Lookup step for pending listings."""
        name = item if isinstance(item, str) else (item.get("name") or "")
        wanted = name.strip().lower()
        if not wanted:
            return []
        stash = await self.get_stash(force=fresh)
        return [it for it in stash.get("items") or [] if str(it.get("name") or "").strip().lower() == wanted]

    @staticmethod
    def item_identity(item: Mapping[str, Any]) -> Hashable:
        """Stable identity of a stash item across polls."""
        return item.get("hash") or item.get("_id") or item.get("id")
