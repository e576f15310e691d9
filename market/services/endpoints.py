# market/services/endpoints.py
from dataclasses import dataclass


@dataclass
class Endpoints:
    # host base
    rest_base: str
    socket_url: str

    # REST paths
    security_session: str = "/security/session"
    market_listing: str = "/market/listing"
    market_offer: str = "/market/offer"
    game_stash: str = "/game/stash"

    def listing(self, listing_id: str) -> str:
        return f"{self.market_listing}/{listing_id}"

    def offer(self, offer_id: str) -> str:
        return f"{self.market_offer}/{offer_id}"


def make_endpoints_from_cfg(cfg: dict) -> Endpoints:
    try:
        pd2 = cfg["pd2"]
        rest_base = str(pd2["api_base"]).rstrip("/")
        socket_url = str(pd2["socket_url"])
    except KeyError as e:
        raise ValueError(f"Invalid cfg missing key: {e}") from e

    ep = Endpoints(rest_base=rest_base, socket_url=socket_url)
    # optional path overrides, e.g. pd2.paths.game_stash
    for name, path in (pd2.get("paths") or {}).items():
        if not hasattr(ep, name) or not str(path).startswith("/"):
            raise ValueError(f"Invalid cfg path override: {name}={path!r}")
        setattr(ep, name, str(path))
    return ep
