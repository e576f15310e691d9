# market/config.py
from dataclasses import dataclass
from typing import Any, Mapping


@dataclass
class SyncSettings:
    """Trade sync runtime configuration."""
    api_base: str
    socket_url: str
    token: str
    account: str = ""
    mode: str = "softcore"              # "softcore" | "hardcore"
    ladder: str = "ladder"              # "ladder" | "non-ladder"

    request_timeout_s: float = 10.0     # per socket call
    auth_timeout_s: float = 10.0        # socket handshake ack
    late_grace_s: float = 2.0           # slot kept for a timed-out call's late reply
    reconnect_cap_s: float = 20.0

    poll_interval_s: float = 15.0
    intent_max_age_s: float = 15 * 60.0

    dedup_capacity: int = 100
    hidden_retention_s: float = 7 * 24 * 3600.0
    incoming_limit: int = 250
    outgoing_limit: int = 10
    stash_cache_ttl_s: float = 30.0

    @property
    def is_hardcore(self) -> bool:
        return self.mode == "hardcore"

    @property
    def is_ladder(self) -> bool:
        return self.ladder == "ladder"

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any]) -> "SyncSettings":
        try:
            pd2 = cfg["pd2"]
            api_base = str(pd2["api_base"]).rstrip("/")
            socket_url = str(pd2["socket_url"])
        except KeyError as e:
            raise ValueError(f"Invalid cfg missing key: {e}") from e

        timeouts = cfg.get("timeouts", {}) or {}
        sock = cfg.get("socket", {}) or {}
        pending = cfg.get("pending_listings", {}) or {}
        offers = cfg.get("offers", {}) or {}

        return cls(
            api_base=api_base,
            socket_url=socket_url,
            token=str(pd2.get("token") or ""),
            account=str(pd2.get("account") or ""),
            mode=str(pd2.get("mode", "softcore")).lower(),
            ladder=str(pd2.get("ladder", "ladder")).lower(),
            request_timeout_s=float(timeouts.get("socket_request_s", 10)),
            auth_timeout_s=float(timeouts.get("socket_auth_s", 10)),
            late_grace_s=float(timeouts.get("socket_late_grace_s", 2)),
            reconnect_cap_s=float(sock.get("reconnect_cap_s", 20)),
            poll_interval_s=float(pending.get("poll_interval_s", 15)),
            intent_max_age_s=float(pending.get("max_age_s", 900)),
            dedup_capacity=int(offers.get("dedup_capacity", 100)),
            hidden_retention_s=float(offers.get("hidden_retention_days", 7)) * 24 * 3600.0,
            incoming_limit=int(offers.get("incoming_limit", 250)),
            outgoing_limit=int(offers.get("outgoing_limit", 10)),
            stash_cache_ttl_s=float(offers.get("stash_cache_ttl_s", 30)),
        )
