# market/stores/offer_store.py
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from market.models import Offer

Snapshot = Tuple[int, List[Offer], List[Offer]]


class OfferStore:
    """
    In-memory offer mirror: incoming, outgoing, and the ids of outgoing
    offers the user chose to hide.
    """

    def __init__(self,
                 hidden_retention_s: float = 7 * 24 * 3600.0,
                 clock: Callable[[], float] = time.time) -> None:
        self._incoming: List[Offer] = []
        self._outgoing: List[Offer] = []
        self._hidden: Dict[str, float] = {}   # offer id -> hidden at (wall clock)
        self._retention_s = hidden_retention_s
        self._clock = clock
        self.generation = 0                   # bumped on every replace()

    @property
    def hidden_retention_s(self) -> float:
        return self._retention_s

    def replace(self, incoming: Iterable[Offer], outgoing: Iterable[Offer]) -> None:
        """Swap in a fresh pull. Hidden ids the server no longer returns are forgotten."""
        self._incoming = list(incoming)
        self._outgoing = list(outgoing)
        live = {o.id for o in self._outgoing}
        for oid in [oid for oid in self._hidden if oid not in live]:
            del self._hidden[oid]
        self.generation += 1

    @property
    def incoming(self) -> List[Offer]:
        return list(self._incoming)

    @property
    def outgoing(self) -> List[Offer]:
        return [o for o in self._outgoing if o.id not in self._hidden]

    @property
    def hidden_outgoing(self) -> List[Offer]:
        return [o for o in self._outgoing if o.id in self._hidden]

    def get(self, offer_id: str) -> Optional[Offer]:
        for o in self._incoming + self._outgoing:
            if o.id == offer_id:
                return o
        return None

    def remove(self, offer_id: str) -> Optional[Offer]:
        found = self.get(offer_id)
        if found is not None:
            self._incoming = [o for o in self._incoming if o.id != offer_id]
            self._outgoing = [o for o in self._outgoing if o.id != offer_id]
        return found

    def snapshot(self) -> Snapshot:
        return self.generation, list(self._incoming), list(self._outgoing)

    def restore(self, snap: Snapshot) -> bool:
        """Put a snapshot back unless a newer pull already replaced it."""
        generation, incoming, outgoing = snap
        if generation != self.generation:
            return False
        self._incoming = list(incoming)
        self._outgoing = list(outgoing)
        return True

    # ---- hidden outgoing ----
    def hide(self, offer_id: str) -> bool:
        if offer_id in self._hidden or not any(o.id == offer_id for o in self._outgoing):
            return False
        self._hidden[offer_id] = self._clock()
        return True

    def unhide(self, offer_id: str) -> bool:
        return self._hidden.pop(offer_id, None) is not None

    def is_hidden(self, offer_id: str) -> bool:
        return offer_id in self._hidden

    def purge_hidden(self) -> int:
        cutoff = self._clock() - self._retention_s
        stale = [oid for oid, at in self._hidden.items() if at < cutoff]
        for oid in stale:
            del self._hidden[oid]
        return len(stale)
