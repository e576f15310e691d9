# market/services/pending_queue.py
import asyncio
import contextlib
import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, List, Optional, Set

from utils.logger import logger as default_logger
from market.enums import IntentOutcome
from market.errors import AmbiguousMatchError, IntentExpired, RemoteExecutionError
from market.event_bus import EventBus
from market.idempotency import make_intent_id
from market.models import IntentOutcomeEvent, IntentRetryEvent, QueuedIntent

Lookup = Callable[[Any], Awaitable[Iterable[Any]]]
Execute = Callable[[Any, Any], Awaitable[Any]]
Identity = Callable[[Any], Hashable]


def _same(candidate: Any) -> Hashable:
    return candidate


class PendingListingQueue:
    """
    Queue of intents waiting for a remote record to show up.

    Every poll_interval_s the whole active set is polled, each intent in its
    own task and at most one poll per intent at a time. For each intent the
    injected lookup(payload) returns candidates. A candidate that was not
    visible when the intent was queued (or the only candidate, when nothing
    was visible) is handed to execute(payload, candidate). Each intent ends
    exactly once: EXECUTED, FAILED, EXPIRED, CANCELLED or AMBIGUOUS, reported
    as an IntentOutcomeEvent on the event bus.

    The intent leaves the active set before execute is awaited, so a later
    cycle can never execute it a second time.
    """

    def __init__(self,
                 lookup: Lookup,
                 execute: Execute,
                 *,
                 identity: Identity = _same,
                 poll_interval_s: float = 15.0,
                 max_age_s: float = 15 * 60.0,
                 event_bus: Optional[EventBus] = None,
                 clock: Callable[[], float] = time.monotonic,
                 logger=None) -> None:
        self._lookup = lookup
        self._execute = execute
        self._identity = identity
        self._poll_interval_s = poll_interval_s
        self._max_age_s = max_age_s
        self.events = event_bus or EventBus()
        self._clock = clock
        self.log = logger or default_logger

        self._active: "OrderedDict[str, QueuedIntent]" = OrderedDict()
        self._handed_off: Dict[str, QueuedIntent] = {}
        self._inflight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._runner: Optional[asyncio.Task] = None

    # ---- caller surface ----
    def enqueue(self, payload: Any, known_ids: Iterable[Hashable] = (), *,
                max_age_s: Optional[float] = None) -> str:
        """Queue payload; known_ids are identities of candidates already visible. No remote call here."""
        now = self._clock()
        intent = QueuedIntent(
            id=make_intent_id(),
            payload=payload,
            known=frozenset(known_ids),
            created_at=now,
            last_polled_at=now,
            max_age_s=self._max_age_s if max_age_s is None else max_age_s,
        )
        self._active[intent.id] = intent
        self.log.info(f"PendingQueue enqueued {intent.id} known={len(intent.known)}")
        return intent.id

    def cancel(self, intent_id: str) -> bool:
        intent = self._active.pop(intent_id, None) or self._handed_off.pop(intent_id, None)
        if intent is None:
            return False
        self.log.info(f"PendingQueue cancelled {intent_id}")
        self._emit(IntentOutcomeEvent(intent_id=intent_id, outcome=IntentOutcome.CANCELLED, payload=intent.payload))
        return True

    def list_active(self) -> List[QueuedIntent]:
        return list(self._active.values())

    def get(self, intent_id: str) -> Optional[QueuedIntent]:
        return self._active.get(intent_id)

    def list_handed_off(self) -> List[QueuedIntent]:
        return list(self._handed_off.values())

    async def resolve(self, payload: Any, candidate: Any, intent_id: Optional[str] = None) -> IntentOutcomeEvent:
        """
        Follow-up for an AMBIGUOUS handoff: execute against the candidate the
        caller picked. Without intent_id a fresh id is used for the outcome.

        An intent_id that is no longer waiting for a choice raises KeyError and
        executes nothing.
        """
        if intent_id is None:
            return await self._run_execute(make_intent_id(), payload, candidate)
        intent = self._handed_off.pop(intent_id, None)
        if intent is None:
            raise KeyError(f"intent {intent_id} is not awaiting a choice")
        if payload is None:
            payload = intent.payload
        return await self._run_execute(intent_id, payload, candidate)

    # ---- driver ----
    async def start(self) -> None:
        if self._runner and not self._runner.done():
            return
        self._runner = asyncio.create_task(self._run())
        self.log.info(f"PendingQueue started interval={self._poll_interval_s}s max_age={self._max_age_s}s")

    async def stop(self) -> None:
        if self._runner:
            self._runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._runner
            self._runner = None
        for t in list(self._tasks):
            t.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
        self._inflight.clear()

    async def _run(self) -> None:
        while True:
            self._tick()
            await asyncio.sleep(self._poll_interval_s)

    async def poll_once(self) -> None:
        """Run one cycle and wait for the polls it started."""
        started = self._tick()
        if started:
            await asyncio.gather(*started, return_exceptions=True)

    def _tick(self) -> List[asyncio.Task]:
        started: List[asyncio.Task] = []
        for intent in list(self._active.values()):
            if intent.id in self._inflight:
                continue
            self._inflight.add(intent.id)
            task = asyncio.get_running_loop().create_task(self._poll(intent))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started.append(task)
        return started

    def _take(self, intent: QueuedIntent) -> bool:
        """Remove intent if it is still the live entry for its id."""
        if self._active.get(intent.id) is not intent:
            return False
        del self._active[intent.id]
        return True

    async def _poll(self, intent: QueuedIntent) -> None:
        try:
            if intent.is_expired(self._clock()):
                if self._take(intent):
                    err = IntentExpired(f"no match within {intent.max_age_s:.0f}s")
                    self.log.warning(f"PendingQueue {intent.id} expired after {intent.attempts} poll(s)")
                    self._emit(IntentOutcomeEvent(intent_id=intent.id, outcome=IntentOutcome.EXPIRED,
                                                  payload=intent.payload, error=err))
                return

            try:
                candidates = list(await self._lookup(intent.payload))
            except Exception as e:
                if self._active.get(intent.id) is intent:
                    intent.attempts += 1
                    intent.last_polled_at = self._clock()
                    self.log.warning(f"PendingQueue {intent.id} lookup failed (attempt {intent.attempts}): {e}")
                    self._emit(IntentRetryEvent(intent_id=intent.id, attempts=intent.attempts, error=e))
                return

            if self._active.get(intent.id) is not intent:
                self.log.debug(f"PendingQueue {intent.id} gone during lookup, result dropped")
                return
            intent.attempts += 1
            intent.last_polled_at = self._clock()

            unique: "OrderedDict[Hashable, Any]" = OrderedDict()
            for c in candidates:
                unique.setdefault(self._identity(c), c)

            if intent.known:
                novel = [c for key, c in unique.items() if key not in intent.known]
                if len(novel) != 1:
                    return
                target = novel[0]
            elif len(unique) == 1:
                target = next(iter(unique.values()))
            elif len(unique) >= 2:
                self._hand_off(intent, list(unique.values()))
                return
            else:
                return

            self._take(intent)
            await self._run_execute(intent.id, intent.payload, target)
        finally:
            self._inflight.discard(intent.id)

    def _hand_off(self, intent: QueuedIntent, candidates: List[Any]) -> None:
        self._take(intent)
        self._handed_off[intent.id] = intent
        err = AmbiguousMatchError("more than one candidate matches", candidates, intent_id=intent.id,
                                  count=len(candidates))
        self.log.info(f"PendingQueue {intent.id} ambiguous: {len(candidates)} candidates, handed off")
        self._emit(IntentOutcomeEvent(intent_id=intent.id, outcome=IntentOutcome.AMBIGUOUS,
                                      payload=intent.payload, error=err, candidates=candidates))

    async def _run_execute(self, intent_id: str, payload: Any, candidate: Any) -> IntentOutcomeEvent:
        try:
            result = await self._execute(payload, candidate)
        except asyncio.CancelledError:
            # the remote side may or may not have applied it
            err = RemoteExecutionError("execute interrupted before it completed", intent_id=intent_id)
            self.log.warning(f"PendingQueue {intent_id} execute interrupted, remote result unknown")
            self._emit(IntentOutcomeEvent(intent_id=intent_id, outcome=IntentOutcome.FAILED,
                                          payload=payload, candidate=candidate, error=err))
            raise
        except Exception as e:
            err = RemoteExecutionError(f"execute rejected: {e}", intent_id=intent_id, cause=e)
            self.log.error(f"PendingQueue {intent_id} execute failed: {e}")
            ev = IntentOutcomeEvent(intent_id=intent_id, outcome=IntentOutcome.FAILED,
                                    payload=payload, candidate=candidate, error=err)
        else:
            self.log.info(f"PendingQueue {intent_id} executed")
            ev = IntentOutcomeEvent(intent_id=intent_id, outcome=IntentOutcome.EXECUTED,
                                    payload=payload, candidate=candidate, result=result)
        self._emit(ev)
        return ev

    def _emit(self, event: Any) -> None:
        self.events.publish(event)
