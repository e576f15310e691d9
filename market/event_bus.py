# market/event_bus.py
import asyncio
from typing import Any, Callable, Dict, List, Set, Type

from utils.logger import logger

Handler = Callable[[Any], Any]


class EventBus:
    """
    Lightweight typed pub/sub for cross-component signals (toasts, offer counts,
    intent outcomes, connection state).

    Handlers subscribe to an event class and receive every published instance of
    exactly that class. Coroutine handlers are scheduled on the running loop;
    the bus keeps a strong reference until they finish.
    """

    def __init__(self) -> None:
        self._subs: Dict[Type, List[Handler]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, event_type: Type, handler: Handler) -> Callable[[], None]:
        """Register handler for event_type; returns an unsubscribe function."""
        self._subs.setdefault(event_type, []).append(handler)

        def _unsubscribe() -> None:
            handlers = self._subs.get(event_type)
            if handlers and handler in handlers:
                handlers.remove(handler)
                if not handlers:
                    self._subs.pop(event_type, None)

        return _unsubscribe

    def publish(self, event: Any) -> None:
        """Publish an event to subscribers (fire-and-forget)."""
        for h in list(self._subs.get(type(event), [])):
            try:
                res = h(event)
                if asyncio.iscoroutine(res):
                    self._spawn(res)
            except Exception:
                logger.exception(f"EventBus handler failed for {type(event).__name__}")

    def handler_count(self, event_type: Type) -> int:
        return len(self._subs.get(event_type, []))

    def clear(self) -> None:
        self._subs.clear()

    async def drain(self) -> None:
        """Wait for every scheduled coroutine handler to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.opt(exception=task.exception()).error("EventBus async handler failed")
