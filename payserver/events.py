"""In-process publish/subscribe for domain events."""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Type

from .models import User

logger = logging.getLogger("payserver.events")

Handler = Callable[[Any], Any]


@dataclass(frozen=True)
class UserApprovedEvent:
    """Raised after an administrator approves or unapproves an account."""

    user: User
    approved: bool
    request_uri: str


class EventAggregator:
    """Dispatches published events to the handlers subscribed to their type.

    Publishing is fire-and-forget: handler failures are logged and never
    reach the publisher. Coroutine handlers are scheduled on the running event
    loop, or on a daemon thread when the publisher has no loop.
    """

    def __init__(self) -> None:
        self._handlers: Dict[type, List[Handler]] = {}
        self._lock = threading.Lock()
        self._pending: set = set()
        self._threads: Set[threading.Thread] = set()

    def subscribe(self, event_type: Type[Any], handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(event_type, [])
                if handler in handlers:
                    handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: Any) -> None:
        with self._lock:
            handlers = [
                handler
                for event_type in type(event).__mro__
                for handler in self._handlers.get(event_type, ())
            ]

        logger.debug("Publishing %s to %d handler(s)", type(event).__name__, len(handlers))
        for handler in handlers:
            try:
                result = handler(event)
            except Exception:
                logger.exception("Event handler %r failed for %s", handler, type(event).__name__)
                continue
            if inspect.isawaitable(result):
                self._schedule(result, event)

    def _schedule(self, awaitable: Any, event: Any) -> None:
        async def _run() -> None:
            try:
                await awaitable
            except Exception:
                logger.exception("Async event handler failed for %s", type(event).__name__)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._run_in_thread(_run())
            return

        task = loop.create_task(_run())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _run_in_thread(self, coro: Any) -> None:
        def _target() -> None:
            try:
                asyncio.run(coro)
            finally:
                with self._lock:
                    self._threads.discard(thread)

        thread = threading.Thread(target=_target, name="payserver-event", daemon=True)
        with self._lock:
            self._threads.add(thread)
        thread.start()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for handlers running on background threads. Returns ``False`` on timeout."""

        with self._lock:
            threads = list(self._threads)
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
            if thread.is_alive():
                return False
        return True


__all__ = ["EventAggregator", "UserApprovedEvent"]
