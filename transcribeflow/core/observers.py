"""Observer lists with explicit unsubscribe.

Components publish lifecycle events to an :class:`ObserverList`.  A listener
that raises is logged and skipped; it can never abort the operation that
emitted the event or starve the listeners after it.

Listeners may be plain callables or coroutine functions.  Coroutine results
are scheduled on the running loop and their failures are logged the same way.

Typical usage::

    observers: ObserverList[JobEvent] = ObserverList("scheduler")
    unsubscribe = observers.subscribe(lambda e: print(e.kind))
    observers.emit(event)
    unsubscribe()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Generic, TypeVar

__all__ = ["ObserverList", "Listener"]

logger = logging.getLogger(__name__)

E = TypeVar("E")

Listener = Callable[[E], object]


class ObserverList(Generic[E]):
    """Ordered set of listeners for events of type ``E``.

    Args:
        name: Owner name used in log messages.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._listeners: list[Listener[E]] = []
        self._tasks: set[asyncio.Task[object]] = set()

    def __len__(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Listener[E]) -> Callable[[], None]:
        """Register *listener* and return a function that removes it again."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def clear(self) -> None:
        self._listeners.clear()

    def emit(self, event: E) -> None:
        """Deliver *event* to every listener, isolating their failures."""
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
            except Exception:  # noqa: BLE001
                logger.error("%s listener %r raised", self._name, listener, exc_info=True)
                continue
            if inspect.isawaitable(outcome):
                self._schedule(outcome)

    def _schedule(self, awaitable: object) -> None:
        try:
            task = asyncio.ensure_future(awaitable)  # type: ignore[arg-type]
        except RuntimeError:
            logger.error("%s listener returned an awaitable outside a running loop", self._name)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task[object]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s async listener raised", self._name, exc_info=exc)
