from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

DEFAULT_DELAY_SEC = 0.15


class TimerHandle(Protocol):
    def cancel(self) -> Any: ...


CallLater = Callable[[float, Callable[[], None]], TimerHandle]


def asyncio_call_later(delay: float, callback: Callable[[], None]) -> TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)


class SearchDebouncer:
    """Delay search recomputation until typing pauses.

    Each ``schedule`` supersedes the previous one: the older timer is cancelled
    and, should it fire anyway, its generation no longer matches and the query
    is dropped.
    """

    def __init__(
        self,
        apply: Callable[[str], None],
        *,
        delay: float = DEFAULT_DELAY_SEC,
        call_later: CallLater = asyncio_call_later,
    ) -> None:
        self._apply = apply
        self.delay = delay
        self._call_later = call_later
        self._handle: TimerHandle | None = None
        self._generation = 0
        self._pending_query: str | None = None

    @property
    def pending(self) -> bool:
        return self._pending_query is not None

    def schedule(self, query: str) -> None:
        self._cancel_handle()
        self._generation += 1
        generation = self._generation
        self._pending_query = query
        if self.delay <= 0:
            self._fire(generation, query)
            return
        self._handle = self._call_later(self.delay, lambda: self._fire(generation, query))

    def _fire(self, generation: int, query: str) -> None:
        if generation != self._generation:
            logger.debug("Dropping superseded search query %r", query)
            return
        self._handle = None
        self._pending_query = None
        self._apply(query)

    def flush(self) -> None:
        if self._pending_query is None:
            return
        query = self._pending_query
        self._cancel_handle()
        self._generation += 1
        self._fire(self._generation, query)

    def cancel(self) -> None:
        self._cancel_handle()
        self._generation += 1
        self._pending_query = None

    def _cancel_handle(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
