from __future__ import annotations
import asyncio
from typing import Dict, Iterable, List

from loguru import logger

from .events import ChangeEvent, ALL

_CLOSED = object()


class Subscription:
    def __init__(self, feed: "ChangeFeed", table: str, event: str,
                 maxsize: int) -> None:
        self.feed = feed
        self.table = table
        self.event = event
        self.active = True
        self._q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def _offer(self, ev: ChangeEvent) -> None:
        if not self.active:
            return
        try:
            self._q.put_nowait(ev)
        except asyncio.QueueFull:
            # slow consumer; it will resync from a fresh snapshot
            logger.warning(
                f"realtime: dropping {self.table} event for slow subscriber"
            )

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        if not self.active:
            raise StopAsyncIteration
        item = await self._q.get()
        if item is _CLOSED or not self.active:
            raise StopAsyncIteration
        return item

    async def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self.feed._remove(self)
        # drop anything queued, then wake a waiting reader
        while not self._q.empty():
            self._q.get_nowait()
        self._q.put_nowait(_CLOSED)


class ChangeFeed:
    """In-process fanout: one asyncio queue per subscription."""

    def __init__(self, maxsize: int = 1000) -> None:
        self.maxsize = maxsize
        self._subs: Dict[str, List[Subscription]] = {}

    async def subscribe(self, table: str, event: str = ALL) -> Subscription:
        sub = Subscription(self, table, event, self.maxsize)
        self._subs.setdefault(table, []).append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        subs = self._subs.get(sub.table, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subs.pop(sub.table, None)

    async def publish(self, events: Iterable[ChangeEvent]) -> None:
        for ev in events:
            for sub in list(self._subs.get(ev.table, ())):
                if ev.matches(sub.table, sub.event):
                    sub._offer(ev)

    def subscriber_count(self, table: str) -> int:
        return len(self._subs.get(table, ()))

    async def close(self) -> None:
        for subs in list(self._subs.values()):
            for sub in list(subs):
                await sub.unsubscribe()
