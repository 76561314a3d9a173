from __future__ import annotations
from typing import Iterable

import orjson
import redis.asyncio as redis
from loguru import logger

from .events import ChangeEvent, ALL


def k_channel(table: str) -> str: return f"rifa:changes:{table}"


class Subscription:
    def __init__(self, pubsub: redis.client.PubSub, table: str,
                 event: str) -> None:
        self.pubsub = pubsub
        self.table = table
        self.event = event
        self.active = True

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        while self.active:
            message = await self.pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if not self.active:
                break
            if not message or message["type"] != "message":
                continue
            try:
                ev = ChangeEvent.from_dict(orjson.loads(message["data"]))
            except (orjson.JSONDecodeError, KeyError, TypeError):
                logger.warning(f"realtime: bad payload on {self.table}")
                continue
            if ev.matches(self.table, self.event):
                return ev
        raise StopAsyncIteration

    async def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        await self.pubsub.unsubscribe(k_channel(self.table))
        await self.pubsub.aclose()


class ChangeFeed:
    """Fanout across workers: one pub/sub channel per table."""

    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def subscribe(self, table: str, event: str = ALL) -> Subscription:
        pubsub = self.r.pubsub()
        await pubsub.subscribe(k_channel(table))
        return Subscription(pubsub, table, event)

    async def publish(self, events: Iterable[ChangeEvent]) -> None:
        # one round trip; channel order preserves per-row commit order
        pipe = self.r.pipeline(transaction=False)
        n = 0
        for ev in events:
            pipe.publish(k_channel(ev.table), orjson.dumps(ev.to_dict()))
            n += 1
        if n:
            await pipe.execute()

    async def close(self) -> None:
        return None
