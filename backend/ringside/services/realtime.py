from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from typing import Any, Literal
import structlog

log = structlog.get_logger()

ChangeKind = Literal["added", "modified", "removed"]


def participants_topic(user_id: str) -> str:
    return f"participants:{user_id}"


def challenge_topic(challenge_id: str) -> str:
    return f"challenge:{challenge_id}"


def events_topic(challenge_id: str) -> str:
    return f"events:{challenge_id}"


@dataclass(frozen=True)
class ChangeEvent:
    topic: str
    kind: ChangeKind
    document_id: str
    data: dict[str, Any] = field(default_factory=dict)


class Subscription:
    """A live feed of changes on one topic.

    Iterate with `async for`; iteration ends once the subscription is
    closed. Consumers call `task_done()` after handling each change so
    `join()` can wait for the backlog to drain.
    """

    def __init__(self, broker: ChangeBroker, topic: str):
        self.broker = broker
        self.topic = topic
        self.closed = False
        self._queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue()

    def _push(self, change: ChangeEvent | None) -> None:
        self._queue.put_nowait(change)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        change = await self._queue.get()
        if change is None:
            raise StopAsyncIteration
        return change

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self.broker.unsubscribe(self)

    def _shut(self) -> None:
        # queued changes are dropped; only a change already in a consumer's
        # hands keeps join() waiting
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        # the wake-up sentinel is not a change, so it is never awaited by join()
        self._queue.put_nowait(None)
        self._queue.task_done()


class ChangeBroker:
    """In-process fan-out of document changes keyed by topic."""

    def __init__(self):
        self._subs: dict[str, list[Subscription]] = {}

    def subscribe(self, topic: str) -> Subscription:
        sub = Subscription(self, topic)
        self._subs.setdefault(topic, []).append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub.closed:
            return
        sub.closed = True
        subs = self._subs.get(sub.topic, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subs.pop(sub.topic, None)
        sub._shut()

    def publish(self, change: ChangeEvent) -> int:
        subs = list(self._subs.get(change.topic, ()))
        for sub in subs:
            sub._push(change)
        log.debug("change_published", topic=change.topic, kind=change.kind, document_id=change.document_id, receivers=len(subs))
        return len(subs)

    def subscriber_count(self, topic: str | None = None) -> int:
        if topic is not None:
            return len(self._subs.get(topic, ()))
        return sum(len(v) for v in self._subs.values())
