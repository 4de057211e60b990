from __future__ import annotations
import asyncio
from typing import Awaitable, Callable
import structlog

from ringside.schemas.challenge import ChallengePublic, ChallengeEventPublic
from ringside.services.challenges import ChallengeService
from ringside.services.realtime import (
    ChangeBroker, ChangeEvent, Subscription, participants_topic, challenge_topic, events_topic,
)
from ringside.services.scoring import pick_active, sort_completed

log = structlog.get_logger()

UpdateCallback = Callable[["ChallengeListener"], None]


class ChallengeListener:
    """Live view of one user's active challenge and finished challenges.

    Watches the user's memberships; the active challenge additionally gets a
    watch on its root document and on its event feed. All state changes
    happen on the event loop, so observers see a single writer.
    """

    def __init__(self, service: ChallengeService, broker: ChangeBroker):
        self.service = service
        self.broker = broker
        self.user_id: str | None = None
        self.active_challenge: ChallengePublic | None = None
        self.completed_challenges: list[ChallengePublic] = []
        self._subs: list[Subscription] = []
        self._active_subs: list[Subscription] = []
        self._tasks: dict[Subscription, asyncio.Task] = {}
        self._callbacks: list[UpdateCallback] = []
        self._live = False

    # ---------- observers ----------

    def on_update(self, cb: UpdateCallback) -> Callable[[], None]:
        self._callbacks.append(cb)

        def remove():
            if cb in self._callbacks:
                self._callbacks.remove(cb)
        return remove

    def _emit(self) -> None:
        for cb in list(self._callbacks):
            try:
                cb(self)
            except Exception:
                log.exception("challenge_listener_callback_failed")

    @property
    def subscription_count(self) -> int:
        return len(self._subs)

    # ---------- lifecycle ----------

    async def start_listening(self, user_id: str) -> None:
        self.stop_listening()
        self.user_id = user_id
        self._live = True
        self._watch(self.broker.subscribe(participants_topic(user_id)), self._on_membership_change)
        await self.refresh()

    def stop_listening(self) -> None:
        current = asyncio.current_task() if _loop_running() else None
        for sub in self._subs:
            self.broker.unsubscribe(sub)
            task = self._tasks.pop(sub, None)
            if task is not None and task is not current:
                task.cancel()
        self._subs.clear()
        self._active_subs.clear()
        self._tasks.clear()
        self.user_id = None
        self._live = False

    async def load(self, user_id: str) -> None:
        """One-shot classification without live watches."""
        self.user_id = user_id
        await self.refresh()

    async def settle(self) -> None:
        """Wait until every queued change has been handled."""
        while True:
            busy = [s for s in self._subs if not s.closed and (s.pending() or s in self._tasks)]
            before = list(self._subs)
            for sub in busy:
                if sub.closed:
                    # detached by an earlier handler in this pass
                    continue
                task = self._tasks.get(sub)
                join = asyncio.ensure_future(sub.join())
                waiters = [join] + ([task] if task is not None else [])
                await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                if not join.done():
                    join.cancel()
            if before == self._subs and all(s.pending() == 0 for s in self._subs):
                return

    # ---------- state ----------

    async def refresh(self) -> None:
        user_id = self.user_id
        if user_id is None:
            return
        try:
            live = await self.service.challenges_for_user(user_id)
            archived = await self.service.completed_for_user(user_id)
        except Exception:
            # keep what we had; a failed read must not blank the view
            log.exception("challenge_listener_refresh_failed", user_id=user_id)
            return
        if user_id != self.user_id:
            return
        now = self.service.clock()
        seen: set[str] = set()
        merged: list[ChallengePublic] = []
        for ch in live + archived:
            if ch.id not in seen:
                seen.add(ch.id)
                merged.append(ch)
        self.completed_challenges = sort_completed(merged, now)
        self.adopt(pick_active(live, now))
        log.info(
            "challenge_listener_refreshed", user_id=user_id,
            active=self.active_challenge.id if self.active_challenge else None,
            completed=len(self.completed_challenges),
        )
        self._emit()

    def adopt(self, ch: ChallengePublic | None) -> None:
        """Make `ch` the active challenge, moving the document/event watches to it."""
        prev = self.active_challenge.id if self.active_challenge else None
        self.active_challenge = ch
        if ch is None:
            self._detach_active()
            return
        if ch.id != prev or not self._active_subs:
            self._detach_active()
            if self._live:
                self._active_subs = [
                    self._watch(self.broker.subscribe(challenge_topic(ch.id)), self._on_challenge_change),
                    self._watch(self.broker.subscribe(events_topic(ch.id)), self._on_event_added),
                ]

    def clear_active(self, challenge_id: str) -> bool:
        # a late removal for a challenge we already moved away from is ignored
        if self.active_challenge is None or self.active_challenge.id != challenge_id:
            return False
        self.adopt(None)
        return True

    def _detach_active(self) -> None:
        current = asyncio.current_task() if _loop_running() else None
        for sub in self._active_subs:
            self.broker.unsubscribe(sub)
            if sub in self._subs:
                self._subs.remove(sub)
            task = self._tasks.pop(sub, None)
            if task is not None and task is not current:
                task.cancel()
        self._active_subs = []

    # ---------- change handlers ----------

    def _watch(self, sub: Subscription, handler: Callable[[ChangeEvent], Awaitable[None]]) -> Subscription:
        self._subs.append(sub)
        self._tasks[sub] = asyncio.create_task(self._pump(sub, handler))
        return sub

    async def _pump(self, sub: Subscription, handler: Callable[[ChangeEvent], Awaitable[None]]) -> None:
        async for change in sub:
            try:
                await handler(change)
            except Exception:
                log.exception("challenge_listener_change_failed", topic=sub.topic, kind=change.kind)
            finally:
                sub.task_done()
        self._tasks.pop(sub, None)

    async def _on_membership_change(self, change: ChangeEvent) -> None:
        await self.refresh()

    async def _on_challenge_change(self, change: ChangeEvent) -> None:
        cid = change.document_id
        if change.kind == "removed":
            if self.clear_active(cid):
                log.info("challenge_listener_active_removed", challenge_id=cid)
                self._emit()
            return
        fresh = await self.service.find_live(cid)
        if fresh is None:
            if self.clear_active(cid):
                self._emit()
            return
        if self.active_challenge is not None and self.active_challenge.id == cid:
            self.active_challenge = fresh
            self._emit()

    async def _on_event_added(self, change: ChangeEvent) -> None:
        ch = self.active_challenge
        if ch is None or change.topic != events_topic(ch.id) or not change.data:
            return
        ev = ChallengeEventPublic.model_validate(change.data)
        if any(e.id == ev.id for e in ch.recent_events):
            return
        events = sorted([ev] + ch.recent_events, key=lambda e: e.timestamp, reverse=True)
        ch.recent_events = events[: self.service.recent_limit]
        self._emit()


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
