from __future__ import annotations
from datetime import datetime
import structlog

from ringside.schemas.challenge import ChallengeCreate, ChallengePublic, ChallengeEventPublic, FeedbackViewed, Invite
from ringside.services.challenges import ChallengeService
from ringside.services.errors import AlreadyInChallenge
from ringside.services.listener import ChallengeListener

log = structlog.get_logger()


class ChallengeSession:
    """Challenge operations on behalf of one signed-in user.

    Scoring and invites target the user's active challenge as seen by the
    listener, so the caller never has to know the challenge id.
    """

    def __init__(self, user_id: str | None, user_name: str | None, service: ChallengeService, listener: ChallengeListener):
        self.user_id = user_id
        self.user_name = user_name or "Unknown"
        self.service = service
        self.listener = listener

    @property
    def active_challenge(self) -> ChallengePublic | None:
        return self.listener.active_challenge

    @property
    def completed_challenges(self) -> list[ChallengePublic]:
        return self.listener.completed_challenges

    async def process_event(self, event: FeedbackViewed | Invite) -> ChallengePublic | None:
        active = self.active_challenge
        if active is None or not self.user_id:
            log.info("challenge_event_skipped", reason="no_active_challenge" if active is None else "no_user", type=event.type)
            return None
        if isinstance(event, FeedbackViewed):
            snap = await self.service.apply_feedback(
                active.id, self.user_id, event.feedback_id, event.score, user_name=self.user_name,
            )
        else:
            snap = await self.service.handle_invite(active.id, event.user_id, event.user_name, referrer_id=self.user_id)
        self._replace_active(snap)
        return snap

    async def create_challenge(self, data: ChallengeCreate) -> ChallengePublic:
        if self.active_challenge is not None:
            raise AlreadyInChallenge()
        snap = await self.service.create_challenge(data, self.user_id, self.user_name)
        # visible right away, no round trip through the listener; an upcoming
        # challenge is picked up by a later refresh once it starts
        if snap.runtime_state == "active":
            self.listener.adopt(snap)
        return snap

    async def join(self, challenge_id: str, referrer_id: str | None = None) -> ChallengePublic:
        snap = await self.service.handle_invite(challenge_id, self.user_id, self.user_name, referrer_id=referrer_id)
        if snap.runtime_state == "active" and self.active_challenge is None:
            self.listener.adopt(snap)
        return snap

    async def load_more_events(self, before: datetime) -> list[ChallengeEventPublic]:
        active = self.active_challenge
        if active is None:
            return []
        return await self.service.load_more_events(active.id, before)

    async def check_and_handle_challenge_completion(self) -> ChallengePublic | None:
        active = self.active_challenge
        if active is None or active.end_time > self.service.clock():
            return None
        done = await self.service.complete_challenge(active.id) or active
        self.listener.clear_active(active.id)
        rest = [c for c in self.listener.completed_challenges if c.id != done.id]
        self.listener.completed_challenges = [done] + rest
        return done

    def _replace_active(self, snap: ChallengePublic) -> None:
        active = self.active_challenge
        if active is not None and active.id == snap.id:
            self.listener.active_challenge = snap
