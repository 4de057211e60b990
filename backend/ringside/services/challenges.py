from __future__ import annotations
from datetime import datetime, timedelta, timezone as dt_tz
from typing import Callable
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from ringside.config import settings
from ringside.models.challenge import (
    Challenge, Participant, ChallengeEvent, CompletedChallenge, CompletedChallengeMember, new_id,
)
from ringside.schemas.challenge import (
    ChallengeCreate, ChallengePublic, ChallengeEventPublic, LeaderboardRow,
)
from ringside.services import repository as repo
from ringside.services.errors import ChallengeError, InvalidChallenge, ChallengeEnded, DuplicateEvent, ParticipantUpdateFailed
from ringside.services.notifier import ChallengeNotifier
from ringside.services.realtime import ChangeBroker, ChangeEvent, participants_topic, challenge_topic, events_topic
from ringside.services.scoring import final_score, running_average, leaderboard

log = structlog.get_logger()

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(dt_tz.utc)


def _event_data(ev: ChallengeEvent) -> dict:
    return ChallengeEventPublic.model_validate(ev).model_dump(mode="json")


def _without_stamp(payload: dict) -> dict:
    return {k: v for k, v in payload.items() if k != "completed_at"}


class ChallengeService:
    """Challenge lifecycle: creation, joins, score events and completion.

    Every state change runs in a single database transaction; change
    notifications are published only after commit so subscribers always
    read committed rows.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        broker: ChangeBroker,
        notifier: ChallengeNotifier,
        *,
        clock: Clock = utcnow,
        recent_limit: int | None = None,
    ):
        self.session_factory = session_factory
        self.broker = broker
        self.notifier = notifier
        self.clock = clock
        self.recent_limit = recent_limit or settings.recent_events_limit

    # ---------- reads ----------

    async def get_challenge(self, challenge_id: str) -> ChallengePublic:
        now = self.clock()
        async with self.session_factory() as session:
            snap = await repo.load_challenge(session, challenge_id, now, limit=self.recent_limit)
            if snap is not None:
                return snap
            row = await repo.get_completed(session, challenge_id)
            if row is None:
                raise InvalidChallenge()
            return repo.from_completed(row, limit=self.recent_limit)

    async def find_live(self, challenge_id: str) -> ChallengePublic | None:
        """Challenge from the live store only; None once deleted or migrated."""
        async with self.session_factory() as session:
            return await repo.load_challenge(session, challenge_id, self.clock(), limit=self.recent_limit)

    async def challenges_for_user(self, user_id: str) -> list[ChallengePublic]:
        now = self.clock()
        async with self.session_factory() as session:
            rows = await repo.challenges_for_user(session, user_id)
            return [await repo.hydrate(session, ch, now, limit=self.recent_limit) for ch in rows]

    async def completed_for_user(self, user_id: str) -> list[ChallengePublic]:
        async with self.session_factory() as session:
            rows = await repo.completed_for_user(session, user_id)
            return [repo.from_completed(r, limit=self.recent_limit) for r in rows]

    async def load_more_events(self, challenge_id: str, before: datetime) -> list[ChallengeEventPublic]:
        async with self.session_factory() as session:
            if await session.get(Challenge, challenge_id) is not None:
                rows = await repo.recent_events(session, challenge_id, limit=self.recent_limit, before=before)
                return [ChallengeEventPublic.model_validate(e) for e in rows]
            done = await repo.get_completed(session, challenge_id)
            if done is None:
                raise InvalidChallenge()
            events = repo.from_completed(done, limit=None).recent_events
            return [e for e in events if e.timestamp < before][: self.recent_limit]

    async def leaderboard(self, challenge_id: str) -> list[LeaderboardRow]:
        ch = await self.get_challenge(challenge_id)
        return [
            LeaderboardRow(
                rank=i + 1, user_id=p.id, name=p.name,
                final_score=final_score(p.invite_count, p.total_jabs, p.average_score),
                total_jabs=p.total_jabs, average_score=p.average_score, invite_count=p.invite_count,
            )
            for i, p in enumerate(leaderboard(ch.participants))
        ]

    # ---------- writes ----------

    async def create_challenge(self, data: ChallengeCreate, creator_id: str, creator_name: str) -> ChallengePublic:
        now = self.clock()
        start = data.start_time or now
        end = data.end_time or start + timedelta(hours=settings.default_challenge_hours)
        if end <= start:
            raise InvalidChallenge("end_time must be after start_time")
        ch = Challenge(
            id=data.id or new_id(), name=data.name, description=data.description,
            creator_id=creator_id, start_time=start, end_time=end,
        )
        ev = ChallengeEvent(
            id=new_id(), challenge_id=ch.id, timestamp=now, type="invite",
            user_id=creator_id, user_name=creator_name, details="Created the challenge",
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    # ids of finished challenges stay taken
                    if await repo.get_completed(session, ch.id) is not None:
                        raise InvalidChallenge("A challenge with this id already exists")
                    session.add(ch)
                    await session.flush()
                    session.add(Participant(
                        challenge_id=ch.id, user_id=creator_id, name=creator_name,
                        invite_count=0, total_jabs=0, average_score=0.0, final_score=0.0, joined_at=now,
                    ))
                    session.add(ev)
                snap = await repo.hydrate(session, ch, now, limit=self.recent_limit)
        except IntegrityError:
            raise InvalidChallenge("A challenge with this id already exists") from None

        log.info("challenge_created", challenge_id=ch.id, creator_id=creator_id, start_time=start.isoformat(), end_time=end.isoformat())
        self.broker.publish(ChangeEvent(participants_topic(creator_id), "added", ch.id))
        return snap

    async def handle_invite(
        self, challenge_id: str, user_id: str, user_name: str, referrer_id: str | None = None,
    ) -> ChallengePublic:
        """Add `user_id` to a running or upcoming challenge.

        Joining twice is a no-op that keeps the existing stats. A referrer
        who is already a participant is credited with one invite.
        """
        now = self.clock()
        joined = False
        ev: ChallengeEvent | None = None
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    ch = await session.get(Challenge, challenge_id)
                    if ch is None:
                        raise InvalidChallenge()
                    if ch.end_time <= now:
                        raise ChallengeEnded()
                    existing = await repo.get_participant(session, ch.id, user_id)
                    if existing is None:
                        session.add(Participant(
                            challenge_id=ch.id, user_id=user_id, name=user_name,
                            invite_count=0, total_jabs=0, average_score=0.0, final_score=0.0, joined_at=now,
                        ))
                        ev = ChallengeEvent(
                            id=new_id(), challenge_id=ch.id, timestamp=now, type="invite",
                            user_id=user_id, user_name=user_name, details="Joined the challenge",
                        )
                        session.add(ev)
                        joined = True
                        if referrer_id and referrer_id != user_id:
                            ref = await repo.get_participant(session, ch.id, referrer_id, for_update=True)
                            if ref is not None:
                                ref.invite_count += 1
                                ref.final_score = final_score(ref.invite_count, ref.total_jabs, ref.average_score)
                            else:
                                log.info("challenge_referrer_unknown", challenge_id=ch.id, referrer_id=referrer_id)
                snap = await repo.hydrate(session, ch, now, limit=self.recent_limit)
        except IntegrityError as e:
            async with self.session_factory() as session:
                raced = await repo.get_participant(session, challenge_id, user_id)
            if raced is None:
                log.error("challenge_join_failed", challenge_id=challenge_id, user_id=user_id, error=str(e.orig))
                raise ParticipantUpdateFailed() from e
            # concurrent join of the same user landed first
            log.info("challenge_join_raced", challenge_id=challenge_id, user_id=user_id)
            return await self.get_challenge(challenge_id)
        except SQLAlchemyError as e:
            raise ParticipantUpdateFailed() from e

        if not joined:
            log.info("challenge_rejoin_ignored", challenge_id=challenge_id, user_id=user_id)
            return snap

        log.info("challenge_joined", challenge_id=challenge_id, user_id=user_id, referrer_id=referrer_id)
        self.broker.publish(ChangeEvent(participants_topic(user_id), "added", challenge_id))
        self.broker.publish(ChangeEvent(challenge_topic(challenge_id), "modified", challenge_id))
        self.broker.publish(ChangeEvent(events_topic(challenge_id), "added", ev.id, _event_data(ev)))
        await self.notifier.send(f"{user_name} joined the challenge!", challenge_id)
        return snap

    async def apply_feedback(
        self, challenge_id: str, user_id: str, feedback_id: str, score: float, *, user_name: str | None = None,
    ) -> ChallengePublic:
        """Count one completed feedback score for `user_id`, exactly once.

        Duplicate check, participant read-modify-write and the score event
        append share one transaction; the (challenge, feedback) unique
        constraint catches a concurrent duplicate that slipped past the check.
        """
        if not 0 <= score <= 10:
            raise ValueError("score must be between 0 and 10")
        now = self.clock()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    ch = await session.get(Challenge, challenge_id)
                    if ch is None:
                        raise InvalidChallenge()
                    if ch.end_time <= now:
                        raise ChallengeEnded()
                    if now < ch.start_time:
                        raise InvalidChallenge("This challenge has not started yet")
                    if await repo.event_for_feedback(session, ch.id, feedback_id) is not None:
                        raise DuplicateEvent()
                    p = await repo.get_participant(session, ch.id, user_id, for_update=True)
                    if p is None:
                        raise InvalidChallenge("You are not part of this challenge")
                    p.total_jabs, p.average_score = running_average(p.average_score, p.total_jabs, score)
                    p.final_score = final_score(p.invite_count, p.total_jabs, p.average_score)
                    name = user_name or p.name
                    ev = ChallengeEvent(
                        id=new_id(), challenge_id=ch.id, timestamp=now, type="score",
                        user_id=user_id, user_name=name, details=f"Scored {score:g} points",
                        feedback_id=feedback_id,
                    )
                    session.add(ev)
                snap = await repo.hydrate(session, ch, now, limit=self.recent_limit)
        except IntegrityError:
            raise DuplicateEvent() from None
        except SQLAlchemyError as e:
            raise ParticipantUpdateFailed() from e

        log.info("challenge_score_recorded", challenge_id=challenge_id, user_id=user_id, feedback_id=feedback_id, score=score)
        self.broker.publish(ChangeEvent(challenge_topic(challenge_id), "modified", challenge_id))
        self.broker.publish(ChangeEvent(events_topic(challenge_id), "added", ev.id, _event_data(ev)))
        await self.notifier.send(f"{name} scored {score:g} points!", challenge_id)
        return snap

    async def complete_challenge(self, challenge_id: str) -> ChallengePublic | None:
        """Move a challenge into the completed store.

        Copies the full payload, indexes members, then deletes the live rows,
        all in one transaction. Returns None when there is nothing to move.
        """
        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                ch = await session.get(Challenge, challenge_id)
                if ch is None:
                    return None
                payload = await repo.completion_payload(session, ch, now)
                members = [p["id"] for p in payload["participants"]]
                stored = await repo.get_completed(session, ch.id)
                if stored is not None and _without_stamp(stored.payload_json) != _without_stamp(payload):
                    log.error("challenge_completion_conflict", challenge_id=ch.id)
                    raise InvalidChallenge("A different challenge was already completed under this id")
                if stored is None:
                    session.add(CompletedChallenge(
                        id=ch.id, name=ch.name, creator_id=ch.creator_id,
                        start_time=ch.start_time, end_time=ch.end_time,
                        completed_at=now, payload_json=payload,
                    ))
                    await session.flush()
                    for uid in members:
                        session.add(CompletedChallengeMember(challenge_id=ch.id, user_id=uid))
                    await session.flush()
                await session.execute(delete(ChallengeEvent).where(ChallengeEvent.challenge_id == ch.id))
                await session.execute(delete(Participant).where(Participant.challenge_id == ch.id))
                await session.execute(delete(Challenge).where(Challenge.id == ch.id))

        log.info("challenge_completed", challenge_id=challenge_id, participants=len(members), events=len(payload["recent_events"]))
        self.broker.publish(ChangeEvent(challenge_topic(challenge_id), "removed", challenge_id))
        for uid in members:
            self.broker.publish(ChangeEvent(participants_topic(uid), "removed", challenge_id))
        return ChallengePublic.model_validate(payload)

    async def sweep_expired(self) -> list[str]:
        now = self.clock()
        async with self.session_factory() as session:
            ids = [ch.id for ch in await repo.expired_challenges(session, now)]
        done: list[str] = []
        for cid in ids:
            try:
                moved = await self.complete_challenge(cid)
            except ChallengeError as e:
                log.warning("challenge_sweep_skipped", challenge_id=cid, error=e.message)
                continue
            if moved is not None:
                done.append(cid)
        if done:
            log.info("challenge_sweep_done", completed=len(done))
        return done
