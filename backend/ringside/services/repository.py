from __future__ import annotations
from datetime import datetime
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ringside.models.challenge import (
    Challenge, Participant, ChallengeEvent, CompletedChallenge, CompletedChallengeMember,
)
from ringside.schemas.challenge import ChallengePublic, ChallengeEventPublic, ParticipantPublic
from ringside.services.scoring import runtime_state

RECENT_EVENTS = 15


async def get_participants(session: AsyncSession, challenge_id: str) -> list[Participant]:
    return (await session.execute(
        select(Participant)
        .where(Participant.challenge_id == challenge_id)
        .order_by(Participant.joined_at.asc(), Participant.user_id.asc())
    )).scalars().all()


async def get_participant(session: AsyncSession, challenge_id: str, user_id: str, *, for_update: bool = False) -> Participant | None:
    q = select(Participant).where(Participant.challenge_id == challenge_id, Participant.user_id == user_id)
    if for_update:
        q = q.with_for_update()
    return await session.scalar(q)


async def recent_events(
    session: AsyncSession, challenge_id: str, *, limit: int = RECENT_EVENTS, before: datetime | None = None,
) -> list[ChallengeEvent]:
    """Newest first; `before` pages backward from a timestamp cursor (exclusive)."""
    q = select(ChallengeEvent).where(ChallengeEvent.challenge_id == challenge_id)
    if before is not None:
        q = q.where(ChallengeEvent.timestamp < before)
    q = q.order_by(ChallengeEvent.timestamp.desc(), ChallengeEvent.id.desc()).limit(limit)
    return (await session.execute(q)).scalars().all()


async def all_events(session: AsyncSession, challenge_id: str) -> list[ChallengeEvent]:
    return (await session.execute(
        select(ChallengeEvent)
        .where(ChallengeEvent.challenge_id == challenge_id)
        .order_by(ChallengeEvent.timestamp.desc(), ChallengeEvent.id.desc())
    )).scalars().all()


async def event_for_feedback(session: AsyncSession, challenge_id: str, feedback_id: str) -> ChallengeEvent | None:
    return await session.scalar(
        select(ChallengeEvent).where(
            ChallengeEvent.challenge_id == challenge_id,
            ChallengeEvent.feedback_id == feedback_id,
        ).limit(1)
    )


async def challenges_for_user(session: AsyncSession, user_id: str) -> list[Challenge]:
    # every challenge the user has a participant row in
    q = (
        select(Challenge)
        .join(Participant, Participant.challenge_id == Challenge.id)
        .where(Participant.user_id == user_id)
        .order_by(Challenge.start_time.desc(), Challenge.id.asc())
    )
    return (await session.execute(q)).scalars().all()


async def expired_challenges(session: AsyncSession, now: datetime) -> list[Challenge]:
    return (await session.execute(
        select(Challenge).where(Challenge.end_time <= now).order_by(Challenge.end_time.asc())
    )).scalars().all()


async def hydrate(
    session: AsyncSession, ch: Challenge, now: datetime, *, limit: int = RECENT_EVENTS,
) -> ChallengePublic:
    parts = await get_participants(session, ch.id)
    events = await recent_events(session, ch.id, limit=limit)
    return ChallengePublic(
        id=ch.id, name=ch.name, description=ch.description, creator_id=ch.creator_id,
        start_time=ch.start_time, end_time=ch.end_time,
        runtime_state=runtime_state(ch, now),
        participants=[ParticipantPublic.model_validate(p) for p in parts],
        recent_events=[ChallengeEventPublic.model_validate(e) for e in events],
    )


async def load_challenge(session: AsyncSession, challenge_id: str, now: datetime, *, limit: int = RECENT_EVENTS) -> ChallengePublic | None:
    ch = await session.get(Challenge, challenge_id)
    if ch is None:
        return None
    return await hydrate(session, ch, now, limit=limit)


async def completion_payload(session: AsyncSession, ch: Challenge, now: datetime) -> dict:
    """Full snapshot written to the completed store: every participant and every event."""
    parts = await get_participants(session, ch.id)
    events = await all_events(session, ch.id)
    snap = ChallengePublic(
        id=ch.id, name=ch.name, description=ch.description, creator_id=ch.creator_id,
        start_time=ch.start_time, end_time=ch.end_time,
        runtime_state="completed",
        participants=[ParticipantPublic.model_validate(p) for p in parts],
        recent_events=[ChallengeEventPublic.model_validate(e) for e in events],
        completed_at=now,
    )
    return snap.model_dump(mode="json")


def from_completed(row: CompletedChallenge, *, limit: int | None = RECENT_EVENTS) -> ChallengePublic:
    snap = ChallengePublic.model_validate(row.payload_json)
    if limit is not None:
        snap.recent_events = snap.recent_events[:limit]
    return snap


async def get_completed(session: AsyncSession, challenge_id: str) -> CompletedChallenge | None:
    return await session.get(CompletedChallenge, challenge_id)


async def completed_for_user(session: AsyncSession, user_id: str) -> list[CompletedChallenge]:
    q = (
        select(CompletedChallenge)
        .join(CompletedChallengeMember, CompletedChallengeMember.challenge_id == CompletedChallenge.id)
        .where(CompletedChallengeMember.user_id == user_id)
        .order_by(CompletedChallenge.end_time.desc(), CompletedChallenge.id.desc())
    )
    return (await session.execute(q)).scalars().all()
