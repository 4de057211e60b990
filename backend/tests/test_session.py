from __future__ import annotations
from datetime import timedelta
import pytest
from ringside.schemas.challenge import ChallengeCreate, FeedbackViewed, Invite
from ringside.services.errors import AlreadyInChallenge, DuplicateEvent


@pytest.mark.asyncio
async def test_process_event_without_active_challenge_is_a_no_op(services):
    s = services.session_for("u1", "One")
    await s.listener.load("u1")
    assert await s.process_event(FeedbackViewed(feedback_id="fb-1", score=8.0)) is None


@pytest.mark.asyncio
async def test_process_event_without_user_is_a_no_op(services, clock):
    creator = services.session_for("u1", "One")
    await creator.create_challenge(ChallengeCreate(name="Jab Sprint"))
    anon = services.session_for(None, None)
    anon.listener.adopt(creator.active_challenge)
    assert await anon.process_event(FeedbackViewed(feedback_id="fb-1", score=8.0)) is None


@pytest.mark.asyncio
async def test_create_challenge_sets_active_immediately(services, clock):
    s = services.session_for("u1", "One")
    await s.listener.load("u1")
    ch = await s.create_challenge(ChallengeCreate(name="Jab Sprint"))
    assert s.active_challenge is not None and s.active_challenge.id == ch.id
    assert s.active_challenge.participants[0].name == "One"

    with pytest.raises(AlreadyInChallenge):
        await s.create_challenge(ChallengeCreate(name="Second one"))


@pytest.mark.asyncio
async def test_feedback_viewed_twice_counts_once(services, clock):
    s = services.session_for("u1", "One")
    await s.create_challenge(ChallengeCreate(name="Jab Sprint"))

    snap = await s.process_event(FeedbackViewed(feedback_id="fb-1", score=6.5))
    assert snap.participants[0].total_jabs == 1
    assert s.active_challenge.participants[0].average_score == pytest.approx(6.5)

    with pytest.raises(DuplicateEvent):
        await s.process_event(FeedbackViewed(feedback_id="fb-1", score=6.5))
    scores = [e for e in s.active_challenge.recent_events if e.type == "score"]
    assert len(scores) == 1 and scores[0].feedback_id == "fb-1"


@pytest.mark.asyncio
async def test_invite_event_joins_the_active_challenge(services, clock):
    s = services.session_for("u1", "One")
    ch = await s.create_challenge(ChallengeCreate(name="Jab Sprint"))
    snap = await s.process_event(Invite(user_id="u2", user_name="Two"))
    assert snap.id == ch.id
    by_id = {p.id: p for p in snap.participants}
    assert set(by_id) == {"u1", "u2"}
    assert by_id["u1"].invite_count == 1


@pytest.mark.asyncio
async def test_load_more_events_for_active(services, clock):
    s = services.session_for("u1", "One")
    assert await s.load_more_events(clock.now) == []
    await s.create_challenge(ChallengeCreate(name="Jab Sprint"))
    older = await s.load_more_events(clock.now + timedelta(seconds=1))
    assert [e.details for e in older] == ["Created the challenge"]


@pytest.mark.asyncio
async def test_completion_check_migrates_expired_active(services, clock):
    s = services.session_for("u1", "One")
    await s.listener.load("u1")
    ch = await s.create_challenge(ChallengeCreate(
        name="Short", start_time=clock.now - timedelta(hours=1), end_time=clock.now + timedelta(minutes=1),
    ))
    await s.process_event(FeedbackViewed(feedback_id="fb-1", score=9.0))

    # not expired yet
    assert await s.check_and_handle_challenge_completion() is None
    assert s.active_challenge is not None

    clock.advance(minutes=2)
    done = await s.check_and_handle_challenge_completion()
    assert done.id == ch.id
    assert s.active_challenge is None
    assert s.completed_challenges[0].id == ch.id
    assert s.completed_challenges[0].participants[0].total_jabs == 1

    fresh = services.session_for("u1", "One")
    await fresh.listener.load("u1")
    assert fresh.active_challenge is None
    assert [c.id for c in fresh.completed_challenges] == [ch.id]


@pytest.mark.asyncio
async def test_upcoming_challenge_is_not_scored_locally(services, clock):
    s = services.session_for("u1", "One")
    await s.listener.load("u1")
    ch = await s.create_challenge(ChallengeCreate(
        name="Tomorrow", start_time=clock.now + timedelta(hours=1), end_time=clock.now + timedelta(hours=2),
    ))
    assert ch.runtime_state == "pending"
    assert s.active_challenge is None
    assert await s.process_event(FeedbackViewed(feedback_id="fb-1", score=8.0)) is None
    stored = await services.challenges.get_challenge(ch.id)
    assert stored.participants[0].total_jabs == 0
