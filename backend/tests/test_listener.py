from __future__ import annotations
import asyncio
from datetime import timedelta
import pytest
from ringside.schemas.challenge import ChallengeCreate, ChallengePublic
from ringside.services.realtime import ChangeBroker, ChangeEvent, challenge_topic


async def _create(services, clock, creator, name, start, end):
    data = ChallengeCreate(name=name, start_time=start, end_time=end)
    return await services.challenges.create_challenge(data, creator, creator.title())


@pytest.mark.asyncio
async def test_stop_listening_is_idempotent(services):
    listener = services.listener()
    listener.stop_listening()
    listener.stop_listening()
    assert listener.subscription_count == 0

    await listener.start_listening("u1")
    assert listener.subscription_count == 1
    listener.stop_listening()
    listener.stop_listening()
    assert listener.subscription_count == 0
    assert services.broker.subscriber_count() == 0


@pytest.mark.asyncio
async def test_classifies_active_completed_and_skips_pending(services, clock):
    now = clock.now
    live = await _create(services, clock, "u1", "Live", now - timedelta(hours=1), now + timedelta(hours=1))
    ended = await _create(services, clock, "u1", "Ended", now - timedelta(hours=3), now - timedelta(seconds=1))
    older = await _create(services, clock, "u1", "Older", now - timedelta(days=2), now - timedelta(days=1))
    await _create(services, clock, "u1", "Later", now + timedelta(hours=1), now + timedelta(hours=2))
    await _create(services, clock, "someone-else", "Not mine", now - timedelta(hours=1), now + timedelta(hours=1))

    listener = services.listener()
    await listener.start_listening("u1")
    try:
        assert listener.active_challenge.id == live.id
        assert [c.id for c in listener.completed_challenges] == [ended.id, older.id]
        # membership watch + document watch + event feed watch
        assert listener.subscription_count == 3
    finally:
        listener.stop_listening()
    assert listener.subscription_count == 0


@pytest.mark.asyncio
async def test_new_events_stream_into_active_challenge(services, clock):
    now = clock.now
    ch = await _create(services, clock, "u1", "Live", now - timedelta(hours=1), now + timedelta(hours=1))
    listener = services.listener()
    updates: list[str | None] = []
    listener.on_update(lambda l: updates.append(l.active_challenge.id if l.active_challenge else None))
    await listener.start_listening("u1")
    try:
        for i in range(16):
            await services.challenges.apply_feedback(ch.id, "u1", f"fb-{i}", 7.0)
        await listener.settle()
        events = listener.active_challenge.recent_events
        assert len(events) == 15
        assert events[0].feedback_id == "fb-15"
        assert len({e.id for e in events}) == 15
        assert listener.active_challenge.participants[0].total_jabs == 16
        assert updates and updates[-1] == ch.id
    finally:
        listener.stop_listening()


@pytest.mark.asyncio
async def test_join_by_another_user_reaches_listener(services, clock):
    now = clock.now
    ch = await _create(services, clock, "u1", "Live", now - timedelta(hours=1), now + timedelta(hours=1))
    mine = services.listener()
    theirs = services.listener()
    await mine.start_listening("u1")
    await theirs.start_listening("u2")
    try:
        assert theirs.active_challenge is None
        await services.challenges.handle_invite(ch.id, "u2", "Two", referrer_id="u1")
        await mine.settle()
        await theirs.settle()
        assert theirs.active_challenge is not None and theirs.active_challenge.id == ch.id
        assert {p.id for p in mine.active_challenge.participants} == {"u1", "u2"}
        assert mine.active_challenge.recent_events[0].user_id == "u2"
    finally:
        mine.stop_listening()
        theirs.stop_listening()


@pytest.mark.asyncio
async def test_completion_clears_active_and_moves_to_history(services, clock):
    now = clock.now
    ch = await _create(services, clock, "u1", "Short", now - timedelta(hours=1), now + timedelta(minutes=1))
    listener = services.listener()
    await listener.start_listening("u1")
    try:
        assert listener.active_challenge.id == ch.id
        clock.advance(minutes=2)
        await services.challenges.complete_challenge(ch.id)
        await listener.settle()
        assert listener.active_challenge is None
        assert [c.id for c in listener.completed_challenges] == [ch.id]
        assert listener.subscription_count == 1
    finally:
        listener.stop_listening()


@pytest.mark.asyncio
async def test_stale_removal_does_not_clear_newer_active(services, clock):
    now = clock.now
    ch = await _create(services, clock, "u1", "Live", now - timedelta(hours=1), now + timedelta(hours=1))
    listener = services.listener()
    await listener.start_listening("u1")
    try:
        newer = ChallengePublic(
            id="other", name="Other", description="", creator_id="u1",
            start_time=now, end_time=now + timedelta(hours=1), runtime_state="active",
        )
        listener.adopt(newer)
        # the old challenge's removal arrives after we moved on
        assert listener.clear_active(ch.id) is False
        assert listener.active_challenge.id == "other"

        services.broker.publish(ChangeEvent(challenge_topic("other"), "removed", "other"))
        await listener.settle()
        assert listener.active_challenge is None
    finally:
        listener.stop_listening()


@pytest.mark.asyncio
async def test_failed_refresh_keeps_previous_state(services, clock, monkeypatch):
    now = clock.now
    ch = await _create(services, clock, "u1", "Live", now - timedelta(hours=1), now + timedelta(hours=1))
    listener = services.listener()
    await listener.start_listening("u1")
    try:
        async def boom(user_id):
            raise ConnectionError("backend unavailable")
        monkeypatch.setattr(services.challenges, "challenges_for_user", boom)
        await listener.refresh()
        assert listener.active_challenge is not None and listener.active_challenge.id == ch.id
    finally:
        listener.stop_listening()


@pytest.mark.asyncio
async def test_one_shot_load_opens_no_subscriptions(services, clock):
    now = clock.now
    await _create(services, clock, "u1", "Live", now - timedelta(hours=1), now + timedelta(hours=1))
    listener = services.listener()
    await listener.load("u1")
    assert listener.active_challenge is not None
    assert listener.subscription_count == 0
    assert services.broker.subscriber_count() == 0


@pytest.mark.asyncio
async def test_closed_subscription_does_not_block_join():
    broker = ChangeBroker()
    sub = broker.subscribe(challenge_topic("c1"))
    for i in range(3):
        broker.publish(ChangeEvent(challenge_topic("c1"), "modified", "c1"))
    sub.close()
    await asyncio.wait_for(sub.join(), timeout=1)
    assert [c async for c in sub] == []


@pytest.mark.asyncio
async def test_settle_returns_after_active_challenge_is_detached(services, clock):
    now = clock.now
    ch = await _create(services, clock, "u1", "Short", now - timedelta(hours=1), now + timedelta(minutes=1))
    listener = services.listener()
    await listener.start_listening("u1")
    try:
        await services.challenges.apply_feedback(ch.id, "u1", "fb-1", 6.0)
        clock.advance(minutes=2)
        await services.challenges.complete_challenge(ch.id)
        await asyncio.wait_for(listener.settle(), timeout=3)
        assert listener.active_challenge is None
        assert listener.subscription_count == 1
    finally:
        listener.stop_listening()
