from __future__ import annotations
import asyncio
from datetime import datetime, timedelta
import jwt
from fastapi import APIRouter, Depends, HTTPException, Query, Body, WebSocket, WebSocketDisconnect
import structlog

from ringside.auth_deps import get_current_user
from ringside.config import settings
from ringside.schemas.challenge import (
    ChallengeCreate, ChallengePublic, ChallengeEventPublic, ChallengeEventBody, LeaderboardRow,
    JoinRequest, JoinLinkRequest, ProcessEventResult,
)
from ringside.security import CurrentUser, user_from_token
from ringside.services.container import Services, get_services, services_for
from ringside.services.deep_links import parse_challenge_link
from ringside.services.errors import (
    ChallengeError, InvalidChallenge, AlreadyInChallenge, ChallengeEnded, ParticipantUpdateFailed, DuplicateEvent,
)
from ringside.services.listener import ChallengeListener
from ringside.services.session import ChallengeSession

router = APIRouter(prefix="/challenges", tags=["challenges"])
log = structlog.get_logger()

ERROR_STATUS = {
    InvalidChallenge: 404,
    ChallengeEnded: 400,
    AlreadyInChallenge: 409,
    DuplicateEvent: 409,
    ParticipantUpdateFailed: 500,
}

def http_error(e: ChallengeError) -> HTTPException:
    return HTTPException(status_code=ERROR_STATUS.get(type(e), 400), detail=e.message)

async def _session(svc: Services, user: CurrentUser) -> ChallengeSession:
    s = svc.session_for(user.id, user.name)
    await s.listener.load(user.id)
    return s

def _snapshot(listener: ChallengeListener) -> dict:
    active = listener.active_challenge
    return {
        "active": active.model_dump(mode="json") if active else None,
        "completed": [c.model_dump(mode="json") for c in listener.completed_challenges],
    }

@router.post("", response_model=ChallengePublic, status_code=201)
async def create_challenge(payload: ChallengeCreate, user: CurrentUser = Depends(get_current_user), svc: Services = Depends(get_services)):
    s = await _session(svc, user)
    try:
        return await s.create_challenge(payload)
    except ChallengeError as e:
        raise http_error(e)

@router.get("/active", response_model=ChallengePublic | None)
async def get_active(user: CurrentUser = Depends(get_current_user), svc: Services = Depends(get_services)):
    s = await _session(svc, user)
    return s.active_challenge

@router.get("/completed", response_model=list[ChallengePublic])
async def list_completed(user: CurrentUser = Depends(get_current_user), svc: Services = Depends(get_services)):
    s = await _session(svc, user)
    return s.completed_challenges

@router.post("/active/events", response_model=ProcessEventResult)
async def process_event(
    body: ChallengeEventBody,
    user: CurrentUser = Depends(get_current_user),
    svc: Services = Depends(get_services),
):
    s = await _session(svc, user)
    try:
        snap = await s.process_event(body.root)
    except DuplicateEvent:
        # already counted; not a failure from the caller's point of view
        raise HTTPException(status_code=409, detail=DuplicateEvent.message)
    except ChallengeError as e:
        raise http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if snap is None:
        return ProcessEventResult(status="skipped")
    return ProcessEventResult(status="recorded", challenge=snap)

@router.post("/join-link", response_model=ChallengePublic, status_code=201)
async def join_by_link(body: JoinLinkRequest, user: CurrentUser = Depends(get_current_user), svc: Services = Depends(get_services)):
    now = svc.challenges.clock()
    pending = parse_challenge_link(body.url, body.timestamp or now)
    if pending is None:
        raise HTTPException(status_code=422, detail="Not a challenge link")
    if pending.is_stale(now, timedelta(days=settings.pending_link_ttl_days)):
        raise HTTPException(status_code=410, detail="Invite link expired")
    s = await _session(svc, user)
    try:
        return await s.join(pending.challenge_id, referrer_id=pending.referrer_id)
    except ChallengeError as e:
        raise http_error(e)

@router.websocket("/stream")
async def stream(websocket: WebSocket, token: str = Query(...)):
    try:
        user = user_from_token(token)
    except jwt.InvalidTokenError:
        await websocket.close(code=1008)
        return
    svc = services_for(websocket.app)
    await websocket.accept()
    session = svc.session_for(user.id, user.name)
    listener = session.listener
    updates: asyncio.Queue[dict] = asyncio.Queue()
    listener.on_update(lambda l: updates.put_nowait(_snapshot(l)))

    async def _until_disconnect():
        # the only client command: {"action": "check_completion"}
        try:
            while True:
                msg = await websocket.receive_json()
                if isinstance(msg, dict) and msg.get("action") == "check_completion":
                    if await session.check_and_handle_challenge_completion() is not None:
                        updates.put_nowait(_snapshot(listener))
        except WebSocketDisconnect:
            return
        except (ValueError, ChallengeError) as e:
            log.warning("challenge_stream_bad_message", user_id=user.id, error=str(e))
            await websocket.close(code=1003)
        except Exception:
            log.exception("challenge_stream_command_failed", user_id=user.id)
            await websocket.close(code=1011)

    receiver = asyncio.create_task(_until_disconnect())
    try:
        await listener.start_listening(user.id)
        while True:
            getter = asyncio.create_task(updates.get())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if receiver in done:
                getter.cancel()
                break
            await websocket.send_json(getter.result())
    finally:
        receiver.cancel()
        listener.stop_listening()
        log.info("challenge_stream_closed", user_id=user.id)

@router.get("/{challenge_id}", response_model=ChallengePublic)
async def get_challenge(challenge_id: str, user: CurrentUser = Depends(get_current_user), svc: Services = Depends(get_services)):
    try:
        return await svc.challenges.get_challenge(challenge_id)
    except ChallengeError as e:
        raise http_error(e)

@router.get("/{challenge_id}/leaderboard", response_model=list[LeaderboardRow])
async def get_leaderboard(challenge_id: str, user: CurrentUser = Depends(get_current_user), svc: Services = Depends(get_services)):
    try:
        return await svc.challenges.leaderboard(challenge_id)
    except ChallengeError as e:
        raise http_error(e)

@router.get("/{challenge_id}/events", response_model=list[ChallengeEventPublic])
async def list_events(
    challenge_id: str,
    before: datetime | None = Query(default=None, description="Only events older than this timestamp"),
    user: CurrentUser = Depends(get_current_user),
    svc: Services = Depends(get_services),
):
    if before is not None and before.tzinfo is None:
        raise HTTPException(status_code=422, detail="before must be timezone-aware")
    try:
        if before is None:
            return (await svc.challenges.get_challenge(challenge_id)).recent_events
        return await svc.challenges.load_more_events(challenge_id, before)
    except ChallengeError as e:
        raise http_error(e)

@router.post("/{challenge_id}/join", response_model=ChallengePublic, status_code=201)
async def join_challenge(
    challenge_id: str,
    body: JoinRequest | None = Body(default=None),
    user: CurrentUser = Depends(get_current_user),
    svc: Services = Depends(get_services),
):
    s = await _session(svc, user)
    try:
        return await s.join(challenge_id, referrer_id=body.referrer_id if body else None)
    except ChallengeError as e:
        raise http_error(e)

@router.post("/{challenge_id}/complete", response_model=ChallengePublic)
async def complete_challenge(challenge_id: str, user: CurrentUser = Depends(get_current_user), svc: Services = Depends(get_services)):
    try:
        ch = await svc.challenges.get_challenge(challenge_id)
    except ChallengeError as e:
        raise http_error(e)
    if ch.runtime_state != "completed":
        raise HTTPException(status_code=409, detail="Challenge is still running")
    if ch.completed_at is not None:
        return ch
    try:
        return await svc.challenges.complete_challenge(challenge_id) or await svc.challenges.get_challenge(challenge_id)
    except ChallengeError as e:
        raise http_error(e)
