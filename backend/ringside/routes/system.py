from __future__ import annotations
from fastapi import APIRouter, Request
from datetime import datetime, timezone
from ringside.config import settings

router = APIRouter()

@router.get("/health")
async def health(request: Request):
    svc = getattr(request.app.state, "services", None)
    return {
        "status": "ok",
        "env": settings.environment,
        "time": datetime.now(timezone.utc).isoformat(),
        "request_id": request.headers.get("x-request-id") or request.state.request_id,
        "live_subscriptions": svc.broker.subscriber_count() if svc else 0,
    }

@router.get("/version")
async def version():
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "git_sha": settings.git_sha,
    }
