from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Any
import jwt
from pydantic import BaseModel
from ringside.config import settings

ACCESS_TTL_MIN = 60


class CurrentUser(BaseModel):
    id: str
    name: str = "Unknown"


def make_access_token(sub: str, name: str | None = None, ttl_min: int = ACCESS_TTL_MIN) -> str:
    # tokens normally come from the identity provider; this is for local dev and tests
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "type": "access",
        "iat": now.timestamp(),
        "exp": int((now + timedelta(minutes=ttl_min)).timestamp()),
    }
    if name:
        payload["name"] = name
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_alg)


def decode_token(token: str) -> dict[str, Any]:
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_alg])


def user_from_token(token: str) -> CurrentUser:
    data = decode_token(token)
    if data.get("type", "access") != "access":
        raise jwt.InvalidTokenError("wrong token type")
    sub = data.get("sub")
    if not sub:
        raise jwt.InvalidTokenError("missing subject")
    return CurrentUser(id=str(sub), name=data.get("name") or "Unknown")
