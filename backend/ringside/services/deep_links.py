from __future__ import annotations
from datetime import datetime, timedelta
from urllib.parse import urlsplit, parse_qs
from pydantic import BaseModel

SCHEMES = ("formfighter", "ringside", "https")


class PendingChallenge(BaseModel):
    challenge_id: str
    referrer_id: str | None = None
    timestamp: datetime

    def is_stale(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.timestamp > ttl


def parse_challenge_link(url: str, now: datetime) -> PendingChallenge | None:
    """Challenge id and referrer from an invite link.

    Accepts `formfighter://challenge?id=X&referrer=Y` and the path form
    `formfighter://challenge/X`; https links use `/challenge/...`.
    """
    parts = urlsplit(url.strip())
    if parts.scheme not in SCHEMES:
        return None
    segments = [s for s in parts.path.split("/") if s]
    if parts.scheme == "https":
        if not segments or segments[0] != "challenge":
            return None
        segments = segments[1:]
    elif parts.netloc != "challenge":
        return None
    query = parse_qs(parts.query)
    cid = (query.get("id") or [None])[0] or (segments[0] if segments else None)
    if not cid:
        return None
    referrer = (query.get("referrer") or [None])[0] or None
    return PendingChallenge(challenge_id=cid, referrer_id=referrer, timestamp=now)
