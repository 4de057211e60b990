from __future__ import annotations
import httpx
import structlog
from ringside.config import settings

log = structlog.get_logger()


class ChallengeNotifier:
    """Best-effort push request to the notification dispatcher.

    The dispatcher resolves device tokens and skips the acting user; we only
    hand it a message and the challenge id. Failures are logged, never raised,
    never retried.
    """

    def __init__(self, url: str | None = None, *, timeout: float | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.url = settings.notify_url if url is None else url
        self.timeout = settings.notify_timeout_seconds if timeout is None else timeout
        self._transport = transport

    async def send(self, message: str, challenge_id: str) -> bool:
        if not self.url:
            log.info("challenge_notification_skipped", reason="notify_url_unset", challenge_id=challenge_id)
            return False
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.post(self.url, json={"message": message, "challengeId": challenge_id})
                r.raise_for_status()
        except httpx.HTTPError as e:
            log.warning("challenge_notification_failed", challenge_id=challenge_id, error=str(e))
            return False
        log.info("challenge_notification_sent", challenge_id=challenge_id)
        return True
