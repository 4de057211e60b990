from __future__ import annotations
from dataclasses import dataclass
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ringside.services.challenges import ChallengeService, Clock, utcnow
from ringside.services.listener import ChallengeListener
from ringside.services.notifier import ChallengeNotifier
from ringside.services.realtime import ChangeBroker
from ringside.services.session import ChallengeSession


@dataclass
class Services:
    broker: ChangeBroker
    notifier: ChallengeNotifier
    challenges: ChallengeService

    def listener(self) -> ChallengeListener:
        return ChallengeListener(self.challenges, self.broker)

    def session_for(self, user_id: str | None, user_name: str | None) -> ChallengeSession:
        return ChallengeSession(user_id, user_name, self.challenges, self.listener())


def build_services(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    notifier: ChallengeNotifier | None = None,
    clock: Clock = utcnow,
) -> Services:
    if session_factory is None:
        from ringside.db import SessionLocal
        session_factory = SessionLocal
    broker = ChangeBroker()
    notifier = notifier or ChallengeNotifier()
    return Services(
        broker=broker,
        notifier=notifier,
        challenges=ChallengeService(session_factory, broker, notifier, clock=clock),
    )


def services_for(app) -> Services:
    svc = getattr(app.state, "services", None)
    if svc is None:
        svc = app.state.services = build_services()
    return svc


async def get_services(request: Request) -> Services:
    return services_for(request.app)
