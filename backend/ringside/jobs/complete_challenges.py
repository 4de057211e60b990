from __future__ import annotations
import asyncio
from datetime import timedelta
import structlog
from redis import Redis
from rq import Queue
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from ringside.config import settings
from ringside.logging_setup import configure_logging
from ringside.services.container import build_services

log = structlog.get_logger()

async def _run() -> list[str]:
    # fresh engine per run: each job gets its own event loop
    engine = create_async_engine(settings.database_url, poolclass=pool.NullPool, future=True)
    try:
        svc = build_services(async_sessionmaker(engine, expire_on_commit=False))
        return await svc.challenges.sweep_expired()
    finally:
        await engine.dispose()

def schedule_next(queue: Queue | None = None, delay_seconds: int | None = None):
    q = queue or Queue("default", connection=Redis.from_url(settings.redis_url))
    delay = timedelta(seconds=delay_seconds if delay_seconds is not None else settings.sweep_interval_seconds)
    return q.enqueue_in(delay, complete_expired_challenges, job_timeout=120)

def complete_expired_challenges(reschedule: bool = True) -> list[str]:
    # RQ entry point (sync); run the async coroutine
    configure_logging()
    try:
        done = asyncio.run(_run())
        log.info("challenge_sweep_run", completed=done)
        return done
    finally:
        if reschedule:
            schedule_next()

if __name__ == "__main__":
    # seed the recurring sweep: python -m ringside.jobs.complete_challenges
    configure_logging()
    job = schedule_next(delay_seconds=0)
    log.info("challenge_sweep_scheduled", job_id=job.id)
