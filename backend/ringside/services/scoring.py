from __future__ import annotations
from datetime import datetime
from typing import Iterable, Protocol, Sequence, TypeVar

INVITE_POINTS = 50.0
INVITE_WEIGHT = 0.5
JAB_POINTS = 0.2
MIN_MULTIPLIER = 0.1
MAX_MULTIPLIER = 2.0


class _Window(Protocol):
    id: str
    start_time: datetime
    end_time: datetime


W = TypeVar("W", bound=_Window)


def score_multiplier(average_score: float) -> float:
    return min(max(average_score / 10.0, MIN_MULTIPLIER), MAX_MULTIPLIER)


def final_score(invite_count: int, total_jabs: int, average_score: float) -> float:
    """Composite ranking score.

    Invites contribute a flat amount; jab volume is scaled by the form
    multiplier derived from the average score (clamped to [0.1, 2.0]).

        >>> final_score(2, 10, 8.0)
        51.6
    """
    invite_score = invite_count * INVITE_POINTS * INVITE_WEIGHT
    jab_score = total_jabs * JAB_POINTS
    return round(invite_score + jab_score * score_multiplier(average_score), 6)


def running_average(average: float, count: int, score: float) -> tuple[int, float]:
    """Fold one more score into a mean over `count` samples."""
    new_count = count + 1
    return new_count, (average * count + score) / new_count


def runtime_state(ch: _Window, now: datetime) -> str:
    if now < ch.start_time:
        return "pending"
    if now < ch.end_time:
        return "active"
    return "completed"


def is_active(ch: _Window, now: datetime) -> bool:
    return ch.start_time <= now < ch.end_time


def is_completed(ch: _Window, now: datetime) -> bool:
    return ch.end_time <= now


def pick_active(challenges: Iterable[W], now: datetime) -> W | None:
    """The single challenge surfaced as active.

    Most recently started wins; ties fall back to the challenge id so the
    choice never depends on backend enumeration order.
    """
    active = [c for c in challenges if is_active(c, now)]
    if not active:
        return None
    return min(active, key=lambda c: (-c.start_time.timestamp(), c.id))


def sort_completed(challenges: Iterable[W], now: datetime) -> list[W]:
    done = [c for c in challenges if is_completed(c, now)]
    return sorted(done, key=lambda c: (c.end_time, c.id), reverse=True)


def leaderboard(participants: Sequence) -> list:
    # stable: join order breaks remaining ties
    indexed = list(enumerate(participants))
    indexed.sort(key=lambda ip: (
        -final_score(ip[1].invite_count, ip[1].total_jabs, ip[1].average_score),
        -ip[1].total_jabs,
        ip[0],
    ))
    return [p for _, p in indexed]
