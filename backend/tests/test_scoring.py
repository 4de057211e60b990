from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import pytest
from ringside.services.scoring import (
    final_score, score_multiplier, running_average, runtime_state, is_active, is_completed,
    pick_active, sort_completed, leaderboard,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@dataclass
class Window:
    id: str
    start_time: datetime
    end_time: datetime


@dataclass
class P:
    name: str
    invite_count: int = 0
    total_jabs: int = 0
    average_score: float = 0.0


def test_final_score_reference_values():
    # (2*50*0.5) + (10*0.2) * 0.8
    assert final_score(2, 10, 8.0) == pytest.approx(51.6)
    assert final_score(0, 0, 0.0) == 0


@pytest.mark.parametrize("avg,expected", [
    (0.0, 0.1),    # floor
    (0.5, 0.1),
    (5.0, 0.5),
    (10.0, 1.0),
    (25.0, 2.0),   # ceiling
])
def test_multiplier_is_clamped(avg, expected):
    assert score_multiplier(avg) == pytest.approx(expected)


def test_multiplier_only_scales_jabs():
    # invites are not multiplied
    assert final_score(3, 0, 0.0) == pytest.approx(75.0)
    assert final_score(0, 5, 0.0) == pytest.approx(5 * 0.2 * 0.1)


def test_running_average_matches_arithmetic_mean():
    scores = [7.5, 9.0, 3.25, 10.0, 0.0, 6.6]
    count, avg = 0, 0.0
    for s in scores:
        count, avg = running_average(avg, count, s)
    assert count == len(scores)
    assert avg == pytest.approx(sum(scores) / len(scores))


def test_active_window_boundaries():
    live = Window("a", NOW - timedelta(hours=1), NOW + timedelta(hours=1))
    ended = Window("b", NOW - timedelta(hours=2), NOW - timedelta(seconds=1))
    upcoming = Window("c", NOW + timedelta(hours=1), NOW + timedelta(hours=3))

    assert is_active(live, NOW) and runtime_state(live, NOW) == "active"
    assert not is_active(ended, NOW) and is_completed(ended, NOW)
    assert runtime_state(ended, NOW) == "completed"
    assert not is_active(upcoming, NOW) and not is_completed(upcoming, NOW)
    assert runtime_state(upcoming, NOW) == "pending"


def test_window_is_half_open():
    w = Window("a", NOW, NOW + timedelta(hours=1))
    assert is_active(w, NOW)
    assert not is_active(w, NOW + timedelta(hours=1))
    assert is_completed(w, NOW + timedelta(hours=1))


def test_pick_active_prefers_latest_start_then_id():
    older = Window("z", NOW - timedelta(hours=3), NOW + timedelta(hours=1))
    newer_b = Window("b", NOW - timedelta(hours=1), NOW + timedelta(hours=1))
    newer_a = Window("a", NOW - timedelta(hours=1), NOW + timedelta(hours=2))
    ended = Window("e", NOW - timedelta(hours=1), NOW - timedelta(minutes=1))
    assert pick_active([older, newer_b, newer_a, ended], NOW).id == "a"
    assert pick_active([newer_a, newer_b, older], NOW).id == "a"
    assert pick_active([ended], NOW) is None


def test_sort_completed_newest_end_first_and_excludes_others():
    a = Window("a", NOW - timedelta(days=3), NOW - timedelta(days=2))
    b = Window("b", NOW - timedelta(days=2), NOW - timedelta(hours=1))
    live = Window("c", NOW - timedelta(hours=1), NOW + timedelta(hours=1))
    pending = Window("d", NOW + timedelta(hours=1), NOW + timedelta(hours=2))
    assert [w.id for w in sort_completed([a, live, b, pending], NOW)] == ["b", "a"]


def test_leaderboard_orders_by_final_score_then_volume_then_join_order():
    rows = [
        P("first", total_jabs=10, average_score=5.0),   # 1.0
        P("inviter", invite_count=1),                   # 25.0
        P("second", total_jabs=10, average_score=5.0),  # 1.0 (joined later)
        P("grinder", total_jabs=50, average_score=1.0), # 1.0 with more jabs
    ]
    assert [p.name for p in leaderboard(rows)] == ["inviter", "grinder", "first", "second"]
