import math
from datetime import datetime, timedelta

import pytest

from db.memory_store import DecayConfig, compute_decay_score

NOW = datetime(2026, 1, 31, 12, 0, 0)
ENABLED = DecayConfig(enabled=True, half_life_days=30.0, active_weight=0.1)


def _score(vector_score: float, age_days: float, active_count: int, decay=ENABLED) -> float:
    return compute_decay_score(
        vector_score, NOW - timedelta(days=age_days), active_count, decay, now=NOW
    )


def test_one_half_life_halves_the_score() -> None:
    assert _score(0.8, 0, 0) == pytest.approx(0.8)
    assert _score(0.8, 30, 0) == pytest.approx(0.4)
    assert _score(0.8, 60, 0) == pytest.approx(0.2)


def test_active_count_boost_matches_formula() -> None:
    expected = 0.5 * (1 + 0.1 * math.log(1 + 9))
    assert _score(0.5, 0, 9) == pytest.approx(expected)


def test_score_strictly_decreases_with_age() -> None:
    scores = [_score(0.9, age, 3) for age in (0, 1, 7, 30, 180, 365)]
    assert all(later < earlier for earlier, later in zip(scores, scores[1:]))


def test_score_non_decreasing_in_active_count() -> None:
    scores = [_score(0.9, 10, count) for count in (0, 1, 2, 10, 1000)]
    assert all(later >= earlier for earlier, later in zip(scores, scores[1:]))

    no_weight = DecayConfig(enabled=True, half_life_days=30.0, active_weight=0.0)
    assert _score(0.9, 10, 0, no_weight) == _score(0.9, 10, 50, no_weight)


def test_future_created_at_is_treated_as_age_zero() -> None:
    assert _score(0.7, -5, 0) == pytest.approx(0.7)


@pytest.mark.parametrize("vector_score", [0.0, 0.3, 0.5, 0.999, 1.0])
@pytest.mark.parametrize("age_days", [0, 12.5, 400])
@pytest.mark.parametrize("active_count", [0, 7])
def test_disabled_decay_returns_vector_score_exactly(
    vector_score: float, age_days: float, active_count: int
) -> None:
    disabled = DecayConfig(enabled=False, half_life_days=1.0, active_weight=1.0)
    assert _score(vector_score, age_days, active_count, disabled) == vector_score
