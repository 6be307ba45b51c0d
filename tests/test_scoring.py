from __future__ import annotations

import random

import pytest

from app.core.scoring import draw_index, loan_payout, pick_pvp_winner, random_bonus, random_increment


def test_increment_stays_in_range():
    rng = random.Random(1)
    values = {random_increment(rng, -5, 10) for _ in range(2000)}
    assert min(values) == -5
    assert max(values) == 10


def test_bonus_is_never_negative():
    rng = random.Random(2)
    assert all(random_bonus(rng, -3, 2) >= 0 for _ in range(500))
    assert random_bonus(rng, 4, 4) == 4


def test_pvp_winner_is_one_of_the_parties_and_fair():
    rng = random.Random(3)
    wins = [pick_pvp_winner(rng, 1, 2) for _ in range(10000)]
    assert set(wins) == {1, 2}
    assert 4500 < wins.count(1) < 5500


@pytest.mark.parametrize(
    "delta, debt, ratio, expected",
    [
        (10, 50, 0.1, 1),
        (10, 50, 0.25, 3),
        (3, 50, 0.1, 1),
        (10, 2, 0.5, 2),
        (10, 50, 1.0, 10),
        (0, 50, 0.1, 0),
        (-4, 50, 0.1, 0),
        (10, 0, 0.1, 0),
    ],
)
def test_loan_payout(delta, debt, ratio, expected):
    assert loan_payout(delta, debt, ratio) == expected


def test_draw_index_covers_every_candidate():
    assert draw_index(0.0, 5) == 0
    assert draw_index(0.999999, 5) == 4
    assert draw_index(0.5, 1) == 0
    assert [draw_index((k + 0.5) / 7, 7) for k in range(7)] == list(range(7))
