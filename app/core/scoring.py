from __future__ import annotations

import math
import random


def random_increment(rng: random.Random, low: int, high: int) -> int:
    """Length change for a single /grow. May be negative or zero."""
    return rng.randint(low, high)


def random_bonus(rng: random.Random, low: int, high: int) -> int:
    return rng.randint(max(0, low), max(0, high))


def pick_pvp_winner(rng: random.Random, attacker_id: int, defender_id: int) -> int:
    return attacker_id if rng.random() < 0.5 else defender_id


def loan_payout(delta: int, debt: int, ratio: float) -> int:
    """
    Share of a growth withheld to pay back a loan.

    Only positive growth pays; at least 1 cm goes to the debt while it lasts,
    and never more than what is still owed.
    """
    if delta <= 0 or debt <= 0 or ratio <= 0:
        return 0
    return min(debt, delta, max(1, math.ceil(delta * ratio)))


def draw_index(draw: float, count: int) -> int:
    """Map a uniform draw in [0, 1) onto a position among `count` candidates."""
    return min(count - 1, max(0, int(draw * count)))
