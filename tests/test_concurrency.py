from __future__ import annotations

import asyncio

import pytest

from tests.conftest import UID


@pytest.mark.asyncio
async def test_concurrent_growth_of_one_dick_loses_nothing(users, dicks, chat_id):
    user = await users.create_or_update(UID, "racer")
    await dicks.create_or_grow(user.internal_id, chat_id, 100)
    deltas = list(range(-10, 30))

    await asyncio.gather(*(dicks.create_or_grow(user.internal_id, chat_id, d) for d in deltas))

    record = await dicks.get_dick(user.internal_id, chat_id)
    assert record.length == 100 + sum(deltas)


@pytest.mark.asyncio
async def test_concurrent_first_growth_creates_one_record(users, dicks, chat_id, count_rows):
    user = await users.create_or_update(UID, "racer")

    results = await asyncio.gather(*(dicks.create_or_grow(user.internal_id, chat_id, 1) for _ in range(16)))

    assert count_rows() == 1
    assert sorted(r.new_length for r in results) == list(range(1, 17))
    assert (await dicks.get_dick(user.internal_id, chat_id)).length == 16


@pytest.mark.asyncio
async def test_concurrent_growth_across_users(users, dicks, chat_id):
    players = [await users.create_or_update(UID + i, f"p{i}") for i in range(6)]

    await asyncio.gather(
        *(dicks.create_or_grow(p.internal_id, chat_id, i + 1) for i, p in enumerate(players) for _ in range(5))
    )

    top = await dicks.get_top(chat_id, 0, 10)
    assert [d.length for d in top] == [30, 25, 20, 15, 10, 5]


@pytest.mark.asyncio
async def test_opposite_duels_keep_the_sum(users, dicks, chat_id):
    a = await users.create_or_update(UID, "a")
    b = await users.create_or_update(UID + 1, "b")
    await dicks.create_or_grow(a.internal_id, chat_id, 500)
    await dicks.create_or_grow(b.internal_id, chat_id, 500)

    duels = []
    for _ in range(20):
        duels.append(dicks.pvp_transfer(chat_id, a.internal_id, b.internal_id, 3))
        duels.append(dicks.pvp_transfer(chat_id, b.internal_id, a.internal_id, 5))
    outcomes = await asyncio.wait_for(asyncio.gather(*duels), timeout=60)

    assert all(o is not None for o in outcomes)
    la = (await dicks.get_dick(a.internal_id, chat_id)).length
    lb = (await dicks.get_dick(b.internal_id, chat_id)).length
    assert la + lb == 1000
