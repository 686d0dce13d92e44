"""
Per-key locks are dropped once nobody holds or waits for them.
"""

import asyncio

import pytest

from booking_lifecycle.core.locks import KeyedLocks
from booking_lifecycle.schemas.edit import BookingChanges, CustomerInfoUpdate

from conftest import seed_booking


@pytest.mark.asyncio
async def test_lock_removed_after_release():
    locks = KeyedLocks()
    async with locks.hold("bk_1"):
        assert len(locks) == 1
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_waiters_share_one_lock_and_run_in_turn():
    locks = KeyedLocks()
    order = []
    inside = 0

    async def worker(name: str):
        nonlocal inside
        async with locks.hold("bk_1"):
            inside += 1
            assert inside == 1
            order.append(name)
            await asyncio.sleep(0)
            assert len(locks) == 1
            inside -= 1

    await asyncio.gather(*[worker(f"w{i}") for i in range(5)])

    assert sorted(order) == [f"w{i}" for i in range(5)]
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_lock_removed_when_body_raises():
    locks = KeyedLocks()
    with pytest.raises(RuntimeError):
        async with locks.hold("pi_1"):
            raise RuntimeError("boom")
    assert len(locks) == 0

@pytest.mark.asyncio
async def test_many_keys_do_not_accumulate(container, course, customer):

    for i in range(3):
        booking = await seed_booking(container, hours_ahead=72 + i, booking_id=f"bk_{i}")
        await container.edits.execute_edit(
            booking.id,
            BookingChanges(customer_info=CustomerInfoUpdate(notes="hi")),
            customer,
            idempotency_key=f"lock-{i}",
        )

    assert len(container.edits._booking_locks) == 0
    assert len(container.payments._intent_locks) == 0
