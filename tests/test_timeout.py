import asyncio

import pytest

from ledgerline.exception import TransactionTimeout
from ledgerline.transaction import (
    Propagation,
    TransactionManager,
    TransactionStatus,
)


async def test_expired_transaction_fails_next_statement(
    manager, backend, write
):
    txn = await manager.begin(timeout=0.05)
    await write("a")
    await asyncio.sleep(0.1)

    with pytest.raises(TransactionTimeout):
        await write("b")

    assert txn.status is TransactionStatus.ROLLED_BACK
    assert txn.physical.timed_out
    assert backend.in_use == 0
    assert backend.store == {}

    assert await manager.complete(txn) is TransactionStatus.ROLLED_BACK
    assert manager.chain().is_empty
    assert manager.get_metrics()["timed_out"] == 1
    assert manager.get_metrics()["rolled_back"] == 1


async def test_expired_transaction_fails_commit(manager, backend, write):
    txn = await manager.begin(timeout=0.05)
    await write("a")
    await asyncio.sleep(0.1)

    with pytest.raises(TransactionTimeout):
        await manager.complete(txn)

    assert txn.status is TransactionStatus.ROLLED_BACK
    assert backend.calls_named("commit") == []
    assert backend.store == {}
    assert backend.in_use == 0
    assert manager.chain().is_empty


async def test_expired_transaction_block(manager, backend, write):
    with pytest.raises(TransactionTimeout):
        async with manager.transaction(timeout=0.05) as txn:
            await write("a")
            await asyncio.sleep(0.1)
            await write("b")

    assert txn.status is TransactionStatus.ROLLED_BACK
    assert backend.store == {}
    assert manager.chain().is_empty


async def test_joining_expired_transaction_fails(manager, backend):
    outer = await manager.begin(timeout=0.05)
    await asyncio.sleep(0.1)

    with pytest.raises(TransactionTimeout):
        await manager.begin(Propagation.REQUIRED)
    with pytest.raises(TransactionTimeout):
        await manager.begin(Propagation.MANDATORY)

    assert manager.chain().stack == [outer]
    assert await manager.complete(outer) is TransactionStatus.ROLLED_BACK
    assert manager.get_metrics()["timed_out"] == 1

    fresh = await manager.begin(Propagation.REQUIRED)
    assert fresh.owns_physical
    assert await manager.complete(fresh) is TransactionStatus.COMMITTED


async def test_participants_share_the_outer_deadline(manager, backend, write):
    outer = await manager.begin(timeout=0.05)
    inner = await manager.begin(Propagation.REQUIRED, timeout=10)
    await asyncio.sleep(0.1)

    with pytest.raises(TransactionTimeout):
        await write("a")

    assert inner.status is TransactionStatus.ROLLED_BACK
    assert outer.status is TransactionStatus.ROLLED_BACK
    assert await manager.complete(inner) is TransactionStatus.ROLLED_BACK
    assert await manager.complete(outer) is TransactionStatus.ROLLED_BACK


async def test_participant_timeout_is_ignored(manager, backend, write):
    async with manager.transaction() as outer:
        async with manager.transaction(timeout=0.01):
            await asyncio.sleep(0.05)
            await write("a")

    assert outer.status is TransactionStatus.COMMITTED
    assert backend.store == {"a": True}


async def test_requires_new_timeout_leaves_outer_alone(
    manager, backend, write
):
    async with manager.transaction() as outer:
        await write("outer")
        with pytest.raises(TransactionTimeout):
            async with manager.transaction(
                Propagation.REQUIRES_NEW, timeout=0.05
            ):
                await asyncio.sleep(0.1)
                await write("inner")
        await write("after")

    assert outer.status is TransactionStatus.COMMITTED
    assert backend.store == {"outer": True, "after": True}


async def test_no_timeout_never_expires(manager, backend):
    txn = await manager.begin(timeout=-1)

    assert txn.physical.deadline is None
    await asyncio.sleep(0.05)
    assert await manager.complete(txn) is TransactionStatus.COMMITTED


async def test_default_timeout_from_manager(backend):
    manager = TransactionManager(backend, default_timeout=0.05)
    txn = await manager.begin()

    assert txn.timeout == 0.05
    await asyncio.sleep(0.1)
    with pytest.raises(TransactionTimeout):
        await manager.complete(txn)
