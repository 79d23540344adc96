import asyncio
import logging
from pathlib import Path
from tempfile import TemporaryDirectory

from ledgerline import Ledgerline, Propagation
from ledgerline.exception import InsufficientFunds

logging.basicConfig(level=logging.INFO)


async def run(db_path: str):
    ledger = Ledgerline(db_path=db_path)
    await ledger.connect(create_schema=True)
    service = ledger.service

    alice = await service.open_account("A-100", 1000)
    bob = await service.open_account("B-200", 500)

    result = await service.transfer(alice.id, bob.id, 100)
    print(result.source.balance, result.target.balance)

    try:
        await service.transfer(
            alice.id, bob.id, 2000, rollback_for=[InsufficientFunds]
        )
    except InsufficientFunds as e:
        print(f"Refused: {e}")

    # The fee commits on its own connection even though the outer unit fails.
    # SQLite allows one writer, so it runs before the outer unit writes.
    try:
        async with ledger.manager.transaction():
            async with ledger.manager.transaction(Propagation.REQUIRES_NEW):
                await service.withdraw(bob.id, 1)
            await service.transfer(bob.id, alice.id, 50)
            raise RuntimeError("Abort the outer transfer")
    except RuntimeError:
        pass

    print(await service.list_accounts())
    await ledger.disconnect()


with TemporaryDirectory() as directory:
    asyncio.run(run(str(Path(directory) / "bank.db")))
