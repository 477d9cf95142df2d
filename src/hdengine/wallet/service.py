"""
UTXO and balance tracking per account.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from loguru import logger

from hdengine.backends.base import AddressTransaction, BlockchainBackend, call_with_retry
from hdengine.wallet.accounts import MAX_CONCURRENT_LOOKUPS
from hdengine.wallet.models import (
    Account,
    AddressEntry,
    SimpleTransaction,
    TransactionType,
    UTXOInfo,
)


def classify_transaction(tx: AddressTransaction, own_addresses: set[str]) -> SimpleTransaction:
    """
    Reduce a transaction to its effect on an account.

    - Incoming: no input is ours; value is what we received
    - Internal: an input is ours and every output is ours; value 0
    - Outgoing: an input is ours; value is what went to foreign outputs
    """
    spends_ours = any(inp.address in own_addresses for inp in tx.inputs)
    received = sum(out.value for out in tx.outputs if out.address in own_addresses)
    sent = sum(out.value for out in tx.outputs if out.address not in own_addresses)

    if not spends_ours:
        tx_type, value = TransactionType.INCOMING, received
    elif sent == 0:
        tx_type, value = TransactionType.INTERNAL, 0
    else:
        tx_type, value = TransactionType.OUTGOING, sent

    return SimpleTransaction(
        txid=tx.txid,
        transaction_type=tx_type,
        value=value,
        fee=tx.fee,
        confirmed=tx.confirmed,
        block_height=tx.block_height if tx.confirmed else None,
    )


class UTXOTracker:
    """
    Reconciles UTXOs and history of accounts with the blockchain backend.
    The UTXO set of each account is cached until the next sync.
    """

    def __init__(
        self,
        backend_for: Callable[[int], BlockchainBackend],
        read_retries: int = 3,
        retry_base_delay: float = 0.5,
    ):
        self.backend_for = backend_for
        self.read_retries = read_retries
        self.retry_base_delay = retry_base_delay
        self.utxo_cache: dict[tuple[int, int], list[UTXOInfo]] = {}

    async def _query_all(self, account: Account, query: str) -> list[tuple[AddressEntry, list]]:
        backend = self.backend_for(account.coin_type)
        semaphore = asyncio.Semaphore(MAX_CONCURRENT_LOOKUPS)

        async def fetch(entry: AddressEntry) -> tuple[AddressEntry, list]:
            method = getattr(backend, query)
            async with semaphore:
                result = await call_with_retry(
                    lambda: method(entry.address),
                    retries=self.read_retries,
                    base_delay=self.retry_base_delay,
                    description=f"{query} lookup",
                )
            return entry, result

        return await asyncio.gather(*(fetch(e) for e in account.all_addresses()))

    async def sync(self, account: Account) -> list[UTXOInfo]:
        """Fetch UTXOs of every allocated address of both chains."""
        results = await self._query_all(account, "get_utxos")

        utxos: list[UTXOInfo] = []
        for entry, backend_utxos in results:
            for utxo in backend_utxos:
                utxos.append(
                    UTXOInfo(
                        txid=utxo.txid,
                        vout=utxo.vout,
                        value=utxo.value,
                        address=entry.address,
                        confirmations=utxo.confirmations,
                        scriptpubkey=entry.scriptpubkey,
                        path=entry.path,
                        account=account.index,
                        height=utxo.height,
                    )
                )

        self.utxo_cache[(account.coin_type, account.index)] = utxos
        logger.debug(
            f"Synced account {account.index}: {len(utxos)} UTXOs, "
            f"{sum(u.value for u in utxos)} sats"
        )
        return utxos

    async def get_utxos(self, account: Account) -> list[UTXOInfo]:
        """Get UTXOs for an account, syncing if not cached."""
        key = (account.coin_type, account.index)
        if key not in self.utxo_cache:
            await self.sync(account)
        return self.utxo_cache.get(key, [])

    async def get_balance(self, account: Account, refresh: bool = True) -> int:
        """Get balance for an account in satoshis"""
        if refresh:
            utxos = await self.sync(account)
        else:
            utxos = await self.get_utxos(account)
        return sum(utxo.value for utxo in utxos)

    async def list_simple_transactions(self, account: Account) -> list[SimpleTransaction]:
        """
        Account history, de-duplicated by txid; unconfirmed first, then by
        descending block height.
        """
        results = await self._query_all(account, "get_address_history")
        own_addresses = {e.address for e in account.all_addresses()}

        unique: dict[str, AddressTransaction] = {}
        for _entry, history in results:
            for tx in history:
                unique.setdefault(tx.txid, tx)

        simple = [classify_transaction(tx, own_addresses) for tx in unique.values()]
        simple.sort(key=lambda t: (t.confirmed, -(t.block_height or 0)))
        return simple

    def remove_spent(self, account: Account, spent: list[UTXOInfo]) -> None:
        key = (account.coin_type, account.index)
        outpoints = {u.outpoint for u in spent}
        remaining = [u for u in self.utxo_cache.get(key, []) if u.outpoint not in outpoints]
        self.utxo_cache[key] = remaining
        logger.debug(f"Removed {len(outpoints)} spent UTXOs from account {account.index}")
