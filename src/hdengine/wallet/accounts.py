"""
Account and address management.

Tree layout (BIP44): m/44'/{coin_type}'/{account}'/{chain}/{index}
- coin_type: 0 (Bitcoin) or 1 (Bitcoin Testnet)
- chain: 0 (external/receive), 1 (internal/change)

Addresses are derived from the account's extended public key, so a cached
tree can hand out and scan addresses without the seed. Only account creation
needs the unlocked seed.

Gap limit: at most ``gap_limit`` consecutive unused addresses are allocated
after the highest used one. When every allocated address of a chain has been
handed out, usage is refreshed from the backend; if nothing new has been used,
the lowest handed-out but still unused address is returned again.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from loguru import logger

from hdengine.backends.base import BlockchainBackend, call_with_retry
from hdengine.constants import (
    CHANGE_CHAIN,
    DEFAULT_GAP_LIMIT,
    HARDENED_OFFSET,
    PURPOSE,
    RECEIVE_CHAIN,
)
from hdengine.errors import AccountNotFoundError
from hdengine.wallet.address import (
    is_testnet_coin_type,
    pubkey_to_p2pkh_address,
    pubkey_to_p2pkh_script,
)
from hdengine.wallet.bip32 import HDKey
from hdengine.wallet.models import Account, AddressEntry, ChainState, WalletTree
from hdengine.wallet.vault import UnlockedSession

# Concurrent history lookups per scan
MAX_CONCURRENT_LOOKUPS = 5


def account_path(coin_type_index: int, account_index: int) -> str:
    return f"m/{PURPOSE}'/{coin_type_index}'/{account_index}'"


def get_account(tree: WalletTree, coin_type_index: int, account_index: int) -> Account:
    is_testnet_coin_type(coin_type_index)
    coin_type = tree.coin_types.get(coin_type_index)
    account = coin_type.accounts.get(account_index) if coin_type else None
    if account is None:
        raise AccountNotFoundError(
            f"Account {account_index} not found for coin type {coin_type_index}"
        )
    return account


def derive_addresses(account: Account, chain: int, start: int, count: int) -> list[AddressEntry]:
    """Derive ``count`` address entries of a chain from the account xpub."""
    chain_key = HDKey.from_extended_key(account.xpub).derive_child(chain)
    testnet = is_testnet_coin_type(account.coin_type)

    entries = []
    for index in range(start, start + count):
        pubkey = chain_key.derive_child(index).get_public_key_bytes()
        entries.append(
            AddressEntry(
                index=index,
                path=account.path_for(chain, index),
                address=pubkey_to_p2pkh_address(pubkey, testnet=testnet),
                scriptpubkey=pubkey_to_p2pkh_script(pubkey).hex(),
            )
        )
    return entries


class AddressManager:
    """Allocates accounts and addresses within the gap limit."""

    def __init__(
        self,
        backend_for: Callable[[int], BlockchainBackend],
        gap_limit: int = DEFAULT_GAP_LIMIT,
        read_retries: int = 3,
        retry_base_delay: float = 0.5,
    ):
        self.backend_for = backend_for
        self.gap_limit = gap_limit
        self.read_retries = read_retries
        self.retry_base_delay = retry_base_delay

    def create_account(
        self,
        session: UnlockedSession,
        coin_type_index: int,
        account_index: int | None = None,
    ) -> Account:
        """
        Derive m/44'/coin'/account' and allocate the first ``gap_limit``
        addresses of both chains. Uses the next free index when none is given.
        """
        testnet = is_testnet_coin_type(coin_type_index)
        coin_type = session.tree.coin_types[coin_type_index]

        if account_index is None:
            account_index = coin_type.next_account_index()
        if not 0 <= account_index < HARDENED_OFFSET:
            raise ValueError(f"Account index out of range: {account_index}")
        if account_index in coin_type.accounts:
            raise ValueError(f"Account {account_index} already exists")

        account_key = session.derive(account_path(coin_type_index, account_index), testnet)
        account = Account(
            index=account_index,
            coin_type=coin_type_index,
            xpub=account_key.neuter().to_extended_key(private=False),
        )
        for chain in (RECEIVE_CHAIN, CHANGE_CHAIN):
            account.chain_state(chain).addresses = derive_addresses(
                account, chain, 0, self.gap_limit
            )

        coin_type.accounts[account_index] = account
        logger.info(f"Created account {account_index} for {coin_type.name}")
        return account

    def _extend(self, account: Account, state: ChainState) -> None:
        """Recompute highest_used and allocate up to highest_used + 1 + gap_limit."""
        used = [e.index for e in state.addresses if e.used]
        state.highest_used = max(used, default=-1)
        state.next_index = max(state.next_index, state.highest_used + 1)

        wanted = state.highest_used + 1 + self.gap_limit
        if state.allocated < wanted:
            state.addresses.extend(
                derive_addresses(account, state.chain, state.allocated, wanted - state.allocated)
            )

    async def _used_addresses(self, coin_type_index: int, entries: list[AddressEntry]) -> set[str]:
        backend = self.backend_for(coin_type_index)
        semaphore = asyncio.Semaphore(MAX_CONCURRENT_LOOKUPS)

        async def has_history(address: str) -> bool:
            async with semaphore:
                history = await call_with_retry(
                    lambda: backend.get_address_history(address),
                    retries=self.read_retries,
                    base_delay=self.retry_base_delay,
                    description="Address history lookup",
                )
            return bool(history)

        results = await asyncio.gather(*(has_history(e.address) for e in entries))
        return {e.address for e, used in zip(entries, results) if used}

    async def mark_usage(
        self, account: Account, chains: tuple[int, ...] = (RECEIVE_CHAIN, CHANGE_CHAIN)
    ) -> None:
        """
        Refresh ``used`` flags from the backend.

        Newly allocated addresses are scanned as well, so a restored wallet
        discovers used addresses beyond the initial window. The account is only
        modified after every lookup has succeeded.
        """
        updated: dict[int, ChainState] = {}

        for chain in chains:
            state = account.chain_state(chain).model_copy(deep=True)
            to_check = [e for e in state.addresses if not e.used]

            while to_check:
                used = await self._used_addresses(account.coin_type, to_check)
                for entry in to_check:
                    if entry.address in used:
                        entry.used = True

                allocated_before = state.allocated
                self._extend(account, state)
                to_check = state.addresses[allocated_before:]

            updated[chain] = state

        for chain, state in updated.items():
            if chain == RECEIVE_CHAIN:
                account.receive = state
            else:
                account.change = state

        logger.debug(
            f"Usage refreshed for account {account.index}: "
            f"receive highest used {account.receive.highest_used}, "
            f"change highest used {account.change.highest_used}"
        )

    def mark_used(self, account: Account, addresses: set[str]) -> None:
        """Record local knowledge of usage (e.g. our own change output)."""
        for chain in (RECEIVE_CHAIN, CHANGE_CHAIN):
            state = account.chain_state(chain)
            changed = False
            for entry in state.addresses:
                if entry.address in addresses and not entry.used:
                    entry.used = True
                    changed = True
            if changed:
                self._extend(account, state)

    def _issue(self, account: Account, chain: int) -> AddressEntry | None:
        state = account.chain_state(chain)
        if state.next_index < state.allocated:
            entry = state.addresses[state.next_index]
            state.next_index += 1
            return entry
        return None

    async def _next_address(self, account: Account, chain: int) -> AddressEntry:
        entry = self._issue(account, chain)
        if entry is not None:
            return entry

        await self.mark_usage(account, chains=(chain,))
        entry = self._issue(account, chain)
        if entry is not None:
            return entry

        state = account.chain_state(chain)
        entry = next(e for e in state.addresses if e.index > state.highest_used and not e.used)
        logger.warning(
            f"Gap limit of {self.gap_limit} reached on account {account.index} chain {chain}, "
            f"reusing unused address index {entry.index}"
        )
        return entry

    async def get_new_receive_address(self, account: Account) -> AddressEntry:
        return await self._next_address(account, RECEIVE_CHAIN)

    async def get_change_address(self, account: Account) -> AddressEntry:
        return await self._next_address(account, CHANGE_CHAIN)

    def peek_change_address(self, account: Account) -> AddressEntry:
        """
        Return the change address the next send would use without handing it
        out. Used to build a transaction before committing allocation.
        """
        state = account.chain_state(CHANGE_CHAIN)
        if state.next_index < state.allocated:
            return state.addresses[state.next_index]
        return next(e for e in state.addresses if e.index > state.highest_used and not e.used)

    def commit_change_address(self, account: Account, entry: AddressEntry) -> None:
        state = account.chain_state(CHANGE_CHAIN)
        if entry.index == state.next_index:
            state.next_index += 1
        self.mark_used(account, {entry.address})

    @staticmethod
    def receive_addresses(account: Account) -> list[AddressEntry]:
        """Handed-out receive addresses, newest first."""
        state = account.receive
        return list(reversed(state.addresses[: state.next_index]))
