"""
Wallet engine: the command surface of the wallet.

Commands that change the wallet tree take the password, unlock the vault for
the duration of the command and persist the tree before returning. Read-only
commands work on the public tree cached by ``load_master_key``.

Concurrency: one ``asyncio.Lock`` per (coin type, account) serializes address
allocation, syncing and sending on that account; the wallet lock serializes
file writes and account creation. KDF and AEAD work runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import inspect
import random
from collections.abc import AsyncIterator, Callable
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Any

from loguru import logger

from hdengine.backends.base import BlockchainBackend, call_with_retry
from hdengine.backends.mempool import MempoolBackend
from hdengine.config import WalletConfig
from hdengine.constants import RECEIVE_CHAIN
from hdengine.errors import ErrorCode, InvalidMnemonicError, WalletError, WalletIOError
from hdengine.wallet.accounts import AddressManager, get_account
from hdengine.wallet.address import is_testnet_coin_type
from hdengine.wallet.address import validate_address as validate_destination
from hdengine.wallet.mnemonic import generate_mnemonic
from hdengine.wallet.models import (
    Account,
    AddressEntry,
    FeeEstimates,
    SimpleTransaction,
    WalletTree,
)
from hdengine.wallet.service import UTXOTracker
from hdengine.wallet.tx_builder import TransactionBuilder
from hdengine.wallet.vault import MasterKeyVault, UnlockedSession

COMMANDS = frozenset(
    {
        "generate_mnemonic",
        "create_master_key",
        "does_master_key_exist",
        "load_master_key",
        "change_password",
        "create_new_account",
        "get_accounts_overview",
        "get_account_balance",
        "get_simple_transactions",
        "get_all_receive_addresses",
        "get_all_receive_addresses_marked",
        "get_new_receive_address",
        "validate_address",
        "get_recommended_fees",
        "send_transaction",
    }
)


@dataclass
class CommandResult:
    """Tagged outcome of a command; branch on ``error``, never on ``message``."""

    ok: bool
    value: Any = None
    error: ErrorCode | None = None
    message: str = ""


class WalletEngine:
    def __init__(
        self,
        config: WalletConfig | None = None,
        backend_factory: Callable[[int], BlockchainBackend] | None = None,
        rng: random.Random | None = None,
    ):
        self.config = config or WalletConfig()
        self.vault = MasterKeyVault(self.config.wallet_path, self.config.kdf)
        self._backend_factory = backend_factory or self._default_backend
        self._backends: dict[int, BlockchainBackend] = {}

        self.addresses = AddressManager(
            self.backend_for,
            gap_limit=self.config.gap_limit,
            read_retries=self.config.read_retries,
            retry_base_delay=self.config.retry_base_delay,
        )
        self.tracker = UTXOTracker(
            self.backend_for,
            read_retries=self.config.read_retries,
            retry_base_delay=self.config.retry_base_delay,
        )
        self.builder = TransactionBuilder(
            self.addresses,
            self.tracker,
            max_inputs=self.config.max_inputs,
            dust_threshold=self.config.dust_threshold,
            rng=rng,
        )

        # Public tree (xpubs and addresses only), set by load/create
        self.tree: WalletTree | None = None

        self._wallet_lock = asyncio.Lock()
        self._account_locks: dict[tuple[int, int], asyncio.Lock] = {}

    def _default_backend(self, coin_type_index: int) -> BlockchainBackend:
        return MempoolBackend(
            self.config.api_url(coin_type_index), timeout=self.config.request_timeout
        )

    def backend_for(self, coin_type_index: int) -> BlockchainBackend:
        is_testnet_coin_type(coin_type_index)
        if coin_type_index not in self._backends:
            self._backends[coin_type_index] = self._backend_factory(coin_type_index)
        return self._backends[coin_type_index]

    def _account_lock(self, coin_type_index: int, account_index: int) -> asyncio.Lock:
        return self._account_locks.setdefault((coin_type_index, account_index), asyncio.Lock())

    @asynccontextmanager
    async def _all_locks(self) -> AsyncIterator[None]:
        """
        Every account lock in key order, then the wallet lock. Held while the
        cached tree is replaced so no account command keeps a stale account.
        """
        async with AsyncExitStack() as stack:
            for key in sorted(self._account_locks):
                await stack.enter_async_context(self._account_locks[key])
            await stack.enter_async_context(self._wallet_lock)
            yield

    def _require_tree(self) -> WalletTree:
        if self.tree is None:
            raise WalletIOError("Wallet not loaded")
        return self.tree

    def _account(self, coin_type_index: int, account_index: int) -> Account:
        return get_account(self._require_tree(), coin_type_index, account_index)

    @asynccontextmanager
    async def _unlocked(self, password: str) -> AsyncIterator[UnlockedSession]:
        """
        Unlock the vault for one command. The cached tree replaces the file's
        copy so usage learned by read-only commands is kept.
        """
        session = await asyncio.to_thread(self.vault.unlock, password)
        try:
            if self.tree is None:
                self.tree = session.tree
            else:
                session.tree = self.tree
            yield session
        finally:
            session.close()

    async def _save(self, session: UnlockedSession, password: str) -> None:
        """Persist the session; caller holds the wallet lock."""
        await asyncio.to_thread(self.vault.save, session, password)

    def _restore_account(self, snapshot: Account) -> None:
        tree = self._require_tree()
        tree.coin_types[snapshot.coin_type].accounts[snapshot.index] = snapshot

    # Vault commands

    def generate_mnemonic(self, word_count: int = 24) -> str:
        try:
            return generate_mnemonic(word_count)
        except ValueError as e:
            raise InvalidMnemonicError(str(e)) from e

    def does_master_key_exist(self) -> bool:
        return self.vault.exists()

    async def create_master_key(self, mnemonic: str, passphrase: str, password: str) -> None:
        """Create (or replace) the wallet file from a mnemonic."""
        async with self._all_locks():
            session = await asyncio.to_thread(self.vault.create, password, mnemonic, passphrase)
            with session:
                self.tree = session.tree
            self.tracker.utxo_cache.clear()

    async def load_master_key(self, password: str) -> None:
        """Unlock the wallet and cache its public tree."""
        async with self._all_locks():
            session = await asyncio.to_thread(self.vault.unlock, password)
            with session:
                self.tree = session.tree
            self.tracker.utxo_cache.clear()
        logger.info(f"Wallet loaded from {self.vault.path}")

    async def change_password(self, old_password: str, new_password: str) -> None:
        async with self._wallet_lock:
            async with self._unlocked(old_password) as session:
                await self._save(session, new_password)
        logger.info("Wallet password changed")

    # Account commands

    async def create_new_account(self, coin_type_index: int, password: str) -> Account:
        is_testnet_coin_type(coin_type_index)
        async with self._wallet_lock:
            async with self._unlocked(password) as session:
                account = self.addresses.create_account(session, coin_type_index)
                try:
                    await self._save(session, password)
                except WalletError:
                    del session.tree.coin_types[coin_type_index].accounts[account.index]
                    raise
        return account

    def get_accounts_overview(self) -> WalletTree:
        return self._require_tree().model_copy(deep=True)

    async def get_account_balance(self, coin_type_index: int, account_index: int) -> int:
        account = self._account(coin_type_index, account_index)
        async with self._account_lock(coin_type_index, account_index):
            return await self.tracker.get_balance(account)

    async def get_simple_transactions(
        self, coin_type_index: int, account_index: int
    ) -> list[SimpleTransaction]:
        account = self._account(coin_type_index, account_index)
        async with self._account_lock(coin_type_index, account_index):
            return await self.tracker.list_simple_transactions(account)

    def get_all_receive_addresses(self, coin_type_index: int, account_index: int) -> list[str]:
        account = self._account(coin_type_index, account_index)
        return [e.address for e in self.addresses.receive_addresses(account)]

    async def get_all_receive_addresses_marked(
        self, coin_type_index: int, account_index: int
    ) -> list[AddressEntry]:
        """Handed-out receive addresses, newest first, with fresh ``used`` flags."""
        async with self._account_lock(coin_type_index, account_index):
            account = self._account(coin_type_index, account_index)
            await self.addresses.mark_usage(account, chains=(RECEIVE_CHAIN,))
            return [e.model_copy() for e in self.addresses.receive_addresses(account)]

    async def get_new_receive_address(
        self, coin_type_index: int, account_index: int, password: str
    ) -> AddressEntry:
        async with self._account_lock(coin_type_index, account_index):
            async with self._unlocked(password) as session:
                account = self._account(coin_type_index, account_index)
                snapshot = account.model_copy(deep=True)
                try:
                    entry = await self.addresses.get_new_receive_address(account)
                    async with self._wallet_lock:
                        await self._save(session, password)
                except WalletError:
                    self._restore_account(snapshot)
                    raise
        return entry.model_copy()

    # Network commands

    def validate_address(self, address: str, coin_type_index: int) -> None:
        validate_destination(address, coin_type_index)

    async def get_recommended_fees(self, coin_type_index: int) -> FeeEstimates:
        backend = self.backend_for(coin_type_index)
        return await call_with_retry(
            backend.get_fee_estimates,
            retries=self.config.read_retries,
            base_delay=self.config.retry_base_delay,
            description="Fee estimate lookup",
        )

    async def send_transaction(
        self,
        coin_type_index: int,
        account_index: int,
        address: str,
        amount: int,
        fee_rate: int,
        password: str,
    ) -> int:
        """
        Pay ``amount`` sats to ``address`` at ``fee_rate`` sat/vB.

        Returns:
            Total debited from the account: amount + fee
        """
        validate_destination(address, coin_type_index)
        backend = self.backend_for(coin_type_index)

        async with self._account_lock(coin_type_index, account_index):
            async with self._unlocked(password) as session:
                account = self._account(coin_type_index, account_index)
                result = await self.builder.build_and_send(
                    session, account, backend, address, amount, fee_rate
                )

                # The payment is out; a failed write only loses the change index
                try:
                    async with self._wallet_lock:
                        await self._save(session, password)
                except WalletIOError as e:
                    logger.error(f"Transaction {result.txid} sent but wallet not saved: {e}")

        logger.info(f"Sent transaction {result.txid}: {result.total_sent} sats debited")
        return result.total_sent

    async def close(self) -> None:
        for backend in self._backends.values():
            await backend.close()
        self._backends.clear()


async def run_command(engine: WalletEngine, name: str, **kwargs: Any) -> CommandResult:
    """Run a command and fold wallet errors into a tagged result."""
    if name not in COMMANDS:
        raise ValueError(f"Unknown command: {name}")

    try:
        value = getattr(engine, name)(**kwargs)
        if inspect.isawaitable(value):
            value = await value
    except WalletError as e:
        logger.debug(f"Command {name} failed: {e.code.value}: {e.message}")
        return CommandResult(ok=False, error=e.code, message=e.message)

    return CommandResult(ok=True, value=value)
