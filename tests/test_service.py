"""
Tests for UTXO tracking and transaction history.
"""

import pytest

from hdengine.backends.base import AddressTransaction, TxEndpoint
from hdengine.wallet.accounts import AddressManager
from hdengine.wallet.models import TransactionType
from hdengine.wallet.service import UTXOTracker, classify_transaction
from hdengine.wallet.vault import MasterKeyVault

OWN = {"own1", "own2"}


@pytest.fixture
def account(wallet_path, fast_kdf, sample_mnemonic, fake_backend):
    manager = AddressManager(lambda coin: fake_backend, gap_limit=3, retry_base_delay=0.0)
    with MasterKeyVault(wallet_path, fast_kdf).create("pw", sample_mnemonic) as session:
        return manager.create_account(session, 0)


@pytest.fixture
def tracker(fake_backend):
    return UTXOTracker(lambda coin: fake_backend, read_retries=1, retry_base_delay=0.0)


class TestClassifyTransaction:
    def test_incoming(self):
        tx = AddressTransaction(
            txid="a" * 64,
            inputs=[TxEndpoint("foreign", 10_000)],
            outputs=[TxEndpoint("own1", 6_000), TxEndpoint("foreign", 3_800)],
            fee=200,
            confirmed=True,
            block_height=100,
        )
        simple = classify_transaction(tx, OWN)
        assert simple.transaction_type == TransactionType.INCOMING
        assert simple.value == 6_000
        assert simple.fee == 200
        assert simple.block_height == 100

    def test_outgoing(self):
        tx = AddressTransaction(
            txid="b" * 64,
            inputs=[TxEndpoint("own1", 10_000)],
            outputs=[TxEndpoint("foreign", 4_000), TxEndpoint("own2", 5_700)],
            fee=300,
        )
        simple = classify_transaction(tx, OWN)
        assert simple.transaction_type == TransactionType.OUTGOING
        assert simple.value == 4_000
        assert not simple.confirmed
        assert simple.block_height is None

    def test_internal(self):
        tx = AddressTransaction(
            txid="c" * 64,
            inputs=[TxEndpoint("own1", 10_000)],
            outputs=[TxEndpoint("own2", 9_800)],
            fee=200,
        )
        simple = classify_transaction(tx, OWN)
        assert simple.transaction_type == TransactionType.INTERNAL
        assert simple.value == 0

    def test_unknown_output_address_is_foreign(self):
        tx = AddressTransaction(
            txid="d" * 64,
            inputs=[TxEndpoint("own1", 10_000)],
            outputs=[TxEndpoint(None, 9_000)],
        )
        assert classify_transaction(tx, OWN).transaction_type == TransactionType.OUTGOING


class TestSync:
    @pytest.mark.asyncio
    async def test_collects_both_chains(self, tracker, account, fake_backend):
        receive = account.receive.addresses[0]
        change = account.change.addresses[1]
        fake_backend.fund(receive.address, 5_000)
        fake_backend.fund(change.address, 3_000)

        utxos = await tracker.sync(account)

        assert sorted(u.value for u in utxos) == [3_000, 5_000]
        by_value = {u.value: u for u in utxos}
        assert by_value[5_000].path == receive.path
        assert by_value[5_000].scriptpubkey == receive.scriptpubkey
        assert by_value[3_000].path == change.path
        assert all(u.account == account.index for u in utxos)

    @pytest.mark.asyncio
    async def test_balance(self, tracker, account, fake_backend):
        assert await tracker.get_balance(account) == 0
        fake_backend.fund(account.receive.addresses[2].address, 7_000)
        assert await tracker.get_balance(account) == 7_000

    @pytest.mark.asyncio
    async def test_cached_until_refresh(self, tracker, account, fake_backend):
        fake_backend.fund(account.receive.addresses[0].address, 1_000)
        await tracker.sync(account)
        fake_backend.fund(account.receive.addresses[1].address, 2_000)

        assert await tracker.get_balance(account, refresh=False) == 1_000
        assert await tracker.get_balance(account, refresh=True) == 3_000

    @pytest.mark.asyncio
    async def test_remove_spent(self, tracker, account, fake_backend):
        fake_backend.fund(account.receive.addresses[0].address, 1_000)
        fake_backend.fund(account.receive.addresses[1].address, 2_000)
        utxos = await tracker.sync(account)

        spent = [u for u in utxos if u.value == 1_000]
        tracker.remove_spent(account, spent)

        remaining = await tracker.get_utxos(account)
        assert [u.value for u in remaining] == [2_000]


class TestSimpleTransactions:
    @pytest.mark.asyncio
    async def test_deduplicated_and_ordered(self, tracker, account, fake_backend):
        first = account.receive.addresses[0].address
        second = account.change.addresses[0].address
        foreign = "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH"

        old = AddressTransaction(
            txid="01" * 32,
            inputs=[TxEndpoint(foreign, 20_000)],
            outputs=[TxEndpoint(first, 10_000)],
            fee=500,
            confirmed=True,
            block_height=100,
        )
        spend = AddressTransaction(
            txid="02" * 32,
            inputs=[TxEndpoint(first, 10_000)],
            outputs=[TxEndpoint(foreign, 4_000), TxEndpoint(second, 5_500)],
            fee=500,
            confirmed=True,
            block_height=150,
        )
        pending = AddressTransaction(
            txid="03" * 32,
            inputs=[TxEndpoint(foreign, 9_000)],
            outputs=[TxEndpoint(second, 2_000)],
            fee=300,
        )
        fake_backend.history[first] = [old, spend]
        fake_backend.history[second] = [spend, pending]

        history = await tracker.list_simple_transactions(account)

        assert [t.txid for t in history] == ["03" * 32, "02" * 32, "01" * 32]
        assert [t.transaction_type for t in history] == [
            TransactionType.INCOMING,
            TransactionType.OUTGOING,
            TransactionType.INCOMING,
        ]
        assert history[1].value == 4_000

    @pytest.mark.asyncio
    async def test_empty(self, tracker, account):
        assert await tracker.list_simple_transactions(account) == []
