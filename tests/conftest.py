"""
Test configuration for the wallet engine tests.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from hdengine.backends.base import UTXO, AddressTransaction, BlockchainBackend
from hdengine.config import KdfParams, WalletConfig
from hdengine.errors import NetworkError, SendTxError
from hdengine.wallet.models import FeeEstimates
from hdengine.wallet.signing import deserialize_transaction

# Cheap Argon2 parameters so tests do not spend seconds per unlock
FAST_KDF = KdfParams(time_cost=1, memory_cost=8, parallelism=1)


class FakeBackend(BlockchainBackend):
    """In-memory blockchain data provider."""

    def __init__(self) -> None:
        self.utxos: dict[str, list[UTXO]] = {}
        self.history: dict[str, list[AddressTransaction]] = {}
        self.fees = FeeEstimates(fastest=20, half_hour=10, hour=5, economy=2, minimum=1)
        self.broadcasts: list[str] = []
        self.fail_broadcast = False
        self.network_failures = 0
        self.calls = 0

    def _maybe_fail(self) -> None:
        self.calls += 1
        if self.network_failures > 0:
            self.network_failures -= 1
            raise NetworkError("simulated outage")

    def fund(self, address: str, value: int, txid: str | None = None, vout: int = 0) -> UTXO:
        txid = txid or f"{len(self.broadcasts) + sum(map(len, self.utxos.values())) + 1:064x}"
        utxo = UTXO(
            txid=txid,
            vout=vout,
            value=value,
            address=address,
            confirmations=6,
            scriptpubkey="",
            height=800_000,
        )
        self.utxos.setdefault(address, []).append(utxo)
        self.mark_used(address, txid)
        return utxo

    def mark_used(self, address: str, txid: str = "ab" * 32) -> None:
        self.history.setdefault(address, []).append(
            AddressTransaction(txid=txid, confirmed=True, block_height=800_000)
        )

    async def get_utxos(self, address: str) -> list[UTXO]:
        self._maybe_fail()
        return list(self.utxos.get(address, []))

    async def get_address_history(self, address: str) -> list[AddressTransaction]:
        self._maybe_fail()
        return list(self.history.get(address, []))

    async def get_fee_estimates(self) -> FeeEstimates:
        self._maybe_fail()
        return self.fees

    async def broadcast(self, raw_tx: str) -> str:
        self.calls += 1
        if self.fail_broadcast:
            raise SendTxError("rejected by fake provider")
        self.broadcasts.append(raw_tx)
        return deserialize_transaction(bytes.fromhex(raw_tx)).txid

    async def get_block_height(self) -> int:
        return 800_005


@pytest.fixture
def sample_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def fast_kdf() -> KdfParams:
    return FAST_KDF


@pytest.fixture
def wallet_path(tmp_path: Path) -> Path:
    return tmp_path / "wallet.dat"


@pytest.fixture
def wallet_config(wallet_path: Path) -> WalletConfig:
    return WalletConfig(
        wallet_path=wallet_path,
        gap_limit=5,
        read_retries=2,
        retry_base_delay=0.0,
        kdf=FAST_KDF,
    )
