"""
Base blockchain backend interface.
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from loguru import logger

from hdengine.errors import NetworkError
from hdengine.wallet.models import FeeEstimates

T = TypeVar("T")


@dataclass
class UTXO:
    txid: str
    vout: int
    value: int
    address: str
    confirmations: int
    scriptpubkey: str
    height: int | None = None


@dataclass
class TxEndpoint:
    """One side of a transaction input or output."""

    address: str | None
    value: int


@dataclass
class AddressTransaction:
    txid: str
    inputs: list[TxEndpoint] = field(default_factory=list)
    outputs: list[TxEndpoint] = field(default_factory=list)
    fee: int = 0
    confirmed: bool = False
    block_height: int | None = None


class BlockchainBackend(ABC):
    """
    Abstract blockchain data provider for one network.
    Implementations raise NetworkError for transport failures and
    SendTxError when a broadcast is rejected.
    """

    @abstractmethod
    async def get_utxos(self, address: str) -> list[UTXO]:
        """Get UTXOs for an address"""

    @abstractmethod
    async def get_address_history(self, address: str) -> list[AddressTransaction]:
        """Get every transaction touching an address, mempool included"""

    @abstractmethod
    async def get_fee_estimates(self) -> FeeEstimates:
        """Get recommended fee rates in sat/vB"""

    @abstractmethod
    async def broadcast(self, raw_tx: str) -> str:
        """Broadcast a hex-encoded transaction, returns txid"""

    @abstractmethod
    async def get_block_height(self) -> int:
        """Get current blockchain height"""

    async def close(self) -> None:
        """Close backend connection"""
        pass


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    retries: int = 3,
    base_delay: float = 0.5,
    description: str = "backend call",
) -> T:
    """
    Await ``func()``, retrying on NetworkError with exponential backoff and jitter.

    Only use for idempotent reads; broadcasting must never be retried.
    """
    for attempt in range(retries + 1):
        try:
            return await func()
        except NetworkError as e:
            if attempt >= retries:
                logger.error(f"{description} failed after {retries + 1} attempts: {e}")
                raise
            delay = base_delay * (2**attempt) + random.uniform(0, 0.5)
            logger.warning(
                f"{description} failed ({e}), retrying in {delay:.2f}s "
                f"(attempt {attempt + 1}/{retries})"
            )
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")
