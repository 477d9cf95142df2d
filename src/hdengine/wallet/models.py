"""
Wallet data models.

The wallet tree (coin types, accounts, chains, addresses) is persisted inside
the encrypted wallet file and uses Pydantic for validation and serialization.
Derived, per-request views are plain dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from hdengine.constants import CHANGE_CHAIN, COIN_TYPE_NAMES, PURPOSE, RECEIVE_CHAIN


class AddressEntry(BaseModel):
    index: int = Field(..., ge=0)
    path: str
    address: str
    scriptpubkey: str
    used: bool = False


class ChainState(BaseModel):
    """Allocation state of one chain (receive or change) of an account."""

    chain: int = Field(..., ge=RECEIVE_CHAIN, le=CHANGE_CHAIN)
    next_index: int = Field(default=0, ge=0)
    highest_used: int = Field(default=-1, ge=-1)
    addresses: list[AddressEntry] = Field(default_factory=list)

    @property
    def allocated(self) -> int:
        return len(self.addresses)

    def unused_beyond_highest(self) -> int:
        """Number of allocated addresses after the highest used one."""
        return self.allocated - (self.highest_used + 1)


class Account(BaseModel):
    index: int = Field(..., ge=0)
    coin_type: int
    xpub: str
    receive: ChainState = Field(default_factory=lambda: ChainState(chain=RECEIVE_CHAIN))
    change: ChainState = Field(default_factory=lambda: ChainState(chain=CHANGE_CHAIN))

    def chain_state(self, chain: int) -> ChainState:
        return self.receive if chain == RECEIVE_CHAIN else self.change

    def all_addresses(self) -> list[AddressEntry]:
        return [*self.receive.addresses, *self.change.addresses]

    def path_for(self, chain: int, index: int) -> str:
        return f"m/{PURPOSE}'/{self.coin_type}'/{self.index}'/{chain}/{index}"


class CoinType(BaseModel):
    index: int
    name: str
    accounts: dict[int, Account] = Field(default_factory=dict)

    def next_account_index(self) -> int:
        return max(self.accounts, default=-1) + 1


class WalletTree(BaseModel):
    purpose: int = PURPOSE
    coin_types: dict[int, CoinType] = Field(
        default_factory=lambda: {
            index: CoinType(index=index, name=name) for index, name in COIN_TYPE_NAMES.items()
        }
    )


class FeeEstimates(BaseModel):
    """Recommended fee rates in sat/vB."""

    model_config = ConfigDict(populate_by_name=True)

    fastest: int = Field(..., alias="fastestFee", ge=0)
    half_hour: int = Field(..., alias="halfHourFee", ge=0)
    hour: int = Field(..., alias="hourFee", ge=0)
    economy: int = Field(..., alias="economyFee", ge=0)
    minimum: int = Field(..., alias="minimumFee", ge=0)


@dataclass
class UTXOInfo:
    """Extended UTXO information with wallet context"""

    txid: str
    vout: int
    value: int
    address: str
    confirmations: int
    scriptpubkey: str
    path: str
    account: int
    height: int | None = None

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass
class CoinSelection:
    """Result of coin selection"""

    utxos: list[UTXOInfo]
    total_value: int
    change_value: int
    fee: int


class TransactionType(str, Enum):
    INCOMING = "Incoming"
    OUTGOING = "Outgoing"
    INTERNAL = "Internal"


@dataclass
class SimpleTransaction:
    txid: str
    transaction_type: TransactionType
    value: int
    fee: int
    confirmed: bool
    block_height: int | None = None


@dataclass
class SendResult:
    txid: str
    amount: int
    fee: int
    change: int
    inputs: int

    @property
    def total_sent(self) -> int:
        return self.amount + self.fee
