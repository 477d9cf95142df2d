"""
Transaction builder for outgoing payments.

Builds a legacy transaction from:
- the account UTXOs chosen by Random-Improve
- the payment output to the destination
- an optional change output back to the account's change chain

and signs every input with the key derived from the unlocked seed.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from loguru import logger

from hdengine.backends.base import BlockchainBackend
from hdengine.constants import DEFAULT_MAX_INPUTS, STANDARD_DUST_LIMIT
from hdengine.errors import TransactionBuildError
from hdengine.wallet.accounts import AddressManager
from hdengine.wallet.address import is_testnet_coin_type, validate_address
from hdengine.wallet.bip32 import HDKey, KeyDerivationError
from hdengine.wallet.coin_selection import select_random_improve
from hdengine.wallet.models import Account, AddressEntry, CoinSelection, SendResult, UTXOInfo
from hdengine.wallet.service import UTXOTracker
from hdengine.wallet.signing import (
    Transaction,
    TransactionSigningError,
    TxInput,
    TxOutput,
    sign_transaction,
)
from hdengine.wallet.vault import UnlockedSession

P2PKH_SCRIPT_PREFIX = "76a914"


@dataclass
class PaymentTxData:
    """Everything needed to assemble one payment."""

    selection: CoinSelection
    destination_script: bytes
    amount: int
    change: AddressEntry | None


def build_unsigned_tx(data: PaymentTxData) -> Transaction:
    """Version 1, locktime 0, final sequences; payment output first."""
    inputs = [TxInput(txid=u.txid, vout=u.vout) for u in data.selection.utxos]
    outputs = [TxOutput(value=data.amount, script=data.destination_script)]

    if data.selection.change_value > 0:
        if data.change is None:
            raise TransactionBuildError("Change value without change address")
        outputs.append(
            TxOutput(
                value=data.selection.change_value,
                script=bytes.fromhex(data.change.scriptpubkey),
            )
        )

    return Transaction(version=1, inputs=inputs, outputs=outputs, locktime=0)


def sign_inputs(tx: Transaction, utxos: list[UTXOInfo], master_key: HDKey) -> Transaction:
    """Derive the key of each spent output and fill in its scriptSig."""
    prev_scripts = []
    private_keys = []
    for utxo in utxos:
        if not utxo.scriptpubkey.startswith(P2PKH_SCRIPT_PREFIX) or len(utxo.scriptpubkey) != 50:
            raise TransactionBuildError(f"Unsupported script for input {utxo.outpoint}")

        try:
            key = master_key.derive(utxo.path)
        except KeyDerivationError as e:
            raise TransactionBuildError(f"Cannot derive key for {utxo.outpoint}: {e}") from e
        if key.get_address() != utxo.address:
            raise TransactionBuildError(f"Key for {utxo.outpoint} does not match its address")

        prev_scripts.append(bytes.fromhex(utxo.scriptpubkey))
        private_keys.append(key.private_key)

    try:
        return sign_transaction(tx, prev_scripts, private_keys)
    except TransactionSigningError as e:
        raise TransactionBuildError(f"Signing failed: {e}") from e


class TransactionBuilder:
    """Selects coins for a payment, signs it and broadcasts it."""

    def __init__(
        self,
        addresses: AddressManager,
        tracker: UTXOTracker,
        max_inputs: int = DEFAULT_MAX_INPUTS,
        dust_threshold: int = STANDARD_DUST_LIMIT,
        rng: random.Random | None = None,
    ):
        self.addresses = addresses
        self.tracker = tracker
        self.max_inputs = max_inputs
        self.dust_threshold = dust_threshold
        self.rng = rng

    def build(
        self,
        session: UnlockedSession,
        account: Account,
        destination: str,
        amount: int,
        utxos: list[UTXOInfo],
        fee_rate: int,
    ) -> tuple[Transaction, PaymentTxData]:
        """Select, assemble and sign without touching any wallet state."""
        if amount <= 0:
            raise TransactionBuildError(f"Amount must be positive, got {amount}")
        if fee_rate < 0:
            raise TransactionBuildError(f"Fee rate must not be negative, got {fee_rate}")

        parsed = validate_address(destination, account.coin_type)

        selection = select_random_improve(
            utxos,
            amount,
            fee_rate,
            num_outputs=1,
            max_inputs=self.max_inputs,
            dust_threshold=self.dust_threshold,
            rng=self.rng,
        )

        change = self.addresses.peek_change_address(account) if selection.change_value else None
        data = PaymentTxData(
            selection=selection,
            destination_script=parsed.scriptpubkey,
            amount=amount,
            change=change,
        )

        testnet = is_testnet_coin_type(account.coin_type)
        tx = sign_inputs(build_unsigned_tx(data), selection.utxos, session.master_key(testnet))
        return tx, data

    async def build_and_send(
        self,
        session: UnlockedSession,
        account: Account,
        backend: BlockchainBackend,
        destination: str,
        amount: int,
        fee_rate: int,
    ) -> SendResult:
        """
        Build, sign and broadcast a payment.

        Spent UTXOs are dropped and the change address is recorded as used
        only after the backend accepted the transaction.
        """
        utxos = await self.tracker.sync(account)
        tx, data = self.build(session, account, destination, amount, utxos, fee_rate)

        raw_tx = tx.serialize().hex()
        logger.info(
            f"Broadcasting payment of {amount} sats, fee {data.selection.fee} sats, "
            f"{len(tx.inputs)} inputs, {len(tx.outputs)} outputs"
        )
        txid = await backend.broadcast(raw_tx)
        if txid != tx.txid:
            logger.warning(f"Provider returned txid {txid}, computed {tx.txid}")

        self.tracker.remove_spent(account, data.selection.utxos)
        if data.change is not None:
            self.addresses.commit_change_address(account, data.change)

        return SendResult(
            txid=tx.txid,
            amount=amount,
            fee=data.selection.fee,
            change=data.selection.change_value,
            inputs=len(tx.inputs),
        )
