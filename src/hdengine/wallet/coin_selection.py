"""
Coin selection.

Random-Improve picks inputs uniformly at random until the payment and fee are
covered, then keeps adding random inputs while that moves the selected total
closer to twice the requirement (never past three times it). The resulting
change output is roughly the size of the payment, which keeps the UTXO set
healthy and makes change harder to tell apart from the payment.

Largest-First is used when a random draw would need too many inputs.
"""

from __future__ import annotations

import random

from loguru import logger

from hdengine.constants import (
    DEFAULT_MAX_INPUTS,
    P2PKH_INPUT_SIZE,
    P2PKH_OUTPUT_SIZE,
    STANDARD_DUST_LIMIT,
    TX_LOCKTIME_SIZE,
    TX_VERSION_SIZE,
)
from hdengine.errors import BalanceInsufficientError, MaxInputCountExceededError
from hdengine.wallet.models import CoinSelection, UTXOInfo
from hdengine.wallet.signing import encode_varint


def estimate_transaction_size(num_inputs: int, num_outputs: int) -> int:
    """Size in bytes of a legacy transaction spending P2PKH inputs."""
    return (
        TX_VERSION_SIZE
        + len(encode_varint(num_inputs))
        + num_inputs * P2PKH_INPUT_SIZE
        + len(encode_varint(num_outputs))
        + num_outputs * P2PKH_OUTPUT_SIZE
        + TX_LOCKTIME_SIZE
    )


def estimate_fee(num_inputs: int, num_outputs: int, fee_rate: int) -> int:
    return estimate_transaction_size(num_inputs, num_outputs) * fee_rate


def _finalize(
    selected: list[UTXOInfo],
    target: int,
    fee_rate: int,
    num_outputs: int,
    dust_threshold: int,
) -> CoinSelection:
    total = sum(u.value for u in selected)
    fee_with_change = estimate_fee(len(selected), num_outputs + 1, fee_rate)
    change = total - target - fee_with_change

    if change >= dust_threshold:
        return CoinSelection(
            utxos=selected, total_value=total, change_value=change, fee=fee_with_change
        )

    fee_without_change = estimate_fee(len(selected), num_outputs, fee_rate)
    if total < target + fee_without_change:
        raise BalanceInsufficientError(
            f"Insufficient funds: need {target + fee_without_change}, have {total}"
        )

    # Dust change goes to the miner
    return CoinSelection(utxos=selected, total_value=total, change_value=0, fee=total - target)


def _check_available(utxos: list[UTXOInfo], target: int, fee_rate: int, num_outputs: int) -> None:
    available = sum(u.value for u in utxos)
    needed = target + estimate_fee(1, num_outputs, fee_rate)
    if not utxos or available < needed:
        raise BalanceInsufficientError(
            f"Insufficient funds: need at least {needed}, have {available}"
        )


def _validate(target: int, fee_rate: int, num_outputs: int) -> None:
    if target <= 0:
        raise ValueError(f"Target amount must be positive, got {target}")
    if fee_rate < 0:
        raise ValueError(f"Fee rate must not be negative, got {fee_rate}")
    if num_outputs < 1:
        raise ValueError("At least one payment output is required")


def select_largest_first(
    utxos: list[UTXOInfo],
    target: int,
    fee_rate: int,
    num_outputs: int = 1,
    max_inputs: int = DEFAULT_MAX_INPUTS,
    dust_threshold: int = STANDARD_DUST_LIMIT,
) -> CoinSelection:
    """Spend the biggest UTXOs first until payment and fee are covered."""
    _validate(target, fee_rate, num_outputs)
    _check_available(utxos, target, fee_rate, num_outputs)

    selected: list[UTXOInfo] = []
    total = 0
    for utxo in sorted(utxos, key=lambda u: u.value, reverse=True):
        selected.append(utxo)
        total += utxo.value
        if total >= target + estimate_fee(len(selected), num_outputs + 1, fee_rate):
            break

    result = _finalize(selected, target, fee_rate, num_outputs, dust_threshold)
    if len(result.utxos) > max_inputs:
        raise MaxInputCountExceededError(
            f"Payment needs {len(result.utxos)} inputs, maximum is {max_inputs}"
        )
    return result


def select_random_improve(
    utxos: list[UTXOInfo],
    target: int,
    fee_rate: int,
    num_outputs: int = 1,
    max_inputs: int = DEFAULT_MAX_INPUTS,
    dust_threshold: int = STANDARD_DUST_LIMIT,
    rng: random.Random | None = None,
) -> CoinSelection:
    """
    Select inputs with Random-Improve.

    Args:
        utxos: Spendable UTXOs of the account
        target: Payment amount in satoshis
        fee_rate: Fee rate in sat/vB
        num_outputs: Number of payment outputs (change not included)
        max_inputs: Maximum inputs per transaction
        dust_threshold: Change below this is added to the fee
        rng: Random source; a seeded ``random.Random`` makes selection reproducible

    Returns:
        CoinSelection with the selected UTXOs, fee and change (0 = no change output)

    Raises:
        BalanceInsufficientError: UTXOs cannot cover target plus fee
        MaxInputCountExceededError: Covering the target needs more than max_inputs
    """
    _validate(target, fee_rate, num_outputs)
    _check_available(utxos, target, fee_rate, num_outputs)
    rng = rng or random.SystemRandom()

    pool = list(utxos)
    rng.shuffle(pool)

    # Random phase
    selected: list[UTXOInfo] = []
    total = 0
    covered = False
    for utxo in pool:
        selected.append(utxo)
        total += utxo.value
        if total >= target + estimate_fee(len(selected), num_outputs + 1, fee_rate):
            covered = True
            break

    if not covered and len(selected) <= max_inputs:
        # All UTXOs drawn; may still cover the payment without a change output
        return _finalize(selected, target, fee_rate, num_outputs, dust_threshold)

    if len(selected) > max_inputs:
        logger.debug(
            f"Random selection needs {len(selected)} inputs (max {max_inputs}), "
            "falling back to largest-first"
        )
        return select_largest_first(
            utxos, target, fee_rate, num_outputs, max_inputs, dust_threshold
        )

    # Improve phase
    requirement = target + estimate_fee(len(selected), num_outputs + 1, fee_rate)
    ideal = 2 * requirement
    maximum = 3 * requirement

    for utxo in pool[len(selected) :]:
        if len(selected) >= max_inputs:
            break
        # An input worth less than its own fee only shrinks the change
        input_cost = estimate_fee(len(selected) + 1, num_outputs + 1, fee_rate) - estimate_fee(
            len(selected), num_outputs + 1, fee_rate
        )
        if utxo.value <= input_cost:
            continue
        new_total = total + utxo.value
        if abs(ideal - new_total) < abs(ideal - total) and new_total <= maximum:
            selected.append(utxo)
            total = new_total

    result = _finalize(selected, target, fee_rate, num_outputs, dust_threshold)
    logger.debug(
        f"Selected {len(result.utxos)} inputs totalling {result.total_value} sats "
        f"(fee {result.fee}, change {result.change_value})"
    )
    return result
