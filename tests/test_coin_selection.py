"""
Tests for coin selection and fee estimation.
"""

import random

import pytest

from hdengine.errors import BalanceInsufficientError, MaxInputCountExceededError
from hdengine.wallet.coin_selection import (
    estimate_fee,
    estimate_transaction_size,
    select_largest_first,
    select_random_improve,
)
from hdengine.wallet.models import UTXOInfo


def make_utxos(values: list[int]) -> list[UTXOInfo]:
    return [
        UTXOInfo(
            txid=f"{i:064x}",
            vout=0,
            value=value,
            address=f"addr{i}",
            confirmations=1,
            scriptpubkey="",
            path=f"m/44'/0'/0'/0/{i}",
            account=0,
        )
        for i, value in enumerate(values)
    ]


class TestFeeEstimation:
    def test_one_in_two_out(self):
        # 4 + 1 + 148 + 1 + 2*34 + 4
        assert estimate_transaction_size(1, 2) == 226

    def test_varint_growth(self):
        assert estimate_transaction_size(253, 1) - estimate_transaction_size(252, 1) == 148 + 2

    def test_fee_scales_with_rate(self):
        assert estimate_fee(2, 2, 10) == estimate_transaction_size(2, 2) * 10
        assert estimate_fee(2, 2, 0) == 0


class TestRandomImprove:
    def test_covers_target_and_fee(self):
        utxos = make_utxos([5000, 3000, 2000])
        result = select_random_improve(utxos, 4000, 1, rng=random.Random(1))

        assert result.total_value == sum(u.value for u in result.utxos)
        assert result.total_value == 4000 + result.fee + result.change_value
        assert result.fee >= estimate_fee(len(result.utxos), 1, 1)

    def test_reproducible_with_seeded_rng(self):
        utxos = make_utxos([1000 * i for i in range(1, 40)])
        a = select_random_improve(utxos, 15_000, 2, rng=random.Random(42))
        b = select_random_improve(utxos, 15_000, 2, rng=random.Random(42))
        assert [u.outpoint for u in a.utxos] == [u.outpoint for u in b.utxos]

    def test_improve_phase_bounded(self):
        utxos = make_utxos([1000] * 100)
        for seed in range(20):
            result = select_random_improve(utxos, 10_000, 1, rng=random.Random(seed))
            # Random phase needs 12 inputs: 12,000 >= 10,000 + fee(12 in, 2 out)
            requirement = 10_000 + estimate_fee(12, 2, 1)
            assert result.total_value <= 3 * requirement

    def test_improve_phase_moves_toward_double(self):
        utxos = make_utxos([1000] * 100)
        result = select_random_improve(utxos, 10_000, 0, rng=random.Random(7))
        # Ideal is 20,000; every 1000-sat step gets closer up to exactly 20 inputs
        assert result.total_value == 20_000
        assert result.change_value == 10_000

    def test_soundness_over_random_inputs(self):
        rng = random.Random(1234)
        for _ in range(200):
            values = [rng.randint(600, 200_000) for _ in range(rng.randint(1, 30))]
            utxos = make_utxos(values)
            target = rng.randint(1_000, 300_000)
            fee_rate = rng.randint(1, 30)
            try:
                result = select_random_improve(
                    utxos, target, fee_rate, max_inputs=10, rng=random.Random(rng.random())
                )
            except (BalanceInsufficientError, MaxInputCountExceededError):
                continue

            outputs = 2 if result.change_value else 1
            assert len(result.utxos) <= 10
            assert len({u.outpoint for u in result.utxos}) == len(result.utxos)
            assert result.total_value == target + result.fee + result.change_value
            assert result.fee >= estimate_fee(len(result.utxos), outputs, fee_rate)
            assert result.change_value == 0 or result.change_value >= 546

    def test_insufficient_balance(self):
        utxos = make_utxos([5000, 3000, 2000])
        with pytest.raises(BalanceInsufficientError):
            select_random_improve(utxos, 10_000, 1, rng=random.Random(0))

    def test_no_utxos(self):
        with pytest.raises(BalanceInsufficientError):
            select_random_improve([], 1000, 1)

    def test_dust_change_goes_to_fee(self):
        utxos = make_utxos([10_000])
        fee_one_output = estimate_fee(1, 1, 1)
        target = 10_000 - fee_one_output - 100
        result = select_random_improve(utxos, target, 1, rng=random.Random(0))
        assert result.change_value == 0
        assert result.fee == fee_one_output + 100

    def test_exact_spend_without_change(self):
        utxos = make_utxos([10_000])
        target = 10_000 - estimate_fee(1, 1, 1)
        result = select_random_improve(utxos, target, 1, rng=random.Random(0))
        assert result.change_value == 0
        assert result.fee == estimate_fee(1, 1, 1)

    def test_falls_back_to_largest_first(self):
        # Many tiny UTXOs plus one large one: random draws need far more than 5 inputs
        utxos = make_utxos([1_000] * 200 + [500_000])
        result = select_random_improve(utxos, 100_000, 1, max_inputs=5, rng=random.Random(3))
        assert len(result.utxos) <= 5
        assert any(u.value == 500_000 for u in result.utxos)

    def test_max_input_count_exceeded(self):
        utxos = make_utxos([1_000] * 50)
        with pytest.raises(MaxInputCountExceededError):
            select_random_improve(utxos, 20_000, 1, max_inputs=10, rng=random.Random(0))

    def test_non_positive_target(self):
        with pytest.raises(ValueError):
            select_random_improve(make_utxos([1000]), 0, 1)


class TestLargestFirst:
    def test_picks_biggest(self):
        utxos = make_utxos([100, 50_000, 2_000, 30_000])
        result = select_largest_first(utxos, 40_000, 1)
        assert [u.value for u in result.utxos] == [50_000]

    def test_accumulates(self):
        utxos = make_utxos([10_000, 20_000, 30_000])
        result = select_largest_first(utxos, 45_000, 1)
        assert [u.value for u in result.utxos] == [30_000, 20_000]

    def test_insufficient(self):
        with pytest.raises(BalanceInsufficientError):
            select_largest_first(make_utxos([1_000, 2_000]), 5_000, 1)
