"""
Tests for stakevault_core.accrual — linear reward accrual.

Covers:
  - Calibration: 100 000 000 staked for one year earns 10 000 000
  - Linearity in stake and time, floor rounding
  - Clock regression and zero-stake edge cases
  - Range checks (u128 product, u64 result, i64 timestamps)
  - Mixed-decimal rescaling
  - accrue() checkpoint semantics
"""

import pytest

from stakevault_core.accrual import (
    accrue,
    compute_pending_reward,
    elapsed_seconds,
    projected_reward,
)
from stakevault_core.errors import ArithmeticOverflow
from stakevault_core.precision import (
    DEFAULT_REWARD_RATE,
    I64_MAX,
    REWARD_RATE_PRECISION,
    SECONDS_PER_DAY,
    SECONDS_PER_YEAR,
    U64_MAX,
)
from stakevault_core.state import Vault

RATE = DEFAULT_REWARD_RATE


def _vault(staked=0, debt=0, ts=1_000):
    return Vault(
        address="vault", owner="owner", custody_account="custody",
        last_accrual_timestamp=ts, staked_amount=staked, reward_debt=debt,
    )


class TestCalibration:
    def test_one_year_ten_percent(self):
        assert compute_pending_reward(100_000_000, RATE, SECONDS_PER_YEAR) == 10_000_000

    def test_precision_constant(self):
        assert REWARD_RATE_PRECISION == 31_536_000 * 10_000

    def test_half_year(self):
        assert compute_pending_reward(100_000_000, RATE, SECONDS_PER_YEAR // 2) == 5_000_000

    def test_one_day(self):
        # 100_000_000 * 1000 * 86400 / 315_360_000_000 = 27397.26...
        assert compute_pending_reward(100_000_000, RATE, SECONDS_PER_DAY) == 27_397


class TestLinearity:
    def test_doubling_stake_doubles_reward(self):
        a = compute_pending_reward(50_000_000, RATE, SECONDS_PER_YEAR)
        b = compute_pending_reward(100_000_000, RATE, SECONDS_PER_YEAR)
        assert b == 2 * a

    def test_split_intervals_never_exceed_single(self):
        single = compute_pending_reward(123_456_789, RATE, 1_000)
        split = sum(compute_pending_reward(123_456_789, RATE, 100) for _ in range(10))
        assert split <= single

    def test_floor_rounding(self):
        # One unit for one second earns a tiny fraction, floored to zero
        assert compute_pending_reward(1, RATE, 1) == 0

    def test_zero_stake(self):
        assert compute_pending_reward(0, RATE, SECONDS_PER_YEAR) == 0

    def test_zero_rate(self):
        assert compute_pending_reward(100_000_000, 0, SECONDS_PER_YEAR) == 0

    def test_projected_reward_clamps_negative(self):
        assert projected_reward(100_000_000, RATE, -5) == 0
        assert projected_reward(100_000_000, RATE, SECONDS_PER_YEAR) == 10_000_000


class TestElapsed:
    def test_forward(self):
        assert elapsed_seconds(100, 160) == 60

    def test_same_instant(self):
        assert elapsed_seconds(100, 100) == 0

    def test_clock_regression_is_zero(self):
        assert elapsed_seconds(200, 100) == 0

    def test_timestamp_out_of_range(self):
        with pytest.raises(ArithmeticOverflow):
            elapsed_seconds(0, I64_MAX + 1)


class TestRanges:
    def test_u128_product_overflow(self):
        with pytest.raises(ArithmeticOverflow):
            compute_pending_reward(U64_MAX, U64_MAX, U64_MAX)

    def test_u64_result_overflow(self):
        # Product fits in 128 bits but the quotient does not fit in 64
        with pytest.raises(ArithmeticOverflow):
            compute_pending_reward(U64_MAX, RATE * 1_000_000, SECONDS_PER_YEAR)

    def test_stake_above_u64(self):
        with pytest.raises(ArithmeticOverflow):
            compute_pending_reward(U64_MAX + 1, RATE, 1)

    def test_negative_elapsed_rejected(self):
        with pytest.raises(ArithmeticOverflow):
            compute_pending_reward(1, RATE, -1)


class TestDecimals:
    def test_equal_decimals_unchanged(self):
        assert compute_pending_reward(100_000_000, RATE, SECONDS_PER_YEAR, 9, 9) == 10_000_000

    def test_reward_more_decimals(self):
        # 100 stake tokens (6 dp) earn 10 reward tokens (9 dp)
        assert compute_pending_reward(100_000_000, RATE, SECONDS_PER_YEAR, 6, 9) == 10_000_000_000

    def test_reward_fewer_decimals(self):
        assert compute_pending_reward(100_000_000, RATE, SECONDS_PER_YEAR, 6, 2) == 1_000


class TestAccrue:
    def test_adds_to_debt_and_moves_checkpoint(self):
        v = _vault(staked=100_000_000, debt=5, ts=1_000)
        pending = accrue(v, RATE, 1_000 + SECONDS_PER_YEAR)
        assert pending == 10_000_000
        assert v.reward_debt == 10_000_005
        assert v.last_accrual_timestamp == 1_000 + SECONDS_PER_YEAR

    def test_regression_leaves_checkpoint(self):
        v = _vault(staked=100_000_000, ts=5_000)
        assert accrue(v, RATE, 4_000) == 0
        assert v.last_accrual_timestamp == 5_000
        assert v.reward_debt == 0

    def test_empty_vault_still_checkpoints(self):
        v = _vault(staked=0, ts=1_000)
        accrue(v, RATE, 2_000)
        assert v.last_accrual_timestamp == 2_000

    def test_debt_overflow_rejected(self):
        v = _vault(staked=100_000_000, debt=U64_MAX, ts=0)
        with pytest.raises(ArithmeticOverflow):
            accrue(v, RATE, SECONDS_PER_YEAR)

    def test_idempotent_at_same_instant(self):
        v = _vault(staked=100_000_000, ts=0)
        accrue(v, RATE, SECONDS_PER_DAY)
        debt = v.reward_debt
        accrue(v, RATE, SECONDS_PER_DAY)
        assert v.reward_debt == debt
