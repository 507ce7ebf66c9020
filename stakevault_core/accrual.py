"""
Reward accrual for StakeVault.

Accrual is linear in both stake and time, with no compounding and no tiers:

    pending = floor(staked * reward_rate * elapsed / REWARD_RATE_PRECISION)

    elapsed = max(0, now - last_accrual_timestamp)

A clock reading at or before the last checkpoint yields zero, never a
negative reward.  The product is bounded to 128 bits and the result to
64 bits; anything larger raises ``ArithmeticOverflow``.

When the stake and reward mints use different decimals the result is
rescaled into reward units inside the same floor division, so rounding
happens exactly once.
"""

from __future__ import annotations

from stakevault_core.errors import ArithmeticOverflow
from stakevault_core.precision import (
    REWARD_RATE_PRECISION,
    check_i64,
    check_u64,
    checked_add_u64,
    checked_mul_u128,
)
from stakevault_core.state import Vault


def elapsed_seconds(last_accrual_timestamp: int, now: int) -> int:
    """Seconds since the last checkpoint, clamped at zero."""
    check_i64(now, "now")
    check_i64(last_accrual_timestamp, "last_accrual_timestamp")
    return max(0, now - last_accrual_timestamp)


def compute_pending_reward(
    staked_amount: int,
    reward_rate: int,
    elapsed: int,
    stake_decimals: int = 0,
    reward_decimals: int = 0,
) -> int:
    """Reward earned by *staked_amount* over *elapsed* seconds."""
    check_u64(staked_amount, "staked_amount")
    check_u64(reward_rate, "reward_rate")
    if elapsed < 0:
        raise ArithmeticOverflow(f"negative elapsed time: {elapsed}")
    if staked_amount == 0 or reward_rate == 0 or elapsed == 0:
        return 0

    numerator = checked_mul_u128(staked_amount, reward_rate, elapsed)
    denominator = REWARD_RATE_PRECISION
    shift = reward_decimals - stake_decimals
    if shift > 0:
        numerator = checked_mul_u128(numerator, 10 ** shift)
    elif shift < 0:
        denominator *= 10 ** (-shift)
    return check_u64(numerator // denominator, "pending reward")


def accrue(
    vault: Vault,
    reward_rate: int,
    now: int,
    stake_decimals: int = 0,
    reward_decimals: int = 0,
) -> int:
    """Bring *vault* up to *now*: add pending reward to ``reward_debt``.

    Mutates the given vault (callers pass a working copy) and returns the
    newly accrued amount.  The checkpoint never moves backwards.
    """
    elapsed = elapsed_seconds(vault.last_accrual_timestamp, now)
    pending = compute_pending_reward(
        vault.staked_amount, reward_rate, elapsed, stake_decimals, reward_decimals,
    )
    vault.reward_debt = checked_add_u64(vault.reward_debt, pending, "reward_debt")
    if now > vault.last_accrual_timestamp:
        vault.last_accrual_timestamp = now
    return pending


def projected_reward(
    staked_amount: int,
    reward_rate: int,
    seconds: int,
    stake_decimals: int = 0,
    reward_decimals: int = 0,
) -> int:
    """What *staked_amount* would earn over *seconds* from now (read-only)."""
    return compute_pending_reward(
        staked_amount, reward_rate, max(0, seconds), stake_decimals, reward_decimals,
    )
