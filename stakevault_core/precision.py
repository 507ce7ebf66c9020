"""
Precision constants and checked integer helpers for StakeVault.

All token amounts are unsigned 64-bit integers in the smallest unit of
their mint.  Intermediate accrual products are bounded to 128 bits and
timestamps to signed 64 bits, matching the ranges an on-chain program
would enforce.  Anything outside those ranges raises
``ArithmeticOverflow`` instead of wrapping.

Reward-rate fixed point
───────────────────────
The stored ``reward_rate`` is the annual yield in basis points.  Per
second and per unit of stake that is

    reward_rate / (SECONDS_PER_YEAR * BPS_DENOMINATOR)

so ``REWARD_RATE_PRECISION`` is that denominator.  The default rate of
1 000 bps gives exactly 10 % of the stake after 365 days:

    100_000_000 * 1_000 * 31_536_000 // 315_360_000_000 == 10_000_000
"""

from __future__ import annotations

from stakevault_core.errors import ArithmeticOverflow

U64_MAX: int = 2 ** 64 - 1
U128_MAX: int = 2 ** 128 - 1
I64_MIN: int = -(2 ** 63)
I64_MAX: int = 2 ** 63 - 1

SECONDS_PER_DAY: int = 86_400
SECONDS_PER_YEAR: int = 365 * SECONDS_PER_DAY  # 31_536_000
BPS_DENOMINATOR: int = 10_000

REWARD_RATE_PRECISION: int = SECONDS_PER_YEAR * BPS_DENOMINATOR
DEFAULT_APY_BPS: int = 1_000  # 10 %
DEFAULT_REWARD_RATE: int = DEFAULT_APY_BPS

# Both mints in the reference deployment use 6 decimals.
DEFAULT_STAKE_DECIMALS: int = 6
DEFAULT_REWARD_DECIMALS: int = 6
MAX_DECIMALS: int = 18


def check_u64(value: int, name: str = "value") -> int:
    """Return *value* if it fits in an unsigned 64-bit integer."""
    if value < 0 or value > U64_MAX:
        raise ArithmeticOverflow(f"{name} out of u64 range: {value}")
    return value


def check_i64(value: int, name: str = "value") -> int:
    if value < I64_MIN or value > I64_MAX:
        raise ArithmeticOverflow(f"{name} out of i64 range: {value}")
    return value


def checked_add_u64(a: int, b: int, name: str = "sum") -> int:
    return check_u64(a + b, name)


def checked_sub_u64(a: int, b: int, name: str = "difference") -> int:
    return check_u64(a - b, name)


def checked_mul_u128(*factors: int) -> int:
    """Multiply factors left to right, failing as soon as 128 bits are exceeded."""
    product = 1
    for f in factors:
        if f < 0:
            raise ArithmeticOverflow(f"negative factor: {f}")
        product *= f
        if product > U128_MAX:
            raise ArithmeticOverflow("u128 multiplication overflow")
    return product


def reward_rate_from_apy_bps(apy_bps: int) -> int:
    """Encode an annual percentage yield (in bps) as a stored reward rate."""
    if apy_bps < 0:
        raise ValueError("APY must be non-negative")
    return check_u64(apy_bps, "reward_rate")


def apy_from_reward_rate(reward_rate: int) -> float:
    """Annual yield as a fraction (0.10 for 10 %), for display only."""
    return reward_rate / BPS_DENOMINATOR


def validate_decimals(decimals: int) -> int:
    if not 0 <= decimals <= MAX_DECIMALS:
        raise ValueError(f"decimals must be between 0 and {MAX_DECIMALS}")
    return decimals


def to_ui_amount(amount: int, decimals: int) -> float:
    """Convert a smallest-unit integer to a display float."""
    return amount / (10 ** decimals)


def from_ui_amount(value: float | str, decimals: int) -> int:
    """Convert a display amount to the nearest smallest-unit integer."""
    from decimal import Decimal, ROUND_HALF_UP

    scaled = (Decimal(str(value)) * (Decimal(10) ** decimals)).quantize(
        Decimal(1), rounding=ROUND_HALF_UP,
    )
    return int(scaled)


def format_amount(amount: int, decimals: int, symbol: str = "") -> str:
    """Return a human-readable string with the mint's decimal places.

    >>> format_amount(10_000_000, 6, "RWD")
    '10.000000 RWD'
    """
    whole, frac = divmod(amount, 10 ** decimals)
    text = f"{whole}.{frac:0{decimals}d}" if decimals else str(whole)
    return f"{text} {symbol}" if symbol else text
