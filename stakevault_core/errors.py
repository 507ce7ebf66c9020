"""
Error taxonomy for the staking program.

Every failure a state transition can report is a ``StakingError``
subclass carrying a stable ``code`` (used on the wire by the API and in
receipts) and a ``number`` (the program's custom error index).  All of
them are raised before any record is mutated.
"""

from __future__ import annotations


class StakingError(ValueError):
    """Base class for all program errors."""

    code: str = "StakingError"
    number: int = 6000
    default_message: str = "Staking program error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "code": self.number, "message": self.message}


class InsufficientStake(StakingError):
    code = "InsufficientStake"
    number = 6000
    default_message = "Insufficient staked amount"


class InvalidRewardAuthority(StakingError):
    code = "InvalidRewardAuthority"
    number = 6001
    default_message = "Reward mint authority mismatch"


class ArithmeticOverflow(StakingError):
    code = "ArithmeticOverflow"
    number = 6002
    default_message = "Arithmetic overflow"


class Unauthorized(StakingError):
    code = "Unauthorized"
    number = 6004
    default_message = "Signer is not authorized for this account"


class AlreadySet(StakingError):
    code = "AlreadySet"
    number = 6005
    default_message = "Vault authority already set"


class NothingToClaim(StakingError):
    code = "NothingToClaim"
    number = 6006
    default_message = "No rewards available to claim"


class AlreadyInitialized(StakingError):
    code = "AlreadyInitialized"
    number = 6007
    default_message = "Account already initialized"


class AccountNotInitialized(StakingError):
    code = "AccountNotInitialized"
    number = 6008
    default_message = "Account not initialized"


class InsufficientFunds(StakingError):
    code = "InsufficientFunds"
    number = 6009
    default_message = "Insufficient token balance"


class MintMismatch(StakingError):
    code = "MintMismatch"
    number = 6010
    default_message = "Token account belongs to a different mint"


class InstructionReplayed(StakingError):
    code = "InstructionReplayed"
    number = 6011
    default_message = "Instruction already processed"


class InvalidInstruction(StakingError):
    code = "InvalidInstruction"
    number = 6012
    default_message = "Malformed instruction"


class InvariantViolation(StakingError):
    code = "InvariantViolation"
    number = 6013
    default_message = "Ledger invariant violated"


ERRORS_BY_CODE: dict[str, type[StakingError]] = {
    cls.code: cls
    for cls in (
        InsufficientStake,
        InvalidRewardAuthority,
        ArithmeticOverflow,
        Unauthorized,
        AlreadySet,
        NothingToClaim,
        AlreadyInitialized,
        AccountNotInitialized,
        InsufficientFunds,
        MintMismatch,
        InstructionReplayed,
        InvalidInstruction,
        InvariantViolation,
    )
}
