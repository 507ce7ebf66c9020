"""
Program-owned records and the store that holds them.

Three record types live at program-derived addresses:

  GlobalRegistry     — singleton: reward rate, mints, aggregate stake
  RewardMintCustody  — singleton: the address that may mint rewards
  Vault              — one per user: stake, unclaimed reward, custody flag

``AccountStore`` is the only place records are kept.  ``create`` refuses
to overwrite an existing address; ``load`` refuses to hand back a record
of the wrong type.  Nothing outside the staking program writes to it.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import asdict, dataclass
from typing import TypeVar, Union

from stakevault_core.errors import AccountNotInitialized, AlreadyInitialized


@dataclass
class GlobalRegistry:
    address: str
    authority: str
    reward_rate: int
    stake_mint: str
    reward_mint: str
    reward_authority_bump: int
    created_at: int
    total_staked: int = 0
    total_rewards_minted: int = 0
    bump: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RewardMintCustody:
    address: str
    reward_mint: str
    bump: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Vault:
    """Per-user staking record.

    ``reward_debt`` is reward already accrued but not yet claimed, in the
    reward mint's smallest unit.  ``last_accrual_timestamp`` only moves
    forward.
    """
    address: str
    owner: str
    custody_account: str
    last_accrual_timestamp: int
    staked_amount: int = 0
    reward_debt: int = 0
    authority_set: bool = False
    bump: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


Record = Union[GlobalRegistry, RewardMintCustody, Vault]
R = TypeVar("R", GlobalRegistry, RewardMintCustody, Vault)


class AccountStore:
    """Address → record map with create-once semantics."""

    def __init__(self) -> None:
        self._records: dict[str, Record] = {}
        self._lock = threading.RLock()

    def exists(self, address: str) -> bool:
        return address in self._records

    def create(self, record: Record) -> Record:
        with self._lock:
            if record.address in self._records:
                existing = self._records[record.address]
                raise AlreadyInitialized(
                    f"{type(existing).__name__} already exists at {record.address}"
                )
            self._records[record.address] = record
            return record

    def load(self, address: str, kind: type[R]) -> R:
        record = self._records.get(address)
        if record is None:
            raise AccountNotInitialized(f"No {kind.__name__} at {address}")
        if not isinstance(record, kind):
            raise AccountNotInitialized(
                f"Account {address} holds a {type(record).__name__}, not a {kind.__name__}"
            )
        return record

    def load_copy(self, address: str, kind: type[R]) -> R:
        """Working copy for compute-then-commit updates."""
        return copy.copy(self.load(address, kind))

    def commit(self, record: Record) -> None:
        """Replace an existing record with its updated copy."""
        with self._lock:
            if record.address not in self._records:
                raise AccountNotInitialized(f"No record at {record.address}")
            self._records[record.address] = record

    def put(self, record: Record) -> None:
        """Unconditional insert, used when restoring from storage."""
        with self._lock:
            self._records[record.address] = record

    def records(self, kind: type[R]) -> list[R]:
        with self._lock:
            return [r for r in self._records.values() if isinstance(r, kind)]

    def __len__(self) -> int:
        return len(self._records)
