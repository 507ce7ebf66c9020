"""
Operation receipts for the staking program.

Every state transition produces an ``OperationReceipt`` describing what
it did:

  - affected_records: records created or modified, with the fields that
    changed (previous and final values)
  - token_movements: transfers, mints and authority changes it caused
  - value: the operation's return value (minted amount, yield, …)

Receipts are built while the operation runs and only handed out once it
has committed.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class RecordAction(Enum):
    CREATED = "CreatedRecord"
    MODIFIED = "ModifiedRecord"


@dataclass
class AffectedRecord:
    """A single program record touched by an operation."""
    action: RecordAction
    record_type: str       # "GlobalRegistry", "Vault", "RewardMintCustody"
    address: str
    previous_fields: dict = field(default_factory=dict)
    final_fields: dict = field(default_factory=dict)
    new_fields: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        d = {
            "action": self.action.value,
            "record_type": self.record_type,
            "address": self.address,
        }
        if self.previous_fields:
            d["previous_fields"] = self.previous_fields
        if self.final_fields:
            d["final_fields"] = self.final_fields
        if self.new_fields:
            d["new_fields"] = self.new_fields
        return d


@dataclass
class TokenMovement:
    """A call made into the token ledger."""
    kind: str              # "transfer", "mint_to", "set_authority"
    source: str            # source account, or mint for mint_to
    destination: str       # destination account, or new owner for set_authority
    authority: str
    amount: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class OperationReceipt:
    operation: str
    user: str
    timestamp: int
    value: Any = None
    instruction_id: str = ""
    affected_records: list[AffectedRecord] = field(default_factory=list)
    token_movements: list[TokenMovement] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "user": self.user,
            "timestamp": self.timestamp,
            "value": self.value.to_dict() if hasattr(self.value, "to_dict") else self.value,
            "instruction_id": self.instruction_id,
            "affected_records": [r.to_dict() for r in self.affected_records],
            "token_movements": [m.to_dict() for m in self.token_movements],
        }


class ReceiptBuilder:
    """Collects changes during an operation and produces a receipt."""

    def __init__(self, operation: str, user: str, timestamp: int):
        self._operation = operation
        self._user = user
        self._timestamp = timestamp
        self._records: list[AffectedRecord] = []
        self._movements: list[TokenMovement] = []
        self._value: Any = None

    def record_create(self, record) -> None:
        self._records.append(AffectedRecord(
            action=RecordAction.CREATED,
            record_type=type(record).__name__,
            address=record.address,
            new_fields=record.to_dict(),
        ))

    def record_modify(self, before, after) -> None:
        """Record the fields that differ between two versions of a record."""
        prev = before.to_dict()
        final = after.to_dict()
        changed = [k for k in final if prev.get(k) != final[k]]
        if not changed:
            return
        self._records.append(AffectedRecord(
            action=RecordAction.MODIFIED,
            record_type=type(after).__name__,
            address=after.address,
            previous_fields={k: prev.get(k) for k in changed},
            final_fields={k: final[k] for k in changed},
        ))

    def record_movement(self, kind: str, source: str, destination: str,
                        authority: str, amount: int = 0) -> None:
        self._movements.append(TokenMovement(kind, source, destination, authority, amount))

    def set_value(self, value: Any) -> None:
        self._value = value

    def build(self, instruction_id: str = "") -> OperationReceipt:
        return OperationReceipt(
            operation=self._operation,
            user=self._user,
            timestamp=self._timestamp,
            value=self._value,
            instruction_id=instruction_id,
            affected_records=list(self._records),
            token_movements=list(self._movements),
        )
