"""
Ledger-wide invariant checks for StakeVault.

  - total_staked equals the sum of every vault's staked_amount
  - each vault's custody account holds at least its staked_amount
    (anyone may deposit into it, so a surplus is not an error)
  - every amount field is inside the u64 range
  - last_accrual_timestamp never moves backwards
  - reward mint supply equals total_rewards_minted
  - token balances of each mint sum to its supply

``capture`` records a snapshot before a batch of operations and
``verify`` checks the current state against it.  ``verify`` without a
prior ``capture`` still runs the stateless checks.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from stakevault_core.precision import U64_MAX
from stakevault_core.state import Vault


@dataclass
class ProgramSnapshot:
    """Fields that may only move in one direction."""
    total_rewards_minted: int = 0
    accrual_timestamps: dict[str, int] = field(default_factory=dict)


class InvariantChecker:

    def __init__(self):
        self._snapshot: ProgramSnapshot | None = None

    def capture(self, program) -> None:
        snap = ProgramSnapshot()
        if program.is_initialized:
            snap.total_rewards_minted = program.get_global().total_rewards_minted
        for vault in program.vaults():
            snap.accrual_timestamps[vault.address] = vault.last_accrual_timestamp
        self._snapshot = snap

    def verify(self, program) -> tuple[bool, str]:
        """
        Verify all invariants against the program's current state.
        Returns (passed, error_message).
        """
        if not program.is_initialized:
            return True, ""

        errors: list[str] = []
        vaults = program.vaults()

        for check in (
            self._check_total_staked,
            self._check_custody_balances,
            self._check_u64_ranges,
            self._check_reward_supply,
            self._check_timestamps,
        ):
            ok, msg = check(program, vaults)
            if not ok:
                errors.append(msg)

        ok, msg = self._check_mint_supplies(program.tokens)
        if not ok:
            errors.append(msg)

        self._snapshot = None
        if errors:
            return False, "; ".join(errors)
        return True, ""

    def _check_total_staked(self, program, vaults: list[Vault]) -> tuple[bool, str]:
        total = program.get_global().total_staked
        vault_sum = sum(v.staked_amount for v in vaults)
        if total != vault_sum:
            return False, f"total_staked mismatch: registry {total}, vaults {vault_sum}"
        return True, ""

    def _check_custody_balances(self, program, vaults: list[Vault]) -> tuple[bool, str]:
        for v in vaults:
            acc = program.tokens.accounts.get(v.custody_account)
            held = acc.amount if acc is not None else 0
            if held < v.staked_amount:
                return (False,
                        f"Custody {v.custody_account} holds only {held}, "
                        f"vault {v.address} records {v.staked_amount}")
        return True, ""

    def _check_u64_ranges(self, program, vaults: list[Vault]) -> tuple[bool, str]:
        glob = program.get_global()
        fields = [
            ("total_staked", glob.total_staked),
            ("total_rewards_minted", glob.total_rewards_minted),
            ("reward_rate", glob.reward_rate),
        ]
        for v in vaults:
            fields.append((f"{v.address}.staked_amount", v.staked_amount))
            fields.append((f"{v.address}.reward_debt", v.reward_debt))
        for name, value in fields:
            if not 0 <= value <= U64_MAX:
                return False, f"{name} out of u64 range: {value}"
        return True, ""

    def _check_reward_supply(self, program, vaults: list[Vault]) -> tuple[bool, str]:
        glob = program.get_global()
        supply = program.tokens.get_mint(glob.reward_mint).supply
        if supply != glob.total_rewards_minted:
            return (False,
                    f"Reward supply {supply} != total_rewards_minted "
                    f"{glob.total_rewards_minted}")
        snap = self._snapshot
        if snap is not None and glob.total_rewards_minted < snap.total_rewards_minted:
            return (False,
                    f"total_rewards_minted decreased: {snap.total_rewards_minted} -> "
                    f"{glob.total_rewards_minted}")
        return True, ""

    def _check_timestamps(self, program, vaults: list[Vault]) -> tuple[bool, str]:
        if self._snapshot is None:
            return True, ""
        for v in vaults:
            old = self._snapshot.accrual_timestamps.get(v.address)
            if old is not None and v.last_accrual_timestamp < old:
                return (False,
                        f"Accrual timestamp moved backwards on {v.address}: "
                        f"{old} -> {v.last_accrual_timestamp}")
        return True, ""

    @staticmethod
    def _check_mint_supplies(tokens) -> tuple[bool, str]:
        held: dict[str, int] = {}
        for acc in tokens.accounts.values():
            held[acc.mint] = held.get(acc.mint, 0) + acc.amount
        for address, mint in tokens.mints.items():
            if held.get(address, 0) != mint.supply:
                return (False,
                        f"Mint {address} supply {mint.supply} != balances "
                        f"{held.get(address, 0)}")
        return True, ""
