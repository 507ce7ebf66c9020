"""
Security-focused tests for stakevault_core.program — edge cases & invariants.

Covers:
  - Overflow rejection on amounts and accrued rewards
  - Clock regression never produces or erases reward
  - Failed token movements leave every record untouched
  - Custody of another user's vault cannot be taken
  - Concurrent operations on the same and different vaults
  - Custody account refused as stake source or unstake destination
  - Malformed token account arguments
  - InvariantChecker catching tampered state
"""

import threading

import pytest

from stakevault_core.errors import (
    ArithmeticOverflow,
    InvalidInstruction,
    InvariantViolation,
    MintMismatch,
    StakingError,
    Unauthorized,
)
from stakevault_core.invariants import InvariantChecker
from stakevault_core.precision import SECONDS_PER_YEAR, U64_MAX
from stakevault_core.state import GlobalRegistry
from stakevault_core.token_ledger import get_associated_token_address


def _snapshot(program, user):
    return program.get_vault(user.address), program.get_global()


# ═══════════════════════════════════════════════════════════════════
#  Overflow
# ═══════════════════════════════════════════════════════════════════

class TestOverflow:
    def test_amount_above_u64(self, staking, alice):
        with pytest.raises(ArithmeticOverflow):
            staking.stake(alice.address, U64_MAX + 1)

    def test_reward_overflow_leaves_vault(self, staking, make_user, clock):
        whale = make_user(balance=U64_MAX)
        staking.stake(whale.address, U64_MAX)
        clock.advance(SECONDS_PER_YEAR)
        assert staking.get_yield(whale.address) == U64_MAX // 10

        # Eleven more years at 10 % is more than the whole u64 range.
        clock.advance(11 * SECONDS_PER_YEAR)
        before = _snapshot(staking, whale)
        with pytest.raises(ArithmeticOverflow):
            staking.get_yield(whale.address)
        assert _snapshot(staking, whale) == before

    def test_unstake_still_blocked_after_overflow(self, staking, make_user, clock):
        whale = make_user(balance=U64_MAX)
        staking.stake(whale.address, U64_MAX)
        clock.advance(12 * SECONDS_PER_YEAR)
        with pytest.raises(ArithmeticOverflow):
            staking.unstake(whale.address, 1)
        assert staking.get_vault(whale.address).staked_amount == U64_MAX


# ═══════════════════════════════════════════════════════════════════
#  Clock behaviour
# ═══════════════════════════════════════════════════════════════════

class TestClockRegression:
    def test_no_reward_before_checkpoint(self, staking, alice, clock):
        staking.stake(alice.address, 100_000_000)
        checkpoint = clock.now()
        clock.set(checkpoint - SECONDS_PER_YEAR)
        assert staking.get_yield(alice.address) == 0
        assert staking.get_vault(alice.address).last_accrual_timestamp == checkpoint

    def test_regression_does_not_reset_earned(self, staking, alice, clock):
        staking.stake(alice.address, 100_000_000)
        clock.advance(SECONDS_PER_YEAR)
        staking.stake(alice.address, 1)
        clock.advance(-SECONDS_PER_YEAR // 2)
        vault = staking.stake(alice.address, 1)
        assert vault.reward_debt == 10_000_000

    def test_regressed_window_not_paid_twice(self, staking, alice, clock):
        staking.stake(alice.address, 100_000_000)
        clock.advance(SECONDS_PER_YEAR)
        staking.get_yield(alice.address)
        clock.advance(-SECONDS_PER_YEAR)
        staking.get_yield(alice.address)
        clock.advance(SECONDS_PER_YEAR)
        # Back at the checkpoint: nothing new has been earned.
        assert staking.get_yield(alice.address) == 10_000_000

    def test_timestamps_monotonic_under_checker(self, staking, alice, bob, clock):
        checker = InvariantChecker()
        staking.stake(alice.address, 10)
        checker.capture(staking)
        clock.advance(-100)
        staking.stake(bob.address, 10)
        staking.get_yield(alice.address)
        ok, msg = checker.verify(staking)
        assert ok, msg


# ═══════════════════════════════════════════════════════════════════
#  Atomicity
# ═══════════════════════════════════════════════════════════════════

class TestAtomicity:
    def test_stake_from_wrong_mint(self, staking, alice, clock):
        staking.stake(alice.address, 100)
        clock.advance(SECONDS_PER_YEAR)
        before = _snapshot(staking, alice)
        reward_ata = get_associated_token_address(alice.address, staking.get_global().reward_mint)
        with pytest.raises(MintMismatch):
            staking.stake(alice.address, 10, source=reward_ata)
        assert _snapshot(staking, alice) == before

    def test_stake_from_someone_elses_account(self, staking, alice, bob):
        bob_ata = get_associated_token_address(bob.address, staking.get_global().stake_mint)
        with pytest.raises(Unauthorized):
            staking.stake(alice.address, 10, source=bob_ata)
        assert staking.tokens.balance(bob_ata) == 1_000_000_000
        assert staking.get_vault(alice.address).staked_amount == 0

    def test_claim_to_wrong_mint(self, staking, alice, clock):
        staking.stake(alice.address, 100_000_000)
        clock.advance(SECONDS_PER_YEAR)
        staking.get_yield(alice.address)
        stake_ata = get_associated_token_address(alice.address, staking.get_global().stake_mint)
        with pytest.raises(MintMismatch):
            staking.claim_rewards(alice.address, destination=stake_ata)
        assert staking.get_vault(alice.address).reward_debt == 10_000_000
        assert staking.get_global().total_rewards_minted == 0

    def test_unstake_when_custody_moved_elsewhere(self, staking, alice, bob):
        staking.stake(alice.address, 500)
        vault = staking.get_vault(alice.address)
        # Owner hands the token account to someone else outside the program.
        staking.tokens.set_authority(vault.custody_account, alice.address, bob.address)
        with pytest.raises(Unauthorized):
            staking.unstake(alice.address, 100)
        assert staking.get_vault(alice.address).staked_amount == 500
        assert staking.get_global().total_staked == 500

    def test_failed_operations_keep_invariants(self, staking, alice, bob, clock):
        staking.stake(alice.address, 1_000)
        staking.stake(bob.address, 2_000)
        clock.advance(SECONDS_PER_YEAR)
        for call in (
            lambda: staking.unstake(alice.address, 5_000),
            lambda: staking.stake(bob.address, 10 ** 12),
            lambda: staking.set_vault_authority(alice.address, authority=bob.address),
        ):
            with pytest.raises(StakingError):
                call()
        staking.verify_invariants()


# ═══════════════════════════════════════════════════════════════════
#  Authority
# ═══════════════════════════════════════════════════════════════════

class TestAuthority:
    def test_cannot_take_over_foreign_vault(self, staking, alice, bob):
        with pytest.raises(Unauthorized):
            staking.set_vault_authority(alice.address, authority=bob.address)
        vault = staking.get_vault(alice.address)
        assert staking.tokens.get_account(vault.custody_account).owner == alice.address

    def test_custody_preseized_by_other_owner(self, staking, make_user, bob):
        carol = make_user(vault=False)
        glob = staking.get_global()
        custody, _ = staking.addresses.custody_account(carol.address, glob.stake_mint)
        staking.tokens.create_account(glob.stake_mint, bob.address, address=custody)
        with pytest.raises(Unauthorized):
            staking.initialize_vault(carol.address)
        assert not staking.store.exists(staking.vault_address(carol.address))

    def test_reward_mint_only_by_program(self, staking, alice):
        glob = staking.get_global()
        reward_ata = get_associated_token_address(alice.address, glob.reward_mint)
        with pytest.raises(Unauthorized):
            staking.tokens.mint_to(glob.reward_mint, reward_ata, alice.address, 1)


# ═══════════════════════════════════════════════════════════════════
#  Concurrency
# ═══════════════════════════════════════════════════════════════════

class TestConcurrency:
    def test_parallel_stakes_same_vault(self, staking, alice):
        def worker():
            for _ in range(50):
                staking.stake(alice.address, 1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert staking.get_vault(alice.address).staked_amount == 400
        assert staking.get_global().total_staked == 400
        staking.verify_invariants()

    def test_parallel_users(self, staking, make_user, clock):
        users = [make_user() for _ in range(6)]
        errors = []

        def worker(user):
            try:
                for _ in range(20):
                    staking.stake(user.address, 10)
                    staking.get_yield(user.address)
                    staking.unstake(user.address, 5)
            except Exception as exc:  # surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(u,)) for u in users]
        for t in threads:
            t.start()
        clock.advance(SECONDS_PER_YEAR)
        for t in threads:
            t.join()
        assert errors == []
        assert staking.get_global().total_staked == 6 * 20 * 5
        staking.verify_invariants()

    def test_parallel_claims_mint_once(self, staking, alice, clock):
        staking.stake(alice.address, 100_000_000)
        clock.advance(SECONDS_PER_YEAR)
        results = []

        def worker():
            results.append(staking.claim_rewards(alice.address))

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(results) == [0, 0, 0, 0, 10_000_000]
        assert staking.get_global().total_rewards_minted == 10_000_000


# ═══════════════════════════════════════════════════════════════════
#  Invariant checker
# ═══════════════════════════════════════════════════════════════════

class TestInvariantDetection:
    def test_tampered_total(self, staking, alice):
        staking.stake(alice.address, 100)
        glob = staking.store.load(staking.global_address, GlobalRegistry)
        glob.total_staked = 99
        with pytest.raises(InvariantViolation):
            staking.verify_invariants()

    def test_tampered_custody_balance(self, staking, alice):
        staking.stake(alice.address, 100)
        vault = staking.get_vault(alice.address)
        staking.tokens.accounts[vault.custody_account].amount = 50
        ok, msg = InvariantChecker().verify(staking)
        assert not ok
        assert "Custody" in msg


# ═══════════════════════════════════════════════════════════════════
#  Caller-supplied token accounts
# ═══════════════════════════════════════════════════════════════════

class TestCustodyAsCounterparty:
    def test_stake_from_custody_rejected(self, staking, alice, clock):
        staking.stake(alice.address, 100_000_000)
        custody = staking.get_vault(alice.address).custody_account
        before = _snapshot(staking, alice)
        for _ in range(3):
            with pytest.raises(InvalidInstruction):
                staking.stake(alice.address, 100_000_000, source=custody)
        assert _snapshot(staking, alice) == before
        clock.advance(SECONDS_PER_YEAR)
        assert staking.claim_rewards(alice.address) == 10_000_000
        staking.verify_invariants()

    def test_stake_from_custody_via_instruction(self, staking, alice):
        staking.stake(alice.address, 100_000_000)
        custody = staking.get_vault(alice.address).custody_account
        ix = alice.instruction(
            "stake", staking.program_id, user=alice.address, amount=100_000_000, source=custody,
        )
        with pytest.raises(InvalidInstruction):
            staking.process_instruction(ix)
        assert ix.instruction_id not in staking.applied_instruction_ids
        assert staking.get_global().total_staked == 100_000_000
        staking.verify_invariants()

    def test_unstake_into_custody_rejected(self, staking, alice):
        staking.stake(alice.address, 1_000)
        staking.set_vault_authority(alice.address)
        custody = staking.get_vault(alice.address).custody_account
        with pytest.raises(InvalidInstruction):
            staking.unstake(alice.address, 1_000, destination=custody)
        assert staking.get_vault(alice.address).staked_amount == 1_000
        assert staking.get_global().total_staked == 1_000
        staking.unstake(alice.address, 1_000)
        staking.verify_invariants()

    @pytest.mark.parametrize("operation, field", [
        ("stake", "source"),
        ("unstake", "destination"),
        ("claim_rewards", "destination"),
    ])
    @pytest.mark.parametrize("bad", [[1], 7, "not-an-address"])
    def test_malformed_account_argument(self, staking, alice, operation, field, bad):
        staking.stake(alice.address, 10)
        kwargs = {field: bad}
        if operation != "claim_rewards":
            kwargs["amount"] = 1
        ix = alice.instruction(operation, staking.program_id, user=alice.address, **kwargs)
        with pytest.raises(InvalidInstruction):
            staking.process_instruction(ix)
        assert staking.get_vault(alice.address).staked_amount == 10
