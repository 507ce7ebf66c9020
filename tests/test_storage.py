"""
Tests for SQLite persistence layer (storage.py).

Covers:
  - Schema creation and versioning
  - u64 values stored losslessly
  - snapshot_program / restore_program roundtrip
  - Applied instruction id persistence (replay protection)
  - Edge cases: empty DB, foreign program id, repeated snapshots
  - Snapshots taken while operations run stay consistent
  - Context manager lifecycle
"""

from __future__ import annotations

import sqlite3
import threading

import pytest

from stakevault_core.clock import ManualClock
from stakevault_core.crypto_utils import bytes_to_address, sha256
from stakevault_core.errors import InstructionReplayed
from stakevault_core.precision import SECONDS_PER_YEAR, U64_MAX
from stakevault_core.program import StakingProgram
from stakevault_core.storage import ProgramStore
from stakevault_core.token_ledger import TokenLedger


@pytest.fixture
def store(tmp_path):
    """Fresh ProgramStore in a temp directory."""
    s = ProgramStore(str(tmp_path / "test.db"))
    yield s
    s.close()


def _fresh(clock, **kwargs):
    return StakingProgram(TokenLedger(), clock, **kwargs)


# ═══════════════════════════════════════════════════════════════════
#  Schema
# ═══════════════════════════════════════════════════════════════════

class TestSchema:
    def test_tables_created(self, store):
        tables = store._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
        names = {r["name"] for r in tables}
        for expected in ("global_registry", "reward_custody", "vaults", "mints",
                         "token_accounts", "applied_instruction_ids", "schema_version"):
            assert expected in names

    def test_schema_version(self, store):
        assert store.schema_version == ProgramStore.CURRENT_SCHEMA_VERSION

    def test_newer_schema_refused(self, tmp_path):
        path = str(tmp_path / "future.db")
        with ProgramStore(path) as s:
            s._conn.execute("UPDATE schema_version SET version = 99 WHERE id = 1")
            s._conn.commit()
        with pytest.raises(RuntimeError):
            ProgramStore(path)

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "db.sqlite"
        with ProgramStore(str(path)):
            pass
        assert path.exists()


# ═══════════════════════════════════════════════════════════════════
#  Empty database
# ═══════════════════════════════════════════════════════════════════

class TestEmpty:
    def test_loaders_empty(self, store):
        assert store.load_global() is None
        assert store.load_reward_custody() is None
        assert store.load_vaults() == []
        assert store.load_mints() == []
        assert store.load_token_accounts() == []
        assert store.load_applied_instruction_ids() == set()
        assert store.get_vault("nope") is None

    def test_restore_empty_returns_false(self, store, clock):
        assert store.restore_program(_fresh(clock)) is False

    def test_snapshot_uninitialized(self, store, program, mints):
        store.snapshot_program(program)
        assert store.load_global() is None
        assert len(store.load_mints()) == 2


# ═══════════════════════════════════════════════════════════════════
#  Roundtrip
# ═══════════════════════════════════════════════════════════════════

class TestRoundtrip:
    def test_full_roundtrip(self, store, staking, alice, bob, clock):
        staking.stake(alice.address, 100_000_000)
        staking.stake(bob.address, 5)
        clock.advance(SECONDS_PER_YEAR)
        staking.get_yield(alice.address)
        staking.set_vault_authority(bob.address)
        store.snapshot_program(staking)

        restored = _fresh(clock)
        assert store.restore_program(restored) is True
        assert restored.get_global() == staking.get_global()
        assert restored.get_reward_custody() == staking.get_reward_custody()
        assert sorted(v.address for v in restored.vaults()) == sorted(
            v.address for v in staking.vaults()
        )
        assert restored.get_vault(alice.address) == staking.get_vault(alice.address)
        assert restored.get_vault(bob.address).authority_set is True
        assert restored.tokens.mints == staking.tokens.mints
        assert restored.tokens.accounts == staking.tokens.accounts
        restored.verify_invariants()

    def test_restored_program_keeps_operating(self, store, staking, alice, clock):
        staking.stake(alice.address, 100_000_000)
        store.snapshot_program(staking)

        restored = _fresh(clock)
        store.restore_program(restored)
        clock.advance(SECONDS_PER_YEAR)
        assert restored.claim_rewards(alice.address) == 10_000_000
        restored.unstake(alice.address, 100_000_000)
        restored.verify_invariants()

    def test_u64_values_lossless(self, store, staking, make_user):
        whale = make_user(balance=U64_MAX)
        staking.stake(whale.address, U64_MAX)
        store.snapshot_program(staking)
        assert store.get_vault(staking.vault_address(whale.address))["staked_amount"] == str(U64_MAX)
        restored = _fresh(staking.clock)
        store.restore_program(restored)
        assert restored.get_global().total_staked == U64_MAX
        assert restored.get_vault(whale.address).staked_amount == U64_MAX

    def test_repeated_snapshot_overwrites(self, store, staking, alice):
        staking.stake(alice.address, 10)
        store.snapshot_program(staking)
        staking.stake(alice.address, 15)
        store.snapshot_program(staking)
        assert len(store.load_vaults()) == 1
        assert store.load_vaults()[0].staked_amount == 25

    def test_foreign_program_id(self, store, staking):
        store.snapshot_program(staking)
        other = _fresh(staking.clock, program_id=bytes_to_address(sha256(b"another-program")))
        with pytest.raises(RuntimeError):
            store.restore_program(other)


# ═══════════════════════════════════════════════════════════════════
#  Replay protection
# ═══════════════════════════════════════════════════════════════════

class TestAppliedIds:
    def test_save_and_load(self, store):
        store.save_applied_instruction_ids({"a", "b"})
        store.save_applied_instruction_ids({"b", "c"})
        assert store.load_applied_instruction_ids() == {"a", "b", "c"}

    def test_replay_rejected_after_restart(self, store, staking, alice):
        ix = alice.instruction("stake", staking.program_id, user=alice.address, amount=10)
        staking.process_instruction(ix)
        store.snapshot_program(staking)

        restored = _fresh(ManualClock(staking.clock.now()))
        store.restore_program(restored)
        with pytest.raises(InstructionReplayed):
            restored.process_instruction(ix)
        assert restored.get_vault(alice.address).staked_amount == 10


class TestLifecycle:
    def test_context_manager_closes(self, tmp_path):
        with ProgramStore(str(tmp_path / "ctx.db")) as s:
            assert s.schema_version == 1
        with pytest.raises(sqlite3.ProgrammingError):
            s._conn.execute("SELECT 1")


class TestConcurrentSnapshot:
    def test_snapshots_during_activity_are_consistent(self, tmp_path, staking, make_user):
        users = [make_user() for _ in range(3)]
        path = str(tmp_path / "busy.db")

        def worker(user):
            for _ in range(100):
                staking.stake(user.address, 3)
                staking.unstake(user.address, 1)

        threads = [threading.Thread(target=worker, args=(u,)) for u in users]
        with ProgramStore(path) as store:
            for t in threads:
                t.start()
            for _ in range(15):
                store.snapshot_program(staking)
                restored = _fresh(staking.clock)
                with ProgramStore(path) as reader:
                    reader.restore_program(restored)
                restored.verify_invariants()
            for t in threads:
                t.join()
            store.snapshot_program(staking)

        restored = _fresh(staking.clock)
        with ProgramStore(path) as reader:
            reader.restore_program(restored)
        assert restored.get_global().total_staked == 3 * 100 * 2
        restored.verify_invariants()
