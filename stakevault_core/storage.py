"""
SQLite-based persistence layer for StakeVault program state.

Stores the global registry, reward custody, vaults, the token ledger's
mints and accounts, and applied instruction ids so that a server can
recover state after restart.

u64 amounts do not fit SQLite's signed INTEGER, so they are stored as
decimal TEXT and converted back with ``int()`` on load.

Usage:
    store = ProgramStore("data/stakevault.db")
    store.snapshot_program(program)
    ...
    store.restore_program(fresh_program)
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any

from stakevault_core.state import GlobalRegistry, RewardMintCustody, Vault
from stakevault_core.token_ledger import Mint, TokenAccount

logger = logging.getLogger("stakevault_storage")


class ProgramStore:
    """Thin SQLite wrapper for persisting program state."""

    def __init__(self, db_path: str = "data/stakevault.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        # synchronous=NORMAL is safe with WAL and avoids fsync per commit
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS global_registry (
                address               TEXT PRIMARY KEY,
                authority             TEXT NOT NULL,
                reward_rate           TEXT NOT NULL,
                stake_mint            TEXT NOT NULL,
                reward_mint           TEXT NOT NULL,
                reward_authority_bump INTEGER NOT NULL,
                created_at            INTEGER NOT NULL,
                total_staked          TEXT NOT NULL DEFAULT '0',
                total_rewards_minted  TEXT NOT NULL DEFAULT '0',
                bump                  INTEGER NOT NULL DEFAULT 0
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS reward_custody (
                address     TEXT PRIMARY KEY,
                reward_mint TEXT NOT NULL,
                bump        INTEGER NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS vaults (
                address                TEXT PRIMARY KEY,
                owner                  TEXT NOT NULL,
                custody_account        TEXT NOT NULL,
                last_accrual_timestamp INTEGER NOT NULL,
                staked_amount          TEXT NOT NULL DEFAULT '0',
                reward_debt            TEXT NOT NULL DEFAULT '0',
                authority_set          INTEGER NOT NULL DEFAULT 0,
                bump                   INTEGER NOT NULL DEFAULT 0
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS mints (
                address        TEXT PRIMARY KEY,
                decimals       INTEGER NOT NULL,
                mint_authority TEXT NOT NULL,
                supply         TEXT NOT NULL DEFAULT '0'
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS token_accounts (
                address TEXT PRIMARY KEY,
                mint    TEXT NOT NULL,
                owner   TEXT NOT NULL,
                amount  TEXT NOT NULL DEFAULT '0'
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS applied_instruction_ids (
                instruction_id TEXT PRIMARY KEY
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)
        c.commit()

    CURRENT_SCHEMA_VERSION = 1

    def _ensure_schema_version(self) -> None:
        """Check / set schema version; run migrations when needed."""
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self._conn.commit()
        else:
            db_ver = row["version"]
            if db_ver < self.CURRENT_SCHEMA_VERSION:
                self._migrate(db_ver, self.CURRENT_SCHEMA_VERSION)
            elif db_ver > self.CURRENT_SCHEMA_VERSION:
                raise RuntimeError(
                    f"Database schema v{db_ver} is newer than this software "
                    f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade StakeVault."
                )

    def _migrate(self, from_ver: int, to_ver: int) -> None:
        logger.info(f"Migrating database schema v{from_ver} → v{to_ver}")
        self._conn.execute(
            "UPDATE schema_version SET version = ? WHERE id = 1", (to_ver,)
        )
        self._conn.commit()

    @property
    def schema_version(self) -> int:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        return row["version"]

    # ── loaders ──────────────────────────────────────────────────

    def load_global(self) -> GlobalRegistry | None:
        row = self._conn.execute("SELECT * FROM global_registry").fetchone()
        if row is None:
            return None
        return GlobalRegistry(
            address=row["address"],
            authority=row["authority"],
            reward_rate=int(row["reward_rate"]),
            stake_mint=row["stake_mint"],
            reward_mint=row["reward_mint"],
            reward_authority_bump=row["reward_authority_bump"],
            created_at=row["created_at"],
            total_staked=int(row["total_staked"]),
            total_rewards_minted=int(row["total_rewards_minted"]),
            bump=row["bump"],
        )

    def load_reward_custody(self) -> RewardMintCustody | None:
        row = self._conn.execute("SELECT * FROM reward_custody").fetchone()
        if row is None:
            return None
        return RewardMintCustody(
            address=row["address"], reward_mint=row["reward_mint"], bump=row["bump"],
        )

    def load_vaults(self) -> list[Vault]:
        rows = self._conn.execute("SELECT * FROM vaults").fetchall()
        return [
            Vault(
                address=r["address"],
                owner=r["owner"],
                custody_account=r["custody_account"],
                last_accrual_timestamp=r["last_accrual_timestamp"],
                staked_amount=int(r["staked_amount"]),
                reward_debt=int(r["reward_debt"]),
                authority_set=bool(r["authority_set"]),
                bump=r["bump"],
            )
            for r in rows
        ]

    def get_vault(self, address: str) -> dict[str, Any] | None:
        row = self._conn.execute(
            "SELECT * FROM vaults WHERE address = ?", (address,)
        ).fetchone()
        return dict(row) if row else None

    def load_mints(self) -> list[Mint]:
        rows = self._conn.execute("SELECT * FROM mints").fetchall()
        return [
            Mint(
                address=r["address"],
                decimals=r["decimals"],
                mint_authority=r["mint_authority"],
                supply=int(r["supply"]),
            )
            for r in rows
        ]

    def load_token_accounts(self) -> list[TokenAccount]:
        rows = self._conn.execute("SELECT * FROM token_accounts").fetchall()
        return [
            TokenAccount(
                address=r["address"], mint=r["mint"], owner=r["owner"], amount=int(r["amount"]),
            )
            for r in rows
        ]

    # ── applied instruction ids (replay protection) ──────────────

    def save_applied_instruction_ids(self, ids: set[str]) -> None:
        self._conn.executemany(
            "INSERT OR IGNORE INTO applied_instruction_ids (instruction_id) VALUES (?)",
            [(i,) for i in ids],
        )
        self._conn.commit()

    def load_applied_instruction_ids(self) -> set[str]:
        rows = self._conn.execute(
            "SELECT instruction_id FROM applied_instruction_ids"
        ).fetchall()
        return {r["instruction_id"] for r in rows}

    # ── bulk helpers ─────────────────────────────────────────────

    def snapshot_program(self, program: Any) -> None:
        """Persist the full current state of a StakingProgram atomically.

        Records are read under ``program.consistent_view()`` so no
        operation can commit halfway through the read, and all writes are
        wrapped in a single transaction so a crash mid-write never leaves
        a partial snapshot.
        """
        with program.consistent_view():
            mints = [
                (m.address, m.decimals, m.mint_authority, str(m.supply))
                for m in program.tokens.mints.values()
            ]
            accounts = [
                (a.address, a.mint, a.owner, str(a.amount))
                for a in program.tokens.accounts.values()
            ]
            glob = program.get_global() if program.is_initialized else None
            custody = program.get_reward_custody() if glob is not None else None
            vaults = [
                (v.address, v.owner, v.custody_account, v.last_accrual_timestamp,
                 str(v.staked_amount), str(v.reward_debt), int(v.authority_set), v.bump)
                for v in program.vaults()
            ]
            applied = [(i,) for i in program.applied_instruction_ids]

        c = self._conn
        try:
            c.execute("BEGIN IMMEDIATE")
            c.executemany(
                """INSERT OR REPLACE INTO mints
                   (address, decimals, mint_authority, supply)
                   VALUES (?, ?, ?, ?)""",
                mints,
            )
            c.executemany(
                """INSERT OR REPLACE INTO token_accounts
                   (address, mint, owner, amount)
                   VALUES (?, ?, ?, ?)""",
                accounts,
            )
            if glob is not None:
                c.execute(
                    """INSERT OR REPLACE INTO global_registry
                       (address, authority, reward_rate, stake_mint, reward_mint,
                        reward_authority_bump, created_at, total_staked,
                        total_rewards_minted, bump)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (glob.address, glob.authority, str(glob.reward_rate), glob.stake_mint,
                     glob.reward_mint, glob.reward_authority_bump, glob.created_at,
                     str(glob.total_staked), str(glob.total_rewards_minted), glob.bump),
                )
                c.execute(
                    """INSERT OR REPLACE INTO reward_custody
                       (address, reward_mint, bump) VALUES (?, ?, ?)""",
                    (custody.address, custody.reward_mint, custody.bump),
                )
            c.executemany(
                """INSERT OR REPLACE INTO vaults
                   (address, owner, custody_account, last_accrual_timestamp,
                    staked_amount, reward_debt, authority_set, bump)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                vaults,
            )
            c.executemany(
                "INSERT OR IGNORE INTO applied_instruction_ids (instruction_id) VALUES (?)",
                applied,
            )
            c.execute("COMMIT")
        except Exception:
            c.execute("ROLLBACK")
            raise
        logger.debug(f"Snapshot written: {len(vaults)} vaults, {len(accounts)} token accounts")

    def restore_program(self, program: Any) -> bool:
        """
        Load stored state into a freshly constructed program.

        Returns False when the database holds no program yet.
        """
        for mint in self.load_mints():
            program.tokens.mints[mint.address] = mint
        for acc in self.load_token_accounts():
            program.tokens.accounts[acc.address] = acc

        glob = self.load_global()
        if glob is None:
            return False
        if glob.address != program.global_address:
            raise RuntimeError(
                f"Stored registry {glob.address} belongs to a different program id"
            )
        program.store.put(glob)
        custody = self.load_reward_custody()
        if custody is not None:
            program.store.put(custody)
        vaults = self.load_vaults()
        for v in vaults:
            program.store.put(v)
        program.applied_instruction_ids = self.load_applied_instruction_ids()
        logger.info(f"Restored program state: {len(vaults)} vaults")
        return True

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
