"""
The staking program: every state transition goes through here.

Operations
──────────
  initialize_program(authority, stake_mint, reward_mint) → GlobalRegistry
  initialize_vault(user)                                 → Vault
  stake(user, amount)                                    → Vault
  unstake(user, amount)                                  → Vault
  get_yield(user)                                        → int (unclaimed reward)
  claim_rewards(user)                                    → int (minted amount)
  set_vault_authority(user, authority)                   → Vault

Accrue-then-mutate
──────────────────
Stake, unstake, get_yield and claim_rewards all first bring the vault's
reward checkpoint up to the clock, then apply their own effect.  Each
operation works on a copy of the vault: preconditions are checked, the
token movement is made, and only then are the copies committed.  A
failure at any step leaves every record as it was.

``get_yield`` is *not* a pure view: it commits the accrual checkpoint
and returns the whole unclaimed balance.

Concurrency
───────────
One re-entrant lock per vault serialises operations on the same user;
different users only meet on the global lock, held just long enough to
accumulate ``total_staked`` / ``total_rewards_minted``.  Every commit that
touches a token balance happens under the global lock, so
``consistent_view`` sees records and balances that agree.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from stakevault_core.accrual import accrue
from stakevault_core.addresses import DEFAULT_PROGRAM_ID, ProgramAddresses
from stakevault_core.clock import Clock, SystemClock
from stakevault_core.crypto_utils import address_to_bytes
from stakevault_core.errors import (
    AlreadyInitialized,
    AlreadySet,
    InstructionReplayed,
    InsufficientStake,
    InvalidInstruction,
    InvalidRewardAuthority,
    InvariantViolation,
    MintMismatch,
    NothingToClaim,
    StakingError,
    Unauthorized,
)
from stakevault_core.invariants import InvariantChecker
from stakevault_core.instructions import Instruction, validate_shape, verify_instruction
from stakevault_core.precision import (
    DEFAULT_REWARD_RATE,
    check_u64,
    checked_add_u64,
    checked_sub_u64,
    reward_rate_from_apy_bps,
)
from stakevault_core.receipts import OperationReceipt, ReceiptBuilder
from stakevault_core.state import AccountStore, GlobalRegistry, RewardMintCustody, Vault
from stakevault_core.token_ledger import TokenLedger, get_associated_token_address

logger = logging.getLogger("stakevault_program")


def _require_address(value: Any, name: str) -> str:
    if not isinstance(value, str):
        raise InvalidInstruction(f"{name} must be an address string")
    try:
        address_to_bytes(value)
    except ValueError as exc:
        raise InvalidInstruction(f"{name} is not a valid address") from exc
    return value


def _require_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidInstruction("amount must be an integer")
    if amount <= 0:
        raise InsufficientStake(f"Amount must be positive, got {amount}")
    return check_u64(amount, "amount")


class StakingProgram:
    """Operation dispatcher over the account store and the token ledger."""

    def __init__(
        self,
        tokens: TokenLedger,
        clock: Clock | None = None,
        *,
        program_id: str = DEFAULT_PROGRAM_ID,
        reward_rate: int = DEFAULT_REWARD_RATE,
        strict_claim: bool = False,
        store: AccountStore | None = None,
    ) -> None:
        self.tokens = tokens
        self.clock: Clock = clock or SystemClock()
        self.program_id = program_id
        self.addresses = ProgramAddresses(program_id)
        self.default_reward_rate = check_u64(reward_rate, "reward_rate")
        self.strict_claim = strict_claim
        self.store = store or AccountStore()
        self.applied_instruction_ids: set[str] = set()

        self._global_lock = threading.RLock()
        self._vault_locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._ix_lock = threading.Lock()
        self._pending_ids: set[str] = set()

    @classmethod
    def from_config(cls, cfg, tokens: TokenLedger, clock: Clock | None = None) -> StakingProgram:
        """Build from a ``ProgramConfig`` section."""
        return cls(
            tokens,
            clock,
            program_id=cfg.program_id,
            reward_rate=reward_rate_from_apy_bps(cfg.reward_apy_bps),
            strict_claim=cfg.strict_claim,
        )

    # ── addresses & lookups ─────────────────────────────────────────

    @property
    def global_address(self) -> str:
        return self.addresses.global_registry()[0]

    @property
    def reward_authority_address(self) -> str:
        return self.addresses.reward_authority()[0]

    def vault_address(self, user: str) -> str:
        return self.addresses.vault(user)[0]

    @property
    def is_initialized(self) -> bool:
        return self.store.exists(self.global_address)

    def get_global(self) -> GlobalRegistry:
        return self.store.load_copy(self.global_address, GlobalRegistry)

    def get_reward_custody(self) -> RewardMintCustody:
        return self.store.load_copy(self.reward_authority_address, RewardMintCustody)

    def get_vault(self, user: str) -> Vault:
        return self.store.load_copy(self.vault_address(_require_address(user, "user")), Vault)

    def vaults(self) -> list[Vault]:
        return self.store.records(Vault)

    def _decimals(self, glob: GlobalRegistry) -> tuple[int, int]:
        return (
            self.tokens.get_mint(glob.stake_mint).decimals,
            self.tokens.get_mint(glob.reward_mint).decimals,
        )

    # ── locking ─────────────────────────────────────────────────────

    @contextmanager
    def _vault_lock(self, user: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._vault_locks.setdefault(user, threading.RLock())
        with lock:
            yield

    def _update_global(self, receipt: ReceiptBuilder, mutate: Callable[[GlobalRegistry], None]) -> None:
        with self._global_lock:
            before = self.store.load(self.global_address, GlobalRegistry)
            after = self.store.load_copy(self.global_address, GlobalRegistry)
            mutate(after)
            self.store.commit(after)
        receipt.record_modify(before, after)

    @contextmanager
    def consistent_view(self) -> Iterator[None]:
        """Block every commit so records and balances can be read together."""
        with self._global_lock, self.tokens.locked(), self._ix_lock:
            yield

    # ── dispatch ────────────────────────────────────────────────────

    def execute(self, operation: str, user: str, **kwargs: Any) -> OperationReceipt:
        """Run one operation and return its receipt."""
        handler = getattr(self, f"_op_{operation}", None)
        if handler is None:
            raise InvalidInstruction(f"Unknown operation: {operation}")
        receipt = ReceiptBuilder(operation, user, self.clock.now())
        context = {"operation": operation, "user": user}
        try:
            value = handler(receipt, user, **kwargs)
        except StakingError as exc:
            logger.info(
                f"{operation} for {user} rejected: {exc.code}: {exc.message}",
                extra={**context, "error": exc.code},
            )
            raise
        receipt.set_value(value)
        logger.debug(f"{operation} for {user} committed", extra=context)
        return receipt.build()

    def process_instruction(self, ix: Instruction) -> OperationReceipt:
        """Verify a signed instruction, run it once, and return its receipt."""
        validate_shape(ix)
        if ix.program_id != self.program_id:
            raise InvalidInstruction("Instruction targets a different program")
        verify_instruction(ix)

        ix_id = ix.instruction_id
        with self._ix_lock:
            if ix_id in self.applied_instruction_ids or ix_id in self._pending_ids:
                raise InstructionReplayed(f"Instruction {ix_id} already processed")
            self._pending_ids.add(ix_id)
        try:
            receipt = self._dispatch(ix)
            with self._ix_lock:
                self.applied_instruction_ids.add(ix_id)
        finally:
            with self._ix_lock:
                self._pending_ids.discard(ix_id)
        receipt.instruction_id = ix_id
        return receipt

    def _dispatch(self, ix: Instruction) -> OperationReceipt:
        args = dict(ix.args)
        if ix.name == "initialize_program":
            return self.execute(ix.name, ix.signer, authority=ix.signer, **args)

        user = args.pop("user")
        if ix.name == "set_vault_authority":
            return self.execute(ix.name, user, authority=ix.signer)
        # Anyone may checkpoint a vault's yield; everything else is owner-only.
        if ix.name != "get_yield" and user != ix.signer:
            raise Unauthorized(f"{ix.signer} cannot act on behalf of {user}")
        return self.execute(ix.name, user, **args)

    # ── public operations ───────────────────────────────────────────

    def initialize_program(self, authority: str, stake_mint: str, reward_mint: str) -> GlobalRegistry:
        return self.execute(
            "initialize_program", authority,
            authority=authority, stake_mint=stake_mint, reward_mint=reward_mint,
        ).value

    def initialize_vault(self, user: str) -> Vault:
        return self.execute("initialize_vault", user).value

    def ensure_vault(self, user: str) -> Vault:
        """Create the vault if it is missing, otherwise return the existing one."""
        try:
            return self.initialize_vault(user)
        except AlreadyInitialized:
            return self.get_vault(user)

    def stake(self, user: str, amount: int, source: str | None = None) -> Vault:
        return self.execute("stake", user, amount=amount, source=source).value

    def unstake(self, user: str, amount: int, destination: str | None = None) -> Vault:
        return self.execute("unstake", user, amount=amount, destination=destination).value

    def get_yield(self, user: str) -> int:
        return self.execute("get_yield", user).value

    def claim_rewards(self, user: str, destination: str | None = None) -> int:
        return self.execute("claim_rewards", user, destination=destination).value

    def set_vault_authority(self, user: str, authority: str | None = None) -> Vault:
        return self.execute("set_vault_authority", user, authority=authority).value

    # ── handlers ────────────────────────────────────────────────────

    def _op_initialize_program(
        self,
        receipt: ReceiptBuilder,
        _user: str,
        *,
        authority: str,
        stake_mint: str,
        reward_mint: str,
    ) -> GlobalRegistry:
        _require_address(authority, "authority")
        _require_address(stake_mint, "stake_mint")
        _require_address(reward_mint, "reward_mint")
        with self._global_lock:
            global_address, global_bump = self.addresses.global_registry()
            custody_address, custody_bump = self.addresses.reward_authority()
            if self.store.exists(global_address):
                raise AlreadyInitialized("Program already initialized")
            if self.store.exists(custody_address):
                raise AlreadyInitialized("Reward mint custody already established")
            if stake_mint == reward_mint:
                raise MintMismatch("Stake and reward mints must be distinct")
            self.tokens.get_mint(stake_mint)
            mint = self.tokens.get_mint(reward_mint)
            if mint.mint_authority != custody_address:
                raise InvalidRewardAuthority(
                    f"Reward mint authority is {mint.mint_authority}, expected {custody_address}"
                )

            glob = GlobalRegistry(
                address=global_address,
                authority=authority,
                reward_rate=self.default_reward_rate,
                stake_mint=stake_mint,
                reward_mint=reward_mint,
                reward_authority_bump=custody_bump,
                created_at=self.clock.now(),
                bump=global_bump,
            )
            custody = RewardMintCustody(
                address=custody_address, reward_mint=reward_mint, bump=custody_bump,
            )
            self.store.create(glob)
            self.store.create(custody)

        receipt.record_create(glob)
        receipt.record_create(custody)
        logger.info(
            f"Program initialized by {authority}: reward_rate={glob.reward_rate} "
            f"stake_mint={stake_mint} reward_mint={reward_mint}"
        )
        return glob

    def _op_initialize_vault(self, receipt: ReceiptBuilder, user: str) -> Vault:
        _require_address(user, "user")
        glob = self.get_global()
        vault_address, bump = self.addresses.vault(user)
        custody_address, _ = self.addresses.custody_account(user, glob.stake_mint)

        with self._vault_lock(user):
            if self.store.exists(vault_address):
                raise AlreadyInitialized(f"Vault for {user} already exists")
            if self.tokens.has_account(custody_address):
                existing = self.tokens.get_account(custody_address)
                if existing.mint != glob.stake_mint:
                    raise MintMismatch("Custody account holds the wrong mint")
                if existing.owner != user:
                    raise Unauthorized("Custody account is controlled by another owner")
            vault = Vault(
                address=vault_address,
                owner=user,
                custody_account=custody_address,
                last_accrual_timestamp=self.clock.now(),
                bump=bump,
            )

            with self._global_lock:
                if not self.tokens.has_account(custody_address):
                    self.tokens.create_account(glob.stake_mint, user, address=custody_address)
                    receipt.record_movement("create_account", glob.stake_mint, custody_address, user)
                self.store.create(vault)

        receipt.record_create(vault)
        logger.info(f"Vault {vault_address} initialized for {user}")
        return vault

    def _op_stake(
        self, receipt: ReceiptBuilder, user: str, *, amount: Any, source: str | None = None,
    ) -> Vault:
        amount = _require_amount(amount)
        if source is not None:
            _require_address(source, "source")
        glob = self.get_global()
        stake_decimals, reward_decimals = self._decimals(glob)
        source = source or get_associated_token_address(user, glob.stake_mint)

        with self._vault_lock(user):
            before = self.store.load(self.vault_address(user), Vault)
            if source == before.custody_account:
                raise InvalidInstruction("Cannot stake from the vault's own custody account")
            vault = self.store.load_copy(before.address, Vault)
            accrue(vault, glob.reward_rate, self.clock.now(), stake_decimals, reward_decimals)
            vault.staked_amount = checked_add_u64(vault.staked_amount, amount, "staked_amount")
            with self._global_lock:
                checked_add_u64(self.get_global().total_staked, amount, "total_staked")

                self.tokens.transfer(source, vault.custody_account, user, amount)
                receipt.record_movement("transfer", source, vault.custody_account, user, amount)

                self.store.commit(vault)
                self._update_global(receipt, lambda g: setattr(
                    g, "total_staked", checked_add_u64(g.total_staked, amount, "total_staked")))

        receipt.record_modify(before, vault)
        logger.info(f"{user} staked {amount}; vault balance {vault.staked_amount}")
        return vault

    def _op_unstake(
        self, receipt: ReceiptBuilder, user: str, *, amount: Any, destination: str | None = None,
    ) -> Vault:
        amount = _require_amount(amount)
        if destination is not None:
            _require_address(destination, "destination")
        glob = self.get_global()
        stake_decimals, reward_decimals = self._decimals(glob)
        destination = destination or get_associated_token_address(user, glob.stake_mint)

        with self._vault_lock(user):
            before = self.store.load(self.vault_address(user), Vault)
            if destination == before.custody_account:
                raise InvalidInstruction("Cannot unstake into the vault's own custody account")
            if amount > before.staked_amount:
                raise InsufficientStake(
                    f"Cannot unstake {amount}; only {before.staked_amount} staked"
                )
            vault = self.store.load_copy(before.address, Vault)
            accrue(vault, glob.reward_rate, self.clock.now(), stake_decimals, reward_decimals)
            vault.staked_amount = checked_sub_u64(vault.staked_amount, amount, "staked_amount")

            if vault.authority_set:
                authority = vault.address
            else:
                # Custody never handed over: the owner still controls the account.
                authority = user
                logger.debug(f"Vault {vault.address} not migrated; owner authorises release")
            with self._global_lock:
                checked_sub_u64(self.get_global().total_staked, amount, "total_staked")

                self.tokens.transfer(vault.custody_account, destination, authority, amount)
                receipt.record_movement("transfer", vault.custody_account, destination, authority, amount)

                self.store.commit(vault)
                self._update_global(receipt, lambda g: setattr(
                    g, "total_staked", checked_sub_u64(g.total_staked, amount, "total_staked")))

        receipt.record_modify(before, vault)
        logger.info(f"{user} unstaked {amount}; vault balance {vault.staked_amount}")
        return vault

    def _op_get_yield(self, receipt: ReceiptBuilder, user: str) -> int:
        _require_address(user, "user")
        glob = self.get_global()
        stake_decimals, reward_decimals = self._decimals(glob)

        with self._vault_lock(user):
            before = self.store.load(self.vault_address(user), Vault)
            vault = self.store.load_copy(before.address, Vault)
            accrue(vault, glob.reward_rate, self.clock.now(), stake_decimals, reward_decimals)
            self.store.commit(vault)

        receipt.record_modify(before, vault)
        logger.info(f"Yield for {user}: {vault.reward_debt}")
        return vault.reward_debt

    def _op_claim_rewards(
        self, receipt: ReceiptBuilder, user: str, *, destination: str | None = None,
    ) -> int:
        _require_address(user, "user")
        if destination is not None:
            _require_address(destination, "destination")
        glob = self.get_global()
        stake_decimals, reward_decimals = self._decimals(glob)
        custody = self.get_reward_custody()
        destination = destination or get_associated_token_address(user, glob.reward_mint)

        with self._vault_lock(user):
            before = self.store.load(self.vault_address(user), Vault)
            vault = self.store.load_copy(before.address, Vault)
            accrue(vault, glob.reward_rate, self.clock.now(), stake_decimals, reward_decimals)
            amount = vault.reward_debt

            if amount == 0:
                if self.strict_claim:
                    raise NothingToClaim(f"Vault {vault.address} has no accrued reward")
                self.store.commit(vault)
                receipt.record_modify(before, vault)
                logger.info(f"Nothing to claim for {user}")
                return 0

            vault.reward_debt = 0
            with self._global_lock:
                checked_add_u64(self.get_global().total_rewards_minted, amount, "total_rewards_minted")

                self.tokens.mint_to(glob.reward_mint, destination, custody.address, amount)
                receipt.record_movement("mint_to", glob.reward_mint, destination, custody.address, amount)

                self.store.commit(vault)
                self._update_global(receipt, lambda g: setattr(
                    g, "total_rewards_minted",
                    checked_add_u64(g.total_rewards_minted, amount, "total_rewards_minted")))

        receipt.record_modify(before, vault)
        logger.info(f"{user} claimed {amount} reward units")
        return amount

    def _op_set_vault_authority(
        self, receipt: ReceiptBuilder, user: str, *, authority: str | None = None,
    ) -> Vault:
        _require_address(user, "user")
        authority = authority or user

        with self._vault_lock(user):
            before = self.store.load(self.vault_address(user), Vault)
            if authority != before.owner:
                raise Unauthorized("Only the vault creator can set authority")
            if before.authority_set:
                raise AlreadySet(f"Vault {before.address} already controls its custody account")
            vault = self.store.load_copy(before.address, Vault)
            vault.authority_set = True

            with self._global_lock:
                self.tokens.set_authority(vault.custody_account, authority, vault.address)
                receipt.record_movement("set_authority", vault.custody_account, vault.address, authority)
                self.store.commit(vault)

        receipt.record_modify(before, vault)
        logger.info(f"Custody of {vault.custody_account} handed to vault {vault.address}")
        return vault

    # ── summaries ───────────────────────────────────────────────────

    def summary(self) -> dict:
        if not self.is_initialized:
            return {"initialized": False}
        glob = self.get_global()
        return {
            "initialized": True,
            "program_id": self.program_id,
            "global": glob.to_dict(),
            "vault_count": len(self.vaults()),
            "reward_authority": self.reward_authority_address,
        }

    def verify_invariants(self) -> None:
        """Raise ``InvariantViolation`` if the ledger is inconsistent."""
        ok, msg = InvariantChecker().verify(self)
        if not ok:
            logger.error(f"Invariant check failed: {msg}")
            raise InvariantViolation(msg)
