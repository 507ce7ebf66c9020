"""
Fungible token ledger used as the program's token facility.

Models the parts of an SPL-style token program the staking program
relies on:

  - Mints with a decimals setting, a running supply and a mint authority
  - Token accounts holding a balance of one mint, controlled by an owner
  - ``transfer``       — owner-authorised balance movement
  - ``mint_to``        — mint-authority-authorised issuance
  - ``set_authority``  — hand control of an account to a new owner

Balances are u64 integers in the mint's smallest unit.  Every call checks
all of its preconditions before touching a balance, so a failed call has
no effect.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from stakevault_core.addresses import find_program_address
from stakevault_core.crypto_utils import address_to_bytes, bytes_to_address, generate_nonce, sha256
from stakevault_core.errors import (
    AccountNotInitialized,
    AlreadyInitialized,
    InsufficientFunds,
    InvalidInstruction,
    MintMismatch,
    Unauthorized,
)
from stakevault_core.precision import check_u64, checked_add_u64, validate_decimals

TOKEN_PROGRAM_ID = bytes_to_address(sha256(b"stakevault-token-program"))


@dataclass
class Mint:
    address: str
    decimals: int
    mint_authority: str
    supply: int = 0

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "decimals": self.decimals,
            "mint_authority": self.mint_authority,
            "supply": self.supply,
        }


@dataclass
class TokenAccount:
    address: str
    mint: str
    owner: str
    amount: int = 0

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "mint": self.mint,
            "owner": self.owner,
            "amount": self.amount,
        }


def get_associated_token_address(owner: str, mint: str) -> str:
    """Deterministic default token account for (owner, mint)."""
    address, _bump = find_program_address(
        [address_to_bytes(owner), address_to_bytes(mint)], TOKEN_PROGRAM_ID,
    )
    return address


class TokenLedger:
    """In-memory token program: mints and token accounts keyed by address."""

    def __init__(self) -> None:
        self.mints: dict[str, Mint] = {}
        self.accounts: dict[str, TokenAccount] = {}
        self._lock = threading.RLock()

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the ledger still, e.g. while it is being persisted."""
        with self._lock:
            yield

    # ── creation ────────────────────────────────────────────────────

    def create_mint(
        self,
        decimals: int,
        mint_authority: str,
        address: str | None = None,
    ) -> Mint:
        validate_decimals(decimals)
        address_to_bytes(mint_authority)
        with self._lock:
            if address is None:
                address = bytes_to_address(sha256(f"mint:{generate_nonce()}".encode()))
            if address in self.mints:
                raise AlreadyInitialized(f"Mint {address} already exists")
            mint = Mint(address=address, decimals=decimals, mint_authority=mint_authority)
            self.mints[address] = mint
            return mint

    def create_account(
        self,
        mint: str,
        owner: str,
        address: str | None = None,
    ) -> TokenAccount:
        with self._lock:
            self.get_mint(mint)
            if address is None:
                address = get_associated_token_address(owner, mint)
            if address in self.accounts:
                raise AlreadyInitialized(f"Token account {address} already exists")
            account = TokenAccount(address=address, mint=mint, owner=owner)
            self.accounts[address] = account
            return account

    # ── lookups ─────────────────────────────────────────────────────

    def get_mint(self, address: str) -> Mint:
        mint = self.mints.get(address)
        if mint is None:
            raise AccountNotInitialized(f"Mint {address} not found")
        return mint

    def get_account(self, address: str) -> TokenAccount:
        account = self.accounts.get(address)
        if account is None:
            raise AccountNotInitialized(f"Token account {address} not found")
        return account

    def has_account(self, address: str) -> bool:
        return address in self.accounts

    def balance(self, address: str) -> int:
        return self.get_account(address).amount

    # ── instructions ────────────────────────────────────────────────

    def transfer(self, source: str, destination: str, authority: str, amount: int) -> None:
        check_u64(amount, "amount")
        if source == destination:
            raise InvalidInstruction(f"Transfer source and destination are both {source}")
        with self._lock:
            src = self.get_account(source)
            dst = self.get_account(destination)
            if src.mint != dst.mint:
                raise MintMismatch(f"Cannot transfer {src.mint} into a {dst.mint} account")
            if src.owner != authority:
                raise Unauthorized(f"{authority} does not own token account {source}")
            if src.amount < amount:
                raise InsufficientFunds(
                    f"Token account {source} holds {src.amount}, needs {amount}"
                )
            new_dst = checked_add_u64(dst.amount, amount, "destination balance")
            src.amount -= amount
            dst.amount = new_dst

    def mint_to(self, mint: str, destination: str, authority: str, amount: int) -> None:
        check_u64(amount, "amount")
        with self._lock:
            m = self.get_mint(mint)
            dst = self.get_account(destination)
            if dst.mint != mint:
                raise MintMismatch(f"Token account {destination} does not hold {mint}")
            if m.mint_authority != authority:
                raise Unauthorized(f"{authority} is not the mint authority of {mint}")
            new_supply = checked_add_u64(m.supply, amount, "mint supply")
            new_balance = checked_add_u64(dst.amount, amount, "destination balance")
            m.supply = new_supply
            dst.amount = new_balance

    def set_authority(self, account: str, current_authority: str, new_owner: str) -> None:
        address_to_bytes(new_owner)
        with self._lock:
            acc = self.get_account(account)
            if acc.owner != current_authority:
                raise Unauthorized(f"{current_authority} does not own token account {account}")
            acc.owner = new_owner
