"""
Deterministic record addresses.

Every record the program owns lives at a *program-derived address*: a
32-byte value hashed from fixed seeds, the program id and a one-byte
bump.  The bump is searched downward from 255 until the hash is *not* a
secp256k1 point, so the address has no private key and only the program
can act for it.  Locating the global registry or a user's vault never
needs a separate index.

Seeds in use:
  global                          → GlobalRegistry
  reward_authority                → RewardMintCustody (reward mint authority)
  vault, <user>                   → Vault
  custody, <user>, <stake mint>   → stake-token custody account
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from stakevault_core.crypto_utils import (
    address_to_bytes,
    bytes_to_address,
    is_on_curve,
    sha256,
)

GLOBAL_SEED = b"global"
REWARD_AUTHORITY_SEED = b"reward_authority"
VAULT_SEED = b"vault"
CUSTODY_SEED = b"custody"

MAX_SEED_LENGTH = 32
MAX_SEEDS = 16
PDA_MARKER = b"ProgramDerivedAddress"

# "StakeVault1111..." style program id; any 32-byte value works.
DEFAULT_PROGRAM_ID = bytes_to_address(sha256(b"stakevault-program"))


def create_program_address(seeds: list[bytes], program_id: str) -> str | None:
    """Hash *seeds* into an address, or None if it lands on the curve."""
    if len(seeds) > MAX_SEEDS:
        raise ValueError(f"At most {MAX_SEEDS} seeds allowed")
    for seed in seeds:
        if len(seed) > MAX_SEED_LENGTH:
            raise ValueError(f"Seed longer than {MAX_SEED_LENGTH} bytes")
    digest = sha256(b"".join(seeds) + address_to_bytes(program_id) + PDA_MARKER)
    if is_on_curve(digest):
        return None
    return bytes_to_address(digest)


@lru_cache(maxsize=4096)
def _find(seeds: tuple[bytes, ...], program_id: str) -> tuple[str, int]:
    for bump in range(255, -1, -1):
        address = create_program_address(list(seeds) + [bytes([bump])], program_id)
        if address is not None:
            return address, bump
    raise ValueError("Unable to find a viable program address bump")


def find_program_address(seeds: list[bytes], program_id: str) -> tuple[str, int]:
    """Return ``(address, bump)`` for the first off-curve bump."""
    return _find(tuple(seeds), program_id)


@dataclass(frozen=True)
class ProgramAddresses:
    """Address book for one deployed program id."""
    program_id: str = DEFAULT_PROGRAM_ID

    def global_registry(self) -> tuple[str, int]:
        return find_program_address([GLOBAL_SEED], self.program_id)

    def reward_authority(self) -> tuple[str, int]:
        return find_program_address([REWARD_AUTHORITY_SEED], self.program_id)

    def vault(self, user: str) -> tuple[str, int]:
        return find_program_address([VAULT_SEED, address_to_bytes(user)], self.program_id)

    def custody_account(self, user: str, stake_mint: str) -> tuple[str, int]:
        return find_program_address(
            [CUSTODY_SEED, address_to_bytes(user), address_to_bytes(stake_mint)],
            self.program_id,
        )
