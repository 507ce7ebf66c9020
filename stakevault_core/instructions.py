"""
Signed instruction envelopes.

An instruction names one program operation, the account that signs it
and the operation's arguments.  The signer's secp256k1 signature covers
a canonical JSON encoding of everything except the signature itself,
including the program id and a random nonce, so an instruction can be
neither replayed against another deployment nor altered in transit.

    ix = build_instruction("stake", wallet.address, program_id, user=wallet.address, amount=5)
    wallet.sign_instruction(ix)
    receipt = program.process_instruction(ix)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from stakevault_core.crypto_utils import derive_address, generate_nonce, sha256, verify
from stakevault_core.errors import InvalidInstruction, Unauthorized

OPERATIONS: dict[str, tuple[str, ...]] = {
    "initialize_program": ("stake_mint", "reward_mint"),
    "initialize_vault": ("user",),
    "stake": ("user", "amount"),
    "unstake": ("user", "amount"),
    "get_yield": ("user",),
    "claim_rewards": ("user",),
    "set_vault_authority": ("user",),
}

OPTIONAL_ARGS: dict[str, tuple[str, ...]] = {
    "stake": ("source",),
    "unstake": ("destination",),
    "claim_rewards": ("destination",),
}


@dataclass
class Instruction:
    name: str
    signer: str
    program_id: str
    args: dict[str, Any] = field(default_factory=dict)
    nonce: str = field(default_factory=generate_nonce)
    public_key: bytes = b""
    signature: bytes = b""

    def signing_payload(self) -> bytes:
        body = {
            "name": self.name,
            "signer": self.signer,
            "program_id": self.program_id,
            "args": self.args,
            "nonce": self.nonce,
        }
        return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")

    @property
    def instruction_id(self) -> str:
        return sha256(self.signing_payload()).hex()

    @property
    def is_signed(self) -> bool:
        return bool(self.public_key and self.signature)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "signer": self.signer,
            "program_id": self.program_id,
            "args": dict(self.args),
            "nonce": self.nonce,
            "public_key": self.public_key.hex(),
            "signature": self.signature.hex(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> Instruction:
        if not isinstance(data, dict):
            raise InvalidInstruction("Instruction must be a JSON object")
        try:
            ix = cls(
                name=str(data["name"]),
                signer=str(data["signer"]),
                program_id=str(data["program_id"]),
                args=dict(data.get("args") or {}),
                nonce=str(data["nonce"]),
                public_key=bytes.fromhex(data.get("public_key") or ""),
                signature=bytes.fromhex(data.get("signature") or ""),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidInstruction(f"Malformed instruction: {exc}") from exc
        validate_shape(ix)
        return ix


def build_instruction(name: str, signer: str, program_id: str, **args: Any) -> Instruction:
    ix = Instruction(name=name, signer=signer, program_id=program_id, args=args)
    validate_shape(ix)
    return ix


def validate_shape(ix: Instruction) -> None:
    """Check the operation name and argument names (not their values)."""
    required = OPERATIONS.get(ix.name)
    if required is None:
        raise InvalidInstruction(f"Unknown operation: {ix.name}")
    missing = [a for a in required if a not in ix.args]
    if missing:
        raise InvalidInstruction(f"{ix.name} missing arguments: {', '.join(missing)}")
    allowed = set(required) | set(OPTIONAL_ARGS.get(ix.name, ()))
    extra = sorted(set(ix.args) - allowed)
    if extra:
        raise InvalidInstruction(f"{ix.name} got unexpected arguments: {', '.join(extra)}")


def verify_instruction(ix: Instruction) -> None:
    """Raise ``Unauthorized`` unless *ix* carries a valid signature by ``signer``."""
    if not ix.is_signed:
        raise Unauthorized("Instruction is not signed")
    if derive_address(ix.public_key) != ix.signer:
        raise Unauthorized("Public key does not match signer")
    if not verify(ix.public_key, ix.signing_payload(), ix.signature):
        raise Unauthorized("Invalid instruction signature")
