"""
Wallet management for StakeVault.

A wallet wraps a secp256k1 key-pair and provides:
  - Address derivation
  - Instruction signing
  - Deterministic derivation from a seed phrase
  - Serialisable import / export (encrypted with passphrase)
"""

from __future__ import annotations

import hashlib
import os

from stakevault_core.crypto_utils import (
    derive_address,
    generate_keypair,
    public_key_from_private,
    sign,
)
from stakevault_core.instructions import Instruction, build_instruction

KDF_ITERATIONS = 600_000


class Wallet:
    """User-facing wallet that signs program instructions."""

    def __init__(self, private_key: bytes, public_key: bytes, address: str | None = None):
        self.private_key = private_key
        self.public_key = public_key
        self.address = address or derive_address(public_key)

    # ---- factory methods ----

    @classmethod
    def create(cls) -> Wallet:
        """Generate a brand-new wallet."""
        priv, pub = generate_keypair()
        return cls(priv, pub)

    @classmethod
    def from_seed(cls, seed: str, iterations: int = KDF_ITERATIONS) -> Wallet:
        """
        Derive a wallet deterministically from a seed phrase.

        Uses PBKDF2-HMAC-SHA256 with a fixed salt, so the same phrase
        always yields the same address.
        """
        priv = hashlib.pbkdf2_hmac(
            "sha256", seed.encode("utf-8"), b"StakeVault/seed/v1", iterations,
        )
        return cls(priv, public_key_from_private(priv))

    # ---- signing ----

    def sign_instruction(self, ix: Instruction) -> Instruction:
        """Sign *ix* in place; the signer must be this wallet."""
        if ix.signer != self.address:
            raise ValueError(f"Instruction signer {ix.signer} is not this wallet")
        ix.public_key = self.public_key
        ix.signature = sign(self.private_key, ix.signing_payload())
        return ix

    def instruction(self, name: str, program_id: str, **args) -> Instruction:
        """Build and sign an instruction in one step."""
        return self.sign_instruction(build_instruction(name, self.address, program_id, **args))

    # ---- serialisation ----

    def to_dict(self) -> dict:
        """Public fields only."""
        return {
            "address": self.address,
            "public_key": self.public_key.hex(),
        }

    def export_encrypted(self, passphrase: str, iterations: int = KDF_ITERATIONS) -> dict:
        """
        Export wallet as an encrypted JSON-compatible dict.

        AES-256-GCM authenticated encryption, key from
        PBKDF2-HMAC-SHA256.
        """
        salt = os.urandom(16)
        key = hashlib.pbkdf2_hmac("sha256", passphrase.encode("utf-8"), salt, iterations)
        enc_priv, nonce, tag = self._aes_gcm_encrypt(key, self.private_key)
        return {
            "version": 1,
            "address": self.address,
            "public_key": self.public_key.hex(),
            "encrypted_private_key": enc_priv.hex(),
            "nonce": nonce.hex(),
            "tag": tag.hex(),
            "salt": salt.hex(),
            "kdf": "pbkdf2-hmac-sha256",
            "kdf_iterations": iterations,
        }

    @classmethod
    def import_encrypted(cls, data: dict, passphrase: str) -> Wallet:
        """Import from an encrypted export.  Raises ValueError on a wrong passphrase."""
        salt = bytes.fromhex(data["salt"])
        iterations = data.get("kdf_iterations", KDF_ITERATIONS)
        key = hashlib.pbkdf2_hmac("sha256", passphrase.encode("utf-8"), salt, iterations)
        priv = cls._aes_gcm_decrypt(
            key,
            bytes.fromhex(data["nonce"]),
            bytes.fromhex(data["encrypted_private_key"]),
            bytes.fromhex(data["tag"]),
        )
        pub = public_key_from_private(priv)
        if pub.hex() != data["public_key"]:
            raise ValueError("Decrypted key does not match the stored public key")
        return cls(priv, pub, data.get("address"))

    # ---- AES-256-GCM authenticated encryption ----

    @staticmethod
    def _aes_gcm_encrypt(key: bytes, data: bytes) -> tuple[bytes, bytes, bytes]:
        """Encrypt *data* with AES-256-GCM. Returns (ciphertext, nonce, tag)."""
        from Crypto.Cipher import AES
        nonce = os.urandom(12)
        cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
        ciphertext, tag = cipher.encrypt_and_digest(data)
        return ciphertext, nonce, tag

    @staticmethod
    def _aes_gcm_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, tag: bytes) -> bytes:
        """Decrypt and verify AES-256-GCM ciphertext. Raises ValueError on tamper."""
        from Crypto.Cipher import AES
        cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
        return cipher.decrypt_and_verify(ciphertext, tag)

    def __repr__(self) -> str:
        return f"Wallet({self.address})"
