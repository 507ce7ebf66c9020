"""
Cryptographic primitives for StakeVault.

  - SHA-256 / double SHA-256
  - Base58 encode / decode (Bitcoin alphabet, as used for account keys)
  - secp256k1 key generation, signing and verification (``ecdsa``)
  - 32-byte account addresses derived from public keys
  - Curve-membership test used to keep program-derived addresses off-curve
"""

from __future__ import annotations

import hashlib
import os

from ecdsa import BadSignatureError, SECP256k1, SigningKey, VerifyingKey
from ecdsa.der import UnexpectedDER
from ecdsa.errors import MalformedPointError
from ecdsa.util import sigdecode_der, sigencode_der

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_B58_INDEX = {c: i for i, c in enumerate(BASE58_ALPHABET)}

ADDRESS_BYTES = 32


# ── hashing ─────────────────────────────────────────────────────────

def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def sha256d(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


# ── base58 ──────────────────────────────────────────────────────────

def base58_encode(data: bytes) -> str:
    n = int.from_bytes(data, "big")
    out = []
    while n > 0:
        n, rem = divmod(n, 58)
        out.append(BASE58_ALPHABET[rem])
    # Preserve leading zero bytes
    pad = len(data) - len(data.lstrip(b"\x00"))
    return BASE58_ALPHABET[0] * pad + "".join(reversed(out))


def base58_decode(text: str) -> bytes:
    n = 0
    for ch in text:
        try:
            n = n * 58 + _B58_INDEX[ch]
        except KeyError:
            raise ValueError(f"Invalid base58 character: {ch!r}") from None
    body = n.to_bytes((n.bit_length() + 7) // 8, "big") if n else b""
    pad = len(text) - len(text.lstrip(BASE58_ALPHABET[0]))
    return b"\x00" * pad + body


def address_to_bytes(address: str) -> bytes:
    """Decode a base58 address into its 32 raw bytes."""
    raw = base58_decode(address)
    if len(raw) != ADDRESS_BYTES:
        raise ValueError(f"Address must decode to {ADDRESS_BYTES} bytes: {address}")
    return raw


def bytes_to_address(raw: bytes) -> str:
    if len(raw) != ADDRESS_BYTES:
        raise ValueError(f"Address must be {ADDRESS_BYTES} bytes")
    return base58_encode(raw)


def is_valid_address(address: str) -> bool:
    try:
        address_to_bytes(address)
    except ValueError:
        return False
    return True


# ── keys & signatures ───────────────────────────────────────────────

def generate_keypair() -> tuple[bytes, bytes]:
    """Return ``(private_key, public_key)``; public key is 65-byte uncompressed."""
    sk = SigningKey.generate(curve=SECP256k1)
    return sk.to_string(), b"\x04" + sk.get_verifying_key().to_string()


def public_key_from_private(private_key: bytes) -> bytes:
    sk = SigningKey.from_string(private_key, curve=SECP256k1)
    return b"\x04" + sk.get_verifying_key().to_string()


def sign(private_key: bytes, message: bytes) -> bytes:
    """Deterministic (RFC 6979) DER signature over sha256(message)."""
    sk = SigningKey.from_string(private_key, curve=SECP256k1)
    return sk.sign_deterministic(message, hashfunc=hashlib.sha256, sigencode=sigencode_der)


def verify(public_key: bytes, message: bytes, signature: bytes) -> bool:
    try:
        vk = VerifyingKey.from_string(public_key, curve=SECP256k1)
        return vk.verify(signature, message, hashfunc=hashlib.sha256, sigdecode=sigdecode_der)
    except (BadSignatureError, MalformedPointError, UnexpectedDER, ValueError):
        return False


def derive_address(public_key: bytes) -> str:
    """Account address = base58(sha256(public_key))."""
    return bytes_to_address(sha256(public_key))


def is_on_curve(candidate: bytes) -> bool:
    """True if *candidate* is the x-coordinate of a secp256k1 point.

    Program-derived addresses must fail this test so that no private key
    can ever sign on their behalf.
    """
    try:
        VerifyingKey.from_string(b"\x02" + candidate, curve=SECP256k1)
    except (MalformedPointError, ValueError, AssertionError):
        return False
    return True


def generate_nonce() -> str:
    return os.urandom(16).hex()
