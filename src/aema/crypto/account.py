from __future__ import annotations

"""Ledger accounts: Ed25519 keys and checksummed base32 addresses.

Private keys are handled in the ledger's 64-byte form (32-byte seed followed
by the 32-byte public key) and exchanged as base64 strings. A bare 32-byte
seed is accepted too.

Address format:
  base32(pubkey || checksum) without padding, where checksum is the last
  4 bytes of SHA-512/256(pubkey).
"""

import base64
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

PUBKEY_LEN = 32
CHECKSUM_LEN = 4


def sha512_256(data: bytes) -> bytes:
    h = hashes.Hash(hashes.SHA512_256())
    h.update(data)
    return h.finalize()


def _decode_bytes(s: str) -> bytes:
    s = s.strip()
    if not s:
        raise ValueError("empty string")
    # hex
    try:
        return bytes.fromhex(s)
    except ValueError:
        pass
    # base64 / base64url
    try:
        padding = "=" * (-len(s) % 4)
        s2 = (s + padding).replace("-", "+").replace("_", "/")
        return base64.b64decode(s2, validate=True)
    except ValueError as e:
        raise ValueError("not hex or base64") from e


def encode_address(pubkey: bytes) -> str:
    if len(pubkey) != PUBKEY_LEN:
        raise ValueError("public key must be 32 bytes")
    checksum = sha512_256(pubkey)[-CHECKSUM_LEN:]
    return base64.b32encode(pubkey + checksum).decode("ascii").rstrip("=")


def decode_address(address: str) -> bytes:
    """Return the public key for an address, validating the checksum."""
    a = str(address or "").strip()
    if not a:
        raise ValueError("empty address")
    padding = "=" * (-len(a) % 8)
    try:
        raw = base64.b32decode(a + padding)
    except ValueError as e:
        raise ValueError("address is not base32") from e
    if len(raw) != PUBKEY_LEN + CHECKSUM_LEN:
        raise ValueError("address has wrong length")
    pubkey, checksum = raw[:PUBKEY_LEN], raw[PUBKEY_LEN:]
    if sha512_256(pubkey)[-CHECKSUM_LEN:] != checksum:
        raise ValueError("address checksum mismatch")
    return pubkey


def is_valid_address(address: str) -> bool:
    try:
        decode_address(address)
        return True
    except ValueError:
        return False


@dataclass(frozen=True)
class Account:
    address: str
    private_key: bytes

    @property
    def seed(self) -> bytes:
        return self.private_key[:32]

    @property
    def public_key(self) -> bytes:
        return self.private_key[32:]

    def private_key_b64(self) -> str:
        return base64.b64encode(self.private_key).decode("ascii")

    def sign(self, message: bytes) -> bytes:
        return Ed25519PrivateKey.from_private_bytes(self.seed).sign(message)

    def __repr__(self) -> str:
        # Keep key material out of logs and tracebacks.
        return f"Account(address={self.address!r})"


def _account_from_seed(seed: bytes) -> Account:
    sk = Ed25519PrivateKey.from_private_bytes(seed)
    pk = sk.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    return Account(address=encode_address(pk), private_key=seed + pk)


def generate_account() -> Account:
    sk = Ed25519PrivateKey.generate()
    seed = sk.private_bytes_raw()
    return _account_from_seed(seed)


def generate_private_key_b64() -> str:
    """Return a random, base64-encoded 64-byte private key."""
    return generate_account().private_key_b64()


def account_from_private_key(private_key: str | bytes) -> Account:
    """Derive an Account from a base64/hex string or raw bytes.

    Accepts a 32-byte seed or the 64-byte (seed || pubkey) form. For the
    64-byte form the embedded public key must match the seed.
    """
    raw = _decode_bytes(private_key) if isinstance(private_key, str) else bytes(private_key)
    if len(raw) not in (32, 64):
        raise ValueError("ed25519 private key must be 32-byte seed or 64-byte key")

    acc = _account_from_seed(raw[:32])
    if len(raw) == 64 and raw[32:] != acc.public_key:
        raise ValueError("private key public half does not match seed")
    return acc


def account_from_optional_key(private_key: Optional[str | bytes]) -> Account:
    if private_key is None or private_key == "" or private_key == b"":
        return generate_account()
    return account_from_private_key(private_key)


def verify_signature(*, address: str, message: bytes, signature: bytes) -> bool:
    try:
        key = Ed25519PublicKey.from_public_bytes(decode_address(address))
        key.verify(signature, message)
        return True
    except (InvalidSignature, ValueError):
        return False
