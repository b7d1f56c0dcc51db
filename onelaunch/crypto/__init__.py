"""
Cryptographic primitives for onelaunch.

This module provides:
- Keccak-256 hashing (EVM compatible)
- Key generation and address derivation
- EIP-55 checksummed account normalization
- Recoverable ECDSA signatures on secp256k1 (65-byte r || s || v)

Design Notes:
-------------
All digests that end up signed by a wallet or checked by a contract use
Keccak-256, so commitments, permits and intents hash exactly like their
on-chain counterparts. Typed structured data (EIP-712) lives in
onelaunch.crypto.eip712.
"""

import secrets
from dataclasses import dataclass
from typing import Optional, Tuple

from Crypto.Hash import keccak
from py_ecc.secp256k1 import secp256k1

from onelaunch.core.errors import InvalidAddress


# =============================================================================
# Constants
# =============================================================================

# secp256k1 curve order (number of points on the curve)
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_HEX_CHARS = set("0123456789abcdefABCDEF")


# =============================================================================
# Hashing
# =============================================================================


def keccak256(data: bytes) -> bytes:
    """
    Compute Keccak-256 hash (Ethereum-style).

    Used for: commitments, typed-data digests, address derivation.
    """
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


# =============================================================================
# Addresses
# =============================================================================


def _strip_address(address: object) -> str:
    """Return the 40 hex chars of an address string or raise InvalidAddress."""
    if not isinstance(address, str):
        raise InvalidAddress(address, "address must be a string")
    if not (address.startswith("0x") or address.startswith("0X")):
        raise InvalidAddress(address, "address must be 0x-prefixed")
    body = address[2:]
    if len(body) != 40:
        raise InvalidAddress(address, "address must be 20 bytes")
    if not set(body) <= _HEX_CHARS:
        raise InvalidAddress(address, "address must be hex")
    return body


def _checksum(body_lower: str) -> str:
    digest = keccak256(body_lower.encode("ascii")).hex()
    return "0x" + "".join(
        c.upper() if int(digest[i], 16) >= 8 else c
        for i, c in enumerate(body_lower)
    )


def to_checksum_address(address: object) -> str:
    """
    Normalize an address to its EIP-55 checksummed form.

    All-lowercase and all-uppercase inputs are accepted as unchecksummed.
    Mixed-case input must already carry a valid checksum.

    Raises:
        InvalidAddress: malformed address or bad checksum
    """
    body = _strip_address(address)
    checksummed = _checksum(body.lower())

    is_mixed = body != body.lower() and body != body.upper()
    if is_mixed and checksummed[2:] != body:
        raise InvalidAddress(address, "invalid checksum")

    return checksummed


def address_to_bytes(address: object) -> bytes:
    """Normalize and convert an address to its 20 raw bytes."""
    return bytes.fromhex(to_checksum_address(address)[2:])


def is_valid_address(address: object) -> bool:
    """Check if value is a valid (and, if mixed-case, correctly checksummed) address."""
    try:
        to_checksum_address(address)
        return True
    except InvalidAddress:
        return False


def is_zero_address(address: object) -> bool:
    """True for the null account. Malformed input raises InvalidAddress."""
    return to_checksum_address(address) == ZERO_ADDRESS


def public_key_to_address(public_key: bytes) -> str:
    """
    Derive checksummed address from a 64-byte public key.

    Address = last 20 bytes of keccak256(public_key).
    """
    if len(public_key) != 64:
        raise ValueError("Public key must be 64 bytes")
    return to_checksum_address("0x" + keccak256(public_key)[-20:].hex())


# =============================================================================
# Key Generation
# =============================================================================


@dataclass
class KeyPair:
    """
    An ECDSA keypair on secp256k1.

    Attributes:
        private_key: 32-byte secret key (integer in [1, order-1])
        public_key: 64-byte uncompressed public key (x || y coordinates)
    """
    private_key: bytes  # 32 bytes
    public_key: bytes   # 64 bytes (uncompressed, no 0x04 prefix)

    @property
    def address(self) -> str:
        """Checksummed account address."""
        return public_key_to_address(self.public_key)


def private_key_to_public_key(private_key: bytes) -> bytes:
    """
    Derive public key from private key.

    Args:
        private_key: 32-byte private key

    Returns:
        64-byte uncompressed public key
    """
    if len(private_key) != 32:
        raise ValueError("Private key must be 32 bytes")

    x, y = secp256k1.privtopub(private_key)
    return x.to_bytes(32, byteorder="big") + y.to_bytes(32, byteorder="big")


def generate_keypair() -> KeyPair:
    """Generate a new random keypair."""
    private_key_int = secrets.randbelow(SECP256K1_ORDER - 1) + 1
    private_key = private_key_int.to_bytes(32, byteorder="big")
    return KeyPair(private_key=private_key, public_key=private_key_to_public_key(private_key))


def keypair_from_private_key(private_key: bytes) -> KeyPair:
    """Build a KeyPair from an existing 32-byte private key."""
    return KeyPair(private_key=private_key, public_key=private_key_to_public_key(private_key))


# =============================================================================
# Recoverable Signatures
# =============================================================================


def sign(message_hash: bytes, private_key: bytes) -> bytes:
    """
    Sign a 32-byte digest.

    Returns:
        65-byte signature r || s || v with v in {27, 28}, s in the lower
        half of the curve order (EIP-2).
    """
    if len(message_hash) != 32:
        raise ValueError("Message hash must be 32 bytes")
    if len(private_key) != 32:
        raise ValueError("Private key must be 32 bytes")

    v, r, s = secp256k1.ecdsa_raw_sign(message_hash, private_key)

    # Normalize s to lower half of curve order; the recovery bit flips with it
    if s > SECP256K1_ORDER // 2:
        s = SECP256K1_ORDER - s
        v = 55 - v

    return r.to_bytes(32, "big") + s.to_bytes(32, "big") + bytes([v])


def split_signature(signature: bytes) -> Tuple[int, int, int]:
    """Split a 65-byte signature into (v, r, s), accepting v as 0/1 or 27/28."""
    if len(signature) != 65:
        raise ValueError(f"Signature must be 65 bytes, got {len(signature)}")
    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:64], "big")
    v = signature[64]
    if v < 27:
        v += 27
    return v, r, s


def recover_address(message_hash: bytes, signature: bytes) -> Optional[str]:
    """
    Recover the signer's address from a digest and signature.

    Returns:
        Checksummed address, or None if the signature is malformed or
        does not recover to a curve point.
    """
    if len(message_hash) != 32:
        return None

    try:
        v, r, s = split_signature(signature)
    except ValueError:
        return None

    if v not in (27, 28):
        return None
    if not (1 <= r < SECP256K1_ORDER) or not (1 <= s <= SECP256K1_ORDER // 2):
        return None

    try:
        x, y = secp256k1.ecdsa_raw_recover(message_hash, (v, r, s))
    except Exception:
        return None

    public_key = x.to_bytes(32, "big") + y.to_bytes(32, "big")
    return public_key_to_address(public_key)


def verify(message_hash: bytes, signature: bytes, address: str) -> bool:
    """True if the signature over message_hash recovers to address."""
    recovered = recover_address(message_hash, signature)
    if recovered is None:
        return False
    try:
        return recovered == to_checksum_address(address)
    except InvalidAddress:
        return False


# =============================================================================
# Utility Functions
# =============================================================================


def bytes_to_hex(data: bytes) -> str:
    """Convert bytes to hex string with 0x prefix."""
    return "0x" + data.hex()


def hex_to_bytes(hex_str: str) -> bytes:
    """Convert hex string (with or without 0x prefix) to bytes."""
    if hex_str.startswith("0x") or hex_str.startswith("0X"):
        hex_str = hex_str[2:]
    return bytes.fromhex(hex_str)


from onelaunch.crypto.eip712 import (  # noqa: E402
    TypedDomain,
    encode_type,
    type_hash,
    hash_struct,
    domain_separator,
    typed_data_digest,
)
