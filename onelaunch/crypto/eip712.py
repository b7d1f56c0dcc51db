"""
EIP-712 typed structured data hashing.

digest = keccak256(0x19 0x01 || domainSeparator || hashStruct(message))

Every signed message in onelaunch (token permits, bid intents, executor
swap orders) is a flat or nested struct described by an ordered field
schema. Field order and type names are part of the type hash, so two
schemas that differ only in field order or type never collide.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from onelaunch.crypto import address_to_bytes, keccak256, to_checksum_address


# Ordered (field_name, solidity_type) pairs per struct name
TypeSchema = Mapping[str, Sequence[Tuple[str, str]]]

DOMAIN_TYPE = "EIP712Domain"
DOMAIN_FIELDS: List[Tuple[str, str]] = [
    ("name", "string"),
    ("version", "string"),
    ("chainId", "uint256"),
    ("verifyingContract", "address"),
]

_ARRAY_RE = re.compile(r"^(.+)\[(\d*)\]$")
_INT_RE = re.compile(r"^(u?)int(\d*)$")
_BYTES_N_RE = re.compile(r"^bytes(\d+)$")


@dataclass(frozen=True)
class TypedDomain:
    """
    A signing domain scoped to one chain and one verifying contract.

    Two domains that differ in any field produce unrelated digests for the
    same message, so a permit signature can never be replayed as an intent
    signature or on another chain.
    """
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def as_message(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": to_checksum_address(self.verifying_contract),
        }

    @property
    def separator(self) -> bytes:
        return domain_separator(self)


# =============================================================================
# Type Encoding
# =============================================================================


def _base_type(type_name: str) -> str:
    match = _ARRAY_RE.match(type_name)
    while match:
        type_name = match.group(1)
        match = _ARRAY_RE.match(type_name)
    return type_name


def _collect_dependencies(primary: str, types: TypeSchema, found: List[str]) -> None:
    if primary in found or primary not in types:
        return
    found.append(primary)
    for _, field_type in types[primary]:
        _collect_dependencies(_base_type(field_type), types, found)


def encode_type(primary: str, types: TypeSchema) -> str:
    """
    Encode a struct type as `Name(type1 name1,...)` followed by its
    referenced struct types sorted by name.
    """
    if primary not in types:
        raise ValueError(f"Unknown struct type: {primary}")

    deps: List[str] = []
    _collect_dependencies(primary, types, deps)
    deps.remove(primary)
    ordered = [primary] + sorted(deps)

    return "".join(
        f"{name}(" + ",".join(f"{ftype} {fname}" for fname, ftype in types[name]) + ")"
        for name in ordered
    )


def type_hash(primary: str, types: TypeSchema) -> bytes:
    """keccak256 of the encoded type string."""
    return keccak256(encode_type(primary, types).encode("utf-8"))


# =============================================================================
# Value Encoding
# =============================================================================


def _encode_int(value: Any, bits: int, signed: bool, type_name: str) -> bytes:
    if isinstance(value, bool) or not isinstance(value, int):
        if isinstance(value, str):
            value = int(value, 0)
        else:
            raise ValueError(f"{type_name} value must be int, got {type(value).__name__}")
    if signed:
        low, high = -(1 << (bits - 1)), (1 << (bits - 1)) - 1
    else:
        low, high = 0, (1 << bits) - 1
    if not (low <= value <= high):
        raise ValueError(f"{type_name} value out of range: {value}")
    return (value % (1 << 256)).to_bytes(32, "big")


def _encode_value(field_type: str, value: Any, types: TypeSchema) -> bytes:
    if field_type in types:
        return hash_struct(field_type, value, types)

    array = _ARRAY_RE.match(field_type)
    if array:
        inner, size = array.group(1), array.group(2)
        if size and len(value) != int(size):
            raise ValueError(f"{field_type} expects {size} items, got {len(value)}")
        return keccak256(b"".join(_encode_value(inner, item, types) for item in value))

    if field_type == "string":
        return keccak256(value.encode("utf-8"))

    if field_type == "bytes":
        return keccak256(bytes(value))

    if field_type == "address":
        return b"\x00" * 12 + address_to_bytes(value)

    if field_type == "bool":
        return (1 if value else 0).to_bytes(32, "big")

    int_match = _INT_RE.match(field_type)
    if int_match:
        bits = int(int_match.group(2) or 256)
        return _encode_int(value, bits, signed=not int_match.group(1), type_name=field_type)

    bytes_match = _BYTES_N_RE.match(field_type)
    if bytes_match:
        size = int(bytes_match.group(1))
        raw = bytes(value)
        if len(raw) != size:
            raise ValueError(f"{field_type} expects {size} bytes, got {len(raw)}")
        return raw.ljust(32, b"\x00")

    raise ValueError(f"Unsupported type: {field_type}")


def encode_data(primary: str, message: Mapping[str, Any], types: TypeSchema) -> bytes:
    """Concatenate the 32-byte encodings of every field in schema order."""
    encoded = []
    for field_name, field_type in types[primary]:
        if field_name not in message:
            raise ValueError(f"{primary}.{field_name} missing")
        encoded.append(_encode_value(field_type, message[field_name], types))
    return b"".join(encoded)


def hash_struct(primary: str, message: Mapping[str, Any], types: TypeSchema) -> bytes:
    """hashStruct(s) = keccak256(typeHash || encodeData(s))"""
    return keccak256(type_hash(primary, types) + encode_data(primary, message, types))


def domain_separator(domain: TypedDomain) -> bytes:
    """hashStruct of the EIP712Domain for this domain."""
    return hash_struct(DOMAIN_TYPE, domain.as_message(), {DOMAIN_TYPE: DOMAIN_FIELDS})


def typed_data_digest(
    domain: TypedDomain,
    primary: str,
    message: Mapping[str, Any],
    types: TypeSchema,
) -> bytes:
    """The 32-byte digest a wallet signs for a typed message."""
    return keccak256(b"\x19\x01" + domain_separator(domain) + hash_struct(primary, message, types))


__all__ = [
    "TypedDomain",
    "TypeSchema",
    "DOMAIN_FIELDS",
    "encode_type",
    "type_hash",
    "encode_data",
    "hash_struct",
    "domain_separator",
    "typed_data_digest",
]
