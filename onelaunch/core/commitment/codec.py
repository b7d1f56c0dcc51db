"""
Bid Commitments - Sealed bids for launch auctions.

A bidder publishes only a digest of their bid terms while the auction is
open, then reveals the terms at close:

    C = keccak256(pack(string launchId, uint256 price, uint256 quantity,
                       address bidder, string nonce))

Properties:
- Hiding: the nonce blinds low-entropy terms (price, quantity)
- Binding: any change to a revealed field changes the digest
- Deterministic: price is packed as an integer with 6 fractional digits
  and the bidder in canonical checksummed form, so clients and server
  always agree on the bytes
"""

import hmac
import secrets
from dataclasses import dataclass
from decimal import Decimal
from typing import Sequence, Tuple, Union

from onelaunch.crypto import address_to_bytes, keccak256, to_checksum_address, hex_to_bytes
from onelaunch.core.errors import InvalidInput
from onelaunch.utils.logger import get_logger
from onelaunch.utils.validation import MAX_UINT256, micros_to_price, price_to_micros

logger = get_logger("commitment")


# =============================================================================
# Constants
# =============================================================================

# Packed field schema, in order
COMMITMENT_SCHEMA: Tuple[str, ...] = ("string", "uint256", "uint256", "address", "string")

PriceLike = Union[Decimal, int, float, str]


# =============================================================================
# Packed Encoding
# =============================================================================


def _pack_value(type_name: str, value) -> bytes:
    if type_name == "string":
        if not isinstance(value, str):
            raise InvalidInput(f"expected string, got {type(value).__name__}")
        return value.encode("utf-8")
    if type_name == "uint256":
        if isinstance(value, bool) or not isinstance(value, int) or not (0 <= value <= MAX_UINT256):
            raise InvalidInput(f"uint256 out of range: {value!r}")
        return value.to_bytes(32, "big")
    if type_name == "address":
        return address_to_bytes(value)
    raise ValueError(f"Unsupported packed type: {type_name}")


def encode_packed(types: Sequence[str], values: Sequence) -> bytes:
    """
    Solidity abi.encodePacked for the subset of types used in commitments.

    Strings are packed without length tags, so two string fields are only
    unambiguous when the fixed-width fields between them anchor the split.
    In COMMITMENT_SCHEMA the launch id is followed by 64 bytes of uint256
    and the nonce comes last; launch ids must still come from one fixed
    format (the bid book issues uuid4 hex ids) so a bidder cannot move
    bytes between the launch id and the price.
    """
    if len(types) != len(values):
        raise ValueError(f"{len(types)} types for {len(values)} values")
    return b"".join(_pack_value(t, v) for t, v in zip(types, values))


# =============================================================================
# Commit / Verify
# =============================================================================


def commit(
    launch_id: str,
    price: PriceLike,
    quantity: int,
    bidder: str,
    nonce: str,
) -> bytes:
    """
    Compute the 32-byte commitment over a bid's terms.

    Args:
        launch_id: Launch being bid on
        price: Price per unit in the settlement asset (6 fractional digits kept)
        quantity: Units of the auctioned asset
        bidder: Bidder's account address
        nonce: Secret blinding string chosen by the bidder

    Raises:
        InvalidAddress: malformed bidder address
    """
    packed = encode_packed(
        COMMITMENT_SCHEMA,
        [launch_id, price_to_micros(price), quantity, to_checksum_address(bidder), nonce],
    )
    return keccak256(packed)


def verify(
    digest: Union[bytes, str],
    launch_id: str,
    price: PriceLike,
    quantity: int,
    bidder: str,
    nonce: str,
) -> bool:
    """
    Check revealed terms against a stored commitment.

    Accepts the digest as raw bytes or 0x-prefixed hex. Comparison is
    constant time. A malformed bidder address raises InvalidAddress.
    """
    if isinstance(digest, str):
        try:
            digest = hex_to_bytes(digest)
        except ValueError:
            return False
    expected = commit(launch_id, price, quantity, bidder, nonce)
    return hmac.compare_digest(expected, digest)


def generate_commit_nonce() -> str:
    """Random 256-bit blinding nonce, hex encoded."""
    return secrets.token_hex(32)


# =============================================================================
# Data Structures
# =============================================================================


@dataclass(frozen=True)
class BidReveal:
    """
    The opened terms of a sealed bid.

    Must reproduce the commitment stored at submission time.
    """
    launch_id: str
    price: Decimal
    quantity: int
    bidder: str
    nonce: str

    def compute_commitment(self) -> bytes:
        """Compute commitment that should match."""
        return commit(self.launch_id, self.price, self.quantity, self.bidder, self.nonce)

    def matches(self, commitment: Union[bytes, str]) -> bool:
        return verify(commitment, self.launch_id, self.price, self.quantity, self.bidder, self.nonce)


def create_bid_commitment(
    launch_id: str,
    price: PriceLike,
    quantity: int,
    bidder: str,
    nonce: str = "",
) -> Tuple[bytes, BidReveal]:
    """
    Create a matching commitment/reveal pair.

    A random nonce is generated when none is given.

    Returns:
        (commitment, BidReveal) pair
    """
    nonce = nonce or generate_commit_nonce()
    reveal = BidReveal(
        launch_id=launch_id,
        price=micros_to_price(price_to_micros(price)),
        quantity=quantity,
        bidder=to_checksum_address(bidder),
        nonce=nonce,
    )
    commitment = reveal.compute_commitment()
    logger.debug(f"Commitment {commitment.hex()[:16]}... for launch {launch_id}")
    return commitment, reveal


__all__ = [
    "COMMITMENT_SCHEMA",
    "encode_packed",
    "commit",
    "verify",
    "generate_commit_nonce",
    "BidReveal",
    "create_bid_commitment",
]
