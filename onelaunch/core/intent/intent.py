"""
Bid Intents - Signed, asset-agnostic bid authorizations.

A bid intent lets a bidder pay with any token: it authorizes an external
executor to convert `bid_amount` of `bid_token` into the settlement asset
on their behalf, as long as the resulting price per auction token stays
under `max_effective_price`.

Intents are signed as EIP-712 typed data under their own domain, distinct
from any token permit domain:

    BidIntent(address bidder,address bidToken,uint256 bidAmount,
              address auctionToken,uint256 maxAuctionTokens,
              uint256 maxEffectivePrice,uint256 deadline,uint256 nonce)
"""

import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from onelaunch.crypto import (
    keccak256,
    recover_address,
    sign,
    to_checksum_address,
    ZERO_ADDRESS,
)
from onelaunch.crypto.eip712 import TypedDomain, typed_data_digest
from onelaunch.core.config import config as default_config
from onelaunch.core.errors import InvalidInput
from onelaunch.utils.logger import get_logger
from onelaunch.utils.validation import parse_uint, price_to_micros, to_base_units

logger = get_logger("intent")


# =============================================================================
# Constants
# =============================================================================

BID_INTENT_TYPE = "BidIntent"

BID_INTENT_TYPES = {
    BID_INTENT_TYPE: [
        ("bidder", "address"),
        ("bidToken", "address"),
        ("bidAmount", "uint256"),
        ("auctionToken", "address"),
        ("maxAuctionTokens", "uint256"),
        ("maxEffectivePrice", "uint256"),
        ("deadline", "uint256"),
        ("nonce", "uint256"),
    ],
}

# One week
DEFAULT_INTENT_TTL = 7 * 24 * 60 * 60


# =============================================================================
# Nonces
# =============================================================================


class NonceSource:
    """
    Strictly increasing nonce generator.

    Seeded from the nanosecond clock so restarts keep moving forward; two
    calls never return the same value within one process. Uniqueness
    across processes is enforced by the store's unique salt constraint.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._last = 0

    def next(self) -> int:
        with self._lock:
            self._last = max(time.time_ns(), self._last + 1)
            return self._last


_nonces = NonceSource()


def next_nonce() -> int:
    """Next process-wide intent nonce."""
    return _nonces.next()


# =============================================================================
# Bid Intent
# =============================================================================


@dataclass(frozen=True)
class BidIntent:
    """
    A bidder's signed authorization, independent of the asset pairing.

    Attributes:
        bidder: Bidder's checksummed address
        bid_token: Token the bidder pays with
        bid_amount: Amount of bid_token in base units
        auction_token: Token being auctioned
        max_auction_tokens: Most auction tokens the bidder will take
        max_effective_price: Price ceiling per auction token (6 decimals)
        deadline: Unix timestamp; the intent is valid strictly before it
        nonce: Unique per bidder, replay guard
    """
    bidder: str
    bid_token: str
    bid_amount: int
    auction_token: str
    max_auction_tokens: int
    max_effective_price: int
    deadline: int
    nonce: int

    def to_message(self) -> Dict[str, Any]:
        """EIP-712 message with field names as signed."""
        return {
            "bidder": self.bidder,
            "bidToken": self.bid_token,
            "bidAmount": self.bid_amount,
            "auctionToken": self.auction_token,
            "maxAuctionTokens": self.max_auction_tokens,
            "maxEffectivePrice": self.max_effective_price,
            "deadline": self.deadline,
            "nonce": self.nonce,
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BidIntent":
        return cls(
            bidder=to_checksum_address(data["bidder"]),
            bid_token=to_checksum_address(data["bid_token"]),
            bid_amount=int(data["bid_amount"]),
            auction_token=to_checksum_address(data["auction_token"]),
            max_auction_tokens=int(data["max_auction_tokens"]),
            max_effective_price=int(data["max_effective_price"]),
            deadline=int(data["deadline"]),
            nonce=int(data["nonce"]),
        )

    def is_expired(self, now: Optional[int] = None) -> bool:
        """Deadline is exclusive: expired once now >= deadline."""
        now = int(time.time()) if now is None else now
        return now >= self.deadline

    def __repr__(self) -> str:
        return (
            f"BidIntent(bidder={self.bidder[:10]}..., amount={self.bid_amount}, "
            f"max_tokens={self.max_auction_tokens}, nonce={self.nonce})"
        )


def build_bid_intent(
    bidder: str,
    bid_token: str,
    bid_amount: str,
    bid_token_decimals: int,
    auction_token: str,
    max_auction_tokens: str,
    max_effective_price_usdc,
    now: Optional[int] = None,
    nonce: Optional[int] = None,
    ttl: int = DEFAULT_INTENT_TTL,
) -> BidIntent:
    """
    Build a bid intent from user-facing decimal amounts.

    Args:
        bidder: Bidder's address
        bid_token: Token paid with
        bid_amount: Decimal string in whole tokens, e.g. "1.5"
        bid_token_decimals: Token's declared precision
        auction_token: Auctioned token
        max_auction_tokens: Integer string
        max_effective_price_usdc: Price ceiling in settlement asset units
        now: Current unix time (defaults to wall clock)
        nonce: Explicit nonce (defaults to the process nonce source)
        ttl: Seconds until the deadline

    Returns:
        Unsigned BidIntent. Run validate_bid_intent before signing.

    Raises:
        InvalidAddress: malformed account
        InvalidInput: non-numeric amounts
    """
    now = int(time.time()) if now is None else now

    intent = BidIntent(
        bidder=to_checksum_address(bidder),
        bid_token=to_checksum_address(bid_token),
        bid_amount=to_base_units(bid_amount, bid_token_decimals, "bid_amount"),
        auction_token=to_checksum_address(auction_token),
        max_auction_tokens=parse_uint(max_auction_tokens, "max_auction_tokens"),
        max_effective_price=price_to_micros(max_effective_price_usdc, "max_effective_price"),
        deadline=now + ttl,
        nonce=next_nonce() if nonce is None else nonce,
    )

    logger.debug(f"Built {intent!r}")
    return intent


def validate_bid_intent(intent: BidIntent, now: Optional[int] = None) -> bool:
    """
    Check an intent is well formed and live.

    Never raises. False means reject before signing or accepting.
    """
    now = int(time.time()) if now is None else now

    for value in (intent.bid_amount, intent.max_auction_tokens, intent.max_effective_price, intent.deadline):
        if isinstance(value, bool) or not isinstance(value, int):
            return False

    if intent.bid_amount <= 0 or intent.max_auction_tokens <= 0 or intent.max_effective_price <= 0:
        return False

    if intent.deadline <= now:
        return False

    try:
        return to_checksum_address(intent.bidder) != ZERO_ADDRESS
    except InvalidInput:
        return False


# =============================================================================
# Signing
# =============================================================================


def intent_digest(intent: BidIntent, domain: Optional[TypedDomain] = None) -> bytes:
    """EIP-712 digest of the intent under the intent domain."""
    domain = domain or default_config.intent_domain
    return typed_data_digest(domain, BID_INTENT_TYPE, intent.to_message(), BID_INTENT_TYPES)


def sign_bid_intent(
    intent: BidIntent,
    private_key: bytes,
    domain: Optional[TypedDomain] = None,
) -> bytes:
    """Sign the intent, returning a 65-byte signature."""
    return sign(intent_digest(intent, domain), private_key)


def recover_intent_signer(
    intent: BidIntent,
    signature: bytes,
    domain: Optional[TypedDomain] = None,
) -> Optional[str]:
    """Address that produced the signature, or None if unrecoverable."""
    return recover_address(intent_digest(intent, domain), signature)


def verify_intent_signature(
    intent: BidIntent,
    signature: bytes,
    domain: Optional[TypedDomain] = None,
) -> bool:
    """True if the intent was signed by its own bidder."""
    return recover_intent_signer(intent, signature, domain) == intent.bidder


def intent_id(signature: bytes) -> str:
    """Stable identifier for a signed intent: keccak256 of the signature."""
    return "0x" + keccak256(signature).hex()
