"""
Intent pricing: turns cross-asset intents into clearable bids.

An intent offers bid_amount of some token for up to max_auction_tokens.
Its effective price per auction token, in settlement-asset micro-units, is

    value     = bid_amount * token_price // 10**decimals
    effective = value // max_auction_tokens

computed with integers only. Intents whose effective price exceeds their
signed max_effective_price are excluded from clearing.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from onelaunch.crypto import to_checksum_address
from onelaunch.core.auction.clearing import BidSnapshot
from onelaunch.core.errors import InvalidInput
from onelaunch.core.intent.intent import BidIntent
from onelaunch.utils.logger import get_logger
from onelaunch.utils.validation import validate_decimals

logger = get_logger("pricing")


@dataclass(frozen=True)
class TokenInfo:
    address: str
    symbol: str
    decimals: int


class TokenRegistry:
    """Known bid tokens keyed by checksummed address."""

    def __init__(self, tokens: Iterable[TokenInfo] = ()):
        self._tokens: Dict[str, TokenInfo] = {}
        for token in tokens:
            self.register(token.address, token.symbol, token.decimals)

    def register(self, address: str, symbol: str, decimals: int) -> TokenInfo:
        valid, err = validate_decimals(decimals)
        if not valid:
            raise InvalidInput(err)
        info = TokenInfo(to_checksum_address(address), symbol, decimals)
        self._tokens[info.address] = info
        return info

    def get(self, address: str) -> TokenInfo:
        key = to_checksum_address(address)
        if key not in self._tokens:
            raise InvalidInput(f"unknown bid token {key}")
        return self._tokens[key]

    def __contains__(self, address: str) -> bool:
        return to_checksum_address(address) in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)


class PriceOracle(Protocol):
    """Source of token prices in settlement-asset micro-units per whole token."""

    def price_micros(self, token: str) -> int:
        ...


class StaticPriceOracle:
    """Fixed price table. Used for tests, the demo and offline clearing."""

    def __init__(self, prices: Optional[Dict[str, int]] = None):
        self._prices: Dict[str, int] = {}
        for token, price in (prices or {}).items():
            self.set_price(token, price)

    def set_price(self, token: str, price_micros: int) -> None:
        if price_micros <= 0:
            raise InvalidInput(f"price must be positive, got {price_micros}")
        self._prices[to_checksum_address(token)] = price_micros

    def price_micros(self, token: str) -> int:
        key = to_checksum_address(token)
        if key not in self._prices:
            raise InvalidInput(f"no price for token {key}")
        return self._prices[key]


def settlement_value(bid_amount: int, token_price_micros: int, decimals: int) -> int:
    """Settlement-asset base units the bid amount converts to."""
    return bid_amount * token_price_micros // 10 ** decimals


def effective_price(intent: BidIntent, token_price_micros: int, decimals: int) -> int:
    """Settlement-asset micro-units paid per auction token."""
    value = settlement_value(intent.bid_amount, token_price_micros, decimals)
    return value // intent.max_auction_tokens


@dataclass(frozen=True)
class PricedIntent:
    """An intent with its valuation at clearing time."""
    bid_id: str
    intent: BidIntent
    expected_output: int
    effective_price: int

    @property
    def within_ceiling(self) -> bool:
        return self.effective_price <= self.intent.max_effective_price


def price_intent(bid_id: str, intent: BidIntent, registry: TokenRegistry, oracle: PriceOracle) -> PricedIntent:
    token = registry.get(intent.bid_token)
    token_price = oracle.price_micros(token.address)
    return PricedIntent(
        bid_id=bid_id,
        intent=intent,
        expected_output=settlement_value(intent.bid_amount, token_price, token.decimals),
        effective_price=effective_price(intent, token_price, token.decimals),
    )


def intent_to_bid_snapshot(priced: PricedIntent, created_at: int) -> Optional[BidSnapshot]:
    """Clearable bid for a priced intent, or None if it breaks its ceiling."""
    if not priced.within_ceiling:
        return None
    return BidSnapshot(
        bid_id=priced.bid_id,
        bidder=priced.intent.bidder,
        price=priced.effective_price,
        quantity=priced.intent.max_auction_tokens,
        created_at=created_at,
    )


def price_intents(
    intents: Iterable[Tuple[str, BidIntent, int]],
    registry: TokenRegistry,
    oracle: PriceOracle,
) -> Tuple[List[BidSnapshot], List[PricedIntent], List[PricedIntent]]:
    """
    Value a batch of (bid_id, intent, created_at) entries.

    Returns:
        (snapshots, accepted, excluded)
    """
    snapshots: List[BidSnapshot] = []
    accepted: List[PricedIntent] = []
    excluded: List[PricedIntent] = []

    for bid_id, intent, created_at in intents:
        priced = price_intent(bid_id, intent, registry, oracle)
        snapshot = intent_to_bid_snapshot(priced, created_at)
        if snapshot is None:
            logger.info(
                f"Intent {bid_id[:12]}... excluded: effective price "
                f"{priced.effective_price} above ceiling {intent.max_effective_price}"
            )
            excluded.append(priced)
        else:
            snapshots.append(snapshot)
            accepted.append(priced)

    return snapshots, accepted, excluded
