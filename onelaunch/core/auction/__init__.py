"""
Launch auctions: records, the clearing engine and intent pricing.

The bid book and clearing coordinator depend on storage and are imported
from their own modules (onelaunch.core.auction.book, .coordinator).
"""

from onelaunch.core.auction.models import (
    Launch,
    Bid,
    AuctionSettlement,
    LaunchStatus,
    OrderStatus,
)
from onelaunch.core.auction.clearing import (
    BidSnapshot,
    LaunchSnapshot,
    Fill,
    ClearingResult,
    order_bids,
    clear_auction,
)
from onelaunch.core.auction.pricing import (
    TokenInfo,
    TokenRegistry,
    PriceOracle,
    StaticPriceOracle,
    PricedIntent,
    effective_price,
    settlement_value,
    price_intent,
    price_intents,
    intent_to_bid_snapshot,
)

__all__ = [
    "Launch",
    "Bid",
    "AuctionSettlement",
    "LaunchStatus",
    "OrderStatus",
    "BidSnapshot",
    "LaunchSnapshot",
    "Fill",
    "ClearingResult",
    "order_bids",
    "clear_auction",
    "TokenInfo",
    "TokenRegistry",
    "PriceOracle",
    "StaticPriceOracle",
    "PricedIntent",
    "effective_price",
    "settlement_value",
    "price_intent",
    "price_intents",
    "intent_to_bid_snapshot",
]
