"""
Clearing Engine - Uniform-price allocation for a launch.

Bids are ranked by price-time priority and filled until the target
allocation is reached. Every winner pays the same clearing price: the
price of the last bid that received any fill.

    ranked = sort(bids, key=(-price, created_at, bid_id))
    fill fully while it fits; the first bid that does not fit gets
    exactly the remainder and the walk stops.

The engine is a pure function over a LaunchSnapshot. It performs no I/O
and never reads live bid rows, so a result is only as fresh as the
snapshot's version stamp (checked again when the result is applied).
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from onelaunch.core.errors import InvalidInput
from onelaunch.utils.logger import get_logger

logger = get_logger("clearing")


# =============================================================================
# Data Structures
# =============================================================================


@dataclass(frozen=True)
class BidSnapshot:
    """Immutable copy of the clearing-relevant fields of one bid."""
    bid_id: str
    bidder: str
    price: int          # micro-units per token
    quantity: int
    created_at: int

    def sort_key(self) -> Tuple[int, int, str]:
        return (-self.price, self.created_at, self.bid_id)


@dataclass(frozen=True)
class LaunchSnapshot:
    """
    Bids of one launch captured at a known version.

    The version is the launch's bids_version at capture time.
    """
    launch_id: str
    target_allocation: int
    version: int
    bids: Tuple[BidSnapshot, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if self.target_allocation <= 0:
            raise InvalidInput(f"target_allocation must be positive, got {self.target_allocation}")
        # Lists passed by callers are frozen so the snapshot cannot drift
        object.__setattr__(self, "bids", tuple(self.bids))


@dataclass(frozen=True)
class Fill:
    """A winning bid's allocation."""
    bid_id: str
    bidder: str
    price: int
    requested: int
    filled: int

    @property
    def is_partial(self) -> bool:
        return self.filled < self.requested


@dataclass(frozen=True)
class ClearingResult:
    """
    Outcome of clearing one snapshot.

    clearing_price is None when no bid was filled; no settlement is
    produced for such a result.
    """
    launch_id: str
    version: int
    target_allocation: int
    clearing_price: Optional[int]
    filled_quantity: int
    successful_bids_count: int
    fills: Tuple[Fill, ...]
    losing_bid_ids: Tuple[str, ...]

    @property
    def total_raised(self) -> int:
        """Settlement-asset base units collected at the uniform price."""
        if self.clearing_price is None:
            return 0
        return self.clearing_price * self.filled_quantity

    @property
    def is_empty(self) -> bool:
        return self.clearing_price is None

    @property
    def is_fully_subscribed(self) -> bool:
        return self.filled_quantity == self.target_allocation

    def allocation(self, bid_id: str) -> int:
        """Filled amount for a bid, 0 if it did not win."""
        for fill in self.fills:
            if fill.bid_id == bid_id:
                return fill.filled
        return 0

    def allocations(self) -> Dict[str, int]:
        return {fill.bid_id: fill.filled for fill in self.fills}


# =============================================================================
# Clearing
# =============================================================================


def order_bids(bids: Iterable[BidSnapshot]) -> List[BidSnapshot]:
    """
    Rank bids by price descending, then created_at ascending, then bid_id.

    Bids with zero quantity are dropped; they cannot receive a fill.
    """
    return sorted((b for b in bids if b.quantity > 0), key=BidSnapshot.sort_key)


def clear_auction(snapshot: LaunchSnapshot) -> ClearingResult:
    """
    Compute the uniform clearing price and per-bid fills.

    Args:
        snapshot: Bids and target allocation captured at one version

    Returns:
        ClearingResult. Same snapshot, same result, every time.
    """
    for bid in snapshot.bids:
        if bid.quantity < 0 or bid.price < 0:
            raise InvalidInput(f"bid {bid.bid_id} has negative terms")

    target = snapshot.target_allocation
    ranked = order_bids(snapshot.bids)

    fills: List[Fill] = []
    running_filled = 0
    clearing_price: Optional[int] = None
    stop_at = len(ranked)

    for index, bid in enumerate(ranked):
        if running_filled + bid.quantity <= target:
            fills.append(Fill(bid.bid_id, bid.bidder, bid.price, bid.quantity, bid.quantity))
            running_filled += bid.quantity
            clearing_price = bid.price
            if running_filled == target:
                stop_at = index + 1
                break
        else:
            remainder = target - running_filled
            fills.append(Fill(bid.bid_id, bid.bidder, bid.price, bid.quantity, remainder))
            running_filled = target
            clearing_price = bid.price
            stop_at = index + 1
            break

    losers = tuple(b.bid_id for b in ranked[stop_at:])

    result = ClearingResult(
        launch_id=snapshot.launch_id,
        version=snapshot.version,
        target_allocation=target,
        clearing_price=clearing_price,
        filled_quantity=running_filled,
        successful_bids_count=len(fills),
        fills=tuple(fills),
        losing_bid_ids=losers,
    )

    logger.debug(
        f"Cleared {snapshot.launch_id}@v{snapshot.version}: price={clearing_price} "
        f"filled={running_filled}/{target} winners={len(fills)} losers={len(losers)}"
    )
    return result
