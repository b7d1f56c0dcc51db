"""
Launch and bid records as persisted by the store.

Prices are integer micro-units of the settlement asset (6 fractional
digits). Quantities are whole units of the auctioned token.
"""

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class LaunchStatus(str, Enum):
    """Lifecycle of a launch. COMPLETED and EXPIRED are terminal."""
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not LaunchStatus.ACTIVE


class OrderStatus(str, Enum):
    """Status of a bid in the book."""
    PENDING = "pending"        # Submitted, sealed or awaiting activation
    ACTIVE = "active"          # Eligible for clearing
    FILLED = "filled"          # Received an allocation
    CANCELLED = "cancelled"    # Withdrawn before clearing
    EXPIRED = "expired"        # Lost at clearing


@dataclass
class Launch:
    """
    One auction event offering a fixed quantity of a token.

    Mutated only by applying a clearing result; bids_version is bumped on
    every bid insert or update so a clearing can detect a stale snapshot.
    """
    launch_id: str
    token_name: str
    token_symbol: str
    total_supply: int
    target_allocation: int
    end_time: int
    status: LaunchStatus = LaunchStatus.ACTIVE
    clearing_price: Optional[int] = None
    total_raised: int = 0
    participants: int = 0
    is_launched: bool = False
    token_address: Optional[str] = None
    chain_id: Optional[int] = None
    auction_controller_address: Optional[str] = None
    bids_version: int = 0
    created_at: int = field(default_factory=lambda: int(time.time()))

    def is_open(self, now: Optional[int] = None) -> bool:
        """True while bids are still accepted."""
        now = int(time.time()) if now is None else now
        return self.status is LaunchStatus.ACTIVE and now < self.end_time

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class Bid:
    """
    A price/quantity offer against a launch.

    Sealed bids carry a commitment and zero terms until revealed.
    filled_amount is written once, by clearing.
    """
    bid_id: str
    launch_id: str
    bidder: str
    price: int
    quantity: int
    created_at: int
    order_status: OrderStatus = OrderStatus.PENDING
    filled_amount: int = 0
    commitment: Optional[str] = None
    order_hash: Optional[str] = None
    external_order_id: Optional[str] = None
    transaction_ref: Optional[str] = None
    block_number: Optional[int] = None

    @property
    def is_sealed(self) -> bool:
        return self.commitment is not None and self.quantity == 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["order_status"] = self.order_status.value
        return data


@dataclass(frozen=True)
class AuctionSettlement:
    """Append-only aggregate of a completed clearing, one per launch."""
    launch_id: str
    clearing_price: int
    total_filled_quantity: int
    total_raised_amount: int
    successful_bids_count: int
    settlement_tx_ref: Optional[str] = None
    settlement_block: Optional[int] = None
    gas_used: Optional[int] = None
    settled_at: int = field(default_factory=lambda: int(time.time()))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
