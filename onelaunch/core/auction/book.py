"""
Bid Book - Launch creation and bid intake.

Bids enter as pending. Open bids can be activated immediately; sealed
bids carry only a commitment until the bidder reveals terms that
reproduce it. Only active bids are seen by clearing. A bid can be
cancelled while its launch is still active.

Cross-asset intent bids are checked in full (intent signature, executor
order routing and signature) before anything is written; the store's
unique salt, nonce and order hash constraints reject replays.
"""

import time
import uuid
from typing import Any, Callable, Dict, Optional

from onelaunch.crypto import bytes_to_hex, to_checksum_address
from onelaunch.core.auction.models import Bid, Launch, LaunchStatus, OrderStatus
from onelaunch.core.auction.pricing import TokenRegistry
from onelaunch.core.commitment import verify as verify_commitment
from onelaunch.core.config import LaunchConfig, config as default_config
from onelaunch.core.errors import InvalidInput, InvalidState
from onelaunch.core.intent.intent import BidIntent, verify_intent_signature
from onelaunch.core.intent.orders import SignedSwapOrder, check_intent_order, order_hash
from onelaunch.core.storage import StorageManager
from onelaunch.utils.logger import get_logger
from onelaunch.utils.validation import (
    price_to_micros,
    validate_address,
    validate_positive_amount,
    validate_string,
)

logger = get_logger("book")


class BidBook:
    """
    Bid intake for launches backed by a StorageManager.

    created_at values are unix milliseconds, the resolution used for
    time priority.

    With a registry, intent bids must be denominated in a registered
    bid token.
    """

    def __init__(
        self,
        storage: StorageManager,
        cfg: Optional[LaunchConfig] = None,
        clock: Optional[Callable[[], float]] = None,
        registry: Optional[TokenRegistry] = None,
    ):
        self.storage = storage
        self.cfg = cfg or default_config
        self._clock = clock or time.time
        self.registry = registry

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _open_launch(self, launch_id: str) -> Launch:
        launch = self.storage.get_launch(launch_id)
        if launch is None:
            raise InvalidInput(f"unknown launch {launch_id}")
        if not launch.is_open(int(self._clock())):
            raise InvalidState(f"launch {launch_id} is not accepting bids")
        return launch

    def _bid(self, bid_id: str) -> Bid:
        bid = self.storage.get_bid(bid_id)
        if bid is None:
            raise InvalidInput(f"unknown bid {bid_id}")
        return bid

    # =========================================================================
    # Launches
    # =========================================================================

    def create_launch(
        self,
        token_name: str,
        token_symbol: str,
        total_supply: int,
        target_allocation: int,
        end_time: int,
        launch_id: Optional[str] = None,
        token_address: Optional[str] = None,
        auction_controller_address: Optional[str] = None,
    ) -> Launch:
        """
        Register a new launch.

        Raises:
            InvalidInput: empty names, non-positive amounts, target above
                supply, end_time not in the future
        """
        for value, name in ((token_name, "token_name"), (token_symbol, "token_symbol")):
            valid, err = validate_string(value, name)
            if not valid:
                raise InvalidInput(err)
        for value, name in ((total_supply, "total_supply"), (target_allocation, "target_allocation")):
            valid, err = validate_positive_amount(value, name)
            if not valid:
                raise InvalidInput(err)
        if target_allocation > total_supply:
            raise InvalidInput("target_allocation exceeds total_supply")
        if end_time <= int(self._clock()):
            raise InvalidInput("end_time must be in the future")

        launch = Launch(
            launch_id=launch_id or uuid.uuid4().hex,
            token_name=token_name,
            token_symbol=token_symbol,
            total_supply=total_supply,
            target_allocation=target_allocation,
            end_time=end_time,
            token_address=to_checksum_address(token_address) if token_address else None,
            chain_id=self.cfg.chain_id,
            auction_controller_address=(
                to_checksum_address(auction_controller_address) if auction_controller_address else None
            ),
            created_at=int(self._clock()),
        )
        self.storage.save_launch(launch)
        logger.info(f"Created launch {launch.launch_id} ({token_symbol}, target {target_allocation})")
        return launch

    # =========================================================================
    # Bids
    # =========================================================================

    def submit_bid(
        self,
        launch_id: str,
        bidder: str,
        price,
        quantity: int,
        activate: bool = True,
        created_at: Optional[int] = None,
    ) -> Bid:
        """
        Submit an open bid.

        Args:
            price: Decimal price per token in the settlement asset
            quantity: Whole auction tokens
            activate: Make the bid eligible for clearing right away
        """
        self._open_launch(launch_id)

        valid, err = validate_address(bidder, "bidder")
        if not valid:
            raise InvalidInput(err)
        valid, err = validate_positive_amount(quantity, "quantity")
        if not valid:
            raise InvalidInput(err)
        price_micros = price_to_micros(price)
        if price_micros <= 0:
            raise InvalidInput(f"price must be positive, got {price!r}")

        bid = Bid(
            bid_id=uuid.uuid4().hex,
            launch_id=launch_id,
            bidder=to_checksum_address(bidder),
            price=price_micros,
            quantity=quantity,
            created_at=self._now_ms() if created_at is None else created_at,
            order_status=OrderStatus.ACTIVE if activate else OrderStatus.PENDING,
        )
        self.storage.save_bid(bid)
        logger.debug(f"Bid {bid.bid_id} on {launch_id}: {quantity} @ {price_micros}")
        return bid

    def submit_sealed_bid(
        self,
        launch_id: str,
        bidder: str,
        commitment: str,
        created_at: Optional[int] = None,
    ) -> Bid:
        """Submit a bid whose terms stay hidden behind a commitment."""
        self._open_launch(launch_id)

        valid, err = validate_address(bidder, "bidder")
        if not valid:
            raise InvalidInput(err)
        if isinstance(commitment, bytes):
            commitment = bytes_to_hex(commitment)
        if not isinstance(commitment, str) or len(commitment.lower().removeprefix("0x")) != 64:
            raise InvalidInput("commitment must be 32 bytes")

        bid = Bid(
            bid_id=uuid.uuid4().hex,
            launch_id=launch_id,
            bidder=to_checksum_address(bidder),
            price=0,
            quantity=0,
            created_at=self._now_ms() if created_at is None else created_at,
            commitment=commitment.lower(),
        )
        self.storage.save_bid(bid)
        logger.debug(f"Sealed bid {bid.bid_id} on {launch_id}")
        return bid

    def reveal_bid(self, bid_id: str, price, quantity: int, nonce: str) -> Bid:
        """
        Open a sealed bid and activate it.

        Raises:
            InvalidInput: terms do not reproduce the stored commitment
            InvalidState: bid not sealed, or launch no longer active
        """
        bid = self._bid(bid_id)
        launch = self.storage.get_launch(bid.launch_id)
        if launch is None or launch.status is not LaunchStatus.ACTIVE:
            raise InvalidState(f"launch {bid.launch_id} is closed")
        if not bid.is_sealed or bid.order_status is not OrderStatus.PENDING:
            raise InvalidState(f"bid {bid_id} is not a sealed pending bid")

        valid, err = validate_positive_amount(quantity, "quantity")
        if not valid:
            raise InvalidInput(err)

        if not verify_commitment(bid.commitment, bid.launch_id, price, quantity, bid.bidder, nonce):
            logger.warning(f"Rejected reveal for bid {bid_id}: commitment mismatch")
            raise InvalidInput("revealed terms do not match commitment")

        price_micros = price_to_micros(price)
        if price_micros <= 0:
            raise InvalidInput(f"price must be positive, got {price!r}")

        self.storage.reveal_bid_terms(bid_id, price_micros, quantity)
        logger.info(f"Revealed bid {bid_id}: {quantity} @ {price_micros}")
        return self._bid(bid_id)

    def activate_bid(self, bid_id: str) -> Bid:
        bid = self._bid(bid_id)
        self._open_launch(bid.launch_id)
        if bid.is_sealed:
            raise InvalidState(f"bid {bid_id} is sealed, reveal it instead")
        if not self.storage.set_bid_status(bid_id, OrderStatus.ACTIVE, expected=(OrderStatus.PENDING,)):
            raise InvalidState(f"bid {bid_id} is {bid.order_status.value}, not pending")
        return self._bid(bid_id)

    def cancel_bid(self, bid_id: str, bidder: Optional[str] = None) -> Bid:
        """
        Withdraw a bid before clearing.

        Raises:
            InvalidInput: bidder given and not the bid's owner
            InvalidState: launch already cleared, or bid not pending/active
        """
        bid = self._bid(bid_id)
        if bidder is not None and to_checksum_address(bidder) != bid.bidder:
            raise InvalidInput("only the bidder can cancel a bid")

        launch = self.storage.get_launch(bid.launch_id)
        if launch is None or launch.status is not LaunchStatus.ACTIVE:
            raise InvalidState(f"launch {bid.launch_id} already cleared")

        cancellable = (OrderStatus.PENDING, OrderStatus.ACTIVE)
        if not self.storage.set_bid_status(bid_id, OrderStatus.CANCELLED, expected=cancellable):
            raise InvalidState(f"bid {bid_id} is {bid.order_status.value}")

        logger.info(f"Cancelled bid {bid_id}")
        return self._bid(bid_id)

    def stats(self, launch_id: str) -> Dict[str, Any]:
        return self.storage.bid_stats(launch_id)

    # =========================================================================
    # Intent Bids
    # =========================================================================

    def submit_intent_bid(
        self,
        launch_id: str,
        intent: BidIntent,
        intent_signature: bytes,
        signed_order: SignedSwapOrder,
        bid_token_symbol: Optional[str] = None,
        created_at: Optional[int] = None,
    ) -> str:
        """
        Accept a cross-asset intent bid with its executor order.

        Returns:
            Bid id (keccak256 of the order signature)

        Raises:
            Expired: intent deadline passed
            InvalidInput: any failed acceptance check
            ReplayRejected: salt, nonce or order hash already used
        """
        launch = self._open_launch(launch_id)
        now = int(self._clock())

        if launch.token_address and intent.auction_token != launch.token_address:
            raise InvalidInput("intent is for a different auction token")

        if self.registry is not None:
            token = self.registry.get(intent.bid_token)
            bid_token_symbol = bid_token_symbol or token.symbol

        if not verify_intent_signature(intent, intent_signature, self.cfg.intent_domain):
            logger.warning(f"Rejected intent from {intent.bidder}: bad intent signature")
            raise InvalidInput("invalid intent signature")

        bid_id = check_intent_order(intent, signed_order, self.cfg, now)
        order = signed_order.order
        digest = "0x" + order_hash(order, self.cfg.executor_domain).hex()

        self.storage.save_intent_bid(
            {
                "bid_id": bid_id,
                "launch_id": launch_id,
                "user_wallet": intent.bidder,
                "bid_token": intent.bid_token,
                "bid_token_symbol": bid_token_symbol,
                "bid_amount": intent.bid_amount,
                "auction_token": intent.auction_token,
                "max_auction_tokens": intent.max_auction_tokens,
                "max_effective_price": intent.max_effective_price,
                "deadline": intent.deadline,
                "nonce": intent.nonce,
                "expected_output": order.taking_amount,
                "intent_signature": bytes_to_hex(intent_signature),
                "signed_order": signed_order.model_dump(mode="json", by_alias=True),
                "signature": signed_order.signature,
                "salt": order.salt,
                "status": OrderStatus.ACTIVE.value,
                "created_at": self._now_ms() if created_at is None else created_at,
            },
            {
                "order_hash": digest,
                "maker_address": order.maker,
                "maker_asset": order.maker_asset,
                "taker_asset": order.taker_asset,
                "making_amount": order.making_amount,
                "taking_amount": order.taking_amount,
                "salt": order.salt,
                "expiration": intent.deadline,
                "signature": signed_order.signature,
            },
        )

        logger.info(f"Accepted intent bid {bid_id[:18]}... from {intent.bidder} on {launch_id}")
        return bid_id
