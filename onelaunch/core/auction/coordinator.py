"""
Clearing Coordinator - Runs the clearing engine against the store.

    capture snapshot (version v) -> clear_auction -> apply if still v

At most one clearing per launch runs in this process at a time. Other
processes are fenced by the version check inside the apply transaction:
if any bid of the launch changed since capture, the apply raises
ClearingInconsistency, writes nothing, and the whole attempt is redone
on a fresh snapshot.
"""

import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from onelaunch.core.auction.clearing import ClearingResult, LaunchSnapshot, clear_auction
from onelaunch.core.auction.models import AuctionSettlement
from onelaunch.core.auction.pricing import PriceOracle, PricedIntent, TokenRegistry, price_intents
from onelaunch.core.config import LaunchConfig, config as default_config
from onelaunch.core.errors import ClearingInconsistency, InvalidInput, InvalidState
from onelaunch.core.intent.intent import BidIntent
from onelaunch.core.storage import StorageManager
from onelaunch.utils.logger import get_logger

logger = get_logger("coordinator")

# failure_reason values written on intent bids expired by clearing
EXPIRED_DEADLINE = "deadline_passed"
EXPIRED_UNKNOWN_TOKEN = "unknown_bid_token"
EXPIRED_ABOVE_CEILING = "above_max_effective_price"


@dataclass(frozen=True)
class IntentClearing:
    """Clearing result for an intent launch plus the valuations behind it."""
    result: ClearingResult
    priced: Dict[str, PricedIntent] = field(default_factory=dict)
    excluded_ids: List[str] = field(default_factory=list)
    failure_reasons: Dict[str, str] = field(default_factory=dict)

    def expected_outputs(self) -> Dict[str, int]:
        """
        Settlement-asset amount each winner's order should yield, scaled
        down for partial fills.
        """
        outputs = {}
        for fill in self.result.fills:
            priced = self.priced[fill.bid_id]
            outputs[fill.bid_id] = priced.expected_output * fill.filled // fill.requested
        return outputs


class ClearingCoordinator:
    """
    Serializes clearing per launch and applies results atomically.

    Args:
        storage: Launch and bid store
        cfg: Configuration (clearing_max_retries)
        clock: Wall clock returning unix seconds
    """

    def __init__(
        self,
        storage: StorageManager,
        cfg: Optional[LaunchConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.storage = storage
        self.cfg = cfg or default_config
        self._clock = clock or time.time
        self._guard = threading.Lock()
        self._launch_locks: Dict[str, threading.Lock] = {}

    def _launch_lock(self, launch_id: str) -> threading.Lock:
        with self._guard:
            if launch_id not in self._launch_locks:
                self._launch_locks[launch_id] = threading.Lock()
            return self._launch_locks[launch_id]

    def _check_clearable(self, launch_id: str, now: int):
        launch = self.storage.get_launch(launch_id)
        if launch is None:
            raise InvalidInput(f"unknown launch {launch_id}")
        if launch.status.is_terminal:
            raise InvalidState(f"launch {launch_id} is already {launch.status.value}")
        if now < launch.end_time:
            raise InvalidState(f"auction for {launch_id} is still open until {launch.end_time}")

    def _apply(
        self,
        result: ClearingResult,
        now: int,
        settlement_tx_ref: Optional[str],
        unfilled_ids=(),
        failure_reasons: Optional[Dict[str, str]] = None,
    ):
        settlement = None
        if not result.is_empty:
            settlement = AuctionSettlement(
                launch_id=result.launch_id,
                clearing_price=result.clearing_price,
                total_filled_quantity=result.filled_quantity,
                total_raised_amount=result.total_raised,
                successful_bids_count=result.successful_bids_count,
                settlement_tx_ref=settlement_tx_ref,
                settled_at=now,
            )
        self.storage.apply_clearing(result, settlement, unfilled_ids, failure_reasons)

    def _log_result(self, result: ClearingResult):
        if result.is_empty:
            logger.info(f"Launch {result.launch_id} closed with no fills, marked expired")
        else:
            logger.info(
                f"Launch {result.launch_id} cleared at {result.clearing_price}: "
                f"{result.filled_quantity}/{result.target_allocation} filled across "
                f"{result.successful_bids_count} bids, raised {result.total_raised}"
            )

    def clear_launch(
        self,
        launch_id: str,
        now: Optional[int] = None,
        settlement_tx_ref: Optional[str] = None,
    ) -> ClearingResult:
        """
        Clear a launch whose auction has ended.

        Raises:
            InvalidState: launch not active, or auction still open
            ClearingInconsistency: bids kept changing for every retry
        """
        now = int(self._clock()) if now is None else now

        with self._launch_lock(launch_id):
            last_error = None
            for attempt in range(1, max(1, self.cfg.clearing_max_retries) + 1):
                self._check_clearable(launch_id, now)
                snapshot = self.storage.capture_snapshot(launch_id)
                result = clear_auction(snapshot)
                zero_quantity = [b.bid_id for b in snapshot.bids if b.quantity == 0]
                try:
                    self._apply(result, now, settlement_tx_ref, zero_quantity)
                except ClearingInconsistency as e:
                    logger.warning(f"Clearing attempt {attempt} for {launch_id} aborted: {e}")
                    last_error = e
                    continue

                self._log_result(result)
                return result

            raise last_error

    def clear_intent_launch(
        self,
        launch_id: str,
        registry: TokenRegistry,
        oracle: PriceOracle,
        now: Optional[int] = None,
        settlement_tx_ref: Optional[str] = None,
    ) -> IntentClearing:
        """
        Clear a launch funded by cross-asset intents.

        Each live intent is valued at current oracle prices. Intents past
        their deadline, in a bid token the registry does not know, or
        above their price ceiling are expired with a failure_reason; the
        rest are cleared with quantity = max_auction_tokens.

        Raises:
            InvalidState: launch not active, or auction still open
            InvalidInput: the oracle has no price for a registered token
            ClearingInconsistency: bids kept changing for every retry
        """
        now = int(self._clock()) if now is None else now

        with self._launch_lock(launch_id):
            last_error = None
            for attempt in range(1, max(1, self.cfg.clearing_max_retries) + 1):
                self._check_clearable(launch_id, now)
                # Version first: a bid written after this read bumps it
                fence = self.storage.capture_snapshot(launch_id, bids=())

                live, reasons = [], {}
                for row in self.storage.list_intent_bids(launch_id):
                    if row["status"] != "active":
                        continue
                    if row["deadline"] <= now:
                        reasons[row["bid_id"]] = EXPIRED_DEADLINE
                        continue
                    if row["bid_token"] not in registry:
                        reasons[row["bid_id"]] = EXPIRED_UNKNOWN_TOKEN
                        continue
                    intent = BidIntent(
                        bidder=row["user_wallet"],
                        bid_token=row["bid_token"],
                        bid_amount=row["bid_amount"],
                        auction_token=row["auction_token"],
                        max_auction_tokens=row["max_auction_tokens"],
                        max_effective_price=row["max_effective_price"],
                        deadline=row["deadline"],
                        nonce=row["nonce"],
                    )
                    live.append((row["bid_id"], intent, row["created_at"]))

                snapshots, accepted, excluded = price_intents(live, registry, oracle)
                for priced in excluded:
                    reasons[priced.bid_id] = EXPIRED_ABOVE_CEILING
                snapshot = LaunchSnapshot(
                    launch_id=launch_id,
                    target_allocation=fence.target_allocation,
                    version=fence.version,
                    bids=tuple(snapshots),
                )
                result = clear_auction(snapshot)
                excluded_ids = list(reasons)

                try:
                    self._apply(result, now, settlement_tx_ref, excluded_ids, reasons)
                except ClearingInconsistency as e:
                    logger.warning(f"Intent clearing attempt {attempt} for {launch_id} aborted: {e}")
                    last_error = e
                    continue

                for reason, count in sorted(Counter(reasons.values()).items()):
                    logger.warning(f"{count} intents on {launch_id} expired: {reason}")
                self._log_result(result)
                return IntentClearing(
                    result=result,
                    priced={p.bid_id: p for p in accepted},
                    excluded_ids=excluded_ids,
                    failure_reasons=reasons,
                )

            raise last_error
