from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from onelaunch.core.auction.clearing import BidSnapshot, ClearingResult, LaunchSnapshot
from onelaunch.core.auction.models import AuctionSettlement, Bid, Launch, LaunchStatus, OrderStatus
from onelaunch.core.settlement.batch import BatchExecution
from onelaunch.core.settlement.state import SettlementRecord, SettlementStatus
from onelaunch.core.storage.sqlite_adapter import SQLiteAdapter
from onelaunch.utils.logger import get_logger

logger = get_logger("storage.manager")


class StorageManager:
    """
    Persistent storage for launches, bids and settlements.

    Coordinates data persistence using the SQLite adapter:
    - Launch lifecycle and clearing results
    - Bid book (plain, sealed and intent bids, signed orders)
    - Settlement records and batch aggregates
    """

    def __init__(self, data_dir: Path, db_name: str = "onelaunch.db"):
        self.data_dir = data_dir
        self.db_path = data_dir / db_name
        self.adapter = SQLiteAdapter(self.db_path)

        logger.info(f"StorageManager initialized at {self.db_path}")

    def close(self):
        self.adapter.close()

    # =========================================================================
    # Launches
    # =========================================================================

    def save_launch(self, launch: Launch):
        self.adapter.insert_launch(launch)

    def get_launch(self, launch_id: str) -> Optional[Launch]:
        return self.adapter.get_launch(launch_id)

    def list_launches(self, status: Optional[LaunchStatus] = None) -> List[Launch]:
        return self.adapter.list_launches(status)

    # =========================================================================
    # Bids
    # =========================================================================

    def save_bid(self, bid: Bid):
        self.adapter.insert_bid(bid)

    def get_bid(self, bid_id: str) -> Optional[Bid]:
        return self.adapter.get_bid(bid_id)

    def list_bids(self, launch_id: str, status: Optional[OrderStatus] = None) -> List[Bid]:
        return self.adapter.list_bids(launch_id, status)

    def reveal_bid_terms(self, bid_id: str, price: int, quantity: int):
        self.adapter.update_bid_terms(bid_id, price, quantity, OrderStatus.ACTIVE)

    def set_bid_status(self, bid_id: str, status: OrderStatus, expected: Sequence[OrderStatus] = ()) -> bool:
        return self.adapter.update_bid_status(bid_id, status, expected)

    def bid_stats(self, launch_id: str) -> Dict[str, Any]:
        return self.adapter.bid_stats(launch_id)

    def save_limit_order(self, order: Dict[str, Any]):
        self.adapter.insert_limit_order(order)

    def get_limit_order(self, order_hash: str) -> Optional[Dict[str, Any]]:
        return self.adapter.get_limit_order(order_hash)

    def save_intent_bid(self, bid: Dict[str, Any], order: Dict[str, Any]):
        self.adapter.insert_intent_bid(bid, order)

    def list_intent_bids(self, launch_id: str, status: Optional[OrderStatus] = None) -> List[Dict[str, Any]]:
        return self.adapter.list_intent_bids(launch_id, status)

    # =========================================================================
    # Clearing
    # =========================================================================

    def capture_snapshot(self, launch_id: str, bids: Optional[Sequence[BidSnapshot]] = None) -> LaunchSnapshot:
        return self.adapter.capture_snapshot(launch_id, bids)

    def apply_clearing(
        self,
        result: ClearingResult,
        settlement: Optional[AuctionSettlement],
        unfilled_ids: Sequence[str] = (),
        failure_reasons: Optional[Mapping[str, str]] = None,
    ):
        self.adapter.apply_clearing(result, settlement, unfilled_ids, failure_reasons)

    def get_auction_settlement(self, launch_id: str) -> Optional[AuctionSettlement]:
        return self.adapter.get_auction_settlement(launch_id)

    # =========================================================================
    # Settlement
    # =========================================================================

    def insert_settlement_record(self, record: SettlementRecord):
        self.adapter.insert_settlement_record(record)

    def update_settlement_record(self, record: SettlementRecord, expected_status: SettlementStatus):
        self.adapter.update_settlement_record(record, expected_status)

    def get_settlement_record(self, record_id: str) -> Optional[SettlementRecord]:
        return self.adapter.get_settlement_record(record_id)

    def list_settlement_records(self, launch_id: str) -> List[SettlementRecord]:
        return self.adapter.list_settlement_records(launch_id)

    def save_settlement_batch(self, batch: BatchExecution):
        self.adapter.save_settlement_batch(batch)

    def list_settlement_batches(self, launch_id: str) -> List[Dict[str, Any]]:
        return self.adapter.list_settlement_batches(launch_id)
