"""
Unit tests for SQLite persistence.

Tests cover:
1. Launch and bid round trips
2. Bid versioning
3. Replay protection through unique constraints
4. Atomic application of clearing results
"""

import pytest

from onelaunch.core.auction import (
    AuctionSettlement,
    Bid,
    BidSnapshot,
    Launch,
    LaunchSnapshot,
    LaunchStatus,
    OrderStatus,
    clear_auction,
)
from onelaunch.core.errors import ClearingInconsistency, InvalidInput, InvalidState, ReplayRejected, StaleRecord
from onelaunch.core.settlement import (
    BatchExecution,
    SettlementEvent,
    SettlementRecord,
    SettlementStatus,
)
from onelaunch.core.storage import StorageManager


BIDDER = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"


@pytest.fixture
def storage(tmp_path):
    manager = StorageManager(tmp_path / "data")
    yield manager
    manager.close()


@pytest.fixture
def launch(storage):
    created = Launch(
        launch_id="L1",
        token_name="Test Token",
        token_symbol="TST",
        total_supply=10**27,
        target_allocation=120,
        end_time=2_000,
        created_at=1_000,
    )
    storage.save_launch(created)
    return created


def add_bid(storage, bid_id, price, quantity, created_at, status=OrderStatus.ACTIVE, launch_id="L1"):
    bid = Bid(
        bid_id=bid_id,
        launch_id=launch_id,
        bidder=BIDDER,
        price=price,
        quantity=quantity,
        created_at=created_at,
        order_status=status,
    )
    storage.save_bid(bid)
    return bid


def settlement_for(result):
    return AuctionSettlement(
        launch_id=result.launch_id,
        clearing_price=result.clearing_price,
        total_filled_quantity=result.filled_quantity,
        total_raised_amount=result.total_raised,
        successful_bids_count=result.successful_bids_count,
        settled_at=2_000,
    )


class TestLaunches:
    """Tests for launch persistence."""

    def test_round_trip(self, storage, launch):
        loaded = storage.get_launch("L1")
        assert loaded == launch
        assert loaded.total_supply == 10**27

    def test_missing(self, storage):
        assert storage.get_launch("nope") is None

    def test_duplicate_id(self, storage, launch):
        with pytest.raises(ReplayRejected) as exc:
            storage.save_launch(launch)
        assert exc.value.key == "launch_id"

    def test_list_by_status(self, storage, launch):
        assert [l.launch_id for l in storage.list_launches(LaunchStatus.ACTIVE)] == ["L1"]
        assert storage.list_launches(LaunchStatus.COMPLETED) == []

    def test_data_survives_reopen(self, tmp_path, launch, storage):
        add_bid(storage, "a", 5_000_000, 100, 1)
        storage.close()

        reopened = StorageManager(tmp_path / "data")
        try:
            assert reopened.get_launch("L1").bids_version == 1
            assert reopened.get_bid("a").quantity == 100
        finally:
            reopened.close()


class TestBids:
    """Tests for bid persistence and versioning."""

    def test_round_trip(self, storage, launch):
        bid = add_bid(storage, "a", 5_000_000, 100, 1)
        assert storage.get_bid("a") == bid

    def test_every_write_bumps_version(self, storage, launch):
        assert storage.get_launch("L1").bids_version == 0
        add_bid(storage, "a", 5_000_000, 100, 1, status=OrderStatus.PENDING)
        assert storage.get_launch("L1").bids_version == 1
        storage.reveal_bid_terms("a", 4_000_000, 90)
        assert storage.get_launch("L1").bids_version == 2
        storage.set_bid_status("a", OrderStatus.CANCELLED)
        assert storage.get_launch("L1").bids_version == 3

    def test_conditional_status_update(self, storage, launch):
        add_bid(storage, "a", 1, 1, 1, status=OrderStatus.CANCELLED)
        assert not storage.set_bid_status("a", OrderStatus.ACTIVE, expected=(OrderStatus.PENDING,))
        assert storage.get_bid("a").order_status is OrderStatus.CANCELLED

    def test_unknown_bid_update(self, storage, launch):
        with pytest.raises(InvalidInput):
            storage.set_bid_status("ghost", OrderStatus.ACTIVE)

    def test_bid_for_unknown_launch(self, storage):
        with pytest.raises(InvalidInput):
            add_bid(storage, "a", 1, 1, 1, launch_id="nope")

    def test_duplicate_bid_id(self, storage, launch):
        add_bid(storage, "a", 1, 1, 1)
        with pytest.raises(ReplayRejected):
            add_bid(storage, "a", 2, 2, 2)

    def test_list_in_time_order(self, storage, launch):
        add_bid(storage, "late", 1, 1, 20)
        add_bid(storage, "early", 1, 1, 10)
        assert [b.bid_id for b in storage.list_bids("L1")] == ["early", "late"]

    def test_stats(self, storage, launch):
        add_bid(storage, "a", 5_000_000, 100, 1)
        add_bid(storage, "b", 2_000_000, 100, 2)
        add_bid(storage, "c", 9_000_000, 100, 3, status=OrderStatus.CANCELLED)

        stats = storage.bid_stats("L1")
        assert stats["total_bids"] == 3
        assert stats["by_status"]["active"] == 2
        assert stats["by_status"]["cancelled"] == 1
        assert stats["total_quantity"] == 200
        assert stats["min_price"] == 2_000_000
        assert stats["max_price"] == 5_000_000
        assert stats["average_price"] == 3_500_000
        assert stats["unique_bidders"] == 1


class TestReplayProtection:
    """Tests for unique salts, order hashes and nonces."""

    def order(self, bid_id, order_hash, salt):
        return {
            "bid_id": bid_id,
            "order_hash": order_hash,
            "maker_address": BIDDER,
            "maker_asset": BIDDER,
            "taker_asset": BIDDER,
            "making_amount": 10**18,
            "taking_amount": 2 * 10**9,
            "salt": salt,
            "signature": "0xsig",
        }

    def intent_bid(self, bid_id, salt, nonce):
        return {
            "bid_id": bid_id,
            "launch_id": "L1",
            "user_wallet": BIDDER,
            "bid_token": BIDDER,
            "bid_amount": 10**18,
            "auction_token": BIDDER,
            "max_auction_tokens": 100,
            "max_effective_price": 5_000_000,
            "deadline": 5_000,
            "nonce": nonce,
            "expected_output": 2 * 10**9,
            "intent_signature": "0xintent",
            "signed_order": {"order": {}, "signature": "0xsig"},
            "signature": "0xsig",
            "salt": salt,
            "created_at": 1,
        }

    def test_limit_order_round_trip_keeps_big_ints(self, storage):
        salt = 2**255 + 1
        storage.save_limit_order(self.order("a", "0xh1", salt))
        loaded = storage.get_limit_order("0xh1")
        assert loaded["salt"] == salt
        assert loaded["making_amount"] == 10**18

    def test_duplicate_salt(self, storage):
        storage.save_limit_order(self.order("a", "0xh1", 7))
        with pytest.raises(ReplayRejected) as exc:
            storage.save_limit_order(self.order("b", "0xh2", 7))
        assert exc.value.key == "salt"

    def test_duplicate_order_hash(self, storage):
        storage.save_limit_order(self.order("a", "0xh1", 7))
        with pytest.raises(ReplayRejected) as exc:
            storage.save_limit_order(self.order("b", "0xh1", 8))
        assert exc.value.key == "order_hash"

    def test_intent_bid_and_order_saved_together(self, storage, launch):
        storage.save_intent_bid(self.intent_bid("i1", 11, 1), self.order("i1", "0xh1", 11))

        rows = storage.list_intent_bids("L1")
        assert len(rows) == 1
        assert rows[0]["status"] == "active"
        assert rows[0]["bid_amount"] == 10**18
        assert rows[0]["signed_order"]["signature"] == "0xsig"
        assert storage.get_limit_order("0xh1")["bid_id"] == "i1"
        assert storage.get_launch("L1").bids_version == 1

    def test_duplicate_intent_nonce(self, storage, launch):
        storage.save_intent_bid(self.intent_bid("i1", 11, 1), self.order("i1", "0xh1", 11))
        with pytest.raises(ReplayRejected) as exc:
            storage.save_intent_bid(self.intent_bid("i2", 12, 1), self.order("i2", "0xh2", 12))
        assert exc.value.key == "nonce"

    def test_failed_intent_insert_writes_nothing(self, storage, launch):
        storage.save_limit_order(self.order("x", "0xh9", 99))
        with pytest.raises(ReplayRejected):
            storage.save_intent_bid(self.intent_bid("i1", 11, 1), self.order("i1", "0xh9", 11))
        assert storage.list_intent_bids("L1") == []
        assert storage.get_launch("L1").bids_version == 0

    def test_intent_bid_keeps_executor_order_hash(self, storage, launch):
        storage.save_intent_bid(self.intent_bid("i1", 11, 1), self.order("i1", "0xh1", 11))
        row = storage.list_intent_bids("L1")[0]
        assert row["external_order_hash"] == "0xh1"
        assert row["failure_reason"] is None

    def test_clearing_records_intent_failure_reasons(self, storage, launch):
        storage.save_intent_bid(self.intent_bid("i1", 11, 1), self.order("i1", "0xh1", 11))
        storage.save_intent_bid(self.intent_bid("i2", 12, 2), self.order("i2", "0xh2", 12))
        storage.save_intent_bid(self.intent_bid("i3", 13, 3), self.order("i3", "0xh3", 13))
        priced = (
            BidSnapshot("i1", BIDDER, 5_000_000, 120, 1),
            BidSnapshot("i2", BIDDER, 1_000_000, 50, 2),
        )
        result = clear_auction(storage.capture_snapshot("L1", bids=priced))

        storage.apply_clearing(
            result, settlement_for(result), unfilled_ids=["i3"], failure_reasons={"i3": "deadline_passed"},
        )

        rows = {r["bid_id"]: r for r in storage.list_intent_bids("L1")}
        assert rows["i1"]["status"] == "filled"
        assert rows["i1"]["failure_reason"] is None
        assert rows["i2"]["status"] == "expired"
        assert rows["i2"]["failure_reason"] == "outbid"
        assert rows["i3"]["status"] == "expired"
        assert rows["i3"]["failure_reason"] == "deadline_passed"


class TestClearingApplication:
    """Tests for snapshot capture and atomic result application."""

    def test_snapshot_reads_active_bids_only(self, storage, launch):
        add_bid(storage, "a", 5_000_000, 100, 1)
        add_bid(storage, "sealed", 0, 0, 2, status=OrderStatus.PENDING)
        add_bid(storage, "gone", 9_000_000, 10, 3, status=OrderStatus.CANCELLED)

        snapshot = storage.capture_snapshot("L1")
        assert [b.bid_id for b in snapshot.bids] == ["a"]
        assert snapshot.version == 3
        assert snapshot.target_allocation == 120

    def test_snapshot_unknown_launch(self, storage):
        with pytest.raises(InvalidInput):
            storage.capture_snapshot("nope")

    def test_apply(self, storage, launch):
        add_bid(storage, "a", 5_000_000, 100, 1)
        add_bid(storage, "b", 5_000_000, 50, 2)
        add_bid(storage, "c", 3_000_000, 200, 3)
        result = clear_auction(storage.capture_snapshot("L1"))

        storage.apply_clearing(result, settlement_for(result))

        cleared = storage.get_launch("L1")
        assert cleared.status is LaunchStatus.COMPLETED
        assert cleared.clearing_price == 5_000_000
        assert cleared.total_raised == 600_000_000
        assert cleared.participants == 1
        assert cleared.is_launched
        assert storage.get_bid("a").order_status is OrderStatus.FILLED
        assert storage.get_bid("b").filled_amount == 20
        assert storage.get_bid("c").order_status is OrderStatus.EXPIRED
        assert storage.get_auction_settlement("L1") == settlement_for(result)

    def test_stale_snapshot_rejected_and_nothing_written(self, storage, launch):
        add_bid(storage, "a", 5_000_000, 100, 1)
        result = clear_auction(storage.capture_snapshot("L1"))
        add_bid(storage, "late", 9_000_000, 100, 2)

        with pytest.raises(ClearingInconsistency) as exc:
            storage.apply_clearing(result, settlement_for(result))

        assert exc.value.expected_version == 1
        assert exc.value.actual_version == 2
        assert storage.get_launch("L1").status is LaunchStatus.ACTIVE
        assert storage.get_bid("a").order_status is OrderStatus.ACTIVE
        assert storage.get_auction_settlement("L1") is None

    def test_second_application_rejected(self, storage, launch):
        add_bid(storage, "a", 5_000_000, 100, 1)
        result = clear_auction(storage.capture_snapshot("L1"))
        storage.apply_clearing(result, settlement_for(result))

        with pytest.raises(ClearingInconsistency):
            storage.apply_clearing(result, settlement_for(result))
        with pytest.raises(InvalidState):
            storage.capture_snapshot("L1")

    def test_empty_result_expires_launch(self, storage, launch):
        result = clear_auction(storage.capture_snapshot("L1"))
        storage.apply_clearing(result, None)

        assert storage.get_launch("L1").status is LaunchStatus.EXPIRED
        assert storage.get_auction_settlement("L1") is None

    def test_unfilled_ids_expired(self, storage, launch):
        add_bid(storage, "a", 5_000_000, 100, 1)
        add_bid(storage, "zero", 5_000_000, 0, 2)
        result = clear_auction(storage.capture_snapshot("L1"))
        storage.apply_clearing(result, settlement_for(result), unfilled_ids=["zero"])
        assert storage.get_bid("zero").order_status is OrderStatus.EXPIRED

    def test_snapshot_with_given_bids(self, storage, launch):
        add_bid(storage, "a", 5_000_000, 100, 1)
        own = (BidSnapshot("x", BIDDER, 1, 1, 1),)
        snapshot = storage.capture_snapshot("L1", bids=own)
        assert snapshot.bids == own
        assert snapshot.version == 1
        assert isinstance(snapshot, LaunchSnapshot)


class TestSettlementPersistence:
    """Tests for settlement records and batches."""

    def record(self):
        return SettlementRecord(
            record_id="a#1",
            bid_id="a",
            launch_id="L1",
            bidder=BIDDER,
            fill_quantity=100,
            expected_output=500_000_000,
            deadline=5_000,
            created_at=1_000,
            updated_at=1_000,
        )

    def test_insert_then_update(self, storage):
        record = self.record()
        storage.insert_settlement_record(record)
        record.apply(SettlementEvent.SUBMIT, "order-1", now=1_001, executor_order_id="order-1")
        storage.update_settlement_record(record, SettlementStatus.PENDING)

        loaded = storage.get_settlement_record("a#1")
        assert loaded.status is SettlementStatus.EXECUTOR_SUBMITTED
        assert loaded.history[0].ref == "order-1"
        assert storage.list_settlement_records("L1") == [loaded]

    def test_second_insert_rejected(self, storage):
        storage.insert_settlement_record(self.record())
        fresh = self.record()
        with pytest.raises(ReplayRejected) as exc:
            storage.insert_settlement_record(fresh)
        assert exc.value.key == "record_id"
        assert storage.get_settlement_record("a#1").status is SettlementStatus.PENDING

    def test_update_from_stale_status_rejected(self, storage):
        record = self.record()
        storage.insert_settlement_record(record)
        record.apply(SettlementEvent.SUBMIT, "order-1", now=1_001, executor_order_id="order-1")
        storage.update_settlement_record(record, SettlementStatus.PENDING)

        stale = self.record()
        stale.apply(SettlementEvent.SUBMIT, "order-2", now=1_002, executor_order_id="order-2")
        with pytest.raises(StaleRecord) as exc:
            storage.update_settlement_record(stale, SettlementStatus.PENDING)

        assert exc.value.actual_status == "executor_submitted"
        assert storage.get_settlement_record("a#1").executor_order_id == "order-1"

    def test_update_of_missing_record_rejected(self, storage):
        with pytest.raises(StaleRecord):
            storage.update_settlement_record(self.record(), SettlementStatus.PENDING)

    def test_missing_record(self, storage):
        assert storage.get_settlement_record("nope#1") is None

    def test_batches(self, storage):
        batch = BatchExecution(
            batch_id="b1", launch_id="L1", clearing_price=5_000_000, total_records=1,
            submitted_count=1, filled_count=1, distributed_count=1, failed_count=0,
            expired_count=0, usdc_collected=500_000_000, completed_at=3_000,
        )
        storage.save_settlement_batch(batch)
        assert storage.list_settlement_batches("L1") == [batch.to_dict()]
        with pytest.raises(ReplayRejected):
            storage.save_settlement_batch(batch)
