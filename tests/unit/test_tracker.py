"""
Unit tests for the settlement tracker.

The tracker is async; tests drive it with asyncio.run against the
in-memory executor and distributor.
"""

import asyncio
from dataclasses import replace

import pytest

from onelaunch.core.auction import BidSnapshot, LaunchSnapshot, clear_auction
from onelaunch.core.config import LaunchConfig
from onelaunch.core.errors import InvalidInput, InvalidState, ReplayRejected, StaleRecord
from onelaunch.core.settlement import (
    ExecutorError,
    ExecutorStatus,
    FailureReason,
    MockDistributor,
    MockExecutor,
    SettlementRecord,
    SettlementStatus,
    SettlementTracker,
)
from onelaunch.crypto import generate_keypair


NOW = 1_700_000_000


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


class MemoryStore:
    def __init__(self):
        self.records = {}
        self.batches = []

    def insert_settlement_record(self, record):
        if record.record_id in self.records:
            raise ReplayRejected("record_id", record.record_id)
        self.records[record.record_id] = record.to_dict()

    def update_settlement_record(self, record, expected_status):
        stored = self.records.get(record.record_id)
        if stored is None or stored["status"] != expected_status.value:
            raise StaleRecord(record.record_id, expected_status.value, stored and stored["status"])
        self.records[record.record_id] = record.to_dict()

    def get_settlement_record(self, record_id):
        data = self.records.get(record_id)
        return SettlementRecord.from_dict(data) if data else None

    def list_settlement_records(self, launch_id):
        return [
            SettlementRecord.from_dict(data)
            for _, data in sorted(self.records.items())
            if data["launch_id"] == launch_id
        ]

    def save_settlement_batch(self, batch):
        if any(b.batch_id == batch.batch_id for b in self.batches):
            raise ReplayRejected("batch_id", batch.batch_id)
        self.batches.append(batch)


class BrokenExecutor(MockExecutor):
    """Raises an unexpected error when submitting for one maker."""

    def __init__(self, broken_maker, **kwargs):
        super().__init__(**kwargs)
        self.broken_maker = broken_maker

    async def submit_order(self, signed_order):
        if signed_order["bidder"] == self.broken_maker:
            raise RuntimeError("connection reset by peer")
        return await super().submit_order(signed_order)


@pytest.fixture
def cfg():
    return replace(LaunchConfig(), executor_poll_interval=0.0, executor_max_polls=5)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bidders():
    return [generate_keypair().address for _ in range(3)]


@pytest.fixture
def result(bidders):
    bids = [
        BidSnapshot("a", bidders[0], 5_000_000, 100, 1),
        BidSnapshot("b", bidders[1], 5_000_000, 50, 2),
        BidSnapshot("c", bidders[2], 3_000_000, 200, 3),
    ]
    return clear_auction(LaunchSnapshot("L1", 120, 0, bids))


def make_tracker(cfg, clock, executor=None, distributor=None, store=None):
    return SettlementTracker(
        executor or MockExecutor(),
        distributor or MockDistributor(),
        cfg,
        store=store,
        clock=clock,
    )


class TestOpenRecords:
    """Tests for opening records from a clearing result."""

    def test_one_record_per_fill(self, cfg, clock, result):
        tracker = make_tracker(cfg, clock)
        records = tracker.open_records(result, deadline=NOW + 3600)

        assert [r.record_id for r in records] == ["a#1", "b#1"]
        assert [r.fill_quantity for r in records] == [100, 20]
        assert records[0].expected_output == 5_000_000 * 100
        assert all(r.status is SettlementStatus.PENDING for r in records)

    def test_explicit_expected_outputs(self, cfg, clock, result):
        tracker = make_tracker(cfg, clock)
        records = tracker.open_records(result, NOW + 3600, expected_outputs={"a": 7})
        assert records[0].expected_output == 7
        assert records[1].expected_output == 5_000_000 * 20

    def test_empty_result(self, cfg, clock):
        tracker = make_tracker(cfg, clock)
        empty = clear_auction(LaunchSnapshot("L1", 10, 0, []))
        assert tracker.open_records(empty, NOW + 3600) == []

    def test_duplicate_record_rejected(self, cfg, clock, result):
        tracker = make_tracker(cfg, clock)
        tracker.open_records(result, NOW + 3600)
        with pytest.raises(ReplayRejected):
            tracker.open_records(result, NOW + 3600)

    def test_unknown_record(self, cfg, clock):
        with pytest.raises(InvalidInput):
            make_tracker(cfg, clock).get("nope#1")


class TestAdvance:
    """Tests for driving records to terminal states."""

    def test_happy_path(self, cfg, clock, result, bidders):
        store = MemoryStore()
        distributor = MockDistributor()
        tracker = make_tracker(cfg, clock, MockExecutor(slippage_bps=100), distributor, store)
        tracker.open_records(result, NOW + 3600)

        record = asyncio.run(tracker.advance("a#1"))

        assert record.status is SettlementStatus.ASSETS_DISTRIBUTED
        assert record.actual_output == 500_000_000 * 99 // 100
        assert record.effective_price == record.actual_output // 100
        assert record.distributed_amount == 100
        assert distributor.transfers[0][:2] == (bidders[0], 100)
        assert store.records["a#1"]["status"] == "assets_distributed"

    def test_fill_after_several_polls(self, cfg, clock, result):
        executor = MockExecutor(fill_after_polls=3)
        tracker = make_tracker(cfg, clock, executor)
        tracker.open_records(result, NOW + 3600)

        record = asyncio.run(tracker.advance("b#1"))
        assert record.status is SettlementStatus.ASSETS_DISTRIBUTED
        assert executor.polls[record.executor_order_id] == 3

    def test_executor_rejection(self, cfg, clock, result, bidders):
        tracker = make_tracker(cfg, clock, MockExecutor(reject_makers={bidders[0]}))
        tracker.open_records(result, NOW + 3600)

        record = asyncio.run(tracker.advance("a#1"))
        assert record.status is SettlementStatus.FAILED
        assert record.failure_reason is FailureReason.EXECUTOR_REJECTED

    def test_submission_error(self, cfg, clock, result):
        tracker = make_tracker(cfg, clock, MockExecutor(fail_submissions=True))
        tracker.open_records(result, NOW + 3600)

        record = asyncio.run(tracker.advance("a#1"))
        assert record.status is SettlementStatus.FAILED
        assert record.failure_reason is FailureReason.EXECUTOR_ERROR
        assert record.executor_order_id is None

    def test_poll_timeout(self, cfg, clock, result):
        executor = MockExecutor(never_fill=True)
        tracker = make_tracker(cfg, clock, executor)
        tracker.open_records(result, NOW + 3600)

        record = asyncio.run(tracker.advance("a#1"))
        assert record.status is SettlementStatus.FAILED
        assert record.failure_reason is FailureReason.EXECUTOR_TIMEOUT
        assert executor.polls[record.executor_order_id] == cfg.executor_max_polls

    def test_distribution_failure_after_fill(self, cfg, clock, result, bidders):
        tracker = make_tracker(cfg, clock, distributor=MockDistributor(fail_for={bidders[1]}))
        tracker.open_records(result, NOW + 3600)

        record = asyncio.run(tracker.advance("b#1"))
        assert record.status is SettlementStatus.FAILED
        assert record.failure_reason is FailureReason.DISTRIBUTION_FAILED
        assert record.actual_output is not None

    def test_advance_terminal_record_is_noop(self, cfg, clock, result):
        executor = MockExecutor()
        tracker = make_tracker(cfg, clock, executor)
        tracker.open_records(result, NOW + 3600)

        asyncio.run(tracker.advance("a#1"))
        asyncio.run(tracker.advance("a#1"))
        assert len(executor.submissions) == 1


class TestDeadlines:
    """Tests for expiry."""

    def test_expired_before_submit(self, cfg, clock, result):
        executor = MockExecutor()
        tracker = make_tracker(cfg, clock, executor)
        tracker.open_records(result, NOW + 10)
        clock.now = NOW + 10

        record = asyncio.run(tracker.advance("a#1"))
        assert record.status is SettlementStatus.EXPIRED
        assert executor.submissions == []

    def test_expire_overdue(self, cfg, clock, result):
        tracker = make_tracker(cfg, clock)
        tracker.open_records(result, NOW + 10)

        assert asyncio.run(tracker.expire_overdue(now=NOW + 9)) == []
        expired = asyncio.run(tracker.expire_overdue(now=NOW + 10))
        assert {r.record_id for r in expired} == {"a#1", "b#1"}
        assert all(r.status is SettlementStatus.EXPIRED for r in expired)

    def test_filled_record_expires_before_distribution(self, cfg, clock, result):
        distributor = MockDistributor()
        tracker = make_tracker(cfg, clock, distributor=distributor)
        tracker.open_records(result, NOW + 10)

        async def scenario():
            await tracker.submit("a#1")
            await tracker.poll("a#1")
            clock.now = NOW + 10
            return await tracker.distribute("a#1")

        record = asyncio.run(scenario())
        assert record.status is SettlementStatus.EXPIRED
        assert record.actual_output is not None
        assert distributor.transfers == []


class TestIdempotency:
    """Tests for replayed confirmations."""

    def test_replayed_fill_confirmation(self, cfg, clock, result):
        executor = MockExecutor(never_fill=True)
        tracker = make_tracker(cfg, clock, executor)
        tracker.open_records(result, NOW + 3600)

        async def scenario():
            await tracker.submit("a#1")
            first = await tracker.confirm_fill("a#1", 499_000_000, "0xfill")
            second = await tracker.confirm_fill("a#1", 1, "0xfill")
            return first, second

        first, second = asyncio.run(scenario())
        record = tracker.get("a#1")
        assert first is True
        assert second is False
        assert record.actual_output == 499_000_000
        assert record.status is SettlementStatus.EXECUTOR_FILLED

    def test_concurrent_confirmations_apply_once(self, cfg, clock, result):
        tracker = make_tracker(cfg, clock, MockExecutor(never_fill=True))
        tracker.open_records(result, NOW + 3600)

        async def scenario():
            await tracker.submit("a#1")
            return await asyncio.gather(*(
                tracker.confirm_fill("a#1", 10, "0xsame") for _ in range(10)
            ))

        outcomes = asyncio.run(scenario())
        assert outcomes.count(True) == 1
        assert len(tracker.get("a#1").history) == 2


class TestRetry:
    """Tests for retrying failed records."""

    def test_retry_failed_record(self, cfg, clock, result, bidders):
        tracker = make_tracker(cfg, clock, MockExecutor(fail_submissions=True))
        tracker.open_records(result, NOW + 3600)
        asyncio.run(tracker.advance("a#1"))

        tracker.executor = MockExecutor()
        retry = tracker.retry("a#1")
        assert retry.record_id == "a#2"

        record = asyncio.run(tracker.advance("a#2"))
        assert record.status is SettlementStatus.ASSETS_DISTRIBUTED
        assert tracker.get("a#1").status is SettlementStatus.FAILED

    def test_retry_twice_rejected(self, cfg, clock, result):
        tracker = make_tracker(cfg, clock, MockExecutor(fail_submissions=True))
        tracker.open_records(result, NOW + 3600)
        asyncio.run(tracker.advance("a#1"))

        tracker.retry("a#1")
        with pytest.raises(InvalidState):
            tracker.retry("a#1")

    def test_retry_non_failed_rejected(self, cfg, clock, result):
        tracker = make_tracker(cfg, clock)
        tracker.open_records(result, NOW + 3600)
        with pytest.raises(InvalidState):
            tracker.retry("a#1")


class TestBatch:
    """Tests for run_batch."""

    def test_batch_summary(self, cfg, clock, result, bidders):
        store = MemoryStore()
        tracker = make_tracker(cfg, clock, MockExecutor(reject_makers={bidders[1]}), store=store)
        tracker.open_records(result, NOW + 3600)

        batch = asyncio.run(tracker.run_batch("L1", result.clearing_price, batch_id="batch-1"))

        assert batch.batch_id == "batch-1"
        assert batch.total_records == 2
        assert batch.submitted_count == 2
        assert batch.filled_count == 1
        assert batch.distributed_count == 1
        assert batch.failed_count == 1
        assert batch.usdc_collected == 500_000_000
        assert not batch.all_distributed
        assert store.batches == [batch]

    def test_unexpected_error_still_writes_batch(self, cfg, clock, result, bidders):
        store = MemoryStore()
        tracker = make_tracker(cfg, clock, BrokenExecutor(bidders[1]), store=store)
        tracker.open_records(result, NOW + 3600)

        batch = asyncio.run(tracker.run_batch("L1", result.clearing_price))

        assert batch.distributed_count == 1
        assert len(batch.errors) == 1
        assert batch.errors[0].startswith("b#1: RuntimeError")
        assert store.batches == [batch]
        assert tracker.get("b#1").status is SettlementStatus.PENDING

    def test_batches_in_the_same_second_get_distinct_ids(self, cfg, clock, result, bidders):
        store = MemoryStore()
        tracker = make_tracker(cfg, clock, MockExecutor(reject_makers={bidders[1]}), store=store)
        tracker.open_records(result, NOW + 3600)
        first = asyncio.run(tracker.run_batch("L1", result.clearing_price))

        tracker.executor = MockExecutor()
        tracker.retry("b#1")
        second = asyncio.run(tracker.run_batch("L1", result.clearing_price))

        assert first.completed_at == second.completed_at
        assert first.batch_id != second.batch_id
        assert first.batch_id.startswith("L1:")
        assert [b.batch_id for b in store.batches] == [first.batch_id, second.batch_id]

    def test_many_records_with_small_semaphore(self, clock):
        cfg = replace(
            LaunchConfig(), executor_poll_interval=0.0, max_concurrent_settlements=2,
        )
        bids = [BidSnapshot(f"b{i}", generate_keypair().address, 1_000_000, 1, i) for i in range(12)]
        big = clear_auction(LaunchSnapshot("L2", 12, 0, bids))
        tracker = make_tracker(cfg, clock, MockExecutor(latency=0.001, fill_after_polls=2))
        tracker.open_records(big, NOW + 3600)

        batch = asyncio.run(tracker.run_batch("L2", big.clearing_price))
        assert batch.all_distributed
        assert batch.usdc_collected == 12 * 1_000_000

    def test_tracker_survives_new_event_loop(self, cfg, clock, result):
        tracker = make_tracker(cfg, clock)
        tracker.open_records(result, NOW + 3600)
        asyncio.run(tracker.advance("a#1"))
        record = asyncio.run(tracker.advance("b#1"))
        assert record.status is SettlementStatus.ASSETS_DISTRIBUTED


class TestMockExecutor:
    """Tests for the in-memory executor itself."""

    def test_unknown_order(self):
        with pytest.raises(ExecutorError):
            asyncio.run(MockExecutor().poll_status("0xnope"))

    def test_status_constructors(self):
        assert ExecutorStatus.filled(5, "r").actual_amount == 5
        assert ExecutorStatus.rejected("x").reason == "x"
        assert ExecutorStatus.unfilled().actual_amount is None

    def test_record_payload_reaches_executor(self, cfg, clock, result):
        executor = MockExecutor()
        tracker = make_tracker(cfg, clock, executor)
        tracker.open_records(result, NOW + 3600, order_payloads={"a": {"signature": "0xsig"}})

        record = asyncio.run(tracker.advance("a#1"))
        sent = executor.orders[record.executor_order_id]
        assert sent["signature"] == "0xsig"
        assert sent["bid_id"] == "a"
        assert isinstance(record, SettlementRecord)


class TestRestart:
    """Tests for resuming settlement from the store in a new tracker."""

    def test_reopening_settled_result_rejected(self, cfg, clock, result):
        store = MemoryStore()
        first = make_tracker(cfg, clock, store=store)
        first.open_records(result, NOW + 3600)
        asyncio.run(first.run_batch("L1", result.clearing_price))

        second = make_tracker(cfg, clock, store=store)
        with pytest.raises(ReplayRejected):
            second.open_records(result, NOW + 3600)
        assert store.records["a#1"]["status"] == "assets_distributed"

    def test_load_resumes_without_paying_twice(self, cfg, clock, result, bidders):
        store = MemoryStore()
        distributor = MockDistributor()
        first = make_tracker(cfg, clock, distributor=distributor, store=store)
        first.open_records(result, NOW + 3600)
        asyncio.run(first.advance("a#1"))

        second = make_tracker(cfg, clock, distributor=distributor, store=store)
        pending = second.load("L1")
        assert [r.record_id for r in pending] == ["b#1"]
        assert second.get("a#1").status is SettlementStatus.ASSETS_DISTRIBUTED

        batch = asyncio.run(second.run_batch("L1", result.clearing_price))
        assert batch.total_records == 1
        assert [t[:2] for t in distributor.transfers] == [(bidders[0], 100), (bidders[1], 20)]

    def test_concurrent_writer_loses(self, cfg, clock, result):
        store = MemoryStore()
        first = make_tracker(cfg, clock, store=store)
        first.open_records(result, NOW + 3600)

        second = make_tracker(cfg, clock, store=store)
        second.load("L1")
        asyncio.run(second.advance("a#1"))

        with pytest.raises(StaleRecord):
            asyncio.run(first.submit("a#1"))
        assert first.get("a#1").status is SettlementStatus.ASSETS_DISTRIBUTED
        assert store.records["a#1"]["status"] == "assets_distributed"

    def test_load_needs_a_store(self, cfg, clock):
        with pytest.raises(InvalidState):
            make_tracker(cfg, clock).load("L1")
