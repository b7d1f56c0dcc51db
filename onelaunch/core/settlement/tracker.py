"""
Settlement Tracker - Drives winning bids through external execution.

For every fill produced by clearing, the tracker opens a SettlementRecord
and advances it:

1. submit     forward the signed order to the executor
2. poll       observe the executor until it fills, rejects or times out
3. distribute transfer the auction tokens to the bidder

Records are independent. Transitions on one record are serialized by a
per-record asyncio.Lock; executor and distributor calls across records
share a semaphore of max_concurrent_settlements slots. Waiting on one
record never blocks another.

With a store, a record is inserted once and every transition is written
as a compare-and-set on its previous status. Another tracker resumes a
launch with load(), never by reopening the clearing result.
"""

import asyncio
import time
import uuid
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from onelaunch.core.auction.clearing import ClearingResult
from onelaunch.core.config import LaunchConfig, config as default_config
from onelaunch.core.errors import InvalidInput, InvalidState, ReplayRejected, StaleRecord
from onelaunch.core.settlement.batch import BatchExecution, summarize_batch
from onelaunch.core.settlement.executor import (
    DistributionError,
    Distributor,
    Executor,
    ExecutorError,
    ExecutorState,
)
from onelaunch.core.settlement.state import (
    FailureReason,
    SettlementEvent,
    SettlementRecord,
    SettlementStatus,
)
from onelaunch.utils.logger import get_logger

logger = get_logger("settlement")


class SettlementStore(Protocol):
    def insert_settlement_record(self, record: SettlementRecord) -> None:
        ...

    def update_settlement_record(self, record: SettlementRecord, expected_status: SettlementStatus) -> None:
        ...

    def get_settlement_record(self, record_id: str) -> Optional[SettlementRecord]:
        ...

    def list_settlement_records(self, launch_id: str) -> List[SettlementRecord]:
        ...

    def save_settlement_batch(self, batch: BatchExecution) -> None:
        ...


class SettlementTracker:
    """
    Owns the settlement records of one process.

    Args:
        executor: Swap executor adapter
        distributor: Auction token distributor adapter
        cfg: Configuration (poll interval, poll limit, concurrency)
        store: Optional persistence, written on every transition
        clock: Wall clock returning unix seconds
    """

    def __init__(
        self,
        executor: Executor,
        distributor: Distributor,
        cfg: Optional[LaunchConfig] = None,
        store: Optional[SettlementStore] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.cfg = cfg or default_config
        self.executor = executor
        self.distributor = distributor
        self.store = store
        self._clock = clock or time.time

        self._records: Dict[str, SettlementRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # =========================================================================
    # Records
    # =========================================================================

    def now(self) -> int:
        return int(self._clock())

    def add_record(self, record: SettlementRecord) -> SettlementRecord:
        if record.record_id in self._records:
            raise ReplayRejected("record_id", record.record_id)
        if self.store is not None:
            self.store.insert_settlement_record(record)
        self._records[record.record_id] = record
        logger.debug(f"Opened settlement {record.record_id} for {record.fill_quantity} tokens")
        return record

    def open_records(
        self,
        result: ClearingResult,
        deadline: int,
        expected_outputs: Optional[Dict[str, int]] = None,
        order_payloads: Optional[Dict[str, dict]] = None,
    ) -> List[SettlementRecord]:
        """
        Open one pending record per fill of a clearing result.

        expected_outputs defaults to clearing_price * filled, the amount
        owed at the uniform price.
        """
        if result.is_empty:
            return []

        expected_outputs = expected_outputs or {}
        order_payloads = order_payloads or {}
        now = self.now()
        records = []

        for fill in result.fills:
            record = SettlementRecord(
                record_id=SettlementRecord.make_id(fill.bid_id, 1),
                bid_id=fill.bid_id,
                launch_id=result.launch_id,
                bidder=fill.bidder,
                fill_quantity=fill.filled,
                expected_output=expected_outputs.get(fill.bid_id, result.clearing_price * fill.filled),
                deadline=deadline,
                order_payload=order_payloads.get(fill.bid_id),
                created_at=now,
                updated_at=now,
            )
            records.append(self.add_record(record))

        logger.info(f"Opened {len(records)} settlement records for launch {result.launch_id}")
        return records

    def get(self, record_id: str) -> SettlementRecord:
        try:
            return self._records[record_id]
        except KeyError:
            raise InvalidInput(f"unknown settlement record {record_id}")

    def records_for(self, launch_id: str) -> List[SettlementRecord]:
        return [r for r in self._records.values() if r.launch_id == launch_id]

    def load(self, launch_id: str) -> List[SettlementRecord]:
        """
        Rehydrate a launch's records from the store after a restart.

        Records already held in memory are kept. Returns the non-terminal
        records, which run_batch or expire_overdue can then resume.
        """
        if self.store is None:
            raise InvalidState("no store to load settlement records from")
        for record in self.store.list_settlement_records(launch_id):
            self._records.setdefault(record.record_id, record)
        pending = [r for r in self.records_for(launch_id) if not r.is_terminal]
        logger.info(f"Loaded settlement records for launch {launch_id}, {len(pending)} unresolved")
        return pending

    # =========================================================================
    # Internals
    # =========================================================================

    def _bind_loop(self) -> None:
        # Locks and the semaphore belong to the loop that created them
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            self._loop = loop
            self._locks = {}
            self._semaphore = asyncio.Semaphore(self.cfg.max_concurrent_settlements)

    def _lock(self, record_id: str) -> asyncio.Lock:
        self._bind_loop()
        if record_id not in self._locks:
            self._locks[record_id] = asyncio.Lock()
        return self._locks[record_id]

    def _slots(self) -> asyncio.Semaphore:
        self._bind_loop()
        return self._semaphore

    def _persist(self, record: SettlementRecord, previous: SettlementStatus) -> None:
        if self.store is None:
            return
        try:
            self.store.update_settlement_record(record, previous)
        except StaleRecord as e:
            stored = self.store.get_settlement_record(record.record_id)
            if stored is not None:
                self._records[record.record_id] = stored
            logger.error(f"Settlement {record.record_id} lost a concurrent update: {e}")
            raise

    def _apply(self, record: SettlementRecord, event: SettlementEvent, ref: str, **changes) -> bool:
        previous = record.status
        changed = record.apply(event, ref, now=self.now(), **changes)
        if changed:
            self._persist(record, previous)
            logger.debug(f"{record.record_id}: {event.value} -> {record.status.value}")
        else:
            logger.debug(f"{record.record_id}: {event.value} {ref[:18]} already applied")
        return changed

    def _fail(self, record: SettlementRecord, reason: FailureReason, detail: str) -> None:
        self._apply(
            record,
            SettlementEvent.FAIL,
            reason.value,
            failure_reason=reason,
            failure_detail=detail,
        )
        logger.error(f"Settlement {record.record_id} failed ({reason.value}): {detail}")

    def _expire_if_overdue(self, record: SettlementRecord) -> bool:
        if not record.is_overdue(self.now()):
            return False
        self._apply(record, SettlementEvent.EXPIRE, f"deadline:{record.deadline}")
        logger.warning(f"Settlement {record.record_id} expired in {record.status.value}")
        return True

    def _confirm_fill(self, record: SettlementRecord, actual_output: int, fill_ref: str) -> bool:
        if actual_output < 0:
            raise InvalidInput(f"actual_output must be non-negative, got {actual_output}")
        return self._apply(
            record,
            SettlementEvent.FILL,
            fill_ref,
            actual_output=actual_output,
            fill_ref=fill_ref,
            effective_price=actual_output // record.fill_quantity,
        )

    def _order_payload(self, record: SettlementRecord) -> dict:
        payload = dict(record.order_payload or {})
        payload.update({
            "bid_id": record.bid_id,
            "bidder": record.bidder,
            "expected_output": record.expected_output,
        })
        return payload

    # =========================================================================
    # Transitions
    # =========================================================================

    async def submit(self, record_id: str) -> SettlementRecord:
        """Forward a pending record's order to the executor."""
        record = self.get(record_id)
        async with self._lock(record_id):
            if record.status is not SettlementStatus.PENDING:
                return record
            if self._expire_if_overdue(record):
                return record

            try:
                async with self._slots():
                    order_id = await self.executor.submit_order(self._order_payload(record))
            except ExecutorError as e:
                self._fail(record, FailureReason.EXECUTOR_ERROR, str(e))
                return record

            self._apply(
                record,
                SettlementEvent.SUBMIT,
                order_id,
                executor_order_id=order_id,
                submission_ref=order_id,
            )
        return record

    async def confirm_fill(self, record_id: str, actual_output: int, fill_ref: str) -> bool:
        """
        Apply an executor fill confirmation.

        Safe to replay: the same fill_ref twice changes nothing and
        returns False.
        """
        record = self.get(record_id)
        async with self._lock(record_id):
            return self._confirm_fill(record, actual_output, fill_ref)

    async def poll(self, record_id: str) -> SettlementRecord:
        """
        Poll the executor until the order resolves.

        Gives up after executor_max_polls with reason executor_timeout,
        unless the deadline passes first (the record then expires).
        """
        record = self.get(record_id)

        for _ in range(self.cfg.executor_max_polls):
            async with self._lock(record_id):
                if record.status is not SettlementStatus.EXECUTOR_SUBMITTED:
                    return record
                if self._expire_if_overdue(record):
                    return record

                try:
                    async with self._slots():
                        status = await self.executor.poll_status(record.executor_order_id)
                except ExecutorError as e:
                    self._fail(record, FailureReason.EXECUTOR_ERROR, str(e))
                    return record

                if status.state is ExecutorState.FILLED:
                    self._confirm_fill(record, status.actual_amount, status.fill_ref)
                    return record
                if status.state is ExecutorState.REJECTED:
                    self._fail(record, FailureReason.EXECUTOR_REJECTED, status.reason or "rejected")
                    return record

            await asyncio.sleep(self.cfg.executor_poll_interval)

        async with self._lock(record_id):
            if record.status is SettlementStatus.EXECUTOR_SUBMITTED and not self._expire_if_overdue(record):
                self._fail(
                    record,
                    FailureReason.EXECUTOR_TIMEOUT,
                    f"no fill after {self.cfg.executor_max_polls} polls",
                )
        return record

    async def distribute(self, record_id: str) -> SettlementRecord:
        """Transfer the allocated auction tokens for a filled record."""
        record = self.get(record_id)
        async with self._lock(record_id):
            if record.status is not SettlementStatus.EXECUTOR_FILLED:
                return record
            if self._expire_if_overdue(record):
                return record

            try:
                async with self._slots():
                    ref = await self.distributor.distribute(record.bidder, record.fill_quantity)
            except DistributionError as e:
                self._fail(record, FailureReason.DISTRIBUTION_FAILED, str(e))
                return record

            self._apply(
                record,
                SettlementEvent.DISTRIBUTE,
                ref,
                distribution_ref=ref,
                distributed_amount=record.fill_quantity,
            )
        return record

    async def fail(self, record_id: str, reason: FailureReason, detail: str) -> SettlementRecord:
        record = self.get(record_id)
        async with self._lock(record_id):
            self._fail(record, reason, detail)
        return record

    async def advance(self, record_id: str) -> SettlementRecord:
        """Drive one record from wherever it is to a terminal state."""
        await self.submit(record_id)
        await self.poll(record_id)
        record = await self.distribute(record_id)

        if record.status is SettlementStatus.ASSETS_DISTRIBUTED:
            logger.info(
                f"Settled {record.record_id}: {record.distributed_amount} tokens, "
                f"paid {record.actual_output} (effective {record.effective_price})"
            )
        return record

    async def expire_overdue(self, now: Optional[int] = None) -> List[SettlementRecord]:
        """Expire every unresolved record whose deadline has passed."""
        now = self.now() if now is None else now
        expired = []
        for record in list(self._records.values()):
            if not record.is_overdue(now):
                continue
            async with self._lock(record.record_id):
                if record.is_overdue(now):
                    self._apply(record, SettlementEvent.EXPIRE, f"deadline:{record.deadline}")
                    expired.append(record)
        if expired:
            logger.warning(f"Expired {len(expired)} overdue settlement records")
        return expired

    async def run_batch(
        self,
        launch_id: str,
        clearing_price: Optional[int] = None,
        record_ids: Optional[Iterable[str]] = None,
        batch_id: Optional[str] = None,
    ) -> BatchExecution:
        """
        Advance a set of records concurrently and write the batch aggregate.

        Defaults to every non-terminal record of the launch. A record that
        raises does not stop the others; its error is logged and listed in
        the batch, which is written either way.
        """
        if record_ids is None:
            records = [r for r in self.records_for(launch_id) if not r.is_terminal]
        else:
            records = [self.get(rid) for rid in record_ids]

        outcomes = await asyncio.gather(
            *(self.advance(r.record_id) for r in records), return_exceptions=True
        )
        errors = []
        for record, outcome in zip(records, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception):
                logger.error(f"Settlement {record.record_id} raised {type(outcome).__name__}: {outcome}")
                errors.append(f"{record.record_id}: {type(outcome).__name__}: {outcome}")

        # A stale write replaces the in-memory record with the stored one
        records = [self._records.get(r.record_id, r) for r in records]
        now = self.now()
        batch = summarize_batch(
            batch_id or f"{launch_id}:{now}:{uuid.uuid4().hex[:12]}",
            launch_id,
            clearing_price,
            records,
            now,
            errors=errors,
        )
        if self.store is not None:
            self.store.save_settlement_batch(batch)

        logger.info(
            f"Batch {batch.batch_id}: {batch.distributed_count}/{batch.total_records} distributed, "
            f"{batch.failed_count} failed, {batch.expired_count} expired, collected {batch.usdc_collected}"
        )
        return batch

    def retry(self, record_id: str, deadline: Optional[int] = None) -> SettlementRecord:
        """
        Open a new attempt for a failed record.

        Raises:
            InvalidState: record not failed, or already retried
        """
        record = self.get(record_id)
        attempt = record.next_attempt(deadline=deadline, now=self.now())
        if attempt.record_id in self._records:
            raise InvalidState(f"{record_id} was already retried as {attempt.record_id}")
        logger.info(f"Retrying {record_id} as {attempt.record_id}")
        return self.add_record(attempt)
