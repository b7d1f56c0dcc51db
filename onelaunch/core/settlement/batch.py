"""Aggregate view of one settlement batch, written once the batch completes."""

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from onelaunch.core.settlement.state import SettlementRecord, SettlementStatus


@dataclass(frozen=True)
class BatchExecution:
    """
    Counts per phase are cumulative: a distributed record also counts as
    submitted and filled. errors lists records whose advance raised
    instead of reaching a recorded outcome.
    """
    batch_id: str
    launch_id: str
    clearing_price: Optional[int]
    total_records: int
    submitted_count: int
    filled_count: int
    distributed_count: int
    failed_count: int
    expired_count: int
    usdc_collected: int
    submission_refs: List[str] = field(default_factory=list)
    distribution_refs: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    completed_at: int = field(default_factory=lambda: int(time.time()))

    @property
    def all_distributed(self) -> bool:
        return self.total_records > 0 and self.distributed_count == self.total_records

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def summarize_batch(
    batch_id: str,
    launch_id: str,
    clearing_price: Optional[int],
    records: Iterable[SettlementRecord],
    now: Optional[int] = None,
    errors: Optional[List[str]] = None,
) -> BatchExecution:
    records = list(records)
    now = int(time.time()) if now is None else now

    submitted = [r for r in records if r.executor_order_id is not None]
    filled = [r for r in records if r.actual_output is not None]

    return BatchExecution(
        batch_id=batch_id,
        launch_id=launch_id,
        clearing_price=clearing_price,
        total_records=len(records),
        submitted_count=len(submitted),
        filled_count=len(filled),
        distributed_count=sum(1 for r in records if r.status is SettlementStatus.ASSETS_DISTRIBUTED),
        failed_count=sum(1 for r in records if r.status is SettlementStatus.FAILED),
        expired_count=sum(1 for r in records if r.status is SettlementStatus.EXPIRED),
        usdc_collected=sum(r.actual_output for r in filled),
        submission_refs=[r.submission_ref for r in submitted if r.submission_ref],
        distribution_refs=[r.distribution_ref for r in records if r.distribution_ref],
        errors=list(errors or []),
        completed_at=now,
    )
