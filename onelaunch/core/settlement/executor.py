"""
External executor and distributor interfaces.

The executor converts a bidder's asset into the settlement asset by
filling their signed order; the distributor transfers auction tokens to
winners. Both are long-latency services, so every call is a coroutine.

MockExecutor and MockDistributor are in-memory implementations used by
tests and the demo command.
"""

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

from onelaunch.crypto import keccak256, to_checksum_address
from onelaunch.utils.logger import get_logger

logger = get_logger("settlement.executor")


class ExecutorError(Exception):
    """Transport failure or rejection from the executor."""


class DistributionError(Exception):
    """Transport failure or rejection from the distributor."""


class ExecutorState(str, Enum):
    UNFILLED = "unfilled"
    FILLED = "filled"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ExecutorStatus:
    """Result of polling an executor order."""
    state: ExecutorState
    actual_amount: Optional[int] = None
    fill_ref: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def unfilled(cls) -> "ExecutorStatus":
        return cls(ExecutorState.UNFILLED)

    @classmethod
    def filled(cls, actual_amount: int, fill_ref: str) -> "ExecutorStatus":
        return cls(ExecutorState.FILLED, actual_amount=actual_amount, fill_ref=fill_ref)

    @classmethod
    def rejected(cls, reason: str) -> "ExecutorStatus":
        return cls(ExecutorState.REJECTED, reason=reason)


class Executor(Protocol):
    async def submit_order(self, signed_order: Dict[str, Any]) -> str:
        ...

    async def poll_status(self, executor_order_id: str) -> ExecutorStatus:
        ...


class Distributor(Protocol):
    async def distribute(self, bidder: str, amount: int) -> str:
        ...


def _ref(*parts: Any) -> str:
    return "0x" + keccak256(json.dumps(parts, sort_keys=True, default=str).encode()).hex()


class MockExecutor:
    """
    In-memory executor.

    Orders fill after `fill_after_polls` polls, paying out expected_output
    reduced by `slippage_bps`. Makers in `reject_makers` are rejected at
    poll time; `fail_submissions` makes submit_order raise.
    """

    def __init__(
        self,
        fill_after_polls: int = 1,
        slippage_bps: int = 0,
        reject_makers: Optional[Set[str]] = None,
        fail_submissions: bool = False,
        never_fill: bool = False,
        latency: float = 0.0,
    ):
        self.fill_after_polls = fill_after_polls
        self.slippage_bps = slippage_bps
        self.reject_makers = {to_checksum_address(m) for m in (reject_makers or set())}
        self.fail_submissions = fail_submissions
        self.never_fill = never_fill
        self.latency = latency

        self.orders: Dict[str, Dict[str, Any]] = {}
        self.polls: Dict[str, int] = {}
        self.submissions: List[str] = []

    async def submit_order(self, signed_order: Dict[str, Any]) -> str:
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.fail_submissions:
            raise ExecutorError("executor unavailable")

        order_id = _ref("order", signed_order, len(self.submissions))
        self.orders[order_id] = signed_order
        self.polls[order_id] = 0
        self.submissions.append(order_id)
        return order_id

    async def poll_status(self, executor_order_id: str) -> ExecutorStatus:
        if self.latency:
            await asyncio.sleep(self.latency)
        if executor_order_id not in self.orders:
            raise ExecutorError(f"unknown order {executor_order_id}")

        order = self.orders[executor_order_id]
        if to_checksum_address(order["bidder"]) in self.reject_makers:
            return ExecutorStatus.rejected("maker rejected")

        self.polls[executor_order_id] += 1
        if self.never_fill or self.polls[executor_order_id] < self.fill_after_polls:
            return ExecutorStatus.unfilled()

        expected = int(order["expected_output"])
        actual = expected * (10_000 - self.slippage_bps) // 10_000
        return ExecutorStatus.filled(actual, _ref("fill", executor_order_id))


class MockDistributor:
    """In-memory distributor. Bidders in `fail_for` raise DistributionError."""

    def __init__(self, fail_for: Optional[Set[str]] = None):
        self.fail_for = {to_checksum_address(b) for b in (fail_for or set())}
        self.transfers: List[Tuple[str, int, str]] = []

    async def distribute(self, bidder: str, amount: int) -> str:
        bidder = to_checksum_address(bidder)
        if bidder in self.fail_for:
            raise DistributionError(f"transfer to {bidder} reverted")
        ref = _ref("distribute", bidder, amount, len(self.transfers))
        self.transfers.append((bidder, amount, ref))
        return ref

    def total_distributed(self) -> int:
        return sum(amount for _, amount, _ in self.transfers)
