"""Settlement state machine, executor adapters and tracker"""
from onelaunch.core.settlement.state import (
    SettlementStatus,
    SettlementEvent,
    FailureReason,
    SettlementRecord,
    TRANSITIONS,
    TERMINAL_STATES,
    next_state,
)
from onelaunch.core.settlement.executor import (
    Executor,
    Distributor,
    ExecutorState,
    ExecutorStatus,
    ExecutorError,
    DistributionError,
    MockExecutor,
    MockDistributor,
)
from onelaunch.core.settlement.batch import BatchExecution, summarize_batch
from onelaunch.core.settlement.tracker import SettlementTracker

__all__ = [
    "SettlementStatus",
    "SettlementEvent",
    "FailureReason",
    "SettlementRecord",
    "TRANSITIONS",
    "TERMINAL_STATES",
    "next_state",
    "Executor",
    "Distributor",
    "ExecutorState",
    "ExecutorStatus",
    "ExecutorError",
    "DistributionError",
    "MockExecutor",
    "MockDistributor",
    "BatchExecution",
    "summarize_batch",
    "SettlementTracker",
]
