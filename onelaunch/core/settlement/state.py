"""
Settlement State Machine - Lifecycle of one winning bid's execution.

    pending -> executor_submitted -> executor_filled -> assets_distributed
       \\              \\                    \\
        +-------------+--------------------+--> failed | expired

Transitions are looked up in an explicit (state, event) table; anything
not in the table raises IllegalTransition. Each applied event is keyed by
the external reference that triggered it, so replaying a confirmation is
a no-op instead of a second transition.
"""

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from onelaunch.core.errors import (
    DistributionFailure,
    ExecutorFailure,
    Expired,
    IllegalTransition,
    InvalidState,
)


# =============================================================================
# Enums
# =============================================================================


class SettlementStatus(str, Enum):
    PENDING = "pending"
    EXECUTOR_SUBMITTED = "executor_submitted"
    EXECUTOR_FILLED = "executor_filled"
    ASSETS_DISTRIBUTED = "assets_distributed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


class SettlementEvent(str, Enum):
    SUBMIT = "submit"
    FILL = "fill"
    DISTRIBUTE = "distribute"
    FAIL = "fail"
    EXPIRE = "expire"


class FailureReason(str, Enum):
    """Machine-readable cause of a failed record."""
    EXECUTOR_REJECTED = "executor_rejected"
    EXECUTOR_ERROR = "executor_error"
    EXECUTOR_TIMEOUT = "executor_timeout"
    DISTRIBUTION_FAILED = "distribution_failed"

    @property
    def is_distribution(self) -> bool:
        return self is FailureReason.DISTRIBUTION_FAILED


TERMINAL_STATES = frozenset({
    SettlementStatus.ASSETS_DISTRIBUTED,
    SettlementStatus.FAILED,
    SettlementStatus.EXPIRED,
})


def _build_transitions() -> Dict[tuple, SettlementStatus]:
    table = {
        (SettlementStatus.PENDING, SettlementEvent.SUBMIT): SettlementStatus.EXECUTOR_SUBMITTED,
        (SettlementStatus.EXECUTOR_SUBMITTED, SettlementEvent.FILL): SettlementStatus.EXECUTOR_FILLED,
        (SettlementStatus.EXECUTOR_FILLED, SettlementEvent.DISTRIBUTE): SettlementStatus.ASSETS_DISTRIBUTED,
    }
    for state in SettlementStatus:
        if state in TERMINAL_STATES:
            continue
        table[(state, SettlementEvent.FAIL)] = SettlementStatus.FAILED
        table[(state, SettlementEvent.EXPIRE)] = SettlementStatus.EXPIRED
    return table


TRANSITIONS: Dict[tuple, SettlementStatus] = _build_transitions()


def next_state(state: SettlementStatus, event: SettlementEvent) -> SettlementStatus:
    """Raises IllegalTransition if the event is not allowed from state."""
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise IllegalTransition(state.value, event.value)


# =============================================================================
# Record
# =============================================================================


@dataclass
class TransitionEntry:
    from_status: SettlementStatus
    to_status: SettlementStatus
    event: SettlementEvent
    ref: str
    at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_status": self.from_status.value,
            "to_status": self.to_status.value,
            "event": self.event.value,
            "ref": self.ref,
            "at": self.at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransitionEntry":
        return cls(
            from_status=SettlementStatus(data["from_status"]),
            to_status=SettlementStatus(data["to_status"]),
            event=SettlementEvent(data["event"]),
            ref=data["ref"],
            at=int(data["at"]),
        )


@dataclass
class SettlementRecord:
    """
    Execution audit record for one attempt at settling a winning bid.

    Attributes:
        record_id: "<bid_id>#<attempt>"
        bid_id: Winning bid or intent id
        launch_id: Launch the bid won in
        bidder: Recipient of the auction tokens
        fill_quantity: Auction tokens allocated by clearing
        expected_output: Settlement-asset base units expected from the executor
        deadline: Unix time; unresolved records expire once now >= deadline
        attempt: 1 for the first attempt, +1 per retry
        order_payload: Signed order forwarded to the executor
    """
    record_id: str
    bid_id: str
    launch_id: str
    bidder: str
    fill_quantity: int
    expected_output: int
    deadline: int
    attempt: int = 1
    status: SettlementStatus = SettlementStatus.PENDING
    executor_order_id: Optional[str] = None
    submission_ref: Optional[str] = None
    fill_ref: Optional[str] = None
    distribution_ref: Optional[str] = None
    actual_output: Optional[int] = None
    distributed_amount: Optional[int] = None
    effective_price: Optional[int] = None
    failure_reason: Optional[FailureReason] = None
    failure_detail: Optional[str] = None
    order_payload: Optional[Dict[str, Any]] = None
    applied_refs: Dict[str, str] = field(default_factory=dict)
    history: List[TransitionEntry] = field(default_factory=list)
    created_at: int = field(default_factory=lambda: int(time.time()))
    updated_at: int = field(default_factory=lambda: int(time.time()))

    @staticmethod
    def make_id(bid_id: str, attempt: int) -> str:
        return f"{bid_id}#{attempt}"

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_overdue(self, now: int) -> bool:
        return not self.is_terminal and now >= self.deadline

    def apply(self, event: SettlementEvent, ref: str, now: Optional[int] = None, **changes) -> bool:
        """
        Apply an event triggered by the external reference ref.

        Returns:
            True if the record changed, False if this exact (event, ref)
            was already applied.

        Raises:
            IllegalTransition: event not allowed from the current status
        """
        if self.applied_refs.get(event.value) == ref:
            return False

        new_status = next_state(self.status, event)
        now = int(time.time()) if now is None else now

        for name, value in changes.items():
            if not hasattr(self, name):
                raise AttributeError(f"SettlementRecord has no field {name!r}")
            setattr(self, name, value)

        self.history.append(TransitionEntry(self.status, new_status, event, ref, now))
        self.applied_refs[event.value] = ref
        self.status = new_status
        self.updated_at = now
        return True

    def next_attempt(self, deadline: Optional[int] = None, now: Optional[int] = None) -> "SettlementRecord":
        """
        New pending record for a failed one. The failed record is untouched.

        Raises:
            InvalidState: record is not failed
        """
        if self.status is not SettlementStatus.FAILED:
            raise InvalidState(f"only failed records can be retried, {self.record_id} is {self.status.value}")
        now = int(time.time()) if now is None else now
        attempt = self.attempt + 1
        return SettlementRecord(
            record_id=self.make_id(self.bid_id, attempt),
            bid_id=self.bid_id,
            launch_id=self.launch_id,
            bidder=self.bidder,
            fill_quantity=self.fill_quantity,
            expected_output=self.expected_output,
            deadline=self.deadline if deadline is None else deadline,
            attempt=attempt,
            order_payload=self.order_payload,
            created_at=now,
            updated_at=now,
        )

    def raise_for_failure(self) -> None:
        """Raise the error matching a failed or expired terminal state."""
        if self.status is SettlementStatus.EXPIRED:
            raise Expired(f"settlement {self.record_id} expired at {self.deadline}")
        if self.status is not SettlementStatus.FAILED:
            return
        reason = self.failure_reason.value if self.failure_reason else None
        message = f"settlement {self.record_id} failed: {self.failure_detail or reason}"
        if self.failure_reason is not None and self.failure_reason.is_distribution:
            raise DistributionFailure(message, reason)
        raise ExecutorFailure(message, reason)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["failure_reason"] = self.failure_reason.value if self.failure_reason else None
        data["history"] = [entry.to_dict() for entry in self.history]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SettlementRecord":
        data = dict(data)
        data["status"] = SettlementStatus(data["status"])
        if data.get("failure_reason"):
            data["failure_reason"] = FailureReason(data["failure_reason"])
        data["history"] = [TransitionEntry.from_dict(e) for e in data.get("history") or []]
        data["applied_refs"] = dict(data.get("applied_refs") or {})
        return cls(**data)
