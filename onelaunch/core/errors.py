"""
Error taxonomy for onelaunch.

Every failure that crosses a component boundary is one of these. Terminal
settlement failures are additionally recorded on the record itself
(status + failure_reason), so nothing is dropped silently.
"""

from typing import Optional


class LaunchError(Exception):
    """Base class for all onelaunch errors."""


class InvalidInput(LaunchError, ValueError):
    """Malformed or out-of-range input. Rejected synchronously, never persisted."""


class InvalidAddress(InvalidInput):
    """An account identifier that is not a valid 20-byte hex address."""

    def __init__(self, address: object, reason: str = "malformed address"):
        self.address = address
        super().__init__(f"{reason}: {address!r}")


class ReplayRejected(LaunchError):
    """A salt, nonce or order hash that was already used."""

    def __init__(self, key: str, value: object):
        self.key = key
        self.value = value
        super().__init__(f"duplicate {key}: {value}")


class Expired(LaunchError):
    """Deadline passed."""


class ExecutorFailure(LaunchError):
    """External executor rejected or timed out on an order."""

    def __init__(self, message: str, reason: Optional[str] = None):
        self.reason = reason
        super().__init__(message)


class DistributionFailure(LaunchError):
    """Auction asset transfer failed after the executor already filled."""

    def __init__(self, message: str, reason: Optional[str] = None):
        self.reason = reason
        super().__init__(message)


class ClearingInconsistency(LaunchError):
    """The bid snapshot changed between capture and result application."""

    def __init__(self, launch_id: str, expected_version: int, actual_version: Optional[int]):
        self.launch_id = launch_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"launch {launch_id} changed during clearing "
            f"(snapshot version {expected_version}, now {actual_version})"
        )


class IllegalTransition(LaunchError):
    """An event that is not allowed from the record's current state."""

    def __init__(self, state: object, event: object):
        self.state = state
        self.event = event
        super().__init__(f"no transition from {state} on {event}")


class InvalidState(LaunchError):
    """Operation not allowed in the entity's current state."""


class StaleRecord(InvalidState):
    """A settlement record changed in the store since this copy was read."""

    def __init__(self, record_id: str, expected_status: object, actual_status: Optional[object]):
        self.record_id = record_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        super().__init__(
            f"settlement {record_id} is {actual_status} in the store, expected {expected_status}"
        )


__all__ = [
    "LaunchError",
    "InvalidInput",
    "InvalidAddress",
    "ReplayRejected",
    "Expired",
    "ExecutorFailure",
    "DistributionFailure",
    "ClearingInconsistency",
    "IllegalTransition",
    "InvalidState",
    "StaleRecord",
]
