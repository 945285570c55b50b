"""
Dispatch Engine Errors

"No eligible drivers" is deliberately absent: it is a normal outcome and is
represented by ``dispatch()`` returning ``None``.
"""

from __future__ import annotations

from typing import Optional


class DispatchError(Exception):
    """Base class for every error raised by the dispatch engine."""


class ConcurrentAssignmentConflict(DispatchError):
    """
    A compare-and-swap precondition failed at write time.

    ``driver_id`` is set when the selected driver was claimed by another
    dispatch in the race window. ``ride_id`` alone means the ride itself
    changed (already dispatched or reassigned) since it was read.
    """

    def __init__(
        self,
        message: str,
        driver_id: Optional[str] = None,
        ride_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.driver_id = driver_id
        self.ride_id = ride_id


class PersistenceFailure(DispatchError):
    """A read or write against the record store failed."""


class RecordValidationError(PersistenceFailure):
    """A stored record is malformed and was rejected at the boundary."""

    def __init__(self, record_type: str, record_id: str, detail: str = ""):
        super().__init__(f"Malformed {record_type} record {record_id}: {detail}")
        self.record_type = record_type
        self.record_id = record_id


class DispatchFailure(DispatchError):
    """Dispatch could not complete. ``retryable`` hints the caller may re-dispatch."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class OverrideTargetInvalid(DispatchError):
    """The requested override cannot be applied; ``reason`` is dispatcher-facing."""

    def __init__(self, reason: str):
        super().__init__(f"Override rejected: {reason}")
        self.reason = reason


class RideNotFound(DispatchError):
    """No ride record exists for the given id."""


class OverrideNotFound(DispatchError):
    """No override record exists for the given id."""


class InvalidRideTransition(DispatchError):
    """A ride status change violates the ride lifecycle."""
