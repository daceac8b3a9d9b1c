"""
Call status transition rules.

Pure functions with no I/O so the state machine can be tested without a
store or an event loop:

- any non-terminal status may move to any defined status;
- a terminal target stamps end_time and derives duration from start_time;
- terminal statuses are sticky: leaving one raises InvalidTransitionError;
- the same terminal status delivered again is a duplicate and keeps the
  original timing;
- RECORDING_AVAILABLE on a terminal call degrades to a recording-only update.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from calldesk.calls.models import CallStatus
from calldesk.shared.exceptions import InvalidTransitionError


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    RECORDING_ONLY = "recording_only"


@dataclass(frozen=True)
class TransitionDecision:
    """Result of evaluating one requested status change."""

    outcome: TransitionOutcome
    previous_status: CallStatus
    requested_status: CallStatus
    status: CallStatus
    end_time: datetime | None = None
    duration: int | None = None

    @property
    def sets_timing(self) -> bool:
        return self.end_time is not None


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_duration(start_time: datetime, end_time: datetime) -> int:
    """Whole seconds between start and end, never negative."""
    elapsed = (ensure_utc(end_time) - ensure_utc(start_time)).total_seconds()
    return max(0, math.floor(elapsed))


def plan_transition(
    current: CallStatus,
    requested: CallStatus,
    start_time: datetime,
    event_time: datetime | None = None,
) -> TransitionDecision:
    """Evaluate a status change against the call's current status.

    Args:
        current: Status stored on the call.
        requested: Status carried by the event.
        start_time: Call start time, used to derive duration.
        event_time: When the provider says the event happened. Falls back to
            processing time when absent.

    Returns:
        The decision to apply.

    Raises:
        InvalidTransitionError: The call is terminal and the event asks for a
            different status.
    """
    current = CallStatus(current)
    requested = CallStatus(requested)

    if current.is_terminal:
        if requested == current:
            return TransitionDecision(
                outcome=TransitionOutcome.DUPLICATE,
                previous_status=current,
                requested_status=requested,
                status=current,
            )
        if requested == CallStatus.RECORDING_AVAILABLE:
            return TransitionDecision(
                outcome=TransitionOutcome.RECORDING_ONLY,
                previous_status=current,
                requested_status=requested,
                status=current,
            )
        raise InvalidTransitionError(
            message=f"Call is {current.value}; cannot move to {requested.value}",
            details={
                "previousStatus": current.value,
                "requestedStatus": requested.value,
                "reason": "terminal_status",
            },
        )

    if requested.is_terminal:
        end_time = ensure_utc(event_time) if event_time is not None else utcnow()
        return TransitionDecision(
            outcome=TransitionOutcome.APPLIED,
            previous_status=current,
            requested_status=requested,
            status=requested,
            end_time=end_time,
            duration=compute_duration(start_time, end_time),
        )

    return TransitionDecision(
        outcome=TransitionOutcome.APPLIED if requested != current else TransitionOutcome.DUPLICATE,
        previous_status=current,
        requested_status=requested,
        status=requested,
    )
