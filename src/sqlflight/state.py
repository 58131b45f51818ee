"""
Execution lifecycle as an explicit finite state machine.

    PLANNING -> FETCHING(n) -> DRAINING(n-1) -> ... -> COMPLETED | PARTIALLY_FAILED | FAILED

CANCELLED is reachable from every non-terminal state. The machine holds no I/O, so the
failure and cancellation rules can be exercised without any network timing.
"""

import logging
from enum import Enum
from typing import List, Optional

from sqlflight.config import FailurePolicy
from sqlflight.models import EndpointOutcome

logger = logging.getLogger(__name__)


class ExecutionState(str, Enum):
    PLANNING = "planning"
    FETCHING = "fetching"
    DRAINING = "draining"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {ExecutionState.COMPLETED, ExecutionState.PARTIALLY_FAILED, ExecutionState.FAILED, ExecutionState.CANCELLED}
)
_ACTIVE_STATES = frozenset({ExecutionState.FETCHING, ExecutionState.DRAINING})


class InvalidTransitionError(RuntimeError):
    """An event arrived that the current state does not accept."""


class ExecutionStateMachine:
    def __init__(self, failure_policy: FailurePolicy = FailurePolicy.FAIL_FAST):
        self.failure_policy = failure_policy
        self.state = ExecutionState.PLANNING
        self.history: List[ExecutionState] = [ExecutionState.PLANNING]
        self.endpoint_count = 0
        self.remaining = 0
        self.failed_count = 0
        self.batches_delivered = 0
        self.error: Optional[BaseException] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def _transition(self, new_state: ExecutionState) -> None:
        logger.debug("Execution state %s -> %s (remaining endpoints: %s)", self.state.value, new_state.value, self.remaining)
        self.state = new_state
        self.history.append(new_state)

    def _require(self, *states: ExecutionState) -> None:
        if self.state not in states:
            raise InvalidTransitionError(
                f"Invalid in state {self.state.value}, expected one of {[s.value for s in states]}"
            )

    def start_fetching(self, endpoint_count: int) -> None:
        """Planning produced a FlightInfo with `endpoint_count` endpoints."""
        self._require(ExecutionState.PLANNING)
        self.endpoint_count = endpoint_count
        self.remaining = endpoint_count
        self._transition(ExecutionState.FETCHING)

    def batch_delivered(self) -> None:
        self._require(*_ACTIVE_STATES)
        self.batches_delivered += 1

    def endpoint_finished(self, outcome: EndpointOutcome) -> None:
        self._require(*_ACTIVE_STATES)
        if self.remaining <= 0:
            raise InvalidTransitionError(f"No endpoint left to finish (endpoint {outcome.endpoint_index})")
        self.remaining -= 1
        if outcome.failed:
            self.failed_count += 1
        self._transition(ExecutionState.DRAINING)

    def finish(self) -> ExecutionState:
        """
        Settle the terminal state once every endpoint has finished.

        Returns:
            COMPLETED when no endpoint failed. Otherwise FAILED under FAIL_FAST or when no
            batch was delivered and every endpoint failed, PARTIALLY_FAILED in all other cases.
        """
        self._require(*_ACTIVE_STATES)
        if self.remaining:
            raise InvalidTransitionError(f"{self.remaining} endpoint(s) still active")

        if self.failed_count == 0:
            terminal = ExecutionState.COMPLETED
        elif self.failure_policy == FailurePolicy.FAIL_FAST:
            terminal = ExecutionState.FAILED
        elif self.batches_delivered == 0 and self.failed_count == self.endpoint_count:
            terminal = ExecutionState.FAILED
        else:
            terminal = ExecutionState.PARTIALLY_FAILED
        self._transition(terminal)
        return terminal

    def fail(self, error: BaseException) -> None:
        """Abort the execution (fail-fast trigger, planning error or internal error)."""
        if self.is_terminal:
            raise InvalidTransitionError(f"Execution already {self.state.value}")
        self.error = error
        self._transition(ExecutionState.FAILED)

    def cancel(self) -> bool:
        """
        Cancel a running execution.

        Returns:
            False if the execution had already reached a terminal state.
        """
        if self.is_terminal:
            return False
        self._transition(ExecutionState.CANCELLED)
        return True
