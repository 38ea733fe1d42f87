"""
Status waiter
Polls an external status until it reaches a desired value or a timeout elapses
"""

import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, Collection, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MARKERS = ("FAILED", "ROLLBACK")


class WaitOutcome(enum.Enum):
    REACHED = "reached"
    TIMED_OUT = "timed_out"


class WaitFailedError(RuntimeError):
    """Raised when the polled status reports a terminal failure"""

    def __init__(self, label: str, status: str):
        super().__init__(f"{label} entered failure status {status}")
        self.label = label
        self.status = status


@dataclass
class WaitResult:
    outcome: WaitOutcome
    status: Optional[str]
    elapsed: float

    @property
    def reached(self) -> bool:
        return self.outcome is WaitOutcome.REACHED


def is_failure_status(status: Optional[str], markers: Collection[str] = DEFAULT_FAILURE_MARKERS) -> bool:
    """Return True when the status contains any failure marker"""
    if not status:
        return False
    upper = status.upper()
    return any(marker in upper for marker in markers)


def wait_for_status(poll: Callable[[], Optional[str]],
                    desired: Union[str, Collection[str]],
                    timeout: float,
                    interval: float,
                    failure_markers: Collection[str] = DEFAULT_FAILURE_MARKERS,
                    label: str = "resource",
                    sleep: Callable[[float], None] = time.sleep,
                    clock: Callable[[], float] = time.monotonic) -> WaitResult:
    """
    Poll until the status equals a desired value

    Args:
        poll: Callable returning the current status string
        desired: Desired terminal status, or a collection of acceptable ones
        timeout: Seconds before giving up
        interval: Seconds between polls
        failure_markers: Substrings that make a status fatal
        label: Human readable name used in log lines
        sleep: Sleep function, injectable for tests
        clock: Monotonic clock, injectable for tests

    Returns:
        WaitResult with REACHED or TIMED_OUT

    Raises:
        WaitFailedError: The status entered a failure state
    """
    wanted = {desired} if isinstance(desired, str) else set(desired)
    start = clock()
    deadline = start + timeout
    last_status = None

    while True:
        status = poll()
        elapsed = clock() - start

        if status != last_status:
            logger.info("%s status: %s (%ds/%ds)", label, status, elapsed, timeout)
            last_status = status

        if status in wanted:
            return WaitResult(WaitOutcome.REACHED, status, elapsed)
        if is_failure_status(status, failure_markers):
            raise WaitFailedError(label, status)

        remaining = deadline - clock()
        if remaining <= 0:
            logger.warning("Timed out waiting for %s after %ds (last status: %s)",
                           label, timeout, status)
            return WaitResult(WaitOutcome.TIMED_OUT, status, clock() - start)
        sleep(min(interval, remaining))


def wait_until(predicate: Callable[[], bool],
               timeout: float,
               interval: float,
               label: str = "condition",
               sleep: Callable[[float], None] = time.sleep,
               clock: Callable[[], float] = time.monotonic) -> WaitResult:
    """Poll a boolean condition with the same timeout semantics as wait_for_status"""
    return wait_for_status(
        lambda: "READY" if predicate() else "PENDING",
        "READY",
        timeout=timeout,
        interval=interval,
        failure_markers=(),
        label=label,
        sleep=sleep,
        clock=clock,
    )
