"""
Lifecycle toolkit
Idempotent steps, status waiters, ordered teardown and the runbooks built on them
"""

from .provisioner import RunReport, StepResult, StepStatus, ensure, remove
from .teardown import Teardown, TeardownPhase
from .waiter import WaitOutcome, WaitResult, wait_for_status, wait_until

__all__ = [
    "RunReport",
    "StepResult",
    "StepStatus",
    "ensure",
    "remove",
    "Teardown",
    "TeardownPhase",
    "WaitOutcome",
    "WaitResult",
    "wait_for_status",
    "wait_until"
]
