"""
Idempotent provisioning steps
Create-if-absent and delete-if-present wrappers that tolerate convergent errors
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from botocore.exceptions import ClientError
from pulumi import automation as auto

from lifecycle.tools import CommandError

logger = logging.getLogger(__name__)

ALREADY_EXISTS_CODES = {
    "AlreadyExistsException",
    "EntityAlreadyExists",
    "ResourceExistsException",
    "RepositoryAlreadyExistsException",
    "ResourceInUseException",
    "BucketAlreadyOwnedByYou",
}

ALREADY_ABSENT_CODES = {
    "NoSuchEntity",
    "ResourceNotFoundException",
    "RepositoryNotFoundException",
    "InvalidNetworkInterfaceID.NotFound",
    "NotFoundException",
}

ALREADY_EXISTS_MARKERS = ("alreadyexists", "already exists")
ALREADY_ABSENT_MARKERS = ("notfound", "not found", "does not exist", "no such")


class StepStatus(enum.Enum):
    CREATED = "created"
    EXISTED = "existed"
    DELETED = "deleted"
    ABSENT = "absent"
    SKIPPED = "skipped"
    WARNED = "warned"
    FAILED = "failed"


class StepFailedError(RuntimeError):
    """A fatal provisioning step failed"""

    def __init__(self, name: str, cause: BaseException):
        super().__init__(f"{name} failed: {cause}")
        self.name = name
        self.cause = cause


@dataclass
class StepResult:
    name: str
    status: StepStatus
    detail: str = ""

    @property
    def failed(self) -> bool:
        return self.status is StepStatus.FAILED


@dataclass
class RunReport:
    """Ordered record of every step of a runbook invocation"""

    results: List[StepResult] = field(default_factory=list)

    def add(self, name: str, status: StepStatus, detail: str = "") -> StepResult:
        result = StepResult(name, status, detail)
        self.results.append(result)
        return result

    @property
    def failures(self) -> List[StepResult]:
        return [r for r in self.results if r.failed]

    @property
    def ok(self) -> bool:
        return not self.failures

    def names(self) -> List[str]:
        return [r.name for r in self.results]


def _error_code(error: BaseException) -> Optional[str]:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code")
    return None


def _error_text(error: BaseException) -> str:
    # Only CLI stderr is matched by text; other errors classify by type or code
    if isinstance(error, CommandError):
        return error.stderr.lower()
    return ""


def is_already_exists(error: BaseException) -> bool:
    """
    Check whether an error means the target already exists

    Args:
        error: Exception raised by boto3, a CLI tool or the Pulumi Automation API

    Returns:
        True if the error should be treated as success for a create
    """
    if isinstance(error, auto.StackAlreadyExistsError):
        return True
    code = _error_code(error)
    if code is not None:
        return code in ALREADY_EXISTS_CODES
    text = _error_text(error)
    return any(marker in text for marker in ALREADY_EXISTS_MARKERS)


def is_already_absent(error: BaseException) -> bool:
    """
    Check whether an error means the target is already gone

    Args:
        error: Exception raised by boto3, a CLI tool or the Pulumi Automation API

    Returns:
        True if the error should be treated as success for a delete
    """
    if isinstance(error, auto.StackNotFoundError):
        return True
    code = _error_code(error)
    if code is not None:
        if code in ALREADY_ABSENT_CODES:
            return True
        # CloudFormation reports a missing stack as a generic ValidationError
        message = error.response.get("Error", {}).get("Message", "").lower()
        return code == "ValidationError" and "does not exist" in message
    text = _error_text(error)
    return any(marker in text for marker in ALREADY_ABSENT_MARKERS)


def ensure(name: str, action: Callable[[], Any], report: RunReport,
           fatal: bool = True) -> StepResult:
    """
    Run a creation action, treating "already exists" as success

    Args:
        name: Step name used in the report
        action: Callable performing the creation
        report: Run report receiving the step result
        fatal: Raise StepFailedError on other errors instead of recording them

    Returns:
        StepResult with CREATED, EXISTED or FAILED
    """
    try:
        action()
    except Exception as e:
        if is_already_exists(e):
            logger.info("✓ %s already exists", name)
            return report.add(name, StepStatus.EXISTED)
        logger.error("✗ %s failed: %s", name, e)
        if fatal:
            report.add(name, StepStatus.FAILED, str(e))
            raise StepFailedError(name, e) from e
        return report.add(name, StepStatus.FAILED, str(e))
    logger.info("✓ %s created", name)
    return report.add(name, StepStatus.CREATED)


def remove(name: str, action: Callable[[], Any], report: RunReport) -> StepResult:
    """
    Run a deletion action best-effort, treating "not found" as success

    Args:
        name: Step name used in the report
        action: Callable performing the deletion
        report: Run report receiving the step result

    Returns:
        StepResult with DELETED, ABSENT or FAILED; never raises for step errors
    """
    try:
        action()
    except Exception as e:
        if is_already_absent(e):
            logger.info("✓ %s already absent", name)
            return report.add(name, StepStatus.ABSENT)
        logger.warning("⚠ %s failed: %s", name, e)
        return report.add(name, StepStatus.FAILED, str(e))
    logger.info("✓ %s deleted", name)
    return report.add(name, StepStatus.DELETED)
