"""
Ordered teardown
Runs deletion steps phase by phase so that no delete blocks on a dependent resource
"""

import enum
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from lifecycle.provisioner import RunReport, StepResult, StepStatus, remove

logger = logging.getLogger(__name__)


class TeardownPhase(enum.IntEnum):
    LOAD_BALANCERS = 1
    SERVICE_ACCOUNTS = 2
    STATEFUL_WORKLOADS = 3
    NAMESPACED_RESOURCES = 4
    NAMESPACES = 5
    CLUSTER_RESOURCES = 6
    IAM = 7
    STACK = 8

    @property
    def title(self) -> str:
        return {
            TeardownPhase.LOAD_BALANCERS: "Ingress and load balancers",
            TeardownPhase.SERVICE_ACCOUNTS: "IRSA service accounts",
            TeardownPhase.STATEFUL_WORKLOADS: "StatefulSets",
            TeardownPhase.NAMESPACED_RESOURCES: "Namespaced resources",
            TeardownPhase.NAMESPACES: "Namespaces",
            TeardownPhase.CLUSTER_RESOURCES: "Cluster-scoped resources",
            TeardownPhase.IAM: "IAM policies and roles",
            TeardownPhase.STACK: "CloudFormation stack",
        }[self]


@dataclass
class TeardownStep:
    phase: TeardownPhase
    name: str
    action: Callable[[], object]
    # Steps that report their own outcome return a StepResult instead of raising
    self_reporting: bool = False


class Teardown:
    """Collects deletion steps and runs them in phase order, best-effort"""

    def __init__(self, report: Optional[RunReport] = None,
                 on_phase: Optional[Callable[[TeardownPhase], None]] = None,
                 last_phase: TeardownPhase = TeardownPhase.STACK):
        self.steps: List[TeardownStep] = []
        self.report = report or RunReport()
        self.on_phase = on_phase
        self.last_phase = last_phase

    def add(self, phase: TeardownPhase, name: str, action: Callable[[], object],
            self_reporting: bool = False) -> "Teardown":
        self.steps.append(TeardownStep(phase, name, action, self_reporting))
        return self

    def ordered(self) -> List[TeardownStep]:
        # sorted() is stable, so registration order holds within a phase
        return sorted(
            (s for s in self.steps if s.phase <= self.last_phase),
            key=lambda s: s.phase,
        )

    def run(self) -> RunReport:
        current = None
        for step in self.ordered():
            if step.phase != current:
                current = step.phase
                logger.info("Phase %d: %s", current.value, current.title)
                if self.on_phase:
                    self.on_phase(current)
            if step.self_reporting:
                self._run_self_reporting(step)
            else:
                remove(step.name, step.action, self.report)
        return self.report

    def _run_self_reporting(self, step: TeardownStep) -> None:
        try:
            result = step.action()
        except Exception as e:
            logger.warning("⚠ %s failed: %s", step.name, e)
            self.report.add(step.name, StepStatus.FAILED, str(e))
            return
        if isinstance(result, StepResult):
            self.report.add(step.name, result.status, result.detail)
        else:
            self.report.add(step.name, StepStatus.DELETED)
