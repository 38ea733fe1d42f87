"""
Unit tests for the phased teardown
"""

import unittest
from unittest.mock import Mock
import sys
import os

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lifecycle.provisioner import StepResult, StepStatus
from lifecycle.teardown import Teardown, TeardownPhase


class TestTeardown(unittest.TestCase):
    """Test ordering and best-effort execution"""

    def test_runs_in_phase_order_regardless_of_registration(self):
        calls = []
        teardown = Teardown()
        teardown.add(TeardownPhase.STACK, "stack", lambda: calls.append("stack"))
        teardown.add(TeardownPhase.NAMESPACES, "namespace", lambda: calls.append("namespace"))
        teardown.add(TeardownPhase.LOAD_BALANCERS, "ingress", lambda: calls.append("ingress"))
        teardown.add(TeardownPhase.NAMESPACED_RESOURCES, "pvcs", lambda: calls.append("pvcs"))
        teardown.add(TeardownPhase.IAM, "policy", lambda: calls.append("policy"))

        teardown.run()
        self.assertEqual(calls, ["ingress", "pvcs", "namespace", "policy", "stack"])

    def test_registration_order_kept_within_phase(self):
        calls = []
        teardown = Teardown()
        for name in ("observability", "workload", "pods"):
            teardown.add(TeardownPhase.NAMESPACED_RESOURCES, name, lambda n=name: calls.append(n))
        teardown.run()
        self.assertEqual(calls, ["observability", "workload", "pods"])

    def test_failed_step_does_not_abort(self):
        def fail():
            raise RuntimeError("api unavailable")

        later = Mock()
        teardown = Teardown()
        teardown.add(TeardownPhase.CLUSTER_RESOURCES, "cluster layer", fail)
        teardown.add(TeardownPhase.IAM, "account layer", later)

        report = teardown.run()
        later.assert_called_once_with()
        self.assertEqual([r.status for r in report.results], [StepStatus.FAILED, StepStatus.DELETED])

    def test_last_phase_stops_before_stack(self):
        stack = Mock()
        teardown = Teardown(last_phase=TeardownPhase.IAM)
        teardown.add(TeardownPhase.IAM, "account layer", Mock())
        teardown.add(TeardownPhase.STACK, "stack", stack)

        report = teardown.run()
        stack.assert_not_called()
        self.assertEqual(report.names(), ["account layer"])

    def test_self_reporting_steps(self):
        teardown = Teardown()
        teardown.add(TeardownPhase.NAMESPACES, "namespace gone",
                     lambda: StepResult("namespace gone", StepStatus.WARNED, "timed out"),
                     self_reporting=True)
        teardown.add(TeardownPhase.STACK, "explodes",
                     Mock(side_effect=RuntimeError("boom")), self_reporting=True)

        report = teardown.run()
        self.assertEqual(report.results[0].status, StepStatus.WARNED)
        self.assertEqual(report.results[0].detail, "timed out")
        self.assertEqual(report.results[1].status, StepStatus.FAILED)

    def test_phase_callback_once_per_phase(self):
        phases = []
        teardown = Teardown(on_phase=phases.append)
        teardown.add(TeardownPhase.SERVICE_ACCOUNTS, "a", Mock())
        teardown.add(TeardownPhase.SERVICE_ACCOUNTS, "b", Mock())
        teardown.add(TeardownPhase.LOAD_BALANCERS, "c", Mock())
        teardown.run()
        self.assertEqual(phases, [TeardownPhase.LOAD_BALANCERS, TeardownPhase.SERVICE_ACCOUNTS])

    def test_phase_titles(self):
        self.assertEqual(len(TeardownPhase), 8)
        self.assertEqual(TeardownPhase.STACK.value, 8)
        for phase in TeardownPhase:
            self.assertTrue(phase.title)


if __name__ == "__main__":
    unittest.main(verbosity=2)
