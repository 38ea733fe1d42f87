"""
Unit tests for idempotent provisioning steps
"""

import unittest
from unittest.mock import Mock
import sys
import os

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from botocore.exceptions import ClientError
from pulumi import automation as auto

from lifecycle.provisioner import (
    RunReport,
    StepFailedError,
    StepStatus,
    ensure,
    is_already_absent,
    is_already_exists,
    remove,
)
from lifecycle.tools import CommandError


def client_error(code, message="", operation="Operation"):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


def raising(error):
    def action():
        raise error
    return action


class TestClassification(unittest.TestCase):
    """Test which errors count as convergent"""

    def test_already_exists_codes(self):
        for code in ("AlreadyExistsException", "EntityAlreadyExists",
                     "ResourceExistsException", "RepositoryAlreadyExistsException"):
            with self.subTest(code=code):
                self.assertTrue(is_already_exists(client_error(code)))
        self.assertFalse(is_already_exists(client_error("AccessDenied")))

    def test_already_absent_codes(self):
        for code in ("NoSuchEntity", "ResourceNotFoundException", "RepositoryNotFoundException"):
            with self.subTest(code=code):
                self.assertTrue(is_already_absent(client_error(code)))

    def test_cloudformation_missing_stack(self):
        error = client_error("ValidationError", "Stack with id demo-stack does not exist")
        self.assertTrue(is_already_absent(error))
        self.assertFalse(is_already_absent(client_error("ValidationError", "Template format error")))

    def test_cli_stderr(self):
        exists = CommandError(["kubectl", "create"], 1, 'Error from server (AlreadyExists): namespaces "otel-demo" already exists')
        missing = CommandError(["kubectl", "delete"], 1, 'Error from server (NotFound): pods "x" not found')
        self.assertTrue(is_already_exists(exists))
        self.assertTrue(is_already_absent(missing))
        self.assertFalse(is_already_exists(missing))

    def test_plain_exception_text_is_not_matched(self):
        self.assertFalse(is_already_exists(RuntimeError("already exists")))
        self.assertFalse(is_already_absent(RuntimeError("not found")))

    def test_pulumi_stack_errors(self):
        result = Mock(stdout="", stderr="", code=255)
        self.assertTrue(is_already_exists(auto.StackAlreadyExistsError(result)))
        self.assertTrue(is_already_absent(auto.StackNotFoundError(result)))


class TestEnsure(unittest.TestCase):
    """Test create-if-absent steps"""

    def test_created(self):
        report = RunReport()
        action = Mock()
        result = ensure("repository", action, report)
        action.assert_called_once_with()
        self.assertEqual(result.status, StepStatus.CREATED)
        self.assertTrue(report.ok)

    def test_already_exists_is_success(self):
        report = RunReport()
        result = ensure("stack", raising(client_error("AlreadyExistsException")), report)
        self.assertEqual(result.status, StepStatus.EXISTED)
        self.assertTrue(report.ok)

    def test_other_error_is_fatal(self):
        report = RunReport()
        with self.assertRaises(StepFailedError) as ctx:
            ensure("stack", raising(client_error("AccessDenied")), report)
        self.assertEqual(ctx.exception.name, "stack")
        self.assertEqual(report.failures[0].name, "stack")

    def test_non_fatal_records_failure(self):
        report = RunReport()
        result = ensure("push ad", raising(RuntimeError("boom")), report, fatal=False)
        self.assertEqual(result.status, StepStatus.FAILED)
        self.assertFalse(report.ok)

    def test_second_run_is_clean(self):
        calls = {"count": 0}

        def create():
            calls["count"] += 1
            if calls["count"] > 1:
                raise client_error("EntityAlreadyExists")

        first, second = RunReport(), RunReport()
        ensure("policy", create, first)
        ensure("policy", create, second)
        self.assertTrue(second.ok)
        self.assertEqual(second.results[0].status, StepStatus.EXISTED)


class TestRemove(unittest.TestCase):
    """Test delete-if-present steps"""

    def test_deleted(self):
        report = RunReport()
        self.assertEqual(remove("policy", Mock(), report).status, StepStatus.DELETED)

    def test_absent_is_success(self):
        report = RunReport()
        result = remove("policy", raising(client_error("NoSuchEntity")), report)
        self.assertEqual(result.status, StepStatus.ABSENT)
        self.assertTrue(report.ok)

    def test_failure_is_recorded_not_raised(self):
        report = RunReport()
        result = remove("policy", raising(client_error("DeleteConflict", "attached")), report)
        self.assertEqual(result.status, StepStatus.FAILED)
        self.assertIn("attached", result.detail)
        self.assertEqual(report.names(), ["policy"])


if __name__ == "__main__":
    unittest.main(verbosity=2)
