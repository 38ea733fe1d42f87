"""
Unit tests for the layer engine
"""

import tempfile
import unittest
from unittest.mock import Mock, patch
import sys
import os

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pulumi import automation as auto

from config import Config
from lifecycle.layers import PROJECT_NAME, LayerEngine, LayerResult
from lifecycle.programs import PROGRAMS, export_outputs


class TestLayerEngine(unittest.TestCase):
    """Test stack naming, updates and destroys through the Automation API"""

    def setUp(self):
        self.state_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.state_dir.cleanup)
        self.config = Config({
            "CLUSTER_NAME": "demo",
            "PULUMI_BACKEND_URL": f"file://{self.state_dir.name}/state",
            "AWS_PROFILE": "ops",
        })
        self.builder = Mock(return_value=lambda: None)
        self.engine = LayerEngine(self.config, {"account": self.builder})

    def test_stack_name(self):
        self.assertEqual(self.engine.stack_name("account"), "account-demo")

    @patch('lifecycle.layers.auto')
    def test_up_returns_outputs_and_changes(self, mock_auto):
        stack = Mock()
        stack.up.return_value = Mock(
            summary=Mock(resource_changes={"create": 4}),
            outputs={"role_arns": Mock(value={"grafana_secrets": "arn:aws:iam::1:role/g"})},
        )
        mock_auto.create_or_select_stack.return_value = stack

        result = self.engine.up("account", account_id="123456789012")

        self.builder.assert_called_once_with(self.config, account_id="123456789012")
        kwargs = mock_auto.create_or_select_stack.call_args.kwargs
        self.assertEqual(kwargs["stack_name"], "account-demo")
        self.assertEqual(kwargs["project_name"], PROJECT_NAME)
        self.assertTrue(result.changed)
        self.assertEqual(result.outputs["role_arns"]["grafana_secrets"], "arn:aws:iam::1:role/g")
        self.assertEqual(stack.set_config.call_count, 2)
        self.assertTrue(os.path.isdir(os.path.join(self.state_dir.name, "state")))

    @patch('lifecycle.layers.auto')
    def test_destroy_removes_stack(self, mock_auto):
        stack = Mock()
        mock_auto.select_stack.return_value = stack
        self.engine.destroy("account")
        stack.destroy.assert_called_once()
        stack.workspace.remove_stack.assert_called_once_with("account-demo")
        env_vars = mock_auto.LocalWorkspaceOptions.call_args.kwargs["env_vars"]
        self.assertNotIn("PULUMI_K8S_DELETE_UNREACHABLE", env_vars)

    @patch('lifecycle.layers.auto')
    def test_destroy_without_cluster_drops_unreachable_resources(self, mock_auto):
        self.engine.destroy("account", delete_unreachable=True)
        env_vars = mock_auto.LocalWorkspaceOptions.call_args.kwargs["env_vars"]
        self.assertEqual(env_vars["PULUMI_K8S_DELETE_UNREACHABLE"], "true")
        mock_auto.select_stack.return_value.destroy.assert_called_once()

    @patch('lifecycle.layers.auto')
    def test_outputs_of_missing_layer(self, mock_auto):
        mock_auto.StackNotFoundError = auto.StackNotFoundError
        mock_auto.select_stack.side_effect = auto.StackNotFoundError(Mock(stdout="", stderr="", code=255))
        self.assertIsNone(self.engine.outputs("account"))

    def test_unchanged_result(self):
        self.assertFalse(LayerResult("account", changes={"same": 12}).changed)
        self.assertTrue(LayerResult("account", changes={"same": 11, "update": 1}).changed)


class TestPrograms(unittest.TestCase):
    """Test the layer program builders"""

    def test_every_layer_has_a_program(self):
        self.assertEqual(set(PROGRAMS), {"registry", "account", "cluster", "namespaces",
                                         "workload", "edge", "observability"})

    @patch('lifecycle.programs.pulumi')
    def test_export_skips_resource_references(self, mock_pulumi):
        export_outputs({"role_arns": {}, "policies_created": [], "_roles": object()})
        exported = [call.args[0] for call in mock_pulumi.export.call_args_list]
        self.assertEqual(exported, ["role_arns", "policies_created"])

    @patch('lifecycle.programs.export_outputs')
    @patch('lifecycle.programs.create_workload_resources')
    def test_workload_program_passes_certificate(self, mock_create, mock_export):
        config = Config({"DOMAIN": "shop.example.com", "HOSTED_ZONE_ID": "Z1"})
        program = PROGRAMS["workload"](config, rds_endpoint="db.example.com",
                                       certificate_arn="arn:aws:acm:us-east-1:1:certificate/x")
        mock_create.assert_not_called()
        program()
        kwargs = mock_create.call_args.kwargs
        self.assertEqual(kwargs["rds_endpoint"], "db.example.com")
        self.assertEqual(kwargs["domain"], "shop.example.com")
        mock_export.assert_called_once_with(mock_create.return_value)

    @patch('lifecycle.programs.export_outputs')
    @patch('lifecycle.programs.create_workload_resources')
    def test_workload_program_without_certificate_has_no_host(self, mock_create, mock_export):
        config = Config({"DOMAIN": "shop.example.com", "HOSTED_ZONE_ID": "Z1"})
        PROGRAMS["workload"](config, rds_endpoint="db.example.com")()
        self.assertIsNone(mock_create.call_args.kwargs["domain"])


if __name__ == "__main__":
    unittest.main(verbosity=2)
