"""
Unit tests for the Pulumi layer modules
Tests the function-based approach for creating resources
"""

import json
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock, Mock, patch
import sys
import os

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from botocore.exceptions import ClientError

from modules.account.functions import create_account_resources, irsa_bindings
from modules.cluster.functions import create_cluster_resources, storage_class_specs
from modules.edge.functions import create_edge_resources
from modules.namespaces.functions import create_namespace_resources, secret_provider_specs
from modules.observability.functions import create_observability_resources, dashboard_files
from modules.provider import build_kubeconfig, create_kubernetes_provider
from modules.registry.functions import create_registry_resources, local_image, repository_name
from modules.resource_utils import (
    OWNER_TAG,
    check_iam_policy,
    check_secret,
    derive_oidc_issuer,
    get_or_create_policy,
    irsa_assume_role_policy,
)
from modules.workload.functions import create_workload_resources, demo_values, ingress_annotations

SECRET_NAMES = {
    "master_password": "otel-demo/rds/master-password",
    "app_credentials": "otel-demo/rds/app-credentials",
    "grafana_admin": "otel-demo/grafana/admin-credentials",
    "connection_string": "otel-demo/rds/connection-string",
}

ROLE_ARNS = {
    "load_balancer_controller": "arn:aws:iam::123456789012:role/lbc",
    "cluster_autoscaler": "arn:aws:iam::123456789012:role/autoscaler",
    "ebs_csi_driver": "arn:aws:iam::123456789012:role/ebs",
    "otel_demo_secrets": "arn:aws:iam::123456789012:role/secrets",
    "grafana_secrets": "arn:aws:iam::123456789012:role/grafana",
    "external_secrets": "arn:aws:iam::123456789012:role/eso",
}


def client_error(code):
    return ClientError({"Error": {"Code": code, "Message": code}}, "Operation")


class TestModuleFunctions(unittest.TestCase):
    """Test the function-based module approach"""

    def test_account_function_structure(self):
        """Test that the account function returns expected structure"""
        with patch('modules.account.functions.aws') as mock_aws, \
             patch('modules.account.functions.pulumi'), \
             patch('modules.account.functions.derive_oidc_issuer',
                   return_value="https://oidc.eks.us-east-1.amazonaws.com/id/ABC"), \
             patch('modules.account.functions.get_or_create_oidc_provider',
                   return_value={"arn": "arn:oidc", "created": True, "_provider": Mock()}), \
             patch('modules.account.functions.get_or_create_policy',
                   return_value={"arn": "arn:policy", "created": True, "_policy": Mock()}) as mock_policy, \
             patch('modules.account.functions.get_or_create_secret',
                   return_value={"arn": "arn:secret", "created": True}) as mock_secret, \
             patch('modules.account.functions.load_policy_document', return_value="{}"), \
             patch('modules.account.functions.irsa_assume_role_policy', return_value="{}"), \
             patch('modules.account.functions.owner_tags', side_effect=lambda tags: tags):
            mock_aws.iam.Role.return_value = Mock(arn="arn:role")

            result = create_account_resources(
                cluster_name="test-cluster",
                region="us-east-1",
                account_id="123456789012",
                namespace="otel-demo",
                secret_names=SECRET_NAMES,
                db_username="otelu",
                db_name="otel",
                db_password="dbpass",
                grafana_password="grafanapass"
            )

            self.assertIn("oidc_provider_arn", result)
            self.assertIn("role_arns", result)
            self.assertIn("policy_arns", result)
            self.assertIn("secret_arns", result)
            self.assertEqual(set(result["role_arns"]), {
                "load_balancer_controller", "cluster_autoscaler", "ebs_csi_driver",
                "otel_demo_secrets", "grafana_secrets"
            })
            self.assertEqual(mock_policy.call_count, 3)
            self.assertEqual(mock_secret.call_count, 4)
            self.assertEqual(mock_aws.iam.Role.call_count, 5)

    def test_account_external_secrets(self):
        """Test that external secrets adds a policy, a role and a secret"""
        with patch('modules.account.functions.aws') as mock_aws, \
             patch('modules.account.functions.pulumi'), \
             patch('modules.account.functions.derive_oidc_issuer', return_value="https://oidc"), \
             patch('modules.account.functions.get_or_create_oidc_provider', return_value={"arn": "arn:oidc"}), \
             patch('modules.account.functions.get_or_create_policy',
                   return_value={"arn": "arn:policy", "created": False}) as mock_policy, \
             patch('modules.account.functions.get_or_create_secret',
                   return_value={"arn": "arn:secret"}) as mock_secret, \
             patch('modules.account.functions.load_policy_document', return_value="{}"), \
             patch('modules.account.functions.irsa_assume_role_policy', return_value="{}"), \
             patch('modules.account.functions.owner_tags', side_effect=lambda tags: tags):
            mock_aws.iam.Role.return_value = Mock()

            result = create_account_resources(
                "test-cluster", "us-east-1", "123456789012", "otel-demo", SECRET_NAMES,
                "otelu", "otel", "dbpass", "grafanapass", enable_external_secrets=True
            )

            self.assertIn("external_secrets", result["role_arns"])
            self.assertEqual(mock_policy.call_count, 4)
            self.assertEqual(mock_secret.call_count, 5)
            secret_names = [call.args[1] for call in mock_secret.call_args_list]
            self.assertIn("otel-demo/postgresql-password", secret_names)
            self.assertEqual(result["policies_created"], [])

    def test_account_requires_oidc_issuer(self):
        with patch('modules.account.functions.aws'), \
             patch('modules.account.functions.derive_oidc_issuer', return_value=None):
            with self.assertRaises(Exception):
                create_account_resources("test-cluster", "us-east-1", "123456789012", "otel-demo",
                                         SECRET_NAMES, "otelu", "otel", "dbpass", "grafanapass")

    def test_irsa_bindings(self):
        bindings = {b["service_account"]: b for b in irsa_bindings("otel-demo")}
        self.assertEqual(bindings["aws-load-balancer-controller"]["namespace"], "kube-system")
        self.assertEqual(bindings["otel-demo-secrets-sa"]["namespace"], "otel-demo")
        self.assertEqual(bindings["grafana-secrets-sa"]["policy"], "secrets_manager")
        self.assertNotIn("external-secrets", bindings)

    def test_cluster_function_structure(self):
        """Test that the cluster function returns expected structure"""
        with patch('modules.cluster.functions.k8s') as mock_k8s, \
             patch('modules.cluster.functions.pulumi'), \
             patch('modules.cluster.functions.create_kubernetes_provider') as mock_provider:
            mock_k8s.helm.v3.Release.return_value = Mock()

            result = create_cluster_resources(
                cluster_name="test-cluster",
                region="us-east-1",
                vpc_id="vpc-12345",
                role_arns=ROLE_ARNS
            )

            self.assertIn("load_balancer_controller_status", result)
            self.assertIn("cluster_autoscaler_status", result)
            self.assertIn("ebs_csi_driver_status", result)
            self.assertIn("secrets_store_csi_driver_status", result)
            self.assertEqual(result["external_secrets_status"], "❌ Disabled")
            self.assertEqual(result["storage_class_names"], ["gp3-ssd-retain", "io1-ssd-retain"])
            mock_provider.assert_called_once_with("test-cluster-cluster", "test-cluster", "us-east-1", None)

            charts = [call.kwargs["chart"] for call in mock_k8s.helm.v3.Release.call_args_list]
            self.assertEqual(charts, ["aws-load-balancer-controller", "cluster-autoscaler",
                                      "aws-ebs-csi-driver", "secrets-store-csi-driver"])
            lbc_values = mock_k8s.helm.v3.Release.call_args_list[0].kwargs["values"]
            self.assertEqual(lbc_values["vpcId"], "vpc-12345")
            self.assertFalse(lbc_values["serviceAccount"]["create"])

    def test_cluster_external_secrets_operator(self):
        with patch('modules.cluster.functions.k8s') as mock_k8s, \
             patch('modules.cluster.functions.pulumi'), \
             patch('modules.cluster.functions.create_kubernetes_provider'):
            result = create_cluster_resources("test-cluster", "us-east-1", "vpc-12345", ROLE_ARNS,
                                              enable_external_secrets=True)

            self.assertEqual(result["external_secrets_status"], "✅ Enabled")
            charts = [call.kwargs["chart"] for call in mock_k8s.helm.v3.Release.call_args_list]
            self.assertIn("external-secrets", charts)

    def test_storage_classes_are_retained_ebs(self):
        specs = {spec["name"]: spec for spec in storage_class_specs()}
        self.assertEqual(specs["gp3-ssd-retain"]["parameters"]["type"], "gp3")
        self.assertEqual(specs["io1-ssd-retain"]["parameters"]["iops"], "3000")

    def test_namespaces_function_structure(self):
        """Test that the namespaces function returns expected structure"""
        with patch('modules.namespaces.functions.k8s') as mock_k8s, \
             patch('modules.namespaces.functions.pulumi'), \
             patch('modules.namespaces.functions.create_kubernetes_provider'), \
             patch('modules.namespaces.functions.create_service_account') as mock_sa:
            result = create_namespace_resources(
                cluster_name="test-cluster",
                region="us-east-1",
                namespace="otel-demo",
                role_arns=ROLE_ARNS,
                secret_names=SECRET_NAMES
            )

            self.assertIn("namespace_name", result)
            self.assertEqual(result["service_account_names"], ["otel-demo-secrets-sa", "grafana-secrets-sa"])
            self.assertEqual(result["secret_provider_class_names"], ["db-credentials", "grafana-credentials"])
            self.assertIsNone(result["_external_secret"])
            self.assertEqual(mock_sa.call_count, 2)
            self.assertEqual(mock_sa.call_args_list[0].args[3], ROLE_ARNS["otel_demo_secrets"])
            self.assertEqual(mock_k8s.apiextensions.CustomResource.call_count, 2)

    def test_namespaces_external_secrets(self):
        with patch('modules.namespaces.functions.k8s') as mock_k8s, \
             patch('modules.namespaces.functions.pulumi'), \
             patch('modules.namespaces.functions.create_kubernetes_provider'), \
             patch('modules.namespaces.functions.create_service_account'):
            result = create_namespace_resources("test-cluster", "us-east-1", "otel-demo", ROLE_ARNS,
                                                SECRET_NAMES, enable_external_secrets=True)

            self.assertIn("external-secrets", result["service_account_names"])
            kinds = [call.kwargs["kind"] for call in mock_k8s.apiextensions.CustomResource.call_args_list]
            self.assertEqual(kinds, ["SecretProviderClass", "SecretProviderClass",
                                     "SecretStore", "ExternalSecret"])

    def test_secret_provider_specs(self):
        specs = {spec["secret_name"]: spec for spec in secret_provider_specs(SECRET_NAMES)}
        self.assertEqual(specs["db-credentials"]["service_account"], "otel-demo-secrets-sa")
        self.assertEqual(specs["db-credentials"]["keys"], ["connectionString", "username", "password"])
        objects = [o["objectName"] for o in specs["grafana-admin"]["objects"]]
        self.assertEqual(objects, [SECRET_NAMES["grafana_admin"]])

    def test_workload_function_structure(self):
        """Test that the workload function returns expected structure"""
        with patch('modules.workload.functions.k8s') as mock_k8s, \
             patch('modules.workload.functions.pulumi'), \
             patch('modules.workload.functions.create_kubernetes_provider'):
            result = create_workload_resources(
                cluster_name="test-cluster",
                region="us-east-1",
                namespace="otel-demo",
                rds_endpoint="db.example.rds.amazonaws.com",
                db_name="otel",
                db_username="otelu"
            )

            self.assertIn("release_name", result)
            self.assertEqual(result["ingress_name"], "otel-demo-ingress")
            self.assertFalse(result["https_enabled"])
            self.assertEqual(len(result["network_policy_names"]), 5)
            service_spec = mock_k8s.core.v1.ServiceSpecArgs.call_args.kwargs
            self.assertEqual(service_spec["type"], "ExternalName")
            self.assertEqual(service_spec["external_name"], "db.example.rds.amazonaws.com")

    def test_workload_without_network_policies(self):
        with patch('modules.workload.functions.k8s') as mock_k8s, \
             patch('modules.workload.functions.pulumi'), \
             patch('modules.workload.functions.create_kubernetes_provider'):
            result = create_workload_resources("test-cluster", "us-east-1", "otel-demo", "db", "otel", "otelu",
                                               certificate_arn="arn:cert", domain="shop.example.com",
                                               enable_network_policies=False)

            self.assertTrue(result["https_enabled"])
            self.assertEqual(result["network_policy_names"], [])
            mock_k8s.networking.v1.NetworkPolicy.assert_not_called()

    def test_ingress_annotations(self):
        plain = ingress_annotations()
        self.assertEqual(json.loads(plain["alb.ingress.kubernetes.io/listen-ports"]), [{"HTTP": 80}])
        self.assertNotIn("alb.ingress.kubernetes.io/certificate-arn", plain)

        tls = ingress_annotations("arn:cert")
        self.assertEqual(tls["alb.ingress.kubernetes.io/certificate-arn"], "arn:cert")
        self.assertEqual(tls["alb.ingress.kubernetes.io/ssl-redirect"], "443")

    def test_demo_values_use_rds(self):
        values = demo_values("otel", "otelu", 5433)
        self.assertFalse(values["components"]["postgresql"]["enabled"])
        env = {e["name"]: e for e in values["components"]["accounting"]["envOverrides"]}
        self.assertEqual(env["POSTGRES_PORT"]["value"], "5433")
        self.assertEqual(env["POSTGRES_PASSWORD"]["valueFrom"]["secretKeyRef"]["name"], "db-credentials")

    def test_edge_function_structure(self):
        """Test that the edge function returns expected structure"""
        with patch('modules.edge.functions.aws') as mock_aws, \
             patch('modules.edge.functions.pulumi'):
            mock_aws.acm.Certificate.return_value = MagicMock()

            result = create_edge_resources(domain="shop.example.com", hosted_zone_id="Z123")

            self.assertIn("certificate_arn", result)
            self.assertEqual(result["url"], "https://shop.example.com")
            self.assertFalse(result["alias_created"])
            self.assertEqual(mock_aws.route53.Record.call_count, 1)

    def test_edge_alias_record(self):
        with patch('modules.edge.functions.aws') as mock_aws, \
             patch('modules.edge.functions.pulumi'):
            mock_aws.acm.Certificate.return_value = MagicMock()

            result = create_edge_resources("shop.example.com", "Z123", alb_hostname="k8s-otel.elb.amazonaws.com")

            self.assertTrue(result["alias_created"])
            self.assertEqual(result["alb_hostname"], "k8s-otel.elb.amazonaws.com")
            alias = mock_aws.route53.Record.call_args_list[1].kwargs
            self.assertEqual(alias["type"], "A")
            self.assertEqual(alias["name"], "shop.example.com")
            mock_aws.route53.RecordAliasArgs.assert_called_once()

    def test_observability_function_structure(self):
        """Test that the observability function returns expected structure"""
        with patch('modules.observability.functions.k8s') as mock_k8s, \
             patch('modules.observability.functions.pulumi'), \
             patch('modules.observability.functions.create_kubernetes_provider'):
            result = create_observability_resources(
                cluster_name="test-cluster",
                region="us-east-1",
                grafana_password="grafanapass"
            )

            self.assertIn("namespace_name", result)
            self.assertEqual(result["prometheus_status"], "✅ Enabled")
            self.assertEqual(result["grafana_status"], "✅ Enabled")
            self.assertEqual(result["dashboards"], ["latency.json", "error-rate.json", "resource-util.json"])
            charts = [call.kwargs["chart"] for call in mock_k8s.helm.v3.Release.call_args_list]
            self.assertEqual(charts, ["kube-prometheus-stack", "grafana"])

    def test_dashboards_are_valid_json(self):
        for name, content in dashboard_files().items():
            with self.subTest(dashboard=name):
                self.assertIn("panels", json.loads(content))

    def test_registry_function_structure(self):
        """Test that the registry function returns expected structure"""
        with patch('modules.registry.functions.aws') as mock_aws, \
             patch('modules.registry.functions.check_ecr_repository', return_value=None), \
             patch('modules.registry.functions.owner_tags', side_effect=lambda tags: tags or {}):
            mock_aws.ecr.Repository.return_value = Mock(repository_url="url")

            result = create_registry_resources("us-east-1", "123456789012", services=["cart", "ad"])

            self.assertEqual(result["registry_url"], "123456789012.dkr.ecr.us-east-1.amazonaws.com")
            self.assertEqual(set(result["repository_urls"]), {"cart", "ad"})
            self.assertEqual(result["repositories_created"],
                             ["opentelemetry-demo-cart", "opentelemetry-demo-ad"])
            self.assertEqual(mock_aws.ecr.LifecyclePolicy.call_count, 2)

    def test_registry_references_foreign_repository(self):
        with patch('modules.registry.functions.aws') as mock_aws, \
             patch('modules.registry.functions.pulumi'), \
             patch('modules.registry.functions.check_ecr_repository', return_value=False):
            mock_aws.ecr.get_repository.return_value = Mock(repository_url="existing-url")

            result = create_registry_resources("us-east-1", "123456789012", services=["cart"])

            self.assertEqual(result["repository_urls"]["cart"], "existing-url")
            self.assertEqual(result["repositories_created"], [])
            mock_aws.ecr.Repository.assert_not_called()

    def test_local_images(self):
        self.assertEqual(local_image("cart"), "ghcr.io/open-telemetry/demo:latest-cart")
        self.assertEqual(local_image("opensearch"), "opentelemetry-demo-opensearch:latest")
        self.assertEqual(repository_name("cart"), "opentelemetry-demo-cart")


class TestResourceUtils(unittest.TestCase):
    """Test existence checks and get-or-create helpers"""

    def test_check_iam_policy_absent(self):
        with patch('modules.resource_utils.boto3') as mock_boto3:
            mock_boto3.client.return_value.get_policy.side_effect = client_error("NoSuchEntity")
            self.assertIsNone(check_iam_policy("arn:aws:iam::123456789012:policy/Test"))

    def test_check_iam_policy_ownership(self):
        with patch('modules.resource_utils.boto3') as mock_boto3, \
             patch('modules.resource_utils.pulumi') as mock_pulumi:
            mock_pulumi.get_stack.return_value = "account-otel-demo-cluster"
            iam = mock_boto3.client.return_value
            iam.list_policy_tags.return_value = {"Tags": [
                {"Key": OWNER_TAG, "Value": "account-otel-demo-cluster"}
            ]}
            self.assertTrue(check_iam_policy("arn:policy"))

            iam.list_policy_tags.return_value = {"Tags": []}
            self.assertFalse(check_iam_policy("arn:policy"))

    def test_check_iam_policy_other_errors_propagate(self):
        with patch('modules.resource_utils.boto3') as mock_boto3:
            mock_boto3.client.return_value.get_policy.side_effect = client_error("AccessDenied")
            with self.assertRaises(ClientError):
                check_iam_policy("arn:policy")

    def test_check_secret_restores_deleted(self):
        with patch('modules.resource_utils.boto3') as mock_boto3, \
             patch('modules.resource_utils.pulumi'):
            client = mock_boto3.client.return_value
            client.describe_secret.return_value = {"ARN": "arn:secret", "DeletedDate": "2026-01-01"}

            result = check_secret("otel-demo/rds/master-password", "us-east-1")

            self.assertEqual(result["arn"], "arn:secret")
            client.restore_secret.assert_called_once_with(SecretId="otel-demo/rds/master-password")

    def test_get_or_create_policy_references_foreign(self):
        with patch('modules.resource_utils.aws') as mock_aws, \
             patch('modules.resource_utils.pulumi'), \
             patch('modules.resource_utils.check_iam_policy', return_value=False):
            result = get_or_create_policy("res", "TestPolicy", "{}", "123456789012")

            self.assertFalse(result["created"])
            self.assertIsNone(result["_policy"])
            mock_aws.iam.Policy.assert_not_called()

    def test_get_or_create_policy_creates_when_absent(self):
        with patch('modules.resource_utils.aws') as mock_aws, \
             patch('modules.resource_utils.pulumi'), \
             patch('modules.resource_utils.check_iam_policy', return_value=None):
            mock_aws.iam.Policy.return_value = Mock(arn="arn:new")

            result = get_or_create_policy("res", "TestPolicy", "{}", "123456789012")

            self.assertTrue(result["created"])
            self.assertEqual(result["arn"], "arn:new")
            self.assertEqual(mock_aws.iam.Policy.call_args.kwargs["name"], "TestPolicy")

    def test_irsa_assume_role_policy(self):
        with patch('modules.resource_utils.pulumi') as mock_pulumi:
            mock_pulumi.Output.from_input.return_value.apply.side_effect = lambda f: f("arn:oidc")

            document = json.loads(irsa_assume_role_policy(
                "arn:oidc", "https://oidc.eks.us-east-1.amazonaws.com/id/ABC", "otel-demo", "otel-demo-secrets-sa"))

            statement = document["Statement"][0]
            self.assertEqual(statement["Principal"]["Federated"], "arn:oidc")
            condition = statement["Condition"]["StringEquals"]
            self.assertEqual(condition["oidc.eks.us-east-1.amazonaws.com/id/ABC:sub"],
                             "system:serviceaccount:otel-demo:otel-demo-secrets-sa")

    def test_derive_oidc_issuer(self):
        cluster = SimpleNamespace(identities=[SimpleNamespace(oidcs=[SimpleNamespace(issuer="https://oidc")])])
        self.assertEqual(derive_oidc_issuer(cluster), "https://oidc")
        self.assertIsNone(derive_oidc_issuer(SimpleNamespace(identities=[])))

    def test_kubeconfig_profile(self):
        kubeconfig = build_kubeconfig("test-cluster", "https://endpoint", "Q0E=", "us-east-1", "dev")
        self.assertIn("--profile", kubeconfig)
        self.assertIn("- dev", kubeconfig)
        self.assertNotIn("--profile", build_kubeconfig("test-cluster", "https://endpoint", "Q0E=", "us-east-1"))

    def test_provider_tolerates_deleted_cluster(self):
        with patch('modules.provider.aws') as mock_aws, \
             patch('modules.provider.k8s') as mock_k8s:
            mock_aws.eks.get_cluster.return_value = SimpleNamespace(
                endpoint="https://endpoint", certificate_authorities=[SimpleNamespace(data="Q0E=")])

            create_kubernetes_provider("workload-provider", "test-cluster", "us-east-1")

            kwargs = mock_k8s.Provider.call_args.kwargs
            self.assertTrue(kwargs["delete_unreachable"])
            self.assertIn("server: https://endpoint", kwargs["kubeconfig"])


if __name__ == "__main__":
    # Run the tests
    unittest.main(verbosity=2)
