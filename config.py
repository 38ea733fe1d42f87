"""
Configuration management for the OpenTelemetry Demo EKS runbook
Environment variables are the single configuration surface
"""

import os
import secrets
import string
from pathlib import Path
from typing import Dict, List, Mapping, Optional

PROJECT_ROOT = Path(__file__).resolve().parent

TRUE_VALUES = ("true", "1", "yes", "on")


class ConfigError(ValueError):
    """Raised when an environment variable holds an unusable value"""


def parse_bool(value: Optional[str], default: bool = False) -> bool:
    """Parse a boolean environment value"""
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in TRUE_VALUES


def parse_int(name: str, value: Optional[str], default: int) -> int:
    """Parse an integer environment value, raising ConfigError when malformed"""
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}")


def generate_password(length: int = 32) -> str:
    """Generate an alphanumeric password accepted by RDS and Grafana"""
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


class Config:
    """Centralized configuration for the OpenTelemetry Demo deployment"""

    # Status waiter timeouts and intervals (seconds)
    STACK_TIMEOUT = 1800
    STACK_INTERVAL = 30
    POD_READY_ATTEMPTS = 20
    POD_READY_INTERVAL = 30
    ALB_ATTEMPTS = 10
    ALB_INTERVAL = 20
    POD_TERMINATION_TIMEOUT = 180
    POD_TERMINATION_INTERVAL = 5
    NAMESPACE_DELETE_TIMEOUT = 300
    NAMESPACE_DELETE_INTERVAL = 5
    SECRET_SYNC_TIMEOUT = 15

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        env = os.environ if environ is None else environ

        # AWS Configuration
        self.aws_region = env.get("AWS_REGION") or "us-east-1"
        self.aws_profile = env.get("AWS_PROFILE") or None
        self.aws_account_id = env.get("AWS_ACCOUNT_ID") or None

        # Cluster Configuration
        self.cluster_name = env.get("CLUSTER_NAME") or "otel-demo-cluster"
        self.kubernetes_version = env.get("KUBERNETES_VERSION") or "1.30"
        self.vpc_cidr = env.get("VPC_CIDR") or "10.0.0.0/16"
        self.skip_cluster_creation = parse_bool(env.get("SKIP_CLUSTER_CREATION"))

        # Node Configuration
        self.node_min_size = parse_int("NODE_MIN_SIZE", env.get("NODE_MIN_SIZE"), 3)
        self.node_desired_size = parse_int("NODE_DESIRED_SIZE", env.get("NODE_DESIRED_SIZE"), 4)
        self.node_max_size = parse_int("NODE_MAX_SIZE", env.get("NODE_MAX_SIZE"), 5)
        if not self.node_min_size <= self.node_desired_size <= self.node_max_size:
            raise ConfigError(
                "Node sizes must satisfy NODE_MIN_SIZE <= NODE_DESIRED_SIZE <= NODE_MAX_SIZE"
            )

        # Database Configuration
        self.db_password = env.get("DB_PASSWORD") or None
        self.pg_version = env.get("PG_VERSION") or "15.14"
        self.db_name = "otel"
        self.db_username = "otelu"
        self.skip_rds_seeding = parse_bool(env.get("SKIP_RDS_SEEDING"))

        # Application Configuration
        self.namespace = env.get("NAMESPACE") or "otel-demo"
        self.observability_namespace = "observability"
        self.grafana_password = env.get("GRAFANA_PASSWORD") or None
        self.image_version = env.get("IMAGE_VERSION") or "1.0.0"

        # TLS / DNS
        self.domain = env.get("DOMAIN") or None
        self.hosted_zone_id = env.get("HOSTED_ZONE_ID") or None
        if bool(self.domain) != bool(self.hosted_zone_id):
            raise ConfigError("DOMAIN and HOSTED_ZONE_ID must be set together")

        # Hardening
        self.enable_external_secrets = parse_bool(env.get("ENABLE_EXTERNAL_SECRETS"))
        self.enable_network_policies = parse_bool(env.get("ENABLE_NETWORK_POLICIES"), default=True)

        # Pulumi state backend
        default_backend = "file://" + str(Path.home() / ".otel-demo-eks" / "state")
        self.pulumi_backend_url = env.get("PULUMI_BACKEND_URL") or default_backend
        self.pulumi_passphrase = env.get("PULUMI_CONFIG_PASSPHRASE") or ""

        # Logging
        self.log_level = (env.get("OTEL_EKS_LOG_LEVEL") or "INFO").upper()

    @property
    def stack_name(self) -> str:
        """CloudFormation stack owning network, cluster and database"""
        return f"{self.cluster_name}-stack"

    @property
    def tls_enabled(self) -> bool:
        return bool(self.domain and self.hosted_zone_id)

    @property
    def common_tags(self) -> Dict[str, str]:
        """Get common tags for all resources"""
        return {
            "Environment": "demo",
            "Cluster": self.cluster_name,
            "Project": "otel-demo-eks",
            "ManagedBy": "pulumi",
        }

    @property
    def secret_names(self) -> Dict[str, str]:
        """Secrets Manager names keyed by purpose"""
        return {
            "master_password": "otel-demo/rds/master-password",
            "app_credentials": "otel-demo/rds/app-credentials",
            "grafana_admin": "otel-demo/grafana/admin-credentials",
            "connection_string": "otel-demo/rds/connection-string",
        }

    @property
    def app_namespaces(self) -> List[str]:
        """Namespaces holding workloads that must drain before teardown"""
        return [self.namespace, self.observability_namespace]

    def ecr_registry(self, account_id: str) -> str:
        return f"{account_id}.dkr.ecr.{self.aws_region}.amazonaws.com"

    def kube_context(self, account_id: str) -> str:
        """Context name written by `aws eks update-kubeconfig`"""
        return f"arn:aws:eks:{self.aws_region}:{account_id}:cluster/{self.cluster_name}"

    def aws_cli_env(self) -> Dict[str, str]:
        """Environment for child processes that call AWS"""
        env = dict(os.environ)
        env["AWS_REGION"] = self.aws_region
        env["AWS_DEFAULT_REGION"] = self.aws_region
        if self.aws_profile:
            env["AWS_PROFILE"] = self.aws_profile
        return env


def get_config(environ: Optional[Mapping[str, str]] = None) -> Config:
    """Get the configuration instance for this invocation"""
    return Config(environ)
