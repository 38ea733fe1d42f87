"""
Layer programs
Inline Pulumi programs, one per layer stack, built from the modules package
"""

from typing import Any, Callable, Dict, Optional

import pulumi

from config import Config
from modules.account import create_account_resources
from modules.cluster import create_cluster_resources
from modules.edge import create_edge_resources
from modules.namespaces import create_namespace_resources
from modules.observability import create_observability_resources
from modules.registry import create_registry_resources
from modules.workload import create_workload_resources


def export_outputs(result: Dict[str, Any]) -> None:
    """Export every public key of a module result; keys starting with _ hold resources"""
    for key, value in result.items():
        if not key.startswith("_"):
            pulumi.export(key, value)


def registry_program(config: Config, account_id: str) -> Callable[[], None]:
    def program():
        export_outputs(create_registry_resources(
            region=config.aws_region,
            account_id=account_id,
            tags=config.common_tags
        ))
    return program


def account_program(config: Config, account_id: str, db_password: str,
                    grafana_password: str) -> Callable[[], None]:
    def program():
        export_outputs(create_account_resources(
            cluster_name=config.cluster_name,
            region=config.aws_region,
            account_id=account_id,
            namespace=config.namespace,
            secret_names=config.secret_names,
            db_username=config.db_username,
            db_name=config.db_name,
            db_password=pulumi.Output.secret(db_password),
            grafana_password=pulumi.Output.secret(grafana_password),
            enable_external_secrets=config.enable_external_secrets,
            tags=config.common_tags
        ))
    return program


def cluster_program(config: Config, vpc_id: str, role_arns: Dict[str, str]) -> Callable[[], None]:
    def program():
        export_outputs(create_cluster_resources(
            cluster_name=config.cluster_name,
            region=config.aws_region,
            vpc_id=vpc_id,
            role_arns=role_arns,
            profile=config.aws_profile,
            enable_external_secrets=config.enable_external_secrets
        ))
    return program


def namespaces_program(config: Config, role_arns: Dict[str, str]) -> Callable[[], None]:
    def program():
        export_outputs(create_namespace_resources(
            cluster_name=config.cluster_name,
            region=config.aws_region,
            namespace=config.namespace,
            role_arns=role_arns,
            secret_names=config.secret_names,
            profile=config.aws_profile,
            enable_external_secrets=config.enable_external_secrets
        ))
    return program


def workload_program(config: Config, rds_endpoint: str, rds_port: int = 5432,
                     certificate_arn: Optional[str] = None) -> Callable[[], None]:
    def program():
        export_outputs(create_workload_resources(
            cluster_name=config.cluster_name,
            region=config.aws_region,
            namespace=config.namespace,
            rds_endpoint=rds_endpoint,
            db_name=config.db_name,
            db_username=config.db_username,
            rds_port=rds_port,
            profile=config.aws_profile,
            certificate_arn=certificate_arn,
            domain=config.domain if certificate_arn else None,
            enable_network_policies=config.enable_network_policies
        ))
    return program


def edge_program(config: Config, alb_hostname: Optional[str] = None) -> Callable[[], None]:
    def program():
        export_outputs(create_edge_resources(
            domain=config.domain,
            hosted_zone_id=config.hosted_zone_id,
            alb_hostname=alb_hostname,
            tags=config.common_tags
        ))
    return program


def observability_program(config: Config, grafana_password: str) -> Callable[[], None]:
    def program():
        export_outputs(create_observability_resources(
            cluster_name=config.cluster_name,
            region=config.aws_region,
            grafana_password=pulumi.Output.secret(grafana_password),
            namespace=config.observability_namespace,
            profile=config.aws_profile
        ))
    return program


PROGRAMS = {
    "registry": registry_program,
    "account": account_program,
    "cluster": cluster_program,
    "namespaces": namespaces_program,
    "workload": workload_program,
    "edge": edge_program,
    "observability": observability_program,
}
