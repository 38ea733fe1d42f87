"""
Account Module Functions
IAM OIDC provider, IAM policies, IRSA roles and Secrets Manager secrets
"""

import json
import pulumi
import pulumi_aws as aws
from typing import Dict, List, Optional

from modules.resource_utils import (
    derive_oidc_issuer,
    get_or_create_oidc_provider,
    get_or_create_policy,
    get_or_create_secret,
    irsa_assume_role_policy,
    load_policy_document,
    owner_tags,
)

EBS_CSI_MANAGED_POLICY_ARN = "arn:aws:iam::aws:policy/service-role/AmazonEBSCSIDriverPolicy"

# Customer managed policies, keyed by short name
POLICY_NAMES = {
    "load_balancer_controller": "AWSLoadBalancerControllerIAMPolicy",
    "cluster_autoscaler": "AmazonEKSClusterAutoscalerPolicy",
    "secrets_manager": "OtelDemoSecretsManagerPolicy",
    "external_secrets": "ExternalSecretsPolicy",
}


def irsa_bindings(namespace: str, enable_external_secrets: bool = False) -> List[Dict[str, str]]:
    """
    Service accounts that assume an IAM role

    Args:
        namespace: Application namespace
        enable_external_secrets: Include the External Secrets Operator binding

    Returns:
        List of dicts with key, role_name, namespace, service_account and policy
    """
    bindings = [
        {
            "key": "load_balancer_controller",
            "role_name": "AmazonEKSLoadBalancerControllerRole",
            "namespace": "kube-system",
            "service_account": "aws-load-balancer-controller",
            "policy": "load_balancer_controller",
        },
        {
            "key": "cluster_autoscaler",
            "role_name": "AmazonEKSClusterAutoscalerRole",
            "namespace": "kube-system",
            "service_account": "cluster-autoscaler",
            "policy": "cluster_autoscaler",
        },
        {
            "key": "ebs_csi_driver",
            "role_name": "AmazonEKS_EBS_CSI_DriverRole",
            "namespace": "kube-system",
            "service_account": "ebs-csi-controller-sa",
            "policy": "ebs_csi_driver",
        },
        {
            "key": "otel_demo_secrets",
            "role_name": "OtelDemoSecretsManagerRole",
            "namespace": namespace,
            "service_account": "otel-demo-secrets-sa",
            "policy": "secrets_manager",
        },
        {
            "key": "grafana_secrets",
            "role_name": "GrafanaSecretsManagerRole",
            "namespace": namespace,
            "service_account": "grafana-secrets-sa",
            "policy": "secrets_manager",
        },
    ]
    if enable_external_secrets:
        bindings.append({
            "key": "external_secrets",
            "role_name": "ExternalSecretsRole",
            "namespace": namespace,
            "service_account": "external-secrets",
            "policy": "external_secrets",
        })
    return bindings


def create_irsa_role(resource_name: str, role_name: str, oidc_provider_arn: 'pulumi.Input[str]',
                     oidc_issuer: str, namespace: str, service_account: str,
                     policy_arn: 'pulumi.Input[str]', tags: Dict[str, str] = None) -> Dict[str, any]:
    """
    Create an IAM role assumable by one Kubernetes service account

    Args:
        resource_name: Pulumi resource name prefix
        role_name: IAM role name
        oidc_provider_arn: ARN of the cluster's IAM OIDC provider
        oidc_issuer: Cluster OIDC issuer URL
        namespace: Service account namespace
        service_account: Service account name
        policy_arn: Policy attached to the role
        tags: Additional tags

    Returns:
        Dict with role resource and outputs
    """
    role = aws.iam.Role(
        resource_name,
        name=role_name,
        assume_role_policy=irsa_assume_role_policy(oidc_provider_arn, oidc_issuer,
                                                   namespace, service_account),
        tags=owner_tags({**(tags or {}), "ServiceAccount": f"{namespace}/{service_account}"}),
    )

    attachment = aws.iam.RolePolicyAttachment(
        f"{resource_name}-policy",
        role=role.name,
        policy_arn=policy_arn,
    )

    return {
        "role": role,
        "attachment": attachment,
        "role_arn": role.arn,
        "role_name": role.name,
    }


def secret_payloads(db_username: str, db_password: 'pulumi.Input[str]', db_name: str,
                    grafana_password: 'pulumi.Input[str]',
                    enable_external_secrets: bool = False) -> Dict[str, 'pulumi.Output[str]']:
    """JSON payloads of the Secrets Manager secrets, keyed by purpose"""
    credentials = pulumi.Output.all(db_password, grafana_password)
    payloads = {
        "master_password": credentials.apply(
            lambda args: json.dumps({"password": args[0]})),
        "app_credentials": credentials.apply(
            lambda args: json.dumps({"username": db_username, "password": args[0]})),
        "grafana_admin": credentials.apply(
            lambda args: json.dumps({"username": "admin", "password": args[1]})),
        "connection_string": credentials.apply(
            lambda args: json.dumps({
                "connectionString": f"Host=postgresql;Username={db_username};Password={args[0]};Database={db_name}"
            })),
    }
    if enable_external_secrets:
        payloads["postgresql_password"] = credentials.apply(
            lambda args: json.dumps({"POSTGRES_PASSWORD": args[0]}))
    return {key: pulumi.Output.secret(value) for key, value in payloads.items()}


SECRET_DESCRIPTIONS = {
    "master_password": "RDS PostgreSQL master password",
    "app_credentials": "RDS PostgreSQL application user credentials",
    "grafana_admin": "Grafana admin user credentials",
    "connection_string": "RDS PostgreSQL connection string",
    "postgresql_password": "PostgreSQL password for External Secrets",
}


def create_account_resources(cluster_name: str,
                             region: str,
                             account_id: str,
                             namespace: str,
                             secret_names: Dict[str, str],
                             db_username: str,
                             db_name: str,
                             db_password: 'pulumi.Input[str]',
                             grafana_password: 'pulumi.Input[str]',
                             enable_external_secrets: bool = False,
                             tags: Dict[str, str] = None) -> Dict[str, any]:
    """
    Create account-scoped resources for the cluster

    Args:
        cluster_name: EKS cluster name
        region: AWS region
        account_id: AWS account id
        namespace: Application namespace
        secret_names: Secrets Manager names keyed by purpose
        db_username: RDS master username
        db_name: Application database name
        db_password: RDS master password
        grafana_password: Grafana admin password
        enable_external_secrets: Create External Secrets Operator policy, role and secret
        tags: Additional tags

    Returns:
        Dict with role ARNs, policy ARNs, secret ARNs and resources
    """
    tags = tags or {}

    # 1. OIDC provider for IRSA
    cluster_info = aws.eks.get_cluster(name=cluster_name)
    oidc_issuer = derive_oidc_issuer(cluster_info)
    if not oidc_issuer:
        raise Exception(f"Unable to determine OIDC issuer for cluster {cluster_name}")
    oidc = get_or_create_oidc_provider(f"{cluster_name}-oidc-provider", oidc_issuer, account_id, tags)

    # 2. Customer managed policies
    policy_keys = ["load_balancer_controller", "cluster_autoscaler", "secrets_manager"]
    if enable_external_secrets:
        policy_keys.append("external_secrets")

    policies = {}
    for key in policy_keys:
        policy_name = POLICY_NAMES[key]
        policies[key] = get_or_create_policy(
            f"{cluster_name}-{key.replace('_', '-')}-policy",
            policy_name,
            load_policy_document(policy_name),
            account_id,
            tags,
        )
    policy_arns = {key: result["arn"] for key, result in policies.items()}
    policy_arns["ebs_csi_driver"] = pulumi.Output.from_input(EBS_CSI_MANAGED_POLICY_ARN)

    # 3. IRSA roles
    roles = {}
    for binding in irsa_bindings(namespace, enable_external_secrets):
        roles[binding["key"]] = create_irsa_role(
            f"{cluster_name}-{binding['key'].replace('_', '-')}-role",
            binding["role_name"],
            oidc["arn"],
            oidc_issuer,
            binding["namespace"],
            binding["service_account"],
            policy_arns[binding["policy"]],
            tags,
        )

    # 4. Secrets Manager
    payloads = secret_payloads(db_username, db_password, db_name, grafana_password,
                               enable_external_secrets)
    names = dict(secret_names)
    if enable_external_secrets:
        names["postgresql_password"] = "otel-demo/postgresql-password"

    secrets = {}
    for key, payload in payloads.items():
        secrets[key] = get_or_create_secret(
            f"{cluster_name}-{key.replace('_', '-')}-secret",
            names[key],
            SECRET_DESCRIPTIONS[key],
            payload,
            region,
            tags,
        )

    return {
        "oidc_provider_arn": oidc["arn"],
        "oidc_issuer": oidc_issuer,
        "role_arns": {key: role["role_arn"] for key, role in roles.items()},
        "policy_arns": policy_arns,
        "secret_arns": {key: secret["arn"] for key, secret in secrets.items()},
        "policies_created": [POLICY_NAMES[k] for k, r in policies.items() if r["created"]],
        # Keep references to resources for dependencies
        "_oidc_provider": oidc.get("_provider"),
        "_roles": roles,
        "_policies": policies,
        "_secrets": secrets,
    }
