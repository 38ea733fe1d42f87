"""
Namespaces Module Functions
Application namespace with quotas, IRSA service accounts and secret providers
"""

import json
import pulumi
import pulumi_kubernetes as k8s
from typing import Dict, List, Optional

from modules.cluster.functions import create_service_account
from modules.provider import create_kubernetes_provider


def create_namespace(name: str, provider: k8s.Provider) -> Dict[str, any]:
    """
    Create the application namespace with quota, limits and operator binding

    Args:
        name: Namespace name
        provider: Kubernetes provider

    Returns:
        Dict with namespace resources and outputs
    """
    namespace = k8s.core.v1.Namespace(
        f"{name}-namespace",
        metadata=k8s.meta.v1.ObjectMetaArgs(
            name=name,
            labels={
                "name": name,
                "managed-by": "pulumi"
            }
        ),
        opts=pulumi.ResourceOptions(provider=provider)
    )
    child_opts = pulumi.ResourceOptions(provider=provider, depends_on=[namespace])

    quota = k8s.core.v1.ResourceQuota(
        f"{name}-quota",
        metadata=k8s.meta.v1.ObjectMetaArgs(name=f"{name}-quota", namespace=name),
        spec=k8s.core.v1.ResourceQuotaSpecArgs(
            hard={
                "requests.cpu": "8",
                "requests.memory": "16Gi",
                "limits.cpu": "16",
                "limits.memory": "32Gi",
                "persistentvolumeclaims": "10"
            }
        ),
        opts=child_opts
    )

    limits = k8s.core.v1.LimitRange(
        f"{name}-limits",
        metadata=k8s.meta.v1.ObjectMetaArgs(name=f"{name}-limits", namespace=name),
        spec=k8s.core.v1.LimitRangeSpecArgs(
            limits=[k8s.core.v1.LimitRangeItemArgs(
                type="Container",
                default={"cpu": "500m", "memory": "512Mi"},
                default_request={"cpu": "50m", "memory": "64Mi"}
            )]
        ),
        opts=child_opts
    )

    operators = k8s.rbac.v1.RoleBinding(
        f"{name}-operators",
        metadata=k8s.meta.v1.ObjectMetaArgs(name="otel-demo-operators", namespace=name),
        subjects=[k8s.rbac.v1.SubjectArgs(
            kind="Group",
            name="otel-demo:operators",
            api_group="rbac.authorization.k8s.io"
        )],
        role_ref=k8s.rbac.v1.RoleRefArgs(
            kind="ClusterRole",
            name="otel-demo-operator",
            api_group="rbac.authorization.k8s.io"
        ),
        opts=child_opts
    )

    return {
        "namespace": namespace,
        "namespace_name": namespace.metadata.name,
        "quota": quota,
        "limits": limits,
        "operators": operators
    }


def secret_provider_specs(secret_names: Dict[str, str]) -> List[Dict[str, any]]:
    """
    SecretProviderClasses syncing Secrets Manager values into Kubernetes secrets

    Args:
        secret_names: Secrets Manager names keyed by purpose

    Returns:
        List of dicts with class name, target secret, service account and object mappings
    """
    return [
        {
            "name": "db-credentials",
            "secret_name": "db-credentials",
            "service_account": "otel-demo-secrets-sa",
            "objects": [
                {
                    "objectName": secret_names["connection_string"],
                    "objectType": "secretsmanager",
                    "jmesPath": [{"path": "connectionString", "objectAlias": "connectionString"}]
                },
                {
                    "objectName": secret_names["app_credentials"],
                    "objectType": "secretsmanager",
                    "jmesPath": [
                        {"path": "username", "objectAlias": "username"},
                        {"path": "password", "objectAlias": "password"}
                    ]
                },
            ],
            "keys": ["connectionString", "username", "password"],
        },
        {
            "name": "grafana-credentials",
            "secret_name": "grafana-admin",
            "service_account": "grafana-secrets-sa",
            "objects": [
                {
                    "objectName": secret_names["grafana_admin"],
                    "objectType": "secretsmanager",
                    "jmesPath": [
                        {"path": "username", "objectAlias": "admin-user"},
                        {"path": "password", "objectAlias": "admin-password"}
                    ]
                },
            ],
            "keys": ["admin-user", "admin-password"],
        },
    ]


def create_secret_provider_class(spec: Dict[str, any], namespace: str, region: str,
                                 opts: pulumi.ResourceOptions) -> k8s.apiextensions.CustomResource:
    """Create a SecretProviderClass for the AWS provider"""
    return k8s.apiextensions.CustomResource(
        f"{namespace}-{spec['name']}-spc",
        api_version="secrets-store.csi.x-k8s.io/v1",
        kind="SecretProviderClass",
        metadata=k8s.meta.v1.ObjectMetaArgs(name=spec["name"], namespace=namespace),
        spec={
            "provider": "aws",
            "parameters": {
                "region": region,
                # The AWS provider parses this field as YAML; JSON is valid YAML
                "objects": json.dumps(spec["objects"])
            },
            "secretObjects": [{
                "secretName": spec["secret_name"],
                "type": "Opaque",
                "data": [{"objectName": key, "key": key} for key in spec["keys"]]
            }]
        },
        opts=opts
    )


def create_external_secret(namespace: str, region: str, opts: pulumi.ResourceOptions) -> Dict[str, any]:
    """
    Create the SecretStore and ExternalSecret for the PostgreSQL password

    Args:
        namespace: Application namespace
        region: AWS region of the secret
        opts: Resource options (provider and dependencies)

    Returns:
        Dict with secret store resources
    """
    store = k8s.apiextensions.CustomResource(
        f"{namespace}-secretstore",
        api_version="external-secrets.io/v1beta1",
        kind="SecretStore",
        metadata=k8s.meta.v1.ObjectMetaArgs(name="aws-secretsmanager", namespace=namespace),
        spec={
            "provider": {
                "aws": {
                    "service": "SecretsManager",
                    "region": region,
                    "auth": {
                        "jwt": {"serviceAccountRef": {"name": "external-secrets"}}
                    }
                }
            }
        },
        opts=opts
    )

    external_secret = k8s.apiextensions.CustomResource(
        f"{namespace}-postgresql-externalsecret",
        api_version="external-secrets.io/v1beta1",
        kind="ExternalSecret",
        metadata=k8s.meta.v1.ObjectMetaArgs(name="postgresql-credentials", namespace=namespace),
        spec={
            "refreshInterval": "1h",
            "secretStoreRef": {"name": "aws-secretsmanager", "kind": "SecretStore"},
            "target": {"name": "postgresql-credentials", "creationPolicy": "Owner"},
            "data": [{
                "secretKey": "POSTGRES_PASSWORD",
                "remoteRef": {
                    "key": "otel-demo/postgresql-password",
                    "property": "POSTGRES_PASSWORD"
                }
            }]
        },
        opts=pulumi.ResourceOptions.merge(opts, pulumi.ResourceOptions(depends_on=[store]))
    )

    return {
        "secret_store": store,
        "external_secret": external_secret
    }


def create_namespace_resources(cluster_name: str,
                               region: str,
                               namespace: str,
                               role_arns: Dict[str, str],
                               secret_names: Dict[str, str],
                               profile: Optional[str] = None,
                               enable_external_secrets: bool = False) -> Dict[str, any]:
    """
    Create the application namespace and its secret plumbing

    Args:
        cluster_name: EKS cluster name
        region: AWS region
        namespace: Application namespace
        role_arns: IRSA role ARNs keyed by binding (from the account layer)
        secret_names: Secrets Manager names keyed by purpose
        profile: Optional AWS CLI profile for the provider
        enable_external_secrets: Create SecretStore and ExternalSecret

    Returns:
        Dict with namespace outputs and resources
    """
    k8s_provider = create_kubernetes_provider(f"{cluster_name}-namespaces", cluster_name, region, profile)
    namespace_result = create_namespace(namespace, k8s_provider)
    child_opts = pulumi.ResourceOptions(provider=k8s_provider, depends_on=[namespace_result["namespace"]])

    # IRSA service accounts
    service_accounts = {
        "otel-demo-secrets-sa": role_arns["otel_demo_secrets"],
        "grafana-secrets-sa": role_arns["grafana_secrets"],
    }
    if enable_external_secrets:
        service_accounts["external-secrets"] = role_arns["external_secrets"]

    sa_resources = {}
    for sa_name, role_arn in service_accounts.items():
        sa = create_service_account(sa_name, namespace, k8s_provider, role_arn,
                                    depends_on=[namespace_result["namespace"]])
        sa_resources[sa_name] = sa

    # Secret providers
    provider_classes = [
        create_secret_provider_class(spec, namespace, region, child_opts)
        for spec in secret_provider_specs(secret_names)
    ]

    external = None
    if enable_external_secrets:
        external = create_external_secret(
            namespace,
            region,
            pulumi.ResourceOptions(provider=k8s_provider,
                                   depends_on=[sa_resources["external-secrets"]])
        )

    return {
        "namespace_name": namespace_result["namespace_name"],
        "service_account_names": list(service_accounts.keys()),
        "secret_provider_class_names": [spec["name"] for spec in secret_provider_specs(secret_names)],
        # Keep references to resources for dependencies
        "_k8s_provider": k8s_provider,
        "_namespace": namespace_result["namespace"],
        "_service_accounts": sa_resources,
        "_secret_provider_classes": provider_classes,
        "_external_secret": external
    }
