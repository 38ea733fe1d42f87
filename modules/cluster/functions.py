"""
Cluster Module Functions
Cluster-scoped add-ons: governance, kube-system Helm releases and StorageClasses
"""

import pulumi
import pulumi_kubernetes as k8s
from typing import Dict, List, Optional

from config import PROJECT_ROOT
from modules.provider import create_kubernetes_provider

SECRETS_STORE_AWS_PROVIDER_URL = (
    "https://raw.githubusercontent.com/aws/secrets-store-csi-driver-provider-aws/"
    "main/deployment/aws-provider-installer.yaml"
)

IRSA_ANNOTATION = "eks.amazonaws.com/role-arn"


def create_service_account(name: str, namespace: str, provider: k8s.Provider,
                           role_arn: 'pulumi.Input[str]' = None,
                           depends_on: List[pulumi.Resource] = None) -> k8s.core.v1.ServiceAccount:
    """
    Create a service account, annotated for IRSA when a role is given

    Args:
        name: Service account name
        namespace: Service account namespace
        provider: Kubernetes provider
        role_arn: IAM role assumed by pods using the account
        depends_on: Resources to create first (the namespace)

    Returns:
        ServiceAccount resource
    """
    annotations = {IRSA_ANNOTATION: role_arn} if role_arn else None
    return k8s.core.v1.ServiceAccount(
        f"{namespace}-{name}",
        metadata=k8s.meta.v1.ObjectMetaArgs(
            name=name,
            namespace=namespace,
            annotations=annotations,
            labels={"managed-by": "pulumi"}
        ),
        opts=pulumi.ResourceOptions(provider=provider, depends_on=depends_on)
    )


def apply_governance(provider: k8s.Provider) -> k8s.yaml.ConfigFile:
    """Apply cluster-scoped RBAC and priority classes"""
    return k8s.yaml.ConfigFile(
        "governance",
        file=str(PROJECT_ROOT / "manifests" / "governance.yaml"),
        opts=pulumi.ResourceOptions(provider=provider)
    )


def deploy_load_balancer_controller(cluster_name: str, region: str, vpc_id: str,
                                    role_arn: 'pulumi.Input[str]',
                                    provider: k8s.Provider) -> Dict[str, any]:
    """
    Deploy AWS Load Balancer Controller using Helm

    Args:
        cluster_name: EKS cluster name
        region: AWS region
        vpc_id: Cluster VPC id
        role_arn: IRSA role for the controller
        provider: Kubernetes provider

    Returns:
        Dict with controller resources
    """
    service_account = create_service_account("aws-load-balancer-controller", "kube-system",
                                             provider, role_arn)
    release = k8s.helm.v3.Release(
        "aws-load-balancer-controller",
        repository_opts=k8s.helm.v3.RepositoryOptsArgs(
            repo="https://aws.github.io/eks-charts"
        ),
        chart="aws-load-balancer-controller",
        name="aws-load-balancer-controller",
        namespace="kube-system",
        values={
            "clusterName": cluster_name,
            "serviceAccount": {
                "create": False,
                "name": "aws-load-balancer-controller"
            },
            "region": region,
            "vpcId": vpc_id
        },
        opts=pulumi.ResourceOptions(provider=provider, depends_on=[service_account])
    )

    return {
        "release": release,
        "service_account": service_account,
        "status": "✅ Enabled"
    }


def deploy_cluster_autoscaler(cluster_name: str, region: str, role_arn: 'pulumi.Input[str]',
                              provider: k8s.Provider) -> Dict[str, any]:
    """
    Deploy Cluster Autoscaler using Helm with ASG auto-discovery

    Args:
        cluster_name: EKS cluster name
        region: AWS region
        role_arn: IRSA role for the autoscaler
        provider: Kubernetes provider

    Returns:
        Dict with autoscaler resources
    """
    service_account = create_service_account("cluster-autoscaler", "kube-system", provider, role_arn)
    release = k8s.helm.v3.Release(
        "cluster-autoscaler",
        repository_opts=k8s.helm.v3.RepositoryOptsArgs(
            repo="https://kubernetes.github.io/autoscaler"
        ),
        chart="cluster-autoscaler",
        name="cluster-autoscaler",
        namespace="kube-system",
        values={
            "autoDiscovery": {"clusterName": cluster_name},
            "awsRegion": region,
            "rbac": {
                "serviceAccount": {
                    "create": False,
                    "name": "cluster-autoscaler"
                }
            }
        },
        opts=pulumi.ResourceOptions(provider=provider, depends_on=[service_account])
    )

    return {
        "release": release,
        "service_account": service_account,
        "status": "✅ Enabled"
    }


def deploy_ebs_csi_driver(role_arn: 'pulumi.Input[str]', provider: k8s.Provider) -> Dict[str, any]:
    """
    Deploy the EBS CSI driver using Helm

    Args:
        role_arn: IRSA role for the controller service account
        provider: Kubernetes provider

    Returns:
        Dict with driver resources
    """
    controller_sa = create_service_account("ebs-csi-controller-sa", "kube-system", provider, role_arn)
    node_sa = create_service_account("ebs-csi-node-sa", "kube-system", provider)
    release = k8s.helm.v3.Release(
        "aws-ebs-csi-driver",
        repository_opts=k8s.helm.v3.RepositoryOptsArgs(
            repo="https://kubernetes-sigs.github.io/aws-ebs-csi-driver"
        ),
        chart="aws-ebs-csi-driver",
        name="aws-ebs-csi-driver",
        namespace="kube-system",
        values={
            "controller": {
                "serviceAccount": {"create": False, "name": "ebs-csi-controller-sa"}
            },
            "node": {
                "serviceAccount": {"create": False, "name": "ebs-csi-node-sa"}
            }
        },
        opts=pulumi.ResourceOptions(provider=provider, depends_on=[controller_sa, node_sa])
    )

    return {
        "release": release,
        "service_accounts": [controller_sa, node_sa],
        "status": "✅ Enabled"
    }


def deploy_secrets_store_csi_driver(provider: k8s.Provider) -> Dict[str, any]:
    """
    Deploy the Secrets Store CSI driver with the AWS provider

    Args:
        provider: Kubernetes provider

    Returns:
        Dict with driver resources
    """
    release = k8s.helm.v3.Release(
        "csi-secrets-store",
        repository_opts=k8s.helm.v3.RepositoryOptsArgs(
            repo="https://kubernetes-sigs.github.io/secrets-store-csi-driver/charts"
        ),
        chart="secrets-store-csi-driver",
        name="csi-secrets-store",
        namespace="kube-system",
        values={
            "syncSecret": {"enabled": True},
            "enableSecretRotation": True
        },
        opts=pulumi.ResourceOptions(provider=provider)
    )

    aws_provider = k8s.yaml.ConfigFile(
        "secrets-store-aws-provider",
        file=SECRETS_STORE_AWS_PROVIDER_URL,
        opts=pulumi.ResourceOptions(provider=provider, depends_on=[release])
    )

    return {
        "release": release,
        "aws_provider": aws_provider,
        "status": "✅ Enabled"
    }


def deploy_external_secrets_operator(provider: k8s.Provider) -> Dict[str, any]:
    """Deploy External Secrets Operator into its own namespace"""
    release = k8s.helm.v3.Release(
        "external-secrets",
        repository_opts=k8s.helm.v3.RepositoryOptsArgs(
            repo="https://charts.external-secrets.io"
        ),
        chart="external-secrets",
        name="external-secrets",
        namespace="external-secrets-system",
        create_namespace=True,
        values={"installCRDs": True},
        opts=pulumi.ResourceOptions(provider=provider)
    )

    return {
        "release": release,
        "status": "✅ Enabled"
    }


def storage_class_specs() -> List[Dict[str, any]]:
    """Retained EBS storage classes for stateful workloads"""
    return [
        {
            "name": "gp3-ssd-retain",
            "parameters": {"type": "gp3", "fsType": "ext4"}
        },
        {
            "name": "io1-ssd-retain",
            "parameters": {"type": "io1", "iops": "3000", "fsType": "ext4"}
        },
    ]


def create_storage_classes(provider: k8s.Provider, depends_on: List[pulumi.Resource]) -> List[k8s.storage.v1.StorageClass]:
    """
    Create EBS-backed StorageClasses

    Args:
        provider: Kubernetes provider
        depends_on: Resources the classes wait for (the CSI driver)

    Returns:
        List of StorageClass resources
    """
    return [
        k8s.storage.v1.StorageClass(
            spec["name"],
            metadata=k8s.meta.v1.ObjectMetaArgs(name=spec["name"]),
            provisioner="ebs.csi.aws.com",
            volume_binding_mode="WaitForFirstConsumer",
            reclaim_policy="Retain",
            parameters=spec["parameters"],
            opts=pulumi.ResourceOptions(provider=provider, depends_on=depends_on)
        )
        for spec in storage_class_specs()
    ]


def create_cluster_resources(cluster_name: str,
                             region: str,
                             vpc_id: str,
                             role_arns: Dict[str, str],
                             profile: Optional[str] = None,
                             enable_external_secrets: bool = False) -> Dict[str, any]:
    """
    Create cluster-scoped add-ons for the EKS cluster

    Args:
        cluster_name: EKS cluster name
        region: AWS region
        vpc_id: Cluster VPC id
        role_arns: IRSA role ARNs keyed by binding (from the account layer)
        profile: Optional AWS CLI profile for the provider
        enable_external_secrets: Deploy External Secrets Operator

    Returns:
        Dict with add-on status and resources
    """
    k8s_provider = create_kubernetes_provider(f"{cluster_name}-cluster", cluster_name, region, profile)

    # 1. Governance
    governance = apply_governance(k8s_provider)

    # 2. Load balancing and autoscaling
    load_balancer = deploy_load_balancer_controller(
        cluster_name, region, vpc_id, role_arns["load_balancer_controller"], k8s_provider)
    autoscaler = deploy_cluster_autoscaler(
        cluster_name, region, role_arns["cluster_autoscaler"], k8s_provider)

    # 3. Storage
    ebs_csi = deploy_ebs_csi_driver(role_arns["ebs_csi_driver"], k8s_provider)
    storage_classes = create_storage_classes(k8s_provider, [ebs_csi["release"]])

    # 4. Secret distribution
    secrets_store = deploy_secrets_store_csi_driver(k8s_provider)
    external_secrets = None
    if enable_external_secrets:
        external_secrets = deploy_external_secrets_operator(k8s_provider)

    return {
        "load_balancer_controller_status": load_balancer["status"],
        "cluster_autoscaler_status": autoscaler["status"],
        "ebs_csi_driver_status": ebs_csi["status"],
        "secrets_store_csi_driver_status": secrets_store["status"],
        "external_secrets_status": external_secrets["status"] if external_secrets else "❌ Disabled",
        "storage_class_names": [spec["name"] for spec in storage_class_specs()],
        # Keep references to resources for dependencies
        "_k8s_provider": k8s_provider,
        "_governance": governance,
        "_load_balancer_controller": load_balancer["release"],
        "_cluster_autoscaler": autoscaler["release"],
        "_ebs_csi_driver": ebs_csi["release"],
        "_storage_classes": storage_classes,
        "_secrets_store": secrets_store["release"],
        "_external_secrets": external_secrets["release"] if external_secrets else None
    }
