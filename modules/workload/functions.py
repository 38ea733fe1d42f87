"""
Workload Module Functions
OpenTelemetry Demo release wired to RDS, ALB ingress and network policies
"""

import json
import pulumi
import pulumi_kubernetes as k8s
from typing import Dict, List, Optional

from modules.provider import create_kubernetes_provider

DEMO_CHART_REPO = "https://open-telemetry.github.io/opentelemetry-helm-charts"
INGRESS_NAME = "otel-demo-ingress"
FRONTEND_SERVICE = "frontend-proxy"
FRONTEND_PORT = 8080
COMPONENT_LABEL = "app.kubernetes.io/component"


def create_database_service(namespace: str, rds_endpoint: str, provider: k8s.Provider) -> k8s.core.v1.Service:
    """
    Point the in-cluster postgresql hostname at RDS

    Args:
        namespace: Application namespace
        rds_endpoint: RDS endpoint address
        provider: Kubernetes provider

    Returns:
        ExternalName Service resource
    """
    return k8s.core.v1.Service(
        f"{namespace}-postgresql",
        metadata=k8s.meta.v1.ObjectMetaArgs(
            name="postgresql",
            namespace=namespace,
            labels={"managed-by": "pulumi"}
        ),
        spec=k8s.core.v1.ServiceSpecArgs(
            type="ExternalName",
            external_name=rds_endpoint,
            ports=[k8s.core.v1.ServicePortArgs(port=5432, target_port=5432, name="postgresql")]
        ),
        opts=pulumi.ResourceOptions(provider=provider)
    )


def demo_values(db_name: str, db_username: str, rds_port: int = 5432) -> Dict[str, any]:
    """Helm values for the OpenTelemetry Demo chart using RDS instead of the bundled Postgres"""
    def from_secret(key: str) -> Dict[str, any]:
        return {"secretKeyRef": {"name": "db-credentials", "key": key}}

    return {
        "components": {
            "postgresql": {"enabled": False},
            "accounting": {
                "envOverrides": [
                    {"name": "DB_CONNECTION_STRING", "valueFrom": from_secret("connectionString")},
                    {"name": "POSTGRES_HOST", "value": "postgresql"},
                    {"name": "POSTGRES_PORT", "value": str(rds_port)},
                    {"name": "POSTGRES_DATABASE", "value": db_name},
                    {"name": "POSTGRES_USER", "value": db_username},
                    {"name": "POSTGRES_PASSWORD", "valueFrom": from_secret("password")}
                ]
            }
        }
    }


def deploy_demo(namespace: str, values: Dict[str, any], provider: k8s.Provider,
                depends_on: List[pulumi.Resource]) -> k8s.helm.v3.Release:
    """
    Deploy the OpenTelemetry Demo using Helm

    Args:
        namespace: Application namespace
        values: Chart values
        provider: Kubernetes provider
        depends_on: Resources the release waits for

    Returns:
        Helm Release resource
    """
    return k8s.helm.v3.Release(
        "opentelemetry-demo",
        repository_opts=k8s.helm.v3.RepositoryOptsArgs(repo=DEMO_CHART_REPO),
        chart="opentelemetry-demo",
        name="opentelemetry-demo",
        namespace=namespace,
        values=values,
        timeout=600,
        opts=pulumi.ResourceOptions(provider=provider, depends_on=depends_on)
    )


def ingress_annotations(certificate_arn: Optional[str] = None) -> Dict[str, str]:
    """ALB annotations; HTTPS with redirect when a certificate is available"""
    annotations = {
        "alb.ingress.kubernetes.io/scheme": "internet-facing",
        "alb.ingress.kubernetes.io/target-type": "ip",
        "alb.ingress.kubernetes.io/healthcheck-path": "/",
        "alb.ingress.kubernetes.io/listen-ports": json.dumps([{"HTTP": 80}]),
    }
    if certificate_arn:
        annotations.update({
            "alb.ingress.kubernetes.io/certificate-arn": certificate_arn,
            "alb.ingress.kubernetes.io/listen-ports": json.dumps([{"HTTP": 80}, {"HTTPS": 443}]),
            "alb.ingress.kubernetes.io/ssl-redirect": "443",
        })
    return annotations


def create_ingress(namespace: str, provider: k8s.Provider, depends_on: List[pulumi.Resource],
                   certificate_arn: Optional[str] = None,
                   domain: Optional[str] = None) -> k8s.networking.v1.Ingress:
    """
    Expose the frontend proxy through an internet-facing ALB

    Args:
        namespace: Application namespace
        provider: Kubernetes provider
        depends_on: Resources the ingress waits for
        certificate_arn: ACM certificate enabling HTTPS
        domain: Host the rule is restricted to

    Returns:
        Ingress resource
    """
    return k8s.networking.v1.Ingress(
        f"{namespace}-ingress",
        metadata=k8s.meta.v1.ObjectMetaArgs(
            name=INGRESS_NAME,
            namespace=namespace,
            annotations={
                **ingress_annotations(certificate_arn),
                # The ALB hostname is polled by the runbook waiter
                "pulumi.com/skipAwait": "true"
            }
        ),
        spec=k8s.networking.v1.IngressSpecArgs(
            ingress_class_name="alb",
            rules=[k8s.networking.v1.IngressRuleArgs(
                host=domain,
                http=k8s.networking.v1.HTTPIngressRuleValueArgs(
                    paths=[k8s.networking.v1.HTTPIngressPathArgs(
                        path="/",
                        path_type="Prefix",
                        backend=k8s.networking.v1.IngressBackendArgs(
                            service=k8s.networking.v1.IngressServiceBackendArgs(
                                name=FRONTEND_SERVICE,
                                port=k8s.networking.v1.ServiceBackendPortArgs(number=FRONTEND_PORT)
                            )
                        )
                    )]
                )
            )]
        ),
        opts=pulumi.ResourceOptions(provider=provider, depends_on=depends_on)
    )


def network_policy_specs() -> List[Dict[str, any]]:
    """Zero-trust ingress policies, evaluated in name order"""
    return [
        {
            "name": "default-deny-ingress",
            "pod_selector": {},
            "ingress": []
        },
        {
            "name": "allow-frontend-proxy",
            "pod_selector": {"match_labels": {COMPONENT_LABEL: "frontend-proxy"}},
            "ingress": [{"ports": [FRONTEND_PORT]}]
        },
        {
            "name": "allow-backends",
            "pod_selector": {"match_expressions": [
                {"key": COMPONENT_LABEL, "operator": "NotIn",
                 "values": ["frontend-proxy", "otel-collector"]}
            ]},
            "ingress": [{"from_pods": {}}]
        },
        {
            "name": "allow-postgresql",
            "pod_selector": {"match_labels": {COMPONENT_LABEL: "postgresql"}},
            "ingress": [{
                "from_pods": {"match_expressions": [
                    {"key": COMPONENT_LABEL, "operator": "In",
                     "values": ["accounting", "product-reviews"]}
                ]},
                "ports": [5432]
            }]
        },
        {
            "name": "allow-otel-collector",
            "pod_selector": {"match_labels": {COMPONENT_LABEL: "otel-collector"}},
            "ingress": [{"from_namespaces": {}, "ports": [4317, 4318, 8888]}]
        },
    ]


def _selector(spec: Optional[Dict[str, any]]) -> k8s.meta.v1.LabelSelectorArgs:
    spec = spec or {}
    return k8s.meta.v1.LabelSelectorArgs(
        match_labels=spec.get("match_labels"),
        match_expressions=[
            k8s.meta.v1.LabelSelectorRequirementArgs(**expression)
            for expression in spec.get("match_expressions", [])
        ] or None
    )


def _ingress_rule(rule: Dict[str, any]) -> k8s.networking.v1.NetworkPolicyIngressRuleArgs:
    peers = []
    if "from_pods" in rule:
        peers.append(k8s.networking.v1.NetworkPolicyPeerArgs(pod_selector=_selector(rule["from_pods"])))
    if "from_namespaces" in rule:
        peers.append(k8s.networking.v1.NetworkPolicyPeerArgs(namespace_selector=_selector(rule["from_namespaces"])))
    ports = [
        k8s.networking.v1.NetworkPolicyPortArgs(port=port, protocol="TCP")
        for port in rule.get("ports", [])
    ]
    return k8s.networking.v1.NetworkPolicyIngressRuleArgs(
        from_=peers or None,
        ports=ports or None
    )


def create_network_policies(namespace: str, provider: k8s.Provider) -> List[k8s.networking.v1.NetworkPolicy]:
    """
    Apply zero-trust network policies to the application namespace

    Args:
        namespace: Application namespace
        provider: Kubernetes provider

    Returns:
        List of NetworkPolicy resources
    """
    return [
        k8s.networking.v1.NetworkPolicy(
            f"{namespace}-{spec['name']}",
            metadata=k8s.meta.v1.ObjectMetaArgs(name=spec["name"], namespace=namespace),
            spec=k8s.networking.v1.NetworkPolicySpecArgs(
                pod_selector=_selector(spec["pod_selector"]),
                policy_types=["Ingress"],
                ingress=[_ingress_rule(rule) for rule in spec["ingress"]]
            ),
            opts=pulumi.ResourceOptions(provider=provider)
        )
        for spec in network_policy_specs()
    ]


def create_workload_resources(cluster_name: str,
                              region: str,
                              namespace: str,
                              rds_endpoint: str,
                              db_name: str,
                              db_username: str,
                              rds_port: int = 5432,
                              profile: Optional[str] = None,
                              certificate_arn: Optional[str] = None,
                              domain: Optional[str] = None,
                              enable_network_policies: bool = True) -> Dict[str, any]:
    """
    Deploy the OpenTelemetry Demo and expose it

    Args:
        cluster_name: EKS cluster name
        region: AWS region
        namespace: Application namespace (created by the namespaces layer)
        rds_endpoint: RDS endpoint address
        db_name: Application database name
        db_username: Database user
        rds_port: RDS port
        profile: Optional AWS CLI profile for the provider
        certificate_arn: ACM certificate for HTTPS
        domain: Public host name
        enable_network_policies: Apply zero-trust network policies

    Returns:
        Dict with workload outputs and resources
    """
    k8s_provider = create_kubernetes_provider(f"{cluster_name}-workload", cluster_name, region, profile)

    # 1. Database hostname
    database_service = create_database_service(namespace, rds_endpoint, k8s_provider)

    # 2. Application
    release = deploy_demo(namespace, demo_values(db_name, db_username, rds_port),
                          k8s_provider, [database_service])

    # 3. Ingress
    ingress = create_ingress(namespace, k8s_provider, [release], certificate_arn, domain)

    # 4. Network policies
    policies = create_network_policies(namespace, k8s_provider) if enable_network_policies else []

    return {
        "release_name": release.name,
        "ingress_name": INGRESS_NAME,
        "https_enabled": bool(certificate_arn),
        "network_policy_names": [spec["name"] for spec in network_policy_specs()] if policies else [],
        # Keep references to resources for dependencies
        "_k8s_provider": k8s_provider,
        "_database_service": database_service,
        "_release": release,
        "_ingress": ingress,
        "_network_policies": policies
    }
