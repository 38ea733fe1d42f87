"""
Observability Module Functions
Prometheus stack, Grafana, dashboards and alert rules in their own namespace
"""

import pulumi
import pulumi_kubernetes as k8s
from typing import Dict, List, Optional

from config import PROJECT_ROOT
from modules.provider import create_kubernetes_provider

OBSERVABILITY_DIR = PROJECT_ROOT / "observability"
DASHBOARDS = ["latency", "error-rate", "resource-util"]

PROMETHEUS_RELEASE = "observability-prometheus"
GRAFANA_RELEASE = "observability-grafana"
GRAFANA_ADMIN_SECRET = "grafana-admin-credentials"
DASHBOARDS_CONFIG_MAP = "grafana-dashboards"


def dashboard_files() -> Dict[str, str]:
    """Dashboard JSON keyed by file name"""
    return {
        f"{name}.json": (OBSERVABILITY_DIR / "dashboards" / f"{name}.json").read_text()
        for name in DASHBOARDS
    }


def create_grafana_credentials(namespace: str, grafana_password: 'pulumi.Input[str]',
                               opts: pulumi.ResourceOptions) -> k8s.core.v1.Secret:
    """Admin secret referenced by the Grafana chart"""
    return k8s.core.v1.Secret(
        f"{namespace}-{GRAFANA_ADMIN_SECRET}",
        metadata=k8s.meta.v1.ObjectMetaArgs(name=GRAFANA_ADMIN_SECRET, namespace=namespace),
        type="Opaque",
        string_data={
            "admin-user": "admin",
            "admin-password": pulumi.Output.secret(grafana_password)
        },
        opts=opts
    )


def create_dashboards(namespace: str, opts: pulumi.ResourceOptions) -> k8s.core.v1.ConfigMap:
    """ConfigMap mounted by Grafana's dashboard provider"""
    return k8s.core.v1.ConfigMap(
        f"{namespace}-{DASHBOARDS_CONFIG_MAP}",
        metadata=k8s.meta.v1.ObjectMetaArgs(
            name=DASHBOARDS_CONFIG_MAP,
            namespace=namespace,
            labels={"grafana_dashboard": "1"}
        ),
        data=dashboard_files(),
        opts=opts
    )


def deploy_prometheus(namespace: str, opts: pulumi.ResourceOptions) -> Dict[str, any]:
    """
    Deploy kube-prometheus-stack and the demo alert rules

    Args:
        namespace: Observability namespace
        opts: Resource options (provider and dependencies)

    Returns:
        Dict with release, alert rules and status
    """
    release = k8s.helm.v3.Release(
        PROMETHEUS_RELEASE,
        repository_opts=k8s.helm.v3.RepositoryOptsArgs(
            repo="https://prometheus-community.github.io/helm-charts"
        ),
        chart="kube-prometheus-stack",
        name=PROMETHEUS_RELEASE,
        namespace=namespace,
        value_yaml_files=[pulumi.FileAsset(str(OBSERVABILITY_DIR / "values-prometheus.yaml"))],
        timeout=600,
        opts=opts
    )

    # PrometheusRule CRD ships with the chart
    alert_rules = k8s.yaml.ConfigFile(
        "otel-demo-alert-rules",
        file=str(OBSERVABILITY_DIR / "alert-rules.yaml"),
        opts=pulumi.ResourceOptions.merge(opts, pulumi.ResourceOptions(depends_on=[release]))
    )

    return {
        "release": release,
        "alert_rules": alert_rules,
        "status": "✅ Enabled"
    }


def deploy_grafana(namespace: str, opts: pulumi.ResourceOptions) -> Dict[str, any]:
    """
    Deploy Grafana wired to Prometheus and the dashboards ConfigMap

    Args:
        namespace: Observability namespace
        opts: Resource options (provider and dependencies)

    Returns:
        Dict with release and status
    """
    release = k8s.helm.v3.Release(
        GRAFANA_RELEASE,
        repository_opts=k8s.helm.v3.RepositoryOptsArgs(
            repo="https://grafana.github.io/helm-charts"
        ),
        chart="grafana",
        name=GRAFANA_RELEASE,
        namespace=namespace,
        value_yaml_files=[pulumi.FileAsset(str(OBSERVABILITY_DIR / "values-grafana.yaml"))],
        timeout=600,
        opts=opts
    )

    return {
        "release": release,
        "status": "✅ Enabled"
    }


def create_observability_resources(cluster_name: str,
                                   region: str,
                                   grafana_password: 'pulumi.Input[str]',
                                   namespace: str = "observability",
                                   profile: Optional[str] = None) -> Dict[str, any]:
    """
    Install the monitoring stack for the demo

    Args:
        cluster_name: EKS cluster name
        region: AWS region
        grafana_password: Grafana admin password
        namespace: Namespace owned by this layer
        profile: Optional AWS CLI profile for the provider

    Returns:
        Dict with release names, status and resources
    """
    k8s_provider = create_kubernetes_provider(f"{cluster_name}-observability", cluster_name, region, profile)

    # 1. Namespace
    ns = k8s.core.v1.Namespace(
        f"{namespace}-namespace",
        metadata=k8s.meta.v1.ObjectMetaArgs(
            name=namespace,
            labels={"name": namespace, "managed-by": "pulumi"}
        ),
        opts=pulumi.ResourceOptions(provider=k8s_provider)
    )
    child_opts = pulumi.ResourceOptions(provider=k8s_provider, depends_on=[ns])

    # 2. Prometheus and alert rules
    prometheus = deploy_prometheus(namespace, child_opts)

    # 3. Grafana with credentials and dashboards
    credentials = create_grafana_credentials(namespace, grafana_password, child_opts)
    dashboards = create_dashboards(namespace, child_opts)
    grafana_deps: List[pulumi.Resource] = [ns, credentials, dashboards, prometheus["release"]]
    grafana = deploy_grafana(namespace, pulumi.ResourceOptions(provider=k8s_provider,
                                                               depends_on=grafana_deps))

    return {
        "namespace_name": ns.metadata.name,
        "prometheus_release": PROMETHEUS_RELEASE,
        "grafana_release": GRAFANA_RELEASE,
        "prometheus_status": prometheus["status"],
        "grafana_status": grafana["status"],
        "dashboards": list(dashboard_files().keys()),
        # Keep references to resources for dependencies
        "_k8s_provider": k8s_provider,
        "_namespace": ns,
        "_prometheus": prometheus["release"],
        "_alert_rules": prometheus["alert_rules"],
        "_grafana_credentials": credentials,
        "_dashboards": dashboards,
        "_grafana": grafana["release"]
    }
