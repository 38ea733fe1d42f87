"""
Pulumi modules for the OpenTelemetry Demo on EKS
One function-based module per layer stack
"""

from .registry import create_registry_resources
from .account import create_account_resources
from .cluster import create_cluster_resources
from .namespaces import create_namespace_resources
from .workload import create_workload_resources
from .edge import create_edge_resources
from .observability import create_observability_resources

__all__ = [
    "create_registry_resources",
    "create_account_resources",
    "create_cluster_resources",
    "create_namespace_resources",
    "create_workload_resources",
    "create_edge_resources",
    "create_observability_resources"
]
