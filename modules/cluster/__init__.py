"""
Cluster Module
Cluster-scoped add-ons: governance, kube-system Helm releases and StorageClasses
"""

from .functions import create_cluster_resources, create_service_account

__all__ = ["create_cluster_resources", "create_service_account"]
