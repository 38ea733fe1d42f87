"""
Workload Module
OpenTelemetry Demo release wired to RDS, ALB ingress and network policies
"""

from .functions import create_workload_resources, INGRESS_NAME

__all__ = ["create_workload_resources", "INGRESS_NAME"]
