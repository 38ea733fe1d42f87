"""
Observability Module
Prometheus stack, Grafana, dashboards and alert rules
"""

from .functions import create_observability_resources

__all__ = ["create_observability_resources"]
