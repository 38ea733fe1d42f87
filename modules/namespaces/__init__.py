"""
Namespaces Module
Application namespace with quotas, IRSA service accounts and secret providers
"""

from .functions import create_namespace_resources, secret_provider_specs

__all__ = ["create_namespace_resources", "secret_provider_specs"]
