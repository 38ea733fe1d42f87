"""
Account Module
IAM OIDC provider, IAM policies, IRSA roles and Secrets Manager secrets
"""

from .functions import create_account_resources, irsa_bindings, POLICY_NAMES

__all__ = ["create_account_resources", "irsa_bindings", "POLICY_NAMES"]
