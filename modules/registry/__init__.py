"""
Registry Module
ECR repositories for the demo service images
"""

from .functions import create_registry_resources, local_image, repository_name, SERVICES

__all__ = ["create_registry_resources", "local_image", "repository_name", "SERVICES"]
