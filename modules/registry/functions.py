"""
Registry Module Functions
ECR repositories for the OpenTelemetry Demo service images
"""

import json
import pulumi
import pulumi_aws as aws
from typing import Dict, List

from modules.resource_utils import check_ecr_repository, owner_tags

REPOSITORY_PREFIX = "opentelemetry-demo"

SERVICES = [
    "accounting",
    "ad",
    "cart",
    "checkout",
    "currency",
    "email",
    "flagd-ui",
    "fraud-detection",
    "frontend",
    "frontend-proxy",
    "image-provider",
    "kafka",
    "load-generator",
    "opensearch",
    "payment",
    "product-catalog",
    "product-reviews",
    "quote",
    "recommendation",
    "shipping",
    "llm",
    "postgresql",
]

LIFECYCLE_POLICY = {
    "rules": [
        {
            "rulePriority": 1,
            "description": "Keep last 10 images",
            "selection": {
                "tagStatus": "any",
                "countType": "imageCountMoreThan",
                "countNumber": 10
            },
            "action": {
                "type": "expire"
            }
        }
    ]
}


UPSTREAM_IMAGE = "ghcr.io/open-telemetry/demo:latest-{service}"

# Images not published upstream and built locally instead
LOCAL_IMAGES = {
    "opensearch": "opentelemetry-demo-opensearch:latest",
}


def local_image(service: str) -> str:
    """Local image tag pushed for a service"""
    return LOCAL_IMAGES.get(service, UPSTREAM_IMAGE.format(service=service))


def repository_name(service: str) -> str:
    return f"{REPOSITORY_PREFIX}-{service}"


def get_or_create_repository(service: str, region: str, tags: Dict[str, str] = None) -> Dict[str, any]:
    """
    Create an ECR repository with scanning and a lifecycle policy, or reference an existing one

    Args:
        service: Demo service name
        region: AWS region
        tags: Tags to apply when the repository is created

    Returns:
        Dict with repository name, URL, created flag and resources
    """
    name = repository_name(service)
    owned = check_ecr_repository(name, region)

    if owned is False:
        pulumi.log.info(f"ECR repository {name} already exists, using existing repository")
        existing = aws.ecr.get_repository(name=name)
        return {"name": name, "url": existing.repository_url, "created": False,
                "_repository": None, "_lifecycle": None}

    repository = aws.ecr.Repository(
        name,
        name=name,
        image_tag_mutability="MUTABLE",
        image_scanning_configuration=aws.ecr.RepositoryImageScanningConfigurationArgs(
            scan_on_push=True
        ),
        force_delete=True,
        tags=owner_tags(tags)
    )

    lifecycle = aws.ecr.LifecyclePolicy(
        f"{name}-lifecycle",
        repository=repository.name,
        policy=json.dumps(LIFECYCLE_POLICY)
    )

    return {"name": name, "url": repository.repository_url, "created": True,
            "_repository": repository, "_lifecycle": lifecycle}


def create_registry_resources(region: str, account_id: str,
                              services: List[str] = None,
                              tags: Dict[str, str] = None) -> Dict[str, any]:
    """
    Create one ECR repository per demo service

    Args:
        region: AWS region
        account_id: AWS account id
        services: Services to create repositories for (defaults to all)
        tags: Additional tags

    Returns:
        Dict with registry URL, repository URLs and resources
    """
    repositories = {
        service: get_or_create_repository(service, region, tags)
        for service in (services or SERVICES)
    }

    return {
        "registry_url": f"{account_id}.dkr.ecr.{region}.amazonaws.com",
        "repository_urls": {service: repo["url"] for service, repo in repositories.items()},
        "repositories_created": [repo["name"] for repo in repositories.values() if repo["created"]],
        # Keep references to resources for dependencies
        "_repositories": repositories
    }
