"""
Resource utilities for handling existing AWS resources in Pulumi
Account-scoped resources that already exist are referenced instead of recreated
"""

import json
from typing import Dict, List, Optional

import boto3
import pulumi
import pulumi_aws as aws
from botocore.exceptions import ClientError

from config import PROJECT_ROOT

OWNER_TAG = "otel-demo-eks:stack"

# AWS EKS root CA thumbprint
EKS_OIDC_THUMBPRINT = "9e99a48a9960b14926bb7f3b02e22da2b0ab7280"


def owner_tags(tags: Dict[str, str] = None) -> Dict[str, str]:
    """Tags marking a resource as created by the current layer stack"""
    return {**(tags or {}), OWNER_TAG: pulumi.get_stack()}


def _owned(tag_list: List[Dict[str, str]]) -> bool:
    stack = pulumi.get_stack()
    return any(t.get("Key") == OWNER_TAG and t.get("Value") == stack for t in tag_list or [])


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def load_policy_document(name: str) -> str:
    """Read an IAM policy document shipped under policies/"""
    path = PROJECT_ROOT / "policies" / f"{name}.json"
    return json.dumps(json.loads(path.read_text()))


# ============================================================================
# Existence checks
# ============================================================================

def check_iam_policy(policy_arn: str) -> Optional[bool]:
    """
    Check whether an IAM policy exists and who owns it

    Args:
        policy_arn: ARN of the customer managed policy

    Returns:
        None when absent, True when owned by this stack, False when foreign
    """
    iam = boto3.client("iam")
    try:
        iam.get_policy(PolicyArn=policy_arn)
    except ClientError as e:
        if _error_code(e) == "NoSuchEntity":
            return None
        raise
    tags = iam.list_policy_tags(PolicyArn=policy_arn).get("Tags", [])
    return _owned(tags)


def check_oidc_provider(provider_arn: str) -> Optional[bool]:
    """Same contract as check_iam_policy for the cluster's IAM OIDC provider"""
    iam = boto3.client("iam")
    try:
        response = iam.get_open_id_connect_provider(OpenIDConnectProviderArn=provider_arn)
    except ClientError as e:
        if _error_code(e) == "NoSuchEntity":
            return None
        raise
    return _owned(response.get("Tags", []))


def check_secret(secret_name: str, region: str) -> Optional[Dict[str, str]]:
    """
    Look up a Secrets Manager secret

    Returns:
        None when absent, else {"arn": ..., "owned": bool}
    """
    client = boto3.client("secretsmanager", region_name=region)
    try:
        response = client.describe_secret(SecretId=secret_name)
    except ClientError as e:
        if _error_code(e) == "ResourceNotFoundException":
            return None
        raise
    if response.get("DeletedDate"):
        # Scheduled for deletion; restore so the name can be reused
        client.restore_secret(SecretId=secret_name)
    return {"arn": response["ARN"], "owned": _owned(response.get("Tags", []))}


def check_ecr_repository(repository_name: str, region: str) -> Optional[bool]:
    """Same contract as check_iam_policy for an ECR repository"""
    client = boto3.client("ecr", region_name=region)
    try:
        repositories = client.describe_repositories(repositoryNames=[repository_name])["repositories"]
    except ClientError as e:
        if _error_code(e) == "RepositoryNotFoundException":
            return None
        raise
    tags = client.list_tags_for_resource(resourceArn=repositories[0]["repositoryArn"]).get("tags", [])
    return _owned(tags)


# ============================================================================
# Get-or-create helpers
# ============================================================================

def get_or_create_policy(resource_name: str, policy_name: str, document: str,
                         account_id: str, tags: Dict[str, str] = None) -> Dict[str, any]:
    """
    Create an IAM policy, or reference it when it already exists in the account

    Args:
        resource_name: Pulumi resource name
        policy_name: IAM policy name
        document: Policy document JSON
        account_id: AWS account id
        tags: Tags to apply when the policy is created

    Returns:
        Dict with policy ARN, created flag and the resource (None when referenced)
    """
    policy_arn = f"arn:aws:iam::{account_id}:policy/{policy_name}"
    owned = check_iam_policy(policy_arn)

    if owned is False:
        pulumi.log.info(f"IAM policy {policy_name} already exists, using existing policy")
        return {"arn": pulumi.Output.from_input(policy_arn), "created": False, "_policy": None}

    policy = aws.iam.Policy(
        resource_name,
        name=policy_name,
        policy=document,
        tags=owner_tags(tags),
    )
    return {"arn": policy.arn, "created": True, "_policy": policy}


def get_or_create_oidc_provider(resource_name: str, oidc_issuer: str, account_id: str,
                                tags: Dict[str, str] = None) -> Dict[str, any]:
    """
    Create the cluster's IAM OIDC provider, or reference the existing one

    Args:
        resource_name: Pulumi resource name
        oidc_issuer: Cluster OIDC issuer URL (https://oidc.eks...)
        account_id: AWS account id
        tags: Tags to apply when the provider is created

    Returns:
        Dict with provider ARN, created flag and the resource (None when referenced)
    """
    provider_arn = f"arn:aws:iam::{account_id}:oidc-provider/{oidc_issuer.replace('https://', '')}"
    owned = check_oidc_provider(provider_arn)

    if owned is False:
        pulumi.log.info("IAM OIDC provider already associated, using existing provider")
        return {"arn": pulumi.Output.from_input(provider_arn), "created": False, "_provider": None}

    provider = aws.iam.OpenIdConnectProvider(
        resource_name,
        client_id_lists=["sts.amazonaws.com"],
        thumbprint_lists=[EKS_OIDC_THUMBPRINT],
        url=oidc_issuer,
        tags=owner_tags(tags),
    )
    return {"arn": provider.arn, "created": True, "_provider": provider}


def get_or_create_secret(resource_name: str, secret_name: str, description: str,
                         secret_string: 'pulumi.Input[str]', region: str,
                         tags: Dict[str, str] = None) -> Dict[str, any]:
    """
    Create a Secrets Manager secret, or write a new version to the existing one

    Args:
        resource_name: Pulumi resource name prefix
        secret_name: Secrets Manager name
        description: Secret description
        secret_string: Secret payload
        region: AWS region
        tags: Tags to apply when the secret is created

    Returns:
        Dict with secret ARN, created flag and resources
    """
    existing = check_secret(secret_name, region)

    secret = None
    if existing and not existing["owned"]:
        pulumi.log.info(f"Secret {secret_name} already exists, updating value")
        secret_arn = pulumi.Output.from_input(existing["arn"])
    else:
        secret = aws.secretsmanager.Secret(
            resource_name,
            name=secret_name,
            description=description,
            recovery_window_in_days=0,
            tags=owner_tags(tags),
        )
        secret_arn = secret.arn

    version = aws.secretsmanager.SecretVersion(
        f"{resource_name}-version",
        secret_id=secret_arn,
        secret_string=secret_string,
    )
    return {"arn": secret_arn, "created": secret is not None, "_secret": secret, "_version": version}


# ============================================================================
# IRSA
# ============================================================================

def derive_oidc_issuer(cluster_info: aws.eks.GetClusterResult) -> Optional[str]:
    """Extract the OIDC issuer URL from an EKS cluster lookup"""
    identities = getattr(cluster_info, "identities", None) or []
    for ident in identities:
        oidcs = getattr(ident, "oidcs", None) or []
        if oidcs and getattr(oidcs[0], "issuer", None):
            return oidcs[0].issuer
    return None


def irsa_assume_role_policy(oidc_provider_arn: 'pulumi.Input[str]', oidc_issuer: str,
                            namespace: str, service_account: str) -> 'pulumi.Output[str]':
    """Web identity trust policy restricted to one Kubernetes service account"""
    issuer_host = oidc_issuer.replace("https://", "")
    return pulumi.Output.from_input(oidc_provider_arn).apply(
        lambda provider_arn: json.dumps({
            "Version": "2012-10-17",
            "Statement": [{
                "Effect": "Allow",
                "Principal": {
                    "Federated": provider_arn
                },
                "Action": "sts:AssumeRoleWithWebIdentity",
                "Condition": {
                    "StringEquals": {
                        f"{issuer_host}:sub": f"system:serviceaccount:{namespace}:{service_account}",
                        f"{issuer_host}:aud": "sts.amazonaws.com"
                    }
                }
            }]
        })
    )
