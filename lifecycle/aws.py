"""
AWS probes and imperative calls
boto3 wrapper for the operations that sit outside the Pulumi layers
"""

import base64
import logging
from pathlib import Path
from typing import Dict, List, Optional

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

STACK_NOT_FOUND = "NOT_FOUND"


class AwsSession:
    """Lazily created boto3 clients bound to one region and profile"""

    def __init__(self, region: str, profile: Optional[str] = None, session=None):
        self.region = region
        self.session = session or boto3.Session(profile_name=profile, region_name=region)
        self._clients = {}

    def client(self, service: str):
        if service not in self._clients:
            self._clients[service] = self.session.client(service, region_name=self.region)
        return self._clients[service]

    # ========================================
    # Identity
    # ========================================

    def account_id(self) -> str:
        return self.client("sts").get_caller_identity()["Account"]

    # ========================================
    # CloudFormation
    # ========================================

    def stack_status(self, stack_name: str) -> str:
        """Return the stack status, or NOT_FOUND when the stack does not exist"""
        try:
            stacks = self.client("cloudformation").describe_stacks(StackName=stack_name)["Stacks"]
        except ClientError as e:
            message = e.response.get("Error", {}).get("Message", "")
            if "does not exist" in message:
                return STACK_NOT_FOUND
            raise
        return stacks[0]["StackStatus"] if stacks else STACK_NOT_FOUND

    def create_stack(self, stack_name: str, template_path: Path,
                     parameters: Dict[str, str], tags: Dict[str, str]) -> str:
        """Create the stack; raises AlreadyExistsException when it exists"""
        response = self.client("cloudformation").create_stack(
            StackName=stack_name,
            TemplateBody=Path(template_path).read_text(),
            Parameters=[
                {"ParameterKey": key, "ParameterValue": value}
                for key, value in parameters.items()
            ],
            Capabilities=["CAPABILITY_IAM", "CAPABILITY_NAMED_IAM"],
            Tags=[{"Key": key, "Value": value} for key, value in tags.items()],
        )
        return response["StackId"]

    def stack_outputs(self, stack_name: str) -> Dict[str, str]:
        stacks = self.client("cloudformation").describe_stacks(StackName=stack_name)["Stacks"]
        outputs = stacks[0].get("Outputs", []) if stacks else []
        return {o["OutputKey"]: o["OutputValue"] for o in outputs}

    def delete_stack(self, stack_name: str) -> None:
        """Request stack deletion; raises a ValidationError when the stack is absent"""
        if self.stack_status(stack_name) == STACK_NOT_FOUND:
            raise ClientError(
                {"Error": {"Code": "ValidationError",
                           "Message": f"Stack with id {stack_name} does not exist"}},
                "DeleteStack",
            )
        self.client("cloudformation").delete_stack(StackName=stack_name)

    # ========================================
    # EKS
    # ========================================

    def cluster_exists(self, cluster_name: str) -> bool:
        try:
            self.client("eks").describe_cluster(name=cluster_name)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ResourceNotFoundException":
                return False
            raise
        return True

    def cluster_vpc_id(self, cluster_name: str) -> Optional[str]:
        try:
            cluster = self.client("eks").describe_cluster(name=cluster_name)["cluster"]
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ResourceNotFoundException":
                return None
            raise
        return cluster.get("resourcesVpcConfig", {}).get("vpcId")

    def scale_nodegroups(self, cluster_name: str, min_size: int, desired_size: int,
                         max_size: int) -> List[str]:
        """Apply the scaling configuration to every node group of the cluster"""
        eks = self.client("eks")
        nodegroups = eks.list_nodegroups(clusterName=cluster_name).get("nodegroups", [])
        for nodegroup in nodegroups:
            eks.update_nodegroup_config(
                clusterName=cluster_name,
                nodegroupName=nodegroup,
                scalingConfig={
                    "minSize": min_size,
                    "desiredSize": desired_size,
                    "maxSize": max_size,
                },
            )
            logger.info("Scaled node group %s to %d/%d/%d", nodegroup, min_size, desired_size, max_size)
        return nodegroups

    # ========================================
    # EC2
    # ========================================

    def available_network_interfaces(self, vpc_id: str) -> List[str]:
        """ENIs left detached in the VPC, which block subnet deletion"""
        response = self.client("ec2").describe_network_interfaces(
            Filters=[
                {"Name": "vpc-id", "Values": [vpc_id]},
                {"Name": "status", "Values": ["available"]},
            ]
        )
        return [eni["NetworkInterfaceId"] for eni in response.get("NetworkInterfaces", [])]

    def delete_network_interface(self, eni_id: str) -> None:
        self.client("ec2").delete_network_interface(NetworkInterfaceId=eni_id)

    # ========================================
    # RDS
    # ========================================

    def db_instance_status(self, endpoint: str) -> Optional[str]:
        """Status of the DB instance serving an endpoint address"""
        paginator = self.client("rds").get_paginator("describe_db_instances")
        for page in paginator.paginate():
            for instance in page.get("DBInstances", []):
                if instance.get("Endpoint", {}).get("Address") == endpoint:
                    return instance.get("DBInstanceStatus")
        return None

    # ========================================
    # IAM
    # ========================================

    def policy_arn(self, account_id: str, policy_name: str) -> str:
        return f"arn:aws:iam::{account_id}:policy/{policy_name}"

    def delete_policy(self, account_id: str, policy_name: str) -> None:
        """Delete a customer managed policy and its non-default versions"""
        iam = self.client("iam")
        arn = self.policy_arn(account_id, policy_name)
        for version in iam.list_policy_versions(PolicyArn=arn).get("Versions", []):
            if not version.get("IsDefaultVersion"):
                iam.delete_policy_version(PolicyArn=arn, VersionId=version["VersionId"])
        iam.delete_policy(PolicyArn=arn)

    # ========================================
    # Secrets Manager
    # ========================================

    def secret_value(self, secret_name: str) -> Optional[str]:
        try:
            response = self.client("secretsmanager").get_secret_value(SecretId=secret_name)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("ResourceNotFoundException", "InvalidRequestException"):
                return None
            raise
        return response.get("SecretString")

    def put_secret(self, secret_name: str, secret_string: str, tags: Dict[str, str]) -> None:
        """Create the secret, or write a new version when it already exists"""
        client = self.client("secretsmanager")
        try:
            client.create_secret(
                Name=secret_name,
                SecretString=secret_string,
                Tags=[{"Key": k, "Value": v} for k, v in tags.items()],
            )
            return
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code == "InvalidRequestException":
                # Scheduled for deletion
                client.restore_secret(SecretId=secret_name)
            elif code != "ResourceExistsException":
                raise
        client.put_secret_value(SecretId=secret_name, SecretString=secret_string)

    def delete_secret(self, secret_name: str) -> None:
        self.client("secretsmanager").delete_secret(SecretId=secret_name, ForceDeleteWithoutRecovery=True)

    # ========================================
    # ECR
    # ========================================

    def ecr_login_password(self) -> str:
        token = self.client("ecr").get_authorization_token()["authorizationData"][0]["authorizationToken"]
        return base64.b64decode(token).decode().split(":", 1)[1]
