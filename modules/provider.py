"""
Kubernetes provider
Builds a provider for an existing EKS cluster using aws eks get-token
"""

import pulumi
import pulumi_aws as aws
import pulumi_kubernetes as k8s
from typing import Optional


def build_kubeconfig(cluster_name: str, endpoint: str, ca_data: str, region: str,
                     profile: Optional[str] = None) -> str:
    """Render a kubeconfig that authenticates through the AWS CLI"""
    profile_args = f"""
        - --profile
        - {profile}""" if profile else ""
    return f"""apiVersion: v1
clusters:
- cluster:
    certificate-authority-data: {ca_data}
    server: {endpoint}
  name: {cluster_name}
contexts:
- context:
    cluster: {cluster_name}
    user: {cluster_name}
  name: {cluster_name}
current-context: {cluster_name}
kind: Config
users:
- name: {cluster_name}
  user:
    exec:
      apiVersion: client.authentication.k8s.io/v1beta1
      command: aws
      args:
        - eks
        - get-token
        - --cluster-name
        - {cluster_name}
        - --region
        - {region}{profile_args}
"""


def create_kubernetes_provider(name: str, cluster_name: str, region: str,
                               profile: Optional[str] = None) -> k8s.Provider:
    """
    Create Kubernetes provider for an existing EKS cluster

    Args:
        name: Provider resource name
        cluster_name: EKS cluster name
        region: AWS region
        profile: Optional AWS CLI profile

    Returns:
        Kubernetes provider instance
    """
    cluster = aws.eks.get_cluster(name=cluster_name)
    kubeconfig = build_kubeconfig(
        cluster_name,
        cluster.endpoint,
        cluster.certificate_authorities[0].data,
        region,
        profile,
    )
    # Deleting resources of an unreachable cluster drops them from state
    return k8s.Provider(name, kubeconfig=kubeconfig, delete_unreachable=True)
