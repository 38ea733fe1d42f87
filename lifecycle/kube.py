"""
Kubernetes probes
kubectl queries and deletes used by waiters, secret sync and teardown
"""

import json
import logging
from typing import Dict, List, Optional

from lifecycle.tools import CommandError, ToolRunner

logger = logging.getLogger(__name__)


class Kubectl:
    """kubectl operations against the current kubeconfig context"""

    def __init__(self, runner: ToolRunner):
        self.runner = runner

    def get_json(self, kind: str, namespace: Optional[str] = None, name: Optional[str] = None,
                 selector: Optional[str] = None) -> Dict:
        args = ["get", kind]
        if name:
            args.append(name)
        if namespace:
            args += ["-n", namespace]
        if selector:
            args += ["-l", selector]
        args += ["-o", "json"]
        return json.loads(self.runner.kubectl(*args).stdout or "{}")

    def items(self, kind: str, namespace: Optional[str] = None,
              selector: Optional[str] = None) -> List[Dict]:
        """List objects, returning an empty list when the namespace is gone"""
        try:
            return self.get_json(kind, namespace=namespace, selector=selector).get("items", [])
        except CommandError as e:
            if "notfound" in e.stderr.lower() or "not found" in e.stderr.lower():
                return []
            raise

    def exists(self, kind: str, name: str, namespace: Optional[str] = None) -> bool:
        args = ["get", kind, name]
        if namespace:
            args += ["-n", namespace]
        return self.runner.kubectl(*args, check=False).ok

    def apply(self, manifest: Dict) -> None:
        self.runner.kubectl("apply", "-f", "-", input=json.dumps(manifest))

    def delete(self, kind: str, names: Optional[List[str]] = None, namespace: Optional[str] = None,
               wait: bool = True, extra: Optional[List[str]] = None) -> None:
        """Delete by name, or every object of the kind when no names are given"""
        args = ["delete", kind]
        args += names if names else ["--all"]
        if namespace:
            args += ["-n", namespace]
        args += ["--ignore-not-found=true", f"--wait={'true' if wait else 'false'}"]
        args += extra or []
        self.runner.kubectl(*args)

    def namespace_exists(self, namespace: str) -> bool:
        return self.exists("namespace", namespace)

    # ========================================
    # Workload state
    # ========================================

    def pods(self, namespace: str, selector: Optional[str] = None) -> List[Dict]:
        return self.items("pods", namespace=namespace, selector=selector)

    def pod_phases(self, namespace: str) -> Dict[str, int]:
        """Count pods per phase, reporting deleting pods as Terminating"""
        counts: Dict[str, int] = {}
        for pod in self.pods(namespace):
            if pod.get("metadata", {}).get("deletionTimestamp"):
                phase = "Terminating"
            else:
                phase = pod.get("status", {}).get("phase", "Unknown")
            counts[phase] = counts.get(phase, 0) + 1
        return counts

    def all_pods_ready(self, namespace: str) -> bool:
        """True when at least one pod exists and every non-completed pod is Ready"""
        pods = self.pods(namespace)
        if not pods:
            return False
        for pod in pods:
            status = pod.get("status", {})
            if status.get("phase") == "Succeeded":
                continue
            conditions = {c.get("type"): c.get("status") for c in status.get("conditions", [])}
            if conditions.get("Ready") != "True":
                return False
        return True

    def terminating_pods(self, namespace: str) -> List[str]:
        return [
            pod["metadata"]["name"]
            for pod in self.pods(namespace)
            if pod.get("metadata", {}).get("deletionTimestamp")
        ]

    def force_delete_pods(self, namespace: str, names: List[str]) -> None:
        if names:
            self.delete("pod", names, namespace=namespace, wait=False,
                        extra=["--grace-period=0", "--force"])

    def pvc_phases(self, namespace: str) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for pvc in self.items("pvc", namespace=namespace):
            phase = pvc.get("status", {}).get("phase", "Unknown")
            counts[phase] = counts.get(phase, 0) + 1
        return counts

    # ========================================
    # Load balancers
    # ========================================

    def ingress_hostname(self, namespace: str, name: Optional[str] = None) -> Optional[str]:
        """Hostname assigned to an Ingress by the load balancer controller"""
        for ingress in self.items("ingress", namespace=namespace):
            if name and ingress["metadata"]["name"] != name:
                continue
            for entry in ingress.get("status", {}).get("loadBalancer", {}).get("ingress", []) or []:
                if entry.get("hostname"):
                    return entry["hostname"]
        return None

    def load_balancer_services(self, namespace: str) -> List[str]:
        return [
            svc["metadata"]["name"]
            for svc in self.items("svc", namespace=namespace)
            if svc.get("spec", {}).get("type") == "LoadBalancer"
        ]

    # ========================================
    # kubeconfig
    # ========================================

    def update_kubeconfig(self, cluster_name: str, region: str, profile: Optional[str] = None) -> None:
        args = ["eks", "update-kubeconfig", "--name", cluster_name, "--region", region]
        if profile:
            args += ["--profile", profile]
        self.runner.aws(*args)

    def delete_context(self, context: str) -> bool:
        """Remove the context and cluster entries; False when neither was present"""
        removed_context = self.runner.kubectl("config", "delete-context", context, check=False).ok
        removed_cluster = self.runner.kubectl("config", "delete-cluster", context, check=False).ok
        return removed_context or removed_cluster

    def finalizer_strip_command(self, namespace: str) -> str:
        """Manual fallback for a namespace stuck in Terminating"""
        return (
            f"kubectl get namespace {namespace} -o json | "
            "jq '.spec.finalizers = []' | "
            f"kubectl replace --raw /api/v1/namespaces/{namespace}/finalize -f -"
        )
