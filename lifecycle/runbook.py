"""
Runbooks
Startup, cleanup and auxiliary operations for the OpenTelemetry Demo on EKS
"""

import json
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError
from rich.console import Console
from rich.table import Table

from config import PROJECT_ROOT, Config, generate_password
from lifecycle.aws import STACK_NOT_FOUND, AwsSession
from lifecycle.kube import Kubectl
from lifecycle.layers import LayerEngine, LayerResult
from lifecycle.programs import PROGRAMS
from lifecycle.provisioner import RunReport, StepFailedError, StepResult, StepStatus, ensure, remove
from lifecycle.teardown import Teardown, TeardownPhase
from lifecycle.tools import OPTIONAL_TOOLS, REQUIRED_TOOLS, CommandError, ToolRunner, missing_tools
from lifecycle.waiter import WaitResult, wait_for_status, wait_until
from modules.account import POLICY_NAMES
from modules.registry import SERVICES, local_image, repository_name
from modules.workload import INGRESS_NAME

logger = logging.getLogger(__name__)

TEMPLATE_PATH = PROJECT_ROOT / "templates" / "eks-infra.yaml"
INIT_SQL_PATH = PROJECT_ROOT / "sql" / "init.sql"

STACK_READY_STATUSES = ("CREATE_COMPLETE", "UPDATE_COMPLETE")
STACK_GONE_STATUSES = ("DELETE_COMPLETE", STACK_NOT_FOUND)

# (Kubernetes secret, SecretProviderClass, service account)
SYNC_TARGETS = [
    ("db-credentials", "db-credentials", "otel-demo-secrets-sa"),
    ("grafana-admin", "grafana-credentials", "grafana-secrets-sa"),
]

IRSA_SERVICE_ACCOUNTS = ["otel-demo-secrets-sa", "grafana-secrets-sa", "external-secrets"]

# Deployments serving HTTP on 8080 that get liveness and readiness probes
PROBE_SERVICES = [
    "frontend", "cart", "checkout", "currency", "product-catalog",
    "recommendation", "shipping", "ad", "email", "payment",
]

SEEDER_POD = "psql-seeder"
SEEDER_IMAGE = "postgres:15"


def probe_patch(service: str) -> Dict[str, any]:
    """Strategic merge patch adding HTTP probes to a deployment's main container"""
    def http_probe(initial_delay: int, period: int) -> Dict[str, any]:
        return {
            "httpGet": {"path": "/", "port": 8080},
            "initialDelaySeconds": initial_delay,
            "periodSeconds": period,
        }

    return {
        "spec": {
            "template": {
                "spec": {
                    "containers": [{
                        "name": service,
                        "livenessProbe": http_probe(15, 20),
                        "readinessProbe": http_probe(5, 10),
                    }]
                }
            }
        }
    }


def sync_pod_manifest(secret_name: str, provider_class: str, service_account: str,
                      namespace: str) -> Dict[str, any]:
    """Short-lived pod whose CSI mount makes the driver create the Kubernetes secret"""
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": f"{secret_name}-sync-init", "namespace": namespace},
        "spec": {
            "serviceAccountName": service_account,
            "restartPolicy": "Never",
            "containers": [{
                "name": "init",
                "image": "busybox:latest",
                "command": ["sh", "-c", f"echo Triggering secret sync for {secret_name} && sleep 10"],
                "volumeMounts": [{
                    "name": "secrets-store",
                    "mountPath": "/mnt/secrets-store",
                    "readOnly": True,
                }],
            }],
            "volumes": [{
                "name": "secrets-store",
                "csi": {
                    "driver": "secrets-store.csi.k8s.io",
                    "readOnly": True,
                    "volumeAttributes": {"secretProviderClass": provider_class},
                },
            }],
        },
    }


def connection_string(db_username: str, db_password: str, db_name: str) -> str:
    return f"Host=postgresql;Username={db_username};Password={db_password};Database={db_name}"


class Runbook:
    """Operations composed from provisioning steps, waiters and layer stacks"""

    def __init__(self, config: Config,
                 aws: Optional[AwsSession] = None,
                 runner: Optional[ToolRunner] = None,
                 kubectl: Optional[Kubectl] = None,
                 layers: Optional[LayerEngine] = None,
                 console: Optional[Console] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.aws = aws or AwsSession(config.aws_region, config.aws_profile)
        self.runner = runner or ToolRunner(config.aws_cli_env())
        self.kubectl = kubectl or Kubectl(self.runner)
        self.layers = layers or LayerEngine(config, PROGRAMS)
        self.console = console or Console()
        self.sleep = sleep
        self.clock = clock

    # ========================================
    # Shared helpers
    # ========================================

    def _header(self, title: str) -> None:
        self.console.rule(f"[bold cyan]{title}")

    def _wait(self, poll, desired, timeout: float, interval: float, label: str) -> WaitResult:
        return wait_for_status(poll, desired, timeout=timeout, interval=interval,
                               label=label, sleep=self.sleep, clock=self.clock)

    def _wait_until(self, predicate, timeout: float, interval: float, label: str) -> WaitResult:
        return wait_until(predicate, timeout=timeout, interval=interval,
                          label=label, sleep=self.sleep, clock=self.clock)

    def account_id(self) -> str:
        return self.config.aws_account_id or self.aws.account_id()

    def _stored_password(self, secret_key: str) -> Optional[str]:
        raw = self.aws.secret_value(self.config.secret_names[secret_key])
        if not raw:
            return None
        try:
            return json.loads(raw).get("password")
        except ValueError:
            logger.warning("Secret %s is not JSON, ignoring stored value",
                           self.config.secret_names[secret_key])
            return None

    def resolve_passwords(self) -> Tuple[str, str]:
        """
        Resolve the database and Grafana passwords

        Environment values win, then values already stored in Secrets Manager,
        then freshly generated ones.

        Returns:
            Tuple of (db_password, grafana_password)
        """
        db_password = (self.config.db_password
                       or self._stored_password("master_password")
                       or generate_password())
        grafana_password = (self.config.grafana_password
                            or self._stored_password("grafana_admin")
                            or generate_password())
        return db_password, grafana_password

    def store_master_password(self, db_password: str, report: RunReport) -> None:
        """
        Save the master password before the stack that consumes it is created

        An interrupted first run leaves RDS with this password while the
        account layer has not stored it yet; the re-run reads it back from here.
        A stack whose password is neither stored nor set in DB_PASSWORD is fatal.
        """
        name = "store master password"
        if self._stored_password("master_password") == db_password:
            report.add(name, StepStatus.EXISTED)
            return
        stack_name = self.config.stack_name
        if not self.config.db_password and self.aws.stack_status(stack_name) != STACK_NOT_FOUND:
            report.add(name, StepStatus.FAILED, "master password unknown")
            raise StepFailedError(name, RuntimeError(
                f"{stack_name} exists but {self.config.secret_names['master_password']} holds no "
                "password; set DB_PASSWORD to the RDS master password"))
        ensure(name, lambda: self.aws.put_secret(
            self.config.secret_names["master_password"],
            json.dumps({"password": db_password}),
            self.config.common_tags,
        ), report)

    def apply_layer(self, layer: str, report: RunReport, **inputs) -> LayerResult:
        """Apply a layer stack, recording EXISTED when the update changed nothing"""
        try:
            result = self.layers.up(layer, **inputs)
        except Exception as e:
            report.add(f"{layer} layer", StepStatus.FAILED, str(e))
            raise StepFailedError(f"{layer} layer", e) from e
        status = StepStatus.CREATED if result.changed else StepStatus.EXISTED
        report.add(f"{layer} layer", status)
        return result

    # ========================================
    # Base stack
    # ========================================

    def stack_parameters(self, db_password: str) -> Dict[str, str]:
        return {
            "ClusterName": self.config.cluster_name,
            "KubernetesVersion": self.config.kubernetes_version,
            "VpcCidr": self.config.vpc_cidr,
            "DBName": self.config.db_name,
            "DBUsername": self.config.db_username,
            "DBPassword": db_password,
            "DBEngineVersion": self.config.pg_version,
        }

    def ensure_base_stack(self, db_password: str, report: RunReport) -> Dict[str, str]:
        """
        Create the CloudFormation stack owning network, cluster and database

        With SKIP_CLUSTER_CREATION the stack is only described and waited on.

        Returns:
            Dict of stack outputs
        """
        stack_name = self.config.stack_name

        if self.config.skip_cluster_creation:
            status = self.aws.stack_status(stack_name)
            if status == STACK_NOT_FOUND:
                report.add("CloudFormation stack", StepStatus.FAILED, "stack does not exist")
                raise StepFailedError(
                    "CloudFormation stack",
                    RuntimeError(f"{stack_name} does not exist and SKIP_CLUSTER_CREATION is set"))
            report.add("CloudFormation stack", StepStatus.SKIPPED, status)
        else:
            ensure("CloudFormation stack", lambda: self.aws.create_stack(
                stack_name, TEMPLATE_PATH, self.stack_parameters(db_password), self.config.common_tags
            ), report)

        result = self._wait(lambda: self.aws.stack_status(stack_name), STACK_READY_STATUSES,
                            self.config.STACK_TIMEOUT, self.config.STACK_INTERVAL, stack_name)
        if not result.reached:
            report.add("CloudFormation stack ready", StepStatus.FAILED, str(result.status))
            raise StepFailedError("CloudFormation stack ready",
                                  RuntimeError(f"{stack_name} is still {result.status}"))
        return self.aws.stack_outputs(stack_name)

    # ========================================
    # Secrets
    # ========================================

    def create_secrets(self, report: RunReport, db_password: str, grafana_password: str) -> LayerResult:
        """Apply the account layer: IAM, IRSA roles and Secrets Manager secrets"""
        return self.apply_layer("account", report,
                                account_id=self.account_id(),
                                db_password=db_password,
                                grafana_password=grafana_password)

    def _sync_secret(self, secret_name: str, provider_class: str, service_account: str) -> StepResult:
        namespace = self.config.namespace
        if self.kubectl.exists("secret", secret_name, namespace):
            logger.info("✓ Secret %s already exists", secret_name)
            return StepResult(f"sync {secret_name}", StepStatus.EXISTED)

        pod = sync_pod_manifest(secret_name, provider_class, service_account, namespace)
        pod_name = pod["metadata"]["name"]
        self.kubectl.apply(pod)
        try:
            result = self._wait_until(
                lambda: self.kubectl.exists("secret", secret_name, namespace),
                self.config.SECRET_SYNC_TIMEOUT, 5, f"secret {secret_name}")
        finally:
            self.kubectl.delete("pod", [pod_name], namespace=namespace, wait=False)

        if result.reached:
            logger.info("✓ Secret %s synced", secret_name)
            return StepResult(f"sync {secret_name}", StepStatus.CREATED)
        logger.warning("⚠ Secret %s was not synced; check the IRSA annotation on %s",
                       secret_name, service_account)
        return StepResult(f"sync {secret_name}", StepStatus.WARNED, "not synced")

    def create_db_credentials_secret(self, db_password: str) -> None:
        """Write db-credentials directly when the CSI sync did not produce it"""
        self.kubectl.apply({
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": "db-credentials", "namespace": self.config.namespace},
            "type": "Opaque",
            "stringData": {
                "connectionString": connection_string(self.config.db_username, db_password,
                                                      self.config.db_name),
                "username": self.config.db_username,
                "password": db_password,
            },
        })

    def sync_secrets(self, report: RunReport, db_password: Optional[str] = None) -> None:
        """Materialize Secrets Manager values as Kubernetes secrets"""
        for secret_name, provider_class, service_account in SYNC_TARGETS:
            try:
                result = self._sync_secret(secret_name, provider_class, service_account)
            except CommandError as e:
                logger.warning("⚠ sync %s failed: %s", secret_name, e)
                result = StepResult(f"sync {secret_name}", StepStatus.FAILED, str(e))
            report.add(result.name, result.status, result.detail)

        if db_password and not self.kubectl.exists("secret", "db-credentials", self.config.namespace):
            ensure("db-credentials fallback", lambda: self.create_db_credentials_secret(db_password), report)

    # ========================================
    # Database
    # ========================================

    def rds_endpoint(self, outputs: Dict[str, str]) -> Tuple[str, int]:
        endpoint = outputs.get("PostgresEndpoint")
        if not endpoint:
            raise StepFailedError("RDS endpoint",
                                  RuntimeError("PostgresEndpoint missing from stack outputs"))
        return endpoint, int(outputs.get("PostgresPort") or 5432)

    def check_database(self, endpoint: str) -> Optional[str]:
        status = self.aws.db_instance_status(endpoint)
        if status != "available":
            logger.warning("⚠ RDS instance for %s is %s, not available", endpoint, status)
        return status

    def seed_database(self, endpoint: str, port: int, db_password: str, report: RunReport) -> None:
        """
        Load sql/init.sql into RDS from a temporary pod inside the VPC

        Args:
            endpoint: RDS endpoint address
            port: RDS port
            db_password: Password of the database user
            report: Run report receiving the step result
        """
        namespace = self.config.namespace
        self.kubectl.delete("pod", [SEEDER_POD], namespace=namespace)

        def seed():
            self.runner.kubectl(
                "run", SEEDER_POD, "-n", namespace,
                f"--image={SEEDER_IMAGE}", "--restart=Never",
                f"--env=PGPASSWORD={db_password}",
                "--", "sleep", "3600")
            try:
                self.runner.kubectl("wait", "--for=condition=ready", f"pod/{SEEDER_POD}",
                                    "-n", namespace, "--timeout=60s")
                self.runner.kubectl("cp", str(INIT_SQL_PATH), f"{namespace}/{SEEDER_POD}:/tmp/init.sql")
                self.runner.kubectl(
                    "exec", SEEDER_POD, "-n", namespace, "--",
                    "psql", "-h", endpoint, "-p", str(port),
                    "-U", self.config.db_username, "-d", self.config.db_name,
                    "-v", "ON_ERROR_STOP=1", "-f", "/tmp/init.sql")
            finally:
                self.kubectl.delete("pod", [SEEDER_POD], namespace=namespace, wait=False)

        ensure("seed database", seed, report)

    # ========================================
    # Workload
    # ========================================

    def wait_for_pods(self) -> WaitResult:
        return self._wait_until(
            lambda: self.kubectl.all_pods_ready(self.config.namespace),
            self.config.POD_READY_ATTEMPTS * self.config.POD_READY_INTERVAL,
            self.config.POD_READY_INTERVAL,
            f"pods in {self.config.namespace}")

    def wait_for_alb(self) -> Optional[str]:
        result = self._wait_until(
            lambda: bool(self.kubectl.ingress_hostname(self.config.namespace, INGRESS_NAME)),
            self.config.ALB_ATTEMPTS * self.config.ALB_INTERVAL,
            self.config.ALB_INTERVAL,
            "ALB hostname")
        if not result.reached:
            return None
        return self.kubectl.ingress_hostname(self.config.namespace, INGRESS_NAME)

    def deployed_edge(self) -> Dict[str, Optional[str]]:
        """Certificate ARN and aliased ALB hostname of the deployed edge layer"""
        if not self.config.tls_enabled:
            return {}
        outputs = self.layers.outputs("edge") or {}
        return {key: outputs[key] for key in ("certificate_arn", "alb_hostname") if outputs.get(key)}

    def configure_tls(self, report: RunReport, endpoint: str, port: int,
                      deployed: Optional[Dict[str, Optional[str]]] = None) -> Optional[str]:
        """
        Issue the certificate, switch the ingress to HTTPS and point DNS at the ALB

        Args:
            report: Run report receiving the step results
            endpoint: RDS endpoint address
            port: RDS port
            deployed: Edge outputs of a previous run, kept until replaced

        Returns:
            Certificate ARN
        """
        deployed = deployed or {}
        known_hostname = deployed.get("alb_hostname")
        edge_inputs = {"alb_hostname": known_hostname} if known_hostname else {}
        edge = self.apply_layer("edge", report, **edge_inputs)
        certificate_arn = edge.outputs.get("certificate_arn")
        self.apply_layer("workload", report, rds_endpoint=endpoint, rds_port=port,
                         certificate_arn=certificate_arn)

        hostname = self.wait_for_alb()
        if not hostname:
            report.add("DNS alias", StepStatus.WARNED, "ALB hostname not assigned yet")
        elif hostname != known_hostname:
            self.apply_layer("edge", report, alb_hostname=hostname)
        return certificate_arn

    def scale_nodes(self, report: RunReport) -> None:
        try:
            self.aws.scale_nodegroups(self.config.cluster_name, self.config.node_min_size,
                                      self.config.node_desired_size, self.config.node_max_size)
        except ClientError as e:
            logger.warning("⚠ Node group scaling failed: %s", e)
            report.add("scale node groups", StepStatus.WARNED, str(e))
            return
        report.add("scale node groups", StepStatus.CREATED)

    def patch_probes(self, report: RunReport) -> None:
        """Add liveness and readiness probes to the demo's HTTP deployments"""
        namespace = self.config.namespace
        for service in PROBE_SERVICES:
            if not self.kubectl.exists("deployment", service, namespace):
                logger.info("Deployment %s not found, skipping probes", service)
                report.add(f"probes {service}", StepStatus.SKIPPED)
                continue
            ensure(f"probes {service}", lambda s=service: self.runner.kubectl(
                "patch", "deployment", s, "-n", namespace,
                "--type", "strategic", "--patch", json.dumps(probe_patch(s))
            ), report, fatal=False)

    # ========================================
    # Startup
    # ========================================

    def startup(self) -> RunReport:
        """Bring the full deployment up; safe to re-run"""
        report = RunReport()
        config = self.config

        self._header("1. Account")
        account_id = self.account_id()
        logger.info("AWS account %s, region %s", account_id, config.aws_region)
        db_password, grafana_password = self.resolve_passwords()

        self._header("2. CloudFormation stack")
        self.store_master_password(db_password, report)
        outputs = self.ensure_base_stack(db_password, report)

        self._header("3. Cluster access")
        ensure("kubeconfig", lambda: self.kubectl.update_kubeconfig(
            config.cluster_name, config.aws_region, config.aws_profile), report)

        self._header("4. IAM, IRSA and secrets")
        account = self.create_secrets(report, db_password, grafana_password)
        role_arns = account.outputs["role_arns"]

        self._header("5. Cluster add-ons")
        vpc_id = outputs.get("VpcId") or self.aws.cluster_vpc_id(config.cluster_name)
        self.apply_layer("cluster", report, vpc_id=vpc_id, role_arns=role_arns)
        self.apply_layer("namespaces", report, role_arns=role_arns)

        self._header("6. Secret sync")
        self.sync_secrets(report, db_password)

        self._header("7. Database")
        endpoint, port = self.rds_endpoint(outputs)
        self.check_database(endpoint)
        if config.skip_rds_seeding:
            report.add("seed database", StepStatus.SKIPPED)
        else:
            self.seed_database(endpoint, port, db_password, report)

        self._header("8. OpenTelemetry Demo")
        # Re-runs keep the live certificate and DNS alias in place
        deployed = self.deployed_edge()
        tls_inputs = {"certificate_arn": deployed["certificate_arn"]} if "certificate_arn" in deployed else {}
        self.apply_layer("workload", report, rds_endpoint=endpoint, rds_port=port, **tls_inputs)

        if config.tls_enabled:
            self._header("9. TLS")
            self.configure_tls(report, endpoint, port, deployed)

        self._header("10. Capacity")
        self.scale_nodes(report)

        self._header("11. Health")
        pods = self.wait_for_pods()
        report.add("pods ready", StepStatus.EXISTED if pods.reached else StepStatus.WARNED)
        hostname = self.wait_for_alb()
        report.add("ALB hostname", StepStatus.EXISTED if hostname else StepStatus.WARNED,
                   hostname or "")

        self.print_summary(endpoint, hostname)
        return report

    def print_summary(self, endpoint: Optional[str], hostname: Optional[str]) -> None:
        namespace = self.config.namespace
        phases = self.kubectl.pod_phases(namespace)
        pvcs = self.kubectl.pvc_phases(namespace)

        table = Table(title="OpenTelemetry Demo", show_header=False)
        table.add_column("Item", style="bold")
        table.add_column("Value")
        table.add_row("Cluster", self.config.cluster_name)
        table.add_row("Pods running", f"{phases.get('Running', 0)}/{sum(phases.values())}")
        table.add_row("PVCs bound", f"{pvcs.get('Bound', 0)}/{sum(pvcs.values())}")
        table.add_row("Database", endpoint or "-")
        if hostname:
            scheme = "https" if self.config.tls_enabled else "http"
            host = self.config.domain if self.config.tls_enabled else hostname
            table.add_row("URL", f"{scheme}://{host}")
        else:
            table.add_row("URL", "pending")
        self.console.print(table)

    # ========================================
    # Observability
    # ========================================

    def install_observability(self) -> RunReport:
        report = RunReport()
        _, grafana_password = self.resolve_passwords()
        self.apply_layer("observability", report, grafana_password=grafana_password)
        return report

    def remove_observability(self) -> RunReport:
        report = RunReport()
        remove("observability layer", lambda: self.layers.destroy("observability"), report)
        return report

    # ========================================
    # Images
    # ========================================

    def push_images(self, services: Optional[List[str]] = None) -> RunReport:
        """Create the ECR repositories, then tag and push local demo images"""
        report = RunReport()
        account_id = self.account_id()
        registry = self.config.ecr_registry(account_id)

        self.apply_layer("registry", report, account_id=account_id)

        self.runner.docker("login", "--username", "AWS", "--password-stdin", registry,
                           input=self.aws.ecr_login_password())

        for service in services or SERVICES:
            source = local_image(service)
            target = f"{registry}/{repository_name(service)}:{self.config.image_version}"
            if not self.runner.docker("image", "inspect", source, check=False).ok:
                logger.warning("⚠ Local image %s not found, skipping", source)
                report.add(f"push {service}", StepStatus.SKIPPED, source)
                continue

            def push(source=source, target=target):
                self.runner.docker("tag", source, target)
                self.runner.docker("push", target)

            ensure(f"push {service}", push, report, fatal=False)
        return report

    # ========================================
    # Cleanup
    # ========================================

    def _delete_load_balancer_services(self) -> StepResult:
        names = self.kubectl.load_balancer_services(self.config.namespace)
        if not names:
            return StepResult("delete LoadBalancer services", StepStatus.ABSENT)
        self.kubectl.delete("svc", names, namespace=self.config.namespace)
        return StepResult("delete LoadBalancer services", StepStatus.DELETED, ", ".join(names))

    def _delete_named(self, kind: str, name: str, namespace: str) -> StepResult:
        if not self.kubectl.exists(kind, name, namespace):
            return StepResult(f"delete {kind} {name}", StepStatus.ABSENT)
        self.kubectl.delete(kind, [name], namespace=namespace)
        return StepResult(f"delete {kind} {name}", StepStatus.DELETED)

    def _wait_gone(self, label: str, present: Callable[[], bool], timeout: float,
                   interval: float) -> StepResult:
        result = self._wait_until(lambda: not present(), timeout, interval, label)
        if result.reached:
            return StepResult(label, StepStatus.DELETED)
        return StepResult(label, StepStatus.WARNED, "timed out")

    def _drain_pods(self, namespace: str) -> StepResult:
        config = self.config
        result = self._wait_until(lambda: not self.kubectl.pods(namespace),
                                  config.POD_TERMINATION_TIMEOUT, config.POD_TERMINATION_INTERVAL,
                                  f"pods in {namespace}")
        if result.reached:
            return StepResult(f"drain pods {namespace}", StepStatus.DELETED)
        stuck = self.kubectl.terminating_pods(namespace)
        if stuck:
            logger.warning("⚠ Force deleting %d pods stuck in Terminating", len(stuck))
            self.kubectl.force_delete_pods(namespace, stuck)
        return StepResult(f"drain pods {namespace}", StepStatus.WARNED, f"forced {len(stuck)}")

    def _wait_namespace_gone(self, namespace: str) -> StepResult:
        config = self.config
        step = self._wait_gone(f"namespace {namespace} deleted",
                               lambda: self.kubectl.namespace_exists(namespace),
                               config.NAMESPACE_DELETE_TIMEOUT, config.NAMESPACE_DELETE_INTERVAL)
        if step.status is StepStatus.WARNED:
            logger.warning("⚠ Namespace %s is stuck in Terminating. To strip its finalizers run:\n  %s",
                           namespace, self.kubectl.finalizer_strip_command(namespace))
        return step

    def _delete_enis(self, vpc_id: Optional[str]) -> StepResult:
        if not vpc_id:
            return StepResult("delete detached ENIs", StepStatus.ABSENT)
        enis = self.aws.available_network_interfaces(vpc_id)
        for eni in enis:
            self.aws.delete_network_interface(eni)
        if not enis:
            return StepResult("delete detached ENIs", StepStatus.ABSENT)
        return StepResult("delete detached ENIs", StepStatus.DELETED, ", ".join(enis))

    def _wait_stack_deleted(self) -> StepResult:
        stack_name = self.config.stack_name
        result = self._wait(lambda: self.aws.stack_status(stack_name), STACK_GONE_STATUSES,
                            self.config.STACK_TIMEOUT, self.config.STACK_INTERVAL, stack_name)
        if result.reached:
            return StepResult(f"{stack_name} deleted", StepStatus.DELETED)
        return StepResult(f"{stack_name} deleted", StepStatus.WARNED, str(result.status))

    def _delete_kube_context(self, account_id: str) -> StepResult:
        if self.kubectl.delete_context(self.config.kube_context(account_id)):
            return StepResult("kubeconfig context", StepStatus.DELETED)
        return StepResult("kubeconfig context", StepStatus.ABSENT)

    def plan_cleanup(self, keep_stack: bool = False, include_registry: bool = False,
                     report: Optional[RunReport] = None) -> Teardown:
        """
        Build the ordered teardown

        Kubernetes steps are skipped when the cluster no longer exists.

        Args:
            keep_stack: Stop after the IAM phase, leaving the CloudFormation stack
            include_registry: Also destroy the ECR repositories
            report: Run report receiving the step results

        Returns:
            Teardown ready to run
        """
        config = self.config
        account_id = self.account_id()
        cluster_present = self.aws.cluster_exists(config.cluster_name)
        vpc_id = self.aws.cluster_vpc_id(config.cluster_name) if cluster_present else None
        namespace = config.namespace

        teardown = Teardown(
            report=report,
            on_phase=lambda phase: self._header(f"Phase {phase.value}: {phase.title}"),
            last_phase=TeardownPhase.IAM if keep_stack else TeardownPhase.STACK,
        )

        def destroy(layer: str) -> Callable[[], None]:
            return lambda: self.layers.destroy(layer, delete_unreachable=not cluster_present)

        if cluster_present:
            teardown.add(TeardownPhase.LOAD_BALANCERS, "update kubeconfig",
                         lambda: self.kubectl.update_kubeconfig(
                             config.cluster_name, config.aws_region, config.aws_profile))
            teardown.add(TeardownPhase.LOAD_BALANCERS, "delete ingresses",
                         lambda: self.kubectl.delete("ingress", namespace=namespace))
            teardown.add(TeardownPhase.LOAD_BALANCERS, "delete LoadBalancer services",
                         self._delete_load_balancer_services, self_reporting=True)
            teardown.add(TeardownPhase.LOAD_BALANCERS, "ingresses gone", lambda: self._wait_gone(
                "ingresses gone", lambda: bool(self.kubectl.items("ingress", namespace=namespace)),
                config.POD_TERMINATION_TIMEOUT, config.POD_TERMINATION_INTERVAL), self_reporting=True)
        teardown.add(TeardownPhase.LOAD_BALANCERS, "edge layer", destroy("edge"))

        if cluster_present:
            for sa in IRSA_SERVICE_ACCOUNTS:
                teardown.add(TeardownPhase.SERVICE_ACCOUNTS, f"delete serviceaccount {sa}",
                             lambda sa=sa: self._delete_named("serviceaccount", sa, namespace),
                             self_reporting=True)

            for ns in config.app_namespaces:
                teardown.add(TeardownPhase.STATEFUL_WORKLOADS, f"delete statefulsets {ns}",
                             lambda ns=ns: self.kubectl.delete("statefulset", namespace=ns, wait=False))
            for ns in config.app_namespaces:
                teardown.add(TeardownPhase.STATEFUL_WORKLOADS, f"statefulsets gone {ns}",
                             lambda ns=ns: self._wait_gone(
                                 f"statefulsets gone {ns}",
                                 lambda: bool(self.kubectl.items("statefulset", namespace=ns)),
                                 config.POD_TERMINATION_TIMEOUT, config.POD_TERMINATION_INTERVAL),
                             self_reporting=True)

        teardown.add(TeardownPhase.NAMESPACED_RESOURCES, "observability layer", destroy("observability"))
        teardown.add(TeardownPhase.NAMESPACED_RESOURCES, "workload layer", destroy("workload"))
        if cluster_present:
            for ns in config.app_namespaces:
                teardown.add(TeardownPhase.NAMESPACED_RESOURCES, f"drain pods {ns}",
                             lambda ns=ns: self._drain_pods(ns), self_reporting=True)
                teardown.add(TeardownPhase.NAMESPACED_RESOURCES, f"delete pvcs {ns}",
                             lambda ns=ns: self.kubectl.delete("pvc", namespace=ns, wait=False))

        teardown.add(TeardownPhase.NAMESPACES, "namespaces layer", destroy("namespaces"))
        if cluster_present:
            for ns in config.app_namespaces:
                teardown.add(TeardownPhase.NAMESPACES, f"delete namespace {ns}",
                             lambda ns=ns: self.kubectl.delete("namespace", [ns], wait=False))
                teardown.add(TeardownPhase.NAMESPACES, f"namespace {ns} deleted",
                             lambda ns=ns: self._wait_namespace_gone(ns), self_reporting=True)

        teardown.add(TeardownPhase.CLUSTER_RESOURCES, "cluster layer", destroy("cluster"))

        teardown.add(TeardownPhase.IAM, "account layer", destroy("account"))
        master_secret = config.secret_names["master_password"]
        teardown.add(TeardownPhase.IAM, f"secret {master_secret}",
                     lambda: self.aws.delete_secret(master_secret))
        for policy_name in POLICY_NAMES.values():
            teardown.add(TeardownPhase.IAM, f"IAM policy {policy_name}",
                         lambda name=policy_name: self.aws.delete_policy(account_id, name))
        if include_registry:
            teardown.add(TeardownPhase.IAM, "registry layer", destroy("registry"))

        teardown.add(TeardownPhase.STACK, "delete detached ENIs",
                     lambda: self._delete_enis(vpc_id), self_reporting=True)
        teardown.add(TeardownPhase.STACK, "CloudFormation stack",
                     lambda: self.aws.delete_stack(config.stack_name))
        teardown.add(TeardownPhase.STACK, "CloudFormation stack deleted",
                     self._wait_stack_deleted, self_reporting=True)
        teardown.add(TeardownPhase.STACK, "kubeconfig context",
                     lambda: self._delete_kube_context(account_id), self_reporting=True)

        if not cluster_present:
            logger.info("Cluster %s not found, skipping Kubernetes steps", config.cluster_name)
            teardown.report.add("Kubernetes resources", StepStatus.SKIPPED, "cluster not found")
        return teardown

    def cleanup(self, keep_stack: bool = False, include_registry: bool = False) -> RunReport:
        """Tear everything down in dependency order, best-effort"""
        return self.plan_cleanup(keep_stack, include_registry).run()

    # ========================================
    # Diagnostics
    # ========================================

    def status(self) -> Dict[str, any]:
        """Snapshot of the stack, the layers and the workload"""
        config = self.config
        cluster_present = self.aws.cluster_exists(config.cluster_name)
        info = {
            "stack_status": self.aws.stack_status(config.stack_name),
            "cluster": "✅ Present" if cluster_present else "❌ Absent",
            "layers": {
                layer: "✅ Deployed" if self.layers.outputs(layer) is not None else "❌ Absent"
                for layer in PROGRAMS
            },
        }
        if cluster_present:
            info["pods"] = self.kubectl.pod_phases(config.namespace)
            info["ingress"] = self.kubectl.ingress_hostname(config.namespace, INGRESS_NAME)
        return info

    def doctor(self) -> Dict[str, str]:
        """Check tools, credentials and cluster reachability"""
        checks = {}
        missing = missing_tools(REQUIRED_TOOLS)
        for tool in REQUIRED_TOOLS:
            checks[tool] = "❌ Missing" if tool in missing else "✅ Found"
        for tool in OPTIONAL_TOOLS:
            checks[tool] = "⚠ Missing (optional)" if missing_tools([tool]) else "✅ Found"

        try:
            checks["aws credentials"] = f"✅ Account {self.aws.account_id()}"
        except (BotoCoreError, ClientError) as e:
            checks["aws credentials"] = f"❌ {e}"

        if "kubectl" in missing:
            checks["cluster"] = "❌ kubectl not installed"
        elif self.runner.kubectl("cluster-info", check=False).ok:
            checks["cluster"] = "✅ Reachable"
        else:
            checks["cluster"] = "❌ Unreachable"
        return checks
