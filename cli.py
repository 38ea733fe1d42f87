"""
otel-eks command line
Deploys, inspects and tears down the OpenTelemetry Demo on EKS
"""

import logging
import os
from typing import Dict, List, Optional

import typer
from botocore.exceptions import BotoCoreError, ClientError
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from config import ConfigError, get_config
from lifecycle.provisioner import RunReport, StepFailedError, StepStatus
from lifecycle.runbook import Runbook
from lifecycle.tools import CommandError
from lifecycle.waiter import WaitFailedError

app = typer.Typer(no_args_is_help=True, help="OpenTelemetry Demo on EKS: startup, cleanup and operations.")
secrets_app = typer.Typer(no_args_is_help=True, help="Secrets Manager values and their Kubernetes copies.")
observability_app = typer.Typer(no_args_is_help=True, help="Prometheus and Grafana stack.")
images_app = typer.Typer(no_args_is_help=True, help="Demo images in ECR.")
app.add_typer(secrets_app, name="secrets")
app.add_typer(observability_app, name="observability")
app.add_typer(images_app, name="images")

_console = Console()

FATAL_ERRORS = (ConfigError, StepFailedError, WaitFailedError, CommandError, BotoCoreError, ClientError)

STATUS_STYLES = {
    StepStatus.CREATED: "green",
    StepStatus.EXISTED: "green",
    StepStatus.DELETED: "green",
    StepStatus.ABSENT: "dim",
    StepStatus.SKIPPED: "dim",
    StepStatus.WARNED: "yellow",
    StepStatus.FAILED: "red",
}


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=_console, rich_tracebacks=True, show_path=False)],
    )


def _runbook() -> Runbook:
    """Resolve configuration and export it to the process for boto3 inside Pulumi programs"""
    config = get_config()
    _setup_logging(config.log_level)
    os.environ["AWS_REGION"] = config.aws_region
    os.environ["AWS_DEFAULT_REGION"] = config.aws_region
    if config.aws_profile:
        os.environ["AWS_PROFILE"] = config.aws_profile
    return Runbook(config, console=_console)


def _fail(error: Exception) -> None:
    _console.print(f"[red]✗ {error}[/red]")
    raise typer.Exit(code=1)


def _print_report(report: RunReport, title: str) -> None:
    table = Table(title=title)
    table.add_column("Step", style="bold", no_wrap=True)
    table.add_column("Status")
    table.add_column("Details", style="dim")
    for result in report.results:
        style = STATUS_STYLES[result.status]
        table.add_row(result.name, f"[{style}]{result.status.value}[/{style}]", result.detail)
    _console.print(table)


def _finish(report: RunReport, title: str) -> None:
    _print_report(report, title)
    if not report.ok:
        _console.print(f"[red]✗ {len(report.failures)} step(s) failed[/red]")
        raise typer.Exit(code=1)
    _console.print("[green]✓ Done[/green]")


def _print_mapping(title: str, values: Dict[str, object]) -> None:
    table = Table(title=title, show_header=False)
    table.add_column("Item", style="bold")
    table.add_column("Value")
    for key, value in values.items():
        table.add_row(key, str(value))
    _console.print(table)


@app.command()
def up() -> None:
    """Create or update the full deployment. Safe to re-run."""
    try:
        report = _runbook().startup()
    except FATAL_ERRORS as e:
        _fail(e)
    _finish(report, "Startup")


@app.command()
def cleanup(
    keep_stack: bool = typer.Option(False, "--keep-stack", help="Stop before deleting the CloudFormation stack."),
    include_registry: bool = typer.Option(False, "--include-registry", help="Also delete the ECR repositories."),
) -> None:
    """Tear everything down in dependency order, best-effort."""
    try:
        report = _runbook().cleanup(keep_stack=keep_stack, include_registry=include_registry)
    except FATAL_ERRORS as e:
        _fail(e)
    _finish(report, "Cleanup")


@secrets_app.command("create")
def secrets_create() -> None:
    """Create IAM roles and Secrets Manager secrets (the account layer)."""
    try:
        runbook = _runbook()
        report = RunReport()
        db_password, grafana_password = runbook.resolve_passwords()
        runbook.create_secrets(report, db_password, grafana_password)
    except FATAL_ERRORS as e:
        _fail(e)
    _finish(report, "Secrets")


@secrets_app.command("sync")
def secrets_sync() -> None:
    """Sync Secrets Manager values into Kubernetes secrets."""
    try:
        runbook = _runbook()
        report = RunReport()
        db_password, _ = runbook.resolve_passwords()
        runbook.sync_secrets(report, db_password)
    except FATAL_ERRORS as e:
        _fail(e)
    _finish(report, "Secret sync")


@app.command("seed-db")
def seed_db() -> None:
    """Load the demo schema into RDS from a temporary pod."""
    try:
        runbook = _runbook()
        report = RunReport()
        outputs = runbook.aws.stack_outputs(runbook.config.stack_name)
        endpoint, port = runbook.rds_endpoint(outputs)
        runbook.check_database(endpoint)
        db_password, _ = runbook.resolve_passwords()
        runbook.seed_database(endpoint, port, db_password, report)
    except FATAL_ERRORS as e:
        _fail(e)
    _finish(report, "Database seeding")


@app.command()
def probes() -> None:
    """Add liveness and readiness probes to the HTTP services."""
    try:
        report = RunReport()
        _runbook().patch_probes(report)
    except FATAL_ERRORS as e:
        _fail(e)
    _finish(report, "Probes")


@observability_app.command("up")
def observability_up() -> None:
    """Install Prometheus, alert rules, Grafana and dashboards."""
    try:
        report = _runbook().install_observability()
    except FATAL_ERRORS as e:
        _fail(e)
    _finish(report, "Observability")


@observability_app.command("down")
def observability_down() -> None:
    """Remove the observability stack and its namespace."""
    try:
        report = _runbook().remove_observability()
    except FATAL_ERRORS as e:
        _fail(e)
    _finish(report, "Observability")


@images_app.command("push")
def images_push(
    service: Optional[List[str]] = typer.Option(None, "--service", "-s", help="Push only these services."),
) -> None:
    """Create ECR repositories and push local demo images."""
    try:
        report = _runbook().push_images(service or None)
    except FATAL_ERRORS as e:
        _fail(e)
    _finish(report, "Images")


@app.command()
def status() -> None:
    """Show the stack, layer and workload state."""
    try:
        info = _runbook().status()
    except FATAL_ERRORS as e:
        _fail(e)
    layers = info.pop("layers")
    pods = info.pop("pods", None)
    _print_mapping("Deployment", info)
    _print_mapping("Layers", layers)
    if pods is not None:
        _print_mapping("Pods", pods or {"-": "no pods"})


@app.command()
def doctor() -> None:
    """Check local tools, AWS credentials and cluster reachability."""
    try:
        checks = _runbook().doctor()
    except FATAL_ERRORS as e:
        _fail(e)
    _print_mapping("otel-eks doctor", checks)
    if any(value.startswith("❌") for value in checks.values()):
        raise typer.Exit(code=1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
