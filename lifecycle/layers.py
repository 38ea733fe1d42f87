"""
Layer engine
Runs each Pulumi layer as its own stack through the Automation API
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from pulumi import automation as auto

from config import Config

logger = logging.getLogger(__name__)

PROJECT_NAME = "otel-demo-eks"

# Deployment order; teardown walks the phases instead of reversing this list
LAYER_ORDER = ["registry", "account", "cluster", "namespaces", "workload", "edge", "observability"]


@dataclass
class LayerResult:
    layer: str
    outputs: Dict[str, Any] = field(default_factory=dict)
    changes: Dict[str, int] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        """True when the update created, replaced, updated or deleted anything"""
        return any(count for op, count in self.changes.items() if op != "same")


class LayerEngine:
    """Creates, updates and destroys layer stacks"""

    def __init__(self, config: Config, programs: Dict[str, Callable[..., Callable[[], None]]]):
        self.config = config
        self.programs = programs

    def stack_name(self, layer: str) -> str:
        return f"{layer}-{self.config.cluster_name}"

    def _workspace_options(self, delete_unreachable: bool = False) -> auto.LocalWorkspaceOptions:
        backend = self.config.pulumi_backend_url
        if backend.startswith("file://"):
            Path(backend[len("file://"):]).expanduser().mkdir(parents=True, exist_ok=True)
        env_vars = {
            "PULUMI_CONFIG_PASSPHRASE": self.config.pulumi_passphrase,
            "AWS_REGION": self.config.aws_region,
        }
        if self.config.aws_profile:
            env_vars["AWS_PROFILE"] = self.config.aws_profile
        if delete_unreachable:
            # Read by pulumi-kubernetes for providers whose stored config predates the flag
            env_vars["PULUMI_K8S_DELETE_UNREACHABLE"] = "true"
        return auto.LocalWorkspaceOptions(
            project_settings=auto.ProjectSettings(
                name=PROJECT_NAME,
                runtime="python",
                backend=auto.ProjectBackend(url=backend),
            ),
            env_vars=env_vars,
        )

    def _configure(self, stack: auto.Stack) -> None:
        stack.set_config("aws:region", auto.ConfigValue(value=self.config.aws_region))
        if self.config.aws_profile:
            stack.set_config("aws:profile", auto.ConfigValue(value=self.config.aws_profile))

    def _log_output(self, line: str) -> None:
        logger.debug("[pulumi] %s", line.rstrip())

    def up(self, layer: str, **inputs: Any) -> LayerResult:
        """
        Create or update a layer

        Args:
            layer: Layer name from LAYER_ORDER
            inputs: Values passed to the layer's program builder

        Returns:
            LayerResult with the stack outputs and resource change counts
        """
        program = self.programs[layer](self.config, **inputs)
        stack = auto.create_or_select_stack(
            stack_name=self.stack_name(layer),
            project_name=PROJECT_NAME,
            program=program,
            opts=self._workspace_options(),
        )
        self._configure(stack)
        logger.info("Applying layer %s", layer)
        result = stack.up(on_output=self._log_output)
        changes = result.summary.resource_changes or {}
        logger.info("Layer %s applied: %s", layer,
                    ", ".join(f"{k}={v}" for k, v in sorted(changes.items())) or "no changes")
        return LayerResult(
            layer=layer,
            outputs={key: value.value for key, value in result.outputs.items()},
            changes=dict(changes),
        )

    def destroy(self, layer: str, delete_unreachable: bool = False) -> None:
        """
        Destroy a layer and remove its stack

        Args:
            layer: Layer name from LAYER_ORDER
            delete_unreachable: The cluster is gone; drop its Kubernetes resources from state

        Raises:
            auto.StackNotFoundError: The layer was never deployed
        """
        stack = auto.select_stack(
            stack_name=self.stack_name(layer),
            project_name=PROJECT_NAME,
            program=lambda: None,
            opts=self._workspace_options(delete_unreachable),
        )
        logger.info("Destroying layer %s", layer)
        stack.destroy(on_output=self._log_output)
        stack.workspace.remove_stack(self.stack_name(layer))

    def outputs(self, layer: str) -> Optional[Dict[str, Any]]:
        """Outputs of a deployed layer, or None when it was never deployed"""
        try:
            stack = auto.select_stack(
                stack_name=self.stack_name(layer),
                project_name=PROJECT_NAME,
                program=lambda: None,
                opts=self._workspace_options(),
            )
        except auto.StackNotFoundError:
            return None
        return {key: value.value for key, value in stack.outputs().items()}
