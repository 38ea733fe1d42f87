"""
External tool runner
Thin subprocess wrapper for the kubectl, docker and aws command line tools
"""

import logging
import shutil
import subprocess
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ("aws", "kubectl", "pulumi")
OPTIONAL_TOOLS = ("docker",)


class CommandError(RuntimeError):
    """A command exited with a non-zero status"""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str):
        super().__init__(f"{' '.join(args)} exited with {returncode}: {stderr.strip()}")
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = stderr


@dataclass
class CommandResult:
    args: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ToolRunner:
    """Runs external commands with a shared environment"""

    def __init__(self, env: Optional[Dict[str, str]] = None):
        self.env = env

    def run(self, args: Sequence[str], check: bool = True, input: Optional[str] = None,
            timeout: Optional[float] = None) -> CommandResult:
        logger.debug("$ %s", " ".join(args))
        completed = subprocess.run(
            list(args),
            input=input,
            capture_output=True,
            text=True,
            env=self.env,
            timeout=timeout,
        )
        result = CommandResult(list(args), completed.returncode, completed.stdout, completed.stderr)
        if check and not result.ok:
            raise CommandError(args, result.returncode, result.stderr)
        return result

    def kubectl(self, *args: str, check: bool = True, input: Optional[str] = None) -> CommandResult:
        return self.run(["kubectl", *args], check=check, input=input)

    def docker(self, *args: str, check: bool = True, input: Optional[str] = None) -> CommandResult:
        return self.run(["docker", *args], check=check, input=input)

    def aws(self, *args: str, check: bool = True) -> CommandResult:
        return self.run(["aws", *args], check=check)


def missing_tools(names: Iterable[str] = REQUIRED_TOOLS) -> List[str]:
    """Return the tools that are not on PATH"""
    return [name for name in names if shutil.which(name) is None]
