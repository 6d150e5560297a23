"""Adapter around the kubectl command line."""

import shutil
import subprocess
from pathlib import Path

from cluster_bootstrap.exceptions import ToolNotFoundError
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.outcomes import CommandResult

logger = get_logger(__name__)

TIMEOUT_EXIT_CODE = 124


class KubectlClient:
    """Runs kubectl against an explicit kubeconfig."""

    def __init__(self, binary: str = "kubectl", timeout: float = 60):
        self.binary = binary
        self.timeout = timeout

    def check_installed(self) -> str:
        path = shutil.which(self.binary)
        if not path:
            raise ToolNotFoundError(
                f"{self.binary} is not installed or not in PATH",
                "Install kubectl from https://kubernetes.io/docs/tasks/tools/",
            )
        return path

    def _run(self, kubeconfig: Path, args: list[str], timeout: float | None = None) -> CommandResult:
        command = [self.binary, "--kubeconfig", str(kubeconfig), *args]
        timeout = self.timeout if timeout is None else timeout
        logger.debug(f"Running: {' '.join(command)}")

        try:
            proc = subprocess.run(command, capture_output=True, text=True, timeout=timeout)
        except FileNotFoundError:
            logger.error(f"{self.binary} binary not found in PATH")
            raise ToolNotFoundError(
                f"{self.binary} is not installed or not in PATH",
                "Install kubectl from https://kubernetes.io/docs/tasks/tools/",
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"kubectl {args[0]} timed out after {timeout}s")
            return CommandResult(tuple(command), TIMEOUT_EXIT_CODE, stderr=f"timed out after {timeout}s")

        result = CommandResult(tuple(command), proc.returncode, proc.stdout, proc.stderr)
        if not result.ok:
            logger.debug(f"kubectl {args[0]} exited {result.returncode}: {result.output}")
        return result

    def is_cluster_reachable(self, kubeconfig: Path) -> bool:
        """Return True if the kubeconfig exists and can list nodes."""
        if not Path(kubeconfig).is_file():
            return False
        return self.get_resource(kubeconfig, "nodes").ok

    def get_resource(
        self,
        kubeconfig: Path,
        kind: str,
        name: str | None = None,
        namespace: str | None = None,
        output: str | None = None,
    ) -> CommandResult:
        args = ["get", kind]
        if name:
            args.append(name)
        if namespace:
            args += ["--namespace", namespace]
        if output:
            args += ["--output", output]
        return self._run(kubeconfig, args)

    def apply_manifest(self, kubeconfig: Path, path: Path) -> CommandResult:
        """Apply a manifest file or directory; kustomize directories use ``-k``."""
        path = Path(path)
        if path.is_dir() and (path / "kustomization.yaml").is_file():
            return self._run(kubeconfig, ["apply", "-k", str(path)])
        args = ["apply", "-f", str(path)]
        if path.is_dir():
            args.append("--recursive")
        return self._run(kubeconfig, args)

    def rollout_status(
        self, kubeconfig: Path, resource: str, namespace: str, timeout: float
    ) -> CommandResult:
        return self._run(
            kubeconfig,
            ["rollout", "status", resource, "--namespace", namespace, f"--timeout={int(timeout)}s"],
            timeout=timeout + 30,
        )
