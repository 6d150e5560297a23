"""Bootstrap configuration file handling.

The optional configuration file has two top-level sections::

    cluster:
      cluster_name: homelab
      control_plane: 10.0.0.1
      workers: [10.0.0.2, 10.0.0.3]
      vip: 10.0.0.9
    settings:
      k8s_api_timeout: 900
      failure_rules:
        maintenance_mode: ["maintenance mode"]

Command-line options take precedence over values from the file.
"""

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from cluster_bootstrap.classify import FailureRules
from cluster_bootstrap.exceptions import ConfigurationError
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.outcomes import ResetPolicy
from cluster_bootstrap.models.target import ClusterTarget

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("cluster.yml")


class BootstrapSettings(BaseModel):
    """Tunables for a bootstrap run."""

    control_plane_timeout: float = Field(600, gt=0)
    k8s_api_timeout: float = Field(600, gt=0)
    kubectl_timeout: float = Field(600, gt=0)
    poll_interval: float = Field(5, gt=0)
    apply_settle_delay: float = Field(10, ge=0)
    etcd_settle_delay: float = Field(10, ge=0)
    rollout_timeout: float = Field(300, gt=0)
    talos_api_port: int = 50000
    k8s_api_port: int = 6443
    reset_policy: ResetPolicy = ResetPolicy.ALL_OR_NOTHING
    reset_workers: int | None = Field(None, ge=1)
    check_etcd_health: bool = True
    min_artifact_bytes: int = Field(100, ge=1)
    state_dir: Path = Path("clusterconfig")
    kubeconfig_path: Path = Path("kubeconfig")
    addons_dir: Path = Path("addons")
    fallback_kubeconfigs: list[Path] = Field(default_factory=lambda: [Path("~/.kube/config")])
    talosctl_binary: str = "talosctl"
    kubectl_binary: str = "kubectl"
    failure_rules: FailureRules = Field(default_factory=FailureRules)


def read_config_file(path: Path, required: bool = False) -> dict:
    """Read a configuration file.

    Args:
        path: Path to the YAML file
        required: If False, a missing file yields an empty configuration

    Raises:
        ConfigurationError: If the file is required but missing, or unparseable
    """
    path = Path(path)
    if not path.exists():
        if required:
            raise ConfigurationError(
                f"Configuration file not found: {path}",
                f"Expected location: {path.absolute()}",
            )
        logger.debug(f"No configuration file at {path}, using command-line values only")
        return {}

    yaml = YAML(typ="safe")
    try:
        with open(path) as f:
            data = yaml.load(f)
    except (OSError, YAMLError) as e:
        logger.error(f"Failed to parse configuration file {path}: {e}")
        raise ConfigurationError(
            f"Failed to parse configuration file: {path}",
            f"{e}\n\nCheck the YAML syntax of the file.",
        )

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Configuration file {path} must contain a mapping",
            "Expected top-level 'cluster' and 'settings' sections",
        )
    unknown = set(data) - {"cluster", "settings"}
    if unknown:
        raise ConfigurationError(
            f"Unknown section(s) in {path}: {', '.join(sorted(unknown))}",
            "Only 'cluster' and 'settings' are supported",
        )
    logger.debug(f"Loaded configuration file {path}")
    return data


def _format_validation_error(e: ValidationError) -> str:
    lines = []
    for error in e.errors():
        field = ".".join(str(x) for x in error["loc"]) or "(root)"
        lines.append(f"  - {field}: {error['msg']}")
    return "\n".join(lines)


def build_settings(
    file_data: dict, settings_overrides: dict[str, Any] | None = None
) -> BootstrapSettings:
    """Validate the settings section merged with overrides, ignoring the cluster section.

    Raises:
        ConfigurationError: If the merged values do not validate
    """
    settings = dict(file_data.get("settings") or {})
    settings.update({k: v for k, v in (settings_overrides or {}).items() if v is not None})
    try:
        return BootstrapSettings(**settings)
    except ValidationError as e:
        raise ConfigurationError("Invalid settings", _format_validation_error(e))


def build_config(
    file_data: dict,
    cluster_overrides: dict[str, Any] | None = None,
    settings_overrides: dict[str, Any] | None = None,
) -> tuple[ClusterTarget, BootstrapSettings]:
    """Merge file values with overrides and validate them.

    Overrides whose value is None are ignored.

    Raises:
        ConfigurationError: If the merged values do not validate
    """
    cluster = dict(file_data.get("cluster") or {})
    cluster.update({k: v for k, v in (cluster_overrides or {}).items() if v not in (None, [], ())})

    missing = [k for k in ("cluster_name", "control_plane", "workers", "vip") if not cluster.get(k)]
    if missing:
        raise ConfigurationError(
            f"Missing required cluster parameter(s): {', '.join(missing)}",
            "Pass them on the command line (--cluster-name, --control-plane, --worker, --vip) "
            "or in the 'cluster' section of the configuration file",
        )

    try:
        target = ClusterTarget(**cluster)
    except ValidationError as e:
        raise ConfigurationError("Invalid cluster parameters", _format_validation_error(e))

    return target, build_settings(file_data, settings_overrides)
