"""Main CLI entry point for cluster bootstrap."""

from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cluster_bootstrap.config import (
    DEFAULT_CONFIG_PATH,
    BootstrapSettings,
    build_config,
    build_settings,
    read_config_file,
)
from cluster_bootstrap.exceptions import BootstrapError, NodeOperationError
from cluster_bootstrap.logging_config import get_logger, setup_logging
from cluster_bootstrap.models.outcomes import BootstrapState, NodeOutcome, ResetPolicy
from cluster_bootstrap.models.target import ClusterTarget

app = typer.Typer(
    name="cluster-bootstrap",
    help="Bootstrap Talos Linux Kubernetes clusters from any partial state",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

STATE_LABELS = {
    BootstrapState.CHECKING_HEALTH: "Checking for a working cluster",
    BootstrapState.FAST_PATH_DONE: "Cluster already working, skipping provisioning",
    BootstrapState.RESOLVING_CREDENTIALS: "Resolving credentials",
    BootstrapState.RECOVERED_DONE: "Recovered credentials from existing trust",
    BootstrapState.RESETTING_NODES: "Resetting nodes",
    BootstrapState.APPLYING_CONFIGS: "Applying node configurations",
    BootstrapState.BOOTSTRAPPING_ETCD: "Bootstrapping etcd",
    BootstrapState.AWAITING_K8S_API: "Waiting for the Kubernetes API",
    BootstrapState.FETCHING_KUBECONFIG: "Fetching admin kubeconfig",
    BootstrapState.AWAITING_KUBECTL: "Waiting for kubectl",
    BootstrapState.INSTALLING_ADDONS: "Installing add-ons",
    BootstrapState.DONE: "Done",
    BootstrapState.FAILED_FATAL: "Failed",
}


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Global options for all commands."""
    log_path = Path(log_file) if log_file else None
    setup_logging(verbose=verbose, log_file=log_path)
    logger.debug("Logging initialized")


def print_transition(state: BootstrapState) -> None:
    if state is BootstrapState.FAILED_FATAL:
        console.print(f"[red]✗ {STATE_LABELS[state]}[/red]")
    elif state is BootstrapState.DONE:
        console.print(f"[green]✓ {STATE_LABELS[state]}[/green]")
    else:
        console.print(f"[cyan]→[/cyan] {STATE_LABELS[state]}")


def print_outcomes(title: str, outcomes: list[NodeOutcome]) -> None:
    if not outcomes:
        return
    table = Table(title=title)
    table.add_column("Node", style="cyan")
    table.add_column("Result")
    table.add_column("Trust modes", style="magenta")
    table.add_column("Reason")
    for outcome in outcomes:
        if outcome.succeeded:
            result = "[green]✓ success[/green]"
        else:
            result = f"[red]✗ {outcome.status.value}[/red]"
        modes = " → ".join(m.value for m in outcome.attempts)
        table.add_row(outcome.address, result, modes, escape(outcome.reason or ""))
    console.print(table)


def print_error(e: BootstrapError) -> None:
    console.print(f"[red]Error:[/red] {escape(e.message)}")
    if isinstance(e, NodeOperationError):
        print_outcomes("Node outcomes", e.outcomes)
    if e.details:
        console.print(f"\n{escape(e.details)}")


def load_settings(
    config_path: str | None,
    cluster_overrides: dict,
    settings_overrides: dict,
) -> tuple[ClusterTarget, BootstrapSettings]:
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    file_data = read_config_file(path, required=config_path is not None)
    return build_config(file_data, cluster_overrides, settings_overrides)


def build_orchestrator(target: ClusterTarget, settings: BootstrapSettings):
    """Wire the real adapters and coordinators for a run."""
    from cluster_bootstrap.addons import AddonInstaller
    from cluster_bootstrap.apply import ConfigApplyCoordinator
    from cluster_bootstrap.credentials import CredentialManager
    from cluster_bootstrap.kubectl import KubectlClient
    from cluster_bootstrap.orchestrator import BootstrapOrchestrator
    from cluster_bootstrap.probe import ConnectivityProber
    from cluster_bootstrap.reset import NodeResetCoordinator
    from cluster_bootstrap.talos import TalosClient

    talos = TalosClient(settings.talosctl_binary)
    kubectl = KubectlClient(settings.kubectl_binary)
    talos.check_installed()
    kubectl.check_installed()

    prober = ConnectivityProber(interval=settings.poll_interval)
    reset_coordinator = NodeResetCoordinator(
        talos,
        prober,
        rules=settings.failure_rules,
        management_port=settings.talos_api_port,
        management_timeout=settings.control_plane_timeout,
        max_workers=settings.reset_workers,
    )
    return BootstrapOrchestrator(
        target=target,
        settings=settings,
        credentials=CredentialManager(
            talos,
            kubectl,
            settings.state_dir,
            settings.kubeconfig_path,
            fallback_kubeconfigs=settings.fallback_kubeconfigs,
            min_artifact_bytes=settings.min_artifact_bytes,
            api_port=settings.k8s_api_port,
        ),
        reset_coordinator=reset_coordinator,
        apply_coordinator=ConfigApplyCoordinator(
            talos,
            reset_coordinator,
            rules=settings.failure_rules,
            settle_delay=settings.apply_settle_delay,
        ),
        talos=talos,
        kubectl=kubectl,
        prober=prober,
        addon_installer=AddonInstaller(
            kubectl,
            prober,
            settings.addons_dir,
            settings.state_dir,
            rollout_timeout=settings.rollout_timeout,
        ),
        on_transition=print_transition,
    )


@app.command()
def version() -> None:
    """Show version information."""
    from cluster_bootstrap import __version__

    typer.echo(f"cluster-bootstrap version {__version__}")


@app.command()
def up(
    config_path: str | None = typer.Option(
        None, "--config", "-c", help=f"Configuration file (default: {DEFAULT_CONFIG_PATH} if present)"
    ),
    cluster_name: str | None = typer.Option(None, "--cluster-name", "-n", help="Cluster name"),
    control_plane: str | None = typer.Option(
        None, "--control-plane", help="Control plane node address"
    ),
    workers: list[str] | None = typer.Option(
        None, "--worker", "-w", help="Worker node address (repeat for each worker)"
    ),
    vip: str | None = typer.Option(None, "--vip", help="Floating address for load-balanced ingress"),
    control_plane_timeout: float | None = typer.Option(
        None, "--control-plane-timeout", help="Seconds to wait for the Talos API"
    ),
    k8s_api_timeout: float | None = typer.Option(
        None, "--k8s-api-timeout", help="Seconds to wait for the Kubernetes API port"
    ),
    kubectl_timeout: float | None = typer.Option(
        None, "--kubectl-timeout", help="Seconds to wait for kubectl to list nodes"
    ),
    reset_policy: ResetPolicy | None = typer.Option(
        None, "--reset-policy", help="all-or-nothing (default) or best-effort"
    ),
    force_rebuild: bool = typer.Option(
        False, "--force-rebuild", help="Rebuild even if the cluster already works"
    ),
    regenerate: bool = typer.Option(
        False, "--regenerate", help="Generate new credentials instead of recovering from existing ones"
    ),
    skip_addons: bool = typer.Option(
        False, "--skip-addons", help="Stop once the cluster is up, without installing add-ons"
    ),
    addons_only: bool = typer.Option(
        False, "--addons-only", help="Skip node provisioning and only install add-ons"
    ),
    no_etcd_check: bool = typer.Option(
        False, "--no-etcd-check", help="Skip the etcd health query after bootstrap"
    ),
    state_dir: str | None = typer.Option(None, "--state-dir", help="Directory for generated configs"),
    kubeconfig: str | None = typer.Option(None, "--kubeconfig", help="Admin kubeconfig path"),
    addons_dir: str | None = typer.Option(None, "--addons-dir", help="Add-on manifest directory"),
) -> None:
    """
    Bring a Talos cluster up and install add-ons.

    Reuses a working cluster when one is found. Otherwise resets every node,
    applies fresh configuration, bootstraps etcd and waits for Kubernetes,
    retrying the whole rebuild once before giving up.

    Examples:
        cluster-bootstrap up -n lab --control-plane 10.0.0.1 -w 10.0.0.2 -w 10.0.0.3 --vip 10.0.0.9

        cluster-bootstrap up --config cluster.yml --force-rebuild
    """
    from cluster_bootstrap.lock import state_lock

    if addons_only and (skip_addons or force_rebuild or regenerate):
        console.print(
            "[red]Error:[/red] --addons-only cannot be combined with "
            "--skip-addons, --force-rebuild or --regenerate"
        )
        raise typer.Exit(code=1)

    try:
        target, settings = load_settings(
            config_path,
            {
                "cluster_name": cluster_name,
                "control_plane": control_plane,
                "workers": workers,
                "vip": vip,
            },
            {
                "control_plane_timeout": control_plane_timeout,
                "k8s_api_timeout": k8s_api_timeout,
                "kubectl_timeout": kubectl_timeout,
                "reset_policy": reset_policy,
                "check_etcd_health": False if no_etcd_check else None,
                "state_dir": state_dir,
                "kubeconfig_path": kubeconfig,
                "addons_dir": addons_dir,
            },
        )

        console.print(f"\n[bold cyan]Cluster {target.cluster_name}[/bold cyan]")
        console.print(f"Control plane: {target.control_plane}")
        console.print(f"Workers: {', '.join(target.workers)}")
        console.print(f"VIP: {target.vip}\n")

        with state_lock(settings.state_dir):
            orchestrator = build_orchestrator(target, settings)
            if addons_only:
                result = orchestrator.run_addons_only()
            else:
                result = orchestrator.run(
                    force_rebuild=force_rebuild,
                    regenerate=regenerate,
                    install_addons=not skip_addons,
                )

        print_outcomes("Node reset", result.reset_outcomes)
        print_outcomes("Configuration apply", result.apply_outcomes)
        if result.fast_path:
            console.print("\n[green]✓ Cluster was already running[/green]")
        elif result.recovered:
            console.print("\n[green]✓ Cluster credentials recovered[/green]")
        else:
            console.print(
                f"\n[green]✓ Cluster built in {result.rebuild_attempts} attempt(s)[/green]"
            )
        console.print(f"Kubeconfig: {result.bundle.kubeconfig}")

    except BootstrapError as e:
        logger.error(f"Bootstrap failed: {e.message}")
        print_error(e)
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Bootstrap interrupted by user[/yellow]")
        console.print("Credential files may be partially written; the next run will re-check them")
        raise typer.Exit(code=130)


@app.command()
def reset(
    config_path: str | None = typer.Option(None, "--config", "-c", help="Configuration file"),
    cluster_name: str | None = typer.Option(None, "--cluster-name", "-n", help="Cluster name"),
    control_plane: str | None = typer.Option(
        None, "--control-plane", help="Control plane node address"
    ),
    workers: list[str] | None = typer.Option(
        None, "--worker", "-w", help="Worker node address (repeat for each worker)"
    ),
    vip: str | None = typer.Option(None, "--vip", help="Floating address for load-balanced ingress"),
    reset_policy: ResetPolicy | None = typer.Option(
        None, "--reset-policy", help="all-or-nothing (default) or best-effort"
    ),
    state_dir: str | None = typer.Option(None, "--state-dir", help="Directory for generated configs"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation prompt"),
) -> None:
    """
    Wipe every node of the cluster and wait for the control plane to return.

    Tries the existing trust material first and falls back to an insecure
    reset on nodes that trust a different authority.
    """
    from cluster_bootstrap.lock import state_lock

    try:
        target, settings = load_settings(
            config_path,
            {
                "cluster_name": cluster_name,
                "control_plane": control_plane,
                "workers": workers,
                "vip": vip,
            },
            {"reset_policy": reset_policy, "state_dir": state_dir},
        )

        if not force:
            console.print(
                f"[yellow]Warning:[/yellow] About to wipe STATE and EPHEMERAL on "
                f"{', '.join(target.nodes)}"
            )
            if not typer.confirm("Are you sure you want to continue?"):
                console.print("Operation cancelled")
                raise typer.Exit(code=0)

        with state_lock(settings.state_dir):
            orchestrator = build_orchestrator(target, settings)
            bundle = orchestrator.credentials.bundle(target)
            outcomes = orchestrator.reset_coordinator.reset_all(
                target, bundle.trust, settings.reset_policy
            )

        print_outcomes("Node reset", outcomes)
        console.print("\n[green]✓ Control plane Talos API is back[/green]")

    except BootstrapError as e:
        logger.error(f"Reset failed: {e.message}")
        print_error(e)
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Reset interrupted by user[/yellow]")
        raise typer.Exit(code=130)


@app.command()
def status(
    config_path: str | None = typer.Option(None, "--config", "-c", help="Configuration file"),
    kubeconfig: str | None = typer.Option(None, "--kubeconfig", "-k", help="Admin kubeconfig path"),
    cluster_name: str | None = typer.Option(None, "--cluster-name", "-n", help="Cluster name"),
) -> None:
    """
    Show the nodes registered in the cluster.

    The kubeconfig defaults to the one 'up' writes for the same configuration file.

    Examples:
        cluster-bootstrap status

        cluster-bootstrap status --kubeconfig ./kubeconfig
    """
    from kubernetes import client, config
    from kubernetes.client.rest import ApiException

    from cluster_bootstrap.models.cluster import ClusterState

    try:
        path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
        file_data = read_config_file(path, required=config_path is not None)
        settings = build_settings(file_data, {"kubeconfig_path": kubeconfig})
    except BootstrapError as e:
        print_error(e)
        raise typer.Exit(code=1)

    cluster_name = cluster_name or (file_data.get("cluster") or {}).get("cluster_name") or "cluster"
    kubeconfig_path = settings.kubeconfig_path
    if not kubeconfig_path.is_file():
        console.print(f"[red]Error:[/red] Kubeconfig not found: {kubeconfig_path}")
        console.print("\nRun 'cluster-bootstrap up' first to create it")
        raise typer.Exit(code=1)

    try:
        config.load_kube_config(config_file=str(kubeconfig_path))
        api_server = client.Configuration.get_default_copy().host
        state = ClusterState.from_kubernetes_api(client.CoreV1Api(), cluster_name, api_server)
    except ApiException as e:
        console.print(f"[red]Error:[/red] Failed to list nodes: {e.reason}")
        raise typer.Exit(code=1)
    except Exception as e:
        console.print(f"[red]Error:[/red] Failed to load kubeconfig: {e}")
        raise typer.Exit(code=1)

    console.print(f"[bold cyan]API server:[/bold cyan] {state.api_server}")
    if not state.nodes:
        console.print("[yellow]No nodes found in the cluster[/yellow]")
        raise typer.Exit(code=0)

    table = Table(title=f"Cluster Nodes ({len(state.nodes)})")
    table.add_column("Name", style="cyan")
    table.add_column("Role", style="magenta")
    table.add_column("Status")
    table.add_column("Internal IP", style="yellow")
    table.add_column("Version", style="blue")
    table.add_column("OS")
    for node in state.nodes:
        status_str = "[green]✓ Ready[/green]" if node.status == "Ready" else f"[red]✗ {node.status}[/red]"
        table.add_row(
            node.name,
            node.role,
            status_str,
            node.internal_ip,
            node.kubelet_version,
            node.os_image,
        )
    console.print(table)

    console.print(f"\n[bold]Ready:[/bold] {state.ready_count}/{len(state.nodes)}")


if __name__ == "__main__":
    app()
