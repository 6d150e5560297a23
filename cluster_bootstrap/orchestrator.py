"""Top-level bootstrap state machine.

::

    CHECKING_HEALTH -> FAST_PATH_DONE
                    -> RESOLVING_CREDENTIALS -> RECOVERED_DONE
                                             -> RESETTING_NODES -> APPLYING_CONFIGS
                                                -> BOOTSTRAPPING_ETCD -> AWAITING_K8S_API
                                                -> FETCHING_KUBECONFIG -> AWAITING_KUBECTL
    (any done state) -> INSTALLING_ADDONS -> DONE
    (any state) -> FAILED_FATAL

A retryable failure between RESETTING_NODES and AWAITING_KUBECTL restarts
the rebuild from RESETTING_NODES once; a second failure is fatal.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, field

from cluster_bootstrap.addons import AddonInstaller
from cluster_bootstrap.apply import ConfigApplyCoordinator
from cluster_bootstrap.config import BootstrapSettings
from cluster_bootstrap.credentials import CredentialManager
from cluster_bootstrap.exceptions import (
    BootstrapError,
    CredentialError,
    EtcdBootstrapError,
    ManagementApiTimeout,
    NodeUnreachableError,
    PipelineError,
    RebuildFailedError,
)
from cluster_bootstrap.kubectl import KubectlClient
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.credentials import CredentialBundle
from cluster_bootstrap.models.outcomes import BootstrapState, NodeOutcome, PipelineCondition
from cluster_bootstrap.models.target import ClusterTarget
from cluster_bootstrap.probe import ConnectivityProber, ReadinessGate
from cluster_bootstrap.reset import NodeResetCoordinator
from cluster_bootstrap.talos import TalosClient, etcd_failed

logger = get_logger(__name__)

MAX_REBUILD_ATTEMPTS = 2


@dataclass
class BootstrapResult:
    """How a run ended and what it produced."""

    state: BootstrapState
    bundle: CredentialBundle
    rebuild_attempts: int = 0
    history: list[BootstrapState] = field(default_factory=list)
    reset_outcomes: list[NodeOutcome] = field(default_factory=list)
    apply_outcomes: list[NodeOutcome] = field(default_factory=list)

    @property
    def fast_path(self) -> bool:
        return BootstrapState.FAST_PATH_DONE in self.history

    @property
    def recovered(self) -> bool:
        return BootstrapState.RECOVERED_DONE in self.history


class BootstrapOrchestrator:
    """Sequences credential resolution, rebuild and add-on hand-off."""

    def __init__(
        self,
        target: ClusterTarget,
        settings: BootstrapSettings,
        credentials: CredentialManager,
        reset_coordinator: NodeResetCoordinator,
        apply_coordinator: ConfigApplyCoordinator,
        talos: TalosClient,
        kubectl: KubectlClient,
        prober: ConnectivityProber,
        addon_installer: AddonInstaller | None = None,
        on_transition: Callable[[BootstrapState], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.target = target
        self.settings = settings
        self.credentials = credentials
        self.reset_coordinator = reset_coordinator
        self.apply_coordinator = apply_coordinator
        self.talos = talos
        self.kubectl = kubectl
        self.prober = prober
        self.addon_installer = addon_installer
        self.on_transition = on_transition
        self.sleep = sleep
        self.history: list[BootstrapState] = []
        self._reset_outcomes: list[NodeOutcome] = []
        self._apply_outcomes: list[NodeOutcome] = []
        self._latest_bundle: CredentialBundle | None = None

    @property
    def state(self) -> BootstrapState | None:
        return self.history[-1] if self.history else None

    def _transition(self, state: BootstrapState) -> None:
        logger.info(f"State: {state.value}")
        self.history.append(state)
        if self.on_transition:
            self.on_transition(state)

    def run(
        self, force_rebuild: bool = False, regenerate: bool = False, install_addons: bool = True
    ) -> BootstrapResult:
        """Bring the cluster up, reusing working state when possible.

        Args:
            force_rebuild: Skip the fast path and recovery, always rebuild
            regenerate: Never recover from existing trust material; a cluster
                that already works is still reused unless force_rebuild is set
            install_addons: Hand off to the add-on installer when done

        Raises:
            BootstrapError: On any fatal condition
        """
        self.history = []
        check_health = not force_rebuild
        recover = not (force_rebuild or regenerate)
        attempts = 0
        try:
            if install_addons and self.addon_installer:
                self.addon_installer.check_payloads()

            self._transition(BootstrapState.CHECKING_HEALTH)
            bundle = None
            if check_health:
                bundle = self.credentials.resolve_working_credentials(self.target)
            if bundle is not None:
                self._transition(BootstrapState.FAST_PATH_DONE)
            else:
                self._transition(BootstrapState.RESOLVING_CREDENTIALS)
                bundle = self._recover() if recover else None
                if bundle is not None:
                    self._transition(BootstrapState.RECOVERED_DONE)
                else:
                    self._check_reachability()
                    bundle = self.credentials.generate_fresh_credentials(self.target)
                    bundle, attempts = self._rebuild_with_retry(bundle)

            if install_addons and self.addon_installer:
                self._transition(BootstrapState.INSTALLING_ADDONS)
                self.addon_installer.install(bundle.kubeconfig, self.target.vip)
            self._transition(BootstrapState.DONE)
        except BootstrapError:
            self._transition(BootstrapState.FAILED_FATAL)
            raise

        return BootstrapResult(
            state=BootstrapState.DONE,
            bundle=bundle,
            rebuild_attempts=attempts,
            history=list(self.history),
            reset_outcomes=self._reset_outcomes,
            apply_outcomes=self._apply_outcomes,
        )

    def run_addons_only(self) -> BootstrapResult:
        """Install add-ons on a cluster that already works, without provisioning nodes."""
        self.history = []
        try:
            if self.addon_installer:
                self.addon_installer.check_payloads()
            self._transition(BootstrapState.CHECKING_HEALTH)
            bundle = self.credentials.resolve_working_credentials(self.target)
            if bundle is None:
                raise CredentialError(
                    "No working cluster credential found",
                    "Add-ons can only be installed on a running cluster; run without --addons-only",
                )
            self._transition(BootstrapState.FAST_PATH_DONE)
            if self.addon_installer:
                self._transition(BootstrapState.INSTALLING_ADDONS)
                self.addon_installer.install(bundle.kubeconfig, self.target.vip)
            self._transition(BootstrapState.DONE)
        except BootstrapError:
            self._transition(BootstrapState.FAILED_FATAL)
            raise
        return BootstrapResult(BootstrapState.DONE, bundle, history=list(self.history))

    def _recover(self) -> CredentialBundle | None:
        bundle = self.credentials.recover_credentials_from_existing_trust(self.target)
        if bundle is None:
            return None
        if self.kubectl.is_cluster_reachable(bundle.kubeconfig):
            logger.info("Recovered credentials reach a working cluster")
            return bundle
        logger.info("Recovered credentials do not reach a working cluster, rebuilding")
        return None

    def _check_reachability(self) -> None:
        port = self.settings.talos_api_port
        unreachable = [
            node
            for node in self.target.nodes
            if not self.prober.is_reachable(node) and not self.prober.is_port_open(node, port)
        ]
        if unreachable:
            raise NodeUnreachableError(unreachable, port)
        logger.debug(f"All {len(self.target.nodes)} nodes answer, proceeding with rebuild")

    def _rebuild_with_retry(self, bundle: CredentialBundle) -> tuple[CredentialBundle, int]:
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._rebuild(bundle), attempt
            except BootstrapError as e:
                if not e.retryable:
                    raise
                if attempt >= MAX_REBUILD_ATTEMPTS:
                    logger.error(f"Rebuild attempt {attempt} failed: {e.message}")
                    raise RebuildFailedError(attempt, e) from e
                logger.warning(
                    f"Rebuild attempt {attempt} failed: {e.message}; retrying from node reset"
                )
                bundle = self._latest_bundle

    def _rebuild(self, bundle: CredentialBundle) -> CredentialBundle:
        cp = self.target.control_plane
        self._latest_bundle = bundle

        self._transition(BootstrapState.RESETTING_NODES)
        self._reset_outcomes = self.reset_coordinator.reset_all(
            self.target, bundle.trust, self.settings.reset_policy
        )

        # Configs must come from the trust material generated after the wipe
        bundle = self.credentials.generate_fresh_credentials(self.target)
        self._latest_bundle = bundle

        self._transition(BootstrapState.APPLYING_CONFIGS)
        self._apply_outcomes = self.apply_coordinator.apply_all(self.target, bundle)

        self._transition(BootstrapState.BOOTSTRAPPING_ETCD)
        self._bootstrap_etcd(bundle)

        self._transition(BootstrapState.AWAITING_K8S_API)
        if not self.prober.wait_for_port(
            cp, self.settings.k8s_api_port, self.settings.k8s_api_timeout
        ):
            raise PipelineError(
                PipelineCondition.K8S_API_DOWN,
                f"Kubernetes API on {cp}:{self.settings.k8s_api_port} not reachable "
                f"after {self.settings.k8s_api_timeout:.0f}s",
            )

        self._transition(BootstrapState.FETCHING_KUBECONFIG)
        bundle = self.credentials.fetch_admin_credential(self.target, bundle)

        self._transition(BootstrapState.AWAITING_KUBECTL)
        gate = ReadinessGate(
            "kubectl get nodes", self.settings.kubectl_timeout, self.settings.poll_interval
        )
        if not gate.wait(self.prober, lambda: self.kubectl.is_cluster_reachable(bundle.kubeconfig)):
            raise PipelineError(
                PipelineCondition.KUBECTL_NOT_READY,
                f"kubectl could not list nodes with {bundle.kubeconfig} "
                f"after {self.settings.kubectl_timeout:.0f}s",
            )
        return bundle

    def _bootstrap_etcd(self, bundle: CredentialBundle) -> None:
        cp = self.target.control_plane
        if not self.prober.wait_for_port(
            cp, self.settings.talos_api_port, self.settings.control_plane_timeout
        ):
            raise ManagementApiTimeout(
                cp, self.settings.talos_api_port, self.settings.control_plane_timeout
            )

        result = self.talos.bootstrap_etcd(bundle.trust, cp)
        if not result.ok:
            raise EtcdBootstrapError(f"etcd bootstrap failed on {cp}", result.output)

        logger.info(f"etcd bootstrapped, settling for {self.settings.etcd_settle_delay:.0f}s")
        self.sleep(self.settings.etcd_settle_delay)

        if not self.settings.check_etcd_health:
            return
        status = self.talos.service_status(bundle.trust, cp)
        if not status.ok:
            logger.warning(f"Could not query service status on {cp}: {status.output}")
        elif etcd_failed(status.output):
            raise PipelineError(
                PipelineCondition.ETCD_FAILED, f"etcd reports a failed state on {cp}", status.output
            )
