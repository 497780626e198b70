"""Bootstrap phase sequencer.

Drives cluster formation one node at a time as an explicit state machine:

    uninitialized -> primary_initializing -> primary_ready
        -> control_plane_joining (per secondary control-plane node)
        -> control_plane_complete
        -> worker_joining (per worker) -> workers_complete -> cluster_ready

``aborted`` can be entered from any state. Every step first consults the
node's on-disk state so that a re-run after a partial failure skips what is
already done.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

from kubestrap.errors import (
    BootstrapTimeoutError,
    JoinFailure,
    NodeError,
    RemoteCommandError,
    SequencerStateError,
)
from kubestrap.modules.models import (
    ClusterFormationState,
    ClusterPhase,
    CredentialBundle,
    Node,
    PhaseStatus,
    RunReport,
    SequencerState,
)
from kubestrap.modules.readiness import ReadinessResult, api_server_probe
from kubestrap.modules.topology import Topology
from kubestrap.modules.utils import RetryError, RetryPolicy, retry_call

logger = logging.getLogger("kubestrap.sequencer")

S = SequencerState

TRANSITIONS: Dict[SequencerState, Set[SequencerState]] = {
    S.UNINITIALIZED: {S.PRIMARY_INITIALIZING, S.PRIMARY_READY},
    S.PRIMARY_INITIALIZING: {S.PRIMARY_READY},
    S.PRIMARY_READY: {S.CONTROL_PLANE_JOINING, S.CONTROL_PLANE_COMPLETE},
    S.CONTROL_PLANE_JOINING: {S.CONTROL_PLANE_JOINING, S.CONTROL_PLANE_COMPLETE},
    S.CONTROL_PLANE_COMPLETE: {S.WORKER_JOINING, S.WORKERS_COMPLETE},
    S.WORKER_JOINING: {S.WORKER_JOINING, S.WORKERS_COMPLETE},
    S.WORKERS_COMPLETE: {S.CLUSTER_READY},
    S.CLUSTER_READY: set(),
    S.ABORTED: set(),
}

PRIMARY_PHASE = S.PRIMARY_INITIALIZING.value
CONTROL_PLANE_PHASE = S.CONTROL_PLANE_JOINING.value
WORKER_PHASE = S.WORKER_JOINING.value


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class BootstrapSequencer:
    """Forms the cluster described by a topology.

    Args:
        topology: Resolved topology
        driver: kubeadm driver (node-local probes and formation commands)
        broker: Credential broker
        verifier: Readiness verifier
        cluster_view_factory: Builds a read-only cluster view once the admin
            kubeconfig is available
        config: KubestrapConfig
        api_probe_factory: Builds the API server ``/readyz`` probe
        sleep: Sleep function used between join retries
    """

    def __init__(
        self,
        topology: Topology,
        driver,
        broker,
        verifier,
        cluster_view_factory: Callable[[], object],
        config,
        api_probe_factory: Callable[..., Callable[[], bool]] = api_server_probe,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.topology = topology
        self.driver = driver
        self.broker = broker
        self.verifier = verifier
        self.cluster_view_factory = cluster_view_factory
        self.config = config
        self.api_probe_factory = api_probe_factory
        self.sleep = sleep

        self.state = SequencerState.UNINITIALIZED
        self.formation = ClusterFormationState(api_endpoint=topology.api_endpoint)
        self.retry_policy = RetryPolicy.from_config(config.retry)
        self.errors: List[str] = []
        self.view = None
        self.started_at: Optional[str] = None
        self.finished_at: Optional[str] = None

    # -- state machine ------------------------------------------------------

    def _transition(self, target: SequencerState) -> None:
        if target == S.ABORTED:
            self.state = target
            return
        if target not in TRANSITIONS[self.state]:
            raise SequencerStateError(
                f"Illegal transition from {self.state.value} to {target.value}"
            )
        logger.debug(f"State: {self.state.value} -> {target.value}")
        self.state = target

    def run(self) -> SequencerState:
        """Form the cluster, returning the final sequencer state.

        Raises:
            ConfigurationError, CredentialError, BootstrapTimeoutError,
            JoinFailure: On any fatal error; the sequencer is then ``aborted``
        """
        self.started_at = _now()
        try:
            self._form_primary()
            self._join_control_plane()
            self._join_workers()
            self._verify_cluster()
        except Exception as e:
            self.abort(e)
            raise
        finally:
            self.finished_at = _now()
        return self.state

    def abort(self, error: Exception) -> None:
        """Record ``error`` and move to ``aborted``."""
        self.errors.append(str(error))
        logger.error(f"❌ Bootstrap aborted in state {self.state.value}: {error}")
        self._transition(S.ABORTED)

    # -- primary ---------------------------------------------------------------

    def _form_primary(self) -> None:
        primary = self.topology.primary
        endpoint = self.topology.api_endpoint
        primary.mark(PhaseStatus.IN_PROGRESS)

        initialized_now = False
        if self.driver.is_initialized(primary):
            logger.info(f"⏭️  [{primary.id}] Control plane already initialized, skipping kubeadm init")
        else:
            self._transition(S.PRIMARY_INITIALIZING)
            bundle = self.broker.prepare_initial()
            # kubeadm init is not retried: it is not safe to re-run on a partially initialized host
            try:
                self.driver.init_primary(primary, bundle, endpoint)
            except RemoteCommandError as e:
                primary.mark(PhaseStatus.FAILED, str(e))
                raise JoinFailure(primary.id, PRIMARY_PHASE, e) from e
            initialized_now = True

        try:
            self.driver.fetch_admin_kubeconfig(primary, self.config.cluster.kubeconfig_path)
            self.view = self.cluster_view_factory()
        except Exception as e:
            primary.mark(PhaseStatus.FAILED, f"cannot open the cluster API: {e}")
            raise JoinFailure(primary.id, PRIMARY_PHASE, e) from e

        api_probe = self.api_probe_factory(
            primary.address, self.config.cluster.api_port, self.config.readiness.request_timeout
        )
        timeout = self.config.readiness.primary_timeout
        result = self.verifier.wait_for_ready(
            lambda: api_probe() and self.view.node_ready(primary.id),
            timeout,
            description=f"API server and node {primary.id}",
        )
        if result != ReadinessResult.READY:
            error = BootstrapTimeoutError(primary.id, PRIMARY_PHASE, timeout)
            primary.mark(PhaseStatus.FAILED, str(error))
            raise error

        self._transition(S.PRIMARY_READY)
        self.formation.advance(ClusterPhase.PRIMARY_READY)
        primary.mark(PhaseStatus.JOINED)
        logger.info(f"✅ [{primary.id}] Primary control plane ready")

        if initialized_now:
            # Capture the bundle used by init while it is known to be current
            self._credentials()

    def _credentials(self) -> CredentialBundle:
        self.broker.acquire(self.topology.primary, self.formation)
        return self.broker.require(self.formation)

    # -- joins -----------------------------------------------------------------

    def _already_member(self, node: Node, phase: str) -> bool:
        try:
            return self.driver.is_member(node)
        except RemoteCommandError as e:
            raise JoinFailure(node.id, phase, e) from e

    def _joined_meanwhile(self, node: Node) -> bool:
        try:
            return self.driver.is_member(node)
        except RemoteCommandError as e:
            logger.debug(f"[{node.id}] Membership check failed before retry: {e}")
            return False

    def _join_node(self, node: Node, phase: str, join: Callable[[CredentialBundle], None]) -> None:
        """Join one node, or skip it when it is already a member, then wait for Ready.

        Raises:
            JoinFailure: If the join still fails after all retries
            BootstrapTimeoutError: If the node does not become Ready in time
            CredentialError: If no usable credential bundle is available
        """
        node.mark(PhaseStatus.IN_PROGRESS)
        try:
            if self._already_member(node, phase):
                logger.info(f"⏭️  [{node.id}] Already a cluster member, skipping join")
            else:
                bundle = self._credentials()
                try:
                    retry_call(
                        lambda: join(bundle),
                        self.retry_policy,
                        f"[{node.id}] join",
                        exceptions=(RemoteCommandError,),
                        before_retry=lambda: self._joined_meanwhile(node),
                        sleep=self.sleep,
                    )
                except RetryError as e:
                    raise JoinFailure(node.id, phase, e.last_exception) from e

            timeout = self.config.readiness.node_timeout
            result = self.verifier.wait_for_ready(
                lambda: self.view.node_ready(node.id),
                timeout,
                description=f"node {node.id}",
            )
            if result != ReadinessResult.READY:
                raise BootstrapTimeoutError(node.id, phase, timeout)
        except Exception as e:
            node.mark(PhaseStatus.FAILED, str(e))
            raise
        node.mark(PhaseStatus.JOINED)
        logger.info(f"✅ [{node.id}] Joined and Ready")

    def _join_control_plane(self) -> None:
        endpoint = self.topology.api_endpoint
        for node in self.topology.secondary_control_plane:
            self._transition(S.CONTROL_PLANE_JOINING)
            self._join_node(
                node,
                CONTROL_PLANE_PHASE,
                lambda bundle, node=node: self.driver.join_control_plane(node, bundle, endpoint),
            )
        self._transition(S.CONTROL_PLANE_COMPLETE)
        self.formation.advance(ClusterPhase.CONTROL_PLANE_COMPLETE)
        logger.info(f"✅ Control plane complete ({len(self.topology.control_plane)} member(s))")

    def _join_workers(self) -> None:
        for node in self.topology.workers:
            self._transition(S.WORKER_JOINING)
            try:
                self._join_node(
                    node,
                    WORKER_PHASE,
                    lambda bundle, node=node: self.driver.join_worker(node, bundle),
                )
            except NodeError as e:
                # Worker failures are isolated; remaining workers still join
                self.errors.append(str(e))
                logger.error(f"❌ {e}")
        self._transition(S.WORKERS_COMPLETE)
        self.formation.advance(ClusterPhase.WORKERS_COMPLETE)

    # -- cluster ---------------------------------------------------------------

    def _verify_cluster(self) -> None:
        failed = [n.id for n in self.topology.nodes if n.phase_status == PhaseStatus.FAILED]
        if failed:
            logger.error(
                f"❌ Cluster not ready: {len(failed)} node(s) failed to join ({', '.join(failed)}). "
                "Reset them with 'kubestrap reset node' and re-run."
            )
            return

        expected = {n.id for n in self.topology.nodes}
        timeout = self.config.readiness.cluster_timeout
        result = self.verifier.wait_for_ready(
            lambda: self.view.cluster_matches(expected),
            timeout,
            description=f"all {len(expected)} nodes Ready",
        )
        if result != ReadinessResult.READY:
            raise BootstrapTimeoutError("cluster", S.CLUSTER_READY.value, timeout)
        self._transition(S.CLUSTER_READY)
        logger.info("🎉 Cluster is ready")

    def mark_addons_complete(self) -> None:
        if self.state != S.CLUSTER_READY:
            raise SequencerStateError(
                f"Add-ons cannot complete while the sequencer is {self.state.value}"
            )
        self.formation.advance(ClusterPhase.ADDONS_COMPLETE)

    def report(self) -> RunReport:
        """Snapshot of the run. Never contains credentials."""
        return RunReport(
            state=self.state.value,
            phase=self.formation.phase.value,
            api_endpoint=self.topology.api_endpoint,
            nodes=[
                {
                    'id': n.id,
                    'address': n.address,
                    'role': n.role.value,
                    'is_primary': n.is_primary,
                    'phase_status': n.phase_status.value,
                    'vip_priority': n.vip_priority,
                    'error': n.error,
                }
                for n in self.topology.ordered()
            ],
            errors=list(self.errors),
            started_at=self.started_at,
            finished_at=self.finished_at,
        )
