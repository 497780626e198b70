"""Wires one bootstrap run end to end.

Topology (already resolved) -> VIP failover group -> cluster formation ->
add-on installation -> persisted run report.
"""

import logging
from typing import Any, Dict, List, Optional

from kubestrap.modules.addons import (
    AddonGate,
    HelmInstaller,
    ManifestInstaller,
    all_installed,
    resolve_install_order,
)
from kubestrap.modules.credentials import CredentialBroker
from kubestrap.modules.kubeadm import KubeadmDriver
from kubestrap.modules.models import AddonSpec, RunReport, SequencerState
from kubestrap.modules.readiness import ClusterView, ReadinessVerifier, api_server_probe
from kubestrap.modules.report import save_report
from kubestrap.modules.sequencer import BootstrapSequencer
from kubestrap.modules.ssh import SSHExecutor
from kubestrap.modules.topology import Topology
from kubestrap.modules.vip import VipFailoverCoordinator, build_group, reelection_bound

logger = logging.getLogger("kubestrap.orchestrator")


def addon_summary(addons: List[AddonSpec]) -> List[Dict[str, Any]]:
    return [
        {
            'name': a.name,
            'version': a.version,
            'enabled': a.enabled,
            'depends_on': sorted(a.depends_on),
            'install_state': a.install_state.value,
            'error': a.error,
        }
        for a in addons
    ]


def plan_bootstrap(topology: Topology, addons: List[AddonSpec], config) -> Dict[str, Any]:
    """Describe what a run would do, without contacting any node.

    Raises:
        ConfigurationError: If the VIP settings or add-on graph are invalid
    """
    group = build_group(topology, config.vip)
    order = resolve_install_order(addons)
    return {
        'cluster': topology.name,
        'api_endpoint': topology.api_endpoint,
        'vip': {
            'address': group.virtual_ip,
            'interface': group.interface,
            'virtual_router_id': group.virtual_router_id,
            'master': group.master.id if group.master else None,
            'reelection_bound_seconds': reelection_bound(config.vip),
        },
        'nodes': [
            {
                'id': n.id,
                'address': n.address,
                'role': n.role.value,
                'is_primary': n.is_primary,
                'vip_priority': n.vip_priority,
            }
            for n in topology.ordered()
        ],
        'addons': [a.name for a in order],
    }


def run_bootstrap(
    topology: Topology,
    addons: List[AddonSpec],
    config,
    executor: Optional[SSHExecutor] = None,
    skip_vip: bool = False,
    skip_addons: bool = False,
    driver=None,
    verifier=None,
    cluster_view_factory=None,
    installers: Optional[Dict[str, Any]] = None,
    api_probe_factory=api_server_probe,
) -> RunReport:
    """Run a full bootstrap and persist its report.

    Args:
        topology: Resolved topology
        addons: Add-on catalog
        config: KubestrapConfig
        executor: Remote executor (an SSH executor from ``config.ssh`` by default)
        skip_vip: Do not configure keepalived (VIP managed elsewhere)
        skip_addons: Stop once the cluster is ready
        driver: kubeadm driver (built on ``executor`` by default)
        verifier: Readiness verifier (from ``config.readiness`` by default)
        cluster_view_factory: Builds the cluster view once the admin kubeconfig
            has been fetched (kubeconfig-backed by default)
        installers: Installer per add-on kind (Helm and manifest by default)
        api_probe_factory: Builds the API server readiness probe

    Returns:
        RunReport: the report that was saved to ``cluster.report_path``

    Raises:
        KubestrapError: Any fatal error, after the report has been saved
    """
    # Pre-flight: nothing remote is touched when these fail
    group = None if skip_vip else build_group(topology, config.vip)
    if not skip_addons:
        resolve_install_order(addons)

    executor = executor or SSHExecutor(config.ssh)
    driver = driver or KubeadmDriver(executor, config.cluster, config.credentials)
    broker = CredentialBroker(driver, config.credentials)
    verifier = verifier or ReadinessVerifier.from_config(config.readiness)
    if cluster_view_factory is None:
        def cluster_view_factory():
            return ClusterView.from_kubeconfig(config.cluster.kubeconfig_path, config.readiness)
    if installers is None:
        installers = {
            'helm': HelmInstaller(config.addons, config.cluster.kubeconfig_path),
            'manifest': ManifestInstaller(config.cluster.kubeconfig_path),
        }
    sequencer = BootstrapSequencer(
        topology,
        driver,
        broker,
        verifier,
        cluster_view_factory,
        config,
        api_probe_factory=api_probe_factory,
    )

    with executor:
        try:
            if group is not None:
                coordinator = VipFailoverCoordinator(executor, config.vip, config.cluster.api_port)
                changed = coordinator.configure(group)
                logger.info(f"VIP failover configured ({sum(changed.values())} member(s) changed)")

            state = sequencer.run()
            if state == SequencerState.CLUSTER_READY and not skip_addons:
                gate = AddonGate(
                    installers,
                    verifier,
                    sequencer.view,
                    timeout=config.readiness.cluster_timeout,
                )
                gate.install(addons, state)
                if all_installed(addons):
                    sequencer.mark_addons_complete()
                    logger.info("🎉 All add-ons installed")
        except Exception as e:
            if sequencer.state != SequencerState.ABORTED:
                sequencer.abort(e)
            raise
        finally:
            report = sequencer.report()
            report.addons = addon_summary(addons)
            save_report(report, config.cluster.report_path)
    return report
