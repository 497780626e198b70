import pytest

from kubestrap.errors import AddonDependencyError, BootstrapTimeoutError, JoinFailure
from kubestrap.modules.addons import load_addons
from kubestrap.modules.models import AddonSpec, ClusterPhase, InstallState, SequencerState
from kubestrap.modules.orchestrator import run_bootstrap
from kubestrap.modules.report import load_report
from kubestrap.tests.fakes import FakeClusterView, FakeExecutor, FakeInstaller, FakeVerifier


@pytest.fixture
def report_path(config, tmp_path):
    config.cluster.report_path = str(tmp_path / "state" / "last-run.json")
    return config.cluster.report_path


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def bootstrap(topology, config, driver, events, executor, report_path):
    """Run a bootstrap against in-memory nodes, add-on installers and cluster API."""

    def runner(addons, failing=(), view=None, **kwargs):
        calls = []
        installer = FakeInstaller(calls, failing)
        report = run_bootstrap(
            topology,
            addons,
            config,
            executor=executor,
            driver=driver,
            verifier=FakeVerifier(events),
            cluster_view_factory=lambda: view or FakeClusterView(driver),
            installers={'helm': installer, 'manifest': installer},
            api_probe_factory=lambda host, port, timeout: (lambda: True),
            **kwargs
        )
        return report, calls

    return runner


class UnhealthyAfterFormationView(FakeClusterView):
    """Every node looks Ready while forming, then ctrl-1 drops out."""

    def cluster_matches(self, expected):
        return True

    def ready_nodes(self):
        return {"ctrl-1": False}


def test_full_run_installs_addons_after_formation(bootstrap, driver, executor, report_path):
    addons = load_addons()

    report, calls = bootstrap(addons)

    assert report.state == SequencerState.CLUSTER_READY.value
    assert report.phase == ClusterPhase.ADDONS_COMPLETE.value
    assert all(a.install_state == InstallState.INSTALLED for a in addons)
    assert sorted(calls) == sorted(a.name for a in addons)
    for addon in addons:
        assert all(calls.index(dep) < calls.index(addon.name) for dep in addon.depends_on)

    assert driver.join_calls[0] == ('init_primary', 'ctrl-1')
    assert {node for node, path in executor.writes if path.endswith("keepalived.conf")} == {
        "ctrl-1", "ctrl-2", "ctrl-3"
    }

    saved = load_report(report_path)
    assert saved.state == "cluster_ready"
    assert saved.phase == "addons_complete"
    assert [a['install_state'] for a in saved.addons] == ["installed"] * len(addons)


def test_skip_vip_and_addons(bootstrap, executor, report_path):
    addons = load_addons()

    report, calls = bootstrap(addons, skip_vip=True, skip_addons=True)

    assert report.state == "cluster_ready"
    assert report.phase == "workers_complete"
    assert calls == []
    assert executor.writes == []
    assert load_report(report_path).state == "cluster_ready"


def test_unhealthy_cluster_aborts_before_addons(bootstrap, driver, report_path):
    addons = load_addons()

    with pytest.raises(BootstrapTimeoutError) as excinfo:
        bootstrap(addons, view=UnhealthyAfterFormationView(driver))

    assert excinfo.value.phase == "addons"
    saved = load_report(report_path)
    assert saved.state == "aborted"
    assert saved.phase == "workers_complete"
    assert "not ready after" in saved.errors[-1]
    assert all(a['install_state'] == "not_started" for a in saved.addons)


def test_failed_addon_leaves_cluster_ready(bootstrap, report_path):
    addons = load_addons()
    by_name = {a.name: a for a in addons}

    report, calls = bootstrap(addons, failing={"metallb"})

    assert report.state == "cluster_ready"
    assert report.phase == "workers_complete"
    assert by_name["metallb"].install_state == InstallState.FAILED
    assert by_name["metallb-pool"].install_state == InstallState.NOT_STARTED
    assert "blocked by metallb" in by_name["metallb-pool"].error
    assert by_name["cert-manager"].install_state == InstallState.INSTALLED
    assert "metallb-pool" not in calls

    saved = {a['name']: a for a in load_report(report_path).addons}
    assert saved["metallb"]["install_state"] == "failed"


def test_node_failure_saves_report(bootstrap, driver, report_path):
    driver.fail_init = True

    with pytest.raises(JoinFailure):
        bootstrap(load_addons())

    saved = load_report(report_path)
    assert saved.state == "aborted"
    assert saved.failed_nodes == ["ctrl-1"]


def test_cyclic_addons_touch_no_node(bootstrap, driver, executor, report_path):
    addons = [AddonSpec("A", depends_on={"B"}), AddonSpec("B", depends_on={"A"})]

    with pytest.raises(AddonDependencyError):
        bootstrap(addons)

    assert driver.events == []
    assert executor.commands == []
    assert executor.writes == []
    assert load_report(report_path) is None
