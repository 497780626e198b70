import json
from dataclasses import asdict
from datetime import timedelta

import pytest
from kubernetes.config import ConfigException

from kubestrap.errors import BootstrapTimeoutError, JoinFailure, KubestrapError, SequencerStateError
from kubestrap.modules.credentials import CredentialBroker
from kubestrap.modules.models import ClusterPhase, PhaseStatus, SequencerState
from kubestrap.modules.readiness import ReadinessResult
from kubestrap.modules.sequencer import PRIMARY_PHASE, BootstrapSequencer
from kubestrap.tests.fakes import FakeClusterView, FakeDriver, FakeVerifier


def test_end_to_end_call_order(make_sequencer, driver):
    sequencer = make_sequencer()

    assert sequencer.run() == SequencerState.CLUSTER_READY
    assert driver.join_calls == [
        ('init_primary', 'ctrl-1'),
        ('join_control_plane', 'ctrl-2'),
        ('join_control_plane', 'ctrl-3'),
        ('join_worker', 'work-1'),
        ('join_worker', 'work-2'),
        ('join_worker', 'work-3'),
    ]
    assert sequencer.formation.phase == ClusterPhase.WORKERS_COMPLETE
    assert all(n.phase_status == PhaseStatus.JOINED for n in sequencer.topology.nodes)


def test_init_credentials_are_used_for_every_join(make_sequencer, driver):
    sequencer = make_sequencer()
    sequencer.run()

    assert driver.last_bundle is driver.init_bundle
    assert sequencer.formation.join_token == driver.init_bundle.join_token
    assert driver.cache['join_token'] == driver.init_bundle.join_token
    assert ('create_token', 'ctrl-1') not in driver.calls


def test_second_run_makes_no_mutating_calls(make_sequencer, driver):
    make_sequencer().run()
    driver.events.clear()

    second = make_sequencer()

    assert second.run() == SequencerState.CLUSTER_READY
    assert driver.mutating_calls == []
    assert second.formation.credentials is None


def test_control_plane_joins_are_sequential(make_sequencer, driver, events):
    make_sequencer().run()

    sequence = [e for e in events if e[0] in ('join_control_plane', 'wait')]
    assert sequence[:4] == [
        ('wait', 'API server and node ctrl-1'),
        ('join_control_plane', 'ctrl-2'),
        ('wait', 'node ctrl-2'),
        ('join_control_plane', 'ctrl-3'),
    ]


def test_worker_timeout_does_not_stop_siblings(make_sequencer, driver):
    sequencer = make_sequencer(not_ready={'work-2'})

    state = sequencer.run()

    assert state == SequencerState.WORKERS_COMPLETE
    nodes = {n.id: n for n in sequencer.topology.nodes}
    assert nodes['work-2'].phase_status == PhaseStatus.FAILED
    assert 'work-2' in nodes['work-2'].error
    assert nodes['work-1'].phase_status == PhaseStatus.JOINED
    assert nodes['work-3'].phase_status == PhaseStatus.JOINED
    assert ('join_worker', 'work-3') in driver.join_calls
    assert sequencer.report().failed_nodes == ['work-2']


def test_worker_join_failure_exhausts_retries(make_sequencer, driver, config):
    driver.fail_joins['work-1'] = -1
    sequencer = make_sequencer()

    assert sequencer.run() == SequencerState.WORKERS_COMPLETE
    attempts = [c for c in driver.join_calls if c == ('join_worker', 'work-1')]
    assert len(attempts) == config.retry.attempts
    assert any('work-1' in error for error in sequencer.errors)
    assert ('join_worker', 'work-2') in driver.join_calls


def test_control_plane_failure_aborts_before_workers(make_sequencer, driver):
    driver.fail_joins['ctrl-2'] = -1
    sequencer = make_sequencer()

    with pytest.raises(JoinFailure) as exc_info:
        sequencer.run()

    assert exc_info.value.node_id == 'ctrl-2'
    assert exc_info.value.phase == 'control_plane_joining'
    assert sequencer.state == SequencerState.ABORTED
    assert not [c for c in driver.join_calls if c[0] == 'join_worker']
    assert ('join_control_plane', 'ctrl-3') not in driver.join_calls
    assert sequencer.topology.get('ctrl-2').phase_status == PhaseStatus.FAILED


def test_transient_join_failure_is_retried(make_sequencer, driver):
    driver.fail_joins['ctrl-3'] = 1
    sequencer = make_sequencer()

    assert sequencer.run() == SequencerState.CLUSTER_READY
    assert driver.join_calls.count(('join_control_plane', 'ctrl-3')) == 2


def test_join_that_took_effect_is_not_repeated(make_sequencer, driver):
    driver.joined_but_failed.add('ctrl-2')
    sequencer = make_sequencer()

    assert sequencer.run() == SequencerState.CLUSTER_READY
    assert driver.join_calls.count(('join_control_plane', 'ctrl-2')) == 1


def test_primary_init_failure_is_not_retried(make_sequencer, driver):
    driver.fail_init = True
    sequencer = make_sequencer()

    with pytest.raises(JoinFailure):
        sequencer.run()

    assert driver.join_calls == [('init_primary', 'ctrl-1')]
    assert sequencer.state == SequencerState.ABORTED
    assert sequencer.formation.phase == ClusterPhase.UNINITIALIZED


def test_primary_timeout_aborts(make_sequencer, driver):
    sequencer = make_sequencer(not_ready={'ctrl-1'})

    with pytest.raises(BootstrapTimeoutError) as exc_info:
        sequencer.run()

    assert exc_info.value.node_id == 'ctrl-1'
    assert sequencer.state == SequencerState.ABORTED
    assert sequencer.topology.primary.phase_status == PhaseStatus.FAILED
    assert not [c for c in driver.join_calls if c[0] != 'init_primary']
    assert sequencer.errors


def test_initialized_primary_is_not_reinitialized(make_sequencer, driver, clock):
    driver.initialized = True
    driver.members.update({'ctrl-1', 'ctrl-2'})
    sequencer = make_sequencer()

    assert sequencer.run() == SequencerState.CLUSTER_READY
    assert ('init_primary', 'ctrl-1') not in driver.calls
    assert ('join_control_plane', 'ctrl-2') not in driver.calls
    # No cache on the primary: credentials are regenerated for ctrl-3
    assert ('create_token', 'ctrl-1') in driver.calls
    assert ('upload_certs', 'ctrl-1') in driver.calls


def test_resumed_run_reuses_cached_credentials(make_sequencer, driver):
    make_sequencer().run()
    token = driver.cache['join_token']
    driver.members.discard('work-3')
    driver.events.clear()

    second = make_sequencer()

    assert second.run() == SequencerState.CLUSTER_READY
    assert second.formation.join_token == token
    assert driver.mutating_calls == [('join_worker', 'work-3')]


def test_resumed_run_regenerates_expired_credentials(make_sequencer, driver, clock):
    make_sequencer().run()
    old_token = driver.cache['join_token']
    driver.members.discard('work-1')
    driver.events.clear()

    later = type(clock)(clock.now + timedelta(hours=3))
    second = make_sequencer(broker_clock=later)

    assert second.run() == SequencerState.CLUSTER_READY
    assert second.formation.join_token != old_token
    assert ('create_token', 'ctrl-1') in driver.mutating_calls
    assert driver.cache['join_token'] == second.formation.join_token


def test_illegal_transition_is_rejected(make_sequencer):
    sequencer = make_sequencer()

    with pytest.raises(SequencerStateError):
        sequencer._transition(SequencerState.WORKER_JOINING)
    assert sequencer.state == SequencerState.UNINITIALIZED


def test_addons_complete_requires_cluster_ready(make_sequencer):
    sequencer = make_sequencer()
    with pytest.raises(SequencerStateError):
        sequencer.mark_addons_complete()

    sequencer.run()
    sequencer.mark_addons_complete()
    assert sequencer.formation.phase == ClusterPhase.ADDONS_COMPLETE


def test_report_never_contains_credentials(make_sequencer, driver):
    sequencer = make_sequencer()
    sequencer.run()

    dumped = json.dumps(asdict(sequencer.report()))

    assert driver.init_bundle.join_token not in dumped
    assert driver.init_bundle.cert_encryption_key not in dumped
    assert '"state": "cluster_ready"' in dumped


class SlowReadyView(FakeClusterView):
    """A joined node only reports Ready after it has been polled a few times."""

    def __init__(self, driver, polls_needed=3):
        super().__init__(driver)
        self.polls_needed = polls_needed
        self.polls = {}

    def reported_ready(self, name):
        return self.polls.get(name, 0) >= self.polls_needed

    def node_ready(self, name):
        if name not in self.driver.members:
            return False
        self.polls[name] = self.polls.get(name, 0) + 1
        return self.reported_ready(name)

    def ready_nodes(self):
        return {name: self.reported_ready(name) for name in self.driver.members}


class PollingVerifier:
    """Polls a probe until it passes, without sleeping."""

    def __init__(self, max_polls=10):
        self.max_polls = max_polls

    def wait_for_ready(self, probe, timeout, poll_interval=None, description="target"):
        for _ in range(self.max_polls):
            if probe():
                return ReadinessResult.READY
        return ReadinessResult.TIMED_OUT


class OverlapRecordingDriver(FakeDriver):
    """Records joins that start while an earlier member is still not Ready."""

    def __init__(self, events):
        super().__init__(events)
        self.view = None
        self.overlaps = []

    def _join(self, name, node):
        pending = sorted(m for m in self.members if not self.view.reported_ready(m))
        if pending:
            self.overlaps.append((node.id, pending))
        super()._join(name, node)


def polling_sequencer(topology, driver, view, config, clock):
    return BootstrapSequencer(
        topology,
        driver,
        CredentialBroker(driver, config.credentials, clock=clock),
        PollingVerifier(),
        lambda: view,
        config,
        api_probe_factory=lambda host, port, timeout: (lambda: True),
        sleep=lambda seconds: None,
    )


def test_no_join_starts_before_previous_node_is_ready(topology, events, config, clock):
    driver = OverlapRecordingDriver(events)
    view = SlowReadyView(driver, polls_needed=3)
    driver.view = view

    assert polling_sequencer(topology, driver, view, config, clock).run() == SequencerState.CLUSTER_READY

    assert driver.overlaps == []
    assert [e[1] for e in driver.join_calls] == [n.id for n in topology.ordered()]
    assert all(view.polls[n.id] >= 3 for n in topology.nodes)


def test_slow_node_that_never_reports_ready_blocks_later_joins(topology, events, config, clock):
    driver = OverlapRecordingDriver(events)
    view = SlowReadyView(driver, polls_needed=50)
    driver.view = view

    with pytest.raises(BootstrapTimeoutError):
        polling_sequencer(topology, driver, view, config, clock).run()

    assert driver.overlaps == []
    assert driver.join_calls == [('init_primary', 'ctrl-1')]


def test_unreadable_admin_kubeconfig_fails_the_primary(topology, driver, events, config, clock):
    def broken_view():
        raise ConfigException("Invalid kube-config file. No configuration found.")

    sequencer = BootstrapSequencer(
        topology,
        driver,
        CredentialBroker(driver, config.credentials, clock=clock),
        FakeVerifier(events),
        broken_view,
        config,
        api_probe_factory=lambda host, port, timeout: (lambda: True),
        sleep=lambda seconds: None,
    )

    with pytest.raises(JoinFailure) as excinfo:
        sequencer.run()

    assert isinstance(excinfo.value, KubestrapError)
    assert excinfo.value.node_id == "ctrl-1"
    assert excinfo.value.phase == PRIMARY_PHASE
    assert sequencer.state == SequencerState.ABORTED
    primary = topology.primary
    assert primary.phase_status == PhaseStatus.FAILED
    assert "Invalid kube-config file" in primary.error
    assert driver.join_calls == [('init_primary', 'ctrl-1')]
