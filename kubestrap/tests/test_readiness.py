import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from kubestrap.modules import readiness
from kubestrap.modules.readiness import (
    ClusterView,
    ReadinessResult,
    ReadinessVerifier,
    api_server_probe,
    node_is_ready,
)


class FakeTime:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def monotonic(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def make_verifier(fake_time, **kwargs):
    return ReadinessVerifier(sleep=fake_time.sleep, monotonic=fake_time.monotonic, **kwargs)


def sequence_probe(results):
    results = list(results)
    calls = []

    def probe():
        calls.append(1)
        value = results.pop(0)
        if isinstance(value, Exception):
            raise value
        return value

    probe.calls = calls
    return probe


def test_ready_after_backoff():
    fake_time = FakeTime()
    verifier = make_verifier(fake_time, poll_interval=1, backoff=2, max_interval=3)
    probe = sequence_probe([False, False, False, True])

    assert verifier.wait_for_ready(probe, timeout=60) == ReadinessResult.READY
    assert fake_time.sleeps == [1, 2, 3]


def test_times_out_within_budget():
    fake_time = FakeTime()
    verifier = make_verifier(fake_time, poll_interval=5, backoff=1)
    probe = sequence_probe([False] * 10)

    assert verifier.wait_for_ready(probe, timeout=10) == ReadinessResult.TIMED_OUT
    assert len(probe.calls) == 3
    assert fake_time.now == 10


def test_probe_exceptions_count_as_not_ready():
    fake_time = FakeTime()
    verifier = make_verifier(fake_time, poll_interval=1)
    probe = sequence_probe([ConnectionError("refused"), True])

    assert verifier.wait_for_ready(probe, timeout=30) == ReadinessResult.READY


def test_explicit_poll_interval_overrides_default():
    fake_time = FakeTime()
    verifier = make_verifier(fake_time, poll_interval=5, backoff=1)

    verifier.wait_for_ready(sequence_probe([False, True]), timeout=30, poll_interval=2)

    assert fake_time.sleeps == [2]


def test_api_server_probe(monkeypatch):
    seen = {}

    class Response:
        status_code = 200

    def fake_get(url, verify, timeout):
        seen.update(url=url, verify=verify, timeout=timeout)
        return Response()

    monkeypatch.setattr(readiness.requests, "get", fake_get)

    assert api_server_probe("10.0.0.11", 6443, request_timeout=3)() is True
    assert seen == {"url": "https://10.0.0.11:6443/readyz", "verify": False, "timeout": 3}


def make_node(name, status, reason="KubeletReady", message="kubelet is posting ready status"):
    return client.V1Node(
        metadata=client.V1ObjectMeta(name=name),
        status=client.V1NodeStatus(
            conditions=[
                client.V1NodeCondition(type="MemoryPressure", status="False"),
                client.V1NodeCondition(type="Ready", status=status, reason=reason, message=message),
            ]
        ),
    )


NETWORK_PENDING = dict(
    reason="KubeletNotReady",
    message="container runtime network not ready: NetworkReady=false "
            "reason:NetworkPluginNotReady message:Network plugin returns error: cni plugin not initialized",
)


def test_node_ready_condition():
    assert node_is_ready(make_node("a", "True"))
    assert not node_is_ready(make_node("a", "Unknown", reason="NodeStatusUnknown", message="Kubelet stopped posting"))


def test_network_pending_is_tolerated_only_when_allowed():
    pending = make_node("a", "False", **NETWORK_PENDING)

    assert node_is_ready(pending, allow_network_pending=True)
    assert not node_is_ready(pending, allow_network_pending=False)


class FakeCoreApi:
    def __init__(self, nodes):
        self.nodes = {n.metadata.name: n for n in nodes}

    def read_node(self, name, _request_timeout=None):
        if name not in self.nodes:
            raise ApiException(status=404, reason="Not Found")
        return self.nodes[name]

    def list_node(self, _request_timeout=None):
        return client.V1NodeList(items=list(self.nodes.values()))


def test_cluster_view():
    view = ClusterView(FakeCoreApi([make_node("ctrl-1", "True"), make_node("work-1", "False", **NETWORK_PENDING)]))

    assert view.node_ready("ctrl-1")
    assert view.node_ready("work-1")
    assert not view.node_ready("missing")
    assert view.ready_nodes() == {"ctrl-1": True, "work-1": True}
    assert view.cluster_matches({"ctrl-1", "work-1"})
    assert not view.cluster_matches({"ctrl-1", "work-1", "work-2"})


def test_cluster_view_propagates_api_errors():
    class BrokenApi(FakeCoreApi):
        def read_node(self, name, _request_timeout=None):
            raise ApiException(status=500, reason="Internal Server Error")

    with pytest.raises(ApiException):
        ClusterView(BrokenApi([])).node_ready("ctrl-1")
