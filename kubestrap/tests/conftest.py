import pytest

from kubestrap.config import KubestrapConfig, set_config
from kubestrap.modules.credentials import CredentialBroker
from kubestrap.modules.sequencer import BootstrapSequencer
from kubestrap.modules.topology import resolve_topology
from kubestrap.tests.fakes import FakeClusterView, FakeDriver, FakeVerifier, FixedClock

API_ENDPOINT = "10.0.0.100:6443"


def inventory_data():
    return {
        "cluster": {
            "name": "lab",
            "api_endpoint": API_ENDPOINT,
            "vip": {"address": "10.0.0.100", "interface": "eth0"},
        },
        "nodes": [
            {"id": "ctrl-1", "address": "10.0.0.11", "role": "control_plane", "is_primary": True},
            {"id": "ctrl-2", "address": "10.0.0.12", "role": "control_plane"},
            {"id": "ctrl-3", "address": "10.0.0.13", "role": "control_plane"},
            {"id": "work-1", "address": "10.0.0.21", "role": "worker"},
            {"id": "work-2", "address": "10.0.0.22", "role": "worker"},
            {"id": "work-3", "address": "10.0.0.23", "role": "worker"},
        ],
    }


@pytest.fixture
def inventory():
    return inventory_data()


@pytest.fixture
def topology():
    return resolve_topology(inventory_data())


@pytest.fixture
def config():
    return KubestrapConfig()


@pytest.fixture(autouse=True)
def reset_global_config():
    yield
    set_config(None)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def events():
    return []


@pytest.fixture
def driver(events):
    return FakeDriver(events)


@pytest.fixture
def make_sequencer(driver, events, config, clock):
    """Build a sequencer over a freshly resolved topology sharing one fake cluster."""

    def factory(not_ready=(), broker_clock=None):
        view = FakeClusterView(driver, not_ready)
        broker = CredentialBroker(driver, config.credentials, clock=broker_clock or clock)
        return BootstrapSequencer(
            resolve_topology(inventory_data()),
            driver,
            broker,
            FakeVerifier(events),
            lambda: view,
            config,
            api_probe_factory=lambda host, port, timeout: (lambda: True),
            sleep=lambda seconds: None,
        )

    return factory


@pytest.fixture
def write_yaml(tmp_path):
    import yaml

    def writer(name, data):
        path = tmp_path / name
        path.write_text(yaml.safe_dump(data))
        return path

    return writer
