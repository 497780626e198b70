import os

import pytest
from fastapi.testclient import TestClient

from kubestrap.api.main import app
from kubestrap.config import KubestrapConfig, set_config
from kubestrap.modules.models import RunReport
from kubestrap.modules.report import save_report

client = TestClient(app)
HEADERS = {"X-API-Key": os.getenv("KUBESTRAP_API_KEY", "kubestrap-secret")}


@pytest.fixture
def report_path(tmp_path):
    config = KubestrapConfig()
    config.cluster.report_path = str(tmp_path / "last-run.json")
    set_config(config)
    return config.cluster.report_path


def test_health_is_open():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_status_requires_api_key(report_path):
    assert client.get("/status").status_code == 403
    assert client.get("/status", headers={"X-API-Key": "wrong"}).status_code == 403


def test_status_without_run(report_path):
    assert client.get("/status", headers=HEADERS).status_code == 404


def test_status_and_node(report_path):
    save_report(
        RunReport(
            state="cluster_ready",
            phase="addons_installing",
            api_endpoint="10.0.0.100:6443",
            nodes=[{"id": "ctrl-1", "role": "control_plane", "phase_status": "joined", "vip_priority": 150}],
        ),
        report_path,
    )

    status = client.get("/status", headers=HEADERS)
    assert status.status_code == 200
    assert status.json()["state"] == "cluster_ready"

    node = client.get("/status/nodes/ctrl-1", headers=HEADERS)
    assert node.json()["vip_priority"] == 150
    assert client.get("/status/nodes/ctrl-9", headers=HEADERS).status_code == 404
