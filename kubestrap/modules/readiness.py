"""Readiness checks and polling.

The verifier only observes: probes read API server and node state and never
change anything, so it is safe to call repeatedly.
"""

import logging
import time
from enum import Enum
from typing import Callable, Dict, Optional

import requests
import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

logger = logging.getLogger("kubestrap.readiness")

# Ready=False messages that only mean the network overlay is not installed yet
NETWORK_PENDING_MARKERS = ("network plugin", "cni", "networkpluginnotready", "networkunavailable")


class ReadinessResult(str, Enum):
    READY = 'ready'
    TIMED_OUT = 'timed_out'


class ReadinessVerifier:
    """Polls a probe until it reports ready or a timeout elapses."""

    def __init__(
        self,
        poll_interval: float = 5.0,
        backoff: float = 1.0,
        max_interval: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.poll_interval = poll_interval
        self.backoff = backoff
        self.max_interval = max_interval
        self.sleep = sleep
        self.monotonic = monotonic

    @classmethod
    def from_config(cls, readiness_config, **kwargs) -> 'ReadinessVerifier':
        return cls(
            poll_interval=readiness_config.poll_interval,
            backoff=readiness_config.backoff,
            max_interval=readiness_config.max_interval,
            **kwargs,
        )

    def wait_for_ready(
        self,
        probe: Callable[[], bool],
        timeout: float,
        poll_interval: Optional[float] = None,
        description: str = "target",
    ) -> ReadinessResult:
        """Wait until ``probe()`` returns True.

        Args:
            probe: Side-effect free check; exceptions count as "not ready"
            timeout: Overall budget in seconds
            poll_interval: First delay between probes (grows by ``backoff``)
            description: What is being waited for, used in logs

        Returns:
            ReadinessResult.READY or ReadinessResult.TIMED_OUT
        """
        interval = poll_interval or self.poll_interval
        deadline = self.monotonic() + timeout
        attempt = 0
        last_error = ""
        logger.info(f"⏳ Waiting for {description} (timeout: {timeout:.0f}s)")

        while True:
            attempt += 1
            try:
                if probe():
                    logger.info(f"✅ {description} is ready")
                    return ReadinessResult.READY
                last_error = "probe reported not ready"
            except Exception as e:
                last_error = str(e)
                logger.debug(f"{description} not ready yet (attempt {attempt}): {e}")

            remaining = deadline - self.monotonic()
            if remaining <= 0:
                break
            self.sleep(min(interval, remaining))
            interval = min(interval * self.backoff, self.max_interval)

        logger.error(f"❌ Timed out waiting for {description} after {attempt} check(s). Last error: {last_error}")
        return ReadinessResult.TIMED_OUT


def api_server_probe(host: str, port: int, request_timeout: float = 5) -> Callable[[], bool]:
    """Probe that is True when ``https://host:port/readyz`` answers 200.

    TLS verification is off: the cluster CA is not trusted on the operator
    host while the cluster is being formed.
    """
    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    url = f"https://{host}:{port}/readyz"

    def probe() -> bool:
        response = requests.get(url, verify=False, timeout=request_timeout)
        return response.status_code == 200

    return probe


def node_is_ready(node, allow_network_pending: bool = True) -> bool:
    """Evaluate a V1Node's Ready condition."""
    conditions = (node.status.conditions or []) if node.status else []
    for condition in conditions:
        if condition.type != 'Ready':
            continue
        if condition.status == 'True':
            return True
        if allow_network_pending:
            text = f"{condition.reason or ''} {condition.message or ''}".lower()
            return any(marker in text for marker in NETWORK_PENDING_MARKERS)
        return False
    return False


class ClusterView:
    """Read-only view of node state through the Kubernetes API."""

    def __init__(self, core_api, request_timeout: float = 5, allow_network_pending: bool = True):
        self.core_api = core_api
        self.request_timeout = request_timeout
        self.allow_network_pending = allow_network_pending

    @classmethod
    def from_kubeconfig(cls, kubeconfig_path: str, readiness_config) -> 'ClusterView':
        api_client = config.new_client_from_config(config_file=kubeconfig_path)
        return cls(
            client.CoreV1Api(api_client),
            request_timeout=readiness_config.request_timeout,
            allow_network_pending=readiness_config.allow_network_pending,
        )

    def node_ready(self, name: str) -> bool:
        try:
            node = self.core_api.read_node(name, _request_timeout=self.request_timeout)
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        return node_is_ready(node, self.allow_network_pending)

    def ready_nodes(self) -> Dict[str, bool]:
        """Map of every registered node name to its readiness."""
        nodes = self.core_api.list_node(_request_timeout=self.request_timeout)
        return {
            item.metadata.name: node_is_ready(item, self.allow_network_pending)
            for item in nodes.items
        }

    def cluster_matches(self, expected: set) -> bool:
        """True when exactly the expected nodes are registered and all are Ready."""
        ready = self.ready_nodes()
        if set(ready) != set(expected):
            missing = sorted(set(expected) - set(ready))
            unexpected = sorted(set(ready) - set(expected))
            logger.debug(f"Node set mismatch: missing={missing} unexpected={unexpected}")
            return False
        return all(ready.values())
