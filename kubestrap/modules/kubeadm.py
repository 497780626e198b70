"""kubeadm driver: the remote commands that form the cluster.

This module contains everything that touches a node's cluster state:
- node-local state probes (initialized / member markers)
- primary initialization and control-plane / worker joins
- bootstrap token and certificate-key management on the primary
- the credential cache kept on the primary between runs
- operator-invoked node reset
"""

import json
import logging
import os
import shlex
from pathlib import Path
from typing import Any, Dict, Optional

from kubestrap.errors import RemoteCommandError
from kubestrap.modules.models import CredentialBundle, Node

logger = logging.getLogger("kubestrap.kubeadm")

ADMIN_KUBECONFIG = "/etc/kubernetes/admin.conf"
KUBELET_KUBECONFIG = "/etc/kubernetes/kubelet.conf"
CA_CERT = "/etc/kubernetes/pki/ca.crt"

CA_HASH_COMMAND = (
    f"openssl x509 -pubkey -noout -in {CA_CERT} "
    "| openssl pkey -pubin -outform der "
    "| openssl dgst -sha256 -hex | sed 's/^.* //'"
)


class KubeadmDriver:
    """Runs kubeadm on cluster nodes through an SSH executor."""

    def __init__(self, executor, cluster_config, credential_config):
        self.executor = executor
        self.cluster = cluster_config
        self.credentials = credential_config

    # -- node-local state ---------------------------------------------------

    def is_initialized(self, node: Node) -> bool:
        """True when the node already hosts a formed control plane."""
        return self.executor.file_exists(node, ADMIN_KUBECONFIG)

    def is_member(self, node: Node) -> bool:
        """True when the node's kubelet is already bootstrapped into a cluster."""
        return self.executor.file_exists(node, KUBELET_KUBECONFIG)

    # -- formation ----------------------------------------------------------

    def _common_flags(self, node: Node) -> list:
        flags = [f"--node-name={shlex.quote(node.id)}"]
        if self.cluster.cri_socket:
            flags.append(f"--cri-socket={shlex.quote(self.cluster.cri_socket)}")
        return flags

    def init_primary(self, node: Node, bundle: CredentialBundle, api_endpoint: str) -> None:
        """Run ``kubeadm init`` on the primary with pre-generated credentials."""
        token_ttl = f"{int(self.credentials.token_ttl)}s"
        args = [
            "kubeadm", "init",
            f"--control-plane-endpoint={shlex.quote(api_endpoint)}",
            f"--apiserver-advertise-address={shlex.quote(node.address)}",
            f"--apiserver-bind-port={self.cluster.api_port}",
            f"--pod-network-cidr={shlex.quote(self.cluster.pod_network_cidr)}",
            f"--service-cidr={shlex.quote(self.cluster.service_cidr)}",
            "--upload-certs",
            f"--certificate-key={bundle.cert_encryption_key}",
            f"--token={bundle.join_token}",
            f"--token-ttl={token_ttl}",
        ] + self._common_flags(node)
        if self.cluster.kubernetes_version:
            args.append(f"--kubernetes-version={shlex.quote(self.cluster.kubernetes_version)}")
        logger.info(f"🚀 [{node.id}] Initializing control plane behind {api_endpoint}")
        self.executor.run(node, " ".join(args), sensitive=True)

    def join_control_plane(self, node: Node, bundle: CredentialBundle, api_endpoint: str) -> None:
        """Join ``node`` as an additional control-plane member."""
        args = [
            "kubeadm", "join", shlex.quote(api_endpoint),
            f"--token={bundle.join_token}",
            f"--discovery-token-ca-cert-hash={bundle.ca_cert_hash}",
            "--control-plane",
            f"--certificate-key={bundle.cert_encryption_key}",
            f"--apiserver-advertise-address={shlex.quote(node.address)}",
            f"--apiserver-bind-port={self.cluster.api_port}",
        ] + self._common_flags(node)
        logger.info(f"🔗 [{node.id}] Joining control plane via {api_endpoint}")
        self.executor.run(node, " ".join(args), sensitive=True)

    def join_worker(self, node: Node, bundle: CredentialBundle) -> None:
        """Join ``node`` as a worker through its control-plane endpoint."""
        args = [
            "kubeadm", "join", shlex.quote(node.control_plane_endpoint),
            f"--token={bundle.join_token}",
            f"--discovery-token-ca-cert-hash={bundle.ca_cert_hash}",
        ] + self._common_flags(node)
        logger.info(f"🔗 [{node.id}] Joining as worker via {node.control_plane_endpoint}")
        self.executor.run(node, " ".join(args), sensitive=True)

    # -- credentials on the primary -----------------------------------------

    def create_token(self, primary: Node, token: str, ttl_seconds: int) -> None:
        self.executor.run(
            primary,
            f"kubeadm token create {token} --ttl={int(ttl_seconds)}s --kubeconfig={ADMIN_KUBECONFIG}",
            sensitive=True,
        )

    def upload_certs(self, primary: Node, certificate_key: str) -> None:
        """Re-upload control-plane certificates encrypted with ``certificate_key``."""
        self.executor.run(
            primary,
            f"kubeadm init phase upload-certs --upload-certs --certificate-key={certificate_key} "
            f"--kubeconfig={ADMIN_KUBECONFIG}",
            sensitive=True,
        )

    def ca_cert_hash(self, primary: Node) -> str:
        """SHA-256 of the cluster CA public key, in kubeadm discovery format."""
        digest = self.executor.run(primary, CA_HASH_COMMAND).stdout.strip()
        if len(digest) != 64:
            raise RemoteCommandError(primary.id, f"Unexpected CA hash output from {CA_CERT}")
        return f"sha256:{digest}"

    def read_cached_bundle(self, primary: Node) -> Optional[Dict[str, Any]]:
        """Return the cached credential record, or None if there is none.

        A cache file that is not valid JSON is reported as an empty record so
        the caller treats it as malformed.
        """
        content = self.executor.read_file(primary, self.credentials.cache_path, sensitive=True)
        if content is None:
            return None
        try:
            data = json.loads(content)
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def write_cached_bundle(self, primary: Node, bundle: CredentialBundle) -> None:
        self.executor.write_file(
            primary,
            self.credentials.cache_path,
            json.dumps(bundle.to_dict(), indent=2),
            mode=0o600,
            sensitive=True,
        )

    # -- operator helpers -----------------------------------------------------

    def fetch_admin_kubeconfig(self, primary: Node, local_path: str) -> Path:
        """Copy the admin kubeconfig from the primary to the operator host."""
        content = self.executor.read_file(primary, ADMIN_KUBECONFIG, sensitive=True)
        if not content:
            raise RemoteCommandError(primary.id, f"{ADMIN_KUBECONFIG} is missing or empty")
        path = Path(local_path).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w') as f:
            f.write(content + "\n")
        logger.debug(f"Wrote admin kubeconfig to {path}")
        return path

    def reset(self, node: Node) -> None:
        """Tear down kubeadm state on a node so it can be bootstrapped again."""
        logger.warning(f"🧹 [{node.id}] Running kubeadm reset")
        self.executor.run(node, "kubeadm reset -f")
        self.executor.run(
            node,
            f"rm -rf /etc/cni/net.d {shlex.quote(self.credentials.cache_path)}",
            check=False,
        )
