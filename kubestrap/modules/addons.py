"""Add-on installation gate.

Add-ons are installed only after the cluster is formed and healthy, in an
order that respects their declared dependencies. Installers are idempotent
(``helm upgrade --install`` and create-or-patch of manifests), so the gate can
simply be re-run after a failure.
"""
import copy
import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from jsonschema import Draft7Validator
from kubernetes import client, config
from kubernetes.config import ConfigException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import DynamicApiError, ResourceNotFoundError
from urllib3.exceptions import HTTPError

from kubestrap.errors import (
    AddonDependencyError,
    AddonInstallError,
    BootstrapTimeoutError,
    ConfigurationError,
    SequencerStateError,
)
from kubestrap.modules.models import AddonSpec, InstallState, SequencerState
from kubestrap.modules.readiness import ReadinessResult
from kubestrap.modules.utils import read_yaml_file, run_command

logger = logging.getLogger("kubestrap.addons")

ADDON_KINDS = ("helm", "manifest")

ADDON_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "version": {"type": "string"},
        "enabled": {"type": "boolean"},
        "depends_on": {"type": "array", "items": {"type": "string"}},
        "kind": {"type": "string", "enum": list(ADDON_KINDS)},
        "namespace": {"type": "string"},
        "repo_url": {"type": "string"},
        "chart": {"type": "string"},
        "values": {"type": "object"},
        "manifests": {"type": "array", "items": {"type": "object"}},
    },
    "required": ["name"],
    "additionalProperties": False,
}

CATALOG_SCHEMA = {"type": "array", "items": ADDON_SCHEMA}

# Default catalog: network overlay, load-balancer and its address pool,
# certificate issuance, ingress, block and file storage.
DEFAULT_ADDONS: List[Dict[str, Any]] = [
    {
        "name": "calico",
        "version": "v3.28.0",
        "namespace": "tigera-operator",
        "repo_url": "https://docs.tigera.io/calico/charts",
        "chart": "tigera-operator",
    },
    {
        "name": "metallb",
        "version": "0.14.5",
        "namespace": "metallb-system",
        "repo_url": "https://metallb.github.io/metallb",
        "chart": "metallb",
        "depends_on": ["calico"],
    },
    {
        "name": "metallb-pool",
        "kind": "manifest",
        "namespace": "metallb-system",
        "depends_on": ["metallb"],
        "manifests": [
            {
                "apiVersion": "metallb.io/v1beta1",
                "kind": "IPAddressPool",
                "metadata": {"name": "default-pool", "namespace": "metallb-system"},
                "spec": {"addresses": ["192.168.1.240-192.168.1.250"]},
            },
            {
                "apiVersion": "metallb.io/v1beta1",
                "kind": "L2Advertisement",
                "metadata": {"name": "default", "namespace": "metallb-system"},
                "spec": {"ipAddressPools": ["default-pool"]},
            },
        ],
    },
    {
        "name": "cert-manager",
        "version": "v1.14.5",
        "namespace": "cert-manager",
        "repo_url": "https://charts.jetstack.io",
        "chart": "cert-manager",
        "values": {"installCRDs": True},
        "depends_on": ["calico"],
    },
    {
        "name": "cluster-issuer",
        "kind": "manifest",
        "namespace": "cert-manager",
        "depends_on": ["cert-manager"],
        "manifests": [
            {
                "apiVersion": "cert-manager.io/v1",
                "kind": "ClusterIssuer",
                "metadata": {"name": "selfsigned"},
                "spec": {"selfSigned": {}},
            },
        ],
    },
    {
        "name": "ingress-nginx",
        "version": "4.10.1",
        "namespace": "ingress-nginx",
        "repo_url": "https://kubernetes.github.io/ingress-nginx",
        "chart": "ingress-nginx",
        "depends_on": ["metallb-pool", "cluster-issuer"],
    },
    {
        "name": "longhorn",
        "version": "1.6.2",
        "namespace": "longhorn-system",
        "repo_url": "https://charts.longhorn.io",
        "chart": "longhorn",
        "depends_on": ["calico"],
    },
    {
        "name": "csi-driver-nfs",
        "version": "v4.7.0",
        "namespace": "kube-system",
        "repo_url": "https://raw.githubusercontent.com/kubernetes-csi/csi-driver-nfs/master/charts",
        "chart": "csi-driver-nfs",
        "depends_on": ["calico"],
    },
]


def load_addons(data: Optional[Union[List[Dict[str, Any]], Dict[str, Any]]] = None) -> List[AddonSpec]:
    """Build add-on descriptors from catalog data (the default catalog when None).

    Raises:
        ConfigurationError: If the catalog does not match the schema or
            repeats a name
    """
    if data is None:
        data = copy.deepcopy(DEFAULT_ADDONS)
    if isinstance(data, dict):
        data = data.get("addons", [])

    validator = Draft7Validator(CATALOG_SCHEMA)
    problems = [
        f"{'/'.join(str(p) for p in error.path) or '<root>'}: {error.message}"
        for error in validator.iter_errors(data)
    ]
    if problems:
        raise ConfigurationError("Add-on catalog failed schema validation", problems)

    addons: List[AddonSpec] = []
    seen = set()
    for entry in data:
        if entry["name"] in seen:
            problems.append(f"duplicate add-on '{entry['name']}'")
        seen.add(entry["name"])
        addon = AddonSpec(
            name=entry["name"],
            version=entry.get("version", ""),
            enabled=entry.get("enabled", True),
            depends_on=set(entry.get("depends_on", [])),
            kind=entry.get("kind", "helm"),
            namespace=entry.get("namespace", "default"),
            repo_url=entry.get("repo_url"),
            chart=entry.get("chart"),
            values=entry.get("values", {}),
            manifests=entry.get("manifests", []),
        )
        if addon.kind == "helm" and not addon.chart:
            problems.append(f"helm add-on '{addon.name}' has no chart")
        if addon.kind == "manifest" and not addon.manifests:
            problems.append(f"manifest add-on '{addon.name}' has no manifests")
        addons.append(addon)

    if problems:
        raise ConfigurationError("Invalid add-on catalog", problems)
    return addons


def load_catalog(path: Optional[Union[str, Path]] = None) -> List[AddonSpec]:
    """Load add-ons from a YAML catalog file, or the default catalog."""
    if path is None:
        return load_addons()
    return load_addons(read_yaml_file(path))


def resolve_install_order(addons: List[AddonSpec]) -> List[AddonSpec]:
    """Topologically sort the enabled add-ons.

    Ties are broken by position in ``addons``, so independent add-ons are
    installed in the order they were declared.

    Raises:
        AddonDependencyError: On unknown or disabled dependencies and cycles
    """
    by_name = {a.name: a for a in addons}
    enabled = [a for a in addons if a.enabled]
    position = {a.name: i for i, a in enumerate(enabled)}

    problems = []
    for addon in enabled:
        for dep in sorted(addon.depends_on):
            if dep not in by_name:
                problems.append(f"'{addon.name}' depends on unknown add-on '{dep}'")
            elif not by_name[dep].enabled:
                problems.append(f"'{addon.name}' depends on disabled add-on '{dep}'")
    if problems:
        raise AddonDependencyError("Unsatisfiable add-on dependencies", problems)

    remaining = {a.name: set(a.depends_on) for a in enabled}
    order: List[AddonSpec] = []
    while remaining:
        ready = [name for name, deps in remaining.items() if not deps]
        if not ready:
            cycle = ", ".join(sorted(remaining, key=position.get))
            raise AddonDependencyError("Add-on dependency cycle", [cycle])
        name = min(ready, key=position.get)
        order.append(by_name[name])
        del remaining[name]
        for deps in remaining.values():
            deps.discard(name)
    return order


class HelmInstaller:
    """Installs a chart with ``helm upgrade --install``."""

    def __init__(self, addon_config, kubeconfig_path: str, runner=run_command):
        self.config = addon_config
        self.kubeconfig_path = kubeconfig_path
        self.runner = runner

    def install(self, addon: AddonSpec) -> None:
        helm = self.config.helm_binary
        chart_ref = addon.chart
        logger.info(f"🚀 Installing Helm release '{addon.name}' in namespace '{addon.namespace}'")
        try:
            if addon.repo_url:
                self.runner([helm, "repo", "add", addon.name, addon.repo_url, "--force-update"])
                chart_ref = f"{addon.name}/{addon.chart}"

            cmd = [
                helm, "upgrade", "--install", addon.name, chart_ref,
                "--namespace", addon.namespace, "--create-namespace",
                "--wait", "--timeout", self.config.helm_timeout,
                "--kubeconfig", self.kubeconfig_path,
            ]
            if addon.version:
                cmd += ["--version", addon.version]

            with tempfile.TemporaryDirectory(prefix="kubestrap-") as tmp:
                if addon.values:
                    values_file = Path(tmp) / "values.yaml"
                    values_file.write_text(yaml.safe_dump(addon.values, default_flow_style=False))
                    cmd += ["--values", str(values_file)]
                self.runner(cmd, capture_output=True)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            raise AddonInstallError(addon.name, f"helm failed: {e}") from e
        logger.info(f"✅ Helm release '{addon.name}' installed successfully.")


class ManifestInstaller:
    """Applies inline manifests with create, falling back to patch when they exist."""

    def __init__(self, kubeconfig_path: str, client_factory=None):
        self.kubeconfig_path = kubeconfig_path
        self.client_factory = client_factory or self._dynamic_client

    def _dynamic_client(self) -> DynamicClient:
        return DynamicClient(config.new_client_from_config(config_file=self.kubeconfig_path))

    def install(self, addon: AddonSpec) -> None:
        # A fresh client rediscovers APIs, so CRDs from earlier add-ons are visible
        try:
            dyn_client = self.client_factory()
        except (ConfigException, HTTPError, client.exceptions.ApiException, OSError) as e:
            raise AddonInstallError(addon.name, f"cannot reach the cluster API: {e}") from e
        for doc in addon.manifests:
            kind = doc.get("kind")
            api_version = doc.get("apiVersion")
            if not kind or not api_version:
                continue
            metadata = doc.get("metadata", {})
            try:
                resource = dyn_client.resources.get(api_version=api_version, kind=kind)
                namespace = metadata.get("namespace", addon.namespace) if resource.namespaced else None
                try:
                    logger.info(f"📄 Applying {kind}/{metadata.get('name')} for {addon.name}")
                    resource.create(body=doc, namespace=namespace)
                except DynamicApiError as e:
                    if e.status != 409:
                        raise
                    logger.info(f"↪️ {kind}/{metadata.get('name')} exists. Patching...")
                    resource.patch(
                        body=doc,
                        name=metadata.get("name"),
                        namespace=namespace,
                        content_type="application/merge-patch+json",
                    )
            except (ResourceNotFoundError, DynamicApiError, client.exceptions.ApiException, HTTPError) as e:
                raise AddonInstallError(addon.name, f"failed to apply {kind}: {e}") from e
        logger.info(f"✅ Manifests for '{addon.name}' applied.")


class AddonGate:
    """Installs enabled add-ons once the cluster is ready.

    Args:
        installers: Installer per add-on kind (``helm``, ``manifest``)
        verifier: Readiness verifier used for the cluster-wide health check
        cluster_view: Read-only cluster view
        timeout: Budget for the cluster-wide health check, in seconds
    """

    def __init__(self, installers: Dict[str, Any], verifier, cluster_view, timeout: float = 600):
        self.installers = installers
        self.verifier = verifier
        self.cluster_view = cluster_view
        self.timeout = timeout

    def _cluster_healthy(self) -> bool:
        nodes = self.cluster_view.ready_nodes()
        return bool(nodes) and all(nodes.values())

    def install(self, addons: List[AddonSpec], sequencer_state: SequencerState) -> List[AddonSpec]:
        """Install the enabled add-ons in dependency order.

        Returns:
            List[AddonSpec]: the add-ons in the order they were attempted

        Raises:
            SequencerStateError: If the cluster has not reached cluster_ready
            AddonDependencyError: If the dependency graph is unsatisfiable
            BootstrapTimeoutError: If the cluster is not healthy in time
        """
        if sequencer_state != SequencerState.CLUSTER_READY:
            raise SequencerStateError(
                f"Add-ons can only be installed once the cluster is ready (state: {sequencer_state.value})"
            )
        order = resolve_install_order(addons)
        by_name = {a.name: a for a in addons}

        result = self.verifier.wait_for_ready(self._cluster_healthy, self.timeout, description="cluster health")
        if result != ReadinessResult.READY:
            raise BootstrapTimeoutError("cluster", "addons", self.timeout)

        logger.info(f"📦 Installing add-ons: {', '.join(a.name for a in order)}")
        for addon in order:
            blocked = sorted(d for d in addon.depends_on if by_name[d].install_state != InstallState.INSTALLED)
            if blocked:
                addon.error = f"blocked by {', '.join(blocked)}"
                logger.warning(f"⚠️  Skipping {addon.name}: {addon.error}")
                continue

            addon.install_state = InstallState.INSTALLING
            try:
                self.installers[addon.kind].install(addon)
            except AddonInstallError as e:
                addon.install_state = InstallState.FAILED
                addon.error = str(e)
                logger.error(f"❌ {e}")
                continue
            except Exception as e:
                # Any other installer error still fails only this add-on
                addon.install_state = InstallState.FAILED
                addon.error = f"unexpected installer error: {e!r}"
                logger.exception(f"❌ add-on {addon.name}: {addon.error}")
                continue
            addon.install_state = InstallState.INSTALLED
            addon.error = None
        return order


def all_installed(addons: List[AddonSpec]) -> bool:
    return all(a.install_state == InstallState.INSTALLED for a in addons if a.enabled)
