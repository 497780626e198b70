"""Topology resolution: turn a static inventory into validated node records.

The resolver is the only place that decides node roles and processing order.
It fails fast with :class:`ConfigurationError` before anything remote is
touched.
"""
import ipaddress
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from jsonschema import Draft7Validator

from kubestrap.errors import ConfigurationError
from kubestrap.modules.models import Node, NodeRole
from kubestrap.modules.utils import read_yaml_file

logger = logging.getLogger("kubestrap.topology")

NODE_SCHEMA = {
    "type": "object",
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "address": {"type": "string", "minLength": 1},
        "role": {"type": "string", "enum": [r.value for r in NodeRole]},
        "is_primary": {"type": "boolean"},
        "control_plane_endpoint": {"type": ["string", "null"]},
        "ssh_user": {"type": "string"},
        "ssh_port": {"type": "integer", "minimum": 1, "maximum": 65535},
        "ssh_key_path": {"type": "string"},
    },
    "required": ["id", "address", "role"],
    "additionalProperties": False,
}

INVENTORY_SCHEMA = {
    "type": "object",
    "properties": {
        "cluster": {
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "api_endpoint": {"type": "string", "minLength": 1},
                "vip": {
                    "type": "object",
                    "properties": {
                        "address": {"type": "string"},
                        "interface": {"type": "string"},
                        "virtual_router_id": {"type": "integer", "minimum": 1, "maximum": 255},
                    },
                    "required": ["address"],
                },
            },
            "required": ["api_endpoint"],
        },
        "nodes": {"type": "array", "items": NODE_SCHEMA, "minItems": 1},
    },
    "required": ["cluster", "nodes"],
}


@dataclass
class Topology:
    """Validated cluster topology."""
    name: str
    api_endpoint: str
    nodes: List[Node]
    vip_address: Optional[str] = None
    vip_interface: Optional[str] = None
    vip_router_id: Optional[int] = None

    @property
    def primary(self) -> Node:
        return next(n for n in self.nodes if n.is_primary)

    @property
    def control_plane(self) -> List[Node]:
        return [n for n in self.nodes if n.role == NodeRole.CONTROL_PLANE]

    @property
    def secondary_control_plane(self) -> List[Node]:
        return [n for n in self.control_plane if not n.is_primary]

    @property
    def workers(self) -> List[Node]:
        return [n for n in self.nodes if n.role == NodeRole.WORKER]

    def ordered(self) -> List[Node]:
        """Processing order: primary, other control-plane nodes, workers."""
        return [self.primary] + self.secondary_control_plane + self.workers

    def get(self, node_id: str) -> Node:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise KeyError(node_id)


def parse_endpoint(endpoint: Optional[str]) -> Optional[tuple]:
    """Split ``host:port`` into ``(host, port)``; None when invalid."""
    if not endpoint or not isinstance(endpoint, str):
        return None
    host, sep, port = endpoint.strip().rpartition(':')
    if not sep or not host or not port.isdigit():
        return None
    port_number = int(port)
    if not 1 <= port_number <= 65535:
        return None
    return host.strip('[]'), port_number


def load_inventory(path: Union[str, Path]) -> Dict[str, Any]:
    """Read an inventory YAML file."""
    data = read_yaml_file(path)
    if not isinstance(data, dict):
        raise ConfigurationError(f"Inventory {path} must be a mapping with 'cluster' and 'nodes'")
    return data


def _schema_problems(data: Any, schema: Dict[str, Any]) -> List[str]:
    validator = Draft7Validator(schema)
    problems = []
    for error in sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.path]):
        location = "/".join(str(p) for p in error.path) or "<root>"
        problems.append(f"{location}: {error.message}")
    return problems


def resolve_topology(
    inventory: Union[Dict[str, Any], List[Dict[str, Any]]],
    api_endpoint: Optional[str] = None,
) -> Topology:
    """Validate the inventory and build the cluster topology.

    Args:
        inventory: Either a mapping with ``cluster`` and ``nodes`` keys or a
            bare ordered list of node records
        api_endpoint: VIP:port endpoint; required with a bare node list and
            overrides ``cluster.api_endpoint`` otherwise

    Returns:
        Topology: validated nodes in inventory order

    Raises:
        ConfigurationError: If the inventory is malformed or contradictory
    """
    if isinstance(inventory, list):
        inventory = {"cluster": {"api_endpoint": api_endpoint or ""}, "nodes": inventory}
    elif api_endpoint:
        inventory = dict(inventory)
        inventory["cluster"] = dict(inventory.get("cluster") or {}, api_endpoint=api_endpoint)

    problems = _schema_problems(inventory, INVENTORY_SCHEMA)
    if problems:
        raise ConfigurationError("Inventory failed schema validation", problems)

    cluster = inventory["cluster"]
    endpoint = cluster["api_endpoint"]
    if parse_endpoint(endpoint) is None:
        problems.append(f"cluster api_endpoint '{endpoint}' is not a valid host:port")

    nodes: List[Node] = []
    seen_ids = set()
    seen_addresses = set()
    for record in inventory["nodes"]:
        role = NodeRole(record["role"])
        node = Node(
            id=record["id"],
            address=record["address"],
            role=role,
            is_primary=bool(record.get("is_primary", False)),
            control_plane_endpoint=record.get("control_plane_endpoint"),
            ssh_user=record.get("ssh_user"),
            ssh_port=record.get("ssh_port"),
            ssh_key_path=record.get("ssh_key_path"),
        )
        if node.id in seen_ids:
            problems.append(f"duplicate node id '{node.id}'")
        if node.address in seen_addresses:
            problems.append(f"duplicate node address '{node.address}' ({node.id})")
        seen_ids.add(node.id)
        seen_addresses.add(node.address)

        if role == NodeRole.WORKER:
            if "control_plane_endpoint" not in record:
                node.control_plane_endpoint = endpoint
            if parse_endpoint(node.control_plane_endpoint) is None:
                problems.append(
                    f"worker '{node.id}' has invalid control-plane endpoint "
                    f"'{node.control_plane_endpoint or ''}'"
                )
        nodes.append(node)

    control_plane = [n for n in nodes if n.role == NodeRole.CONTROL_PLANE]
    primaries = [n for n in nodes if n.is_primary]
    if not control_plane:
        problems.append("at least one control_plane node is required")
    if len(primaries) != 1:
        names = ", ".join(n.id for n in primaries) or "none"
        problems.append(f"exactly one node must be marked is_primary (found {len(primaries)}: {names})")
    for node in primaries:
        if node.role != NodeRole.CONTROL_PLANE:
            problems.append(f"primary node '{node.id}' must have role control_plane")

    vip = cluster.get("vip") or {}
    if vip.get("address"):
        try:
            ipaddress.ip_address(vip["address"])
        except ValueError:
            problems.append(f"vip address '{vip['address']}' is not an IP address")

    if problems:
        raise ConfigurationError("Invalid topology", problems)

    topology = Topology(
        name=cluster.get("name", "kubestrap"),
        api_endpoint=endpoint,
        nodes=nodes,
        vip_address=vip.get("address"),
        vip_interface=vip.get("interface"),
        vip_router_id=vip.get("virtual_router_id"),
    )
    logger.info(
        f"Resolved topology '{topology.name}': primary={topology.primary.id}, "
        f"{len(topology.control_plane)} control-plane node(s), {len(topology.workers)} worker(s)"
    )
    return topology
