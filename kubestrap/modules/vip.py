"""
keepalived failover group for the control-plane virtual IP.

The coordinator only establishes the mechanism: it assigns VRRP priorities,
renders keepalived.conf plus the API server health check for every
control-plane node and makes sure keepalived runs. Failover itself is decided
by the keepalived agents on the nodes.
"""
import hashlib
import ipaddress
import logging
from typing import Dict, List

from kubestrap.errors import ConfigurationError
from kubestrap.modules.models import Node, VipFailoverGroup
from kubestrap.modules.topology import Topology, parse_endpoint

logger = logging.getLogger("kubestrap.vip")

MIN_PRIORITY = 1
# 255 is reserved for the address owner
MAX_PRIORITY = 254

CHECK_SCRIPT_NAME = "check_apiserver.sh"
VRRP_SCRIPT_NAME = "check_apiserver"
VRRP_INSTANCE_NAME = "VI_KUBE_API"


def assign_priorities(nodes: List[Node], vip_config) -> List[Node]:
    """Give every control-plane node a unique VRRP priority.

    The primary gets ``base_priority``; the remaining control-plane nodes get
    ``base_priority - priority_step * i`` in inventory order.

    Returns:
        List[Node]: control-plane nodes, primary first
    """
    control_plane = [n for n in nodes if n.is_control_plane]
    ordered = [n for n in control_plane if n.is_primary] + [n for n in control_plane if not n.is_primary]

    problems = []
    for index, node in enumerate(ordered):
        priority = vip_config.base_priority - vip_config.priority_step * index
        if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            problems.append(
                f"priority {priority} for '{node.id}' is outside {MIN_PRIORITY}..{MAX_PRIORITY}"
            )
        node.vip_priority = priority
    if problems:
        raise ConfigurationError("Cannot assign VRRP priorities", problems)
    return ordered


def reelection_bound(vip_config) -> int:
    """Worst-case seconds between the master's API server dying and a new master.

    The check needs ``fall`` consecutive failures, then backups wait up to
    three missed advertisements before taking over.
    """
    return vip_config.check_interval * vip_config.check_fall + 3 * vip_config.advert_int


def validate_failover_settings(vip_config, member_count: int) -> None:
    """Reject health-check settings that cannot guarantee a healthy master.

    Raises:
        ConfigurationError: If the check weight cannot demote the master below
            every healthy peer, or re-election cannot finish in time
    """
    problems = []
    spread = vip_config.priority_step * max(member_count - 1, 0)
    if vip_config.check_weight >= 0:
        problems.append(f"check_weight must be negative (got {vip_config.check_weight})")
    elif abs(vip_config.check_weight) <= spread:
        problems.append(
            f"|check_weight| ({abs(vip_config.check_weight)}) must exceed the priority spread ({spread})"
        )
    bound = reelection_bound(vip_config)
    if bound > vip_config.max_failover_seconds:
        problems.append(
            f"worst-case re-election takes {bound}s, more than max_failover_seconds "
            f"({vip_config.max_failover_seconds}s)"
        )
    if problems:
        raise ConfigurationError("Invalid VIP failover settings", problems)


def build_group(topology: Topology, vip_config) -> VipFailoverGroup:
    """Create the failover group for the topology's control-plane nodes."""
    virtual_ip = topology.vip_address
    if not virtual_ip:
        endpoint = parse_endpoint(topology.api_endpoint)
        virtual_ip = endpoint[0] if endpoint else None
    try:
        ipaddress.ip_address(virtual_ip or "")
    except ValueError:
        raise ConfigurationError(
            f"No virtual IP configured and API endpoint '{topology.api_endpoint}' is not an IP address"
        )

    members = assign_priorities(topology.nodes, vip_config)
    validate_failover_settings(vip_config, len(members))
    group = VipFailoverGroup(
        virtual_ip=virtual_ip,
        interface=topology.vip_interface or vip_config.interface,
        virtual_router_id=topology.vip_router_id or vip_config.virtual_router_id,
        members=members,
    )
    logger.info(
        f"VIP {group.virtual_ip} on {group.interface}: "
        + ", ".join(f"{m.id}={m.vip_priority}" for m in members)
    )
    return group


def render_health_check(api_port: int, virtual_ip: str) -> str:
    """Shell script keepalived runs to decide whether this member is healthy."""
    return f"""#!/bin/sh
# Managed by kubestrap
errorExit() {{
    echo "*** $*" 1>&2
    exit 1
}}

curl -sfk --max-time 2 https://localhost:{api_port}/livez -o /dev/null || errorExit "Error GET https://localhost:{api_port}/livez"
if ip addr | grep -q "inet {virtual_ip}/"; then
    curl -sfk --max-time 2 https://{virtual_ip}:{api_port}/livez -o /dev/null || errorExit "Error GET https://{virtual_ip}:{api_port}/livez"
fi
"""


def render_keepalived_config(group: VipFailoverGroup, member: Node, vip_config) -> str:
    """keepalived.conf for one member of the group."""
    master = group.master
    state = "MASTER" if master is not None and master.id == member.id else "BACKUP"
    peers = "\n".join(f"        {peer.address}" for peer in group.peers_of(member))
    check_path = f"{vip_config.config_dir}/{CHECK_SCRIPT_NAME}"
    # keepalived only uses the first 8 characters of a PASS secret
    auth_pass = vip_config.auth_pass[:8]
    return f"""# Managed by kubestrap
global_defs {{
    router_id {member.id}
    enable_script_security
    script_user root
}}

vrrp_script {VRRP_SCRIPT_NAME} {{
    script "{check_path}"
    interval {vip_config.check_interval}
    fall {vip_config.check_fall}
    rise {vip_config.check_rise}
    weight {vip_config.check_weight}
}}

vrrp_instance {VRRP_INSTANCE_NAME} {{
    state {state}
    interface {group.interface}
    virtual_router_id {group.virtual_router_id}
    priority {member.vip_priority}
    advert_int {vip_config.advert_int}
    unicast_src_ip {member.address}
    unicast_peer {{
{peers}
    }}
    authentication {{
        auth_type PASS
        auth_pass {auth_pass}
    }}
    virtual_ipaddress {{
        {group.virtual_ip}
    }}
    track_script {{
        {VRRP_SCRIPT_NAME}
    }}
}}
"""


def _sha256(content: str) -> str:
    return hashlib.sha256(content.encode('utf-8')).hexdigest()


class VipFailoverCoordinator:
    """Applies the failover group to each control-plane member."""

    def __init__(self, executor, vip_config, api_port: int = 6443):
        self.executor = executor
        self.config = vip_config
        self.api_port = api_port

    def desired_files(self, group: VipFailoverGroup, member: Node) -> Dict[str, tuple]:
        """Map of remote path to ``(content, mode)`` for one member."""
        config_dir = self.config.config_dir
        return {
            f"{config_dir}/{CHECK_SCRIPT_NAME}": (render_health_check(self.api_port, group.virtual_ip), 0o755),
            f"{config_dir}/keepalived.conf": (render_keepalived_config(group, member, self.config), 0o644),
        }

    def configure(self, group: VipFailoverGroup) -> Dict[str, bool]:
        """Apply keepalived configuration to every member.

        Files are uploaded only when their SHA-256 differs from what is on
        the node, and keepalived is restarted only on change, so a second call
        with the same group does nothing.

        Returns:
            Dict[str, bool]: member id -> whether its configuration changed
        """
        changes: Dict[str, bool] = {}
        for member in group.members:
            changed = False
            for path, (content, mode) in self.desired_files(group, member).items():
                if self.executor.file_checksum(member, path) == _sha256(content):
                    continue
                logger.info(f"📝 [{member.id}] Updating {path}")
                self.executor.write_file(member, path, content, mode=mode)
                changed = True

            if changed:
                self.executor.run(member, "systemctl enable keepalived && systemctl restart keepalived")
                logger.info(f"✅ [{member.id}] keepalived restarted with priority {member.vip_priority}")
            elif not self.executor.run(member, "systemctl is-active --quiet keepalived", check=False).ok:
                self.executor.run(member, "systemctl enable --now keepalived")
                logger.info(f"✅ [{member.id}] keepalived started")
            else:
                logger.info(f"[{member.id}] keepalived configuration unchanged")
            changes[member.id] = changed
        return changes
