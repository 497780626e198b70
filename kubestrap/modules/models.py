"""Data models for cluster bootstrap."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from kubestrap.errors import CredentialError


class NodeRole(str, Enum):
    """Node roles in the cluster."""
    CONTROL_PLANE = 'control_plane'
    WORKER = 'worker'


class PhaseStatus(str, Enum):
    """Per-node progress through cluster formation."""
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    JOINED = 'joined'
    FAILED = 'failed'


class ClusterPhase(str, Enum):
    """Coarse, ordered phases of cluster formation."""
    UNINITIALIZED = 'uninitialized'
    PRIMARY_READY = 'primary_ready'
    CONTROL_PLANE_COMPLETE = 'control_plane_complete'
    WORKERS_COMPLETE = 'workers_complete'
    ADDONS_COMPLETE = 'addons_complete'

    @property
    def rank(self) -> int:
        return list(ClusterPhase).index(self)

    def at_least(self, other: 'ClusterPhase') -> bool:
        return self.rank >= other.rank


class SequencerState(str, Enum):
    """States of the bootstrap state machine."""
    UNINITIALIZED = 'uninitialized'
    PRIMARY_INITIALIZING = 'primary_initializing'
    PRIMARY_READY = 'primary_ready'
    CONTROL_PLANE_JOINING = 'control_plane_joining'
    CONTROL_PLANE_COMPLETE = 'control_plane_complete'
    WORKER_JOINING = 'worker_joining'
    WORKERS_COMPLETE = 'workers_complete'
    CLUSTER_READY = 'cluster_ready'
    ABORTED = 'aborted'


class InstallState(str, Enum):
    """Installation state of an add-on."""
    NOT_STARTED = 'not_started'
    INSTALLING = 'installing'
    INSTALLED = 'installed'
    FAILED = 'failed'


@dataclass
class Node:
    """A cluster member as declared in the inventory."""
    id: str
    address: str
    role: NodeRole
    is_primary: bool = False
    phase_status: PhaseStatus = PhaseStatus.PENDING
    vip_priority: Optional[int] = None
    control_plane_endpoint: Optional[str] = None
    ssh_user: Optional[str] = None
    ssh_port: Optional[int] = None
    ssh_key_path: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_control_plane(self) -> bool:
        return self.role == NodeRole.CONTROL_PLANE

    def mark(self, status: PhaseStatus, error: Optional[str] = None) -> None:
        """Update the node's phase status, keeping the last error on failure."""
        self.phase_status = status
        if status == PhaseStatus.FAILED:
            self.error = error
        elif status == PhaseStatus.JOINED:
            self.error = None


@dataclass(repr=False)
class CredentialBundle:
    """Join token, certificate key and CA hash, handled as one unit.

    The values never appear in ``repr()``/``str()``.
    """
    join_token: str
    cert_encryption_key: str
    ca_cert_hash: str
    created_at: datetime
    expires_at: datetime

    def is_complete(self) -> bool:
        return all([self.join_token, self.cert_encryption_key, self.ca_cert_hash])

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, str]:
        return {
            'join_token': self.join_token,
            'cert_encryption_key': self.cert_encryption_key,
            'ca_cert_hash': self.ca_cert_hash,
            'created_at': self.created_at.isoformat(),
            'expires_at': self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CredentialBundle':
        try:
            return cls(
                join_token=data['join_token'],
                cert_encryption_key=data['cert_encryption_key'],
                ca_cert_hash=data['ca_cert_hash'],
                created_at=datetime.fromisoformat(data['created_at']),
                expires_at=datetime.fromisoformat(data['expires_at']),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CredentialError(f"Malformed credential bundle: {e.__class__.__name__}") from e

    def __repr__(self) -> str:
        return f"CredentialBundle(<redacted>, expires_at={self.expires_at.isoformat()})"

    __str__ = __repr__


@dataclass
class ClusterFormationState:
    """Run-scoped formation state, owned by the sequencer."""
    api_endpoint: str
    phase: ClusterPhase = ClusterPhase.UNINITIALIZED
    credentials: Optional[CredentialBundle] = field(default=None, repr=False)

    @property
    def join_token(self) -> Optional[str]:
        return self.credentials.join_token if self.credentials else None

    @property
    def cert_encryption_key(self) -> Optional[str]:
        return self.credentials.cert_encryption_key if self.credentials else None

    @property
    def ca_cert_hash(self) -> Optional[str]:
        return self.credentials.ca_cert_hash if self.credentials else None

    def bind_credentials(self, bundle: CredentialBundle) -> None:
        """Attach the run's bundle.

        Only allowed once the primary is ready, and only once per run.
        """
        if not self.phase.at_least(ClusterPhase.PRIMARY_READY):
            raise CredentialError("Credentials can only be bound once the primary is ready")
        if self.credentials is not None and self.credentials is not bundle:
            raise CredentialError("Credential bundle is already bound for this run")
        if not bundle.is_complete():
            raise CredentialError("Refusing to bind an incomplete credential bundle")
        self.credentials = bundle

    def advance(self, phase: ClusterPhase) -> None:
        if phase.rank < self.phase.rank:
            raise ValueError(f"Cannot move formation phase back from {self.phase.value} to {phase.value}")
        self.phase = phase


@dataclass
class VipFailoverGroup:
    """keepalived VRRP group shared by the control-plane nodes."""
    virtual_ip: str
    interface: str
    virtual_router_id: int
    members: List[Node] = field(default_factory=list)

    @property
    def master(self) -> Optional[Node]:
        ranked = [m for m in self.members if m.vip_priority is not None]
        if not ranked:
            return None
        return max(ranked, key=lambda m: m.vip_priority)

    def peers_of(self, node: Node) -> List[Node]:
        return [m for m in self.members if m.id != node.id]


@dataclass
class AddonSpec:
    """Declarative descriptor of a cluster add-on."""
    name: str
    version: str = ''
    enabled: bool = True
    depends_on: Set[str] = field(default_factory=set)
    kind: str = 'helm'
    namespace: str = 'default'
    repo_url: Optional[str] = None
    chart: Optional[str] = None
    values: Dict[str, Any] = field(default_factory=dict)
    manifests: List[Dict[str, Any]] = field(default_factory=list)
    install_state: InstallState = InstallState.NOT_STARTED
    error: Optional[str] = None


@dataclass
class RunReport:
    """Snapshot of a bootstrap run, safe to persist and show to operators."""
    state: str
    phase: str
    api_endpoint: str
    nodes: List[Dict[str, Any]] = field(default_factory=list)
    addons: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def failed_nodes(self) -> List[str]:
        return [n['id'] for n in self.nodes if n.get('phase_status') == PhaseStatus.FAILED.value]
