"""
Cluster bootstrap modules.
"""
from .ssh import SSHExecutor
from .topology import Topology, resolve_topology

__all__ = [
    'SSHExecutor',
    'Topology',
    'resolve_topology',
]
