"""Exception hierarchy for kubestrap.

Every error raised by the bootstrap core derives from :class:`KubestrapError`
so the CLI can report it uniformly. Node- and phase-scoped errors carry the
identifiers needed by an operator to find the node that needs attention.
"""
from typing import Optional


class KubestrapError(Exception):
    """Base class for all kubestrap errors."""


class ConfigurationError(KubestrapError):
    """Invalid topology, configuration or add-on graph.

    Raised before any remote state is touched.
    """

    def __init__(self, message: str, problems: Optional[list] = None):
        self.problems = list(problems or [])
        if self.problems:
            message = f"{message}: " + "; ".join(self.problems)
        super().__init__(message)


class AddonDependencyError(ConfigurationError):
    """Cyclic or unsatisfiable add-on dependency graph."""


class CredentialError(KubestrapError):
    """Missing, expired or malformed join credential bundle."""


class SequencerStateError(KubestrapError):
    """An illegal state transition was requested from the sequencer."""


class NodeError(KubestrapError):
    """An error scoped to a single node and bootstrap phase."""

    def __init__(self, node_id: str, phase: str, message: str):
        self.node_id = node_id
        self.phase = phase
        super().__init__(f"[{node_id}] {phase}: {message}")


class BootstrapTimeoutError(NodeError):
    """A readiness condition was not met within its time budget."""

    def __init__(self, node_id: str, phase: str, timeout: float):
        self.timeout = timeout
        super().__init__(node_id, phase, f"not ready after {timeout:.0f}s")


class JoinFailure(NodeError):
    """A remote init/join command was rejected after exhausting retries."""

    def __init__(self, node_id: str, phase: str, cause: Exception):
        self.cause = cause
        super().__init__(node_id, phase, str(cause))


class RemoteCommandError(KubestrapError):
    """A command executed over SSH failed or could not be run."""

    def __init__(self, node_id: str, message: str, exit_status: Optional[int] = None, stderr: str = ""):
        self.node_id = node_id
        self.exit_status = exit_status
        self.stderr = stderr
        detail = message
        if exit_status is not None:
            detail += f" (exit status {exit_status})"
        if stderr:
            detail += f": {stderr.strip()}"
        super().__init__(f"[{node_id}] {detail}")


class AddonInstallError(KubestrapError):
    """An add-on installer reported failure."""

    def __init__(self, addon: str, message: str):
        self.addon = addon
        super().__init__(f"add-on {addon}: {message}")
