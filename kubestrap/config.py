"""Configuration management for kubestrap.

Configuration is loaded from multiple sources with the following precedence:
1. Explicitly passed parameters
2. Environment variables (``KUBESTRAP_<SECTION>__<FIELD>``, ``.env`` honoured)
3. Configuration files
4. Default values
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("kubestrap.config")

# Load environment variables from .env file if it exists
load_dotenv()

ENV_PREFIX = "KUBESTRAP_"

DEFAULT_CONFIG_PATHS = [
    Path("/etc/kubestrap/config.yaml"),
    Path("~/.config/kubestrap/config.yaml"),
    Path("kubestrap.yaml"),
]


class SSHConfig(BaseModel):
    """SSH connection configuration."""
    user: str = Field(default="ubuntu", description="Default SSH username")
    key_path: str = Field(default="~/.ssh/id_rsa", validate_default=True, description="Path to SSH private key")
    port: int = Field(default=22, description="SSH port number")
    connect_timeout: int = Field(default=10, description="SSH connection timeout in seconds")
    command_timeout: int = Field(default=600, description="SSH command execution timeout in seconds")

    @field_validator('key_path')
    @classmethod
    def expand_key_path(cls, v: str) -> str:
        """Expand the user home directory in the key path."""
        return os.path.expanduser(v)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Logging level")
    file: Optional[str] = Field(default=None, description="Path to log file (if None, logs to stderr)")
    max_size_mb: int = Field(default=100, description="Maximum log file size in MB before rotation")
    backup_count: int = Field(default=5, description="Number of backup log files to keep")


class ClusterConfig(BaseModel):
    """Cluster-wide kubeadm settings."""
    api_port: int = Field(default=6443, description="Kubernetes API server port")
    pod_network_cidr: str = Field(default="10.244.0.0/16", description="Pod network range")
    service_cidr: str = Field(default="10.96.0.0/12", description="Service IP range")
    kubernetes_version: Optional[str] = Field(default=None, description="Pinned control-plane version")
    cri_socket: Optional[str] = Field(default=None, description="Container runtime socket")
    kubeconfig_path: str = Field(
        default="~/.kube/kubestrap-admin.conf",
        validate_default=True,
        description="Where the admin kubeconfig is stored on the operator host",
    )
    report_path: str = Field(default="state/last-run.json", description="Persisted run report")

    @field_validator('kubeconfig_path')
    @classmethod
    def expand_kubeconfig_path(cls, v: str) -> str:
        return os.path.expanduser(v)


class CredentialConfig(BaseModel):
    """Join credential lifetimes and cache location."""
    token_ttl: int = Field(default=24 * 3600, description="Bootstrap token validity in seconds")
    certificate_key_ttl: int = Field(
        default=2 * 3600,
        description="Validity of uploaded control-plane certificates in seconds",
    )
    cache_path: str = Field(
        default="/etc/kubernetes/kubestrap/join-bundle.json",
        description="Credential cache on the primary node",
    )


class VipConfig(BaseModel):
    """keepalived failover group settings."""
    interface: str = Field(default="eth0", description="Interface carrying the virtual IP")
    virtual_router_id: int = Field(default=51, ge=1, le=255)
    base_priority: int = Field(default=150, description="Priority of the designated primary")
    priority_step: int = Field(default=10, ge=1, description="Priority gap between members")
    advert_int: int = Field(default=1, ge=1, description="VRRP advertisement interval in seconds")
    check_interval: int = Field(default=3, ge=1, description="Health-check interval in seconds")
    check_fall: int = Field(default=3, ge=1, description="Failures before a member is unhealthy")
    check_rise: int = Field(default=2, ge=1, description="Successes before a member is healthy again")
    check_weight: int = Field(default=-50, description="Priority adjustment while unhealthy")
    max_failover_seconds: int = Field(default=15, description="Upper bound for VIP re-election")
    auth_pass: str = Field(default="kubestrap", description="VRRP authentication password")
    config_dir: str = Field(default="/etc/keepalived")


class RetryConfig(BaseModel):
    """Retry policy for blocking remote operations."""
    attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=5.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=60.0, ge=0)


class ReadinessConfig(BaseModel):
    """Readiness polling budgets, in seconds."""
    primary_timeout: int = Field(default=600)
    node_timeout: int = Field(default=300)
    cluster_timeout: int = Field(default=600)
    poll_interval: float = Field(default=5.0, gt=0)
    backoff: float = Field(default=1.5, ge=1)
    max_interval: float = Field(default=30.0, gt=0)
    request_timeout: int = Field(default=5, description="Timeout of a single probe request")
    allow_network_pending: bool = Field(
        default=True,
        description="Treat nodes waiting only for the network overlay as ready",
    )


class AddonConfig(BaseModel):
    """Add-on installer settings."""
    helm_binary: str = Field(default="helm")
    helm_timeout: str = Field(default="600s")
    catalog_path: Optional[str] = Field(default=None, description="YAML file overriding the default catalog")


class KubestrapConfig(BaseModel):
    """Top-level kubestrap configuration."""
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    cluster: ClusterConfig = Field(default_factory=ClusterConfig)
    credentials: CredentialConfig = Field(default_factory=CredentialConfig)
    vip: VipConfig = Field(default_factory=VipConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    readiness: ReadinessConfig = Field(default_factory=ReadinessConfig)
    addons: AddonConfig = Field(default_factory=AddonConfig)

    model_config = {"extra": "ignore"}

    @classmethod
    def load(
        cls,
        config_path: Optional[Union[str, Path]] = None,
        environ: Optional[Dict[str, str]] = None,
    ) -> 'KubestrapConfig':
        """Load configuration from file and environment variables."""
        config_data: Dict[str, Any] = {}

        if config_path:
            path = Path(config_path).expanduser().absolute()
            if not path.exists():
                raise FileNotFoundError(f"Config file not found: {path}")
            config_data = cls._load_config_file(path)
        else:
            for path in DEFAULT_CONFIG_PATHS:
                path = path.expanduser().absolute()
                if path.exists():
                    config_data = cls._load_config_file(path)
                    break

        _apply_env_overrides(config_data, os.environ if environ is None else environ)
        return cls(**config_data)

    @classmethod
    def _load_config_file(cls, path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML file."""
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            return {}
        logger.debug(f"Loaded configuration from {path}")
        return data

    def save(self, path: Union[str, Path]) -> None:
        """Save configuration to a file."""
        path = Path(path).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            yaml.safe_dump(self.model_dump(exclude_none=True), f, default_flow_style=False, sort_keys=False)


def _apply_env_overrides(config_data: Dict[str, Any], environ) -> None:
    """Fold ``KUBESTRAP_SECTION__FIELD=value`` variables into ``config_data``."""
    sections = set(KubestrapConfig.model_fields)
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX) or "__" not in key:
            continue
        section, _, field_name = key[len(ENV_PREFIX):].lower().partition("__")
        if section not in sections or not field_name:
            continue
        section_data = config_data.setdefault(section, {}) or {}
        section_data[field_name] = value
        config_data[section] = section_data


# Global configuration instance
_config: Optional[KubestrapConfig] = None


def get_config(config_path: Optional[Union[str, Path]] = None) -> KubestrapConfig:
    """Get or create the global configuration instance."""
    global _config
    if _config is None:
        _config = KubestrapConfig.load(config_path)
    return _config


def set_config(config: Optional[KubestrapConfig]) -> None:
    """Set (or clear, with ``None``) the global configuration instance."""
    global _config
    _config = config
