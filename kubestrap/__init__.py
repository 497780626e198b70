"""kubestrap - HA kubeadm cluster bootstrap."""

__version__ = "0.1.0"
