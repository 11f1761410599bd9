"""
Cluster Module - access to the Kubernetes API

- ClusterClient: connection, pod lookup, readiness, tunnels and exec streams
- helpers: pod status derivation and release pod selection
- PortForwardBootstrap: starts the configured port forwardings
"""

from .client import ClusterClient
from .helpers import get_pod_status, is_minikube, select_release_pod
from .port_forward import PortForwardBootstrap, PortForwardResult, PortForwardStatus

__all__ = [
    "ClusterClient",
    "get_pod_status",
    "is_minikube",
    "select_release_pod",
    "PortForwardBootstrap",
    "PortForwardResult",
    "PortForwardStatus",
]
