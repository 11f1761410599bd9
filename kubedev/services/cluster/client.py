"""
Kubernetes Client for the Development Environment

This module is the single point of contact with the Kubernetes API. It resolves
the persisted cluster credentials once and exposes the raw operations the
orchestration layer needs: pod listing and lookup, readiness polling, namespace
and secret management, port tunnels and remote command streams.

All blocking calls of the kubernetes client run on worker threads via
asyncio.to_thread so callers stay on the event loop.
"""

from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream, portforward
import asyncio
import logging
import os
import shutil
import tempfile
from typing import Any, Callable, List, Optional, Tuple

import urllib3

from ...config import get_settings
from ...exceptions import (
    ConfigurationError,
    PodReadyTimeoutError,
    TransientClusterError,
)
from ...project_config import ClusterConfig
from ...utils.polling import pause
from .exec_session import BufferedExecSession, LocalTerminal, exec_buffered, run_interactive
from .helpers import get_pod_status, is_primary_container_ready
from .tunnel import PortTunnel

logger = logging.getLogger(__name__)


def build_configuration(cluster_config: Optional[ClusterConfig]) -> Tuple[client.Configuration, str]:
    """
    Build a kubernetes client configuration from persisted cluster credentials.

    The kubernetes client reads TLS material from files, so the PEM data is
    written to a private temporary directory.

    Returns:
        (configuration, cert_dir): cert_dir must be removed when the client is closed

    Raises:
        ConfigurationError: If the cluster credentials are missing
    """
    if cluster_config is None or not cluster_config.api_server or cluster_config.user is None:
        raise ConfigurationError("Couldn't load cluster config, did you run init?")

    configuration = client.Configuration()
    configuration.host = cluster_config.api_server
    configuration.username = cluster_config.user.username or ""

    cert_dir = tempfile.mkdtemp(prefix="kubedev-certs-")

    def write_pem(name: str, data: str) -> str:
        path = os.path.join(cert_dir, name)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
        return path

    if cluster_config.ca_cert:
        configuration.ssl_ca_cert = write_pem("ca.crt", cluster_config.ca_cert)
    if cluster_config.user.client_cert:
        configuration.cert_file = write_pem("client.crt", cluster_config.user.client_cert)
    if cluster_config.user.client_key:
        configuration.key_file = write_pem("client.key", cluster_config.user.client_key)

    return configuration, cert_dir


class ClusterClient:
    """
    Stateful wrapper around one cluster connection.

    Safe for concurrent use by multiple tasks: regular API calls share one
    CoreV1Api, every stream (exec, port-forward) gets a fresh one.
    """

    def __init__(self, configuration: client.Configuration, cert_dir: Optional[str] = None):
        self.settings = get_settings()
        self.configuration = configuration
        self._cert_dir = cert_dir
        self.api_client = client.ApiClient(configuration)
        self.core_v1 = client.CoreV1Api(self.api_client)

        logger.info(f"[CLUSTER] Kubernetes client initialized - API server: {configuration.host}")

    @classmethod
    def connect(cls, cluster_config: Optional[ClusterConfig]) -> "ClusterClient":
        """Create a client from the persisted cluster credentials."""
        configuration, cert_dir = build_configuration(cluster_config)
        return cls(configuration, cert_dir)

    def close(self) -> None:
        """Release the connection pool and remove the temporary TLS files."""
        self.api_client.close()
        if self._cert_dir:
            shutil.rmtree(self._cert_dir, ignore_errors=True)
            self._cert_dir = None

    def _get_stream_client(self) -> client.CoreV1Api:
        """
        Create a fresh CoreV1Api client for stream operations.

        The kubernetes-python `stream()` function temporarily patches the
        api_client.request method to use WebSocket. Sharing self.core_v1 would
        let concurrent regular API calls pick up the patched method
        ("WebSocketBadStatusException: Handshake status 200 OK").
        """
        return client.CoreV1Api(client.ApiClient(self.configuration))

    async def _call(self, method: Callable[..., Any], **kwargs) -> Any:
        """Run a blocking API call on a worker thread and normalize its errors."""
        try:
            return await asyncio.to_thread(method, **kwargs)
        except ApiException as e:
            raise TransientClusterError(
                f"Kubernetes API error ({e.status}): {e.reason}", status=e.status
            ) from e
        except urllib3.exceptions.HTTPError as e:
            raise TransientClusterError(f"Unable to reach the Kubernetes API: {e}") from e

    # =========================================================================
    # NAMESPACES
    # =========================================================================

    async def ensure_namespace(self, namespace: str) -> None:
        """
        Create a namespace if it doesn't exist.

        A concurrent creation (409 Conflict) counts as success.
        """
        try:
            await self._call(self.core_v1.read_namespace, name=namespace)
            logger.debug(f"[CLUSTER] Namespace {namespace} already exists")
            return
        except TransientClusterError as e:
            if e.status != 404:
                raise

        namespace_manifest = client.V1Namespace(
            metadata=client.V1ObjectMeta(name=namespace)
        )
        try:
            await self._call(self.core_v1.create_namespace, body=namespace_manifest)
            logger.info(f"[CLUSTER] Created namespace: {namespace}")
        except TransientClusterError as e:
            if e.status != 409:
                raise
            logger.debug(f"[CLUSTER] Namespace {namespace} was created concurrently")

    # =========================================================================
    # PODS
    # =========================================================================

    async def list_pods(self, label_selector: str, namespace: str) -> List[client.V1Pod]:
        """List all pods matching a label selector. No match is an empty list."""
        pods = await self._call(
            self.core_v1.list_namespaced_pod,
            namespace=namespace,
            label_selector=label_selector
        )
        return list(pods.items or [])

    async def get_pod(self, name: str, namespace: str) -> client.V1Pod:
        return await self._call(self.core_v1.read_namespaced_pod, name=name, namespace=namespace)

    async def first_running_pod(self, label_selector: str, namespace: str) -> Optional[client.V1Pod]:
        """Get the first pod whose derived status is "Running", or None."""
        for pod in await self.list_pods(label_selector, namespace):
            if get_pod_status(pod) == "Running":
                return pod
        return None

    async def wait_for_ready(
        self,
        pod: client.V1Pod,
        max_wait: float,
        interval: float,
        cancel_event: Optional[asyncio.Event] = None
    ) -> client.V1Pod:
        """
        Poll a pod until its first container reports ready.

        The pod is re-fetched on every poll; a fetch error propagates
        immediately. The pod is polled floor(max_wait / interval) times.

        Returns:
            The pod as last fetched

        Raises:
            PodReadyTimeoutError: If the pod is not ready after max_wait
        """
        name = pod.metadata.name
        namespace = pod.metadata.namespace
        remaining = max_wait

        while remaining > 0:
            current = await self.get_pod(name, namespace)

            if is_primary_container_ready(current):
                logger.debug(f"[CLUSTER] Pod {name} is ready")
                return current

            await pause(interval, cancel_event)
            remaining -= interval

        raise PodReadyTimeoutError(
            f"Pod {namespace}/{name} did not become ready within {max_wait:g} seconds"
        )

    async def create_pod(self, namespace: str, body: client.V1Pod) -> client.V1Pod:
        return await self._call(self.core_v1.create_namespaced_pod, namespace=namespace, body=body)

    async def delete_pod(self, name: str, namespace: str) -> None:
        """Delete a pod immediately. A missing pod is ignored."""
        try:
            await self._call(
                self.core_v1.delete_namespaced_pod,
                name=name,
                namespace=namespace,
                grace_period_seconds=0
            )
            logger.debug(f"[CLUSTER] Deleted pod {namespace}/{name}")
        except TransientClusterError as e:
            if e.status != 404:
                raise

    # =========================================================================
    # SECRETS
    # =========================================================================

    async def create_or_replace_secret(self, namespace: str, body: client.V1Secret) -> None:
        name = body.metadata.name
        try:
            await self._call(self.core_v1.create_namespaced_secret, namespace=namespace, body=body)
            logger.info(f"[CLUSTER] Created secret: {name}")
        except TransientClusterError as e:
            if e.status != 409:
                raise
            await self._call(
                self.core_v1.replace_namespaced_secret,
                name=name,
                namespace=namespace,
                body=body
            )
            logger.info(f"[CLUSTER] Updated secret: {name}")

    # =========================================================================
    # STREAMS
    # =========================================================================

    def _open_exec_stream(self, pod: client.V1Pod, container: str, command: List[str], tty: bool):
        stream_client = self._get_stream_client()
        return stream(
            stream_client.connect_get_namespaced_pod_exec,
            pod.metadata.name,
            pod.metadata.namespace,
            container=container,
            command=command,
            stderr=True,
            stdin=True,
            stdout=True,
            tty=tty,
            binary=True,
            _preload_content=False,  # Required for streaming
        )

    def _open_port_forward(self, pod: client.V1Pod, remote_port: int):
        stream_client = self._get_stream_client()
        return portforward(
            stream_client.connect_get_namespaced_pod_portforward,
            pod.metadata.name,
            pod.metadata.namespace,
            ports=str(remote_port),
        )

    async def open_port_tunnel(
        self,
        pod: client.V1Pod,
        ports: List[Tuple[int, int]],
        stop_event: asyncio.Event,
        ready_event: asyncio.Event
    ) -> None:
        """
        Forward local ports to a pod until stop_event is set.

        Args:
            pod: Target pod
            ports: (local_port, remote_port) pairs
            stop_event: Set to tear the tunnel down
            ready_event: Set once every local port is listening

        Raises:
            StreamError: If a local port cannot be bound
        """
        tunnel = PortTunnel(
            open_forward=lambda remote_port: self._open_port_forward(pod, remote_port),
            pod_name=pod.metadata.name,
            ports=ports,
            bind_address=self.settings.port_forward_bind_address,
        )
        await tunnel.run(stop_event, ready_event)

    async def exec_stream(
        self,
        pod: client.V1Pod,
        container: str,
        command: List[str],
        interactive: bool,
        terminal: Optional[LocalTerminal] = None
    ):
        """
        Run a command in a pod.

        Interactive mode attaches the local terminal and blocks until the remote
        session ends, returning its exit code. Buffered mode returns a started
        BufferedExecSession immediately.
        """
        def open_stream(tty: bool):
            return self._open_exec_stream(pod, container, command, tty)

        logger.debug(f"[EXEC] Executing in pod {pod.metadata.name}: {' '.join(command[:3])}...")

        if interactive:
            return await run_interactive(open_stream, terminal or LocalTerminal())

        session = BufferedExecSession(lambda: open_stream(False))
        session.start()
        return session

    async def exec_buffered(
        self,
        pod: client.V1Pod,
        container: str,
        command: List[str],
        stdin_data: Optional[bytes] = None
    ) -> Tuple[bytes, bytes]:
        """Run a command in a pod and return its complete (stdout, stderr)."""
        session = await self.exec_stream(pod, container, command, interactive=False)
        return await exec_buffered(session, stdin_data)
