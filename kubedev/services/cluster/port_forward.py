"""
Port-Forward Bootstrap

Starts one tunnel task per configured port forwarding. Each tunnel targets the
first running pod matching its own label selector, which may differ from the
release pod. Failures are reported per mapping and never abort the run.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from ...config import get_settings
from ...exceptions import KubedevError
from ...project_config import PortForwardingConfig
from .helpers import label_selector_string

logger = logging.getLogger(__name__)


class PortForwardStatus(str, Enum):
    STARTED = "started"
    TIMEOUT = "timeout"
    FAILED = "failed"
    NO_POD = "no_pod"
    SKIPPED = "skipped"
    UNSUPPORTED = "unsupported"


@dataclass
class PortForwardResult:
    """Outcome of starting one port forwarding."""
    status: PortForwardStatus
    ports: List[str] = field(default_factory=list)
    pod_name: Optional[str] = None
    error: Optional[str] = None


class PortForwardBootstrap:
    """Starts and owns the tunnel tasks of a run."""

    def __init__(self, cluster, ready_timeout: Optional[float] = None):
        self.cluster = cluster
        self.ready_timeout = (
            ready_timeout if ready_timeout is not None
            else get_settings().port_forward_ready_timeout_seconds
        )
        self.stop_event = asyncio.Event()
        self.tasks: List[asyncio.Task] = []

    async def start(
        self,
        port_forwardings: List[PortForwardingConfig],
        default_namespace: str
    ) -> List[PortForwardResult]:
        """Start every configured port forwarding, in order."""
        results = []
        for port_forwarding in port_forwardings:
            results.append(await self._start_one(port_forwarding, default_namespace))
        return results

    async def _start_one(
        self,
        port_forwarding: PortForwardingConfig,
        default_namespace: str
    ) -> PortForwardResult:
        ports = [f"{m.local_port}:{m.remote_port}" for m in port_forwarding.port_mappings]

        if port_forwarding.resource_type != "pod":
            logger.warning(
                f"[PORT-FORWARD] Unsupported resource type '{port_forwarding.resource_type}', "
                f"currently only pod resource type is supported for port forwarding"
            )
            return PortForwardResult(PortForwardStatus.UNSUPPORTED, ports)

        if not port_forwarding.label_selector:
            logger.debug(f"[PORT-FORWARD] No label selector for {', '.join(ports)}, skipping")
            return PortForwardResult(PortForwardStatus.SKIPPED, ports)

        selector = label_selector_string(port_forwarding.label_selector)
        namespace = port_forwarding.namespace or default_namespace

        try:
            pod = await self.cluster.first_running_pod(selector, namespace)
        except KubedevError as e:
            logger.error(f"[PORT-FORWARD] Unable to list pods: {e}")
            return PortForwardResult(PortForwardStatus.FAILED, ports, error=str(e))

        if pod is None:
            logger.warning(f"[PORT-FORWARD] No running pod found for selector '{selector}' in {namespace}")
            return PortForwardResult(PortForwardStatus.NO_POD, ports)

        pairs = [(m.local_port, m.remote_port) for m in port_forwarding.port_mappings]
        ready_event = asyncio.Event()

        tunnel_task = asyncio.create_task(
            self.cluster.open_port_tunnel(pod, pairs, self.stop_event, ready_event)
        )
        tunnel_task.add_done_callback(self._log_tunnel_exit)
        self.tasks.append(tunnel_task)

        ready_wait = asyncio.create_task(ready_event.wait())
        try:
            await asyncio.wait(
                {ready_wait, tunnel_task},
                timeout=self.ready_timeout,
                return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            ready_wait.cancel()

        pod_name = pod.metadata.name

        if ready_event.is_set():
            logger.info(f"[PORT-FORWARD] Port forwarding started on {', '.join(ports)}")
            return PortForwardResult(PortForwardStatus.STARTED, ports, pod_name)

        if tunnel_task.done() and not tunnel_task.cancelled() and tunnel_task.exception():
            error = str(tunnel_task.exception())
            logger.error(f"[PORT-FORWARD] Port forwarding on {', '.join(ports)} failed: {error}")
            return PortForwardResult(PortForwardStatus.FAILED, ports, pod_name, error)

        # The tunnel task keeps running, it may still come up later
        logger.error("[PORT-FORWARD] Timeout waiting for port forwarding to start")
        return PortForwardResult(PortForwardStatus.TIMEOUT, ports, pod_name, "timeout")

    @staticmethod
    def _log_tunnel_exit(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.debug(f"[PORT-FORWARD] Tunnel stopped: {error}")

    async def stop(self) -> None:
        """Stop all tunnels and wait for them to shut down."""
        self.stop_event.set()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []
