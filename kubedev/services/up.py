"""
Up pipeline.

Starts and connects the development environment, in this order:
1. Load the project config and connect to the cluster
2. Ensure the release namespace and the registry pull secrets
3. Build images whose Dockerfile changed
4. Reuse the running release pod, or deploy the chart
5. Start port forwarding and file sync
6. Attach the local terminal to the session pod
"""

import asyncio
import logging
import os
import signal
from typing import Callable, List, Optional

from kubernetes import client
from pydantic import BaseModel, Field

from ..config import get_settings
from ..project_config import ConfigStore, ProjectConfig
from .build import BuildDispatcher
from .cluster import ClusterClient, PortForwardBootstrap
from .cluster.exec_session import LocalTerminal
from .cluster.helpers import label_selector_string
from .registry import ensure_pull_secrets
from .release import BaseChartDeployer, ReleaseCoordinator
from .sync import BaseSyncEngine, SyncExcludes, SyncHandle, TarUploadSyncEngine

logger = logging.getLogger(__name__)


class UpOptions(BaseModel):
    """Switches of one `up` run."""
    init_registries: bool = Field(True, description="Create image pull secrets for the registries")
    build: bool = Field(True, description="Build images whose Dockerfile changed")
    build_explicit: bool = Field(False, description="--build was given on the command line")
    shell: Optional[str] = Field(None, description="Shell command (default: bash, fallback: sh)")
    sync: bool = True
    portforwarding: bool = True
    deploy: bool = Field(False, description="Deploy the chart even if a release pod is running")
    no_sleep: bool = False


class UpCommand:
    """One run of `kubedev up`."""

    def __init__(
        self,
        options: UpOptions,
        workdir: Optional[str] = None,
        terminal: Optional[LocalTerminal] = None,
        cluster_factory: Optional[Callable[..., ClusterClient]] = None,
        deployer: Optional[BaseChartDeployer] = None,
        sync_engine: Optional[BaseSyncEngine] = None
    ):
        self.options = options
        self.workdir = workdir or os.getcwd()
        self.settings = get_settings()
        self.terminal = terminal
        self.cluster_factory = cluster_factory or ClusterClient.connect
        self.deployer = deployer
        self.sync_engine = sync_engine

        self.store = ConfigStore(os.path.join(self.workdir, self.settings.config_path))
        self.cancel_event = asyncio.Event()
        self.pod: Optional[client.V1Pod] = None
        self.port_forwarding: Optional[PortForwardBootstrap] = None
        self.sync_handles: List[SyncHandle] = []

    def _install_interrupt_handler(self) -> bool:
        try:
            asyncio.get_running_loop().add_signal_handler(signal.SIGINT, self.cancel_event.set)
        except (NotImplementedError, RuntimeError, ValueError) as e:
            logger.debug(f"[UP] Interrupt handler unavailable: {e}")
            return False
        return True

    @staticmethod
    def _remove_interrupt_handler() -> None:
        asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)

    async def run(self) -> Optional[int]:
        """
        Run the pipeline.

        Returns:
            Exit code of the terminal session (non-zero is not an error)

        Raises:
            KubedevError: On any fatal failure
        """
        config = self.store.load()
        namespace = config.dev_space.release.namespace

        cluster = self.cluster_factory(config.cluster)
        handler_installed = self._install_interrupt_handler()

        try:
            coordinator = ReleaseCoordinator(
                cluster,
                config,
                deployer=self.deployer,
                workdir=self.workdir,
                cancel_event=self.cancel_event,
            )
            await coordinator.ensure_namespace()

            if self.options.init_registries:
                await ensure_pull_secrets(
                    cluster, config.registries, namespace, self.settings.pull_secret_email
                )

            must_redeploy = False
            if self.options.build:
                dispatcher = BuildDispatcher(self.store, cluster, self.workdir, namespace)
                must_redeploy = await dispatcher.build_images(self.options.build_explicit)
                # Persists the refreshed timestamps of skipped images too
                self.store.save()

            self.pod = await coordinator.ensure_release(
                force_deploy=must_redeploy or self.options.deploy,
                no_sleep=self.options.no_sleep,
            )

            if self.options.portforwarding:
                self.port_forwarding = PortForwardBootstrap(cluster)
                await self.port_forwarding.start(config.dev_space.port_forwarding, namespace)

            if self.options.sync:
                await self.start_sync(cluster, config)

            # Ctrl-C belongs to the remote shell from here on
            if handler_installed:
                self._remove_interrupt_handler()
                handler_installed = False

            return await self.enter_terminal(cluster)
        finally:
            if handler_installed:
                self._remove_interrupt_handler()
            await self.shutdown()
            cluster.close()

    async def start_sync(self, cluster, config: ProjectConfig) -> List[SyncHandle]:
        """Start one sync per configured path against the first running matching pod."""
        engine = self.sync_engine or TarUploadSyncEngine(cluster)

        for sync_path in config.dev_space.sync:
            local_path = os.path.abspath(os.path.join(self.workdir, sync_path.local_sub_path))
            selector = label_selector_string(sync_path.label_selector)
            namespace = sync_path.namespace or config.dev_space.release.namespace

            pod = await cluster.first_running_pod(selector, namespace)
            if pod is None:
                logger.warning(f"[SYNC] No running pod found for selector '{selector}' in {namespace}")
                continue

            excludes = SyncExcludes(
                exclude_paths=sync_path.exclude_paths,
                upload_exclude_paths=sync_path.upload_exclude_paths,
                download_exclude_paths=sync_path.download_exclude_paths,
            )
            handle = await engine.start(
                local_path,
                sync_path.container_path,
                pod,
                pod.spec.containers[0].name,
                excludes,
            )
            self.sync_handles.append(handle)
            logger.info(f"[SYNC] Sync started on {local_path} <-> {sync_path.container_path}")

        return self.sync_handles

    async def enter_terminal(self, cluster) -> Optional[int]:
        if self.options.shell:
            command = [self.options.shell]
        else:
            command = ["sh", "-c", self.settings.default_shell_command]

        container = self.pod.spec.containers[0].name
        exit_code = await cluster.exec_stream(
            self.pod, container, command, interactive=True, terminal=self.terminal
        )
        if exit_code:
            logger.debug(f"[UP] Terminal session ended with exit code {exit_code}")
        return exit_code

    async def shutdown(self) -> None:
        for handle in self.sync_handles:
            await handle.stop()
        self.sync_handles = []

        if self.port_forwarding is not None:
            await self.port_forwarding.stop()
            self.port_forwarding = None
