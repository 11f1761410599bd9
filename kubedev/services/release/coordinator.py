"""
Release Coordinator

Makes sure a release is running and resolves the pod the session attaches to.

Either an existing running pod of the release is reused, or the chart is
(re)deployed and the coordinator waits until a pod of the deployed revision
shows up and becomes ready.
"""

import asyncio
import logging
import os
from typing import Optional

from kubernetes import client

from ...config import get_settings
from ...exceptions import ConfigurationError, TransientClusterError
from ...project_config import ProjectConfig
from ...utils.polling import pause
from ..cluster.helpers import label_selector_string, select_release_pod
from .chart import BaseChartDeployer, HelmChartDeployer, build_value_overrides, load_chart_values

logger = logging.getLogger(__name__)


class ReleaseCoordinator:
    """Deploys the release of a project and finds its session pod."""

    def __init__(
        self,
        cluster,
        config: ProjectConfig,
        deployer: Optional[BaseChartDeployer] = None,
        workdir: str = ".",
        cancel_event: Optional[asyncio.Event] = None
    ):
        self.cluster = cluster
        self.config = config
        self.deployer = deployer or HelmChartDeployer()
        self.workdir = workdir
        self.cancel_event = cancel_event
        self.settings = get_settings()

    @property
    def release_name(self) -> str:
        return self.config.dev_space.release.name

    @property
    def namespace(self) -> str:
        return self.config.dev_space.release.namespace

    def release_selector(self) -> str:
        return label_selector_string({self.settings.release_label: self.release_name})

    async def ensure_namespace(self) -> None:
        await self.cluster.ensure_namespace(self.namespace)

    async def deploy(self, no_sleep: bool = False) -> client.V1Pod:
        """
        Install or upgrade the chart and wait for the pod of the new revision.

        Raises:
            ConfigurationError: If the chart values cannot be read
            DeployError: If the chart deployer fails
            PodReadyTimeoutError: If the selected pod does not become ready
        """
        chart_path = os.path.join(self.workdir, self.settings.chart_path)
        if not os.path.isdir(chart_path):
            raise ConfigurationError(f"Chart directory {chart_path} not found")

        chart_values = load_chart_values(chart_path)
        values = build_value_overrides(self.config, chart_values, no_sleep=no_sleep)

        release = await self.deployer.install_or_upgrade(
            self.release_name, self.namespace, chart_path, values
        )
        logger.info(f"[RELEASE] Deployed helm chart (Release revision: {release.revision})")

        return await self.resolve_ready_pod(self.release_name, self.namespace, release.revision)

    async def resolve_ready_pod(
        self,
        release: str,
        namespace: str,
        expected_revision: int
    ) -> client.V1Pod:
        """
        Wait until the release's newest pod matches the deployed revision, then
        wait for it to become ready.

        Pod list errors propagate. A pod without revision annotation is accepted
        with a warning. Polling stops with OperationCancelled when the cancel
        event is set.
        """
        selector = label_selector_string({self.settings.release_label: release})
        interval = self.settings.release_poll_interval_seconds

        while True:
            pods = await self.cluster.list_pods(selector, namespace)
            pod, revision = select_release_pod(pods, self.settings.revision_annotation)

            if pod is None:
                logger.info("[RELEASE] Waiting for release to be deployed.")
            elif revision is None or revision == expected_revision:
                if revision is None:
                    logger.warning(
                        f"[RELEASE] Found pod without revision. Use annotation "
                        f"'{self.settings.revision_annotation}' for your pods to avoid this warning."
                    )
                return await self.cluster.wait_for_ready(
                    pod,
                    max_wait=self.settings.pod_ready_timeout_seconds,
                    interval=self.settings.pod_ready_interval_seconds,
                    cancel_event=self.cancel_event,
                )
            else:
                logger.info("[RELEASE] Waiting for release upgrade to complete.")

            await pause(interval, self.cancel_event)

    async def ensure_release(self, force_deploy: bool, no_sleep: bool = False) -> client.V1Pod:
        """
        Get a running pod of the release, deploying when needed.

        An existing running pod is reused unless force_deploy is set.
        """
        if not force_deploy:
            try:
                pod = await self.cluster.first_running_pod(self.release_selector(), self.namespace)
            except TransientClusterError as e:
                logger.warning(f"[RELEASE] Unable to look up running release pod, redeploying: {e}")
                pod = None

            if pod is not None:
                logger.info(f"[RELEASE] Reusing running pod {pod.metadata.name}")
                return pod
            logger.info(f"[RELEASE] No running pod found for release {self.release_name}")

        return await self.deploy(no_sleep=no_sleep)
