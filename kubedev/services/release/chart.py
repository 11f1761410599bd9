"""
Chart deployment.

The release is installed from the project's chart directory. The values the
run controls (image URLs, sleep override, pull secrets) are layered over the
chart's own values.yaml through an extra values file.
"""

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field

from ...config import get_settings
from ...exceptions import ConfigurationError, DeployError
from ...project_config import ProjectConfig
from ...utils.async_subprocess import run_async
from ..registry import get_image_url, get_registry_auth_secret_name

logger = logging.getLogger(__name__)


class ChartRelease(BaseModel):
    """Result of an install or upgrade."""
    name: str = Field(..., description="Release name")
    namespace: str = Field(..., description="Release namespace")
    revision: int = Field(..., description="Revision number reported by the deployer")
    status: Optional[str] = Field(None, description="Release status, e.g. deployed")


def load_chart_values(chart_path: str) -> Dict[str, Any]:
    """
    Read the default values of a chart.

    Raises:
        ConfigurationError: If values.yaml is missing or not a YAML mapping
    """
    values_path = os.path.join(chart_path, "values.yaml")
    try:
        with open(values_path, "r", encoding="utf-8") as f:
            values = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(
            f"Couldn't deploy chart, error reading from chart values {values_path}: {e}"
        ) from e

    if not isinstance(values, dict):
        raise ConfigurationError(f"Chart values {values_path} must be a mapping")
    return values


def build_value_overrides(
    config: ProjectConfig,
    chart_values: Dict[str, Any],
    no_sleep: bool = False
) -> Dict[str, Any]:
    """
    Values layered over the chart defaults for one deployment.

    - containers.<image>.image: full image URL with the current tag
    - containers.<image>.command/args: emptied with no_sleep, so the image's
      own entrypoint runs instead of the chart's sleep command
    - pullSecrets: the chart's pullSecrets plus one secret per registry URL
    """
    containers = {}
    for image_key, image in config.images.items():
        container: Dict[str, Any] = {"image": get_image_url(image, config.registries, with_tag=True)}
        if no_sleep:
            container["command"] = []
            container["args"] = []
        containers[image_key] = container

    pull_secrets = list(chart_values.get("pullSecrets") or [])
    for registry in config.registries.values():
        if registry.url:
            pull_secrets.append(get_registry_auth_secret_name(registry.url))

    return {
        "containers": containers,
        "pullSecrets": pull_secrets,
    }


class BaseChartDeployer(ABC):
    """Installs or upgrades a chart release."""

    @abstractmethod
    async def install_or_upgrade(
        self,
        release: str,
        namespace: str,
        chart_path: str,
        values: Dict[str, Any]
    ) -> ChartRelease:
        """
        Install the release, or upgrade it when it already exists.

        Raises:
            DeployError: If the deployment fails
        """
        pass


class HelmChartDeployer(BaseChartDeployer):
    """Chart deployer backed by the helm CLI."""

    def __init__(self, helm_binary: Optional[str] = None, timeout: Optional[int] = None):
        settings = get_settings()
        self.helm_binary = helm_binary or settings.helm_binary
        self.timeout = timeout or settings.helm_timeout_seconds

    def build_command(self, release: str, namespace: str, chart_path: str, values_file: str) -> list:
        return [
            self.helm_binary, "upgrade", "--install", release, chart_path,
            "--namespace", namespace,
            "--values", values_file,
            "--output", "json",
        ]

    async def install_or_upgrade(
        self,
        release: str,
        namespace: str,
        chart_path: str,
        values: Dict[str, Any]
    ) -> ChartRelease:
        fd, values_file = tempfile.mkstemp(prefix="kubedev-values-", suffix=".yaml")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(values, f, default_flow_style=False)

            command = self.build_command(release, namespace, chart_path, values_file)
            logger.info(f"[RELEASE] Deploying chart {chart_path} as {release} in {namespace}")

            try:
                result = await run_async(command, timeout=self.timeout)
            except asyncio.TimeoutError as e:
                raise DeployError(f"Helm timed out after {self.timeout}s") from e
            except RuntimeError as e:
                raise DeployError(f"Unable to run helm: {e}") from e
        finally:
            if os.path.exists(values_file):
                os.unlink(values_file)

        if not result.success:
            raise DeployError(f"Unable to deploy helm chart: {result.stderr.strip() or result.stdout.strip()}")

        try:
            output = json.loads(result.stdout)
            revision = int(output["version"])
        except (ValueError, KeyError, TypeError) as e:
            raise DeployError(f"Unexpected helm output: {e}") from e

        return ChartRelease(
            name=output.get("name", release),
            namespace=output.get("namespace", namespace),
            revision=revision,
            status=(output.get("info") or {}).get("status"),
        )
