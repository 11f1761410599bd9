"""
Unit tests for chart value overrides and the helm deployer.
"""

import json

import pytest
import yaml
from unittest.mock import AsyncMock, patch

from kubedev.exceptions import ConfigurationError, DeployError
from kubedev.project_config import ProjectConfig, RegistryConfig
from kubedev.services.release.chart import (
    HelmChartDeployer,
    build_value_overrides,
    load_chart_values,
)
from kubedev.utils.async_subprocess import SubprocessResult


@pytest.fixture
def config(project_data):
    config = ProjectConfig.model_validate(project_data)
    config.images["default"].tag = "k3x8n2a"
    return config


@pytest.mark.unit
class TestValueOverrides:

    def test_image_urls(self, config):
        values = build_value_overrides(config, {})

        assert values["containers"] == {
            "default": {"image": "registry.example.com/team/app:k3x8n2a"}
        }

    def test_no_sleep_empties_command(self, config):
        values = build_value_overrides(config, {}, no_sleep=True)

        container = values["containers"]["default"]
        assert container["command"] == []
        assert container["args"] == []

    def test_pull_secrets_appended_to_chart_values(self, config):
        config.registries["hub"] = RegistryConfig(url="hub.docker.com")
        config.registries["no-url"] = RegistryConfig()

        values = build_value_overrides(config, {"pullSecrets": ["existing-secret"]})

        assert values["pullSecrets"] == [
            "existing-secret",
            "devspace-auth-registry-example-com",
            "devspace-auth-hub-docker-com",
        ]

    def test_load_chart_values(self, project_dir):
        assert load_chart_values(str(project_dir / "chart")) == {"pullSecrets": ["existing-secret"]}

    def test_missing_chart_values(self, tmp_path):
        with pytest.raises(ConfigurationError, match="values.yaml"):
            load_chart_values(str(tmp_path))


@pytest.mark.unit
class TestHelmChartDeployer:

    @pytest.mark.asyncio
    async def test_install_or_upgrade(self):
        output = json.dumps({"name": "my-app", "namespace": "dev", "version": 4, "info": {"status": "deployed"}})
        captured = {}

        async def fake_run(cmd, timeout=None, **kwargs):
            values_file = cmd[cmd.index("--values") + 1]
            with open(values_file) as f:
                captured["values"] = yaml.safe_load(f)
            captured["cmd"] = cmd
            return SubprocessResult(0, output, "", cmd)

        deployer = HelmChartDeployer(helm_binary="helm", timeout=60)
        with patch("kubedev.services.release.chart.run_async", side_effect=fake_run):
            release = await deployer.install_or_upgrade("my-app", "dev", "chart/", {"pullSecrets": ["a"]})

        assert release.revision == 4
        assert release.status == "deployed"
        assert captured["values"] == {"pullSecrets": ["a"]}
        assert captured["cmd"][:5] == ["helm", "upgrade", "--install", "my-app", "chart/"]
        assert "--namespace" in captured["cmd"]

    @pytest.mark.asyncio
    async def test_helm_failure(self):
        result = SubprocessResult(1, "", "Error: chart not found", [])
        deployer = HelmChartDeployer()

        with patch("kubedev.services.release.chart.run_async", AsyncMock(return_value=result)):
            with pytest.raises(DeployError, match="chart not found"):
                await deployer.install_or_upgrade("my-app", "dev", "chart/", {})

    @pytest.mark.asyncio
    async def test_unexpected_output(self):
        result = SubprocessResult(0, "not json", "", [])

        with patch("kubedev.services.release.chart.run_async", AsyncMock(return_value=result)):
            with pytest.raises(DeployError, match="Unexpected helm output"):
                await HelmChartDeployer().install_or_upgrade("my-app", "dev", "chart/", {})
