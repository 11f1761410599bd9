"""
Unit tests for BuildDispatcher.

Build engines are replaced with mocks; the tests check engine selection, the
build flow and when the config gets persisted.
"""

import os

import pytest
from unittest.mock import AsyncMock, Mock, patch

from kubedev.exceptions import BuildError, ConfigurationError
from kubedev.project_config import ConfigStore, KanikoEngineConfig
from kubedev.services.build.decision import format_timestamp
from kubedev.services.build.dispatcher import BuildDispatcher
from kubedev.services.build.engines import DockerImageBuilder, KanikoImageBuilder


@pytest.fixture
def store(project_dir):
    store = ConfigStore(str(project_dir / ".devspace" / "config.yaml"))
    store.load()
    return store


@pytest.fixture
def builder():
    builder = Mock()
    builder.authenticate = AsyncMock(return_value=None)
    builder.build_image = AsyncMock()
    builder.push_image = AsyncMock()
    return builder


def current_timestamp(project_dir):
    return format_timestamp(os.stat(project_dir / "Dockerfile").st_mtime_ns)


@pytest.mark.unit
class TestEngineSelection:

    def test_docker_is_default(self, store):
        image = store.config.images["default"]
        assert BuildDispatcher.select_engine(image) == "docker"

    def test_kaniko_when_configured(self, store, mock_cluster):
        image = store.config.images["default"]
        image.build.engine.kaniko = KanikoEngineConfig()
        dispatcher = BuildDispatcher(store, mock_cluster, release_namespace="dev")

        target = Mock(tag="abc1234")
        builder = dispatcher.create_builder(image, target)

        assert isinstance(builder, KanikoImageBuilder)
        assert builder.namespace == "dev"

    def test_kaniko_namespace_override(self, store, mock_cluster):
        image = store.config.images["default"]
        image.build.engine.kaniko = KanikoEngineConfig(namespace="builds")
        dispatcher = BuildDispatcher(store, mock_cluster, release_namespace="dev")

        builder = dispatcher.create_builder(image, Mock(tag="abc1234"))

        assert builder.namespace == "builds"

    def test_docker_builder(self, store):
        image = store.config.images["default"]
        builder = BuildDispatcher(store).create_builder(image, Mock())

        assert isinstance(builder, DockerImageBuilder)
        assert builder.prefer_minikube is True


@pytest.mark.unit
class TestBuildImages:

    @pytest.mark.asyncio
    async def test_builds_pushes_and_saves(self, store, project_dir, builder):
        dispatcher = BuildDispatcher(store, workdir=str(project_dir))

        with patch.object(dispatcher, "create_builder", return_value=builder) as create_builder, \
                patch("kubedev.services.build.dispatcher.generate_image_tag", return_value="k3x8n2a"):
            rebuilt = await dispatcher.build_images(force_flag_explicitly_set=False)

        assert rebuilt is True
        target = create_builder.call_args.args[1]
        assert target.reference == "registry.example.com/team/app:k3x8n2a"

        builder.authenticate.assert_awaited_once_with("dev", "s3cret", anonymous_allowed=True)
        context_path, dockerfile_path, options = builder.build_image.call_args.args
        assert context_path == os.path.normpath(str(project_dir))
        assert dockerfile_path == os.path.join(str(project_dir), "Dockerfile")
        assert options.build_args == {}
        builder.push_image.assert_awaited_once()

        saved = ConfigStore(store.path).load().images["default"]
        assert saved.tag == "k3x8n2a"
        assert saved.build.latest_timestamp == current_timestamp(project_dir)

    @pytest.mark.asyncio
    async def test_skips_unchanged_image(self, store, project_dir, builder, caplog):
        store.config.images["default"].build.latest_timestamp = current_timestamp(project_dir)
        store.config.images["default"].tag = "old1234"
        dispatcher = BuildDispatcher(store, workdir=str(project_dir))

        with patch.object(dispatcher, "create_builder", return_value=builder), \
                caplog.at_level("INFO"):
            rebuilt = await dispatcher.build_images(force_flag_explicitly_set=False)

        assert rebuilt is False
        assert "Skip building image 'default'" in caplog.text
        builder.build_image.assert_not_called()
        assert store.config.images["default"].tag == "old1234"

    @pytest.mark.asyncio
    async def test_failed_build_does_not_save(self, store, project_dir, builder):
        builder.build_image.side_effect = BuildError("Error during image build: step 3 failed")
        dispatcher = BuildDispatcher(store, workdir=str(project_dir))
        before = open(store.path).read()

        with patch.object(dispatcher, "create_builder", return_value=builder):
            with pytest.raises(BuildError):
                await dispatcher.build_images(force_flag_explicitly_set=True)

        assert open(store.path).read() == before
        builder.push_image.assert_not_called()

    @pytest.mark.asyncio
    async def test_build_args_are_passed(self, store, project_dir, builder):
        from kubedev.project_config import BuildOptionsConfig
        store.config.images["default"].build.options = BuildOptionsConfig(build_args={"ENV": "dev"})
        dispatcher = BuildDispatcher(store, workdir=str(project_dir))

        with patch.object(dispatcher, "create_builder", return_value=builder):
            await dispatcher.build_images(force_flag_explicitly_set=True)

        options = builder.build_image.call_args.args[2]
        assert options.build_args == {"ENV": "dev"}

    @pytest.mark.asyncio
    async def test_docker_hub_has_no_prefix(self, store, project_dir, builder):
        store.config.registries["default"].url = "hub.docker.com"
        dispatcher = BuildDispatcher(store, workdir=str(project_dir))

        with patch.object(dispatcher, "create_builder", return_value=builder) as create_builder:
            await dispatcher.build_images(force_flag_explicitly_set=True)

        target = create_builder.call_args.args[1]
        assert target.registry_url == ""
        assert target.repository == "team/app"

    @pytest.mark.asyncio
    async def test_missing_registry(self, store, project_dir, builder):
        store.config.images["default"].registry = "missing"
        dispatcher = BuildDispatcher(store, workdir=str(project_dir))

        with patch.object(dispatcher, "create_builder", return_value=builder):
            with pytest.raises(ConfigurationError, match="missing"):
                await dispatcher.build_images(force_flag_explicitly_set=True)
