"""
Unit tests for the Docker and Kaniko build engines.

The docker SDK client and the cluster client are mocked.
"""

import asyncio
import base64
import io
import json
import tarfile

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from kubedev.exceptions import BuildError, CommandExitError
from kubedev.services.build.base import BuildOptions, ImageTarget
from kubedev.services.build.engines.docker import DockerImageBuilder, parse_docker_env
from kubedev.services.build.engines.kaniko import (
    EXTERNAL_DOCKERFILE,
    KanikoImageBuilder,
    create_context_archive,
)
from kubedev.utils.async_subprocess import SubprocessResult


@pytest.fixture
def target():
    return ImageTarget(registry_url="registry.example.com", image_name="team/app", tag="k3x8n2a")


@pytest.fixture
def context_dir(tmp_path):
    (tmp_path / "Dockerfile").write_text("FROM alpine\n")
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "main.py").write_text("print('hi')\n")
    return tmp_path


@pytest.mark.unit
class TestDockerImageBuilder:

    def test_parse_docker_env(self):
        output = '\n'.join([
            'DOCKER_TLS_VERIFY="1"',
            'DOCKER_HOST="tcp://192.168.49.2:2376"',
            '# comment',
            '',
        ])
        assert parse_docker_env(output) == {
            "DOCKER_TLS_VERIFY": "1",
            "DOCKER_HOST": "tcp://192.168.49.2:2376",
        }

    @pytest.mark.asyncio
    async def test_uses_minikube_daemon(self, target):
        result = SubprocessResult(0, 'DOCKER_HOST="tcp://minikube:2376"\n', "", [])
        with patch("kubedev.services.build.engines.docker.is_minikube", return_value=True), \
                patch("kubedev.services.build.engines.docker.run_async", AsyncMock(return_value=result)), \
                patch("kubedev.services.build.engines.docker.docker.from_env") as from_env:
            builder = DockerImageBuilder(target, prefer_minikube=True)
            await builder._get_docker_client()

        environment = from_env.call_args.kwargs["environment"]
        assert environment["DOCKER_HOST"] == "tcp://minikube:2376"

    @pytest.mark.asyncio
    async def test_anonymous_authentication_skips_login(self, target):
        builder = DockerImageBuilder(target, prefer_minikube=False)
        builder.docker_client = MagicMock()

        assert await builder.authenticate("", "", anonymous_allowed=True) is None
        builder.docker_client.login.assert_not_called()

    @pytest.mark.asyncio
    async def test_login_returns_identity_token(self, target):
        builder = DockerImageBuilder(target, prefer_minikube=False)
        builder.docker_client = MagicMock()
        builder.docker_client.login.return_value = {"IdentityToken": "tok"}

        token = await builder.authenticate("dev", "s3cret", anonymous_allowed=True)

        assert token == "tok"
        builder.docker_client.login.assert_called_once_with(
            username="dev", password="s3cret", registry="registry.example.com"
        )

    @pytest.mark.asyncio
    async def test_build_uses_relative_dockerfile(self, target, context_dir):
        builder = DockerImageBuilder(target, prefer_minikube=False)
        builder.docker_client = MagicMock()
        builder.docker_client.api.build.return_value = iter([{"stream": "Step 1/1 : FROM alpine\n"}])

        await builder.build_image(
            str(context_dir), str(context_dir / "Dockerfile"), BuildOptions(build_args={"ENV": "dev"})
        )

        kwargs = builder.docker_client.api.build.call_args.kwargs
        assert kwargs["dockerfile"] == "Dockerfile"
        assert kwargs["tag"] == "registry.example.com/team/app:k3x8n2a"
        assert kwargs["buildargs"] == {"ENV": "dev"}

    @pytest.mark.asyncio
    async def test_build_error_in_stream(self, target, context_dir):
        builder = DockerImageBuilder(target, prefer_minikube=False)
        builder.docker_client = MagicMock()
        builder.docker_client.api.build.return_value = iter([
            {"stream": "Step 1/2"},
            {"error": "unknown instruction: FORM", "errorDetail": {"message": "unknown instruction: FORM"}},
        ])

        with pytest.raises(BuildError, match="unknown instruction"):
            await builder.build_image(str(context_dir), str(context_dir / "Dockerfile"), BuildOptions())

    @pytest.mark.asyncio
    async def test_push_sends_auth_config(self, target):
        builder = DockerImageBuilder(target, prefer_minikube=False)
        builder.docker_client = MagicMock()
        builder.docker_client.login.return_value = {}
        builder.docker_client.api.push.return_value = iter([{"status": "Pushed"}])

        await builder.authenticate("dev", "s3cret", anonymous_allowed=True)
        await builder.push_image()

        args, kwargs = builder.docker_client.api.push.call_args
        assert args == ("registry.example.com/team/app",)
        assert kwargs["tag"] == "k3x8n2a"
        assert kwargs["auth_config"] == {"username": "dev", "password": "s3cret"}


@pytest.mark.unit
class TestKanikoImageBuilder:

    def test_context_archive_with_inner_dockerfile(self, context_dir):
        archive, dockerfile = create_context_archive(str(context_dir), str(context_dir / "Dockerfile"))

        names = tarfile.open(fileobj=io.BytesIO(archive)).getnames()
        assert dockerfile == "Dockerfile"
        assert "./src/main.py" in names

    def test_context_archive_with_outer_dockerfile(self, context_dir):
        archive, dockerfile = create_context_archive(
            str(context_dir / "src"), str(context_dir / "Dockerfile")
        )

        names = tarfile.open(fileobj=io.BytesIO(archive)).getnames()
        assert dockerfile == EXTERNAL_DOCKERFILE
        assert EXTERNAL_DOCKERFILE in names

    @pytest.mark.asyncio
    async def test_build_flow(self, target, context_dir, mock_cluster):
        target.insecure = True
        builder = KanikoImageBuilder(target, mock_cluster, "dev")

        await builder.authenticate("dev", "s3cret", anonymous_allowed=True)
        await builder.build_image(
            str(context_dir), str(context_dir / "Dockerfile"), BuildOptions(build_args={"ENV": "dev"})
        )
        await builder.push_image()

        pod = mock_cluster.create_pod.call_args.args[1]
        assert pod.metadata.name == "kubedev-build-k3x8n2a"
        assert pod.spec.containers[0].image == "gcr.io/kaniko-project/executor:debug"

        calls = mock_cluster.exec_buffered.call_args_list
        assert len(calls) == 3

        config_call = calls[0]
        config = json.loads(config_call.kwargs["stdin_data"])
        auth = config["auths"]["registry.example.com"]["auth"]
        assert base64.b64decode(auth) == b"dev:s3cret"

        assert "tar xf - -C /workspace" in calls[1].args[2][-1]

        executor = calls[2].args[2]
        assert executor[0] == "/kaniko/executor"
        assert "--dockerfile=/workspace/Dockerfile" in executor
        assert "--destination=registry.example.com/team/app:k3x8n2a" in executor
        assert "--build-arg=ENV=dev" in executor
        assert "--insecure" in executor and "--skip-tls-verify" in executor

        mock_cluster.delete_pod.assert_awaited_with("kubedev-build-k3x8n2a", "dev")

    @pytest.mark.asyncio
    async def test_executor_failure(self, target, context_dir, mock_cluster):
        mock_cluster.exec_buffered = AsyncMock(side_effect=[
            (b"", b""),
            CommandExitError(1, b"", b"error building image: parsing dockerfile"),
        ])
        builder = KanikoImageBuilder(target, mock_cluster, "dev")

        with pytest.raises(BuildError, match="parsing dockerfile"):
            await builder.build_image(str(context_dir), str(context_dir / "Dockerfile"), BuildOptions())

        mock_cluster.delete_pod.assert_awaited_once_with("kubedev-build-k3x8n2a", "dev")

    @pytest.mark.asyncio
    async def test_stalled_credentials_step_times_out(self, target, context_dir, mock_cluster):
        async def never_returns(*args, **kwargs):
            await asyncio.Event().wait()

        mock_cluster.exec_buffered = AsyncMock(side_effect=never_returns)
        builder = KanikoImageBuilder(target, mock_cluster, "dev")
        builder.settings = builder.settings.model_copy(update={"kaniko_build_timeout_seconds": 0.05})
        await builder.authenticate("dev", "s3cret", anonymous_allowed=True)

        with pytest.raises(BuildError, match="timed out"):
            await builder.build_image(str(context_dir), str(context_dir / "Dockerfile"), BuildOptions())

        assert mock_cluster.exec_buffered.await_count == 1
        mock_cluster.delete_pod.assert_awaited_once_with("kubedev-build-k3x8n2a", "dev")
